"""
知识库测试：人物状态、剧情图谱、时间线、节奏弧与加载/保存

开发者: jamesenh, 开发时间: 2026-01-26
"""
import json

import pytest

from novelforge.fakes import ScriptedCompletionClient, sample_chapter_text
from novelforge.knowledge.character_state import (
    CharacterStateRegistry,
    PhysicalCondition,
    ProposedStateChange,
    StateChangeAnalysis,
    analyze_chapter_for_state_changes,
    apply_state_changes,
    build_character_state_context,
    initialize_registry_from_graph,
    validate_state_consistency,
)
from novelforge.knowledge.pacing import (
    PacingType,
    check_pacing_balance,
    generate_narrative_arc,
    generate_narrative_guide,
    recent_pacing_types,
    record_chapter_pacing,
)
from novelforge.knowledge.plot_graph import (
    ForeshadowingUrgency,
    PlotAnalysis,
    PlotEdge,
    PlotEdgeRelation,
    PlotGraph,
    PlotNode,
    PlotNodeStatus,
    PlotNodeType,
    StatusUpdate,
    add_node,
    analyze_chapter_for_plot_changes,
    apply_plot_analysis,
    pending_foreshadowing,
    update_node_status,
)
from novelforge.knowledge.stores import load_knowledge_stores, save_knowledge_stores, update_after_commit
from novelforge.knowledge.timeline import (
    EventAnalysis,
    ProposedEvent,
    TimelineEventStatus,
    TimelineEventType,
    TimelineState,
    analyze_chapter_for_events,
    apply_event_analysis,
    find_duplicate_events,
    generate_unique_key,
    infer_event_type,
    initialize_timeline_from_outline,
    update_event_status,
)
from novelforge.models import OutlineChapter


def _change(field, new_value, character_id="lin_yuan", name="林远", confidence=0.9):
    return ProposedStateChange(
        characterId=character_id, characterName=name, field=field, newValue=new_value, confidence=confidence,
    )


class TestCharacterStates:
    """人物状态注册表"""

    @pytest.fixture
    def registry(self, characters):
        return initialize_registry_from_graph(characters)

    def test_initialized_from_graph(self, registry):
        lin = registry.snapshots["lin_yuan"]
        assert set(registry.snapshots) == {"lin_yuan", "su_qing"}
        assert lin.physical.abilities == ["残缺剑诀"]
        assert lin.social.public_identity == "外门弟子"
        assert lin.psychological.motivation == "查明灭门真相"
        assert registry.version == 0

    def test_no_changes_returns_same_registry(self, registry):
        assert apply_state_changes(registry, StateChangeAnalysis(), 3) is registry

    def test_scalar_and_list_fields(self, registry):
        analysis = StateChangeAnalysis(changes=[
            _change("physical.location", "后山禁地"),
            _change("physical.equipment", "+铜牌"),
            _change("social.hiddenIdentity", "林家遗孤"),
        ])
        updated = apply_state_changes(registry, analysis, 3)
        lin = updated.snapshots["lin_yuan"]

        assert updated.version == 1
        assert updated.last_updated_chapter == 3
        assert lin.as_of_chapter == 3
        assert lin.physical.location == "后山禁地"
        assert lin.physical.equipment == ["铜牌"]
        assert lin.social.hidden_identity == "林家遗孤"
        assert lin.recent_changes[0].change == "physical.location: 未知 → 后山禁地"
        # 原注册表不变
        assert registry.snapshots["lin_yuan"].physical.location == "未知"

        removed = apply_state_changes(updated, StateChangeAnalysis(changes=[_change("physical.equipment", "-铜牌")]), 4)
        assert removed.snapshots["lin_yuan"].physical.equipment == []
        assert removed.version == 2

    def test_invalid_condition_and_unknown_field_are_skipped(self, registry):
        analysis = StateChangeAnalysis(changes=[
            _change("physical.condition", "半死不活"),
            _change("physical.mana", "充盈"),
            _change("physical.condition", "major_injury"),
        ])
        lin = apply_state_changes(registry, analysis, 5).snapshots["lin_yuan"]
        assert lin.physical.condition == PhysicalCondition.MAJOR_INJURY
        assert [c.new_value for c in lin.recent_changes] == ["major_injury"]

    def test_unknown_character_gets_snapshot(self, registry):
        analysis = StateChangeAnalysis(changes=[_change("psychological.mood", "愤怒", "zhao_wuji", "赵无极")])
        updated = apply_state_changes(registry, analysis, 6)
        assert updated.snapshots["zhao_wuji"].character_name == "赵无极"
        assert updated.snapshots["zhao_wuji"].psychological.mood == "愤怒"

    def test_recent_changes_are_capped(self, registry):
        analysis = StateChangeAnalysis(changes=[_change("psychological.mood", f"情绪{i}") for i in range(7)])
        lin = apply_state_changes(registry, analysis, 2).snapshots["lin_yuan"]
        assert len(lin.recent_changes) == 5
        assert lin.recent_changes[-1].new_value == "情绪6"

    def test_analysis_filters_low_confidence(self, registry):
        client = ScriptedCompletionClient([json.dumps({"changes": [
            {"characterId": "lin_yuan", "characterName": "林远", "field": "physical.location",
             "newValue": "后山禁地", "confidence": 0.9},
            {"characterId": "su_qing", "characterName": "苏青", "field": "psychological.mood",
             "newValue": "不安", "confidence": 0.3},
        ]}, ensure_ascii=False)])
        analysis = analyze_chapter_for_state_changes(client, sample_chapter_text(3), 3, registry)
        assert [c.character_id for c in analysis.changes] == ["lin_yuan"]
        assert "第3章" in client.requests[0].prompt

    def test_analysis_failure_returns_empty(self, registry):
        client = ScriptedCompletionClient([ValueError("invalid request: content filtered")])
        assert analyze_chapter_for_state_changes(client, "正文", 3, registry).changes == []

    def test_context_and_consistency(self, registry):
        updated = apply_state_changes(registry, StateChangeAnalysis(changes=[
            _change("physical.condition", "unconscious"),
        ]), 4)
        context = build_character_state_context(updated, 5)
        assert context.startswith("【本章活跃角色状态】")
        assert "昏迷" in context
        issues = validate_state_consistency(updated)
        assert any("昏迷状态" in issue for issue in issues)
        assert build_character_state_context(CharacterStateRegistry(), 1) == ""


def _node(node_id, node_type=PlotNodeType.EVENT, introduced_at=1, importance=5, content=None):
    return PlotNode(
        id=node_id, type=node_type, content=content or node_id, introduced_at=introduced_at, importance=importance,
    )


class TestPlotGraph:
    """剧情图谱"""

    def test_add_node_indexes(self):
        graph = add_node(PlotGraph(), _node("main"), is_main_plot=True)
        graph = add_node(graph, _node("side"))
        graph = add_node(graph, _node("hint", PlotNodeType.FORESHADOWING))
        assert graph.active_main_plots == ["main"]
        assert graph.active_subplots == ["side"]
        assert graph.version == 3

    def test_resolved_node_leaves_active_indexes(self):
        graph = add_node(add_node(PlotGraph(), _node("main"), is_main_plot=True), _node("side"))
        graph = update_node_status(graph, "main", PlotNodeStatus.RESOLVED, resolved_at=9)
        assert graph.active_main_plots == []
        assert graph.get_node("main").resolved_at == 9
        graph = update_node_status(graph, "side", PlotNodeStatus.TRANSFORMED)
        assert graph.active_subplots == ["side"]

    def test_unknown_node_leaves_graph_unchanged(self):
        graph = add_node(PlotGraph(), _node("main"), is_main_plot=True)
        updated = update_node_status(graph, "ghost", PlotNodeStatus.RESOLVED, resolved_at=4)
        assert updated is graph
        assert updated.version == 1

    def test_apply_analysis(self):
        graph = add_node(PlotGraph(), _node("a"))
        analysis = PlotAnalysis(
            new_nodes=[_node("b", importance=8), _node("a")],
            new_edges=[
                PlotEdge(id="e1", from_id="a", to_id="b", relation=PlotEdgeRelation.CAUSES, established_at=2),
                PlotEdge(id="e2", from_id="a", to_id="ghost", relation=PlotEdgeRelation.CAUSES, established_at=2),
            ],
            status_updates=[StatusUpdate(node_id="a", new_status=PlotNodeStatus.RESOLVED, resolved_at=2)],
        )
        updated = apply_plot_analysis(graph, analysis, 2)

        assert [n.id for n in updated.nodes] == ["a", "b"]
        assert [e.id for e in updated.edges] == ["e1"]
        assert updated.active_main_plots == ["b"]
        assert "a" not in updated.active_subplots
        assert updated.version == graph.version + 1
        assert updated.last_updated_chapter == 2
        assert apply_plot_analysis(graph, PlotAnalysis(), 2) is graph

    def test_pending_foreshadowing_is_sorted_by_urgency(self):
        graph = PlotGraph(nodes=[
            _node("minor", PlotNodeType.FORESHADOWING, introduced_at=50, importance=3),
            _node("core", PlotNodeType.FORESHADOWING, introduced_at=1, importance=9),
            _node("event", introduced_at=1),
        ])
        pending = pending_foreshadowing(graph, 60, 100)
        assert [p.id for p in pending] == ["core", "minor"]
        assert pending[0].urgency == ForeshadowingUrgency.CRITICAL
        assert pending[0].suggested_resolution_range == (71, 100)
        assert pending[0].age_in_chapters == 59
        assert pending[1].urgency == ForeshadowingUrgency.LOW

    def test_model_analysis_maps_contents_to_ids(self):
        graph = PlotGraph(nodes=[_node("fs_1", PlotNodeType.FORESHADOWING, content="铜牌的来历")])
        client = ScriptedCompletionClient([json.dumps({
            "newNodes": [{"type": "revelation", "content": "铜牌是林家信物", "importance": 8}],
            "newEdges": [
                {"fromContent": "铜牌的来历", "toContent": "铜牌是林家信物", "relation": "resolves"},
                {"fromContent": "不存在的节点", "toContent": "铜牌是林家信物", "relation": "causes"},
            ],
            "foreshadowingResolutions": [{"foreshadowingContent": "铜牌的来历"}],
        }, ensure_ascii=False)])
        analysis = analyze_chapter_for_plot_changes(client, "正文", 5, graph, 100)

        assert [n.id for n in analysis.new_nodes] == ["revelation_ch5_2"]
        assert [(e.from_id, e.to_id) for e in analysis.new_edges] == [("fs_1", "revelation_ch5_2")]
        assert analysis.status_updates[0].node_id == "fs_1"

        updated = apply_plot_analysis(graph, analysis, 5)
        assert updated.get_node("fs_1").status == PlotNodeStatus.RESOLVED
        assert pending_foreshadowing(updated, 6, 100) == []

    def test_model_failure_returns_empty_analysis(self):
        client = ScriptedCompletionClient([ValueError("invalid request")])
        assert analyze_chapter_for_plot_changes(client, "正文", 5, PlotGraph(), 100) == PlotAnalysis()


class TestTimeline:
    """时间线与事件去重"""

    def test_unique_key_is_order_independent(self):
        key = generate_unique_key(TimelineEventType.BATTLE, ["su_qing", "lin_yuan"], " 夜探 禁地 ")
        assert key == "battle:lin_yuan_su_qing:夜探_禁地"

    def test_infer_event_type(self):
        assert infer_event_type("林远与赵无极比武") == TimelineEventType.BATTLE
        assert infer_event_type("苏青得知真相") == TimelineEventType.REVELATION
        assert infer_event_type("平静的一天") == TimelineEventType.CUSTOM

    def test_duplicate_events_are_skipped(self):
        key = generate_unique_key(TimelineEventType.BATTLE, ["lin_yuan"], "击败赵无极")
        proposed = ProposedEvent(type=TimelineEventType.BATTLE, summary="林远击败赵无极", unique_key=key)
        timeline = apply_event_analysis(TimelineState(), EventAnalysis(new_events=[proposed, proposed]), 3)
        assert len(timeline.events) == 1
        assert timeline.events[0].status == TimelineEventStatus.COMPLETED
        assert timeline.events[0].completed_chapter == 3

        again = apply_event_analysis(
            timeline,
            EventAnalysis(new_events=[proposed.model_copy(update={"summary": "再战赵无极"})], current_timepoint="大比之后"),
            5,
        )
        assert len(again.events) == 1
        assert again.current_timepoint == "大比之后"
        assert again.version == timeline.version + 1

    def test_in_progress_event_is_completed_later(self):
        key = generate_unique_key(TimelineEventType.BATTLE, ["lin_yuan"], "宗门大比")
        started = apply_event_analysis(
            TimelineState(),
            EventAnalysis(new_events=[ProposedEvent(
                type=TimelineEventType.BATTLE, summary="宗门大比开始", unique_key=key, completed=False,
            )]),
            4,
        )
        assert started.events[0].status == TimelineEventStatus.IN_PROGRESS

        finished = ProposedEvent(type=TimelineEventType.BATTLE, summary="林远夺得大比魁首", unique_key=key)
        assert find_duplicate_events(started, EventAnalysis(new_events=[finished])) == []
        updated = apply_event_analysis(started, EventAnalysis(new_events=[finished]), 6)
        assert len(updated.events) == 1
        assert updated.events[0].status == TimelineEventStatus.COMPLETED
        assert updated.events[0].started_chapter == 4
        assert updated.events[0].completed_chapter == 6

    def test_duplicate_warnings(self):
        key = generate_unique_key(TimelineEventType.BATTLE, ["lin_yuan"], "击败赵无极")
        timeline = apply_event_analysis(
            TimelineState(),
            EventAnalysis(new_events=[ProposedEvent(type=TimelineEventType.BATTLE, summary="林远击败赵无极", unique_key=key)]),
            3,
        )
        repeated = ProposedEvent(type=TimelineEventType.ENCOUNTER, summary="偶遇苏青", unique_key="encounter:x:y")
        warnings = find_duplicate_events(timeline, EventAnalysis(new_events=[
            ProposedEvent(type=TimelineEventType.BATTLE, summary="再战赵无极", unique_key=key),
            repeated,
            repeated,
        ]))
        assert warnings == [
            "重复事件: 再战赵无极 (与第3章 林远击败赵无极 重复)",
            "重复事件: 偶遇苏青 (本章内重复)",
        ]

    def test_planned_event_is_promoted(self, outline_factory):
        timeline = initialize_timeline_from_outline(outline_factory(3), {"林远": "lin_yuan"})
        assert [e.status for e in timeline.events] == [TimelineEventStatus.PLANNED] * 3
        planned = timeline.events[1]
        assert planned.character_ids == ["lin_yuan"]
        assert planned.planned_chapter == 2

        proposed = ProposedEvent(type=planned.type, summary="化解危机", unique_key=planned.unique_key)
        updated = apply_event_analysis(timeline, EventAnalysis(new_events=[proposed]), 2)
        assert len(updated.events) == 3
        assert updated.events[1].status == TimelineEventStatus.COMPLETED
        assert updated.events[1].completed_chapter == 2

    def test_status_cannot_move_backwards(self, outline_factory):
        timeline = initialize_timeline_from_outline(outline_factory(1), {})
        event_id = timeline.events[0].id
        done = update_event_status(timeline, event_id, TimelineEventStatus.COMPLETED, 1)
        assert done.events[0].status == TimelineEventStatus.COMPLETED
        assert update_event_status(done, event_id, TimelineEventStatus.PLANNED, 2) is done

    def test_model_analysis_resolves_character_names(self):
        client = ScriptedCompletionClient([json.dumps({
            "newEvents": [{
                "type": "encounter", "summary": "林远在石门前遇到神秘人",
                "characterNames": ["林远", "路人甲"], "coreAction": "石门遇神秘人", "isCompleted": False,
            }],
            "currentTimepoint": "入门第三夜",
        }, ensure_ascii=False)])
        analysis = analyze_chapter_for_events(client, "正文", 3, TimelineState(), {"林远": "lin_yuan"})
        event = analysis.new_events[0]
        assert event.character_ids == ["lin_yuan"]
        assert event.unique_key == "encounter:lin_yuan:石门遇神秘人"
        assert not event.completed
        assert analysis.current_timepoint == "入门第三夜"


class TestNarrativeArc:
    """节奏弧与叙事指导"""

    @pytest.fixture
    def arc(self, outline_factory):
        return generate_narrative_arc(outline_factory(10))

    def test_three_act_curve(self, arc):
        curve = arc.volume_pacing[0].pacing_curve
        assert len(curve) == 10
        assert curve[0] == 2.0
        assert arc.climax_chapters == [10]
        assert arc.transition_chapters == [1]

    def test_guides_follow_curve(self, arc):
        opening = generate_narrative_guide(arc, 1)
        assert opening.pacing_type == PacingType.EMOTIONAL
        assert "禁止出现完结/终章/尾声/后记等词汇" in opening.prohibitions
        assert "禁止大规模战斗场景" in opening.prohibitions

        finale = generate_narrative_guide(arc, 10)
        assert finale.pacing_type == PacingType.CLIMAX
        assert "禁止出现完结/终章/尾声/后记等词汇" not in finale.prohibitions

    def test_large_jumps_are_smoothed(self, arc):
        guide = generate_narrative_guide(arc, 10, previous_pacing=5.0)
        assert guide.pacing_target == 7.5
        assert guide.pacing_type == PacingType.ACTION

    def test_scene_plan_follows_chapter_goal(self, arc):
        chapter = OutlineChapter(index=3, title="对决", goal="林远与赵无极正面对决", hook="")
        guide = generate_narrative_guide(arc, 3, chapter)
        assert guide.scene_requirements[0].purpose == "战前铺垫和局势交代"

    def test_record_pacing(self, arc):
        updated = record_chapter_pacing(arc, 1, PacingType.EMOTIONAL)
        updated = record_chapter_pacing(updated, 2, PacingType.REVELATION)
        assert updated.version == 2
        assert recent_pacing_types(updated, 3) == [PacingType.EMOTIONAL, PacingType.REVELATION]
        assert arc.chapter_pacing == {}

    def test_pacing_balance(self):
        assert check_pacing_balance([PacingType.ACTION], PacingType.ACTION) == (True, None)
        balanced, hint = check_pacing_balance([PacingType.ACTION] * 3, PacingType.ACTION)
        assert not balanced and "连续4章" in hint
        balanced, hint = check_pacing_balance(
            [PacingType.ACTION, PacingType.CLIMAX, PacingType.TENSION], PacingType.ACTION,
        )
        assert not balanced and "高紧张度" in hint


class TestKnowledgeStores:
    """知识库的初始化、保存与提交后更新"""

    def test_initialized_then_round_tripped(self, memory_store, outline_factory, characters):
        outline = outline_factory(10)
        stores = load_knowledge_stores(memory_store, "demo", outline, characters)
        assert len(stores.character_states.snapshots) == 2
        assert len(stores.timeline.events) == 10
        assert stores.narrative_arc.total_chapters == 10

        save_knowledge_stores(memory_store, "demo", stores)
        reloaded = load_knowledge_stores(memory_store, "demo", None, None)
        assert reloaded.character_states == stores.character_states
        assert reloaded.timeline == stores.timeline
        assert reloaded.narrative_arc == stores.narrative_arc

    def test_empty_project_without_materials(self, memory_store):
        stores = load_knowledge_stores(memory_store, "demo", None, None)
        assert stores.character_states.snapshots == {}
        assert stores.timeline.events == []
        assert stores.narrative_arc is None

    def test_update_without_analyst_records_pacing_only(self, memory_store, outline_factory, characters):
        outline = outline_factory(10)
        stores = load_knowledge_stores(memory_store, "demo", outline, characters)
        updated = update_after_commit(stores, sample_chapter_text(1), 1, 10, outline, characters)

        assert updated.narrative_arc.version == 1
        assert updated.narrative_arc.chapter_pacing == {1: PacingType.EMOTIONAL}
        assert updated.character_states is stores.character_states
        assert updated.timeline is stores.timeline

    def test_update_with_analyst(self, memory_store, outline_factory, characters):
        outline = outline_factory(10)
        stores = load_knowledge_stores(memory_store, "demo", outline, characters)
        analyst = ScriptedCompletionClient([
            json.dumps({"changes": [{"characterId": "lin_yuan", "characterName": "林远",
                                     "field": "physical.location", "newValue": "后山禁地", "confidence": 0.9}]},
                       ensure_ascii=False),
            json.dumps({"newNodes": [{"type": "foreshadowing", "content": "石门后的冷笑声", "importance": 6}]},
                       ensure_ascii=False),
            json.dumps({"newEvents": [{"type": "encounter", "summary": "林远在石门前遇到神秘人",
                                       "characterNames": ["林远"], "coreAction": "石门遇神秘人"}],
                        "currentTimepoint": "入门第三夜"}, ensure_ascii=False),
        ])
        updated = update_after_commit(stores, sample_chapter_text(1), 1, 10, outline, characters, analyst=analyst)

        assert analyst.calls == 3
        assert updated.character_states.snapshots["lin_yuan"].physical.location == "后山禁地"
        assert [n.id for n in updated.plot_graph.nodes] == ["foreshadowing_ch1_1"]
        assert len(updated.timeline.events) == 11
        assert updated.timeline.current_timepoint == "入门第三夜"
        assert updated.narrative_arc.version == 1
