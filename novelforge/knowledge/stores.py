"""
知识库加载与保存

四类知识库（人物状态、剧情图谱、时间线、节奏弧）以 JSON 存在项目存储里。
首次使用时从人物图谱与大纲初始化；章节提交后统一更新并写回。
"""
import logging
from dataclasses import dataclass, replace
from typing import Optional

from novelforge.knowledge.character_state import (
    CharacterStateRegistry,
    analyze_chapter_for_state_changes,
    apply_state_changes,
    initialize_registry_from_graph,
)
from novelforge.knowledge.pacing import (
    NarrativeArc,
    NarrativeGuide,
    generate_narrative_arc,
    generate_narrative_guide,
    get_chapter_pacing_target,
    record_chapter_pacing,
)
from novelforge.knowledge.plot_graph import PlotGraph, analyze_chapter_for_plot_changes, apply_plot_analysis
from novelforge.knowledge.timeline import (
    TimelineState,
    analyze_chapter_for_events,
    apply_event_analysis,
    character_name_map,
    initialize_timeline_from_outline,
)
from novelforge.llm import TextCompletionClient
from novelforge.models import CharacterGraph, NovelOutline
from novelforge.runtime.store import ProjectStore

logger = logging.getLogger(__name__)

CHARACTER_STATES = "character_states"
PLOT_GRAPH = "plot_graph"
TIMELINE = "timeline"
NARRATIVE_ARC = "narrative_arc"


@dataclass(frozen=True)
class KnowledgeStores:
    character_states: CharacterStateRegistry
    plot_graph: PlotGraph
    timeline: TimelineState
    narrative_arc: Optional[NarrativeArc] = None


def load_knowledge_stores(
    store: ProjectStore,
    project_id: str,
    outline: Optional[NovelOutline],
    characters: Optional[CharacterGraph],
) -> KnowledgeStores:
    """读取已保存的知识库，缺失的按大纲和人物图谱初始化"""
    raw = store.load_knowledge(project_id, CHARACTER_STATES)
    if raw is not None:
        registry = CharacterStateRegistry.model_validate(raw)
    elif characters is not None:
        registry = initialize_registry_from_graph(characters)
    else:
        registry = CharacterStateRegistry()

    raw = store.load_knowledge(project_id, PLOT_GRAPH)
    graph = PlotGraph.model_validate(raw) if raw is not None else PlotGraph()

    raw = store.load_knowledge(project_id, TIMELINE)
    if raw is not None:
        timeline = TimelineState.model_validate(raw)
    elif outline is not None:
        timeline = initialize_timeline_from_outline(outline, character_name_map(characters))
    else:
        timeline = TimelineState()

    raw = store.load_knowledge(project_id, NARRATIVE_ARC)
    if raw is not None:
        arc = NarrativeArc.model_validate(raw)
    elif outline is not None:
        arc = generate_narrative_arc(outline)
    else:
        arc = None

    return KnowledgeStores(registry, graph, timeline, arc)


def save_knowledge_stores(store: ProjectStore, project_id: str, stores: KnowledgeStores) -> None:
    store.save_knowledge(project_id, CHARACTER_STATES, stores.character_states.model_dump(mode="json"))
    store.save_knowledge(project_id, PLOT_GRAPH, stores.plot_graph.model_dump(mode="json"))
    store.save_knowledge(project_id, TIMELINE, stores.timeline.model_dump(mode="json"))
    if stores.narrative_arc is not None:
        store.save_knowledge(project_id, NARRATIVE_ARC, stores.narrative_arc.model_dump(mode="json"))


def narrative_guide_for(
    stores: KnowledgeStores,
    outline: Optional[NovelOutline],
    chapter_index: int,
) -> Optional[NarrativeGuide]:
    if stores.narrative_arc is None:
        return None
    arc = stores.narrative_arc
    previous = get_chapter_pacing_target(arc, chapter_index - 1) if chapter_index > 1 else None
    chapter = outline.find_chapter(chapter_index) if outline is not None else None
    return generate_narrative_guide(arc, chapter_index, chapter, previous)


def update_after_commit(
    stores: KnowledgeStores,
    chapter_text: str,
    chapter_index: int,
    total_chapters: int,
    outline: Optional[NovelOutline],
    characters: Optional[CharacterGraph],
    analyst: Optional[TextCompletionClient] = None,
) -> KnowledgeStores:
    """
    章节提交后更新知识库

    有分析模型时依次分析人物状态、剧情、事件；节奏记录总是执行。
    各分析函数失败时返回空分析，对应知识库保持不变。
    """
    updated = stores
    if analyst is not None:
        analysis = analyze_chapter_for_state_changes(analyst, chapter_text, chapter_index, updated.character_states)
        updated = replace(
            updated, character_states=apply_state_changes(updated.character_states, analysis, chapter_index),
        )

        plot = analyze_chapter_for_plot_changes(analyst, chapter_text, chapter_index, updated.plot_graph, total_chapters)
        updated = replace(updated, plot_graph=apply_plot_analysis(updated.plot_graph, plot, chapter_index))

        names = character_name_map(characters)
        events = analyze_chapter_for_events(analyst, chapter_text, chapter_index, updated.timeline, names)
        updated = replace(updated, timeline=apply_event_analysis(updated.timeline, events, chapter_index))

    guide = narrative_guide_for(updated, outline, chapter_index)
    if guide is not None:
        updated = replace(
            updated,
            narrative_arc=record_chapter_pacing(updated.narrative_arc, chapter_index, guide.pacing_type),
        )
    logger.debug(
        "第 %s 章知识库已更新: 人物 v%s / 剧情 v%s / 时间线 v%s",
        chapter_index, updated.character_states.version, updated.plot_graph.version, updated.timeline.version,
    )
    return updated
