"""
项目级 Agent 端到端测试

使用样例补全客户端与内存存储，覆盖补齐物料、连续生成、续写、
终章边界、修复路径与提交冲突。

开发者: jamesenh, 开发时间: 2026-01-25
"""
import json

import pytest

from novelforge.agent.project_agent import prepare_project_state, run_project_agent
from novelforge.errors import CommitConflictError, ProjectNotFoundError
from novelforge.fakes import ScriptedCompletionClient, dry_run_client, sample_chapter_text

BIBLE = "林远，外门弟子，背负灭门之仇。"


def _run(services, project_id="demo", count=3, **kwargs):
    state = prepare_project_state(services, project_id, count, bible=BIBLE)
    return run_project_agent(state, services, **kwargs)


@pytest.fixture
def ready_store(memory_store, outline_factory, characters):
    """已有大纲与人物图谱的 10 章项目"""
    memory_store.ensure_project("demo", "演示", 10)
    memory_store.save_outline("demo", outline_factory(10))
    memory_store.save_characters("demo", characters)
    return memory_store


class TestFullPipeline:
    """从空项目开始的完整流程"""

    def test_prepares_materials_then_generates(self, memory_store, make_services):
        memory_store.ensure_project("demo", "演示", 10)
        statuses = []
        result = _run(make_services(memory_store), on_status=statuses.append)

        assert [r.chapter_index for r in result.generated] == [1, 2, 3]
        assert result.failed_chapters == []
        assert result.done_reason == "目标完成：已生成 3/3 章"
        assert [h.tool for h in result.history] == [
            "ensure_outline", "ensure_characters",
            "generate_chapter", "qc_chapter", "commit_chapter",
            "generate_chapter", "qc_chapter", "commit_chapter",
            "generate_chapter", "qc_chapter", "commit_chapter",
            "finish",
        ]

        assert memory_store.load_outline("demo") is not None
        assert memory_store.load_characters("demo") is not None
        assert memory_store.chapter_indices("demo") == [1, 2, 3]
        persisted = memory_store.load_state("demo")
        assert persisted.next_chapter_index == 4
        assert "林远" in persisted.rolling_summary
        assert persisted.open_loops == ["石门后的神秘人身份", "铜牌的来历"]
        assert [e.chapter_index for e in statuses if e.type == "chapter_complete"] == [1, 2, 3]

    def test_committed_chapters_and_records(self, ready_store, make_services):
        result = _run(make_services(ready_store), count=2)

        first = ready_store.load_chapter("demo", 1)
        assert first.startswith("第1章")
        record = result.generated[0]
        assert record.title == "第1章 夜探禁地"
        assert record.word_count == len(first)
        assert record.qc_score >= 70
        assert not record.repaired
        assert ready_store.load_chapter_qc("demo", 1).passed

    def test_knowledge_stores_are_saved(self, ready_store, make_services):
        _run(make_services(ready_store), count=1)
        for kind in ("character_states", "plot_graph", "timeline", "narrative_arc"):
            assert ready_store.load_knowledge("demo", kind) is not None

    def test_missing_project(self, memory_store, make_services):
        with pytest.raises(ProjectNotFoundError):
            prepare_project_state(make_services(memory_store), "ghost", 1)


class TestResumeAndBoundaries:
    """续写与总章数边界"""

    def test_second_run_resumes_from_persisted_index(self, ready_store, make_services):
        services = make_services(ready_store)
        _run(services, count=3)
        result = _run(services, count=2)

        assert [r.chapter_index for r in result.generated] == [4, 5]
        assert result.history[0].tool == "generate_chapter"
        assert ready_store.load_state("demo").next_chapter_index == 6

    def test_run_stops_at_total_chapters(self, ready_store, make_services):
        ready_store.set_next_chapter_index("demo", 9)
        writer = dry_run_client()
        result = _run(make_services(ready_store, writer=writer), count=5)

        assert [r.chapter_index for r in result.generated] == [9, 10]
        assert result.done_reason.startswith("达到总章数上限")
        assert ready_store.load_state("demo").next_chapter_index == 11
        final_system = [r.system for r in writer.requests if "章节号必须是 10" in r.system][0]
        assert "true - 可以写结局" in final_system

    def test_completed_project_generates_nothing(self, ready_store, make_services):
        ready_store.set_next_chapter_index("demo", 11)
        result = _run(make_services(ready_store), count=3)
        assert result.generated == []
        assert result.attempts == 1


class TestRepairPath:
    """QC 未通过时的修复与提交"""

    def test_premature_ending_is_repaired(self, ready_store, make_services):
        writer = dry_run_client()
        writer.push(sample_chapter_text(1) + "\n\n（全文完）感谢大家一路支持！")
        result = _run(make_services(ready_store, writer=writer, max_rewrite_attempts=0), count=1)

        record = result.generated[0]
        assert record.repaired
        assert record.qc_score == 100
        assert [h.tool for h in result.history][:4] == ["generate_chapter", "qc_chapter", "repair_chapter", "commit_chapter"]
        assert "全文完" not in ready_store.load_chapter("demo", 1)

    def test_persistent_failure_is_still_committed(self, ready_store, make_services):
        writer = ScriptedCompletionClient(handler=lambda request: "第1章 终局\n\n全书完")
        result = _run(make_services(ready_store, writer=writer), count=1)

        record = result.generated[0]
        assert record.repaired
        assert record.qc_score < 70
        assert record.issues
        assert ready_store.load_chapter("demo", 1) is not None
        assert ready_store.load_state("demo").next_chapter_index == 2
        assert not ready_store.load_chapter_qc("demo", 1).passed


class TestCommitConflict:
    """提交前校验持久化的下一章序号"""

    def test_concurrent_writer_causes_conflict(self, ready_store, make_services):
        ready_store.set_next_chapter_index("demo", 7)
        services = make_services(ready_store)
        state = prepare_project_state(services, "demo", 1, bible=BIBLE)
        # 另一个写入方抢先推进了进度
        ready_store.set_next_chapter_index("demo", 8)

        with pytest.raises(CommitConflictError) as exc:
            run_project_agent(state, services)

        assert exc.value.chapter_index == 7
        assert exc.value.actual_index == 8
        assert exc.value.to_dict()["next_actions"] == ["refetch_state", "retry_from_persisted_index"]
        assert ready_store.load_chapter("demo", 7) is None
        assert ready_store.load_state("demo").next_chapter_index == 8

    def test_skipped_chapter_ends_run_without_raising(self, ready_store, make_services):
        writer = dry_run_client()
        writer.push(ValueError("invalid request: content filtered"))
        result = _run(make_services(ready_store, writer=writer), count=3)

        assert result.generated == []
        assert result.failed_chapters == [1, 2]
        assert result.done_reason == "第 1 章生成失败，第 2 章无法按序提交；请从第 1 章重新开始"
        assert result.history[-1].tool == "finish"
        assert ready_store.chapter_indices("demo") == []
        assert ready_store.load_state("demo").next_chapter_index == 1


class TestPlannerGuards:
    """规划模型的提案不能绕过 QC"""

    def test_commit_proposal_waits_for_qc(self, ready_store, make_services):
        planner = ScriptedCompletionClient(
            handler=lambda request: json.dumps({"tool": "commit_chapter", "reason": "直接提交"}, ensure_ascii=False)
        )
        result = _run(make_services(ready_store, planner=planner), count=1)

        assert [h.tool for h in result.history][:3] == ["generate_chapter", "qc_chapter", "commit_chapter"]
        assert result.generated[0].chapter_index == 1
        assert ready_store.load_chapter_qc("demo", 1) is not None
