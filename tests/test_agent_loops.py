"""
编排循环的终止性测试

用注入的工具注册表与对抗性规划器驱动两个循环，验证它们总能在安全上限内结束。

开发者: jamesenh, 开发时间: 2026-01-25
"""
import json

import pytest

from novelforge.agent.outline_agent import hard_iteration_limit as outline_limit
from novelforge.agent.outline_agent import run_outline_agent
from novelforge.agent.project_agent import hard_iteration_limit as project_limit
from novelforge.agent.project_agent import run_project_agent
from novelforge.agent.registry import ToolDefinition, ToolRegistry
from novelforge.agent.state import OutlineToolResult, ProjectToolResult, create_project_state
from novelforge.errors import NovelForgeError, ToolNotFoundError
from novelforge.fakes import ScriptedCompletionClient
from novelforge.models import ChapterDraft, QCVerdict
from novelforge.qc.outline_quality import evaluate_outline_quality


def _always(tool):
    """每次都提出同一个工具的规划模型"""
    return ScriptedCompletionClient(handler=lambda request: json.dumps({"tool": tool, "reason": f"坚持 {tool}"}))


def _outline_registry(outline, target=10, calls=None):
    calls = calls if calls is not None else []

    def generate(state, tool_input):
        calls.append("generate_outline")
        return OutlineToolResult(kind="generated_outline", outline=outline, summary="生成")

    def critic(state, tool_input):
        calls.append("critic_outline")
        evaluation = evaluate_outline_quality(state.latest_outline, target, 8.0)
        return OutlineToolResult(kind="outline_critique", evaluation=evaluation, summary="评估")

    registry = ToolRegistry()
    registry.register(ToolDefinition("generate_outline", "生成", generate))
    registry.register(ToolDefinition("critic_outline", "评估", critic))
    return registry


class TestOutlineLoopTermination:
    """大纲循环的终止条件"""

    def test_hard_limit_formula(self):
        assert outline_limit(0) == 4
        assert outline_limit(2) == 8

    def test_always_failing_critic_stops_at_max_attempts(self, outline_factory, sleeps):
        calls = []
        broken = outline_factory(10, skip=(3, 4, 5))
        result = run_outline_agent(
            None, "", 10, max_retries=2, registry=_outline_registry(broken, calls=calls), sleep=sleeps.append,
        )
        assert result.attempts == 3
        assert calls.count("generate_outline") == 3
        assert not result.evaluation.passed
        assert "最大尝试次数 3" in result.done_reason
        assert result.history[-1].tool == "finish"

    def test_planner_stuck_on_critic_hits_safety_limit(self, outline_factory, sleeps):
        calls = []
        broken = outline_factory(10, skip=(3,))
        result = run_outline_agent(
            None, "", 10, max_retries=2,
            planner_client=_always("critic_outline"),
            registry=_outline_registry(broken, calls=calls),
            sleep=sleeps.append,
        )
        assert result.done_reason == "达到安全迭代上限 8，提前停止"
        assert len(calls) == 8
        # 没有大纲时 critic 提案被改写成 generate
        assert calls[0] == "generate_outline"
        assert calls[1:] == ["critic_outline"] * 7
        assert result.outline == broken

    def test_planner_finishing_early_is_critiqued_first(self, outline_factory, sleeps):
        calls = []
        result = run_outline_agent(
            None, "", 10,
            planner_client=_always("finish"),
            registry=_outline_registry(outline_factory(10), calls=calls),
            sleep=sleeps.append,
        )
        assert calls == ["generate_outline", "critic_outline"]
        assert result.evaluation.passed

    def test_planner_regenerating_unevaluated_draft_is_critiqued(self, outline_factory, sleeps):
        calls = []
        broken = outline_factory(10, skip=(3,))
        result = run_outline_agent(
            None, "", 10, max_retries=0,
            planner_client=_always("generate_outline"),
            registry=_outline_registry(broken, calls=calls),
            sleep=sleeps.append,
        )
        assert calls == ["generate_outline", "critic_outline"]
        assert not result.evaluation.passed
        assert "最大尝试次数 1" in result.done_reason

    def test_passing_outline_finishes_after_first_critique(self, outline_factory, sleeps):
        calls = []
        result = run_outline_agent(
            None, "", 10, registry=_outline_registry(outline_factory(10), calls=calls), sleep=sleeps.append,
        )
        assert calls == ["generate_outline", "critic_outline"]
        assert result.evaluation.passed
        assert "评分达到目标阈值" in result.done_reason


def _chapter_registry(generate=None, qc=None, commit=None, extra=None):
    def default_generate(state, tool_input):
        draft = ChapterDraft(chapter_index=state.current_chapter_index, chapter_text="正文")
        return ProjectToolResult(summary="生成", patch={"pending_chapter": draft})

    def default_qc(state, tool_input):
        return ProjectToolResult(summary="QC", patch={"pending_qc": QCVerdict(score=90, passed=True)})

    def default_commit(state, tool_input):
        return ProjectToolResult(summary="提交", patch={
            "current_chapter_index": state.pending_chapter.chapter_index + 1,
            "pending_chapter": None,
            "pending_qc": None,
        })

    registry = ToolRegistry()
    registry.register(ToolDefinition("generate_chapter", "生成", generate or default_generate))
    registry.register(ToolDefinition("qc_chapter", "QC", qc or default_qc))
    registry.register(ToolDefinition("commit_chapter", "提交", commit or default_commit))
    for tool in extra or ():
        registry.register(tool)
    return registry


class TestProjectLoopTermination:
    """项目循环的终止条件与错误分级"""

    @pytest.fixture
    def ready_state(self, outline_factory, characters):
        def factory(n=3, **kwargs):
            return create_project_state("demo", 10, n, outline=outline_factory(10), characters=characters, **kwargs)
        return factory

    def test_hard_limit_formula(self):
        assert project_limit(0) == 12
        assert project_limit(1) == 13
        assert project_limit(3) == 23

    def test_every_chapter_failing_is_skipped(self, ready_state, memory_store, make_services):
        def failing(state, tool_input):
            raise RuntimeError("写作模型超时")

        statuses = []
        result = run_project_agent(
            ready_state(),
            make_services(memory_store),
            on_status=statuses.append,
            registry=_chapter_registry(generate=failing),
        )
        assert result.failed_chapters == [1, 2, 3]
        assert result.generated == []
        assert result.done_reason.startswith("达到总章数上限")
        assert [e.chapter_index for e in statuses if e.type == "chapter_error"] == [1, 2, 3]

    def test_qc_failure_discards_draft_and_moves_on(self, ready_state, memory_store, make_services):
        attempts = []

        def flaky_qc(state, tool_input):
            attempts.append(state.pending_chapter.chapter_index)
            if state.pending_chapter.chapter_index == 2:
                raise ValueError("评审输出无法解析")
            return ProjectToolResult(summary="QC", patch={"pending_qc": QCVerdict(score=90, passed=True)})

        result = run_project_agent(
            ready_state(), make_services(memory_store), registry=_chapter_registry(qc=flaky_qc),
        )
        assert attempts == [1, 2, 3]
        assert result.failed_chapters == [2]

    def test_commit_failure_propagates(self, ready_state, memory_store, make_services):
        def broken_commit(state, tool_input):
            raise NovelForgeError("磁盘已满")

        with pytest.raises(NovelForgeError, match="磁盘已满"):
            run_project_agent(ready_state(), make_services(memory_store), registry=_chapter_registry(commit=broken_commit))

    def test_ensure_outline_failure_propagates(self, characters, memory_store, make_services):
        def broken(state, tool_input):
            raise NovelForgeError("大纲模型不可用")

        registry = _chapter_registry(extra=[ToolDefinition("ensure_outline", "补齐大纲", broken)])
        state = create_project_state("demo", 10, 1, characters=characters)
        with pytest.raises(NovelForgeError, match="大纲模型不可用"):
            run_project_agent(state, make_services(memory_store), registry=registry)

    def test_unregistered_tool_raises(self, ready_state, memory_store, make_services):
        registry = ToolRegistry()
        registry.register(ToolDefinition("generate_chapter", "生成", lambda s, i: ProjectToolResult(summary="x")))
        state = ready_state().model_copy(update={
            "pending_chapter": ChapterDraft(chapter_index=1, chapter_text="正文"),
        })
        with pytest.raises(ToolNotFoundError) as exc:
            run_project_agent(state, make_services(memory_store), registry=registry)
        assert exc.value.available == ["generate_chapter"]

    def test_stalled_tool_hits_safety_limit(self, ready_state, memory_store, make_services):
        def stalled(state, tool_input):
            return ProjectToolResult(summary="什么也没发生")

        result = run_project_agent(
            ready_state(n=1), make_services(memory_store), registry=_chapter_registry(generate=stalled),
        )
        limit = project_limit(1)
        assert result.done_reason == f"达到安全迭代上限 {limit}，提前停止"
        assert result.attempts == limit + 1

    def test_adversarial_planner_cannot_run_forever(self, ready_state, memory_store, make_services):
        def stalled(state, tool_input):
            return ProjectToolResult(summary="什么也没发生")

        services = make_services(memory_store, planner=_always("qc_chapter"))
        result = run_project_agent(ready_state(n=2), services, registry=_chapter_registry(generate=stalled))
        assert result.attempts <= project_limit(2) + 1
        assert result.generated == []

    def test_stop_signal_checked_before_each_iteration(self, ready_state, memory_store, make_services):
        checks = []

        def should_continue():
            checks.append(1)
            return len(checks) < 3

        decisions = []
        result = run_project_agent(
            ready_state(),
            make_services(memory_store),
            should_continue=should_continue,
            on_decision=lambda i, d, s: decisions.append((i, d.tool)),
            registry=_chapter_registry(),
        )
        assert result.done_reason == "任务已被用户暂停或停止"
        assert decisions == [(1, "generate_chapter"), (2, "qc_chapter")]
        assert result.attempts == 3

    def test_missing_outline_without_auto_prepare_finishes(self, memory_store, make_services):
        state = create_project_state("demo", 10, 3, auto_prepare_outline=False)
        result = run_project_agent(state, make_services(memory_store), registry=_chapter_registry())
        assert result.done_reason == "缺少大纲且未开启自动补齐，停止"
        assert result.attempts == 1
