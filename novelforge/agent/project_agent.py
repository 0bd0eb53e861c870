"""
项目级批量生成 Agent

从持久化状态出发连续生成若干章：每轮先检查外部停止信号与完成条件，
再由规划器选工具执行。生成/QC/修复阶段的失败记为失败章节并跳到下一章；
补齐物料与提交阶段的失败直接向上抛出（提交冲突需要调用方重新读取状态）；
被本次跳过的章节挡住的提交不算冲突，运行带着说明正常结束。

开发者: jamesenh
开发时间: 2026-01-23
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from novelforge.agent.planner import plan_project_next_action
from novelforge.agent.project_tools import ProjectRegistry, ProjectToolContext, StatusCallback, create_project_tools
from novelforge.agent.state import (
    FINISH,
    ProjectAgentState,
    apply_project_result,
    create_project_state,
    mark_project_done,
    recover_from_tool_error,
)
from novelforge.errors import CommitConflictError, ProjectNotFoundError
from novelforge.models import GeneratedChapterRecord, HistoryEntry, PlannerDecision
from novelforge.runtime.services import EngineServices

logger = logging.getLogger(__name__)

RECOVERABLE_TOOLS = ("generate_chapter", "qc_chapter", "repair_chapter")

DecisionCallback = Callable[[int, PlannerDecision, ProjectAgentState], None]


@dataclass
class ProjectAgentRunResult:
    generated: List[GeneratedChapterRecord]
    failed_chapters: List[int]
    attempts: int
    done_reason: str
    history: List[HistoryEntry]


def hard_iteration_limit(target_chapters: int) -> int:
    """每章最多 4 步（生成、QC、修复、提交），另加余量"""
    return max(12, target_chapters * 5 + 8)


def done_reason_for(state: ProjectAgentState) -> str:
    if len(state.generated) >= state.target_chapters_to_generate:
        return f"目标完成：已生成 {len(state.generated)}/{state.target_chapters_to_generate} 章"
    if state.current_chapter_index > state.end_chapter_index:
        return f"达到总章数上限：next={state.current_chapter_index}, total={state.end_chapter_index}"
    return "执行结束"


def finish_after_skipped_chapter(state: ProjectAgentState, error: CommitConflictError) -> ProjectAgentState:
    """本次运行跳过的章节挡住了后续提交：丢弃草稿并正常结束"""
    state = state.model_copy(update={
        "pending_chapter": None,
        "pending_qc": None,
        "failed_chapters": sorted({*state.failed_chapters, error.chapter_index}),
    })
    return mark_project_done(state, (
        f"第 {error.actual_index} 章生成失败，第 {error.chapter_index} 章无法按序提交；"
        f"请从第 {error.actual_index} 章重新开始"
    ))


def prepare_project_state(
    services: EngineServices,
    project_id: str,
    chapters_to_generate: int,
    bible: str = "",
    **kwargs,
) -> ProjectAgentState:
    """
    从存储读取项目进度，构造本次运行的初始状态

    Raises:
        ProjectNotFoundError: 项目不存在
    """
    persisted = services.store.load_state(project_id)
    if persisted is None:
        raise ProjectNotFoundError(project_id)

    return create_project_state(
        project_id,
        persisted.total_chapters,
        chapters_to_generate,
        start_chapter_index=persisted.next_chapter_index,
        project_name=persisted.project_name,
        bible=bible,
        rolling_summary=persisted.rolling_summary,
        open_loops=persisted.open_loops,
        outline=services.store.load_outline(project_id),
        characters=services.store.load_characters(project_id),
        max_repair_attempts=services.config.max_repair_attempts,
        **kwargs,
    )


def run_project_agent(
    initial_state: ProjectAgentState,
    services: EngineServices,
    should_continue: Optional[Callable[[], bool]] = None,
    on_decision: Optional[DecisionCallback] = None,
    on_status: Optional[StatusCallback] = None,
    registry: Optional[ProjectRegistry] = None,
) -> ProjectAgentRunResult:
    """
    运行项目级循环

    Args:
        initial_state: 初始状态（通常来自 prepare_project_state）
        services: 引擎依赖
        should_continue: 每轮开始前调用，返回 False 时停止
        on_decision: 每次规划后回调 (迭代序号, 决策, 当前状态)
        on_status: 工具进度回调
        registry: 自定义工具注册表（测试注入）

    Returns:
        ProjectAgentRunResult

    Raises:
        CommitConflictError: 提交时持久化进度已被其他写入方推进（本次运行跳过章节导致的错位以结束原因返回）
        NovelForgeError: 补齐大纲/人物或提交阶段的其他失败
    """
    context = ProjectToolContext(services, on_status)
    tools = registry or create_project_tools(context)
    state = initial_state
    hard_limit = hard_iteration_limit(state.target_chapters_to_generate)

    while not state.done and state.iteration < hard_limit:
        if should_continue is not None and not should_continue():
            state = mark_project_done(state, "任务已被用户暂停或停止")
            break

        if state.goal_reached:
            state = mark_project_done(state, done_reason_for(state))
            break

        decision = plan_project_next_action(state, services.planner, sleep=services.sleep)
        if on_decision:
            on_decision(state.iteration + 1, decision, state)

        if decision.tool == FINISH:
            state = mark_project_done(state, decision.reason)
            break

        tool = tools.get(decision.tool)
        try:
            result = tool.execute(state, decision.input)
        except Exception as e:
            chapter_index = state.pending_chapter.chapter_index if state.pending_chapter else state.current_chapter_index
            logger.error("❌ 工具 %s 执行失败（第 %s 章）: %s", decision.tool, chapter_index, e)
            context.emit("chapter_error", f"Tool {decision.tool} 执行失败: {e}", chapter_index, tool=decision.tool)
            if isinstance(e, CommitConflictError) and e.actual_index in state.failed_chapters:
                state = finish_after_skipped_chapter(state, e)
                break
            if decision.tool not in RECOVERABLE_TOOLS:
                raise
            state = recover_from_tool_error(state, decision, e)
            continue

        state = apply_project_result(state, decision, result)

    if not state.done:
        state = mark_project_done(state, f"达到安全迭代上限 {hard_limit}，提前停止")

    logger.info(
        "✅ 项目 Agent 结束: %s（生成 %s 章，失败 %s 章）",
        state.done_reason, len(state.generated), len(state.failed_chapters),
    )
    return ProjectAgentRunResult(
        generated=state.generated,
        failed_chapters=state.failed_chapters,
        attempts=state.iteration,
        done_reason=state.done_reason or "完成",
        history=state.history,
    )
