"""
大纲生成 Agent

generate_outline / critic_outline 两个工具，由规划器逐步决策：
生成 → 评估 → 不达标则带修订意见重写，直到评分通过或尝试次数耗尽。
最终返回历次评估中得分最高的版本。

开发者: jamesenh
开发时间: 2026-01-22
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from novelforge.agent.planner import plan_outline_next_action
from novelforge.agent.registry import ToolDefinition, ToolRegistry
from novelforge.agent.state import (
    FINISH,
    OutlineAgentState,
    OutlineToolResult,
    apply_outline_result,
    mark_outline_done,
)
from novelforge.errors import NovelForgeError, ToolPreconditionError
from novelforge.generation.story_setup import ProgressCallback, generate_full_outline
from novelforge.llm import TextCompletionClient
from novelforge.models import CharacterGraph, HistoryEntry, NovelOutline, PlannerDecision
from novelforge.qc.outline_quality import OutlineQualityEvaluation, evaluate_outline_quality

logger = logging.getLogger(__name__)

OutlineRegistry = ToolRegistry[OutlineAgentState, OutlineToolResult]


@dataclass
class OutlineAgentRunResult:
    outline: NovelOutline
    evaluation: OutlineQualityEvaluation
    attempts: int
    history: List[HistoryEntry]
    done_reason: str


def hard_iteration_limit(max_retries: int) -> int:
    """每次尝试最多两步（生成 + 评估），另留 2 步余量"""
    return (max_retries + 1) * 2 + 2


def read_revision_notes(tool_input: Dict[str, Any]) -> Optional[str]:
    value = tool_input.get("revision_notes") or tool_input.get("revisionNotes")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def create_outline_tools(
    client: TextCompletionClient,
    bible: str,
    target_chapters: int,
    target_word_count: int,
    target_score: float,
    characters: Optional[CharacterGraph] = None,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> OutlineRegistry:
    registry: OutlineRegistry = ToolRegistry()

    def generate_outline(state: OutlineAgentState, tool_input: Dict[str, Any]) -> OutlineToolResult:
        attempt = state.outline_version + 1

        def forward(event: str, data: Dict[str, Any]) -> None:
            if on_progress:
                on_progress(event, {"attempt": attempt, **data})

        outline = generate_full_outline(
            client,
            bible,
            target_chapters,
            target_word_count,
            revision_notes=read_revision_notes(tool_input),
            characters=characters,
            on_progress=forward,
            sleep=sleep,
        )
        return OutlineToolResult(
            kind="generated_outline",
            outline=outline,
            summary=f"生成第 {attempt} 版大纲，含 {len(outline.volumes)} 卷",
        )

    def critic_outline(state: OutlineAgentState, tool_input: Dict[str, Any]) -> OutlineToolResult:
        if state.latest_outline is None:
            raise ToolPreconditionError("critic_outline", "没有可评估的大纲")
        evaluation = evaluate_outline_quality(state.latest_outline, target_chapters, target_score)
        if on_progress:
            on_progress("critic", {
                "attempt": state.outline_version,
                "score": evaluation.score,
                "passed": evaluation.passed,
                "issues": evaluation.issues,
            })
        return OutlineToolResult(
            kind="outline_critique",
            evaluation=evaluation,
            summary=f"大纲评分 {evaluation.score} / 10{'（通过）' if evaluation.passed else '（未通过）'}",
        )

    registry.register(ToolDefinition("generate_outline", "生成或重写整本书的大纲（总纲 + 分卷章节）", generate_outline))
    registry.register(ToolDefinition("critic_outline", "对当前大纲进行质量评估并给出改写信号", critic_outline))
    return registry


def run_outline_agent(
    client: TextCompletionClient,
    bible: str,
    target_chapters: int,
    target_word_count: int = 0,
    max_retries: int = 2,
    target_score: float = 8.0,
    planner_client: Optional[TextCompletionClient] = None,
    goal: Optional[str] = None,
    characters: Optional[CharacterGraph] = None,
    on_decision: Optional[Callable[[int, PlannerDecision, OutlineAgentState], None]] = None,
    on_progress: Optional[ProgressCallback] = None,
    registry: Optional[OutlineRegistry] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> OutlineAgentRunResult:
    """
    运行大纲生成循环

    Args:
        client: 大纲模型客户端
        bible: 核心设定
        target_chapters: 目标章数
        target_word_count: 目标字数（万字）
        max_retries: 首次生成之外允许的重写次数
        target_score: 通过分数线（0-10）
        planner_client: 规划模型客户端，None 时只用确定性转移表
        registry: 自定义工具注册表（测试注入）

    Returns:
        OutlineAgentRunResult

    Raises:
        NovelForgeError: 循环结束时仍没有任何大纲或评估
    """
    state = OutlineAgentState(
        target_chapters=target_chapters,
        target_word_count=target_word_count,
        target_score=target_score,
        max_retries=max_retries,
        **({"goal": goal} if goal else {}),
    )
    hard_limit = hard_iteration_limit(max_retries)
    tools = registry or create_outline_tools(
        client, bible, target_chapters, target_word_count, target_score,
        characters=characters, on_progress=on_progress, sleep=sleep,
    )

    while not state.done and state.iteration < hard_limit:
        decision = plan_outline_next_action(state, planner_client, sleep=sleep)
        if on_decision:
            on_decision(state.iteration + 1, decision, state)

        if decision.tool == FINISH:
            state = mark_outline_done(state, decision.reason)
            break

        if decision.tool == "generate_outline":
            logger.info("📝 第 %s/%s 次生成大纲: %s", state.outline_version + 1, state.max_attempts, decision.reason)
            if on_progress:
                on_progress("attempt_start", {
                    "attempt": state.outline_version + 1,
                    "max_attempts": state.max_attempts,
                    "reason": decision.reason,
                })

        tool = tools.get(decision.tool)
        result = tool.execute(state, decision.input)
        state = apply_outline_result(state, decision, result)

        latest = state.latest_evaluation
        if latest is not None and latest.passed:
            state = mark_outline_done(state, f"评分达到目标阈值（{latest.score} / {target_score}）")
            break
        if latest is not None and state.outline_version >= state.max_attempts:
            state = mark_outline_done(
                state,
                f"达到最大尝试次数 {state.max_attempts}，当前最佳评分 {latest.score} / {target_score}",
            )
            break

    if not state.done:
        state = mark_outline_done(state, f"达到安全迭代上限 {hard_limit}，提前停止")

    outline = state.best_outline or state.latest_outline
    evaluation = state.best_evaluation or state.latest_evaluation
    if outline is None:
        raise NovelForgeError("大纲 Agent 结束时没有产出任何大纲")
    if evaluation is None:
        raise NovelForgeError("大纲 Agent 结束时没有任何质量评估")

    logger.info("✅ 大纲 Agent 结束: %s（评分 %s）", state.done_reason, evaluation.score)
    return OutlineAgentRunResult(
        outline=outline,
        evaluation=evaluation,
        attempts=state.outline_version,
        history=state.history,
        done_reason=state.done_reason or "完成",
    )
