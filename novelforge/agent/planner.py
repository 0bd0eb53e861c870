"""
决策规划器

每一步只决定下一个工具。确定性回退由显式的转移表给出：表按顺序匹配，
最后一条必须是无条件兜底，加载模块时做完备性检查。
模型辅助路径让补全模型提出 JSON 决策，校验失败一律回退；
提案再经过规范化，把当前状态下不合法的选择改写为合法决策。

开发者: jamesenh
开发时间: 2026-01-22
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from novelforge.chains.structured import parse_structured
from novelforge.errors import NovelForgeError
from novelforge.llm import CompletionRequest, TextCompletionClient, generate_text_with_retry
from novelforge.models import PlannerDecision
from novelforge.agent.state import FINISH, OutlineAgentState, ProjectAgentState

logger = logging.getLogger(__name__)

OUTLINE_TOOLS = ("generate_outline", "critic_outline", FINISH)
PROJECT_TOOLS = (
    "ensure_outline",
    "ensure_characters",
    "generate_chapter",
    "qc_chapter",
    "repair_chapter",
    "commit_chapter",
    FINISH,
)
CHAPTER_BOUND_TOOLS = ("qc_chapter", "repair_chapter", "commit_chapter")

MAX_REVISION_ISSUES = 8


@dataclass(frozen=True)
class Transition:
    """转移表中的一条规则；when 为 None 表示无条件兜底"""
    name: str
    tool: str
    reason: Callable[[Any], str]
    when: Optional[Callable[[Any], bool]] = None
    input: Optional[Callable[[Any], Dict[str, Any]]] = None


def check_totality(table: Sequence[Transition], tools: Sequence[str]) -> None:
    """
    校验转移表

    Raises:
        ValueError: 表为空、兜底规则不在末尾或引用了未知工具
    """
    if not table:
        raise ValueError("transition table is empty")
    catch_all = [t.name for t in table if t.when is None]
    if catch_all != [table[-1].name]:
        raise ValueError(f"transition table needs exactly one trailing catch-all rule, got {catch_all}")
    unknown = [t.tool for t in table if t.tool not in tools]
    if unknown:
        raise ValueError(f"transition table references unknown tools: {unknown}")


def evaluate_table(table: Sequence[Transition], state: Any) -> PlannerDecision:
    for rule in table:
        if rule.when is None or rule.when(state):
            return PlannerDecision(
                tool=rule.tool,
                reason=rule.reason(state),
                input=rule.input(state) if rule.input else {},
            )
    raise ValueError("transition table fell through")  # check_totality 保证不可达


# ==================== 大纲规划 ====================

def _revision_notes(state: OutlineAgentState) -> Dict[str, Any]:
    notes = "；".join(state.latest_evaluation.issues[:MAX_REVISION_ISSUES])
    return {"revision_notes": notes} if notes else {}


OUTLINE_TRANSITIONS = (
    Transition(
        "no_draft", "generate_outline",
        lambda s: "尚无候选大纲，先生成第一版大纲",
        when=lambda s: s.latest_outline is None,
    ),
    Transition(
        "unevaluated", "critic_outline",
        lambda s: "已有候选大纲，需要先评估质量",
        when=lambda s: s.latest_evaluation is None,
    ),
    Transition(
        "passed", FINISH,
        lambda s: f"质量评分达到 {s.latest_evaluation.score}，满足目标阈值",
        when=lambda s: s.latest_evaluation.passed,
    ),
    Transition(
        "exhausted", FINISH,
        lambda s: f"已达到最大尝试次数 {s.max_attempts}，停止重试",
        when=lambda s: s.outline_version >= s.max_attempts,
    ),
    Transition(
        "revise", "generate_outline",
        lambda s: f"当前评分 {s.latest_evaluation.score} 低于目标 {s.target_score}，继续修复重试",
        input=_revision_notes,
    ),
)


def fallback_outline_decision(state: OutlineAgentState) -> PlannerDecision:
    return evaluate_table(OUTLINE_TRANSITIONS, state)


def normalize_outline_decision(state: OutlineAgentState, decision: PlannerDecision) -> PlannerDecision:
    unevaluated = (
        state.latest_outline is not None
        and state.latest_evaluation is None
        and state.best_evaluation is None
    )
    if unevaluated and decision.tool in ("generate_outline", FINISH):
        return PlannerDecision(tool="critic_outline", reason="候选大纲尚未评估，先执行质量评估")
    if decision.tool == "generate_outline" and state.outline_version >= state.max_attempts:
        return PlannerDecision(tool=FINISH, reason=f"已达到最大尝试次数 {state.max_attempts}，停止重试")
    if decision.tool == "critic_outline" and state.latest_outline is None:
        return PlannerDecision(tool="generate_outline", reason="当前没有候选大纲，回退到生成步骤")
    if decision.tool == FINISH and state.latest_outline is None:
        return PlannerDecision(tool="generate_outline", reason="当前没有可用结果，不能结束，先生成大纲")
    return decision


class _OutlineDecisionPayload(BaseModel):
    tool: Literal["generate_outline", "critic_outline", "finish"]
    reason: str = Field(min_length=1)
    input: Optional[Dict[str, Any]] = None


OUTLINE_PLANNER_SYSTEM = """
你是小说大纲生成 Agent 的 Planner。你只能做一步决策：
1. generate_outline: 生成/重写大纲
2. critic_outline: 评估当前大纲质量
3. finish: 停止循环

只输出严格 JSON，不要输出任何额外文字。
JSON 结构：
{
  "tool": "generate_outline|critic_outline|finish",
  "reason": "简短决策理由",
  "input": {"revision_notes": "可选，重写注意事项"}
}
""".strip()


def build_outline_planner_prompt(state: OutlineAgentState) -> str:
    evaluation = state.latest_evaluation
    history = "\n".join(f"- [{h.tool}] {h.summary}" for h in state.history[-5:]) or "- 无"
    return f"""
【目标】
{state.goal}

【状态】
- 当前迭代步数: {state.iteration}
- 已生成大纲版本: {state.outline_version}/{state.max_attempts}
- 目标评分: {state.target_score}
- 是否已有候选大纲: {'是' if state.latest_outline else '否'}
- 最近评分: {evaluation.score if evaluation else '无'}
- 最近是否通过: {evaluation.passed if evaluation else False}
- 最近问题: {'；'.join(evaluation.issues[:6]) if evaluation and evaluation.issues else '无'}

【最近历史】
{history}

【决策约束】
- 没有候选大纲时，只能选择 generate_outline
- 有候选大纲但未评估时，只能选择 critic_outline
- 评分达标或达到最大尝试次数时，优先选择 finish
- 如果评分不达标且还有重试配额，选择 generate_outline，并在 input.revision_notes 给出改写重点
""".strip()


def plan_outline_next_action(
    state: OutlineAgentState,
    client: Optional[TextCompletionClient] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PlannerDecision:
    """规划大纲循环的下一步；未提供模型客户端时直接走转移表"""
    fallback = fallback_outline_decision(state)
    if client is None:
        return fallback

    try:
        raw = generate_text_with_retry(
            client,
            CompletionRequest(
                system=OUTLINE_PLANNER_SYSTEM,
                prompt=build_outline_planner_prompt(state),
                temperature=0.2,
                max_tokens=240,
            ),
            max_retries=2,
            sleep=sleep,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 大纲规划器调用失败，回退到确定性决策: %s", e)
        return fallback

    result = parse_structured(raw, _OutlineDecisionPayload)
    if not result:
        logger.warning("⚠️ 大纲规划器输出无效，回退到确定性决策: %s", "; ".join(result.error_messages[:3]))
        return fallback

    payload: _OutlineDecisionPayload = result.value
    proposal = PlannerDecision(tool=payload.tool, reason=payload.reason, input=payload.input or {})
    return normalize_outline_decision(state, proposal)


# ==================== 项目规划 ====================

PROJECT_TRANSITIONS = (
    Transition(
        "target_reached", FINISH,
        lambda s: f"目标完成：已生成 {len(s.generated)}/{s.target_chapters_to_generate} 章",
        when=lambda s: len(s.generated) >= s.target_chapters_to_generate,
    ),
    Transition(
        "beyond_end", FINISH,
        lambda s: f"达到总章数上限：next={s.current_chapter_index}, total={s.end_chapter_index}",
        when=lambda s: s.current_chapter_index > s.end_chapter_index,
    ),
    Transition(
        "prepare_outline", "ensure_outline",
        lambda s: "缺少大纲，先补齐大纲",
        when=lambda s: s.outline is None and s.auto_prepare_outline,
    ),
    Transition(
        "missing_outline", FINISH,
        lambda s: "缺少大纲且未开启自动补齐，停止",
        when=lambda s: s.outline is None,
    ),
    Transition(
        "prepare_characters", "ensure_characters",
        lambda s: "缺少人物关系图，先补齐角色设定",
        when=lambda s: s.characters is None and s.auto_prepare_characters,
    ),
    Transition(
        "missing_characters", FINISH,
        lambda s: "缺少人物关系图且未开启自动补齐，停止",
        when=lambda s: s.characters is None,
    ),
    Transition(
        "no_draft", "generate_chapter",
        lambda s: f"开始生成第 {s.current_chapter_index} 章",
        when=lambda s: s.pending_chapter is None,
    ),
    Transition(
        "unchecked", "qc_chapter",
        lambda s: f"对第 {s.pending_chapter.chapter_index} 章执行 QC",
        when=lambda s: s.pending_qc is None,
    ),
    Transition(
        "repairable", "repair_chapter",
        lambda s: f"第 {s.pending_chapter.chapter_index} 章 QC 未通过，尝试修复",
        when=lambda s: not s.pending_qc.passed and s.pending_chapter.repair_count < s.max_repair_attempts,
    ),
    Transition(
        "commit", "commit_chapter",
        lambda s: f"提交第 {s.pending_chapter.chapter_index} 章（QC: {s.pending_qc.score}）",
    ),
)


def fallback_project_decision(state: ProjectAgentState) -> PlannerDecision:
    return evaluate_table(PROJECT_TRANSITIONS, state)


def normalize_project_decision(state: ProjectAgentState, decision: PlannerDecision) -> PlannerDecision:
    if state.outline is None and decision.tool not in ("ensure_outline", FINISH):
        return fallback_project_decision(state)
    if state.outline is not None and state.characters is None and decision.tool == "generate_chapter":
        return fallback_project_decision(state)
    if state.pending_chapter is None and decision.tool in CHAPTER_BOUND_TOOLS:
        return fallback_project_decision(state)
    if state.pending_chapter is not None:
        # 候选章节必须先 QC，且在提交前不能被新章节覆盖
        if state.pending_qc is None and decision.tool != "qc_chapter":
            return fallback_project_decision(state)
        if decision.tool not in CHAPTER_BOUND_TOOLS + (FINISH,):
            return fallback_project_decision(state)
        if (
            decision.tool == "repair_chapter"
            and state.pending_chapter.repair_count >= state.max_repair_attempts
        ):
            return fallback_project_decision(state)
    if len(state.generated) >= state.target_chapters_to_generate and decision.tool != FINISH:
        return PlannerDecision(
            tool=FINISH,
            reason=f"目标已达成：{len(state.generated)}/{state.target_chapters_to_generate}",
        )
    return decision


class _ProjectDecisionPayload(BaseModel):
    tool: Literal[
        "ensure_outline", "ensure_characters", "generate_chapter",
        "qc_chapter", "repair_chapter", "commit_chapter", "finish",
    ]
    reason: str = Field(min_length=1)
    input: Optional[Dict[str, Any]] = None


PROJECT_PLANNER_SYSTEM = """
你是小说项目级 Agent Planner。你每次只能选择一个动作。

可选动作：
- ensure_outline
- ensure_characters
- generate_chapter
- qc_chapter
- repair_chapter
- commit_chapter
- finish

输出严格 JSON：
{"tool": "...", "reason": "...", "input": {}}
""".strip()


def build_project_planner_prompt(state: ProjectAgentState) -> str:
    qc = state.pending_qc
    history = "\n".join(f"- [{h.tool}] {h.summary}" for h in state.history[-6:]) or "- 无"
    return f"""
【目标】
{state.goal}

【进度】
- target_chapters_to_generate: {state.target_chapters_to_generate}
- generated_count: {len(state.generated)}
- current_chapter_index: {state.current_chapter_index}
- end_chapter_index: {state.end_chapter_index}

【状态】
- has_outline: {str(state.outline is not None).lower()}
- has_characters: {str(state.characters is not None).lower()}
- has_pending_chapter: {str(state.pending_chapter is not None).lower()}
- has_pending_qc: {str(qc is not None).lower()}
- pending_qc_passed: {str(bool(qc and qc.passed)).lower()}
- pending_qc_score: {qc.score if qc else 'null'}
- pending_repair_count: {state.pending_chapter.repair_count if state.pending_chapter else 0}
- max_repair_attempts: {state.max_repair_attempts}

【配置】
- auto_generate_outline: {str(state.auto_prepare_outline).lower()}
- auto_generate_characters: {str(state.auto_prepare_characters).lower()}

【最近历史】
{history}

【决策约束】
1. 缺大纲时只能 ensure_outline 或 finish
2. 缺人物图时只能 ensure_characters 或 finish
3. 有 pending_chapter 且无 pending_qc 时必须 qc_chapter
4. pending_qc 未通过且 repair 额度未耗尽时优先 repair_chapter
5. 只有 pending_chapter 存在时才能 commit_chapter
6. 完成目标章节数后必须 finish
""".strip()


def plan_project_next_action(
    state: ProjectAgentState,
    client: Optional[TextCompletionClient] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PlannerDecision:
    """规划项目循环的下一步；未提供模型客户端时直接走转移表"""
    fallback = fallback_project_decision(state)
    if client is None:
        return fallback

    try:
        raw = generate_text_with_retry(
            client,
            CompletionRequest(
                system=PROJECT_PLANNER_SYSTEM,
                prompt=build_project_planner_prompt(state),
                temperature=0.1,
                max_tokens=220,
            ),
            max_retries=2,
            sleep=sleep,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 项目规划器调用失败，回退到确定性决策: %s", e)
        return fallback

    result = parse_structured(raw, _ProjectDecisionPayload)
    if not result:
        logger.warning("⚠️ 项目规划器输出无效，回退到确定性决策: %s", "; ".join(result.error_messages[:3]))
        return fallback

    payload: _ProjectDecisionPayload = result.value
    proposal = PlannerDecision(tool=payload.tool, reason=payload.reason, input=payload.input or {})
    return normalize_project_decision(state, proposal)


check_totality(OUTLINE_TRANSITIONS, OUTLINE_TOOLS)
check_totality(PROJECT_TRANSITIONS, PROJECT_TOOLS)
