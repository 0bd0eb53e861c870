"""
Agent 状态与状态转换

两种编排循环的状态都是不可变的 pydantic 模型：每次工具执行、结束或出错恢复
都通过 model_copy(update=...) 产生新对象，历史记录只追加不修改。

开发者: jamesenh
开发时间: 2026-01-22
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from novelforge.models import (
    ChapterDraft,
    CharacterGraph,
    GeneratedChapterRecord,
    HistoryEntry,
    NovelOutline,
    PlannerDecision,
    QCVerdict,
)
from novelforge.qc.outline_quality import OutlineQualityEvaluation

FINISH = "finish"


# ==================== 大纲 Agent ====================

class OutlineAgentState(BaseModel):
    """大纲生成循环的状态"""
    model_config = ConfigDict(frozen=True)

    goal: str = Field(default="完成一个结构完整、覆盖目标章数的小说大纲", description="目标")
    target_chapters: int = Field(description="目标章数")
    target_word_count: int = Field(default=0, description="目标字数（万字）")
    target_score: float = Field(default=8.0, description="通过分数线（0-10）")
    max_retries: int = Field(default=2, description="最大重试次数")
    iteration: int = Field(default=0, description="已执行步数")
    outline_version: int = Field(default=0, description="已生成的大纲版本数")
    latest_outline: Optional[NovelOutline] = None
    latest_evaluation: Optional[OutlineQualityEvaluation] = None
    best_outline: Optional[NovelOutline] = None
    best_evaluation: Optional[OutlineQualityEvaluation] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    done: bool = False
    done_reason: Optional[str] = None

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class OutlineToolResult(BaseModel):
    """大纲工具的执行结果"""
    kind: Literal["generated_outline", "outline_critique"]
    summary: str
    outline: Optional[NovelOutline] = None
    evaluation: Optional[OutlineQualityEvaluation] = None


def apply_outline_result(
    state: OutlineAgentState,
    decision: PlannerDecision,
    result: OutlineToolResult,
) -> OutlineAgentState:
    iteration = state.iteration + 1

    if result.kind == "generated_outline":
        return state.model_copy(update={
            "iteration": iteration,
            "outline_version": state.outline_version + 1,
            "latest_outline": result.outline,
            "latest_evaluation": None,
            "history": [*state.history, HistoryEntry(
                iteration=iteration, tool=decision.tool, reason=decision.reason, summary=result.summary,
            )],
        })

    evaluation = result.evaluation
    update: Dict[str, Any] = {
        "iteration": iteration,
        "latest_evaluation": evaluation,
        "history": [*state.history, HistoryEntry(
            iteration=iteration, tool=decision.tool, reason=decision.reason,
            summary=result.summary, score=evaluation.score if evaluation else None,
        )],
    }
    if (
        evaluation is not None
        and state.latest_outline is not None
        and (state.best_evaluation is None or evaluation.score > state.best_evaluation.score)
    ):
        update["best_outline"] = state.latest_outline
        update["best_evaluation"] = evaluation
    return state.model_copy(update=update)


def mark_outline_done(state: OutlineAgentState, reason: str) -> OutlineAgentState:
    if state.done:
        return state
    score = None
    if state.latest_evaluation is not None:
        score = state.latest_evaluation.score
    elif state.best_evaluation is not None:
        score = state.best_evaluation.score
    return state.model_copy(update={
        "done": True,
        "done_reason": reason,
        "history": [*state.history, HistoryEntry(
            iteration=state.iteration + 1, tool=FINISH, reason=reason, summary=reason, score=score,
        )],
    })


# ==================== 项目 Agent ====================

class ProjectAgentState(BaseModel):
    """项目级批量生成循环的状态"""
    model_config = ConfigDict(frozen=True)

    project_id: str
    project_name: str = ""
    goal: str = ""
    bible: str = ""
    total_chapters: int
    target_chapters_to_generate: int
    start_chapter_index: int = 1
    current_chapter_index: int = 1
    end_chapter_index: int
    max_repair_attempts: int = 1
    iteration: int = 0
    done: bool = False
    done_reason: Optional[str] = None
    outline: Optional[NovelOutline] = None
    characters: Optional[CharacterGraph] = None
    rolling_summary: str = ""
    open_loops: List[str] = Field(default_factory=list)
    pending_chapter: Optional[ChapterDraft] = None
    pending_qc: Optional[QCVerdict] = None
    generated: List[GeneratedChapterRecord] = Field(default_factory=list)
    failed_chapters: List[int] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    auto_prepare_outline: bool = True
    auto_prepare_characters: bool = True

    @property
    def goal_reached(self) -> bool:
        return (
            len(self.generated) >= self.target_chapters_to_generate
            or self.current_chapter_index > self.end_chapter_index
        )


class ProjectToolResult(BaseModel):
    """项目工具的执行结果：摘要 + 状态补丁"""
    summary: str
    patch: Dict[str, Any] = Field(default_factory=dict)


def create_project_state(
    project_id: str,
    total_chapters: int,
    chapters_to_generate: int,
    start_chapter_index: int = 1,
    **kwargs,
) -> ProjectAgentState:
    """从持久化的下一章序号推导本次运行的起止范围"""
    start = max(1, start_chapter_index)
    end = min(total_chapters, start + max(0, chapters_to_generate) - 1)
    goal = kwargs.pop("goal", None) or f"从第 {start} 章开始连续生成 {chapters_to_generate} 章"
    return ProjectAgentState(
        project_id=project_id,
        total_chapters=total_chapters,
        target_chapters_to_generate=chapters_to_generate,
        start_chapter_index=start,
        current_chapter_index=start,
        end_chapter_index=end,
        goal=goal,
        **kwargs,
    )


def apply_project_result(
    state: ProjectAgentState,
    decision: PlannerDecision,
    result: ProjectToolResult,
) -> ProjectAgentState:
    iteration = state.iteration + 1
    update = dict(result.patch)
    update["iteration"] = iteration
    update["history"] = [*state.history, HistoryEntry(
        iteration=iteration, tool=decision.tool, reason=decision.reason, summary=result.summary,
    )]
    return state.model_copy(update=update)


def mark_project_done(state: ProjectAgentState, reason: str) -> ProjectAgentState:
    if state.done:
        return state
    iteration = state.iteration + 1
    return state.model_copy(update={
        "done": True,
        "done_reason": reason,
        "iteration": iteration,
        "history": [*state.history, HistoryEntry(iteration=iteration, tool=FINISH, reason=reason, summary=reason)],
    })


def recover_from_tool_error(
    state: ProjectAgentState,
    decision: PlannerDecision,
    error: Exception,
) -> ProjectAgentState:
    """记录失败章节并跳到下一章，丢弃待提交的草稿与 QC"""
    chapter_index = state.pending_chapter.chapter_index if state.pending_chapter else state.current_chapter_index
    iteration = state.iteration + 1
    return state.model_copy(update={
        "iteration": iteration,
        "current_chapter_index": chapter_index + 1,
        "pending_chapter": None,
        "pending_qc": None,
        "failed_chapters": sorted({*state.failed_chapters, chapter_index}),
        "history": [*state.history, HistoryEntry(
            iteration=iteration, tool=decision.tool, reason=decision.reason,
            summary=f"第 {chapter_index} 章执行失败，已跳过: {error}",
        )],
    })
