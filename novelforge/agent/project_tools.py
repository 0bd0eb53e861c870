"""
项目级工具

ensure_outline / ensure_characters 补齐前置物料；
generate_chapter → qc_chapter → (repair_chapter) → commit_chapter 完成一章。
候选章节只在 commit_chapter 落库，落库前校验持久化的下一章序号。

开发者: jamesenh
开发时间: 2026-01-23
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from novelforge.agent.outline_agent import run_outline_agent
from novelforge.agent.registry import ToolDefinition, ToolRegistry
from novelforge.agent.state import ProjectAgentState, ProjectToolResult
from novelforge.context.builder import ContextInputs
from novelforge.context.compressors import outline_character_mentions
from novelforge.errors import ToolPreconditionError
from novelforge.generation.chapter_text import chapter_title
from novelforge.generation.chapter_writer import ChapterWriteParams, write_chapter
from novelforge.generation.story_setup import generate_characters
from novelforge.knowledge.stores import (
    load_knowledge_stores,
    narrative_guide_for,
    save_knowledge_stores,
    update_after_commit,
)
from novelforge.models import GeneratedChapterRecord, OutlineChapter
from novelforge.qc.evaluator import deep_qc, quick_qc
from novelforge.qc.repair import repair_chapter
from novelforge.runtime.services import EngineServices

logger = logging.getLogger(__name__)

ENSURE_OUTLINE_RETRIES = 1
ENSURE_OUTLINE_TARGET_SCORE = 7.5
MAX_RECORD_ISSUES = 4


@dataclass
class StatusEvent:
    type: str
    message: str
    chapter_index: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)


StatusCallback = Callable[[StatusEvent], None]


@dataclass
class ProjectToolContext:
    services: EngineServices
    on_status: Optional[StatusCallback] = None

    def emit(self, type_: str, message: str, chapter_index: Optional[int] = None, **data) -> None:
        if self.on_status:
            self.on_status(StatusEvent(type_, message, chapter_index, data))


ProjectRegistry = ToolRegistry[ProjectAgentState, ProjectToolResult]


def estimate_target_word_count(total_chapters: int) -> int:
    """按每章约 2500 字估算总字数（万字），下限 20"""
    return max(20, math.ceil(total_chapters * 0.25))


def outline_goal_hint(chapter: Optional[OutlineChapter]) -> Optional[str]:
    if chapter is None:
        return None
    return f"【章节大纲】\n- 标题: {chapter.title}\n- 目标: {chapter.goal}\n- 章末钩子: {chapter.hook}"


def create_project_tools(context: ProjectToolContext) -> ProjectRegistry:
    services = context.services
    store = services.store
    config = services.config
    registry: ProjectRegistry = ToolRegistry()

    def ensure_outline(state: ProjectAgentState, tool_input: Dict[str, Any]) -> ProjectToolResult:
        if state.outline is not None:
            return ProjectToolResult(summary="已存在大纲，跳过生成")
        if not state.auto_prepare_outline:
            return ProjectToolResult(summary="未开启自动大纲生成，无法继续")

        context.emit("tool_progress", "缺少大纲，正在自动生成...", tool="ensure_outline")
        result = run_outline_agent(
            services.outline_client,
            state.bible,
            state.total_chapters,
            estimate_target_word_count(state.total_chapters),
            max_retries=ENSURE_OUTLINE_RETRIES,
            target_score=ENSURE_OUTLINE_TARGET_SCORE,
            planner_client=services.planner,
            characters=state.characters,
            sleep=services.sleep,
        )
        store.save_outline(state.project_id, result.outline)
        context.emit(
            "tool_progress", f"大纲生成完成，评分 {result.evaluation.score}/10",
            tool="ensure_outline", score=result.evaluation.score, attempts=result.attempts,
        )
        return ProjectToolResult(
            summary=f"自动补齐大纲成功（评分 {result.evaluation.score}/10）",
            patch={"outline": result.outline},
        )

    def ensure_characters(state: ProjectAgentState, tool_input: Dict[str, Any]) -> ProjectToolResult:
        if state.characters is not None:
            return ProjectToolResult(summary="已存在人物关系图，跳过生成")
        if state.outline is None:
            raise ToolPreconditionError("ensure_characters", "没有大纲时不能生成人物关系图")
        if not state.auto_prepare_characters:
            return ProjectToolResult(summary="未开启自动人物生成，无法继续")

        context.emit("tool_progress", "缺少人物关系图，正在自动生成...", tool="ensure_characters")
        characters = generate_characters(
            services.outline_client, state.bible, state.outline, state.total_chapters, sleep=services.sleep,
        )
        store.save_characters(state.project_id, characters)
        role_count = len(characters.all_characters())
        context.emit(
            "tool_progress", f"人物关系图生成完成，共 {role_count} 个关键角色",
            tool="ensure_characters", role_count=role_count,
        )
        return ProjectToolResult(
            summary=f"自动补齐人物关系图成功（{role_count} 角色）",
            patch={"characters": characters},
        )

    def generate_chapter(state: ProjectAgentState, tool_input: Dict[str, Any]) -> ProjectToolResult:
        chapter_index = state.current_chapter_index
        if chapter_index > state.end_chapter_index:
            return ProjectToolResult(summary=f"章节序号 {chapter_index} 超出上限 {state.end_chapter_index}")

        outline_chapter = state.outline.find_chapter(chapter_index) if state.outline else None
        goal_hint = outline_goal_hint(outline_chapter)
        title = outline_chapter.title if outline_chapter else None
        last_chapters = store.recent_chapters(state.project_id, chapter_index, config.last_chapters_count)

        stores = load_knowledge_stores(store, state.project_id, state.outline, state.characters)
        guide = narrative_guide_for(stores, state.outline, chapter_index)
        names = [p.name for p in state.characters.all_characters()] if state.characters else []
        built = services.context_builder().build(ContextInputs(
            project_id=state.project_id,
            chapter_index=chapter_index,
            total_chapters=state.total_chapters,
            bible=state.bible,
            rolling_summary=state.rolling_summary,
            last_chapters=last_chapters,
            character_states=stores.character_states,
            plot_graph=stores.plot_graph,
            timeline=stores.timeline,
            characters=state.characters,
            narrative_arc=stores.narrative_arc,
            narrative_guide=guide,
            outline_characters=outline_character_mentions(outline_chapter.goal if outline_chapter else None, names),
        ))
        logger.debug(
            "第 %s 章上下文约 %s tokens（缓存命中: %s）", chapter_index, built.token_estimate, built.from_cache,
        )

        context.emit("tool_progress", f"正在生成第 {chapter_index} 章...", chapter_index, tool="generate_chapter")
        draft = write_chapter(
            services.writer,
            ChapterWriteParams(
                bible=state.bible,
                rolling_summary=state.rolling_summary,
                open_loops=state.open_loops,
                last_chapters=last_chapters,
                chapter_index=chapter_index,
                total_chapters=state.total_chapters,
                chapter_goal_hint=goal_hint,
                chapter_title=title,
                context_text=built.text,
                max_rewrite_attempts=config.max_rewrite_attempts,
            ),
            summary_client=services.summary_client,
            sleep=services.sleep,
        )
        pending = draft.model_copy(update={"outline_title": title, "outline_goal": goal_hint, "repair_count": 0})
        return ProjectToolResult(
            summary=f"第 {chapter_index} 章候选内容生成完成",
            patch={"pending_chapter": pending, "pending_qc": None},
        )

    def _evaluate(state: ProjectAgentState, chapter_index: int):
        """返回对候选稿评分的函数；开启深度 QC 且有评审模型时走深度评估"""
        judge = services.judge
        if judge is None or not config.enable_deep_qc:
            return lambda text: quick_qc(
                text, chapter_index, state.total_chapters, config.min_chapter_chars, config.qc_pass_score,
            )

        stores = load_knowledge_stores(store, state.project_id, state.outline, state.characters)
        guide = narrative_guide_for(stores, state.outline, chapter_index)
        outline_chapter = state.outline.find_chapter(chapter_index) if state.outline else None
        return lambda text: deep_qc(
            judge, text, chapter_index, state.total_chapters,
            character_states=stores.character_states,
            narrative_guide=guide,
            chapter_outline=outline_chapter,
            min_chapter_chars=config.min_chapter_chars,
            pass_score=config.qc_pass_score,
        )

    def qc_chapter(state: ProjectAgentState, tool_input: Dict[str, Any]) -> ProjectToolResult:
        pending = state.pending_chapter
        if pending is None:
            raise ToolPreconditionError("qc_chapter", "没有待检查的候选章节")

        verdict = _evaluate(state, pending.chapter_index)(pending.chapter_text)
        context.emit(
            "tool_progress", f"第 {pending.chapter_index} 章 QC 评分 {verdict.score}/100", pending.chapter_index,
            tool="qc_chapter", score=verdict.score, passed=verdict.passed,
            issues=[issue.description for issue in verdict.issues[:5]],
        )
        return ProjectToolResult(
            summary=f"第 {pending.chapter_index} 章 QC: {verdict.score}/100",
            patch={"pending_qc": verdict},
        )

    def repair_chapter_tool(state: ProjectAgentState, tool_input: Dict[str, Any]) -> ProjectToolResult:
        pending = state.pending_chapter
        if pending is None or state.pending_qc is None:
            raise ToolPreconditionError("repair_chapter", "没有待修复的候选章节或 QC 结论")

        chapter_index = pending.chapter_index
        context.emit("tool_progress", f"第 {chapter_index} 章 QC 未通过，尝试修复...", chapter_index, tool="repair_chapter")
        result = repair_chapter(
            services.writer,
            pending.chapter_text,
            state.pending_qc,
            chapter_index,
            state.total_chapters,
            evaluate=_evaluate(state, chapter_index),
            max_attempts=1,
            sleep=services.sleep,
        )
        repaired = pending.model_copy(update={
            "chapter_text": result.chapter_text,
            "repair_count": pending.repair_count + max(1, result.attempts),
        })
        return ProjectToolResult(
            summary=f"第 {chapter_index} 章修复完成，当前评分 {result.verdict.score}/100",
            patch={"pending_chapter": repaired, "pending_qc": result.verdict},
        )

    def commit_chapter(state: ProjectAgentState, tool_input: Dict[str, Any]) -> ProjectToolResult:
        pending = state.pending_chapter
        if pending is None:
            raise ToolPreconditionError("commit_chapter", "没有待提交的候选章节")

        chapter_index = pending.chapter_index
        qc = state.pending_qc
        store.commit_chapter(
            state.project_id,
            chapter_index,
            pending.chapter_text,
            pending.updated_summary,
            pending.updated_open_loops,
            qc,
        )

        record = GeneratedChapterRecord(
            chapter_index=chapter_index,
            title=chapter_title(pending.chapter_text) or pending.outline_title or f"第{chapter_index}章",
            word_count=len(pending.chapter_text),
            qc_score=qc.score if qc else None,
            repaired=pending.repair_count > 0 or pending.was_rewritten,
            issues=[issue.description for issue in qc.issues[:MAX_RECORD_ISSUES]] if qc else [],
        )

        stores = load_knowledge_stores(store, state.project_id, state.outline, state.characters)
        stores = update_after_commit(
            stores, pending.chapter_text, chapter_index, state.total_chapters,
            state.outline, state.characters, services.analyst,
        )
        save_knowledge_stores(store, state.project_id, stores)

        context.emit(
            "chapter_complete", f"第 {chapter_index} 章已保存", chapter_index,
            tool="commit_chapter", title=record.title, word_count=record.word_count,
            qc_score=record.qc_score, repaired=record.repaired,
        )
        return ProjectToolResult(
            summary=f"第 {chapter_index} 章已提交",
            patch={
                "rolling_summary": pending.updated_summary,
                "open_loops": pending.updated_open_loops,
                "current_chapter_index": chapter_index + 1,
                "pending_chapter": None,
                "pending_qc": None,
                "generated": [*state.generated, record],
            },
        )

    registry.register(ToolDefinition("ensure_outline", "确保项目已有大纲，缺失时自动生成", ensure_outline))
    registry.register(ToolDefinition("ensure_characters", "确保项目有人物关系图谱，缺失时自动生成", ensure_characters))
    registry.register(ToolDefinition("generate_chapter", "生成下一章候选内容（先不落库）", generate_chapter))
    registry.register(ToolDefinition("qc_chapter", "对候选章节执行 QC", qc_chapter))
    registry.register(ToolDefinition("repair_chapter", "对未通过 QC 的章节进行修复", repair_chapter_tool))
    registry.register(ToolDefinition("commit_chapter", "提交章节到存储并更新状态", commit_chapter))
    return registry
