"""
上下文组装

把核心设定、人物状态、剧情图谱、时间线、叙事指导、滚动摘要和近章原文
按预算压缩后拼成一段提示词片段。各片段与整体结果都经过语义缓存：
状态未变化时重复调用返回完全相同的文本，并标记 from_cache。

开发者: jamesenh
开发时间: 2026-01-18
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from novelforge.context.budget import (
    BIBLE,
    CHARACTER_STATE,
    LAST_CHAPTERS,
    NARRATIVE_GUIDE,
    PLOT_CONTEXT,
    ROLLING_SUMMARY,
    TIMELINE,
    ContextBudget,
    adjust_budget_for_pacing,
    estimate_tokens,
)
from novelforge.context import cache as cache_kinds
from novelforge.context.cache import SemanticCache, compute_state_version, content_hash, detect_changes
from novelforge.context.compressors import (
    compress_bible,
    compress_character_context,
    compress_last_chapters,
    compress_plot_context,
    compress_summary,
    truncate_section,
)
from novelforge.knowledge.character_state import CharacterStateRegistry
from novelforge.knowledge.pacing import NarrativeArc, NarrativeGuide
from novelforge.knowledge.plot_graph import PlotGraph
from novelforge.knowledge.timeline import TimelineState, format_timeline_context
from novelforge.models import CharacterGraph

logger = logging.getLogger(__name__)


class ContextInputs(BaseModel):
    """组装一章上下文所需的全部输入"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    project_id: str
    chapter_index: int
    total_chapters: int
    bible: str = ""
    rolling_summary: str = ""
    last_chapters: List[str] = Field(default_factory=list)
    character_states: Optional[CharacterStateRegistry] = None
    plot_graph: Optional[PlotGraph] = None
    timeline: Optional[TimelineState] = None
    characters: Optional[CharacterGraph] = None
    narrative_arc: Optional[NarrativeArc] = None
    narrative_guide: Optional[NarrativeGuide] = None
    outline_characters: List[str] = Field(default_factory=list)


@dataclass
class ContextResult:
    text: str
    from_cache: bool
    state_version: str
    changed_components: List[str] = field(default_factory=list)
    section_hits: Dict[str, bool] = field(default_factory=dict)

    @property
    def token_estimate(self) -> int:
        return estimate_tokens(self.text)


def character_name_map(
    characters: Optional[CharacterGraph],
    registry: Optional[CharacterStateRegistry] = None,
) -> Dict[str, str]:
    """角色名 -> 角色 ID，人物图谱优先，缺失时用状态注册表补全"""
    names: Dict[str, str] = {}
    if characters is not None:
        for profile in characters.all_characters():
            names[profile.name] = profile.id
    if registry is not None:
        for snapshot in registry.snapshots.values():
            names.setdefault(snapshot.character_name, snapshot.character_id)
    return names


def format_guide_requirements(guide: NarrativeGuide) -> str:
    lines = [
        "【本章叙事要求】",
        f"- 节奏: {guide.pacing_target}/10 ({guide.pacing_type.value})",
        f"- 基调: {guide.emotional_tone}",
        f"- 字数: {guide.word_count_range[0]}-{guide.word_count_range[1]}",
    ]
    if guide.prohibitions:
        lines.append(f"- 禁止: {'; '.join(guide.prohibitions)}")
    return "\n".join(lines)


def _versions(inputs: ContextInputs) -> Dict[str, int]:
    return {
        "character_state": inputs.character_states.version if inputs.character_states else 0,
        "plot_graph": inputs.plot_graph.version if inputs.plot_graph else 0,
        "timeline": inputs.timeline.version if inputs.timeline else 0,
        "pacing": inputs.narrative_arc.version if inputs.narrative_arc else 0,
    }


def state_version_for(inputs: ContextInputs) -> str:
    v = _versions(inputs)
    return compute_state_version(v["character_state"], v["plot_graph"], v["timeline"], v["pacing"], inputs.chapter_index)


class ContextBuilder:
    """按预算组装上下文；传入 cache 时启用语义缓存"""

    def __init__(self, budget: Optional[ContextBudget] = None, cache: Optional[SemanticCache] = None):
        self.budget = budget or ContextBudget()
        self.cache = cache

    def effective_budget(self, guide: Optional[NarrativeGuide]) -> ContextBudget:
        if guide is None:
            return self.budget
        return adjust_budget_for_pacing(self.budget, guide.pacing_type)

    def _section(self, inputs: ContextInputs, kind: str, deps: Dict[str, str], build, hits: Dict[str, bool]) -> str:
        if self.cache is None:
            return build()
        text, hit = self.cache.get_or_build(inputs.project_id, kind, inputs.chapter_index, deps, build)
        hits[kind] = hit
        return text

    def section_dependencies(self, inputs: ContextInputs, budget: ContextBudget) -> Dict[str, Dict[str, str]]:
        """各片段依赖的组件版本；片段只在自身依赖变化时重建"""
        versions = _versions(inputs)
        names = character_name_map(inputs.characters, inputs.character_states)
        return {
            cache_kinds.BIBLE_COMPRESSED: {
                "bible": content_hash(inputs.bible),
                "budget": str(budget.tokens_for(BIBLE)),
            },
            cache_kinds.CHARACTER_CONTEXT: {
                "character_state": str(versions["character_state"]),
                "outline_characters": content_hash("|".join(inputs.outline_characters)),
                "budget": str(budget.tokens_for(CHARACTER_STATE)),
            },
            cache_kinds.PLOT_CONTEXT: {
                "plot_graph": str(versions["plot_graph"]),
                "total_chapters": str(inputs.total_chapters),
                "budget": str(budget.tokens_for(PLOT_CONTEXT)),
            },
            cache_kinds.TIMELINE_CONTEXT: {
                "timeline": str(versions["timeline"]),
                "names": content_hash("|".join(f"{k}={v}" for k, v in sorted(names.items()))),
                "budget": str(budget.tokens_for(TIMELINE)),
            },
            cache_kinds.NARRATIVE_GUIDE: {
                "pacing": str(versions["pacing"]),
                "guide": content_hash(inputs.narrative_guide.model_dump_json() if inputs.narrative_guide else ""),
                "budget": str(budget.tokens_for(NARRATIVE_GUIDE)),
            },
            cache_kinds.ROLLING_SUMMARY: {
                "summary": content_hash(inputs.rolling_summary),
                "budget": str(budget.tokens_for(ROLLING_SUMMARY)),
            },
        }

    def build(self, inputs: ContextInputs) -> ContextResult:
        budget = self.effective_budget(inputs.narrative_guide)
        state_version = state_version_for(inputs)
        section_deps = self.section_dependencies(inputs, budget)

        full_deps: Dict[str, str] = {}
        for kind, deps in section_deps.items():
            for name, value in deps.items():
                full_deps[f"{kind}.{name}"] = value
        full_deps["last_chapters"] = content_hash("\x00".join(inputs.last_chapters))
        full_deps["last_chapters.budget"] = str(budget.tokens_for(LAST_CHAPTERS))
        full_deps["total_chapters"] = str(inputs.total_chapters)

        if self.cache is not None:
            previous = self.cache.peek(inputs.project_id, cache_kinds.FULL_CONTEXT, inputs.chapter_index)
            cached = self.cache.get(inputs.project_id, cache_kinds.FULL_CONTEXT, inputs.chapter_index, full_deps)
            if cached is not None:
                return ContextResult(cached.content, True, state_version)
            report = detect_changes(previous, full_deps, inputs.chapter_index)
            changed = report.changed_components
        else:
            changed = ["all"]

        hits: Dict[str, bool] = {}
        text = self._assemble(inputs, budget, section_deps, hits)
        if self.cache is not None:
            self.cache.set(inputs.project_id, cache_kinds.FULL_CONTEXT, inputs.chapter_index, text, full_deps, state_version)
        logger.debug("第 %s 章上下文重建，变化组件: %s", inputs.chapter_index, changed)
        return ContextResult(text, False, state_version, changed, hits)

    def _assemble(
        self,
        inputs: ContextInputs,
        budget: ContextBudget,
        section_deps: Dict[str, Dict[str, str]],
        hits: Dict[str, bool],
    ) -> str:
        idx, total = inputs.chapter_index, inputs.total_chapters
        parts = [
            f"【章节信息】\n- 当前章节: 第{idx}/{total}章\n- 是否终章: {'是' if idx == total else '否'}"
        ]

        bible = self._section(
            inputs, cache_kinds.BIBLE_COMPRESSED, section_deps[cache_kinds.BIBLE_COMPRESSED],
            lambda: compress_bible(inputs.bible, budget.tokens_for(BIBLE)), hits,
        )
        parts.append(f"【核心设定】\n{bible}")

        registry = inputs.character_states
        if registry is not None and registry.snapshots:
            protagonist_ids = [p.id for p in inputs.characters.protagonists] if inputs.characters else []
            text = self._section(
                inputs, cache_kinds.CHARACTER_CONTEXT, section_deps[cache_kinds.CHARACTER_CONTEXT],
                lambda: compress_character_context(
                    registry, idx, inputs.outline_characters, budget.tokens_for(CHARACTER_STATE), protagonist_ids,
                ),
                hits,
            )
            if text:
                parts.append(text)

        graph = inputs.plot_graph
        if graph is not None and graph.nodes:
            text = self._section(
                inputs, cache_kinds.PLOT_CONTEXT, section_deps[cache_kinds.PLOT_CONTEXT],
                lambda: compress_plot_context(graph, idx, total, budget.tokens_for(PLOT_CONTEXT)), hits,
            )
            if text:
                parts.append(text)

        timeline = inputs.timeline
        if timeline is not None and timeline.events:
            names = character_name_map(inputs.characters, registry)
            text = self._section(
                inputs, cache_kinds.TIMELINE_CONTEXT, section_deps[cache_kinds.TIMELINE_CONTEXT],
                lambda: truncate_section(format_timeline_context(timeline, idx, names), budget.tokens_for(TIMELINE)),
                hits,
            )
            if text:
                parts.append(text)

        guide = inputs.narrative_guide
        if guide is not None:
            text = self._section(
                inputs, cache_kinds.NARRATIVE_GUIDE, section_deps[cache_kinds.NARRATIVE_GUIDE],
                lambda: truncate_section(format_guide_requirements(guide), budget.tokens_for(NARRATIVE_GUIDE)),
                hits,
            )
            parts.append(text)

        summary = self._section(
            inputs, cache_kinds.ROLLING_SUMMARY, section_deps[cache_kinds.ROLLING_SUMMARY],
            lambda: compress_summary(inputs.rolling_summary, budget.tokens_for(ROLLING_SUMMARY)), hits,
        )
        if summary:
            parts.append(f"【剧情摘要】\n{summary}")

        last = compress_last_chapters(inputs.last_chapters, budget.tokens_for(LAST_CHAPTERS))
        if last:
            parts.append(last)

        return "\n\n".join(parts)


def build_context(inputs: ContextInputs, budget: Optional[ContextBudget] = None,
                  cache: Optional[SemanticCache] = None) -> ContextResult:
    return ContextBuilder(budget, cache).build(inputs)