"""
上下文 token 预算

总预算按固定比例分配给各个上下文片段，再按本章节奏类型做乘法调整并归一化。
token 估算只是近似值：中文字符按 0.5，其他字符按 0.25 计。
"""
import math
import re
from typing import Dict, List

from pydantic import BaseModel, Field

from novelforge.knowledge.pacing import PacingType

BIBLE = "bible"
CHARACTER_STATE = "character_state"
PLOT_CONTEXT = "plot_context"
TIMELINE = "timeline"
ROLLING_SUMMARY = "rolling_summary"
LAST_CHAPTERS = "last_chapters"
NARRATIVE_GUIDE = "narrative_guide"

SECTIONS = (BIBLE, CHARACTER_STATE, PLOT_CONTEXT, TIMELINE, ROLLING_SUMMARY, LAST_CHAPTERS, NARRATIVE_GUIDE)

DEFAULT_ALLOCATION = {
    BIBLE: 0.18,
    CHARACTER_STATE: 0.12,
    PLOT_CONTEXT: 0.10,
    TIMELINE: 0.10,
    ROLLING_SUMMARY: 0.15,
    LAST_CHAPTERS: 0.25,
    NARRATIVE_GUIDE: 0.10,
}

# 节奏类型 -> 各片段的乘数
PACING_MULTIPLIERS: Dict[PacingType, Dict[str, float]] = {
    PacingType.ACTION: {BIBLE: 0.7, ROLLING_SUMMARY: 0.8, LAST_CHAPTERS: 1.3},
    PacingType.CLIMAX: {BIBLE: 0.7, ROLLING_SUMMARY: 0.8, LAST_CHAPTERS: 1.3},
    PacingType.REVELATION: {PLOT_CONTEXT: 1.5, CHARACTER_STATE: 1.2},
    PacingType.EMOTIONAL: {CHARACTER_STATE: 1.5, BIBLE: 0.8},
    PacingType.TENSION: {},
    PacingType.TRANSITION: {},
}

_CJK_RE = re.compile(r"[一-龥]")
_SECTION_TITLE_RE = re.compile(r"【([^】]+)】")


class ContextBudget(BaseModel):
    """上下文预算：总 token 数与各片段占比"""
    total_tokens: int = Field(default=24000, gt=0)
    allocation: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_ALLOCATION))

    def tokens_for(self, section: str) -> int:
        return int(self.total_tokens * self.allocation.get(section, 0.0))


def normalize_allocation(allocation: Dict[str, float]) -> Dict[str, float]:
    total = sum(allocation.values())
    if total <= 0:
        return dict(DEFAULT_ALLOCATION)
    return {key: value / total for key, value in allocation.items()}


def adjust_budget_for_pacing(budget: ContextBudget, pacing_type: PacingType) -> ContextBudget:
    """按节奏类型调整占比，结果之和恒为 1"""
    multipliers = PACING_MULTIPLIERS.get(pacing_type, {})
    adjusted = {key: value * multipliers.get(key, 1.0) for key, value in budget.allocation.items()}
    return budget.model_copy(update={"allocation": normalize_allocation(adjusted)})


def estimate_tokens(text: str) -> int:
    chinese = len(_CJK_RE.findall(text))
    other = len(text) - chinese
    return math.ceil(chinese * 0.5 + other * 0.25)


def context_stats(context: str) -> Dict[str, object]:
    """统计上下文总长度、估算 token 与各【】片段的字符数"""
    sections: List[Dict[str, object]] = []
    matches = list(_SECTION_TITLE_RE.finditer(context))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(context)
        sections.append({"name": match.group(1), "chars": end - match.start()})
    return {
        "total_chars": len(context),
        "estimated_tokens": estimate_tokens(context),
        "sections": sections,
    }
