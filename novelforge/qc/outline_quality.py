"""
大纲质量评估

纯规则评估：覆盖度、标题、目标、分卷结构、里程碑五项指标（0-10 分），
加权得到综合分。通过条件除了分数达标外，还要求章节索引无缺失、无重复，
占位标题与弱目标数量在上限内，且分卷范围合法。
"""
import math
import re
from typing import Dict, List

from pydantic import BaseModel, Field

from novelforge.models import NovelOutline

PLACEHOLDER_TITLE_RE = re.compile(r"^第?\d+章?$")

METRIC_WEIGHTS = {
    "coverage": 0.4,
    "title_quality": 0.2,
    "goal_quality": 0.25,
    "structure": 0.1,
    "milestone_quality": 0.05,
}

PLACEHOLDER_RATIO_LIMIT = 0.03
WEAK_GOAL_RATIO_LIMIT = 0.05


class OutlineQualityEvaluation(BaseModel):
    """大纲评估结果"""
    score: float = Field(description="综合分 0-10")
    passed: bool
    issues: List[str] = Field(default_factory=list)
    metrics: Dict[str, float] = Field(default_factory=dict)


def clamp_score(value: float) -> float:
    return max(0.0, min(10.0, round(value, 1)))


def is_placeholder_title(title: str) -> bool:
    return not title or bool(PLACEHOLDER_TITLE_RE.match(title)) or "待补充" in title


def format_indices(indices: List[int], limit: int = 12) -> str:
    if len(indices) <= limit:
        return "、".join(str(i) for i in indices)
    return f"{'、'.join(str(i) for i in indices[:limit])} ... (共{len(indices)}个)"


def evaluate_outline_quality(outline: NovelOutline, target_chapters: int, target_score: float) -> OutlineQualityEvaluation:
    issues: List[str] = []
    seen = set()
    duplicates = set()
    chapter_count = 0
    placeholder_titles = 0
    weak_goals = 0
    invalid_ranges = 0
    disconnected = 0
    previous_end = None

    for vol in outline.volumes:
        if vol.end_chapter < vol.start_chapter:
            invalid_ranges += 1
        if previous_end is not None and vol.start_chapter != previous_end + 1:
            disconnected += 1
        previous_end = vol.end_chapter

        for ch in vol.chapters:
            chapter_count += 1
            if ch.index in seen:
                duplicates.add(ch.index)
            else:
                seen.add(ch.index)
            if is_placeholder_title(ch.title):
                placeholder_titles += 1
            if len((ch.goal or "").strip()) < 4:
                weak_goals += 1

    missing = [i for i in range(1, target_chapters + 1) if i not in seen]

    if missing:
        issues.append(f"缺失章节索引：{format_indices(missing)}")
    if duplicates:
        issues.append(f"重复章节索引：{format_indices(sorted(duplicates), 8)}")
    if chapter_count != target_chapters:
        issues.append(f"章节总数不匹配：当前 {chapter_count} / 目标 {target_chapters}")
    if placeholder_titles:
        issues.append(f"占位标题过多：{placeholder_titles} 章仍是占位标题")
    if weak_goals:
        issues.append(f"章节目标过弱：{weak_goals} 章目标缺失或过短")
    if invalid_ranges:
        issues.append(f"分卷范围非法：{invalid_ranges} 卷的章节范围有误")
    if disconnected:
        issues.append(f"分卷衔接断裂：{disconnected} 处分卷编号不连续")

    total = max(1, chapter_count)
    expected = max(1, target_chapters)
    milestones = len(outline.milestones)
    metrics = {
        "coverage": clamp_score(
            10
            - len(missing) / expected * 8
            - abs(chapter_count - target_chapters) / expected * 3
            - len(duplicates) * 0.2
        ),
        "title_quality": clamp_score(10 - placeholder_titles / total * 10),
        "goal_quality": clamp_score(10 - weak_goals / total * 10),
        "structure": clamp_score(10 - invalid_ranges * 2 - disconnected * 1.5),
        "milestone_quality": clamp_score(min(10, 6 + min(4, milestones)) if milestones else 4),
    }
    score = clamp_score(sum(metrics[name] * weight for name, weight in METRIC_WEIGHTS.items()))

    passed = (
        score >= target_score
        and not missing
        and not duplicates
        and placeholder_titles <= math.ceil(target_chapters * PLACEHOLDER_RATIO_LIMIT)
        and weak_goals <= math.ceil(target_chapters * WEAK_GOAL_RATIO_LIMIT)
        and invalid_ranges == 0
    )
    return OutlineQualityEvaluation(score=score, passed=passed, issues=issues, metrics=metrics)
