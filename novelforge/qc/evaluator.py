"""
章节质量评估

快速评估只跑规则检测（提前完结 + 结构），始终可用；
深度评估再叠加模型评审的人物、节奏、目标三个维度，按权重合成综合分。
两种评估的通过条件相同：综合分达到阈值且没有阻断问题。

开发者: jamesenh
开发时间: 2026-01-19
"""
import logging
from typing import Dict, List, Optional

from novelforge.knowledge.character_state import CharacterStateRegistry
from novelforge.knowledge.pacing import NarrativeGuide
from novelforge.llm import TextCompletionClient
from novelforge.models import IssueSeverity, OutlineChapter, QCIssue, QCVerdict
from novelforge.qc.deep_checks import check_character_consistency, check_goal_achievement, check_pacing_alignment
from novelforge.qc.heuristics import check_premature_ending, check_structural_integrity

logger = logging.getLogger(__name__)

DEFAULT_PASS_SCORE = 70

DIMENSION_WEIGHTS = {
    "ending": 0.25,
    "character": 0.25,
    "pacing": 0.2,
    "goal": 0.2,
    "structure": 0.1,
}

DIMENSION_LABELS = {
    "ending": "提前完结",
    "character": "人物一致",
    "pacing": "节奏对齐",
    "goal": "目标达成",
    "structure": "结构完整",
}


def generate_suggestions(issues: List[QCIssue]) -> List[str]:
    suggestions = []
    for severity, heading in (
        (IssueSeverity.CRITICAL, "【紧急修复】以下问题必须修复："),
        (IssueSeverity.MAJOR, "【重要改进】以下问题建议修复："),
    ):
        group = [i for i in issues if i.severity == severity]
        if not group:
            continue
        suggestions.append(heading)
        for n, issue in enumerate(group, 1):
            suggestions.append(f"  {n}. {issue.description}")
            if issue.suggestion:
                suggestions.append(f"     建议：{issue.suggestion}")
    return suggestions


def _verdict(score: int, issues: List[QCIssue], dimensions: Dict[str, int], pass_score: int) -> QCVerdict:
    has_blocking = any(i.severity == IssueSeverity.CRITICAL for i in issues)
    return QCVerdict(
        score=max(0, min(100, score)),
        passed=not has_blocking and score >= pass_score,
        issues=issues,
        dimensions=dimensions,
        suggestions=generate_suggestions(issues),
    )


def quick_qc(
    chapter_text: str,
    chapter_index: int,
    total_chapters: int,
    min_chapter_chars: int = 1500,
    pass_score: int = DEFAULT_PASS_SCORE,
) -> QCVerdict:
    """规则检测：综合分为提前完结与结构两个维度的平均"""
    ending_score, ending_issues = check_premature_ending(chapter_text, chapter_index, total_chapters)
    structure_score, structure_issues = check_structural_integrity(chapter_text, min_chapter_chars)
    score = round((ending_score + structure_score) / 2)
    dimensions = {
        "ending": ending_score,
        "character": 100,
        "pacing": 100,
        "goal": 100,
        "structure": structure_score,
    }
    return _verdict(score, ending_issues + structure_issues, dimensions, pass_score)


def deep_qc(
    client: TextCompletionClient,
    chapter_text: str,
    chapter_index: int,
    total_chapters: int,
    character_states: Optional[CharacterStateRegistry] = None,
    narrative_guide: Optional[NarrativeGuide] = None,
    chapter_outline: Optional[OutlineChapter] = None,
    min_chapter_chars: int = 1500,
    pass_score: int = DEFAULT_PASS_SCORE,
) -> QCVerdict:
    """规则检测 + 模型评审的加权综合评估

    缺少对应输入的维度按满分计；各模型维度内部自行处理失败。
    """
    issues: List[QCIssue] = []
    dimensions = {name: 100 for name in DIMENSION_WEIGHTS}

    dimensions["ending"], found = check_premature_ending(chapter_text, chapter_index, total_chapters)
    issues.extend(found)
    dimensions["structure"], found = check_structural_integrity(chapter_text, min_chapter_chars)
    issues.extend(found)

    if character_states is not None and character_states.snapshots:
        dimensions["character"], found = check_character_consistency(client, chapter_text, character_states)
        issues.extend(found)
    if narrative_guide is not None:
        dimensions["pacing"], found = check_pacing_alignment(client, chapter_text, narrative_guide)
        issues.extend(found)
    if chapter_outline is not None and chapter_outline.goal:
        dimensions["goal"], found = check_goal_achievement(client, chapter_text, chapter_outline, narrative_guide)
        issues.extend(found)

    score = round(sum(dimensions[name] * weight for name, weight in DIMENSION_WEIGHTS.items()))
    verdict = _verdict(score, issues, dimensions, pass_score)
    logger.info("第 %s 章深度 QC: %s 分，%s 个问题", chapter_index, verdict.score, len(verdict.issues))
    return verdict


def format_verdict(verdict: QCVerdict) -> str:
    parts = [
        f"质量检测结果: {'✅ 通过' if verdict.passed else '❌ 未通过'}",
        f"综合评分: {verdict.score}/100",
        "",
        "各维度评分:",
    ]
    for name, label in DIMENSION_LABELS.items():
        if name in verdict.dimensions:
            parts.append(f"  - {label}: {verdict.dimensions[name]}/100")

    if verdict.issues:
        icons = {IssueSeverity.CRITICAL: "🔴", IssueSeverity.MAJOR: "🟠", IssueSeverity.MINOR: "🟡"}
        parts.append("")
        parts.append(f"发现 {len(verdict.issues)} 个问题:")
        for i, issue in enumerate(verdict.issues, 1):
            parts.append(f"  {i}. {icons[issue.severity]} [{issue.type.value}] {issue.description}")

    if verdict.suggestions:
        parts.append("")
        parts.append("修复建议:")
        parts.extend(verdict.suggestions)
    return "\n".join(parts)
