"""
各上下文片段的压缩器

每个压缩器独立工作，只接收自己片段的 token 预算。
预算按 1 token ≈ 2 个中文字符换算成字符数。
"""
import re
from typing import Iterable, List, Optional, Sequence

from novelforge.context.rolling_summary import compress_rolling_summary
from novelforge.knowledge.character_state import CONDITION_LABELS, CharacterStateRegistry, CharacterStateSnapshot
from novelforge.knowledge.plot_graph import (
    ForeshadowingUrgency,
    PendingForeshadowing,
    PlotGraph,
    PlotNode,
    PlotNodeStatus,
    pending_foreshadowing,
)

# (关键词, 优先级)，按顺序匹配第一条
BIBLE_PRIORITY_RULES = [
    (re.compile(r"主角|金手指|系统|能力|世界观|力量体系"), 10),
    (re.compile(r"配角|反派|关系"), 8),
    (re.compile(r"爽点|核心|目标|动机"), 9),
    (re.compile(r"背景|历史|设定"), 6),
    (re.compile(r"示例|参考|备注"), 3),
]
DEFAULT_PARAGRAPH_PRIORITY = 5


def _max_chars(max_tokens: int) -> int:
    return max(0, int(max_tokens * 2))


def paragraph_priority(paragraph: str) -> int:
    for pattern, priority in BIBLE_PRIORITY_RULES:
        if pattern.search(paragraph):
            return priority
    return DEFAULT_PARAGRAPH_PRIORITY


def compress_bible(bible: str, max_tokens: int) -> str:
    """按段落重要度贪心装箱；放得下则原样返回"""
    max_chars = _max_chars(max_tokens)
    if len(bible) <= max_chars:
        return bible

    paragraphs = re.split(r"\n\n+", bible)
    # sorted 稳定，同优先级保持原文顺序
    ranked = sorted(paragraphs, key=paragraph_priority, reverse=True)
    selected = []
    used = 0
    for paragraph in ranked:
        if used + len(paragraph) + 2 <= max_chars:
            selected.append(paragraph)
            used += len(paragraph) + 2
    return "\n\n".join(selected)


def character_relevance(
    snapshot: CharacterStateSnapshot,
    chapter_index: int,
    outline_characters: Sequence[str] = (),
    protagonist_ids: Iterable[str] = (),
) -> int:
    """大纲点名 +100，近 5 章每次变化 +20，主角 +50"""
    score = 0
    if any(snapshot.character_name in c or snapshot.character_id in c for c in outline_characters):
        score += 100
    score += 20 * sum(1 for c in snapshot.recent_changes if chapter_index - c.chapter <= 5)
    protagonist_ids = set(protagonist_ids)
    if snapshot.character_id in protagonist_ids or "protagonist" in snapshot.character_id or "main" in snapshot.character_id:
        score += 50
    return score


def format_compact_snapshot(snapshot: CharacterStateSnapshot) -> str:
    condition = CONDITION_LABELS.get(snapshot.physical.condition, "?")
    lines = [
        f"■ {snapshot.character_name}",
        f"  位置:{snapshot.physical.location} | 状态:{condition} | 情绪:{snapshot.psychological.mood}",
    ]
    if snapshot.psychological.motivation and snapshot.psychological.motivation != "未知":
        lines.append(f"  动机:{snapshot.psychological.motivation}")
    if snapshot.recent_changes:
        lines.append(f"  近期:{snapshot.recent_changes[-1].change}")
    return "\n".join(lines)


def compress_character_context(
    registry: CharacterStateRegistry,
    chapter_index: int,
    outline_characters: Sequence[str] = (),
    max_tokens: int = 900,
    protagonist_ids: Iterable[str] = (),
) -> str:
    max_chars = _max_chars(max_tokens)
    if not registry.snapshots:
        return ""

    protagonist_ids = list(protagonist_ids)
    ranked = sorted(
        registry.snapshots.values(),
        key=lambda s: character_relevance(s, chapter_index, outline_characters, protagonist_ids),
        reverse=True,
    )
    parts = ["【本章相关角色状态】"]
    used = len(parts[0])
    for snapshot in ranked:
        entry = format_compact_snapshot(snapshot)
        if used + len(entry) + 2 > max_chars:
            break
        parts.append(entry)
        used += len(entry) + 2
    if len(parts) == 1:
        return ""
    return "\n".join(parts)


def _format_urgent(items: List[PendingForeshadowing]) -> str:
    lines = [
        f"• {p.summary} (已{p.age_in_chapters}章，{'紧急' if p.urgency == ForeshadowingUrgency.CRITICAL else '重要'})"
        for p in items
    ]
    return "【伏笔回收提醒⚠️】\n" + "\n".join(lines)


def _format_plots(plots: List[PlotNode], label: str) -> str:
    return f"【{label}剧情】\n" + "\n".join(f"• {p.content}" for p in plots)


def compress_plot_context(graph: PlotGraph, chapter_index: int, total_chapters: int, max_tokens: int = 600) -> str:
    """紧急伏笔优先，其次活跃主线，最后近期事件"""
    max_chars = _max_chars(max_tokens)
    if not graph.nodes:
        return ""

    parts = []
    used = 0

    urgent = [
        p for p in pending_foreshadowing(graph, chapter_index, total_chapters)
        if p.urgency in (ForeshadowingUrgency.CRITICAL, ForeshadowingUrgency.HIGH)
    ]
    if urgent:
        section = _format_urgent(urgent[:3])
        if used + len(section) <= max_chars:
            parts.append(section)
            used += len(section)

    main_plots = [n for n in (graph.get_node(i) for i in graph.active_main_plots) if n]
    if main_plots and used < max_chars * 0.7:
        section = _format_plots(main_plots[:3], "主线")
        if used + len(section) <= max_chars:
            parts.append(section)
            used += len(section)

    recent = sorted(
        (n for n in graph.nodes if n.status == PlotNodeStatus.ACTIVE and chapter_index - n.introduced_at <= 5),
        key=lambda n: n.introduced_at,
        reverse=True,
    )[:3]
    if recent and used < max_chars * 0.9:
        section = "【近期事件】\n" + "\n".join(f"• 第{n.introduced_at}章: {n.content}" for n in recent)
        if used + len(section) <= max_chars:
            parts.append(section)

    return "\n\n".join(parts)


def compress_summary(summary: str, max_tokens: int = 900) -> str:
    return compress_rolling_summary(summary or "", max_tokens)


def compress_last_chapters(chapters: Sequence[str], max_tokens: int = 1800) -> str:
    """最近一章尽量完整（70% 预算），前一章只留结尾"""
    if not chapters:
        return ""
    max_chars = _max_chars(max_tokens)
    parts = []

    last_chapter = chapters[-1]
    last_budget = int(max_chars * 0.7)
    if len(last_chapter) <= last_budget:
        parts.append(f"【上一章原文】\n{last_chapter}")
        used = len(last_chapter) + 10
    else:
        keep = max(0, last_budget - 3)
        truncated = "..." + (last_chapter[-keep:] if keep else "")
        parts.append(f"【上一章原文(节选)】\n{truncated}")
        used = len(truncated) + 15

    if len(chapters) >= 2 and used < max_chars * 0.9:
        remaining = max_chars - used - 20
        if remaining > 200:
            ending = "..." + chapters[-2][-min(remaining, 500):]
            parts.append(f"【前一章结尾】\n{ending}")

    return "\n\n".join(parts)


def truncate_section(text: str, max_tokens: int) -> str:
    """按行截断没有专用压缩器的片段"""
    max_chars = _max_chars(max_tokens)
    if len(text) <= max_chars:
        return text
    kept: List[str] = []
    used = 0
    for line in text.split("\n"):
        if used + len(line) + 1 > max_chars:
            break
        kept.append(line)
        used += len(line) + 1
    return "\n".join(kept)


def outline_character_mentions(goal: Optional[str], names: Iterable[str]) -> List[str]:
    """大纲目标里点名的角色"""
    if not goal:
        return []
    return [name for name in names if name and name in goal]
