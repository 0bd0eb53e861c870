"""
滚动摘要：长期 / 中期 / 近期三层记忆

摘要以【长期记忆】【中期记忆】【近期记忆】三段文本保存。
旧格式（无分段标题的纯文本）按尾部字数切分兼容。
"""
import re
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from novelforge.chains.structured import parse_structured

HEADINGS = {
    "长期记忆": "long_term",
    "中期记忆": "mid_term",
    "近期记忆": "recent",
}
_HEADING_RE = re.compile(r"【(长期记忆|中期记忆|近期记忆)】")
_SENTENCE_RE = re.compile(r"([。！？!?；;])")

LEGACY_RECENT_CHARS = 500
LEGACY_MID_CHARS = 380


class RollingSummaryMemory(BaseModel):
    long_term: str = ""
    mid_term: str = ""
    recent: str = ""


class SummaryUpdate(BaseModel):
    """摘要更新调用的返回结构"""
    longTermMemory: Optional[str] = Field(default=None, min_length=8)
    midTermMemory: Optional[str] = Field(default=None, min_length=8)
    recentMemory: Optional[str] = Field(default=None, min_length=8)
    rollingSummary: Optional[str] = Field(default=None, min_length=8)
    openLoops: Optional[List[str]] = Field(default=None, max_length=12)


def _normalize(text: str) -> str:
    return (text or "").replace("\r\n", "\n").strip()


def split_sentences(text: str) -> List[str]:
    chunks = _SENTENCE_RE.split(text)
    sentences = []
    for i in range(0, len(chunks), 2):
        body = chunks[i].strip()
        punct = chunks[i + 1].strip() if i + 1 < len(chunks) else ""
        sentence = f"{body}{punct}".strip()
        if sentence:
            sentences.append(sentence)
    if not sentences and text.strip():
        sentences.append(text.strip())
    return sentences


def truncate_by_sentences(text: str, max_chars: int, keep_tail: bool = False) -> str:
    """按整句截断；keep_tail 时保留结尾的句子"""
    normalized = _normalize(text)
    if not normalized or len(normalized) <= max_chars:
        return normalized

    sentences = split_sentences(normalized)
    ordered = list(reversed(sentences)) if keep_tail else sentences
    selected = []
    total = 0
    for sentence in ordered:
        if total + len(sentence) > max_chars:
            break
        selected.append(sentence)
        total += len(sentence)

    if not selected:
        return normalized[-max_chars:] if keep_tail else normalized[:max_chars]
    if keep_tail:
        selected.reverse()
    return _normalize("".join(selected))


def _split_legacy(summary: str) -> RollingSummaryMemory:
    normalized = _normalize(summary)
    if not normalized:
        return RollingSummaryMemory()
    cut = max(0, len(normalized) - LEGACY_RECENT_CHARS)
    recent = normalized[cut:]
    before_recent = normalized[:cut]
    mid_cut = max(0, len(before_recent) - LEGACY_MID_CHARS)
    return RollingSummaryMemory(
        long_term=_normalize(before_recent[:mid_cut]),
        mid_term=_normalize(before_recent[mid_cut:]),
        recent=_normalize(recent),
    )


def parse_rolling_summary(summary: str) -> RollingSummaryMemory:
    normalized = _normalize(summary)
    if not normalized:
        return RollingSummaryMemory()

    matches = list(_HEADING_RE.finditer(normalized))
    if not matches:
        return _split_legacy(normalized)

    fields = {}
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(normalized)
        fields[HEADINGS[match.group(1)]] = _normalize(normalized[match.end():end])

    memory = RollingSummaryMemory(**fields)
    if not (memory.long_term or memory.mid_term or memory.recent):
        return _split_legacy(normalized)
    return memory


def format_rolling_summary(memory: RollingSummaryMemory) -> str:
    parts = []
    if memory.long_term:
        parts.append(f"【长期记忆】\n{_normalize(memory.long_term)}")
    if memory.mid_term:
        parts.append(f"【中期记忆】\n{_normalize(memory.mid_term)}")
    if memory.recent:
        parts.append(f"【近期记忆】\n{_normalize(memory.recent)}")
    return "\n\n".join(parts).strip()


def normalize_rolling_summary(summary: str) -> str:
    return format_rolling_summary(parse_rolling_summary(summary))


def compress_rolling_summary(summary: str, max_tokens: int = 900) -> str:
    """近期优先的压缩：长期 20%（保留开头），中期 30%，近期占剩余（均保留结尾）"""
    if not summary:
        return ""
    max_chars = max(240, int(max_tokens * 2))
    memory = parse_rolling_summary(summary)
    long_budget = int(max_chars * 0.2)
    mid_budget = int(max_chars * 0.3)
    recent_budget = max(80, max_chars - long_budget - mid_budget)
    return format_rolling_summary(RollingSummaryMemory(
        long_term=truncate_by_sentences(memory.long_term, long_budget),
        mid_term=truncate_by_sentences(memory.mid_term, mid_budget, keep_tail=True),
        recent=truncate_by_sentences(memory.recent, recent_budget, keep_tail=True),
    ))


def parse_summary_update_response(
    raw: str,
    previous_summary: str,
    previous_open_loops: List[str],
) -> Tuple[str, List[str]]:
    """解析摘要更新结果；无法解析时原样返回旧摘要与旧伏笔"""
    result = parse_structured(raw, SummaryUpdate)
    if not result:
        return previous_summary, previous_open_loops

    update: SummaryUpdate = result.value
    loops = update.openLoops or previous_open_loops

    if update.longTermMemory or update.midTermMemory or update.recentMemory:
        summary = format_rolling_summary(RollingSummaryMemory(
            long_term=_normalize(update.longTermMemory or ""),
            mid_term=_normalize(update.midTermMemory or ""),
            recent=_normalize(update.recentMemory or ""),
        ))
        if summary:
            return summary, loops

    if update.rollingSummary:
        return normalize_rolling_summary(update.rollingSummary), loops

    return previous_summary, previous_open_loops
