"""
章节文本规范化

模型偶尔会把章节包成 {"title": ..., "content": ...} 的 JSON，
或在标题前加 Markdown 井号、"标题：" 前缀。这里统一整理为
"第N章 标题" + 空行 + 正文 的纯文本。
"""
import re
from typing import Optional, Tuple

from novelforge.chains.structured import load_json_payload, strip_code_fence

CHAPTER_HEADING_RE = re.compile(r"^第[一二三四五六七八九十百千万零两\d]+[章节回]")
TITLE_PREFIX_RE = re.compile(r"^(标题|题目)\s*[:：]\s*")
MARKDOWN_HEADING_RE = re.compile(r"^#+\s*")
TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

TITLE_SEARCH_LINES = 4


def normalize_title(title: str, chapter_index: int) -> str:
    cleaned = MARKDOWN_HEADING_RE.sub("", title or "").strip()
    if not cleaned:
        return f"第{chapter_index}章"
    if CHAPTER_HEADING_RE.match(cleaned):
        return cleaned
    return f"第{chapter_index}章 {cleaned}"


def _extract_json_object(text: str) -> Optional[dict]:
    cleaned = strip_code_fence(text)
    if not cleaned.startswith(("{", "[")):
        return None
    for candidate in (cleaned, TRAILING_COMMA_RE.sub(r"\1", cleaned)):
        try:
            data = load_json_payload(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _split_plain_title(text: str, chapter_index: int) -> Optional[Tuple[str, str]]:
    lines = text.replace("\r\n", "\n").strip().split("\n")
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is None:
        return None

    for i in range(first, min(len(lines), first + TITLE_SEARCH_LINES)):
        line = MARKDOWN_HEADING_RE.sub("", lines[i]).strip()
        if not line:
            continue
        if CHAPTER_HEADING_RE.match(line) or TITLE_PREFIX_RE.match(line):
            title = normalize_title(TITLE_PREFIX_RE.sub("", line), chapter_index)
            return title, "\n".join(lines[i + 1:]).strip()
    return None


def normalize_chapter_text(raw: str, chapter_index: int) -> str:
    """把模型原始输出整理成以章节标题开头的正文"""
    payload = _extract_json_object(raw)
    if payload is not None and isinstance(payload.get("content"), str):
        title = normalize_title(payload.get("title") if isinstance(payload.get("title"), str) else "", chapter_index)
        return f"{title}\n\n{payload['content'].strip()}"

    cleaned = strip_code_fence(raw)
    plain = _split_plain_title(cleaned, chapter_index)
    if plain is not None:
        title, body = plain
        return f"{title}\n\n{body}".strip()
    return cleaned


def chapter_title(chapter_text: str) -> str:
    """取章节首行作为标题"""
    for line in chapter_text.split("\n"):
        if line.strip():
            return line.strip()
    return ""
