"""结构化输出解析与校验。

模型返回的 JSON 在进入引擎前统一经过这里：
去掉 Markdown 代码块包裹、解析 JSON、按 pydantic schema 校验。
校验失败与调用失败同等对待，由调用方决定回退路径。
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from langchain_core.exceptions import OutputParserException
from langchain_core.utils.json import parse_json_markdown
from pydantic import BaseModel, ValidationError

from novelforge.errors import StructuredOutputError
from novelforge.llm import CompletionRequest, TextCompletionClient, generate_text_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*|```\s*", re.IGNORECASE)


class ValidationResult:
    """Schema 校验尝试的结果。"""

    def __init__(
        self,
        valid: bool,
        value: Optional[BaseModel] = None,
        errors: Optional[list] = None,
    ):
        self.valid = valid
        self.value = value
        self.errors = errors or []

    def __bool__(self) -> bool:
        return self.valid

    @property
    def error_messages(self) -> list[str]:
        """获取人类可读的错误消息。"""
        messages = []
        for e in self.errors:
            if isinstance(e, dict):
                loc = ".".join(str(part) for part in e.get("loc", ()))
                messages.append(f"{loc}: {e.get('msg', '')}" if loc else str(e.get("msg", "")))
            else:
                messages.append(str(e))
        return messages


def strip_code_fence(text: str) -> str:
    """去掉 ```json ... ``` 包裹。"""
    return _FENCE_RE.sub("", text or "").strip()


def extract_json_text(text: str) -> Optional[str]:
    """从文本中截取第一个括号配平的 JSON 对象或数组。"""
    cleaned = strip_code_fence(text)
    start = -1
    for i, ch in enumerate(cleaned):
        if ch in "{[":
            start = i
            break
    if start < 0:
        return None

    stack = []
    in_string = False
    escaped = False
    for i in range(start, len(cleaned)):
        ch = cleaned[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return cleaned[start:i + 1]
    return None


def load_json_payload(text: str) -> Any:
    """解析模型输出中的 JSON。

    Raises:
        ValueError: 文本中没有可解析的 JSON。
    """
    try:
        return parse_json_markdown(text)
    except (OutputParserException, ValueError):
        pass

    candidate = extract_json_text(text)
    if candidate is None:
        raise ValueError("输出中未找到 JSON")
    return json.loads(candidate)


def validate_payload(data: Any, schema: Type[T]) -> ValidationResult:
    """根据 schema 校验已解析的数据。"""
    try:
        return ValidationResult(valid=True, value=schema.model_validate(data))
    except ValidationError as e:
        return ValidationResult(valid=False, errors=e.errors())


def parse_structured(raw: str, schema: Type[T]) -> ValidationResult:
    """解析 + 校验，任何失败都体现为 valid=False。"""
    try:
        data = load_json_payload(raw)
    except ValueError as e:
        return ValidationResult(valid=False, errors=[str(e)])
    return validate_payload(data, schema)


def request_structured(
    client: TextCompletionClient,
    request: CompletionRequest,
    schema: Type[T],
    retries: int = 2,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """调用模型并解析为指定 schema。

    每次尝试都会重新调用模型；网络层面的重试交给 generate_text_with_retry。

    Raises:
        StructuredOutputError: 所有尝试都未得到合法输出。
        LLMCallError: 调用本身失败。
    """
    last_errors: list[str] = []
    raw = ""
    for attempt in range(max(1, retries)):
        raw = generate_text_with_retry(client, request, max_retries=2, sleep=sleep)
        result = parse_structured(raw, schema)
        if result:
            return result.value  # type: ignore[return-value]
        last_errors = result.error_messages
        logger.warning(
            "⚠️ %s 结构化输出校验失败（第 %s 次）: %s",
            schema.__name__, attempt + 1, "; ".join(last_errors[:3]),
        )
    raise StructuredOutputError(schema.__name__, last_errors, raw)


def dump_json(data: Dict[str, Any]) -> str:
    """以便于提示词阅读的方式序列化。"""
    return json.dumps(data, ensure_ascii=False, indent=2)
