"""
LLM实例管理
统一管理文本补全客户端的创建、超时与重试

引擎只依赖 "文本进、文本出" 的 TextCompletionClient 协议；
真实环境由 ClientFactory 按调用点创建基于 ChatOpenAI 的客户端，
测试环境注入 novelforge.fakes 中的脚本化客户端。

开发者: jamesenh
开发时间: 2026-01-12
"""
import logging
import time
from typing import Callable, Optional, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from novelforge.config import LLMConfig
from novelforge.errors import EmptyCompletionError, LLMCallError

logger = logging.getLogger(__name__)


class CompletionRequest(BaseModel):
    """单次补全请求"""
    system: str = Field(description="系统指令")
    prompt: str = Field(description="用户提示词")
    temperature: Optional[float] = Field(default=None, description="温度（为空时使用调用点默认值）")
    max_tokens: Optional[int] = Field(default=None, description="最大输出token数")


class TextCompletionClient(Protocol):
    """文本补全协作方：输入系统指令与提示词，返回纯文本。"""

    def complete(self, request: CompletionRequest) -> str: ...


def get_llm(config: Optional[LLMConfig] = None, temperature: Optional[float] = None,
            max_tokens: Optional[int] = None) -> ChatOpenAI:
    """
    获取LLM实例

    Args:
        config: LLM配置，如果为None则使用默认配置
        temperature: 覆盖配置中的温度
        max_tokens: 覆盖配置中的最大token数

    Returns:
        ChatOpenAI实例
    """
    if config is None:
        config = LLMConfig()

    return ChatOpenAI(
        model=config.model_name,
        temperature=config.temperature if temperature is None else temperature,
        max_tokens=config.max_tokens if max_tokens is None else max_tokens,
        api_key=config.api_key,
        base_url=config.base_url,
        timeout=config.timeout,
        # 重试由 generate_text_with_retry 统一控制
        max_retries=0,
    )


class LangChainCompletionClient:
    """基于 ChatOpenAI 的补全客户端"""

    def __init__(self, config: LLMConfig):
        self.config = config

    def complete(self, request: CompletionRequest) -> str:
        llm = get_llm(self.config, temperature=request.temperature, max_tokens=request.max_tokens)
        response = llm.invoke([
            SystemMessage(content=request.system),
            HumanMessage(content=request.prompt),
        ])
        content = response.content if isinstance(response.content, str) else str(response.content)
        text = content.strip()
        if not text:
            raise EmptyCompletionError()
        return text


class ClientFactory:
    """按调用点创建补全客户端

    工厂在构造编排器时显式传入，配置变更时重新构造工厂即可，
    不存在进程级的缓存客户端。
    """

    def __init__(self, config_provider: Callable[[str], LLMConfig] = None):
        self._config_provider = config_provider or (lambda chain_name: LLMConfig(chain_name=chain_name))

    def create(self, chain_name: str) -> TextCompletionClient:
        return LangChainCompletionClient(self._config_provider(chain_name))


# ==================== 错误分类与重试 ====================

RETRYABLE_ERROR_TYPES = ("rate_limit", "server_error", "timeout", "unknown")


def classify_error(error: Exception) -> str:
    """根据错误信息归类，用于重试决策"""
    if isinstance(error, EmptyCompletionError):
        return "unknown"
    message = f"{type(error).__name__} {error}".lower()

    if "quota" in message or "429" in message or any(
        marker in message for marker in ("rate limit", "rate_limit", "ratelimit", "too many requests")
    ):
        return "rate_limit"
    if any(code in message for code in ("500", "502", "503")) or "server" in message:
        return "server_error"
    if "timeout" in message or "timed out" in message or "aborted" in message:
        return "timeout"
    if any(code in message for code in ("401", "403")) or "unauthorized" in message or "invalid api key" in message:
        return "auth_error"
    if "400" in message or "invalid" in message:
        return "invalid_request"
    return "unknown"


def get_retry_delay(error_type: str, attempt: int) -> float:
    """计算第 attempt 次失败后的等待秒数（限流错误等待更久）"""
    if error_type == "rate_limit":
        return 10.0 * (2 ** attempt)
    if error_type == "server_error":
        return 3.0 * (attempt + 1)
    return 2.0 * (attempt + 1)


def generate_text_with_retry(
    client: TextCompletionClient,
    request: CompletionRequest,
    max_retries: int = 5,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    带重试的文本生成

    Args:
        client: 补全客户端
        request: 补全请求
        max_retries: 最大尝试次数
        sleep: 等待函数（测试时可注入）

    Returns:
        非空文本

    Raises:
        LLMCallError: 不可重试的错误或重试耗尽
    """
    last_error: Optional[Exception] = None
    last_type = "unknown"
    attempts = max(1, max_retries)

    for attempt in range(attempts):
        try:
            text = client.complete(request)
            if not text or not text.strip():
                raise EmptyCompletionError()
            return text.strip()
        except Exception as e:
            last_error = e
            last_type = classify_error(e)
            logger.warning("⚠️ 第 %s 次生成失败 (%s): %s", attempt + 1, last_type, e)

            if last_type not in RETRYABLE_ERROR_TYPES:
                raise LLMCallError(str(e), error_type=last_type, attempts=attempt + 1) from e

            if attempt < attempts - 1:
                delay = get_retry_delay(last_type, attempt)
                logger.info("等待 %.1f 秒后重试...", delay)
                sleep(delay)

    raise LLMCallError(
        f"重试 {attempts} 次后仍然失败: {last_error}",
        error_type=last_type,
        attempts=attempts,
    ) from last_error
