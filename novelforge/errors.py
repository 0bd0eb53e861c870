"""
引擎异常定义

按错误来源划分：
- 协作方失败（LLM 调用、结构化输出）：在调用点重试或回退
- 前置条件违反（工具在缺少必要状态时被调用）：立即抛出，不重试
- 提交冲突（章节写入前位置计数器已漂移）：上报给调用方，不自动重试

开发者: jamesenh
开发时间: 2026-01-12
"""
from typing import Any, Dict, List, Optional


class NovelForgeError(Exception):
    """引擎异常基类"""


class ToolRegistrationError(NovelForgeError):
    """工具重复注册"""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"工具已注册: {tool_name}")


class ToolNotFoundError(NovelForgeError):
    """按名称查找工具失败"""

    def __init__(self, tool_name: str, available: Optional[List[str]] = None):
        self.tool_name = tool_name
        self.available = available or []
        super().__init__(f"未注册的工具: {tool_name}")


class ToolPreconditionError(NovelForgeError):
    """工具在缺少必要状态时被调用

    说明规划器的规范化没有拦住非法决策，本身就是缺陷。
    """

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"[{tool_name}] {message}")


class CommitConflictError(NovelForgeError):
    """章节提交时发现持久化的下一章索引已被其他写入方推进"""

    def __init__(
        self,
        project_id: str,
        chapter_index: int,
        expected_index: int,
        actual_index: Optional[int],
        message: Optional[str] = None,
    ):
        self.project_id = project_id
        self.chapter_index = chapter_index
        self.expected_index = expected_index
        self.actual_index = actual_index

        if message is None:
            message = (
                f"提交冲突：项目 {project_id} 期望下一章为第 {expected_index} 章，"
                f"但当前记录为 {actual_index}，第 {chapter_index} 章未写入。"
            )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式（用于任务返回）"""
        return {
            "project_id": self.project_id,
            "chapter_index": self.chapter_index,
            "expected_index": self.expected_index,
            "actual_index": self.actual_index,
            "next_actions": ["refetch_state", "retry_from_persisted_index"],
        }


class LLMCallError(NovelForgeError):
    """LLM 调用在重试耗尽后失败"""

    def __init__(self, message: str, error_type: str = "unknown", attempts: int = 0):
        self.error_type = error_type
        self.attempts = attempts
        super().__init__(message)


class EmptyCompletionError(NovelForgeError):
    """模型返回空文本"""

    def __init__(self, message: str = "Empty model response"):
        super().__init__(message)


class StructuredOutputError(NovelForgeError):
    """模型输出无法解析为期望的结构"""

    def __init__(self, schema_name: str, errors: Optional[List[str]] = None, raw: str = ""):
        self.schema_name = schema_name
        self.errors = errors or []
        self.raw = raw
        detail = "; ".join(self.errors[:3]) if self.errors else "无法解析"
        super().__init__(f"{schema_name} 结构化输出无效: {detail}")


class ProjectNotFoundError(NovelForgeError):
    """项目状态行不存在"""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project state not found: {project_id}")
