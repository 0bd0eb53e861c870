"""
工具注册表

每个编排循环各自持有一个注册表，名称唯一；规划器给出的名称按此查找执行。
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, TypeVar

from novelforge.errors import ToolNotFoundError, ToolRegistrationError

S = TypeVar("S")
R = TypeVar("R")


@dataclass(frozen=True)
class ToolDefinition(Generic[S, R]):
    name: str
    description: str
    execute: Callable[[S, Dict[str, Any]], R]


class ToolRegistry(Generic[S, R]):
    """名称到工具定义的映射"""

    def __init__(self):
        self._tools: Dict[str, ToolDefinition[S, R]] = {}

    def register(self, tool: ToolDefinition[S, R]) -> "ToolRegistry[S, R]":
        if tool.name in self._tools:
            raise ToolRegistrationError(tool.name)
        self._tools[tool.name] = tool
        return self

    def get(self, name: str) -> ToolDefinition[S, R]:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name, self.names())
        return tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def list(self) -> List[ToolDefinition[S, R]]:
        return list(self._tools.values())

    def names(self) -> List[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)
