"""
工具注册表测试

开发者: jamesenh, 开发时间: 2026-01-26
"""
import pytest

from novelforge.agent.registry import ToolDefinition, ToolRegistry
from novelforge.errors import ToolNotFoundError, ToolRegistrationError


def _echo(state, tool_input):
    return {"state": state, "input": tool_input}


class TestToolRegistry:
    """注册与查找"""

    def test_register_and_lookup(self):
        registry = ToolRegistry()
        registry.register(ToolDefinition("echo", "原样返回", _echo)).register(
            ToolDefinition("noop", "什么都不做", lambda state, tool_input: None)
        )

        assert len(registry) == 2
        assert registry.names() == ["echo", "noop"]
        assert registry.has("echo")
        assert not registry.has("missing")
        assert registry.get("echo").execute("s", {"a": 1}) == {"state": "s", "input": {"a": 1}}
        assert [tool.description for tool in registry.list()] == ["原样返回", "什么都不做"]

    def test_duplicate_name_is_rejected(self):
        registry = ToolRegistry().register(ToolDefinition("echo", "原样返回", _echo))
        with pytest.raises(ToolRegistrationError) as exc:
            registry.register(ToolDefinition("echo", "另一个", _echo))
        assert exc.value.tool_name == "echo"
        assert registry.get("echo").description == "原样返回"

    def test_unknown_tool_lists_available(self):
        registry = ToolRegistry().register(ToolDefinition("echo", "原样返回", _echo))
        with pytest.raises(ToolNotFoundError) as exc:
            registry.get("write_poem")
        assert exc.value.tool_name == "write_poem"
        assert exc.value.available == ["echo"]
