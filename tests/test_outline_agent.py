"""
大纲 Agent 测试

开发者: jamesenh, 开发时间: 2026-01-25
"""
import json

import pytest

from novelforge.agent.outline_agent import create_outline_tools, read_revision_notes, run_outline_agent
from novelforge.agent.state import OutlineAgentState
from novelforge.errors import LLMCallError, ToolPreconditionError
from novelforge.fakes import ScriptedCompletionClient, dry_run_client, sample_master_outline, sample_volume_chapters


def _volume_without(start, end, missing):
    chapters = json.loads(sample_volume_chapters(start, end))
    return json.dumps([c for c in chapters if c["index"] not in missing], ensure_ascii=False)


class TestOutlineAgentDryRun:
    """样例客户端下的完整大纲流程"""

    def test_hundred_chapters_pass_first_attempt(self, sleeps):
        client = dry_run_client()
        result = run_outline_agent(client, "少年复仇的玄幻故事", 100, sleep=sleeps.append)

        assert result.attempts == 1
        assert result.evaluation.passed
        assert [h.tool for h in result.history] == ["generate_outline", "critic_outline", "finish"]
        assert len(result.outline.volumes) == 2
        assert len(result.outline.all_chapters()) == 100
        # 总纲 1 次 + 每卷 1 次
        assert client.calls == 3

    def test_progress_events(self, sleeps):
        events = []
        run_outline_agent(
            dry_run_client(), "设定", 100,
            on_progress=lambda name, data: events.append((name, data)),
            sleep=sleeps.append,
        )
        names = [name for name, _ in events]
        assert names == ["attempt_start", "master_outline", "volume_complete", "volume_complete", "critic"]
        assert events[0][1]["max_attempts"] == 3
        assert events[2][1]["attempt"] == 1
        assert events[3][1]["volume_index"] == 2
        assert events[4][1]["passed"] is True

    def test_decision_callback_sees_each_step(self, sleeps):
        seen = []
        run_outline_agent(
            dry_run_client(), "设定", 20,
            on_decision=lambda i, decision, state: seen.append((i, decision.tool, state.outline_version)),
            sleep=sleeps.append,
        )
        assert seen == [(1, "generate_outline", 0), (2, "critic_outline", 1)]


class TestOutlineRevision:
    """评估不通过时带修订意见重写"""

    def test_second_attempt_carries_issues(self, sleeps):
        client = ScriptedCompletionClient([
            sample_master_outline(10),
            _volume_without(1, 10, {3, 4, 5}),
            sample_master_outline(10),
            sample_volume_chapters(1, 10),
        ])
        result = run_outline_agent(client, "设定", 10, sleep=sleeps.append)

        assert result.attempts == 2
        assert result.evaluation.passed
        assert [h.tool for h in result.history] == [
            "generate_outline", "critic_outline", "generate_outline", "critic_outline", "finish",
        ]
        first_master, second_master = client.requests[0], client.requests[2]
        assert "上一版大纲的问题" not in first_master.prompt
        assert "上一版大纲的问题" in second_master.prompt
        assert "缺失章节索引：3、4、5" in second_master.prompt
        assert "【修订要求】" in client.requests[3].prompt

    def test_best_outline_is_returned_when_never_passing(self, sleeps):
        client = ScriptedCompletionClient([
            sample_master_outline(10),
            _volume_without(1, 10, {2}),
            sample_master_outline(10),
            _volume_without(1, 10, {2, 3, 4, 5, 6}),
        ])
        result = run_outline_agent(client, "设定", 10, max_retries=1, sleep=sleeps.append)

        assert result.attempts == 2
        assert not result.evaluation.passed
        assert len(result.outline.all_chapters()) == 9
        assert "最大尝试次数 2" in result.done_reason

    def test_llm_failure_propagates(self, sleeps):
        client = ScriptedCompletionClient([ValueError("invalid request: model not found")])
        with pytest.raises(LLMCallError) as exc:
            run_outline_agent(client, "设定", 10, sleep=sleeps.append)
        assert exc.value.error_type == "invalid_request"
        assert sleeps == []


class TestOutlineTools:
    """大纲工具"""

    def test_registry_contents(self):
        tools = create_outline_tools(dry_run_client(), "设定", 10, 20, 8.0)
        assert tools.names() == ["generate_outline", "critic_outline"]

    def test_critic_requires_outline(self):
        tools = create_outline_tools(dry_run_client(), "设定", 10, 20, 8.0)
        with pytest.raises(ToolPreconditionError):
            tools.get("critic_outline").execute(OutlineAgentState(target_chapters=10), {})

    def test_revision_notes_accept_both_spellings(self):
        assert read_revision_notes({"revision_notes": "  补齐缺章 "}) == "补齐缺章"
        assert read_revision_notes({"revisionNotes": "去掉占位标题"}) == "去掉占位标题"
        assert read_revision_notes({"revision_notes": "   "}) is None
        assert read_revision_notes({}) is None
