"""
章节生成与正文规范化测试

开发者: jamesenh, 开发时间: 2026-01-25
"""
from novelforge.fakes import ScriptedCompletionClient, dry_run_client, sample_chapter_text, sample_summary_update
from novelforge.generation.chapter_text import chapter_title, normalize_chapter_text
from novelforge.generation.chapter_writer import ChapterWriteParams, build_user_prompt, write_chapter

ENDING = "\n\n至此，全书完。"


class TestPrematureEndingRewrite:
    """非最终章的提前完结自纠"""

    def test_single_rewrite_fixes_early_ending(self, sleeps):
        client = ScriptedCompletionClient(
            [sample_chapter_text(5) + ENDING, sample_chapter_text(5), sample_summary_update(5)]
        )
        draft = write_chapter(client, ChapterWriteParams(chapter_index=5, total_chapters=100), sleep=sleeps.append)

        assert client.calls == 3
        assert "【重写要求】" in client.requests[1].prompt
        assert "第 5/100 章" in client.requests[1].prompt
        assert client.requests[1].temperature == 0.8
        assert draft.was_rewritten
        assert draft.rewrite_count == 1
        assert "全书完" not in draft.chapter_text

    def test_final_chapter_is_never_rewritten(self, sleeps):
        client = ScriptedCompletionClient([sample_chapter_text(100) + ENDING, sample_summary_update(100)])
        draft = write_chapter(client, ChapterWriteParams(chapter_index=100, total_chapters=100), sleep=sleeps.append)

        assert client.calls == 2
        assert "true - 可以写结局" in client.requests[0].system
        assert not draft.was_rewritten
        assert "全书完" in draft.chapter_text

    def test_rewrites_are_bounded(self, sleeps):
        client = ScriptedCompletionClient(handler=lambda request: sample_chapter_text(5) + ENDING)
        draft = write_chapter(
            client,
            ChapterWriteParams(chapter_index=5, total_chapters=100, max_rewrite_attempts=2, skip_summary_update=True),
            sleep=sleeps.append,
        )
        assert client.calls == 3
        assert draft.rewrite_count == 2
        assert "全书完" in draft.chapter_text

    def test_zero_rewrite_attempts(self, sleeps):
        client = ScriptedCompletionClient([sample_chapter_text(5) + ENDING])
        draft = write_chapter(
            client,
            ChapterWriteParams(chapter_index=5, total_chapters=100, max_rewrite_attempts=0, skip_summary_update=True),
            sleep=sleeps.append,
        )
        assert client.calls == 1
        assert draft.rewrite_count == 0


class TestTruncationRewrite:
    """正文截断的自纠"""

    TRUNCATED = "\n\n林远刚要开口，石门背后"

    def test_truncated_draft_is_rewritten(self, sleeps):
        client = ScriptedCompletionClient([sample_chapter_text(5) + self.TRUNCATED, sample_chapter_text(5)])
        draft = write_chapter(
            client,
            ChapterWriteParams(chapter_index=5, total_chapters=100, skip_summary_update=True),
            sleep=sleeps.append,
        )
        assert client.calls == 2
        assert "正文不完整" in client.requests[1].prompt
        assert "正文结尾缺少收束标点" in client.requests[1].prompt
        assert draft.rewrite_count == 1
        assert draft.chapter_text.endswith("你们终于来了。”")

    def test_final_chapter_is_checked_for_truncation(self, sleeps):
        client = ScriptedCompletionClient(
            [sample_chapter_text(100) + self.TRUNCATED, sample_chapter_text(100) + ENDING]
        )
        draft = write_chapter(
            client,
            ChapterWriteParams(chapter_index=100, total_chapters=100, skip_summary_update=True),
            sleep=sleeps.append,
        )
        assert client.calls == 2
        assert "正文不完整" in client.requests[1].prompt
        assert draft.rewrite_count == 1
        assert "全书完" in draft.chapter_text


class TestSummaryUpdate:
    """章节生成后的摘要更新"""

    def test_summary_client_updates_memory(self, sleeps):
        writer = ScriptedCompletionClient([sample_chapter_text(2)])
        summarizer = ScriptedCompletionClient([sample_summary_update(2)])
        draft = write_chapter(
            writer,
            ChapterWriteParams(chapter_index=2, total_chapters=10, rolling_summary="旧摘要", open_loops=["旧伏笔"]),
            summary_client=summarizer,
            sleep=sleeps.append,
        )
        assert writer.calls == 1
        assert summarizer.calls == 1
        assert "第2章 夜探禁地" in summarizer.requests[0].prompt
        assert "夜探禁地" in draft.updated_summary
        assert draft.updated_open_loops == ["石门后的神秘人身份", "铜牌的来历"]

    def test_failed_summary_keeps_previous_values(self, sleeps):
        writer = ScriptedCompletionClient([sample_chapter_text(2)])
        summarizer = ScriptedCompletionClient([ValueError("invalid request: context too long")])
        draft = write_chapter(
            writer,
            ChapterWriteParams(chapter_index=2, total_chapters=10, rolling_summary="旧摘要", open_loops=["旧伏笔"]),
            summary_client=summarizer,
            sleep=sleeps.append,
        )
        assert draft.updated_summary == "旧摘要"
        assert draft.updated_open_loops == ["旧伏笔"]

    def test_unparseable_summary_keeps_previous_values(self, sleeps):
        client = ScriptedCompletionClient([sample_chapter_text(2), "本章讲了林远夜探禁地。"])
        draft = write_chapter(
            client,
            ChapterWriteParams(chapter_index=2, total_chapters=10, rolling_summary="旧摘要", open_loops=["旧伏笔"]),
            sleep=sleeps.append,
        )
        assert draft.updated_summary == "旧摘要"
        assert draft.updated_open_loops == ["旧伏笔"]

    def test_retry_on_server_error(self, sleeps):
        client = ScriptedCompletionClient([RuntimeError("502 bad gateway"), sample_chapter_text(3)])
        draft = write_chapter(
            client,
            ChapterWriteParams(chapter_index=3, total_chapters=10, skip_summary_update=True),
            sleep=sleeps.append,
        )
        assert draft.chapter_text.startswith("第3章")
        assert sleeps == [3.0]


class TestPrompts:
    """章节提示词"""

    def test_prompt_without_context_lists_materials(self):
        prompt = build_user_prompt(ChapterWriteParams(
            bible="宗门设定", chapter_index=3, total_chapters=10,
            last_chapters=["上一章原文"], open_loops=["铜牌来历"],
        ))
        assert "is_final_chapter: false" in prompt
        assert "宗门设定" in prompt
        assert "---近章1---\n上一章原文" in prompt
        assert "1. 铜牌来历" in prompt

    def test_prepared_context_replaces_materials(self):
        prompt = build_user_prompt(ChapterWriteParams(
            bible="宗门设定", chapter_index=3, total_chapters=10, context_text="【组装好的上下文】",
            chapter_goal_hint="林远取得铜牌",
        ))
        assert prompt.startswith("【组装好的上下文】")
        assert "宗门设定" not in prompt
        assert "林远取得铜牌" in prompt

    def test_dry_run_client_writes_requested_chapter(self, sleeps):
        draft = write_chapter(
            dry_run_client(),
            ChapterWriteParams(chapter_index=7, total_chapters=10, chapter_title="初入内门"),
            sleep=sleeps.append,
        )
        assert draft.chapter_text.startswith("第7章")
        assert draft.updated_open_loops


class TestChapterTextNormalization:
    """正文规范化"""

    def test_json_payload(self):
        raw = '{"title": "夜探禁地", "content": "  林远推开石门。 "}'
        assert normalize_chapter_text(raw, 3) == "第3章 夜探禁地\n\n林远推开石门。"

    def test_fenced_json_payload_with_heading_title(self):
        raw = '```json\n{"title": "第3章 夜探禁地", "content": "正文"}\n```'
        assert normalize_chapter_text(raw, 3) == "第3章 夜探禁地\n\n正文"

    def test_markdown_heading(self):
        assert normalize_chapter_text("## 第3章 夜探禁地\n林远推开石门。", 3) == "第3章 夜探禁地\n\n林远推开石门。"

    def test_title_prefix(self):
        assert normalize_chapter_text("标题：夜探禁地\n\n林远推开石门。", 3) == "第3章 夜探禁地\n\n林远推开石门。"

    def test_plain_text_is_kept(self):
        assert normalize_chapter_text("林远推开石门。", 3) == "林远推开石门。"

    def test_chapter_title(self):
        assert chapter_title("\n\n第3章 夜探禁地\n\n正文") == "第3章 夜探禁地"
        assert chapter_title("") == ""
