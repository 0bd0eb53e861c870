"""
上下文组装、预算与语义缓存测试

开发者: jamesenh, 开发时间: 2026-01-25
"""
import pytest

from novelforge.context.budget import (
    BIBLE,
    LAST_CHAPTERS,
    ContextBudget,
    adjust_budget_for_pacing,
    context_stats,
    estimate_tokens,
)
from novelforge.context.builder import ContextBuilder, ContextInputs
from novelforge.context.cache import FULL_CONTEXT, SemanticCache, detect_changes
from novelforge.context.compressors import (
    compress_bible,
    compress_last_chapters,
    outline_character_mentions,
    truncate_section,
)
from novelforge.context.rolling_summary import (
    RollingSummaryMemory,
    compress_rolling_summary,
    format_rolling_summary,
    parse_rolling_summary,
    truncate_by_sentences,
)
from novelforge.knowledge.character_state import initialize_registry_from_graph
from novelforge.knowledge.pacing import PacingType, generate_narrative_arc, generate_narrative_guide
from novelforge.knowledge.timeline import TimelineState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestBudget:
    """token 预算"""

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("林远") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("林远ab") == 2

    @pytest.mark.parametrize("pacing_type", list(PacingType))
    def test_adjusted_allocation_sums_to_one(self, pacing_type):
        adjusted = adjust_budget_for_pacing(ContextBudget(), pacing_type)
        assert sum(adjusted.allocation.values()) == pytest.approx(1.0)

    def test_action_chapters_favor_recent_text(self):
        budget = ContextBudget(total_tokens=10000)
        adjusted = adjust_budget_for_pacing(budget, PacingType.ACTION)
        assert adjusted.tokens_for(LAST_CHAPTERS) > budget.tokens_for(LAST_CHAPTERS)
        assert adjusted.tokens_for(BIBLE) < budget.tokens_for(BIBLE)

    def test_context_stats_lists_sections(self):
        stats = context_stats("【核心设定】\n设定\n\n【剧情摘要】\n摘要")
        assert [s["name"] for s in stats["sections"]] == ["核心设定", "剧情摘要"]
        assert stats["total_chars"] == len("【核心设定】\n设定\n\n【剧情摘要】\n摘要")


class TestCompressors:
    """各片段压缩器"""

    def test_short_bible_is_kept(self):
        assert compress_bible("主角林远", 100) == "主角林远"

    def test_long_bible_keeps_high_priority_paragraphs(self):
        bible = "\n\n".join(["示例：" + "参" * 60, "主角林远身负残缺剑诀。", "背景：" + "史" * 60])
        compressed = compress_bible(bible, 30)
        assert "主角林远身负残缺剑诀。" in compressed
        assert "示例" not in compressed

    def test_last_chapters(self):
        assert compress_last_chapters([], 1000) == ""
        short = compress_last_chapters(["上一章内容"], 1000)
        assert short.startswith("【上一章原文】")
        long = compress_last_chapters(["字" * 5000], 1000)
        assert long.startswith("【上一章原文(节选)】\n...")

    def test_previous_chapter_tail_is_appended(self):
        text = compress_last_chapters(["前一章" * 100 + "结尾句", "最近一章"], 1000)
        assert "【前一章结尾】" in text
        assert text.index("【上一章原文】") < text.index("【前一章结尾】")

    def test_truncate_section_by_lines(self):
        text = "\n".join(["一行内容"] * 10)
        assert truncate_section(text, 1000) == text
        assert truncate_section(text, 5) == "一行内容\n一行内容"

    def test_outline_character_mentions(self):
        assert outline_character_mentions("林远与苏青夜探禁地", ["林远", "苏青", "赵无极"]) == ["林远", "苏青"]
        assert outline_character_mentions(None, ["林远"]) == []


class TestRollingSummary:
    """分层滚动摘要"""

    def test_roundtrip_with_headings(self):
        memory = RollingSummaryMemory(long_term="灭门旧案。", mid_term="结盟。", recent="夜探禁地。")
        text = format_rolling_summary(memory)
        assert text.startswith("【长期记忆】")
        assert parse_rolling_summary(text) == memory

    def test_legacy_text_is_split_from_tail(self):
        legacy = "甲" * 1000
        memory = parse_rolling_summary(legacy)
        assert len(memory.recent) == 500
        assert len(memory.mid_term) == 380
        assert len(memory.long_term) == 120

    def test_truncate_by_sentences(self):
        text = "第一句。第二句。第三句。"
        assert truncate_by_sentences(text, 8) == "第一句。第二句。"
        assert truncate_by_sentences(text, 8, keep_tail=True) == "第二句。第三句。"
        assert truncate_by_sentences(text, 100) == text

    def test_compression_fits_budget(self):
        memory = RollingSummaryMemory(long_term="旧事。" * 200, mid_term="近况。" * 200, recent="当下。" * 200)
        compressed = compress_rolling_summary(format_rolling_summary(memory), max_tokens=300)
        assert len(compressed) <= 300 * 2 + 40
        assert "【近期记忆】" in compressed


class TestSemanticCache:
    """语义缓存"""

    def test_get_or_build_hits_when_dependencies_match(self):
        cache = SemanticCache()
        calls = []

        def build():
            calls.append(1)
            return "内容"

        assert cache.get_or_build("demo", FULL_CONTEXT, 3, {"a": "1"}, build) == ("内容", False)
        assert cache.get_or_build("demo", FULL_CONTEXT, 3, {"a": "1"}, build) == ("内容", True)
        assert len(calls) == 1
        assert cache.stats()["hit_rate"] == 0.5

    def test_dependency_change_invalidates(self):
        cache = SemanticCache()
        cache.set("demo", FULL_CONTEXT, 3, "旧内容", {"timeline": "1"})
        assert cache.get("demo", FULL_CONTEXT, 3, {"timeline": "2"}) is None
        assert len(cache) == 0

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = SemanticCache(default_ttl=60, clock=clock)
        cache.set("demo", FULL_CONTEXT, 1, "内容", {})
        clock.now += 59
        assert cache.get("demo", FULL_CONTEXT, 1, {}) is not None
        clock.now += 2
        assert cache.get("demo", FULL_CONTEXT, 1, {}) is None

    def test_oldest_entry_is_evicted(self):
        clock = FakeClock()
        cache = SemanticCache(max_size=2, clock=clock)
        for chapter in (1, 2, 3):
            clock.now += 1
            cache.set("demo", FULL_CONTEXT, chapter, f"第{chapter}章", {})
        assert len(cache) == 2
        assert cache.peek("demo", FULL_CONTEXT, 1) is None
        assert cache.peek("demo", FULL_CONTEXT, 3).content == "第3章"

    def test_invalidation(self):
        cache = SemanticCache()
        for chapter in (1, 2, 3):
            cache.set("demo", FULL_CONTEXT, chapter, "x", {})
        cache.set("other", FULL_CONTEXT, 1, "x", {})
        assert cache.invalidate_from_chapter("demo", 2) == 2
        assert cache.invalidate_project("demo") == 1
        assert len(cache) == 1

    def test_detect_changes(self):
        cache = SemanticCache()
        entry = cache.set("demo", FULL_CONTEXT, 3, "x", {"a": "1", "b": "1"})
        assert detect_changes(None, {}, 3).changed_components == ["all"]
        assert detect_changes(entry, {"a": "1", "b": "1"}, 4).changed_components == ["chapter"]
        assert detect_changes(entry, {"a": "1", "b": "2"}, 3).changed_components == ["b"]
        assert not detect_changes(entry, {"a": "1", "b": "1"}, 3).needs_regeneration


class TestContextBuilder:
    """上下文组装"""

    @pytest.fixture
    def inputs(self, outline_factory, characters):
        outline = outline_factory(10)
        arc = generate_narrative_arc(outline)
        return ContextInputs(
            project_id="demo",
            chapter_index=3,
            total_chapters=10,
            bible="主角林远，外门弟子。\n\n世界观：灵气复苏。",
            rolling_summary="【近期记忆】\n林远与苏青结盟。",
            last_chapters=["第2章 旧事\n\n林远推开石门。"],
            character_states=initialize_registry_from_graph(characters),
            timeline=TimelineState(),
            characters=characters,
            narrative_arc=arc,
            narrative_guide=generate_narrative_guide(arc, 3, outline.find_chapter(3)),
        )

    def test_sections_are_assembled(self, inputs):
        result = ContextBuilder().build(inputs)
        assert result.text.startswith("【章节信息】\n- 当前章节: 第3/10章")
        for heading in ("【核心设定】", "【本章叙事要求】", "【剧情摘要】", "【上一章原文】"):
            assert heading in result.text
        assert not result.from_cache
        assert result.token_estimate > 0

    def test_unchanged_state_returns_identical_text(self, inputs):
        builder = ContextBuilder(cache=SemanticCache())
        first = builder.build(inputs)
        second = builder.build(inputs)
        assert second.from_cache
        assert second.text == first.text
        assert second.changed_components == []
        assert second.state_version == first.state_version

    def test_timeline_change_rebuilds_only_dependent_sections(self, inputs):
        builder = ContextBuilder(cache=SemanticCache())
        builder.build(inputs)
        changed = inputs.model_copy(update={"timeline": TimelineState(version=1)})
        result = builder.build(changed)

        assert not result.from_cache
        assert "timeline_context.timeline" in result.changed_components
        assert result.section_hits["bible_compressed"] is True
        assert result.section_hits["rolling_summary"] is True

    def test_state_version_tracks_components(self, inputs):
        builder = ContextBuilder()
        before = builder.build(inputs).state_version
        after = builder.build(inputs.model_copy(update={"timeline": TimelineState(version=4)})).state_version
        assert before != after
        assert after.endswith("-ch3")
        assert "-t4-" in after
