"""
大纲质量评估测试

开发者: jamesenh, 开发时间: 2026-01-26
"""
import pytest

from novelforge.qc.outline_quality import evaluate_outline_quality, format_indices, is_placeholder_title


class TestOutlineQuality:
    """规则评估"""

    def test_clean_outline_passes(self, outline_factory):
        evaluation = evaluate_outline_quality(outline_factory(100), 100, 8.0)
        assert evaluation.passed
        assert evaluation.issues == []
        assert evaluation.score == pytest.approx(9.9)
        assert evaluation.metrics["coverage"] == 10.0
        assert evaluation.metrics["milestone_quality"] == 8.0

    def test_missing_and_duplicate_indices_fail(self, outline_factory):
        outline = outline_factory(100, skip=(45, 46, 47), duplicates=(12,))
        evaluation = evaluate_outline_quality(outline, 100, 8.0)

        assert not evaluation.passed
        assert "缺失章节索引：45、46、47" in evaluation.issues
        assert "重复章节索引：12" in evaluation.issues
        assert "章节总数不匹配：当前 98 / 目标 100" in evaluation.issues
        assert evaluation.metrics["coverage"] < 10

    def test_placeholder_titles_within_limit(self, outline_factory):
        evaluation = evaluate_outline_quality(outline_factory(100, placeholder=(1, 2, 3)), 100, 8.0)
        assert evaluation.passed
        assert "占位标题过多：3 章仍是占位标题" in evaluation.issues

    def test_placeholder_titles_over_limit(self, outline_factory):
        evaluation = evaluate_outline_quality(outline_factory(100, placeholder=(1, 2, 3, 4)), 100, 8.0)
        assert not evaluation.passed
        assert evaluation.metrics["title_quality"] == pytest.approx(9.6)

    def test_target_score_is_respected(self, outline_factory):
        assert not evaluate_outline_quality(outline_factory(10), 10, 10.0).passed

    def test_disconnected_volumes_are_reported(self, outline_factory):
        outline = outline_factory(100)
        shifted = outline.volumes[1].model_copy(update={"start_chapter": 82})
        outline = outline.model_copy(update={"volumes": [outline.volumes[0], shifted]})
        evaluation = evaluate_outline_quality(outline, 100, 8.0)
        assert "分卷衔接断裂：1 处分卷编号不连续" in evaluation.issues
        assert evaluation.metrics["structure"] == 8.5

    def test_invalid_volume_range_fails(self, outline_factory):
        outline = outline_factory(10)
        broken = outline.volumes[0].model_copy(update={"start_chapter": 10, "end_chapter": 1})
        evaluation = evaluate_outline_quality(outline.model_copy(update={"volumes": [broken]}), 10, 8.0)
        assert not evaluation.passed
        assert "分卷范围非法：1 卷的章节范围有误" in evaluation.issues


class TestHelpers:
    """辅助函数"""

    @pytest.mark.parametrize("title,expected", [
        ("", True),
        ("第12章", True),
        ("12", True),
        ("待补充标题", True),
        ("夜探禁地", False),
        ("第12章 夜探禁地", False),
    ])
    def test_placeholder_title(self, title, expected):
        assert is_placeholder_title(title) is expected

    def test_format_indices(self):
        assert format_indices([3, 4, 5]) == "3、4、5"
        assert format_indices(list(range(1, 15))) == "1、2、3、4、5、6、7、8、9、10、11、12 ... (共14个)"
