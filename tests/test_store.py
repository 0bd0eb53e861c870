"""
项目存储测试（内存实现与 SQLite 实现共用同一组用例）

开发者: jamesenh, 开发时间: 2026-01-26
"""
import pytest

from novelforge.errors import CommitConflictError, ProjectNotFoundError
from novelforge.models import QCVerdict
from novelforge.runtime.store import InMemoryProjectStore, SQLiteProjectStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryProjectStore()
    else:
        sqlite_store = SQLiteProjectStore(tmp_path / "data" / "novelforge.db")
        yield sqlite_store
        sqlite_store.close()


class TestProjectState:
    """项目状态行"""

    def test_ensure_project_is_idempotent(self, store):
        created = store.ensure_project("demo", "演示", 100)
        assert created.next_chapter_index == 1
        assert created.total_chapters == 100
        assert created.project_name == "演示"

        store.ensure_project("demo", "改名", 5)
        assert store.load_state("demo").project_name == "演示"

    def test_missing_project(self, store):
        assert store.load_state("ghost") is None
        with pytest.raises(ProjectNotFoundError):
            store.commit_chapter("ghost", 1, "正文", "", [])

    def test_update_total_chapters(self, store):
        store.ensure_project("demo")
        store.update_total_chapters("demo", 30)
        assert store.load_state("demo").total_chapters == 30


class TestMaterials:
    """大纲、人物图谱与知识库"""

    def test_outline_and_characters(self, store, outline_factory, characters):
        store.ensure_project("demo")
        assert store.load_outline("demo") is None
        store.save_outline("demo", outline_factory(10))
        store.save_characters("demo", characters)
        assert store.load_outline("demo") == outline_factory(10)
        assert store.load_characters("demo") == characters

    def test_knowledge_snapshots(self, store):
        store.ensure_project("demo")
        assert store.load_knowledge("demo", "timeline") is None
        store.save_knowledge("demo", "timeline", {"version": 1, "events": []})
        store.save_knowledge("demo", "timeline", {"version": 2, "events": []})
        assert store.load_knowledge("demo", "timeline") == {"version": 2, "events": []}


class TestCommitChapter:
    """章节提交"""

    def test_commit_advances_state(self, store):
        store.ensure_project("demo", "演示", 10)
        qc = QCVerdict(score=88, passed=True)
        state = store.commit_chapter("demo", 1, "第1章 夜探禁地\n\n正文", "摘要", ["铜牌的来历"], qc)

        assert state.next_chapter_index == 2
        assert state.rolling_summary == "摘要"
        assert state.open_loops == ["铜牌的来历"]
        assert store.load_chapter("demo", 1).startswith("第1章")
        assert store.load_chapter_qc("demo", 1).score == 88
        assert store.chapter_indices("demo") == [1]

    def test_out_of_order_commit_conflicts(self, store):
        store.ensure_project("demo", "演示", 10)
        store.commit_chapter("demo", 1, "一", "", [])

        with pytest.raises(CommitConflictError) as exc:
            store.commit_chapter("demo", 3, "三", "新摘要", ["x"])

        assert exc.value.chapter_index == 3
        assert exc.value.actual_index == 2
        assert store.load_chapter("demo", 3) is None
        state = store.load_state("demo")
        assert state.next_chapter_index == 2
        assert state.rolling_summary == ""

    def test_recent_chapters(self, store):
        store.ensure_project("demo", "演示", 10)
        for index in range(1, 5):
            store.commit_chapter("demo", index, f"第{index}章", "", [])

        assert store.recent_chapters("demo", 5) == ["第3章", "第4章"]
        assert store.recent_chapters("demo", 3, count=3) == ["第1章", "第2章"]
        assert store.recent_chapters("demo", 5, count=0) == []

    def test_commit_without_qc(self, store):
        store.ensure_project("demo")
        store.commit_chapter("demo", 1, "正文", "", [])
        assert store.load_chapter_qc("demo", 1) is None


class TestSQLitePersistence:
    """SQLite 数据跨实例保留"""

    def test_reopen(self, tmp_path):
        db_path = tmp_path / "novelforge.db"
        first = SQLiteProjectStore(db_path)
        first.ensure_project("demo", "演示", 10)
        first.commit_chapter("demo", 1, "正文", "摘要", ["伏笔"])
        first.close()

        second = SQLiteProjectStore(db_path)
        state = second.load_state("demo")
        second.close()
        assert state.next_chapter_index == 2
        assert state.open_loops == ["伏笔"]
