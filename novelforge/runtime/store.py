"""
项目持久化接口层
引擎只读写以下内容：大纲、人物图谱、章节正文、项目状态行
（下一章序号 / 滚动摘要 / 未解伏笔）、每章 QC 结论、知识库快照。

提交章节时在同一个事务里校验下一章序号，序号漂移则抛出 CommitConflictError，
不写入任何内容。
"""
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from novelforge.errors import CommitConflictError, ProjectNotFoundError
from novelforge.models import CharacterGraph, NovelOutline, QCVerdict

logger = logging.getLogger(__name__)


class ProjectState(BaseModel):
    """项目状态行"""
    project_id: str = Field(description="项目ID")
    project_name: str = Field(default="", description="项目名")
    total_chapters: int = Field(default=0, description="计划总章数")
    next_chapter_index: int = Field(default=1, description="下一章序号")
    rolling_summary: str = Field(default="", description="滚动摘要")
    open_loops: List[str] = Field(default_factory=list, description="未解伏笔")


class ProjectStore(ABC):
    """项目存储抽象接口"""

    @abstractmethod
    def ensure_project(self, project_id: str, project_name: str = "", total_chapters: int = 0) -> ProjectState:
        """不存在时创建状态行，返回当前状态"""

    @abstractmethod
    def load_state(self, project_id: str) -> Optional[ProjectState]:
        pass

    @abstractmethod
    def update_total_chapters(self, project_id: str, total_chapters: int) -> None:
        pass

    @abstractmethod
    def load_outline(self, project_id: str) -> Optional[NovelOutline]:
        pass

    @abstractmethod
    def save_outline(self, project_id: str, outline: NovelOutline) -> None:
        pass

    @abstractmethod
    def load_characters(self, project_id: str) -> Optional[CharacterGraph]:
        pass

    @abstractmethod
    def save_characters(self, project_id: str, characters: CharacterGraph) -> None:
        pass

    @abstractmethod
    def load_chapter(self, project_id: str, chapter_index: int) -> Optional[str]:
        pass

    @abstractmethod
    def recent_chapters(self, project_id: str, before_index: int, count: int = 2) -> List[str]:
        """返回 before_index 之前最近 count 章正文（按章节顺序）"""

    @abstractmethod
    def chapter_indices(self, project_id: str) -> List[int]:
        pass

    @abstractmethod
    def load_chapter_qc(self, project_id: str, chapter_index: int) -> Optional[QCVerdict]:
        pass

    @abstractmethod
    def load_knowledge(self, project_id: str, kind: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def save_knowledge(self, project_id: str, kind: str, data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def commit_chapter(
        self,
        project_id: str,
        chapter_index: int,
        content: str,
        rolling_summary: str,
        open_loops: List[str],
        qc: Optional[QCVerdict] = None,
    ) -> ProjectState:
        """
        提交章节并推进状态行

        Raises:
            ProjectNotFoundError: 状态行不存在
            CommitConflictError: 持久化的下一章序号与 chapter_index 不一致
        """

    def close(self) -> None:
        pass


class InMemoryProjectStore(ProjectStore):
    """内存实现，用于测试与试运行"""

    def __init__(self):
        self._states: Dict[str, ProjectState] = {}
        self._outlines: Dict[str, Dict[str, Any]] = {}
        self._characters: Dict[str, Dict[str, Any]] = {}
        self._chapters: Dict[Tuple[str, int], str] = {}
        self._qc: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self._knowledge: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def ensure_project(self, project_id: str, project_name: str = "", total_chapters: int = 0) -> ProjectState:
        if project_id not in self._states:
            self._states[project_id] = ProjectState(
                project_id=project_id, project_name=project_name or project_id, total_chapters=total_chapters,
            )
        return self._states[project_id].model_copy(deep=True)

    def load_state(self, project_id: str) -> Optional[ProjectState]:
        state = self._states.get(project_id)
        return state.model_copy(deep=True) if state else None

    def set_next_chapter_index(self, project_id: str, next_index: int) -> None:
        """直接改写下一章序号（模拟并发写入）"""
        self._states[project_id] = self._states[project_id].model_copy(update={"next_chapter_index": next_index})

    def update_total_chapters(self, project_id: str, total_chapters: int) -> None:
        self._states[project_id] = self._states[project_id].model_copy(update={"total_chapters": total_chapters})

    def load_outline(self, project_id: str) -> Optional[NovelOutline]:
        data = self._outlines.get(project_id)
        return NovelOutline.model_validate(data) if data else None

    def save_outline(self, project_id: str, outline: NovelOutline) -> None:
        self._outlines[project_id] = outline.model_dump(mode="json")

    def load_characters(self, project_id: str) -> Optional[CharacterGraph]:
        data = self._characters.get(project_id)
        return CharacterGraph.model_validate(data) if data else None

    def save_characters(self, project_id: str, characters: CharacterGraph) -> None:
        self._characters[project_id] = characters.model_dump(mode="json")

    def load_chapter(self, project_id: str, chapter_index: int) -> Optional[str]:
        return self._chapters.get((project_id, chapter_index))

    def recent_chapters(self, project_id: str, before_index: int, count: int = 2) -> List[str]:
        indices = [i for i in self.chapter_indices(project_id) if i < before_index][-count:] if count > 0 else []
        return [self._chapters[(project_id, i)] for i in indices]

    def chapter_indices(self, project_id: str) -> List[int]:
        return sorted(i for pid, i in self._chapters if pid == project_id)

    def load_chapter_qc(self, project_id: str, chapter_index: int) -> Optional[QCVerdict]:
        data = self._qc.get((project_id, chapter_index))
        return QCVerdict.model_validate(data) if data else None

    def load_knowledge(self, project_id: str, kind: str) -> Optional[Dict[str, Any]]:
        data = self._knowledge.get((project_id, kind))
        return deepcopy(data) if data is not None else None

    def save_knowledge(self, project_id: str, kind: str, data: Dict[str, Any]) -> None:
        self._knowledge[(project_id, kind)] = deepcopy(data)

    def commit_chapter(
        self,
        project_id: str,
        chapter_index: int,
        content: str,
        rolling_summary: str,
        open_loops: List[str],
        qc: Optional[QCVerdict] = None,
    ) -> ProjectState:
        state = self._states.get(project_id)
        if state is None:
            raise ProjectNotFoundError(project_id)
        if state.next_chapter_index != chapter_index:
            raise CommitConflictError(project_id, chapter_index, chapter_index, state.next_chapter_index)

        self._chapters[(project_id, chapter_index)] = content
        if qc is not None:
            self._qc[(project_id, chapter_index)] = qc.model_dump(mode="json")
        new_state = state.model_copy(update={
            "next_chapter_index": chapter_index + 1,
            "rolling_summary": rolling_summary,
            "open_loops": list(open_loops),
        })
        self._states[project_id] = new_state
        return new_state.model_copy(deep=True)


class SQLiteProjectStore(ProjectStore):
    """SQLite 实现"""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.connection: Optional[sqlite3.Connection] = None
        self.initialize()

    @contextmanager
    def get_connection(self):
        """获取数据库连接的上下文管理器（异常时回滚）"""
        if self.connection is None:
            self.connection = sqlite3.connect(self.db_path)
            self.connection.row_factory = sqlite3.Row
        try:
            yield self.connection
            self.connection.commit()
        except sqlite3.Error as e:
            logger.error(f"数据库操作错误: {e}")
            self.connection.rollback()
            raise
        except Exception:
            self.connection.rollback()
            raise

    def initialize(self) -> None:
        """初始化数据库和表结构"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS project_state (
                    project_id TEXT PRIMARY KEY,
                    project_name TEXT NOT NULL DEFAULT '',
                    total_chapters INTEGER NOT NULL DEFAULT 0,
                    next_chapter_index INTEGER NOT NULL DEFAULT 1,
                    rolling_summary TEXT NOT NULL DEFAULT '',
                    open_loops TEXT NOT NULL DEFAULT '[]',
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS outlines (
                    project_id TEXT PRIMARY KEY,
                    outline_json TEXT NOT NULL,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS characters (
                    project_id TEXT PRIMARY KEY,
                    characters_json TEXT NOT NULL,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS chapters (
                    project_id TEXT NOT NULL,
                    chapter_index INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT,
                    PRIMARY KEY (project_id, chapter_index)
                );
                CREATE TABLE IF NOT EXISTS chapter_qc (
                    project_id TEXT NOT NULL,
                    chapter_index INTEGER NOT NULL,
                    qc_json TEXT NOT NULL,
                    passed INTEGER NOT NULL,
                    score INTEGER NOT NULL,
                    created_at TEXT,
                    PRIMARY KEY (project_id, chapter_index)
                );
                CREATE TABLE IF NOT EXISTS knowledge_stores (
                    project_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    updated_at TEXT,
                    PRIMARY KEY (project_id, kind)
                );
            """)
        logger.debug("数据库初始化完成: %s", self.db_path)

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> ProjectState:
        return ProjectState(
            project_id=row["project_id"],
            project_name=row["project_name"],
            total_chapters=row["total_chapters"],
            next_chapter_index=row["next_chapter_index"],
            rolling_summary=row["rolling_summary"],
            open_loops=json.loads(row["open_loops"] or "[]"),
        )

    def ensure_project(self, project_id: str, project_name: str = "", total_chapters: int = 0) -> ProjectState:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO project_state (project_id, project_name, total_chapters, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (project_id, project_name or project_id, total_chapters, datetime.now().isoformat()),
            )
        return self.load_state(project_id)

    def load_state(self, project_id: str) -> Optional[ProjectState]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM project_state WHERE project_id = ?", (project_id,)).fetchone()
        return self._row_to_state(row) if row else None

    def set_next_chapter_index(self, project_id: str, next_index: int) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE project_state SET next_chapter_index = ? WHERE project_id = ?", (next_index, project_id),
            )

    def update_total_chapters(self, project_id: str, total_chapters: int) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE project_state SET total_chapters = ?, updated_at = ? WHERE project_id = ?",
                (total_chapters, datetime.now().isoformat(), project_id),
            )

    def load_outline(self, project_id: str) -> Optional[NovelOutline]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT outline_json FROM outlines WHERE project_id = ?", (project_id,)).fetchone()
        return NovelOutline.model_validate_json(row["outline_json"]) if row else None

    def save_outline(self, project_id: str, outline: NovelOutline) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO outlines (project_id, outline_json, updated_at) VALUES (?, ?, ?)",
                (project_id, outline.model_dump_json(), datetime.now().isoformat()),
            )

    def load_characters(self, project_id: str) -> Optional[CharacterGraph]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT characters_json FROM characters WHERE project_id = ?", (project_id,),
            ).fetchone()
        return CharacterGraph.model_validate_json(row["characters_json"]) if row else None

    def save_characters(self, project_id: str, characters: CharacterGraph) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO characters (project_id, characters_json, updated_at) VALUES (?, ?, ?)",
                (project_id, characters.model_dump_json(), datetime.now().isoformat()),
            )

    def load_chapter(self, project_id: str, chapter_index: int) -> Optional[str]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT content FROM chapters WHERE project_id = ? AND chapter_index = ?",
                (project_id, chapter_index),
            ).fetchone()
        return row["content"] if row else None

    def recent_chapters(self, project_id: str, before_index: int, count: int = 2) -> List[str]:
        if count <= 0:
            return []
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT content FROM chapters
                WHERE project_id = ? AND chapter_index < ?
                ORDER BY chapter_index DESC LIMIT ?
                """,
                (project_id, before_index, count),
            ).fetchall()
        return [row["content"] for row in reversed(rows)]

    def chapter_indices(self, project_id: str) -> List[int]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT chapter_index FROM chapters WHERE project_id = ? ORDER BY chapter_index", (project_id,),
            ).fetchall()
        return [row["chapter_index"] for row in rows]

    def load_chapter_qc(self, project_id: str, chapter_index: int) -> Optional[QCVerdict]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT qc_json FROM chapter_qc WHERE project_id = ? AND chapter_index = ?",
                (project_id, chapter_index),
            ).fetchone()
        return QCVerdict.model_validate_json(row["qc_json"]) if row else None

    def load_knowledge(self, project_id: str, kind: str) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT data_json FROM knowledge_stores WHERE project_id = ? AND kind = ?", (project_id, kind),
            ).fetchone()
        return json.loads(row["data_json"]) if row else None

    def save_knowledge(self, project_id: str, kind: str, data: Dict[str, Any]) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO knowledge_stores (project_id, kind, data_json, updated_at) VALUES (?, ?, ?, ?)",
                (project_id, kind, json.dumps(data, ensure_ascii=False), datetime.now().isoformat()),
            )

    def commit_chapter(
        self,
        project_id: str,
        chapter_index: int,
        content: str,
        rolling_summary: str,
        open_loops: List[str],
        qc: Optional[QCVerdict] = None,
    ) -> ProjectState:
        now = datetime.now().isoformat()
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT next_chapter_index FROM project_state WHERE project_id = ?", (project_id,),
            ).fetchone()
            if row is None:
                raise ProjectNotFoundError(project_id)
            if row["next_chapter_index"] != chapter_index:
                raise CommitConflictError(project_id, chapter_index, chapter_index, row["next_chapter_index"])

            conn.execute(
                "INSERT OR REPLACE INTO chapters (project_id, chapter_index, content, created_at) VALUES (?, ?, ?, ?)",
                (project_id, chapter_index, content, now),
            )
            conn.execute(
                """
                UPDATE project_state SET
                    next_chapter_index = ?,
                    rolling_summary = ?,
                    open_loops = ?,
                    updated_at = ?
                WHERE project_id = ?
                """,
                (chapter_index + 1, rolling_summary, json.dumps(open_loops, ensure_ascii=False), now, project_id),
            )
            if qc is not None:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO chapter_qc (project_id, chapter_index, qc_json, passed, score, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (project_id, chapter_index, qc.model_dump_json(), 1 if qc.passed else 0, qc.score, now),
                )
        return self.load_state(project_id)

    def close(self) -> None:
        if self.connection:
            self.connection.close()
            self.connection = None
