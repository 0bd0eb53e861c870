"""
上下文语义缓存

条目键为 (项目, 片段类型, 章节)，每个条目记录生成它时所依赖的组件版本。
只要有一个依赖版本前进，条目就失效；不依赖该组件的条目不受影响。
缓存按项目命名空间隔离，由调用方显式创建并传入，不存在全局实例。
"""
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

CHARACTER_CONTEXT = "character_context"
PLOT_CONTEXT = "plot_context"
TIMELINE_CONTEXT = "timeline_context"
NARRATIVE_GUIDE = "narrative_guide"
ROLLING_SUMMARY = "rolling_summary"
BIBLE_COMPRESSED = "bible_compressed"
FULL_CONTEXT = "full_context"

CACHE_KINDS = (
    CHARACTER_CONTEXT, PLOT_CONTEXT, TIMELINE_CONTEXT, NARRATIVE_GUIDE,
    ROLLING_SUMMARY, BIBLE_COMPRESSED, FULL_CONTEXT,
)

CacheKey = Tuple[str, str, int]


def content_hash(text: str) -> str:
    return hashlib.sha1((text or "").encode("utf-8")).hexdigest()[:12]


def compute_state_version(
    character_version: int,
    plot_version: int,
    timeline_version: int,
    pacing_version: int,
    chapter_index: int,
) -> str:
    """由各知识库的变更计数与章节号组合出确定性的状态版本"""
    return f"c{character_version}-p{plot_version}-t{timeline_version}-n{pacing_version}-ch{chapter_index}"


@dataclass
class CacheEntry:
    kind: str
    content: str
    chapter_index: int
    state_version: str
    dependencies: Dict[str, str]
    created_at: float
    ttl: float
    content_hash: str = ""


@dataclass
class ChangeReport:
    needs_regeneration: bool
    changed_components: List[str] = field(default_factory=list)
    reason: str = ""


def detect_changes(cached: Optional[CacheEntry], dependencies: Dict[str, str], chapter_index: int) -> ChangeReport:
    """比较缓存条目与当前依赖版本"""
    if cached is None:
        return ChangeReport(True, ["all"], "无缓存")
    if cached.chapter_index != chapter_index:
        return ChangeReport(True, ["chapter"], f"章节变化 {cached.chapter_index} -> {chapter_index}")

    changed = [
        name for name in sorted(set(cached.dependencies) | set(dependencies))
        if cached.dependencies.get(name) != dependencies.get(name)
    ]
    if changed:
        return ChangeReport(True, changed, f"组件变化: {', '.join(changed)}")
    return ChangeReport(False, [], "无变化")


class SemanticCache:
    """带 TTL 与容量上限的上下文缓存"""

    def __init__(self, max_size: int = 100, default_ttl: float = 30 * 60, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > entry.ttl

    def _cleanup(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if self._expired(e, now)]:
            del self._entries[key]

    def peek(self, project_id: str, kind: str, chapter_index: int) -> Optional[CacheEntry]:
        """不做版本校验地读取条目"""
        entry = self._entries.get((project_id, kind, chapter_index))
        if entry is None or self._expired(entry, self._clock()):
            return None
        return entry

    def get(
        self,
        project_id: str,
        kind: str,
        chapter_index: int,
        dependencies: Dict[str, str],
    ) -> Optional[CacheEntry]:
        """依赖版本全部一致时命中；否则移除该条目"""
        key = (project_id, kind, chapter_index)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._expired(entry, self._clock()) or entry.dependencies != dependencies:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def set(
        self,
        project_id: str,
        kind: str,
        chapter_index: int,
        content: str,
        dependencies: Dict[str, str],
        state_version: str = "",
        ttl: Optional[float] = None,
    ) -> CacheEntry:
        self._cleanup()
        key = (project_id, kind, chapter_index)
        if key not in self._entries and len(self._entries) >= self.max_size:
            oldest = min(self._entries, key=lambda k: self._entries[k].created_at)
            del self._entries[oldest]

        entry = CacheEntry(
            kind=kind,
            content=content,
            chapter_index=chapter_index,
            state_version=state_version,
            dependencies=dict(dependencies),
            created_at=self._clock(),
            ttl=ttl if ttl is not None else self.default_ttl,
            content_hash=content_hash(content),
        )
        self._entries[key] = entry
        return entry

    def get_or_build(
        self,
        project_id: str,
        kind: str,
        chapter_index: int,
        dependencies: Dict[str, str],
        build: Callable[[], str],
        state_version: str = "",
    ) -> Tuple[str, bool]:
        """返回 (内容, 是否命中缓存)"""
        entry = self.get(project_id, kind, chapter_index, dependencies)
        if entry is not None:
            return entry.content, True
        content = build()
        self.set(project_id, kind, chapter_index, content, dependencies, state_version)
        return content, False

    def invalidate_project(self, project_id: str) -> int:
        keys = [k for k in self._entries if k[0] == project_id]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info("清除项目 %s 的 %s 条上下文缓存", project_id, len(keys))
        return len(keys)

    def invalidate_from_chapter(self, project_id: str, from_chapter: int) -> int:
        keys = [k for k in self._entries if k[0] == project_id and k[2] >= from_chapter]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, object]:
        by_kind: Dict[str, int] = {}
        for entry in self._entries.values():
            by_kind[entry.kind] = by_kind.get(entry.kind, 0) + 1
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
            "entries": by_kind,
        }
