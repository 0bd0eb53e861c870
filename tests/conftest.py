"""
测试公共夹具：大纲/人物图谱构造、内存存储与引擎依赖

开发者: jamesenh, 开发时间: 2026-01-25
"""
import json

import pytest

from novelforge.config import EngineConfig
from novelforge.fakes import dry_run_client, sample_character_graph
from novelforge.models import NovelOutline, OutlineChapter, OutlineVolume, normalize_character_graph
from novelforge.runtime.services import EngineServices
from novelforge.runtime.store import InMemoryProjectStore


def _build_outline(total, per_volume=80, skip=(), duplicates=(), placeholder=()):
    volumes = []
    start = 1
    number = 1
    while start <= total:
        end = min(total, start + per_volume - 1)
        chapters = [
            OutlineChapter(
                index=i,
                title=f"第{i}章" if i in placeholder else f"暗潮汹涌之{i}",
                goal=f"林远在第{i}章化解一次危机",
                hook="新的敌人现身",
            )
            for i in range(start, end + 1) if i not in skip
        ]
        chapters += [
            OutlineChapter(index=i, title=f"重复的{i}", goal="重复章节目标", hook="")
            for i in duplicates if start <= i <= end
        ]
        volumes.append(OutlineVolume(
            title=f"第{number}卷：风起青萍",
            start_chapter=start,
            end_chapter=end,
            goal="主角在宗门站稳脚跟",
            conflict="外门派系倾轧",
            climax="宗门大比夺魁",
            chapters=chapters,
        ))
        start = end + 1
        number += 1
    return NovelOutline(
        total_chapters=total,
        main_goal="少年林远揭开灭门真相并重振家族",
        milestones=[f"第{v.end_chapter}章：{v.climax}" for v in volumes],
        volumes=volumes,
    )


@pytest.fixture
def outline_factory():
    """构造大纲：可指定缺失、重复与占位标题的章节"""
    return _build_outline


@pytest.fixture
def characters():
    return normalize_character_graph(json.loads(sample_character_graph()))


@pytest.fixture
def memory_store():
    return InMemoryProjectStore()


@pytest.fixture
def sleeps():
    """记录重试等待时长，不真正休眠"""
    return []


@pytest.fixture
def make_services(sleeps):
    def factory(store, writer=None, **config):
        config.setdefault("enable_deep_qc", False)
        config.setdefault("use_model_planner", False)
        overrides = {k: config.pop(k) for k in ("planner", "judge", "analyst", "summarizer", "outliner", "cache") if k in config}
        return EngineServices(
            store=store,
            writer=writer or dry_run_client(),
            config=EngineConfig(**config),
            sleep=sleeps.append,
            **overrides,
        )

    return factory
