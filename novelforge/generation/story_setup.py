"""
大纲与人物图谱生成

大纲分两步：先生成总纲（主线、里程碑、分卷），再逐卷生成章节大纲，
上一卷的卷末状态作为下一卷的衔接摘要。模型输出经 normalize_* 转成规范模型。

开发者: jamesenh
开发时间: 2026-01-21
"""
import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional

from novelforge.chains.structured import load_json_payload
from novelforge.errors import StructuredOutputError
from novelforge.llm import CompletionRequest, TextCompletionClient, generate_text_with_retry
from novelforge.models import (
    CharacterGraph,
    NovelOutline,
    normalize_character_graph,
    normalize_milestones,
    normalize_volume,
)

logger = logging.getLogger(__name__)

OUTLINE_TEMPERATURE = 0.7
CHARACTER_TEMPERATURE = 0.8
CHAPTERS_PER_VOLUME = 80
DEFAULT_MIN_CHAPTER_WORDS = 2500

ProgressCallback = Callable[[str, Dict[str, Any]], None]


def _load(raw: str, what: str) -> Any:
    try:
        return load_json_payload(raw)
    except ValueError as e:
        raise StructuredOutputError(what, [str(e)], raw) from e


def _characters_summary(characters: Optional[CharacterGraph]) -> str:
    if characters is None:
        return ""
    protagonists = "\n  ".join(f"{p.name}: {', '.join(p.traits) or p.role}" for p in characters.protagonists)
    mains = "\n  ".join(f"{c.name}: {c.role}" for c in characters.main_characters)
    rels = "\n  ".join(
        f"{characters.find_name(r.from_id)} ←→ {characters.find_name(r.to_id)}: {r.type} ({r.tension or '无张力说明'})"
        for r in characters.relationships[:10]
    )
    return (
        "\n【核心人物设定（已确定）】\n"
        f"主角：\n  {protagonists or '未定义'}\n\n"
        f"重要配角：\n  {mains or '未定义'}\n\n"
        f"核心关系冲突：\n  {rels or '未定义'}\n\n"
        "请在大纲规划时充分利用以上人物关系，让每卷的核心冲突与人物关系变化绑定。"
    )


MASTER_OUTLINE_SYSTEM = """
你是一个起点白金级网文大纲策划专家。你对网文的节奏、爽点、冲突设计有深刻理解。

大纲设计原则：
1. 冲突递进：每卷的核心冲突必须比上一卷更大、更紧迫
2. 爽点节奏：每 3-5 章安排一个大爽点（升级/反杀/获宝/揭秘），章节间有小爽点
3. 人物弧线：主角在每卷必须有明确的内在成长，而非只是实力提升
4. 悬念管理：每卷结尾必须留大悬念，牵引读者进入下一卷
5. 三幕结构：每卷遵循「铺垫(25%) → 发展(50%) → 高潮收尾(25%)」
6. 禁止水卷：每卷都要有明确的核心矛盾和高潮
7. 篇幅规划：章节推进要匹配字数预算，默认每章不少于 {min_words} 字

输出严格的 JSON 格式，不要有其他文字。

JSON 结构：
{{
  "mainGoal": "整本书的终极目标/主线（50字以内）",
  "milestones": ["第100章里程碑", "第200章里程碑"],
  "volumes": [
    {{
      "title": "第一卷：xxx",
      "startChapter": 1,
      "endChapter": 80,
      "goal": "本卷要完成什么（30字以内）",
      "conflict": "本卷核心冲突（30字以内）",
      "climax": "本卷高潮（30字以内）",
      "volumeEndState": "卷末局势（30字以内）"
    }}
  ]
}}
""".strip()


def generate_master_outline(
    client: TextCompletionClient,
    bible: str,
    target_chapters: int,
    target_word_count: int,
    revision_notes: Optional[str] = None,
    characters: Optional[CharacterGraph] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    volume_count = math.ceil(target_chapters / CHAPTERS_PER_VOLUME)
    prompt = (
        f"【Story Bible】\n{bible}\n\n"
        "【目标规模】\n"
        f"- 总章数: {target_chapters} 章\n"
        f"- 总字数: {target_word_count} 万字\n"
        f"- 每章最低字数: {DEFAULT_MIN_CHAPTER_WORDS} 字\n"
        f"- 预计分卷数: {volume_count} 卷\n"
        f"{_characters_summary(characters)}\n"
    )
    if revision_notes:
        prompt += f"\n【上一版大纲的问题（必须修正）】\n{revision_notes}\n"
    prompt += "\n请生成总大纲："

    raw = generate_text_with_retry(
        client,
        CompletionRequest(
            system=MASTER_OUTLINE_SYSTEM.format(min_words=DEFAULT_MIN_CHAPTER_WORDS),
            prompt=prompt,
            temperature=OUTLINE_TEMPERATURE,
        ),
        sleep=sleep,
    )
    data = _load(raw, "MasterOutline")
    if not isinstance(data, dict) or not isinstance(data.get("volumes"), list):
        raise StructuredOutputError("MasterOutline", ["缺少 volumes 数组"], raw)
    return data


VOLUME_CHAPTERS_SYSTEM = """
你是一个起点白金级网文章节大纲策划专家。请为一卷生成所有章节的大纲。

章节大纲设计原则：
1. 每章必须有明确的"本章爽点"（主角展现能力/获得收获/化解危机/揭露真相）
2. 每章结尾必须有钩子（悬念/反转/危机/揭示）
3. 节奏波浪：高潮章后要有 1-2 章缓冲，缓冲章仍需有小悬念
4. 冲突升级：核心冲突要逐步升级，不能一下子解决
5. 禁止水章：每章都要推动剧情

输出严格的 JSON 数组格式，不要有其他文字。

每章格式：
{"index": 章节序号, "title": "章节标题（不含序号）", "goal": "本章要完成什么（20字以内）", "hook": "章末钩子（20字以内）"}
""".strip()


def generate_volume_chapters(
    client: TextCompletionClient,
    bible: str,
    main_goal: str,
    volume: Dict[str, Any],
    start_chapter: int,
    end_chapter: int,
    previous_volume_summary: Optional[str] = None,
    revision_notes: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[Any]:
    chapter_count = end_chapter - start_chapter + 1
    prompt = (
        f"【Story Bible】\n{bible[:2000]}\n\n"
        f"【总目标】{main_goal}\n\n"
        "【本卷信息】\n"
        f"- {volume.get('title', '')}\n"
        f"- 章节范围: 第{start_chapter}章 ~ 第{end_chapter}章 (共{chapter_count}章)\n"
        f"- 本卷目标: {volume.get('goal', '')}\n"
        f"- 本卷冲突: {volume.get('conflict', '')}\n"
        f"- 本卷高潮: {volume.get('climax', '')}\n\n"
        f"{'【上卷结尾摘要】' + chr(10) + previous_volume_summary if previous_volume_summary else '【这是第一卷】'}\n"
    )
    if revision_notes:
        prompt += f"\n【修订要求】\n{revision_notes}\n"
    prompt += f"\n请生成本卷所有 {chapter_count} 章的大纲（JSON数组）："

    raw = generate_text_with_retry(
        client,
        CompletionRequest(system=VOLUME_CHAPTERS_SYSTEM, prompt=prompt, temperature=OUTLINE_TEMPERATURE),
        sleep=sleep,
    )
    data = _load(raw, "VolumeChapters")
    if isinstance(data, dict):
        data = data.get("chapters")
    if not isinstance(data, list):
        raise StructuredOutputError("VolumeChapters", ["输出不是章节数组"], raw)
    return data


def generate_full_outline(
    client: TextCompletionClient,
    bible: str,
    target_chapters: int,
    target_word_count: int = 0,
    revision_notes: Optional[str] = None,
    characters: Optional[CharacterGraph] = None,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> NovelOutline:
    """
    生成完整大纲（总纲 + 逐卷章节）

    Args:
        client: 大纲模型客户端
        bible: 核心设定
        target_chapters: 目标章数
        target_word_count: 目标字数（万字）
        revision_notes: 上一版评估给出的修订意见
        characters: 已确定的人物图谱
        on_progress: 进度回调 (事件名, 数据)

    Returns:
        NovelOutline
    """
    master = generate_master_outline(
        client, bible, target_chapters, target_word_count, revision_notes, characters, sleep,
    )
    raw_volumes = [v for v in master["volumes"] if isinstance(v, dict)]
    main_goal = str(master.get("mainGoal") or master.get("main_goal") or "")
    if on_progress:
        on_progress("master_outline", {"total_volumes": len(raw_volumes), "main_goal": main_goal})

    volumes = []
    for i, raw_volume in enumerate(raw_volumes):
        # 先不带章节规范化一次，得到有效的起止章节
        bounds = normalize_volume(raw_volume, i, [])
        previous = None
        if i > 0:
            prev = raw_volumes[i - 1]
            previous = prev.get("volumeEndState") or f"{prev.get('climax', '')}（主角已达成：{prev.get('goal', '')}）"

        chapters = generate_volume_chapters(
            client, bible, main_goal, raw_volume, bounds.start_chapter, bounds.end_chapter,
            previous, revision_notes, sleep,
        )
        volume = normalize_volume(raw_volume, i, chapters)
        volumes.append(volume)
        logger.info("✅ %s: 生成了 %s 章大纲", volume.title, len(volume.chapters))
        if on_progress:
            on_progress("volume_complete", {
                "volume_index": i + 1,
                "total_volumes": len(raw_volumes),
                "title": volume.title,
                "chapter_count": len(volume.chapters),
            })

    return NovelOutline(
        total_chapters=target_chapters,
        target_word_count=target_word_count,
        main_goal=main_goal,
        milestones=normalize_milestones(master.get("milestones") or []),
        volumes=volumes,
    )


CHARACTER_SYSTEM = """
你是一个起点白金级小说人物架构师。你的任务是从 Story Bible 中提取并构建完整的人物关系图谱。

核心原则：
1. 每个角色都应该有清晰的性格模型和完整的角色弧线
2. 关系必须是动态的，有发展空间和潜在冲突
3. 每段重要关系都需要设计"秘密"或"未解之事"
4. 配角也要有自己的目标和动机，不能沦为工具人

输出严格的 JSON 格式：
{
  "protagonists": [{"id": "snake_case", "name": "", "role": "protagonist", "basic": {"identity": ""},
                    "personality": {"traits": [], "desires": []}, "arc": {"start": "", "end": ""},
                    "abilities": [], "speechStyle": ""}],
  "mainCharacters": [同上结构，role 为 deuteragonist/antagonist/supporting],
  "relationships": [{"from": "角色id", "to": "角色id", "type": "", "tension": "", "secrets": []}]
}
""".strip()


def generate_characters(
    client: TextCompletionClient,
    bible: str,
    outline: Optional[NovelOutline] = None,
    target_chapters: int = 0,
    sleep: Callable[[float], None] = time.sleep,
) -> CharacterGraph:
    """从核心设定生成人物关系图谱；已有大纲时附带分卷信息"""
    scale = f"- 总章数: {outline.total_chapters if outline else target_chapters}\n"
    if outline is not None and outline.volumes:
        scale += "- 分卷信息: " + ", ".join(
            f"{v.title} ({v.start_chapter}-{v.end_chapter})" for v in outline.volumes
        ) + "\n"
    prompt = (
        f"【Story Bible】\n{bible}\n\n【目标规模】\n{scale}\n"
        "请生成完整的人物关系图谱 JSON（主角、至少 5 个重要配角、关键关系）。"
    )
    raw = generate_text_with_retry(
        client,
        CompletionRequest(system=CHARACTER_SYSTEM, prompt=prompt, temperature=CHARACTER_TEMPERATURE),
        sleep=sleep,
    )
    data = _load(raw, "CharacterGraph")
    if not isinstance(data, dict):
        raise StructuredOutputError("CharacterGraph", ["输出不是 JSON 对象"], raw)
    graph = normalize_character_graph(data)
    if not graph.protagonists:
        raise StructuredOutputError("CharacterGraph", ["缺少主角"], raw)
    logger.info("✅ 人物图谱: %s 位主角, %s 位配角", len(graph.protagonists), len(graph.main_characters))
    return graph
