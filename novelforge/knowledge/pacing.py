"""
叙事节奏弧

按三幕结构为每卷规划紧张度曲线，派生每章的节奏目标与叙事指导。
节奏弧同样是不可变的知识库：任何修改都返回新的对象并递增 version。

开发者: jamesenh
开发时间: 2026-01-16
"""
import math
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from novelforge.models import NovelOutline, OutlineChapter


class PacingType(str, Enum):
    ACTION = "action"
    TENSION = "tension"
    REVELATION = "revelation"
    EMOTIONAL = "emotional"
    TRANSITION = "transition"
    CLIMAX = "climax"


HIGH_TENSION_TYPES = (PacingType.ACTION, PacingType.CLIMAX, PacingType.TENSION)
LOW_TENSION_TYPES = (PacingType.EMOTIONAL, PacingType.TRANSITION)


class PacingProfile(BaseModel):
    type: PacingType
    tension_level: int
    information_density: int
    dialogue_ratio: float
    scene_switch_frequency: str
    word_count_range: Tuple[int, int]


PACING_PROFILES: Dict[PacingType, PacingProfile] = {
    PacingType.ACTION: PacingProfile(
        type=PacingType.ACTION, tension_level=8, information_density=4,
        dialogue_ratio=0.3, scene_switch_frequency="high", word_count_range=(2000, 2800),
    ),
    PacingType.TENSION: PacingProfile(
        type=PacingType.TENSION, tension_level=7, information_density=6,
        dialogue_ratio=0.4, scene_switch_frequency="medium", word_count_range=(2200, 3000),
    ),
    PacingType.REVELATION: PacingProfile(
        type=PacingType.REVELATION, tension_level=6, information_density=9,
        dialogue_ratio=0.5, scene_switch_frequency="low", word_count_range=(2500, 3200),
    ),
    PacingType.EMOTIONAL: PacingProfile(
        type=PacingType.EMOTIONAL, tension_level=4, information_density=3,
        dialogue_ratio=0.6, scene_switch_frequency="low", word_count_range=(2800, 3500),
    ),
    PacingType.TRANSITION: PacingProfile(
        type=PacingType.TRANSITION, tension_level=3, information_density=5,
        dialogue_ratio=0.5, scene_switch_frequency="medium", word_count_range=(2500, 3200),
    ),
    PacingType.CLIMAX: PacingProfile(
        type=PacingType.CLIMAX, tension_level=10, information_density=7,
        dialogue_ratio=0.35, scene_switch_frequency="high", word_count_range=(2500, 3500),
    ),
}


class SceneRequirement(BaseModel):
    order: int
    type: str
    purpose: str


class NarrativeGuide(BaseModel):
    chapter_index: int
    pacing_target: float
    pacing_type: PacingType
    emotional_tone: str
    scene_requirements: List[SceneRequirement] = Field(default_factory=list)
    prohibitions: List[str] = Field(default_factory=list)
    pov_character: Optional[str] = None
    word_count_range: Tuple[int, int]
    pacing_guidance: str


class VolumePacingCurve(BaseModel):
    volume_index: int
    start_chapter: int
    end_chapter: int
    pacing_curve: List[float]
    volume_climax_offset: int


class NarrativeArc(BaseModel):
    """节奏弧；chapter_pacing 记录已落地章节的实际节奏类型"""
    version: int = 0
    last_updated_chapter: int = 0
    total_chapters: int
    volume_pacing: List[VolumePacingCurve] = Field(default_factory=list)
    climax_chapters: List[int] = Field(default_factory=list)
    transition_chapters: List[int] = Field(default_factory=list)
    chapter_pacing: Dict[int, PacingType] = Field(default_factory=dict)


def get_emotional_tone(pacing: float) -> str:
    if pacing <= 2:
        return "舒缓、日常、温馨"
    if pacing <= 4:
        return "平稳、略有紧张、期待"
    if pacing <= 6:
        return "紧张、压迫、危机感"
    if pacing <= 8:
        return "高度紧张、生死攸关、热血沸腾"
    return "极限高潮、情感爆发、命运转折"


def get_pacing_type_from_level(pacing: float) -> PacingType:
    if pacing >= 9:
        return PacingType.CLIMAX
    if pacing >= 7:
        return PacingType.ACTION
    if pacing >= 5:
        return PacingType.TENSION
    if pacing >= 3:
        return PacingType.REVELATION
    if pacing >= 2:
        return PacingType.EMOTIONAL
    return PacingType.TRANSITION


def plan_volume_pacing_curve(volume_index: int, start_chapter: int, end_chapter: int) -> VolumePacingCurve:
    """三幕结构：铺垫 25%（2→5），发展 50%（4~8 波动），高潮收尾 25%（8→10→6）"""
    chapter_count = max(1, end_chapter - start_chapter + 1)
    act1_end = math.floor(chapter_count * 0.25)
    act2_end = math.floor(chapter_count * 0.75)

    curve: List[float] = []
    for i in range(chapter_count):
        if i < act1_end:
            curve.append(2 + (i / act1_end) * 3)
        elif i < act2_end:
            progress = (i - act1_end) / (act2_end - act1_end)
            wave = math.sin(progress * math.pi * 3) * 1.5
            curve.append(max(4.0, min(8.0, 4 + progress * 4 + wave)))
        else:
            progress = (i - act2_end) / (chapter_count - act2_end)
            if progress < 0.7:
                curve.append(8 + progress * 2.5)
            else:
                curve.append(10 - ((progress - 0.7) / 0.3) * 4)

    rounded = [round(v, 1) for v in curve]
    return VolumePacingCurve(
        volume_index=volume_index,
        start_chapter=start_chapter,
        end_chapter=end_chapter,
        pacing_curve=rounded,
        volume_climax_offset=curve.index(max(curve)),
    )


def generate_narrative_arc(outline: NovelOutline) -> NarrativeArc:
    volume_pacing = []
    climax_chapters = []
    transition_chapters = []
    for index, volume in enumerate(outline.volumes):
        volume_curve = plan_volume_pacing_curve(index, volume.start_chapter, volume.end_chapter)
        volume_pacing.append(volume_curve)
        climax_chapters.append(volume.start_chapter + volume_curve.volume_climax_offset)
    for volume_curve in volume_pacing:
        for i, pacing in enumerate(volume_curve.pacing_curve):
            if pacing <= 3:
                transition_chapters.append(volume_curve.start_chapter + i)
    return NarrativeArc(
        total_chapters=outline.total_chapters,
        volume_pacing=volume_pacing,
        climax_chapters=climax_chapters,
        transition_chapters=transition_chapters,
    )


def get_chapter_pacing_target(arc: NarrativeArc, chapter_index: int, previous_pacing: Optional[float] = None) -> float:
    """取曲线上的目标值；与上一章相差超过 2.5 时做平滑"""
    volume_curve = next(
        (v for v in arc.volume_pacing if v.start_chapter <= chapter_index <= v.end_chapter),
        None,
    )
    if volume_curve is None:
        return 5.0

    local_index = chapter_index - volume_curve.start_chapter
    target = volume_curve.pacing_curve[local_index] if local_index < len(volume_curve.pacing_curve) else 5.0
    if previous_pacing is not None:
        max_delta = 2.5
        if abs(target - previous_pacing) > max_delta:
            target = previous_pacing + math.copysign(max_delta, target - previous_pacing)
    return round(target, 1)


def _scene_requirements(chapter: Optional[OutlineChapter]) -> List[SceneRequirement]:
    goal = (chapter.goal if chapter else "").lower()
    if any(k in goal for k in ("战斗", "冲突", "对决")):
        plan = [
            ("setup", "战前铺垫和局势交代"),
            ("confrontation", "正面冲突爆发"),
            ("confrontation", "冲突升级或转折"),
            ("resolution", "结果展示和悬念留置"),
        ]
    elif any(k in goal for k in ("揭秘", "发现", "真相")):
        plan = [
            ("setup", "线索发现或疑点出现"),
            ("transition", "调查/回忆/分析"),
            ("revelation", "真相揭露"),
            ("resolution", "情绪反应和后续铺垫"),
        ]
    elif any(k in goal for k in ("情感", "关系", "心理")):
        plan = [
            ("setup", "情境建立"),
            ("confrontation", "情感冲突或交流"),
            ("resolution", "关系变化或决定"),
        ]
    else:
        plan = [
            ("setup", "场景建立和背景交代"),
            ("confrontation", "主要事件展开"),
            ("transition", "角色互动和反应"),
            ("resolution", "悬念留置"),
        ]
    return [SceneRequirement(order=i + 1, type=t, purpose=p) for i, (t, p) in enumerate(plan)]


def _prohibitions(chapter_index: int, total_chapters: int, pacing_target: float) -> List[str]:
    prohibitions = []
    if chapter_index < total_chapters:
        prohibitions += ["禁止出现完结/终章/尾声/后记等词汇", "禁止一次性解决所有伏笔", "禁止总结性的人生回顾"]
    if pacing_target >= 7:
        prohibitions += ["禁止冗长的心理独白（超过200字）", "禁止无关的日常对话", "禁止节奏放缓的过渡段落", "禁止大段景物描写"]
    if pacing_target <= 3:
        prohibitions += ["禁止突发的生死危机", "禁止大规模战斗场景", "禁止情节急转直下", "禁止过于激烈的冲突"]
    if 3 < pacing_target < 7:
        prohibitions.append("禁止节奏过于平淡，需保持适度张力")
    return prohibitions


PACING_GUIDANCE = {
    PacingType.ACTION: "本章是动作/冲突章节（紧张度{level}/10）。请使用短句、快速场景切换、动作描写为主。对话简短有力，避免冗长的心理活动。每个段落都要推动冲突发展。",
    PacingType.TENSION: "本章是紧张铺垫章节（紧张度{level}/10）。请营造压迫感和危机感，使用暗示和伏笔。对话可以有潜台词和试探，让读者感受到即将到来的风暴。",
    PacingType.REVELATION: "本章是揭示/发现章节（紧张度{level}/10）。信息密度较高，请有节奏地释放关键信息。角色的反应要真实，给读者消化信息的时间，但保持适度悬念。",
    PacingType.EMOTIONAL: "本章是情感章节（紧张度{level}/10）。请注重角色内心描写和关系发展。对话可以更细腻，描写可以更具体。这是读者的喘息章节，但仍需有微妙张力。",
    PacingType.TRANSITION: "本章是过渡章节（紧张度{level}/10）。用于调整节奏、补充设定、发展角色关系。虽然紧张度低，但要埋下后续剧情的种子，不能纯粹的日常流水账。",
    PacingType.CLIMAX: "本章是高潮章节（紧张度{level}/10）。情感和冲突都要达到峰值。使用强烈的对比、出人意料的转折、命运的抉择。这是最关键的章节，要让读者难以释卷。",
}


def generate_narrative_guide(
    arc: NarrativeArc,
    chapter_index: int,
    chapter: Optional[OutlineChapter] = None,
    previous_pacing: Optional[float] = None,
) -> NarrativeGuide:
    pacing_target = get_chapter_pacing_target(arc, chapter_index, previous_pacing)
    pacing_type = get_pacing_type_from_level(pacing_target)
    return NarrativeGuide(
        chapter_index=chapter_index,
        pacing_target=pacing_target,
        pacing_type=pacing_type,
        emotional_tone=get_emotional_tone(pacing_target),
        scene_requirements=_scene_requirements(chapter),
        prohibitions=_prohibitions(chapter_index, arc.total_chapters, pacing_target),
        word_count_range=PACING_PROFILES[pacing_type].word_count_range,
        pacing_guidance=PACING_GUIDANCE[pacing_type].format(level=pacing_target),
    )


def format_narrative_guide(guide: NarrativeGuide) -> str:
    lines = [
        "【本章叙事指导】",
        f"节奏目标: {guide.pacing_target}/10 ({guide.pacing_type.value})",
        f"情感基调: {guide.emotional_tone}",
        f"字数范围: {guide.word_count_range[0]}-{guide.word_count_range[1]}字",
    ]
    if guide.pov_character:
        lines.append(f"视角角色: {guide.pov_character}")
    if guide.scene_requirements:
        lines.append("场景序列:")
        for scene in guide.scene_requirements:
            lines.append(f"  {scene.order}. [{scene.type}] {scene.purpose}")
    if guide.prohibitions:
        lines.append("本章禁止:")
        for item in guide.prohibitions:
            lines.append(f"  - {item}")
    lines.append("")
    lines.append(f"节奏说明: {guide.pacing_guidance}")
    return "\n".join(lines)


def check_pacing_balance(recent_types: List[PacingType], current_type: PacingType) -> Tuple[bool, Optional[str]]:
    """检查是否连续多章节奏雷同，返回 (是否平衡, 建议)"""
    if len(recent_types) < 3:
        return True, None
    last3 = recent_types[-3:]
    if all(t == current_type for t in last3):
        return False, f"连续4章都是{current_type.value}类型，建议调整节奏以避免读者疲劳"
    if all(t in HIGH_TENSION_TYPES for t in last3) and current_type in HIGH_TENSION_TYPES:
        return False, "连续多章高紧张度，建议插入一章过渡或情感章节"
    if all(t in LOW_TENSION_TYPES for t in last3) and current_type in LOW_TENSION_TYPES:
        return False, "连续多章低紧张度，节奏可能过于拖沓，建议提升张力"
    return True, None


def recent_pacing_types(arc: NarrativeArc, before_chapter: int, count: int = 3) -> List[PacingType]:
    chapters = sorted(c for c in arc.chapter_pacing if c < before_chapter)[-count:]
    return [arc.chapter_pacing[c] for c in chapters]


def record_chapter_pacing(arc: NarrativeArc, chapter_index: int, pacing_type: PacingType) -> NarrativeArc:
    """章节提交后记录其节奏类型"""
    return arc.model_copy(update={
        "chapter_pacing": {**arc.chapter_pacing, chapter_index: pacing_type},
        "version": arc.version + 1,
        "last_updated_chapter": max(arc.last_updated_chapter, chapter_index),
    })


def adjust_pacing_curve(arc: NarrativeArc, chapter_index: int, new_pacing: float) -> NarrativeArc:
    """人工微调某一章的节奏值"""
    volume_pacing = list(arc.volume_pacing)
    for i, volume_curve in enumerate(volume_pacing):
        if volume_curve.start_chapter <= chapter_index <= volume_curve.end_chapter:
            curve = list(volume_curve.pacing_curve)
            curve[chapter_index - volume_curve.start_chapter] = new_pacing
            volume_pacing[i] = volume_curve.model_copy(update={"pacing_curve": curve})
            return arc.model_copy(update={
                "volume_pacing": volume_pacing,
                "version": arc.version + 1,
                "last_updated_chapter": max(arc.last_updated_chapter, chapter_index),
            })
    return arc


def pacing_curve_data(arc: NarrativeArc) -> Dict[str, List]:
    chapters: List[int] = []
    pacing: List[float] = []
    for volume_curve in arc.volume_pacing:
        for i, p in enumerate(volume_curve.pacing_curve):
            chapters.append(volume_curve.start_chapter + i)
            pacing.append(p)
    return {
        "chapters": chapters,
        "pacing": pacing,
        "climax_points": arc.climax_chapters,
        "transition_points": arc.transition_chapters,
    }
