"""
数据模型定义
大纲、人物图谱、章节草稿、QC 结论等核心数据结构

模型输出的 JSON 字段名五花八门（index/chapter_id/chapter_number 等），
统一在 normalize_* 函数里转换成规范模型，引擎其余部分只接触规范类型。

开发者: jamesenh
开发时间: 2026-01-12
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ==================== 大纲 ====================

class OutlineChapter(BaseModel):
    """章节大纲"""
    index: int = Field(description="章节序号")
    title: str = Field(default="", description="章节标题")
    goal: str = Field(default="", description="本章目标")
    hook: str = Field(default="", description="章末钩子")


class OutlineVolume(BaseModel):
    """分卷大纲"""
    title: str = Field(description="卷名")
    start_chapter: int = Field(description="起始章节")
    end_chapter: int = Field(description="结束章节")
    goal: str = Field(default="", description="本卷目标")
    conflict: str = Field(default="", description="本卷核心冲突")
    climax: str = Field(default="", description="本卷高潮")
    volume_end_state: Optional[str] = Field(default=None, description="卷末状态（用于下一卷衔接）")
    chapters: List[OutlineChapter] = Field(default_factory=list, description="章节大纲")


class NovelOutline(BaseModel):
    """全书大纲"""
    total_chapters: int = Field(description="总章数")
    target_word_count: int = Field(default=0, description="总字数目标（万字）")
    main_goal: str = Field(default="", description="主线目标")
    milestones: List[str] = Field(default_factory=list, description="阶段里程碑")
    volumes: List[OutlineVolume] = Field(default_factory=list, description="分卷大纲")

    def all_chapters(self) -> List[OutlineChapter]:
        return [ch for vol in self.volumes for ch in vol.chapters]

    def find_chapter(self, chapter_index: int) -> Optional[OutlineChapter]:
        for ch in self.all_chapters():
            if ch.index == chapter_index:
                return ch
        return None

    def find_volume(self, chapter_index: int) -> Optional[OutlineVolume]:
        for vol in self.volumes:
            if vol.start_chapter <= chapter_index <= vol.end_chapter:
                return vol
        return None


def _first(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """按顺序取第一个非空字段"""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return default


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_chapter(raw: Dict[str, Any], fallback_index: int) -> OutlineChapter:
    """把模型输出的章节对象转换为 OutlineChapter"""
    if not isinstance(raw, dict):
        raw = {}
    index = _as_int(_first(raw, "index", "chapter_id", "chapter_number", "chapterIndex"), fallback_index)
    return OutlineChapter(
        index=index,
        title=str(_first(raw, "title", default=f"第{fallback_index}章")),
        goal=str(_first(raw, "goal", "outline", "description", "plot_summary", default="")),
        hook=str(_first(raw, "hook", default="")),
    )


def normalize_volume(raw: Dict[str, Any], vol_index: int, chapters: Optional[List[Any]] = None) -> OutlineVolume:
    """把模型输出的分卷对象转换为 OutlineVolume

    缺省起止章节按每卷 80 章推算。
    """
    if not isinstance(raw, dict):
        raw = {}
    start = _as_int(_first(raw, "startChapter", "start_chapter", "start"), vol_index * 80 + 1)
    end = _as_int(_first(raw, "endChapter", "end_chapter", "end"), (vol_index + 1) * 80)
    raw_chapters = chapters if chapters is not None else (raw.get("chapters") or [])
    return OutlineVolume(
        title=str(_first(raw, "title", "volumeTitle", "volume_title", default=f"第{vol_index + 1}卷")),
        start_chapter=start,
        end_chapter=end,
        goal=str(_first(raw, "goal", "summary", "volume_goal", default="")),
        conflict=str(_first(raw, "conflict", default="")),
        climax=str(_first(raw, "climax", default="")),
        volume_end_state=_first(raw, "volumeEndState", "volume_end_state"),
        chapters=[normalize_chapter(ch, start + i) for i, ch in enumerate(raw_chapters)],
    )


def normalize_milestones(milestones: Any) -> List[str]:
    if not isinstance(milestones, list):
        return []
    result = []
    for m in milestones:
        if isinstance(m, str):
            result.append(m)
        elif isinstance(m, dict):
            result.append(str(_first(m, "milestone", "description", "title", default=json.dumps(m, ensure_ascii=False))))
        else:
            result.append(str(m))
    return result


def normalize_outline(raw: Dict[str, Any], total_chapters: int, target_word_count: int = 0) -> NovelOutline:
    """把模型输出的大纲转换为 NovelOutline"""
    volumes_raw = raw.get("volumes") or []
    return NovelOutline(
        total_chapters=total_chapters,
        target_word_count=target_word_count,
        main_goal=str(_first(raw, "mainGoal", "main_goal", default="")),
        milestones=normalize_milestones(raw.get("milestones") or []),
        volumes=[normalize_volume(vol, i) for i, vol in enumerate(volumes_raw)],
    )


# ==================== 人物 ====================

class CharacterProfile(BaseModel):
    """角色档案"""
    id: str = Field(description="唯一标识（snake_case）")
    name: str = Field(description="角色名")
    role: str = Field(default="supporting", description="protagonist/deuteragonist/antagonist/supporting/minor")
    identity: str = Field(default="", description="身份/职业")
    traits: List[str] = Field(default_factory=list, description="性格特质")
    desires: List[str] = Field(default_factory=list, description="核心欲望")
    arc_start: str = Field(default="", description="弧线起点")
    arc_end: str = Field(default="", description="弧线终点")
    abilities: List[str] = Field(default_factory=list, description="能力/技能")
    speech_style: str = Field(default="", description="说话风格")


class CharacterRelationship(BaseModel):
    """角色关系"""
    from_id: str = Field(description="发起方角色 ID")
    to_id: str = Field(description="接收方角色 ID")
    type: str = Field(default="complex", description="关系类型")
    tension: str = Field(default="", description="核心张力")
    secrets: List[str] = Field(default_factory=list, description="秘密")


class CharacterGraph(BaseModel):
    """人物关系图谱"""
    protagonists: List[CharacterProfile] = Field(default_factory=list, description="主角")
    main_characters: List[CharacterProfile] = Field(default_factory=list, description="重要配角")
    relationships: List[CharacterRelationship] = Field(default_factory=list, description="关键关系")

    def all_characters(self) -> List[CharacterProfile]:
        return [*self.protagonists, *self.main_characters]

    def find_name(self, character_id: str) -> str:
        for profile in self.all_characters():
            if profile.id == character_id:
                return profile.name
        return character_id


def _str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def normalize_character(raw: Dict[str, Any], fallback_id: str, default_role: str) -> CharacterProfile:
    if not isinstance(raw, dict):
        raw = {"name": str(raw)}
    personality = raw.get("personality") if isinstance(raw.get("personality"), dict) else {}
    basic = raw.get("basic") if isinstance(raw.get("basic"), dict) else {}
    arc = raw.get("arc") if isinstance(raw.get("arc"), dict) else {}
    name = str(_first(raw, "name", default=fallback_id))
    return CharacterProfile(
        id=str(_first(raw, "id", "character_id", default=fallback_id)),
        name=name,
        role=str(_first(raw, "role", default=default_role)),
        identity=str(_first(basic, "identity", default=_first(raw, "identity", default=""))),
        traits=_str_list(personality.get("traits") or raw.get("traits")),
        desires=_str_list(personality.get("desires") or raw.get("desires")),
        arc_start=str(arc.get("start") or ""),
        arc_end=str(arc.get("end") or ""),
        abilities=_str_list(raw.get("abilities")),
        speech_style=str(_first(raw, "speechStyle", "speech_style", default="")),
    )


def normalize_character_graph(raw: Dict[str, Any]) -> CharacterGraph:
    """把模型输出的人物图谱转换为 CharacterGraph"""
    protagonists = [
        normalize_character(p, f"protagonist_{i + 1}", "protagonist")
        for i, p in enumerate(raw.get("protagonists") or [])
    ]
    mains = [
        normalize_character(c, f"character_{i + 1}", "supporting")
        for i, c in enumerate(_first(raw, "mainCharacters", "main_characters", default=[]) or [])
    ]
    relationships = []
    for rel in raw.get("relationships") or []:
        if not isinstance(rel, dict):
            continue
        from_id = _first(rel, "from", "from_id", "source")
        to_id = _first(rel, "to", "to_id", "target")
        if not from_id or not to_id:
            continue
        relationships.append(CharacterRelationship(
            from_id=str(from_id),
            to_id=str(to_id),
            type=str(_first(rel, "type", default="complex")),
            tension=str(_first(rel, "tension", default="")),
            secrets=_str_list(rel.get("secrets")),
        ))
    return CharacterGraph(protagonists=protagonists, main_characters=mains, relationships=relationships)


# ==================== QC ====================

class IssueSeverity(str, Enum):
    """问题严重程度"""
    CRITICAL = "critical"  # 阻断提交
    MAJOR = "major"
    MINOR = "minor"


class IssueType(str, Enum):
    """问题类型"""
    CHARACTER = "character"
    PLOT = "plot"
    PACING = "pacing"
    STYLE = "style"
    STRUCTURE = "structure"
    ENDING = "ending"


class QCIssue(BaseModel):
    """单条 QC 问题"""
    type: IssueType = Field(description="问题类型")
    severity: IssueSeverity = Field(description="严重程度")
    description: str = Field(description="问题描述")
    location: Optional[str] = Field(default=None, description="问题位置")
    suggestion: Optional[str] = Field(default=None, description="修复建议")


class QCVerdict(BaseModel):
    """QC 结论（每次评估生成新对象）"""
    score: int = Field(ge=0, le=100, description="综合评分")
    passed: bool = Field(description="是否通过")
    issues: List[QCIssue] = Field(default_factory=list, description="问题列表")
    dimensions: Dict[str, int] = Field(default_factory=dict, description="各维度分数")
    suggestions: List[str] = Field(default_factory=list, description="修复建议")

    def count(self, severity: IssueSeverity) -> int:
        return sum(1 for issue in self.issues if issue.severity == severity)

    @property
    def critical_count(self) -> int:
        return self.count(IssueSeverity.CRITICAL)

    @property
    def major_count(self) -> int:
        return self.count(IssueSeverity.MAJOR)


# ==================== 章节 ====================

class ChapterDraft(BaseModel):
    """待提交的章节草稿

    由 generate_chapter 创建，只被 repair_chapter 替换正文，被 commit_chapter 消费清空。
    """
    chapter_index: int = Field(description="章节序号")
    chapter_text: str = Field(description="草稿正文")
    updated_summary: str = Field(default="", description="生成后更新的滚动摘要")
    updated_open_loops: List[str] = Field(default_factory=list, description="生成后更新的未解伏笔")
    outline_title: Optional[str] = Field(default=None, description="大纲标题")
    outline_goal: Optional[str] = Field(default=None, description="大纲目标提示")
    was_rewritten: bool = Field(default=False, description="是否经历过提前完结重写")
    rewrite_count: int = Field(default=0, description="提前完结重写次数")
    repair_count: int = Field(default=0, description="QC 修复次数")


class GeneratedChapterRecord(BaseModel):
    """已提交章节记录"""
    chapter_index: int = Field(description="章节序号")
    title: str = Field(description="章节标题")
    word_count: int = Field(description="字数")
    qc_score: Optional[int] = Field(default=None, description="QC 评分")
    repaired: bool = Field(default=False, description="是否经过修复或重写")
    issues: List[str] = Field(default_factory=list, description="遗留问题描述")


class HistoryEntry(BaseModel):
    """编排历史记录"""
    iteration: int = Field(description="迭代序号")
    tool: str = Field(description="工具名称")
    reason: str = Field(default="", description="决策理由")
    summary: str = Field(default="", description="执行摘要")
    score: Optional[float] = Field(default=None, description="评分（评估类工具）")
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat(), description="时间戳")


class PlannerDecision(BaseModel):
    """规划器决策"""
    tool: str = Field(description="下一步工具")
    reason: str = Field(description="决策理由")
    input: Dict[str, Any] = Field(default_factory=dict, description="工具输入")
