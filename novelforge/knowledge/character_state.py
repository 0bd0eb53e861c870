"""
人物状态注册表

负责：
1. 从人物图谱初始化每个角色的状态快照
2. 调用模型分析章节内容中的角色状态变化（analyze，可安全失败）
3. 把变化应用到注册表（apply，纯函数，返回新对象）
4. 生成用于 prompt 的角色状态上下文

开发者: jamesenh
开发时间: 2026-01-14
"""
import logging
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from novelforge.chains.structured import request_structured
from novelforge.errors import NovelForgeError
from novelforge.llm import CompletionRequest, TextCompletionClient
from novelforge.models import CharacterGraph, CharacterProfile

logger = logging.getLogger(__name__)

MAX_RECENT_CHANGES = 5
MIN_CHANGE_CONFIDENCE = 0.6


class PhysicalCondition(str, Enum):
    """身体状态"""
    HEALTHY = "healthy"
    MINOR_INJURY = "minor_injury"
    MAJOR_INJURY = "major_injury"
    WEAK = "weak"
    UNCONSCIOUS = "unconscious"
    UNKNOWN = "unknown"


CONDITION_LABELS = {
    PhysicalCondition.HEALTHY: "健康",
    PhysicalCondition.MINOR_INJURY: "轻伤",
    PhysicalCondition.MAJOR_INJURY: "重伤",
    PhysicalCondition.WEAK: "虚弱",
    PhysicalCondition.UNCONSCIOUS: "昏迷",
    PhysicalCondition.UNKNOWN: "未知",
}


class PhysicalState(BaseModel):
    location: str = Field(default="未知", description="当前位置")
    condition: PhysicalCondition = Field(default=PhysicalCondition.HEALTHY, description="身体状态")
    equipment: List[str] = Field(default_factory=list, description="重要物品")
    abilities: List[str] = Field(default_factory=list, description="能力")
    power_level: Optional[str] = Field(default=None, description="境界/等级")


class PsychologicalState(BaseModel):
    mood: str = Field(default="平静", description="情绪")
    motivation: str = Field(default="未知", description="动机")
    known_secrets: List[str] = Field(default_factory=list, description="已知秘密")
    beliefs: List[str] = Field(default_factory=list, description="信念")
    inner_conflict: Optional[str] = Field(default=None, description="内心矛盾")


class SocialState(BaseModel):
    public_identity: str = Field(default="未知", description="公开身份")
    hidden_identity: Optional[str] = Field(default=None, description="隐藏身份")
    reputation: str = Field(default="未知", description="声望")
    active_alliances: List[str] = Field(default_factory=list, description="同盟")
    active_enemies: List[str] = Field(default_factory=list, description="敌对")


class CharacterStateChange(BaseModel):
    """一次字段级变化"""
    chapter: int
    field: str
    old_value: Optional[str] = None
    new_value: str
    change: str = Field(default="", description="可读描述")


class CharacterStateSnapshot(BaseModel):
    """单个角色在某章节时的状态快照"""
    as_of_chapter: int = Field(default=0, description="快照对应的章节（单调不减）")
    character_id: str
    character_name: str
    physical: PhysicalState = Field(default_factory=PhysicalState)
    psychological: PsychologicalState = Field(default_factory=PsychologicalState)
    social: SocialState = Field(default_factory=SocialState)
    recent_changes: List[CharacterStateChange] = Field(default_factory=list, description="最近变化（最多5条）")


class PendingStateUpdate(BaseModel):
    """待人工确认的变化"""
    character_id: str
    field: str
    old_value: str
    new_value: str
    chapter: int
    evidence: str = ""
    confidence: float = 0.0


class CharacterStateRegistry(BaseModel):
    """人物状态注册表"""
    version: int = Field(default=0, description="变更计数，每次应用变化递增")
    last_updated_chapter: int = Field(default=0, description="最后更新的章节")
    snapshots: Dict[str, CharacterStateSnapshot] = Field(default_factory=dict)
    pending_updates: List[PendingStateUpdate] = Field(default_factory=list)


class ProposedStateChange(BaseModel):
    """模型提出的状态变化"""
    character_id: str = Field(alias="characterId")
    character_name: str = Field(alias="characterName")
    field: str
    old_value: str = Field(default="", alias="oldValue")
    new_value: str = Field(alias="newValue")
    evidence: str = ""
    confidence: float = Field(ge=0, le=1)

    model_config = {"populate_by_name": True}


class StateChangeAnalysis(BaseModel):
    changes: List[ProposedStateChange] = Field(default_factory=list)


# 模型输出的驼峰字段路径 -> 快照属性
FIELD_ALIASES = {
    "powerLevel": "power_level",
    "knownSecrets": "known_secrets",
    "innerConflict": "inner_conflict",
    "publicIdentity": "public_identity",
    "hiddenIdentity": "hidden_identity",
    "activeAlliances": "active_alliances",
    "activeEnemies": "active_enemies",
}
SECTIONS = ("physical", "psychological", "social")


def create_initial_snapshot(character_id: str, character_name: str) -> CharacterStateSnapshot:
    return CharacterStateSnapshot(character_id=character_id, character_name=character_name)


def _snapshot_from_profile(profile: CharacterProfile) -> CharacterStateSnapshot:
    return CharacterStateSnapshot(
        character_id=profile.id,
        character_name=profile.name,
        physical=PhysicalState(abilities=list(profile.abilities)),
        psychological=PsychologicalState(motivation=profile.desires[0] if profile.desires else "未知"),
        social=SocialState(public_identity=profile.identity or "未知"),
    )


def initialize_registry_from_graph(graph: CharacterGraph) -> CharacterStateRegistry:
    """从人物图谱（主角 + 重要配角）初始化注册表"""
    snapshots = {profile.id: _snapshot_from_profile(profile) for profile in graph.all_characters()}
    return CharacterStateRegistry(snapshots=snapshots)


def _resolve_field(field: str) -> Optional[tuple]:
    parts = field.split(".")
    if len(parts) != 2 or parts[0] not in SECTIONS:
        return None
    section, attr = parts
    attr = FIELD_ALIASES.get(attr, attr)
    model_cls = {"physical": PhysicalState, "psychological": PsychologicalState, "social": SocialState}[section]
    if attr not in model_cls.model_fields:
        return None
    return section, attr


def _apply_value(current, new_value: str):
    if isinstance(current, list):
        if new_value.startswith("+"):
            item = new_value[1:]
            return current if item in current else [*current, item]
        if new_value.startswith("-"):
            return [v for v in current if v != new_value[1:]]
        return [new_value]
    return new_value


def apply_changes_to_snapshot(
    snapshot: CharacterStateSnapshot,
    changes: List[ProposedStateChange],
    chapter_index: int,
) -> CharacterStateSnapshot:
    """把变化应用到单个快照，返回新快照"""
    sections = {
        "physical": snapshot.physical.model_dump(mode="json"),
        "psychological": snapshot.psychological.model_dump(mode="json"),
        "social": snapshot.social.model_dump(mode="json"),
    }
    recent = list(snapshot.recent_changes)

    for change in changes:
        if change.character_id != snapshot.character_id:
            continue
        resolved = _resolve_field(change.field)
        if resolved is None:
            logger.debug("忽略无法识别的字段路径: %s", change.field)
            continue
        section, attr = resolved
        old_value = sections[section][attr]
        if attr == "condition" and change.new_value not in {c.value for c in PhysicalCondition}:
            continue
        sections[section][attr] = _apply_value(old_value, change.new_value)
        old_text = ", ".join(old_value) if isinstance(old_value, list) else str(old_value)
        recent.append(CharacterStateChange(
            chapter=chapter_index,
            field=change.field,
            old_value=old_text,
            new_value=change.new_value,
            change=f"{change.field}: {old_text} → {change.new_value}",
        ))

    return CharacterStateSnapshot(
        as_of_chapter=max(snapshot.as_of_chapter, chapter_index),
        character_id=snapshot.character_id,
        character_name=snapshot.character_name,
        physical=PhysicalState(**sections["physical"]),
        psychological=PsychologicalState(**sections["psychological"]),
        social=SocialState(**sections["social"]),
        recent_changes=recent[-MAX_RECENT_CHANGES:],
    )


def apply_state_changes(
    registry: CharacterStateRegistry,
    analysis: StateChangeAnalysis,
    chapter_index: int,
) -> CharacterStateRegistry:
    """把分析结果应用到注册表（纯函数）

    未出现在注册表中的角色会先创建初始快照。没有变化时原样返回。
    """
    if not analysis.changes:
        return registry

    grouped: Dict[str, List[ProposedStateChange]] = {}
    for change in analysis.changes:
        grouped.setdefault(change.character_id, []).append(change)

    snapshots = dict(registry.snapshots)
    for character_id, char_changes in grouped.items():
        base = snapshots.get(character_id) or create_initial_snapshot(character_id, char_changes[0].character_name)
        snapshots[character_id] = apply_changes_to_snapshot(base, char_changes, chapter_index)

    return registry.model_copy(update={
        "version": registry.version + 1,
        "last_updated_chapter": max(registry.last_updated_chapter, chapter_index),
        "snapshots": snapshots,
    })


STATE_ANALYSIS_SYSTEM = """
你是一个专业的小说角色状态分析师。你的任务是分析章节内容，提取所有角色的状态变化。

【字段路径】
- physical.location / physical.condition (healthy/minor_injury/major_injury/weak/unconscious)
- physical.equipment / physical.abilities（用 +物品 表示获得，-物品 表示失去）
- physical.powerLevel
- psychological.mood / psychological.motivation / psychological.innerConflict
- psychological.knownSecrets / psychological.beliefs（用 +内容 表示新增）
- social.publicIdentity / social.hiddenIdentity / social.reputation
- social.activeAlliances / social.activeEnemies（用 +角色ID 或 -角色ID）

【输出格式】
只输出 JSON:
{"changes": [{"characterId": "", "characterName": "", "field": "", "oldValue": "", "newValue": "", "evidence": "", "confidence": 0.0}]}

【注意事项】
- 只记录明确发生的变化，不要推测
- confidence 低于 0.6 的变化不要输出
- 如果没有明显变化，返回 {"changes": []}
""".strip()


def analyze_chapter_for_state_changes(
    client: TextCompletionClient,
    chapter_text: str,
    chapter_index: int,
    registry: CharacterStateRegistry,
) -> StateChangeAnalysis:
    """调用模型分析本章的角色状态变化

    任何失败都记录日志并返回空分析，注册表保持不变。
    """
    summary_lines = [
        f"{s.character_name}({s.character_id}): 位置={s.physical.location}, "
        f"状态={s.physical.condition.value}, 情绪={s.psychological.mood}"
        for s in list(registry.snapshots.values())[:10]
    ]
    prompt = (
        f"【当前角色状态概要】\n{chr(10).join(summary_lines) or '（无已知状态）'}\n\n"
        f"【本章内容 - 第{chapter_index}章】\n{chapter_text[:6000]}\n\n"
        "请分析本章中的角色状态变化:"
    )
    try:
        analysis = request_structured(
            client,
            CompletionRequest(system=STATE_ANALYSIS_SYSTEM, prompt=prompt, temperature=0.2),
            StateChangeAnalysis,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 第 %s 章角色状态分析失败，保持原状态: %s", chapter_index, e)
        return StateChangeAnalysis()

    return StateChangeAnalysis(
        changes=[c for c in analysis.changes if c.confidence >= MIN_CHANGE_CONFIDENCE]
    )


def get_active_snapshots(
    registry: CharacterStateRegistry, max_characters: int = 5
) -> List[CharacterStateSnapshot]:
    """按最近变化章节倒序取活跃角色"""
    def last_change(snapshot: CharacterStateSnapshot) -> int:
        return snapshot.recent_changes[-1].chapter if snapshot.recent_changes else 0

    return sorted(registry.snapshots.values(), key=last_change, reverse=True)[:max_characters]


def format_snapshot(snapshot: CharacterStateSnapshot) -> str:
    """格式化单个角色快照"""
    physical, psych, social = snapshot.physical, snapshot.psychological, snapshot.social
    parts = [
        f"## {snapshot.character_name} (ID: {snapshot.character_id})",
        "【物理状态】",
        f"  - 位置: {physical.location}",
        f"  - 身体: {CONDITION_LABELS.get(physical.condition, physical.condition)}",
    ]
    if physical.equipment:
        parts.append(f"  - 装备: {', '.join(physical.equipment)}")
    if physical.abilities:
        parts.append(f"  - 能力: {', '.join(physical.abilities)}")
    if physical.power_level:
        parts.append(f"  - 境界: {physical.power_level}")

    parts.append("【心理状态】")
    parts.append(f"  - 情绪: {psych.mood}")
    parts.append(f"  - 动机: {psych.motivation}")
    if psych.known_secrets:
        parts.append(f"  - 已知秘密: {'; '.join(psych.known_secrets)}")
    if psych.beliefs:
        parts.append(f"  - 信念: {'; '.join(psych.beliefs)}")
    if psych.inner_conflict:
        parts.append(f"  - 内心矛盾: {psych.inner_conflict}")

    parts.append("【社会状态】")
    parts.append(f"  - 身份: {social.public_identity}")
    if social.hidden_identity:
        parts.append(f"  - 隐藏身份: {social.hidden_identity}")
    parts.append(f"  - 声望: {social.reputation}")

    if snapshot.recent_changes:
        parts.append("【近期重要变化】")
        for change in snapshot.recent_changes[-3:]:
            parts.append(f"  - 第{change.chapter}章: {change.change}")
    return "\n".join(parts)


def build_character_state_context(
    registry: CharacterStateRegistry, chapter_index: int, max_characters: int = 5
) -> str:
    """生成用于章节 prompt 的角色状态上下文"""
    active = get_active_snapshots(registry, max_characters)
    if not active:
        return ""

    parts = ["【本章活跃角色状态】", "以下是主要角色的当前状态，请在写作时保持一致性：", ""]
    for snapshot in active:
        parts.append(format_snapshot(snapshot))
        parts.append("")
    parts.extend([
        "【状态一致性要求】",
        "- 角色的位置变化必须合理（不能瞬移）",
        "- 角色的能力使用必须符合已有设定",
        "- 角色的情绪和行为必须符合其性格和当前心理状态",
    ])
    return "\n".join(parts)


def validate_state_consistency(registry: CharacterStateRegistry) -> List[str]:
    """检测注册表中的可疑状态，返回问题描述列表"""
    issues = []
    for snapshot in registry.snapshots.values():
        if snapshot.physical.condition == PhysicalCondition.UNCONSCIOUS and \
                snapshot.psychological.motivation not in ("昏迷中", "未知"):
            issues.append(
                f"{snapshot.character_name} 处于昏迷状态但动机为\"{snapshot.psychological.motivation}\"，建议修正"
            )
        if not snapshot.physical.location:
            issues.append(f"{snapshot.character_name} 的位置未设置")

        if len(snapshot.recent_changes) >= 2:
            prev, last = snapshot.recent_changes[-2:]
            if prev.field == last.field and prev.new_value == last.old_value and last.new_value == prev.old_value:
                issues.append(f"{snapshot.character_name} 的 {last.field} 状态在近期发生反复变化，请确认是否合理")
    return issues
