"""
时间线 / 事件账本

事件状态只能沿 planned → foreshadowed → in_progress → completed 前进，
任何状态都可以转为 cancelled。同一 unique_key 的事件至多一个处于
completed 或 in_progress，生成步骤据此避免重复叙述已完成的剧情节点。

开发者: jamesenh
开发时间: 2026-01-15
"""
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from novelforge.chains.structured import request_structured
from novelforge.errors import NovelForgeError
from novelforge.llm import CompletionRequest, TextCompletionClient
from novelforge.models import CharacterGraph, NovelOutline

logger = logging.getLogger(__name__)


class TimelineEventType(str, Enum):
    CEREMONY = "ceremony"
    BATTLE = "battle"
    REVELATION = "revelation"
    ENCOUNTER = "encounter"
    DEPARTURE = "departure"
    ACQUISITION = "acquisition"
    DEATH = "death"
    DECISION = "decision"
    CONFLICT = "conflict"
    ALLIANCE = "alliance"
    BETRAYAL = "betrayal"
    CUSTOM = "custom"


class TimelineEventStatus(str, Enum):
    PLANNED = "planned"
    FORESHADOWED = "foreshadowed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


STATUS_RANK = {
    TimelineEventStatus.PLANNED: 0,
    TimelineEventStatus.FORESHADOWED: 1,
    TimelineEventStatus.IN_PROGRESS: 2,
    TimelineEventStatus.COMPLETED: 3,
}
OCCUPYING_STATUSES = (TimelineEventStatus.IN_PROGRESS, TimelineEventStatus.COMPLETED)


def can_transition(current: TimelineEventStatus, target: TimelineEventStatus) -> bool:
    """状态只能前进；cancelled 可从任意未取消状态进入"""
    if current == TimelineEventStatus.CANCELLED:
        return False
    if target == TimelineEventStatus.CANCELLED:
        return True
    return STATUS_RANK[target] > STATUS_RANK[current]


class TimelineEvent(BaseModel):
    id: str
    type: TimelineEventType
    summary: str
    description: str = ""
    character_ids: List[str] = Field(default_factory=list)
    status: TimelineEventStatus
    planned_chapter: Optional[int] = None
    started_chapter: Optional[int] = None
    completed_chapter: Optional[int] = None
    unique_key: str
    evidence: Optional[str] = None
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())


class TimelineState(BaseModel):
    """时间线"""
    version: int = Field(default=0, description="变更计数")
    last_updated_chapter: int = 0
    current_timepoint: str = "故事开始"
    events: List[TimelineEvent] = Field(default_factory=list)


class ProposedEvent(BaseModel):
    type: TimelineEventType
    summary: str
    description: str = ""
    character_ids: List[str] = Field(default_factory=list)
    unique_key: str
    evidence: str = ""
    completed: bool = True


class EventAnalysis(BaseModel):
    new_events: List[ProposedEvent] = Field(default_factory=list)
    current_timepoint: Optional[str] = None


# ==================== 工具函数 ====================

def generate_unique_key(event_type: TimelineEventType, character_ids: Iterable[str], core_action: str) -> str:
    sorted_chars = "_".join(sorted(character_ids))
    normalized_action = re.sub(r"\s+", "_", core_action.strip().lower())
    return f"{event_type.value}:{sorted_chars}:{normalized_action}"


EVENT_TYPE_PATTERNS = [
    (TimelineEventType.CEREMONY, re.compile(r"仪式|典礼|登基|婚礼|葬礼|祭祀|觉醒|测试")),
    (TimelineEventType.BATTLE, re.compile(r"战斗|打|杀|击败|对战|交手|比武|决斗")),
    (TimelineEventType.REVELATION, re.compile(r"揭露|暴露|发现|真相|秘密|身份|得知")),
    (TimelineEventType.ENCOUNTER, re.compile(r"相遇|初见|重逢|邂逅|遇到|碰到")),
    (TimelineEventType.DEPARTURE, re.compile(r"离开|分别|告别|离去|出发|远行")),
    (TimelineEventType.ACQUISITION, re.compile(r"获得|得到|突破|晋升|觉醒|习得")),
    (TimelineEventType.DEATH, re.compile(r"死亡|牺牲|陨落|去世|殒命")),
    (TimelineEventType.DECISION, re.compile(r"决定|选择|抉择|决心")),
    (TimelineEventType.CONFLICT, re.compile(r"争吵|冲突|对峙|矛盾|撕破脸")),
    (TimelineEventType.ALLIANCE, re.compile(r"结盟|联手|合作|同盟")),
    (TimelineEventType.BETRAYAL, re.compile(r"背叛|出卖|反水|叛变")),
]

TYPE_KEYWORDS = {
    TimelineEventType.CEREMONY: ["仪式", "典礼", "开始", "进行", "举行"],
    TimelineEventType.BATTLE: ["战斗", "交手", "打", "攻击", "防御"],
    TimelineEventType.REVELATION: ["发现", "得知", "揭露", "原来", "真相"],
    TimelineEventType.ENCOUNTER: ["遇到", "见到", "初次", "重逢", "相见"],
    TimelineEventType.DEPARTURE: ["离开", "告别", "分别", "离去", "出发"],
    TimelineEventType.ACQUISITION: ["获得", "得到", "突破", "觉醒", "习得"],
    TimelineEventType.DEATH: ["死", "亡", "牺牲", "陨落", "殒命"],
    TimelineEventType.DECISION: ["决定", "选择", "决心", "下定"],
    TimelineEventType.CONFLICT: ["争吵", "冲突", "对峙", "矛盾", "激烈"],
    TimelineEventType.ALLIANCE: ["结盟", "联手", "合作", "共同"],
    TimelineEventType.BETRAYAL: ["背叛", "出卖", "反水", "叛变"],
    TimelineEventType.CUSTOM: [],
}


def infer_event_type(text: str) -> TimelineEventType:
    for event_type, pattern in EVENT_TYPE_PATTERNS:
        if pattern.search(text):
            return event_type
    return TimelineEventType.CUSTOM


def character_name_map(graph: Optional[CharacterGraph]) -> Dict[str, str]:
    """角色名 -> 角色 ID"""
    if graph is None:
        return {}
    return {profile.name: profile.id for profile in graph.all_characters()}


def find_characters_in_text(text: str, names: Dict[str, str]) -> List[str]:
    found = []
    for name, character_id in names.items():
        if name and name in text and character_id not in found:
            found.append(character_id)
    return found


def detect_event_duplication(timeline: TimelineState, unique_key: str) -> Optional[TimelineEvent]:
    """查找占用该 unique_key 的已完成或进行中事件"""
    for event in timeline.events:
        if event.unique_key == unique_key and event.status in OCCUPYING_STATUSES:
            return event
    return None


def _completes_in_progress(existing: TimelineEvent, proposed: ProposedEvent) -> bool:
    return existing.status == TimelineEventStatus.IN_PROGRESS and proposed.completed


def find_duplicate_events(timeline: TimelineState, analysis: EventAnalysis) -> List[str]:
    """列出分析结果中会与已有事件重复的条目（警告文案）"""
    warnings = []
    seen = set()
    for proposed in analysis.new_events:
        existing = detect_event_duplication(timeline, proposed.unique_key)
        if existing and _completes_in_progress(existing, proposed):
            seen.add(proposed.unique_key)
            continue
        if existing:
            warnings.append(f"重复事件: {proposed.summary} (与第{existing.completed_chapter or existing.started_chapter}章 {existing.summary} 重复)")
        elif proposed.unique_key in seen:
            warnings.append(f"重复事件: {proposed.summary} (本章内重复)")
        seen.add(proposed.unique_key)
    return warnings


def _next_event_id(timeline_events: List[TimelineEvent], event_type: TimelineEventType, chapter: int) -> str:
    return f"evt_{event_type.value}_ch{chapter}_{len(timeline_events) + 1}"


# ==================== 纯更新函数 ====================

def update_event_status(
    timeline: TimelineState,
    event_id: str,
    new_status: TimelineEventStatus,
    chapter_index: int,
) -> TimelineState:
    """推进事件状态

    非法的状态回退会被忽略；推进到 in_progress/completed 时如果同 key
    已有占用事件，同样忽略并记录警告。
    """
    target = next((e for e in timeline.events if e.id == event_id), None)
    if target is None:
        return timeline
    if not can_transition(target.status, new_status):
        logger.warning("⚠️ 非法的事件状态变更: %s %s → %s", event_id, target.status.value, new_status.value)
        return timeline
    if new_status in OCCUPYING_STATUSES:
        occupant = detect_event_duplication(timeline, target.unique_key)
        if occupant is not None and occupant.id != event_id:
            logger.warning("⚠️ 事件 %s 与已有事件 %s 重复，保持原状态", target.summary, occupant.summary)
            return timeline

    now = datetime.now().isoformat()
    update = {"status": new_status, "updated_at": now}
    if new_status == TimelineEventStatus.IN_PROGRESS and target.started_chapter is None:
        update["started_chapter"] = chapter_index
    if new_status == TimelineEventStatus.COMPLETED:
        update["completed_chapter"] = chapter_index
        if target.started_chapter is None:
            update["started_chapter"] = chapter_index

    events = [e.model_copy(update=update) if e.id == event_id else e for e in timeline.events]
    return timeline.model_copy(update={
        "events": events,
        "version": timeline.version + 1,
        "last_updated_chapter": max(timeline.last_updated_chapter, chapter_index),
    })


def apply_event_analysis(timeline: TimelineState, analysis: EventAnalysis, chapter_index: int) -> TimelineState:
    """把事件分析应用到时间线（纯函数）

    - 进行中事件在本章报告完成时推进为 completed
    - 其余与已完成/进行中事件重复的新事件被跳过
    - 与计划中事件同 key 的新事件直接推进该计划事件
    - 其余新事件以 completed（或 in_progress）状态追加
    """
    if not analysis.new_events and not analysis.current_timepoint:
        return timeline

    updated = timeline
    for proposed in analysis.new_events:
        existing = detect_event_duplication(updated, proposed.unique_key)
        if existing and _completes_in_progress(existing, proposed):
            updated = update_event_status(updated, existing.id, TimelineEventStatus.COMPLETED, chapter_index)
            continue
        if existing:
            logger.warning("⚠️ 跳过重复事件: %s (与 %s 重复)", proposed.summary, existing.summary)
            continue

        target_status = TimelineEventStatus.COMPLETED if proposed.completed else TimelineEventStatus.IN_PROGRESS
        planned = next(
            (e for e in updated.events
             if e.unique_key == proposed.unique_key
             and e.status in (TimelineEventStatus.PLANNED, TimelineEventStatus.FORESHADOWED)),
            None,
        )
        if planned is not None:
            updated = update_event_status(updated, planned.id, target_status, chapter_index)
            continue

        event = TimelineEvent(
            id=_next_event_id(updated.events, proposed.type, chapter_index),
            type=proposed.type,
            summary=proposed.summary,
            description=proposed.description,
            character_ids=proposed.character_ids,
            status=target_status,
            started_chapter=chapter_index,
            completed_chapter=chapter_index if proposed.completed else None,
            unique_key=proposed.unique_key,
            evidence=proposed.evidence or None,
        )
        updated = updated.model_copy(update={"events": [*updated.events, event]})

    return updated.model_copy(update={
        "version": timeline.version + 1,
        "last_updated_chapter": max(timeline.last_updated_chapter, chapter_index),
        "current_timepoint": analysis.current_timepoint or timeline.current_timepoint,
    })


def initialize_timeline_from_outline(outline: NovelOutline, names: Dict[str, str]) -> TimelineState:
    """从大纲的章节目标生成计划中的事件"""
    events: List[TimelineEvent] = []
    for chapter in outline.all_chapters():
        if not chapter.goal:
            continue
        character_ids = find_characters_in_text(chapter.goal, names)
        event_type = infer_event_type(chapter.goal)
        events.append(TimelineEvent(
            id=_next_event_id(events, event_type, chapter.index),
            type=event_type,
            summary=chapter.goal[:50],
            description=chapter.goal,
            character_ids=character_ids,
            status=TimelineEventStatus.PLANNED,
            planned_chapter=chapter.index,
            unique_key=generate_unique_key(event_type, character_ids, chapter.goal[:30]),
        ))
    return TimelineState(events=events)


# ==================== 模型分析 ====================

class _RawEvent(BaseModel):
    type: TimelineEventType
    summary: str = Field(max_length=50)
    description: str = ""
    characterNames: List[str] = Field(default_factory=list)
    coreAction: str = Field(max_length=30)
    evidence: str = ""
    isCompleted: bool = True


class _RawEventAnalysis(BaseModel):
    newEvents: List[_RawEvent] = Field(default_factory=list)
    currentTimepoint: str


EVENT_ANALYSIS_SYSTEM = """
你是小说剧情分析助手。你的任务是从章节内容中提取重要事件。

1. 只提取重要的、有标志性的事件，忽略日常对话和过渡性描写
2. 事件必须是明确发生的，不是角色的想法或计划
3. 用简洁的语言描述事件
4. 区分"已完成"和"进行中"的事件

只输出 JSON:
{"newEvents": [{"type": "ceremony|battle|revelation|encounter|departure|acquisition|death|decision|conflict|alliance|betrayal|custom",
  "summary": "50字以内", "description": "", "characterNames": [], "coreAction": "30字以内，用于去重",
  "evidence": "", "isCompleted": true}],
 "currentTimepoint": "故事当前时间点描述"}
""".strip()


def analyze_chapter_for_events(
    client: TextCompletionClient,
    chapter_text: str,
    chapter_index: int,
    timeline: TimelineState,
    names: Dict[str, str],
) -> EventAnalysis:
    """调用模型提取本章事件；失败时返回空分析"""
    completed = [e.summary for e in timeline.events if e.status == TimelineEventStatus.COMPLETED][-10:]
    prompt = (
        f"【本书角色列表】\n{'、'.join(names.keys()) or '（未提供）'}\n\n"
        f"【已记录的完成事件】\n{chr(10).join('- ' + s for s in completed) or '（暂无）'}\n\n"
        f"【第{chapter_index}章原文】\n{chapter_text[:8000]}\n\n"
        "请分析本章发生的重要事件:"
    )
    try:
        raw = request_structured(
            client,
            CompletionRequest(system=EVENT_ANALYSIS_SYSTEM, prompt=prompt, temperature=0.2),
            _RawEventAnalysis,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 第 %s 章事件分析失败，保持原时间线: %s", chapter_index, e)
        return EventAnalysis()

    events = []
    for raw_event in raw.newEvents:
        character_ids = [names[n] for n in raw_event.characterNames if n in names]
        events.append(ProposedEvent(
            type=raw_event.type,
            summary=raw_event.summary,
            description=raw_event.description,
            character_ids=character_ids,
            unique_key=generate_unique_key(raw_event.type, character_ids, raw_event.coreAction),
            evidence=raw_event.evidence,
            completed=raw_event.isCompleted,
        ))
    return EventAnalysis(new_events=events, current_timepoint=raw.currentTimepoint)


# ==================== Prompt 片段与检查 ====================

def format_timeline_context(timeline: TimelineState, current_chapter: int, names: Dict[str, str]) -> str:
    id_to_name = {cid: name for name, cid in names.items()}

    def who(event: TimelineEvent) -> str:
        return "、".join(id_to_name.get(cid, cid) for cid in event.character_ids)

    parts = ["【当前故事时间点】", timeline.current_timepoint, ""]

    completed = [e for e in timeline.events if e.status == TimelineEventStatus.COMPLETED]
    if completed:
        parts.append("【已完成事件 - 严禁重复】")
        for e in completed[-10:]:
            parts.append(f"• [第{e.completed_chapter}章] {e.summary}（涉及：{who(e)}）")
        parts.append("")

    active = [e for e in timeline.events if e.status == TimelineEventStatus.IN_PROGRESS]
    if active:
        parts.append("【进行中事件】")
        for e in active:
            parts.append(f"• {e.summary}（涉及：{who(e)}，从第{e.started_chapter}章开始）")
        parts.append("")

    recent = [
        e for e in completed
        if e.completed_chapter is not None and current_chapter - e.completed_chapter <= 3
    ]
    if recent:
        parts.append("【近期发生】")
        for e in recent:
            parts.append(f"• 第{e.completed_chapter}章: {e.summary}")

    return "\n".join(parts).strip()


def check_event_duplication(chapter_text: str, timeline: TimelineState, names: Dict[str, str]) -> List[str]:
    """文本启发式：检查新章节是否在重复已完成事件，返回警告列表"""
    id_to_name = {cid: name for name, cid in names.items()}
    warnings = []
    for event in timeline.events:
        if event.status != TimelineEventStatus.COMPLETED:
            continue
        event_names = [id_to_name[cid] for cid in event.character_ids if cid in id_to_name]
        has_character = any(name in chapter_text for name in event_names)
        has_action = any(len(part) > 2 and part in chapter_text for part in re.split(r"[，,。、]", event.summary))
        if has_character and has_action and any(kw in chapter_text for kw in TYPE_KEYWORDS[event.type]):
            warnings.append(f"疑似重复事件: \"{event.summary}\" (第{event.completed_chapter}章已完成)")
    return warnings


def timeline_stats(timeline: TimelineState) -> Dict[str, int]:
    stats = {"total_events": len(timeline.events)}
    for status in TimelineEventStatus:
        stats[status.value] = sum(1 for e in timeline.events if e.status == status)
    return stats
