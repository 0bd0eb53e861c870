"""
剧情图谱

节点（事件、伏笔、秘密、冲突……）+ 有向边（导致、促成、阻止……）。
伏笔紧迫度由伏笔年龄与重要度推导，不落盘。

开发者: jamesenh
开发时间: 2026-01-14
"""
import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from novelforge.chains.structured import request_structured
from novelforge.errors import NovelForgeError
from novelforge.llm import CompletionRequest, TextCompletionClient

logger = logging.getLogger(__name__)

MAIN_PLOT_IMPORTANCE = 7


class PlotNodeType(str, Enum):
    EVENT = "event"
    FORESHADOWING = "foreshadowing"
    SECRET = "secret"
    CONFLICT = "conflict"
    RESOLUTION = "resolution"
    REVELATION = "revelation"
    TURNING_POINT = "turning_point"


class PlotNodeStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"
    TRANSFORMED = "transformed"


class PlotEdgeRelation(str, Enum):
    CAUSES = "causes"
    ENABLES = "enables"
    BLOCKS = "blocks"
    FORESHADOWS = "foreshadows"
    RESOLVES = "resolves"
    CONTRADICTS = "contradicts"
    PARALLELS = "parallels"


class ForeshadowingUrgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


URGENCY_ORDER = {
    ForeshadowingUrgency.CRITICAL: 0,
    ForeshadowingUrgency.HIGH: 1,
    ForeshadowingUrgency.MEDIUM: 2,
    ForeshadowingUrgency.LOW: 3,
}

CLOSED_STATUSES = (PlotNodeStatus.RESOLVED, PlotNodeStatus.ABANDONED)


class PlotNode(BaseModel):
    id: str
    type: PlotNodeType
    content: str
    characters: List[str] = Field(default_factory=list)
    introduced_at: int = Field(description="引入章节")
    resolved_at: Optional[int] = Field(default=None, description="解决章节")
    importance: int = Field(ge=1, le=10, description="重要度 1-10")
    status: PlotNodeStatus = PlotNodeStatus.ACTIVE
    tags: List[str] = Field(default_factory=list)


class PlotEdge(BaseModel):
    id: str
    from_id: str
    to_id: str
    relation: PlotEdgeRelation
    description: str = ""
    established_at: int


class PendingForeshadowing(BaseModel):
    id: str
    urgency: ForeshadowingUrgency
    suggested_resolution_range: Tuple[int, int]
    age_in_chapters: int
    summary: str


class PlotGraph(BaseModel):
    """剧情图谱"""
    version: int = Field(default=0, description="变更计数")
    last_updated_chapter: int = 0
    nodes: List[PlotNode] = Field(default_factory=list)
    edges: List[PlotEdge] = Field(default_factory=list)
    active_main_plots: List[str] = Field(default_factory=list)
    active_subplots: List[str] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[PlotNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class StatusUpdate(BaseModel):
    node_id: str
    new_status: PlotNodeStatus
    resolved_at: Optional[int] = None


class PlotAnalysis(BaseModel):
    """规范化后的剧情变化提案（节点 ID 已分配）"""
    new_nodes: List[PlotNode] = Field(default_factory=list)
    main_plot_ids: List[str] = Field(default_factory=list, description="被模型标记为主线的新节点")
    new_edges: List[PlotEdge] = Field(default_factory=list)
    status_updates: List[StatusUpdate] = Field(default_factory=list)


# ==================== 推导属性 ====================

def calculate_foreshadowing_urgency(node: PlotNode, current_chapter: int) -> ForeshadowingUrgency:
    """按年龄与重要度推导伏笔紧迫度：越重要的伏笔越早变得紧迫"""
    age = current_chapter - node.introduced_at
    multiplier = 0.7 if node.importance >= 8 else 1.0 if node.importance >= 5 else 1.3
    adjusted_age = age / multiplier

    if adjusted_age > 80:
        return ForeshadowingUrgency.CRITICAL
    if adjusted_age > 50:
        return ForeshadowingUrgency.HIGH
    if adjusted_age > 20:
        return ForeshadowingUrgency.MEDIUM
    return ForeshadowingUrgency.LOW


def calculate_suggested_resolution_range(
    node: PlotNode, current_chapter: int, total_chapters: int
) -> Tuple[int, int]:
    if node.importance >= 8:
        ideal_age = min(100, total_chapters * 0.8)
    elif node.importance >= 5:
        ideal_age = 50
    else:
        ideal_age = 30

    min_chapter = max(current_chapter + 1, int(node.introduced_at + ideal_age - 10))
    max_chapter = min(total_chapters, int(node.introduced_at + ideal_age + 20))
    return min_chapter, max_chapter


def get_active_foreshadowing(graph: PlotGraph) -> List[PlotNode]:
    return [
        n for n in graph.nodes
        if n.type == PlotNodeType.FORESHADOWING and n.status == PlotNodeStatus.ACTIVE
    ]


def pending_foreshadowing(graph: PlotGraph, current_chapter: int, total_chapters: int) -> List[PendingForeshadowing]:
    """待回收伏笔，按紧迫度排序"""
    pending = [
        PendingForeshadowing(
            id=node.id,
            urgency=calculate_foreshadowing_urgency(node, current_chapter),
            suggested_resolution_range=calculate_suggested_resolution_range(node, current_chapter, total_chapters),
            age_in_chapters=current_chapter - node.introduced_at,
            summary=node.content,
        )
        for node in get_active_foreshadowing(graph)
    ]
    return sorted(pending, key=lambda p: URGENCY_ORDER[p.urgency])


def get_causal_chain(graph: PlotGraph, node_id: str, max_depth: int = 3) -> List[PlotNode]:
    """沿 causes/enables 边做深度优先遍历"""
    visited = set()
    result: List[PlotNode] = []

    def traverse(current_id: str, depth: int):
        if depth > max_depth or current_id in visited:
            return
        visited.add(current_id)
        node = graph.get_node(current_id)
        if node:
            result.append(node)
        for edge in graph.edges:
            if edge.from_id == current_id and edge.relation in (PlotEdgeRelation.CAUSES, PlotEdgeRelation.ENABLES):
                traverse(edge.to_id, depth + 1)

    traverse(node_id, 0)
    return result


# ==================== 纯更新函数 ====================

def generate_node_id(node_type: PlotNodeType, chapter: int, sequence: int) -> str:
    return f"{node_type.value}_ch{chapter}_{sequence}"


def generate_edge_id(from_id: str, to_id: str, relation: PlotEdgeRelation) -> str:
    return f"edge_{from_id}_{relation.value}_{to_id}"


def add_node(graph: PlotGraph, node: PlotNode, is_main_plot: bool = False) -> PlotGraph:
    """添加节点；主线进入主线索引，非伏笔进入支线索引"""
    update = {"nodes": [*graph.nodes, node], "version": graph.version + 1}
    if is_main_plot:
        update["active_main_plots"] = [*graph.active_main_plots, node.id]
    elif node.type != PlotNodeType.FORESHADOWING:
        update["active_subplots"] = [*graph.active_subplots, node.id]
    return graph.model_copy(update=update)


def update_node_status(
    graph: PlotGraph, node_id: str, new_status: PlotNodeStatus, resolved_at: Optional[int] = None
) -> PlotGraph:
    """更新节点状态；解决/放弃的节点在同一次更新中移出活跃索引"""
    if not any(n.id == node_id for n in graph.nodes):
        return graph
    nodes = [
        n.model_copy(update={
            "status": new_status,
            "resolved_at": resolved_at if resolved_at is not None else n.resolved_at,
        }) if n.id == node_id else n
        for n in graph.nodes
    ]
    update = {"nodes": nodes, "version": graph.version + 1}
    if new_status in CLOSED_STATUSES:
        update["active_main_plots"] = [i for i in graph.active_main_plots if i != node_id]
        update["active_subplots"] = [i for i in graph.active_subplots if i != node_id]
    return graph.model_copy(update=update)


def apply_plot_analysis(graph: PlotGraph, analysis: PlotAnalysis, chapter_index: int) -> PlotGraph:
    """把剧情分析应用到图谱（纯函数）"""
    if not (analysis.new_nodes or analysis.new_edges or analysis.status_updates):
        return graph

    updated = graph
    existing_ids = {n.id for n in graph.nodes}
    for node in analysis.new_nodes:
        if node.id in existing_ids:
            continue
        is_main = node.importance >= MAIN_PLOT_IMPORTANCE or node.id in analysis.main_plot_ids
        updated = add_node(updated, node, is_main_plot=is_main)

    node_ids = {n.id for n in updated.nodes}
    edge_ids = {e.id for e in updated.edges}
    new_edges = [e for e in analysis.new_edges if e.from_id in node_ids and e.to_id in node_ids and e.id not in edge_ids]
    if new_edges:
        updated = updated.model_copy(update={"edges": [*updated.edges, *new_edges]})

    for status_update in analysis.status_updates:
        updated = update_node_status(updated, status_update.node_id, status_update.new_status, status_update.resolved_at)

    return updated.model_copy(update={
        "version": graph.version + 1,
        "last_updated_chapter": max(graph.last_updated_chapter, chapter_index),
    })


# ==================== 模型分析 ====================

class _RawNode(BaseModel):
    type: PlotNodeType
    content: str
    characters: List[str] = Field(default_factory=list)
    importance: int = Field(ge=1, le=10)
    tags: List[str] = Field(default_factory=list)
    isMainPlot: bool = False


class _RawEdge(BaseModel):
    fromContent: str
    toContent: str
    relation: PlotEdgeRelation
    description: str = ""


class _RawStatusUpdate(BaseModel):
    nodeContent: str
    newStatus: PlotNodeStatus


class _RawResolution(BaseModel):
    foreshadowingContent: str
    resolutionDescription: str = ""


class _RawPlotAnalysis(BaseModel):
    newNodes: List[_RawNode] = Field(default_factory=list)
    newEdges: List[_RawEdge] = Field(default_factory=list)
    statusUpdates: List[_RawStatusUpdate] = Field(default_factory=list)
    foreshadowingResolutions: List[_RawResolution] = Field(default_factory=list)


PLOT_ANALYSIS_SYSTEM = """
你是一个专业的小说剧情分析师。你的任务是分析章节内容，提取重要的剧情事件、伏笔和因果关系。

节点类型: event / foreshadowing / secret / conflict / resolution / revelation / turning_point
边关系: causes / enables / blocks / foreshadows / resolves / contradicts / parallels

【重要性评分标准】
- 10: 决定整体走向的核心事件
- 7-9: 重要转折或关键发现
- 4-6: 中等重要性的剧情推进
- 1-3: 小的细节或暗示

【输出格式】
只输出 JSON:
{
  "newNodes": [{"type": "", "content": "30字以内", "characters": [], "importance": 5, "tags": [], "isMainPlot": false}],
  "newEdges": [{"fromContent": "", "toContent": "", "relation": "", "description": ""}],
  "statusUpdates": [{"nodeContent": "", "newStatus": "resolved|abandoned|transformed"}],
  "foreshadowingResolutions": [{"foreshadowingContent": "", "resolutionDescription": ""}]
}
只提取重要的剧情点，每章通常产生 1-5 个新节点；没有变化时返回空数组。
""".strip()


def convert_raw_analysis(raw: _RawPlotAnalysis, chapter_index: int, graph: PlotGraph) -> PlotAnalysis:
    """把按内容引用的分析结果映射到节点 ID"""
    content_to_id: Dict[str, str] = {n.content: n.id for n in graph.nodes}
    new_nodes: List[PlotNode] = []
    main_ids: List[str] = []
    sequence = len(graph.nodes)
    for raw_node in raw.newNodes:
        sequence += 1
        node = PlotNode(
            id=generate_node_id(raw_node.type, chapter_index, sequence),
            type=raw_node.type,
            content=raw_node.content,
            characters=raw_node.characters,
            introduced_at=chapter_index,
            importance=raw_node.importance,
            tags=raw_node.tags,
        )
        new_nodes.append(node)
        content_to_id[node.content] = node.id
        if raw_node.isMainPlot:
            main_ids.append(node.id)

    edges = []
    for raw_edge in raw.newEdges:
        from_id = content_to_id.get(raw_edge.fromContent)
        to_id = content_to_id.get(raw_edge.toContent)
        if not from_id or not to_id:
            continue
        edges.append(PlotEdge(
            id=generate_edge_id(from_id, to_id, raw_edge.relation),
            from_id=from_id,
            to_id=to_id,
            relation=raw_edge.relation,
            description=raw_edge.description,
            established_at=chapter_index,
        ))

    status_updates = []
    for update in raw.statusUpdates:
        node_id = next((n.id for n in graph.nodes if n.content == update.nodeContent), None)
        if node_id:
            status_updates.append(StatusUpdate(
                node_id=node_id,
                new_status=update.newStatus,
                resolved_at=chapter_index if update.newStatus == PlotNodeStatus.RESOLVED else None,
            ))
    for resolution in raw.foreshadowingResolutions:
        node_id = next(
            (n.id for n in graph.nodes
             if n.type == PlotNodeType.FORESHADOWING and n.content == resolution.foreshadowingContent),
            None,
        )
        if node_id:
            status_updates.append(StatusUpdate(node_id=node_id, new_status=PlotNodeStatus.RESOLVED, resolved_at=chapter_index))

    return PlotAnalysis(new_nodes=new_nodes, main_plot_ids=main_ids, new_edges=edges, status_updates=status_updates)


def analyze_chapter_for_plot_changes(
    client: TextCompletionClient,
    chapter_text: str,
    chapter_index: int,
    graph: PlotGraph,
    total_chapters: int,
) -> PlotAnalysis:
    """调用模型分析本章剧情变化；失败时返回空分析"""
    active_nodes = [n for n in graph.nodes if n.status == PlotNodeStatus.ACTIVE][-20:]
    nodes_context = "\n".join(f"[{n.type.value}] {n.content} (第{n.introduced_at}章)" for n in active_nodes)
    pending = pending_foreshadowing(graph, chapter_index, total_chapters)[:5]
    pending_context = "\n".join(f"- {p.summary} (已{p.age_in_chapters}章)" for p in pending)
    prompt = (
        f"【当前活跃剧情节点】\n{nodes_context or '（无）'}\n\n"
        f"【待回收伏笔】\n{pending_context or '（无）'}\n\n"
        f"【本章内容 - 第{chapter_index}章】\n{chapter_text[:6000]}\n\n"
        "请分析本章的剧情变化:"
    )
    try:
        raw = request_structured(
            client,
            CompletionRequest(system=PLOT_ANALYSIS_SYSTEM, prompt=prompt, temperature=0.3),
            _RawPlotAnalysis,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 第 %s 章剧情分析失败，保持原图谱: %s", chapter_index, e)
        return PlotAnalysis()
    return convert_raw_analysis(raw, chapter_index, graph)


# ==================== Prompt 片段 ====================

def format_foreshadowing_reminder(pending: List[PendingForeshadowing], max_items: int = 5) -> str:
    critical = [p for p in pending if p.urgency == ForeshadowingUrgency.CRITICAL]
    high = [p for p in pending if p.urgency == ForeshadowingUrgency.HIGH]
    if not critical and not high:
        return ""

    parts = ["【伏笔回收提醒】"]
    if critical:
        parts.append("⚠️ 紧急 - 以下伏笔已超时，请尽快回收：")
        for i, p in enumerate(critical[:3], 1):
            parts.append(f"  {i}. {p.summary} (埋下已{p.age_in_chapters}章)")
    if high:
        parts.append("📌 重要 - 以下伏笔建议近期回收：")
        for i, p in enumerate(high[:max(0, max_items - len(critical))], 1):
            start, end = p.suggested_resolution_range
            parts.append(f"  {i}. {p.summary} (建议在第{start}-{end}章回收)")
    return "\n".join(parts)


def format_active_plot_lines(graph: PlotGraph) -> str:
    mains = [n for n in (graph.get_node(i) for i in graph.active_main_plots) if n]
    subs = [n for n in (graph.get_node(i) for i in graph.active_subplots) if n]
    if not mains and not subs:
        return ""
    parts = ["【当前活跃剧情线】"]
    if mains:
        parts.append("主线：")
        parts.extend(f"  {i}. [{n.type.value}] {n.content}" for i, n in enumerate(mains[:3], 1))
    if subs:
        parts.append("支线：")
        parts.extend(f"  {i}. [{n.type.value}] {n.content}" for i, n in enumerate(subs[:3], 1))
    return "\n".join(parts)


def _causal_reminder(graph: PlotGraph, current_chapter: int) -> str:
    edges = [
        e for e in graph.edges
        if e.relation in (PlotEdgeRelation.CAUSES, PlotEdgeRelation.ENABLES)
        and current_chapter - e.established_at <= 20
    ][:3]
    lines = []
    for edge in edges:
        source, target = graph.get_node(edge.from_id), graph.get_node(edge.to_id)
        if source and target and target.status == PlotNodeStatus.ACTIVE:
            verb = "将导致" if edge.relation == PlotEdgeRelation.CAUSES else "将使"
            lines.append(f"  - \"{source.content}\" {verb} \"{target.content}\"")
    if not lines:
        return ""
    return "\n".join(["【因果链提醒】", "以下因果关系需要在后续章节中体现：", *lines])


def build_plot_context(graph: PlotGraph, chapter_index: int, total_chapters: int) -> str:
    """完整的剧情上下文（未压缩版本）"""
    if not graph.nodes:
        return ""
    parts = []
    reminder = format_foreshadowing_reminder(pending_foreshadowing(graph, chapter_index, total_chapters))
    if reminder:
        parts.append(reminder)
    lines = format_active_plot_lines(graph)
    if lines:
        parts.append(lines)

    recent = sorted(
        (n for n in graph.nodes
         if n.status == PlotNodeStatus.ACTIVE and n.type != PlotNodeType.FORESHADOWING
         and chapter_index - n.introduced_at <= 10),
        key=lambda n: n.introduced_at,
        reverse=True,
    )[:5]
    if recent:
        parts.append("【近期重要事件】\n" + "\n".join(
            f"  {i}. 第{n.introduced_at}章: {n.content}" for i, n in enumerate(recent, 1)
        ))

    causal = _causal_reminder(graph, chapter_index)
    if causal:
        parts.append(causal)
    return "\n\n".join(parts)


def graph_stats(graph: PlotGraph, current_chapter: int, total_chapters: int) -> Dict[str, int]:
    return {
        "total_nodes": len(graph.nodes),
        "active_nodes": sum(1 for n in graph.nodes if n.status == PlotNodeStatus.ACTIVE),
        "resolved_nodes": sum(1 for n in graph.nodes if n.status == PlotNodeStatus.RESOLVED),
        "total_foreshadowing": sum(1 for n in graph.nodes if n.type == PlotNodeType.FORESHADOWING),
        "pending_foreshadowing": len(pending_foreshadowing(graph, current_chapter, total_chapters)),
        "total_edges": len(graph.edges),
    }
