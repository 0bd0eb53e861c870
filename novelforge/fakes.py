"""
测试与演练用的确定性补全客户端

ScriptedCompletionClient 按队列或处理函数返回预设文本；
dry_run_client 根据系统指令识别调用点，返回能通过全部校验的样例输出，
供 CLI --fake 在不联网的情况下跑通整条流水线。
"""
import json
import re
from collections import deque
from typing import Callable, Iterable, List, Optional, Union

from novelforge.llm import CompletionRequest

Scripted = Union[str, Exception]


class ScriptExhaustedError(ValueError):
    """脚本已用完；消息按不可重试的 invalid request 归类"""

    def __init__(self):
        super().__init__("invalid request: no scripted response left")


class ScriptedCompletionClient:
    """按顺序返回预设响应；队列中的异常对象会被抛出"""

    def __init__(
        self,
        responses: Optional[Iterable[Scripted]] = None,
        handler: Optional[Callable[[CompletionRequest], str]] = None,
    ):
        self._queue = deque(responses or [])
        self._handler = handler
        self.requests: List[CompletionRequest] = []

    def complete(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        if self._queue:
            item = self._queue.popleft()
            if isinstance(item, Exception):
                raise item
            return item
        if self._handler is not None:
            return self._handler(request)
        raise ScriptExhaustedError()

    def push(self, *responses: Scripted) -> None:
        self._queue.extend(responses)

    @property
    def calls(self) -> int:
        return len(self.requests)

    @property
    def remaining(self) -> int:
        return len(self._queue)


# ==================== 样例输出 ====================

def sample_chapter_text(chapter_index: int, title: Optional[str] = None, paragraphs: int = 14) -> str:
    """一章能通过规则 QC 的正文：有标题、对话、感官描写，篇幅适中，以钩子结尾"""
    heading = f"第{chapter_index}章 {title or '夜探禁地'}"
    body = []
    for i in range(1, paragraphs + 1):
        body.append(
            f"夜风从山门外灌进来，带着潮湿的泥土气息。林远握紧掌心里那枚铜牌，指尖还残留着刚才交手时的灼热。"
            f"“第{i}道禁制已经松动了，”师姐压低声音，目光扫过石阶尽头的黑影，“再拖下去，他们就会发现我们。”"
            f"他没有回答，只是屏住呼吸，听见远处传来铁链拖地的声响，一下，又一下。"
        )
    body.append(f"就在这时，石门背后传来一声冷笑：“第{chapter_index}个闯进来的人，你们终于来了。”")
    return heading + "\n\n" + "\n\n".join(body)


def sample_master_outline(total_chapters: int, chapters_per_volume: int = 80) -> str:
    volumes = []
    start = 1
    index = 1
    while start <= total_chapters:
        end = min(total_chapters, start + chapters_per_volume - 1)
        volumes.append({
            "title": f"第{index}卷：风起青萍",
            "startChapter": start,
            "endChapter": end,
            "goal": "主角在宗门站稳脚跟",
            "conflict": "外门派系倾轧",
            "climax": "宗门大比夺魁",
            "volumeEndState": "主角获得内门资格",
        })
        start = end + 1
        index += 1
    return json.dumps({
        "mainGoal": "少年林远揭开灭门真相并重振家族",
        "milestones": [f"第{v['endChapter']}章：{v['climax']}" for v in volumes],
        "volumes": volumes,
    }, ensure_ascii=False)


def sample_volume_chapters(start: int, end: int) -> str:
    return json.dumps([
        {"index": i, "title": f"暗潮汹涌之{i}", "goal": f"林远在第{i}章化解一次危机", "hook": "新的敌人现身"}
        for i in range(start, end + 1)
    ], ensure_ascii=False)


def sample_character_graph() -> str:
    return json.dumps({
        "protagonists": [{
            "id": "lin_yuan", "name": "林远", "role": "protagonist",
            "basic": {"identity": "外门弟子"},
            "personality": {"traits": ["隐忍", "果决"], "desires": ["查明灭门真相"]},
            "arc": {"start": "隐忍求存", "end": "一肩担起家族"},
            "abilities": ["残缺剑诀"], "speechStyle": "话少而冷",
        }],
        "mainCharacters": [{
            "id": "su_qing", "name": "苏青", "role": "deuteragonist",
            "basic": {"identity": "内门师姐"},
            "personality": {"traits": ["机敏"], "desires": ["摆脱家族安排"]},
        }],
        "relationships": [{"from": "lin_yuan", "to": "su_qing", "type": "同盟", "tension": "彼此隐瞒身世"}],
    }, ensure_ascii=False)


def sample_summary_update(chapter_index: int) -> str:
    return json.dumps({
        "longTermMemory": "林远隐姓埋名进入宗门，暗查家族灭门旧案。",
        "midTermMemory": "林远与苏青结成同盟，外门派系开始针对二人。",
        "recentMemory": f"第{chapter_index}章中二人夜探禁地，被神秘人堵在石门前。",
        "openLoops": ["石门后的神秘人身份", "铜牌的来历"],
    }, ensure_ascii=False)


_RANGE_RE = re.compile(r"第(\d+)章 ~ 第(\d+)章")
_TOTAL_RE = re.compile(r"总章数:\s*(\d+)")
_CHAPTER_NO_RE = re.compile(r"章节号必须是 (\d+)")
_REPAIR_INDEX_RE = re.compile(r"第\s*(\d+)\s*/")


def _dry_run_response(request: CompletionRequest) -> str:
    system = request.system
    if "大纲策划专家" in system and "章节大纲" not in system:
        match = _TOTAL_RE.search(request.prompt)
        return sample_master_outline(int(match.group(1)) if match else 80)
    if "章节大纲策划专家" in system:
        match = _RANGE_RE.search(request.prompt)
        start, end = (int(match.group(1)), int(match.group(2))) if match else (1, 1)
        return sample_volume_chapters(start, end)
    if "人物架构师" in system:
        return sample_character_graph()
    if "编辑助理" in system:
        return sample_summary_update(0)
    match = _CHAPTER_NO_RE.search(system) or _REPAIR_INDEX_RE.search(request.prompt)
    return sample_chapter_text(int(match.group(1)) if match else 1)


def dry_run_client() -> ScriptedCompletionClient:
    return ScriptedCompletionClient(handler=_dry_run_response)
