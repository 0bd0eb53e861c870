"""
基于规则的章节检测

提前完结信号、截断与结构完整性检测都是纯文本规则，可同步、零成本地运行，
在章节生成的自我修正循环和快速 QC 中共用。

开发者: jamesenh
开发时间: 2026-01-19
"""
import re
from typing import List, Tuple

from novelforge.models import IssueSeverity, IssueType, QCIssue

ENDING_PATTERNS = [
    # 明示完结词
    re.compile(r"全书完|完结|大结局|终章|尾声|后记|番外"),
    re.compile(r"感谢(大家|读者|各位|支持)"),
    re.compile(r"（完）|\(完\)|（全文完）|\(全文完\)"),
    re.compile(r"the\s*end", re.IGNORECASE),
    # 总结人生、回顾全程
    re.compile(r"回顾(一路|过往|这些年|这一切)"),
    re.compile(r"从此(以后|之后).{0,10}(幸福|安稳|平静)"),
    re.compile(r"故事(就|也|便)(到此|到这|至此|结束)"),
    re.compile(r"至此.{0,5}(落幕|结束|告一段落)"),
    # 一次性清算所有伏笔
    re.compile(r"所有的(谜团|伏笔|悬念).{0,10}(揭开|解开|真相大白)"),
    re.compile(r"一切(都|终于|终究)(尘埃落定|水落石出)"),
]

SENSORY_RE = re.compile(
    r"看到|听到|听见|闻到|触感|温度|疼痛|灼热|冰冷|刺骨|芳香|恶臭|轰鸣|震颤|柔软|粗糙|明亮|昏暗|刺眼|微光|"
    r"血腥|甘甜|苦涩|酸|辣|颤抖|麻痹|目光|眼神|瞳孔|嘴角|眉头|拳头|指尖|掌心|呼吸|心跳|脉搏|汗水|泪水|血液|伤口"
)
SUMMARY_WRITING_PATTERNS = [
    re.compile(r"(?:接下来|之后|后来)(?:的|一)(?:几天|几日|几个月|一段时间|些日子)"),
    re.compile(r"(?:日子|时间|时光)(?:一天天|一天一天|就这样|就这么)(?:过去|流逝)"),
    re.compile(r"不知不觉.{0,5}(?:过去了|已经|便是)"),
    re.compile(r"(?:经过|花了|用了).{0,5}(?:几天|数日|半个月|一个月|数月).{0,10}(?:终于|总算|才)"),
]
DIDACTIC_ENDING_PATTERNS = [
    re.compile(r"他(?:深深地?)?(?:知道|明白|清楚|意识到|感受到)"),
    re.compile(r"他(?:在心中|暗暗|默默)(?:发誓|下定决心|告诉自己)"),
    re.compile(r"这(?:一刻|一瞬|一天).*?(?:永远|终生|一辈子).*?(?:铭记|记住|忘不了)"),
    re.compile(r"(?:望着|看着|凝视).{0,10}(?:远方|天空|背影).{0,5}(?:他知道|心中)"),
]
TITLE_RE = re.compile(r"^第[一二三四五六七八九十百千\d]+章")
DIALOGUE_MARK_RE = re.compile(r"[\"「『“]")
DIALOGUE_LINE_RE = re.compile(r"^[\"「“『]|^[^\n]*?[\"「“『].*?[\"」”』]\s*$")
PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")

MIN_CHAPTER_CHARS_FLOOR = 500
MAX_CHAPTER_CHARS = 5000
# 正文可以停在这些字符上；其余结尾视为截断
CLOSING_PUNCTUATION = "。！？!?.…”」』）)\"'~～\u2014"


def quick_ending_heuristic(chapter_text: str) -> Tuple[bool, List[str]]:
    """检测提前完结信号，返回 (是否命中, 命中原因)"""
    reasons = []
    for pattern in ENDING_PATTERNS:
        match = pattern.search(chapter_text)
        if match:
            reasons.append(f"匹配到: \"{match.group(0)}\"")
    return bool(reasons), reasons


def detect_truncation(chapter_text: str) -> Tuple[bool, List[str]]:
    """检测正文被截断：结尾停在半句话上，或中文引号没有闭合"""
    body = chapter_text.strip()
    lines = body.split("\n")
    if TITLE_RE.match(lines[0].strip()):
        body = "\n".join(lines[1:]).strip()
    if not body:
        return False, []

    reasons = []
    if body[-1] not in CLOSING_PUNCTUATION:
        tail = body[-12:].replace("\n", " ")
        reasons.append(f"正文结尾缺少收束标点: \"{tail}\"")
    if body.count("“") > body.count("”"):
        reasons.append("存在未闭合的引号")
    return bool(reasons), reasons


def build_truncation_instruction(chapter_index: int, total_chapters: int, reasons: List[str]) -> str:
    numbered = "\n".join(f"{i}. {r}" for i, r in enumerate(reasons, 1))
    return (
        "【重写要求】\n"
        f"你刚才写的第 {chapter_index}/{total_chapters} 章正文不完整，疑似在半句话处被截断。\n"
        "检测到的问题：\n"
        f"{numbered}\n\n"
        "请完整重写该章，严格遵守：\n"
        "1. 控制篇幅，确保在字数范围内把本章写完\n"
        "2. 最后一句必须是完整的句子，以标点收束\n"
        "3. 第一行仍然是章节标题，其后是正文"
    )


def build_rewrite_instruction(chapter_index: int, total_chapters: int, reasons: List[str]) -> str:
    numbered = "\n".join(f"{i}. {r}" for i, r in enumerate(reasons, 1))
    return (
        "【重写要求】\n"
        f"你刚才写的第 {chapter_index}/{total_chapters} 章出现\"提前收尾/完结\"倾向。\n"
        "检测到的问题：\n"
        f"{numbered}\n\n"
        "请重写该章，严格遵守：\n"
        "1. 这不是最终章，严禁出现：完结/终章/尾声/后记/感谢读者/全书完/总结一生 等任何收尾语气\n"
        "2. 仍然保持本章推进剧情：有一个明确冲突→解决一小步→引出更大危机\n"
        "3. 结尾必须是强钩子（读者会想立刻点下一章）\n"
        "4. 第一行仍然是章节标题，其后是正文"
    )


def looks_like_json_payload(text: str) -> bool:
    trimmed = text.strip()
    if re.match(r"^```json", trimmed, re.IGNORECASE) and re.search(r"\"content\"\s*:", trimmed):
        return True
    return (
        trimmed[:1] in ("{", "[")
        and re.search(r"\"content\"\s*:", trimmed) is not None
        and re.search(r"\"title\"\s*:", trimmed) is not None
    )


def check_premature_ending(chapter_text: str, chapter_index: int, total_chapters: int) -> Tuple[int, List[QCIssue]]:
    """终章不检测；命中即 0 分并产生阻断问题"""
    if chapter_index >= total_chapters:
        return 100, []
    hit, reasons = quick_ending_heuristic(chapter_text)
    if not hit:
        return 100, []
    return 0, [QCIssue(
        type=IssueType.ENDING,
        severity=IssueSeverity.CRITICAL,
        description=f"检测到提前完结信号：{'; '.join(reasons)}",
        suggestion="请重写章节，移除完结相关的表达，保持剧情张力和悬念",
    )]


def check_structural_integrity(chapter_text: str, min_chapter_chars: int = 1500) -> Tuple[int, List[QCIssue]]:
    """结构与文风检测，返回 (分数, 问题列表)"""
    issues: List[QCIssue] = []
    min_chars = max(MIN_CHAPTER_CHARS_FLOOR, int(min_chapter_chars or 1500))

    if looks_like_json_payload(chapter_text):
        return 0, [QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.CRITICAL,
            description="章节内容是 JSON 结构而非正文文本",
            suggestion="请仅输出章节正文（含标题），不要输出 JSON 或代码块",
        )]

    score = 100
    truncated, truncation_reasons = detect_truncation(chapter_text)
    if truncated:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.CRITICAL,
            description=f"章节疑似被截断：{'；'.join(truncation_reasons)}",
            suggestion="请补全被截断的内容，让本章停在完整的句子或钩子上",
        ))
        score -= 30

    char_count = len(chapter_text)
    if char_count < min_chars:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.MAJOR,
            description=f"章节字数过少 ({char_count}字)，最低要求 {min_chars} 字",
            suggestion="请扩充章节内容，增加场景描写或角色互动",
        ))
        score -= 30
    elif char_count > MAX_CHAPTER_CHARS:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.MINOR,
            description=f"章节字数过多 ({char_count}字)，可能影响阅读节奏",
            suggestion="考虑拆分为两章或精简冗余描写",
        ))
        score -= 10

    if not TITLE_RE.match(chapter_text.strip()):
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.MINOR,
            description="章节缺少标题",
            suggestion="请在章节开头添加\"第X章 标题\"格式的标题",
        ))
        score -= 5

    if len(DIALOGUE_MARK_RE.findall(chapter_text)) < 4:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.MINOR,
            description="章节对话过少，可能显得沉闷",
            suggestion="考虑增加角色对话以增强可读性",
        ))
        score -= 10

    if len(PARAGRAPH_SPLIT_RE.split(chapter_text)) < 3:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.MINOR,
            description="章节段落划分过少，可能影响阅读体验",
            suggestion="请适当分段，让阅读更加流畅",
        ))
        score -= 5

    paragraphs = [p for p in PARAGRAPH_SPLIT_RE.split(chapter_text) if p.strip()]

    # 白开水：超过 200 字却没有感官描写或对话
    bland = sum(
        1 for p in paragraphs
        if len(p) > 200 and not SENSORY_RE.search(p) and not DIALOGUE_MARK_RE.search(p)
    )
    if bland >= 3:
        issues.append(QCIssue(
            type=IssueType.STYLE,
            severity=IssueSeverity.MAJOR,
            description=f"检测到 {bland} 段白开水文（超过200字但无感官描写或对话）",
            suggestion="增加具体的视觉、听觉、触觉等感官细节，让场景更有画面感",
        ))
        score -= 15

    summary_hits = [m.group(0) for m in (p.search(chapter_text) for p in SUMMARY_WRITING_PATTERNS) if m]
    if len(summary_hits) >= 2:
        issues.append(QCIssue(
            type=IssueType.STYLE,
            severity=IssueSeverity.MAJOR,
            description=f"检测到概述式写作（{'；'.join(summary_hits)}），缺少场景展开",
            suggestion="将时间跨度大的叙述替换为一个关键场景的详细展开",
        ))
        score -= 15

    tail = chapter_text[-300:]
    if any(p.search(tail) for p in DIDACTIC_ENDING_PATTERNS):
        issues.append(QCIssue(
            type=IssueType.STYLE,
            severity=IssueSeverity.MINOR,
            description="章节以感悟/总结式语句结尾，缺少钩子",
            suggestion="用悬念、反转或危机场景作为章节结尾，让读者想点下一章",
        ))
        score -= 10

    long_paragraphs = [p for p in paragraphs if len(p.strip()) > 500]
    if len(long_paragraphs) >= 2:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.MINOR,
            description=f"存在 {len(long_paragraphs)} 个超长段落（>500字），影响阅读节奏",
            suggestion="将超长段落拆分，穿插对话或短描写以调节节奏",
        ))
        score -= 5

    consecutive = longest = 0
    for line in chapter_text.split("\n"):
        stripped = line.strip()
        if DIALOGUE_LINE_RE.search(stripped):
            consecutive += 1
            longest = max(longest, consecutive)
        elif stripped:
            consecutive = 0
    if longest >= 5:
        issues.append(QCIssue(
            type=IssueType.STYLE,
            severity=IssueSeverity.MINOR,
            description=f"存在连续 {longest} 句纯对话缺乏动作/表情描写",
            suggestion="在对话间穿插角色的动作、表情、心理描写，避免\"剧本化\"",
        ))
        score -= 10

    return max(0, score), issues
