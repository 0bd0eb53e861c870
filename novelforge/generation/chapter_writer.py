"""
章节生成
单次补全生成正文，带有有界的自纠重写循环（非最终章检测提前完结，所有章节检测截断），
随后调用摘要模型更新分层滚动摘要与未解伏笔。

开发者: jamesenh
开发时间: 2026-01-20
"""
import logging
import time
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from novelforge.context.rolling_summary import parse_summary_update_response
from novelforge.errors import NovelForgeError
from novelforge.generation.chapter_text import normalize_chapter_text
from novelforge.llm import CompletionRequest, TextCompletionClient, generate_text_with_retry
from novelforge.models import ChapterDraft
from novelforge.qc.heuristics import (
    build_rewrite_instruction,
    build_truncation_instruction,
    detect_truncation,
    quick_ending_heuristic,
)

logger = logging.getLogger(__name__)

FIRST_DRAFT_TEMPERATURE = 0.85
REWRITE_TEMPERATURE = 0.8
SUMMARY_TEMPERATURE = 0.2
SUMMARY_BIBLE_CHARS = 2000
DEFAULT_GOAL_HINT = "承接上一章结尾，推进主线一步，并制造更大的危机；结尾留强钩子。"


class ChapterWriteParams(BaseModel):
    """章节生成参数"""
    bible: str = Field(default="", description="核心设定")
    rolling_summary: str = Field(default="", description="滚动剧情摘要")
    open_loops: List[str] = Field(default_factory=list, description="未解伏笔")
    last_chapters: List[str] = Field(default_factory=list, description="最近 1~2 章原文")
    chapter_index: int = Field(description="章节序号（从 1 开始）")
    total_chapters: int = Field(description="计划总章数")
    chapter_goal_hint: Optional[str] = Field(default=None, description="本章写作目标提示")
    chapter_title: Optional[str] = Field(default=None, description="大纲标题")
    context_text: Optional[str] = Field(default=None, description="预先组装好的上下文，提供时替代设定/摘要/近章")
    max_rewrite_attempts: int = Field(default=2, description="提前完结或截断时的重写次数上限")
    skip_summary_update: bool = Field(default=False, description="跳过摘要更新")

    @property
    def is_final(self) -> bool:
        return self.chapter_index == self.total_chapters


def build_system_prompt(is_final: bool, chapter_index: int, chapter_title: Optional[str] = None) -> str:
    title_text = f"第{chapter_index}章 {chapter_title}" if chapter_title else f"第{chapter_index}章 [你需要起一个创意标题]"
    return f"""
你是一个"稳定连载"的网文写作引擎。

硬性规则：
- 只有当 is_final_chapter=true 才允许收束主线、写结局、尾声、后记
- 若 is_final_chapter=false：严禁出现任何"完结/终章/尾声/后记/感谢读者/全书完/总结人生"等收尾表达
- 每章必须推进冲突，并以强钩子结尾（引出下一章危机/反转/新线索）
- 每章字数建议 2500~3500 汉字

输出格式：
- 第一行必须是章节标题：{title_text}
- 章节号必须是 {chapter_index}，严禁使用其他数字
- 其后是正文
- 严禁写任何解释、元说明、目标完成提示
- 严禁在正文中出现【本章写作目标】、【已完成】、（本章结束）等任何形式的编辑备注

当前是否为最终章：{'true - 可以写结局' if is_final else 'false - 禁止收尾'}
""".strip()


def build_user_prompt(params: ChapterWriteParams) -> str:
    loops = "\n".join(f"{i}. {loop}" for i, loop in enumerate(params.open_loops, 1)) or "（暂无）"
    goal = params.chapter_goal_hint or DEFAULT_GOAL_HINT

    if params.context_text:
        body = params.context_text
    else:
        last = "\n\n".join(
            f"---近章{i}---\n{text}" for i, text in enumerate(params.last_chapters, 1)
        ) or "（暂无）"
        body = (
            f"【章节信息】\n"
            f"- chapter_index: {params.chapter_index}\n"
            f"- total_chapters: {params.total_chapters}\n"
            f"- is_final_chapter: {str(params.is_final).lower()}\n\n"
            f"【Story Bible（长期设定）】\n{params.bible}\n\n"
            f"【Rolling Summary（到目前为止剧情摘要）】\n"
            f"{params.rolling_summary or '（暂无摘要：请根据近章原文自行推断并保持一致）'}\n\n"
            f"【Last Chapters（近章原文，用于连续性与语气）】\n{last}"
        )

    return (
        f"{body}\n\n"
        f"【Open Loops（未解伏笔/悬念，最多12条）】\n{loops}\n\n"
        f"【本章写作目标提示】\n{goal}\n\n"
        "请写出本章内容："
    )


SUMMARY_SYSTEM = """
你是小说编辑助理。你的任务是更新分层剧情记忆和未解伏笔列表。
只输出严格的 JSON 格式，不要有任何其他文字。

输出格式：
{
  "longTermMemory": "全书到目前为止的主线脉络与不可更改的关键事实（200~400 字）",
  "midTermMemory": "最近一个阶段（约 10 章）的局势与人物关系变化（200~400 字）",
  "recentMemory": "最近 1~3 章的具体进展与当前悬念（200~500 字）",
  "openLoops": ["未解伏笔1", "未解伏笔2"]
}

要求：
- openLoops 5~12 条，每条不超过 30 字
- 已在本章解决的伏笔要移除
""".strip()


def update_rolling_summary(
    client: TextCompletionClient,
    bible: str,
    previous_summary: str,
    previous_open_loops: List[str],
    chapter_text: str,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple:
    """生成本章之后的滚动摘要与未解伏笔；失败时沿用旧值"""
    prompt = (
        f"【Story Bible】\n{bible[:SUMMARY_BIBLE_CHARS]}\n\n"
        f"【此前 Rolling Summary】\n{previous_summary or '（无）'}\n\n"
        f"【本章原文】\n{chapter_text}\n\n"
        "请输出更新后的 JSON："
    )
    try:
        raw = generate_text_with_retry(
            client,
            CompletionRequest(system=SUMMARY_SYSTEM, prompt=prompt, temperature=SUMMARY_TEMPERATURE),
            sleep=sleep,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 摘要更新失败，沿用旧摘要: %s", e)
        return previous_summary, previous_open_loops
    return parse_summary_update_response(raw, previous_summary, previous_open_loops)


def write_chapter(
    client: TextCompletionClient,
    params: ChapterWriteParams,
    summary_client: Optional[TextCompletionClient] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ChapterDraft:
    """
    生成单章

    Args:
        client: 写作模型客户端
        params: 生成参数
        summary_client: 摘要更新客户端，为空时复用写作客户端
        sleep: 重试等待函数

    Returns:
        ChapterDraft 草稿
    """
    system = build_system_prompt(params.is_final, params.chapter_index, params.chapter_title)
    prompt = build_user_prompt(params)

    raw = generate_text_with_retry(
        client, CompletionRequest(system=system, prompt=prompt, temperature=FIRST_DRAFT_TEMPERATURE), sleep=sleep,
    )
    chapter_text = normalize_chapter_text(raw, params.chapter_index)
    rewrite_count = 0

    for attempt in range(params.max_rewrite_attempts):
        ending_hit, ending_reasons = (False, []) if params.is_final else quick_ending_heuristic(chapter_text)
        truncated, truncation_reasons = detect_truncation(chapter_text)
        if not ending_hit and not truncated:
            break
        reasons = ending_reasons + truncation_reasons
        logger.warning(
            "⚠️ 章节 %s 检测到%s，尝试重写 (%s/%s): %s",
            params.chapter_index, "提前完结信号" if ending_hit else "正文截断",
            attempt + 1, params.max_rewrite_attempts, "; ".join(reasons),
        )
        if ending_hit:
            instruction = build_rewrite_instruction(params.chapter_index, params.total_chapters, reasons)
        else:
            instruction = build_truncation_instruction(params.chapter_index, params.total_chapters, reasons)
        raw = generate_text_with_retry(
            client,
            CompletionRequest(system=system, prompt=f"{prompt}\n\n{instruction}", temperature=REWRITE_TEMPERATURE),
            sleep=sleep,
        )
        chapter_text = normalize_chapter_text(raw, params.chapter_index)
        rewrite_count += 1

    if not params.is_final and quick_ending_heuristic(chapter_text)[0]:
        logger.error("❌ 章节 %s 重写后仍检测到提前完结信号，需要人工介入", params.chapter_index)
    if detect_truncation(chapter_text)[0]:
        logger.error("❌ 章节 %s 重写后正文仍不完整，交由 QC 处理", params.chapter_index)

    summary, open_loops = params.rolling_summary, params.open_loops
    if not params.skip_summary_update:
        summary, open_loops = update_rolling_summary(
            summary_client or client, params.bible, params.rolling_summary, params.open_loops, chapter_text, sleep,
        )

    return ChapterDraft(
        chapter_index=params.chapter_index,
        chapter_text=chapter_text,
        updated_summary=summary,
        updated_open_loops=list(open_loops),
        outline_title=params.chapter_title,
        outline_goal=params.chapter_goal_hint,
        was_rewritten=rewrite_count > 0,
        rewrite_count=rewrite_count,
    )
