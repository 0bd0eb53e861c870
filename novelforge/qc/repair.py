"""
QC 驱动的章节修复循环

按 QC 结论中的严重/重要问题构建定向修复指令，改写后重新评估，
直到通过、没有可修复的问题或次数用尽。返回评分最高的候选稿。
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List

from novelforge.errors import NovelForgeError
from novelforge.generation.chapter_text import normalize_chapter_text
from novelforge.llm import CompletionRequest, TextCompletionClient, generate_text_with_retry
from novelforge.models import IssueSeverity, QCIssue, QCVerdict

logger = logging.getLogger(__name__)

REPAIR_TEMPERATURE = 0.7
MAX_MAJOR_ISSUES_IN_PROMPT = 5

REPAIR_SYSTEM = """
你是一个专业的网文修复编辑。
根据 QC 反馈修复章节内容，保持原有风格和语气。
只输出修复后的章节内容，不要有任何解释或标记。
不要改变章节的主要情节和结构，只修复指出的问题。
""".strip()

Evaluator = Callable[[str], QCVerdict]


@dataclass
class RepairResult:
    chapter_text: str
    verdict: QCVerdict
    attempts: int
    success: bool
    log: List[str] = field(default_factory=list)


def build_repair_instruction(
    critical_issues: List[QCIssue],
    major_issues: List[QCIssue],
    chapter_index: int,
    total_chapters: int,
) -> str:
    parts = [f"【修复要求 - 第{chapter_index}/{total_chapters}章】", "请根据以下问题修复章节内容：\n"]

    if critical_issues:
        parts.append("【严重问题 - 必须修复】")
        for i, issue in enumerate(critical_issues, 1):
            parts.append(f"{i}. {issue.description}")
            if issue.suggestion:
                parts.append(f"   建议: {issue.suggestion}")
            if issue.location:
                parts.append(f"   位置: \"{issue.location}\"")
        parts.append("")

    if major_issues:
        parts.append("【重要问题 - 尽量修复】")
        for i, issue in enumerate(major_issues[:MAX_MAJOR_ISSUES_IN_PROMPT], 1):
            parts.append(f"{i}. {issue.description}")
            if issue.suggestion:
                parts.append(f"   建议: {issue.suggestion}")
        parts.append("")

    parts.extend([
        "【修复原则】",
        "1. 保持原有的情节走向和角色设定",
        "2. 保持原有的写作风格和语气",
        "3. 只修改存在问题的部分",
        "4. 确保修复后的内容自然流畅",
    ])
    if chapter_index < total_chapters:
        parts.append("5. 这不是最终章，严禁出现完结/终章/尾声等词汇")
        parts.append("6. 结尾必须保留悬念和钩子")
    return "\n".join(parts)


def repair_chapter(
    client: TextCompletionClient,
    chapter_text: str,
    verdict: QCVerdict,
    chapter_index: int,
    total_chapters: int,
    evaluate: Evaluator,
    max_attempts: int = 1,
    sleep: Callable[[float], None] = time.sleep,
) -> RepairResult:
    """
    修复章节

    Args:
        client: 补全客户端
        chapter_text: 待修复的章节
        verdict: 该章节当前的 QC 结论
        evaluate: 对候选稿重新评估的函数
        max_attempts: 修复次数上限

    Returns:
        RepairResult，其中 chapter_text/verdict 是所有候选稿里评分最高的一份
    """
    best_text, best_verdict = chapter_text, verdict
    current_text, current_verdict = chapter_text, verdict
    attempts = 0
    log = [f"开始修复章节 {chapter_index}，初始评分: {verdict.score}"]

    while attempts < max_attempts and not current_verdict.passed:
        critical = [i for i in current_verdict.issues if i.severity == IssueSeverity.CRITICAL]
        major = [i for i in current_verdict.issues if i.severity == IssueSeverity.MAJOR]
        if not critical and not major:
            log.append("没有严重问题需要修复")
            break

        attempts += 1
        log.append(f"修复尝试 {attempts}/{max_attempts}：{len(critical)} 个严重问题，{len(major)} 个重要问题")
        prompt = (
            f"{build_repair_instruction(critical, major, chapter_index, total_chapters)}\n\n"
            f"【原始章节】\n{current_text}\n\n请输出修复后的完整章节内容:"
        )
        try:
            raw = generate_text_with_retry(
                client,
                CompletionRequest(system=REPAIR_SYSTEM, prompt=prompt, temperature=REPAIR_TEMPERATURE),
                sleep=sleep,
            )
        except NovelForgeError as e:
            log.append(f"修复失败: {e}")
            logger.warning("⚠️ 第 %s 章修复调用失败: %s", chapter_index, e)
            break

        current_text = normalize_chapter_text(raw, chapter_index)
        current_verdict = evaluate(current_text)
        log.append(f"修复后评分: {current_verdict.score}")
        if current_verdict.score > best_verdict.score or (current_verdict.passed and not best_verdict.passed):
            best_text, best_verdict = current_text, current_verdict

    success = best_verdict.passed
    log.append(f"修复{'成功' if success else '未完全成功'}，最终评分: {best_verdict.score}")
    logger.info("第 %s 章修复 %s 次，最终评分 %s", chapter_index, attempts, best_verdict.score)
    return RepairResult(best_text, best_verdict, attempts, success, log)
