"""
模型辅助的深度 QC 维度：人物一致性、节奏对齐、目标达成

每个检查都通过结构化输出调用评审模型；调用或校验失败时返回保守的默认分数，
节奏检查退回到基于规则的检测，不会让整个 QC 失败。
"""
import logging
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from novelforge.chains.structured import request_structured
from novelforge.errors import NovelForgeError
from novelforge.knowledge.character_state import CharacterStateRegistry
from novelforge.knowledge.pacing import NarrativeGuide
from novelforge.llm import CompletionRequest, TextCompletionClient
from novelforge.models import IssueSeverity, IssueType, OutlineChapter, QCIssue

logger = logging.getLogger(__name__)

CHARACTER_FALLBACK_SCORE = 80
RULE_PACING_BASE_SCORE = 80
GOAL_FALLBACK_SCORE = 70

Severity = Literal["critical", "major", "minor"]


# ==================== 人物一致性 ====================

class _CharacterIssue(BaseModel):
    characterId: str = ""
    characterName: str
    type: Literal["personality", "ability", "state", "speech", "relationship"]
    severity: Severity
    description: str
    evidence: str = ""


class _CharacterCheck(BaseModel):
    score: int = Field(ge=0, le=100)
    issues: List[_CharacterIssue] = Field(default_factory=list)


CHARACTER_ISSUE_SUGGESTIONS = {
    "personality": "请确保角色行为符合其性格设定，避免突然的性格转变",
    "ability": "请检查角色能力是否符合设定，避免使用未获得的能力",
    "state": "请注意角色的位置和状态连续性，确保场景转换合理",
    "speech": "请保持角色的说话风格一致，注意口头禅和语气",
    "relationship": "请确保角色互动符合其关系设定，注意态度和称呼",
}

CHARACTER_CHECK_SYSTEM = """
你是一个专业的网文编辑，专注于检测人物一致性问题。

【检测维度】
1. 性格一致性 (personality)
2. 能力一致性 (ability)
3. 状态一致性 (state): 位置、情绪、身体状态是否与上下文矛盾
4. 语言一致性 (speech)
5. 关系一致性 (relationship)

【严重程度判定】
- critical: 严重违背设定，读者会明显察觉
- major: 明显不协调，影响阅读体验
- minor: 轻微违和

只输出 JSON:
{"score": 0-100, "issues": [{"characterId": "", "characterName": "", "type": "personality|ability|state|speech|relationship",
  "severity": "critical|major|minor", "description": "", "evidence": "原文依据"}]}
""".strip()


def check_character_consistency(
    client: TextCompletionClient,
    chapter_text: str,
    registry: CharacterStateRegistry,
) -> Tuple[int, List[QCIssue]]:
    states = []
    for s in list(registry.snapshots.values())[:8]:
        recent = "; ".join(c.change for c in s.recent_changes[-2:]) or "无"
        states.append(
            f"【{s.character_name}】(ID: {s.character_id})\n"
            f"- 位置: {s.physical.location}\n"
            f"- 身体状态: {s.physical.condition.value}\n"
            f"- 情绪: {s.psychological.mood}\n"
            f"- 动机: {s.psychological.motivation}\n"
            f"- 能力: {', '.join(s.physical.abilities) or '无特殊能力'}\n"
            f"- 近期变化: {recent}"
        )
    prompt = (
        f"【角色状态快照】\n{chr(10).join(states) or '（无已知角色状态）'}\n\n"
        f"【待检测章节】\n{chapter_text[:5000]}\n\n请检测人物一致性问题:"
    )
    try:
        result = request_structured(
            client, CompletionRequest(system=CHARACTER_CHECK_SYSTEM, prompt=prompt, temperature=0.2), _CharacterCheck,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 人物一致性检测失败，使用默认分数: %s", e)
        return CHARACTER_FALLBACK_SCORE, []

    issues = [
        QCIssue(
            type=IssueType.CHARACTER,
            severity=IssueSeverity(i.severity),
            description=f"[{i.characterName}] {i.description}",
            location=i.evidence or None,
            suggestion=CHARACTER_ISSUE_SUGGESTIONS.get(i.type, "请检查并修正人物描写"),
        )
        for i in result.issues
    ]
    return result.score, issues


# ==================== 节奏对齐 ====================

class _ActualPacing(BaseModel):
    tensionLevel: float = Field(ge=1, le=10)
    dialogueRatio: float = Field(ge=0, le=1)
    sceneCount: int = Field(ge=1)
    informationDensity: float = Field(ge=1, le=10)
    emotionalTone: str


class _PacingAlignment(BaseModel):
    tensionMatch: bool
    emotionalToneMatch: bool
    wordCountMatch: bool


class _PacingCheck(BaseModel):
    actualPacing: _ActualPacing
    alignment: _PacingAlignment
    score: int = Field(ge=0, le=100)
    issues: List[str] = Field(default_factory=list)


PACING_CHECK_SYSTEM = """
你是一个专业的网文节奏分析师。分析章节的实际节奏指标，并与目标节奏对比。

指标：紧张度 tensionLevel (1-10)、对话比例 dialogueRatio (0-1)、场景数量 sceneCount、
信息密度 informationDensity (1-10)、情感基调 emotionalTone。

只输出 JSON:
{"actualPacing": {"tensionLevel": 1-10, "dialogueRatio": 0-1, "sceneCount": 1, "informationDensity": 1-10, "emotionalTone": ""},
 "alignment": {"tensionMatch": true, "emotionalToneMatch": true, "wordCountMatch": true},
 "score": 0-100, "issues": ["问题"]}
""".strip()


def rule_based_pacing_check(chapter_text: str, guide: NarrativeGuide) -> Tuple[int, List[QCIssue]]:
    """只依据字数的保底检测"""
    issues = []
    score = RULE_PACING_BASE_SCORE
    word_count = len(chapter_text)
    low, high = guide.word_count_range
    if word_count < low:
        issues.append(QCIssue(
            type=IssueType.PACING, severity=IssueSeverity.MINOR,
            description=f"字数偏少 ({word_count}字)", suggestion="请扩充章节内容",
        ))
        score -= 10
    elif word_count > high:
        issues.append(QCIssue(
            type=IssueType.PACING, severity=IssueSeverity.MINOR,
            description=f"字数偏多 ({word_count}字)", suggestion="请精简冗余描写",
        ))
        score -= 5
    return max(0, score), issues


def check_pacing_alignment(
    client: TextCompletionClient,
    chapter_text: str,
    guide: NarrativeGuide,
) -> Tuple[int, List[QCIssue]]:
    word_count = len(chapter_text)
    low, high = guide.word_count_range
    scenes = "\n".join(f"- {s.purpose}" for s in guide.scene_requirements)
    prompt = (
        "【目标节奏】\n"
        f"- 紧张度目标: {guide.pacing_target}/10\n"
        f"- 节奏类型: {guide.pacing_type.value}\n"
        f"- 情感基调: {guide.emotional_tone}\n"
        f"- 字数要求: {low}-{high}\n"
        f"- 实际字数: {word_count}\n"
        + (f"【场景要求】\n{scenes}\n" if scenes else "")
        + f"\n【待分析章节】\n{chapter_text[:5000]}\n\n请分析节奏对齐情况:"
    )
    try:
        result = request_structured(
            client, CompletionRequest(system=PACING_CHECK_SYSTEM, prompt=prompt, temperature=0.2), _PacingCheck,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 节奏对齐检测失败，改用规则检测: %s", e)
        return rule_based_pacing_check(chapter_text, guide)

    issues = []
    actual = result.actualPacing.tensionLevel
    delta = abs(actual - guide.pacing_target)
    if delta > 3:
        issues.append(QCIssue(
            type=IssueType.PACING,
            severity=IssueSeverity.MAJOR,
            description=f"节奏偏差过大: 目标{guide.pacing_target}, 实际{actual}",
            suggestion="节奏过于紧张，建议增加一些舒缓的描写或对话" if actual > guide.pacing_target
            else "节奏过于平淡，建议增加一些冲突或紧张元素",
        ))
    elif delta > 2:
        issues.append(QCIssue(
            type=IssueType.PACING,
            severity=IssueSeverity.MINOR,
            description=f"节奏略有偏差: 目标{guide.pacing_target}, 实际{actual}",
        ))

    if not result.alignment.emotionalToneMatch:
        issues.append(QCIssue(
            type=IssueType.PACING,
            severity=IssueSeverity.MINOR,
            description=f"情感基调不匹配: 期望\"{guide.emotional_tone}\", 实际\"{result.actualPacing.emotionalTone}\"",
            suggestion="请调整描写风格以匹配目标情感基调",
        ))

    if not (low <= word_count <= high):
        issues.append(QCIssue(
            type=IssueType.PACING,
            severity=IssueSeverity.MAJOR if word_count < low * 0.7 else IssueSeverity.MINOR,
            description=f"字数{word_count}不在目标范围{low}-{high}内",
            suggestion="请扩充章节内容" if word_count < low else "请精简冗余描写",
        ))

    issues.extend(
        QCIssue(type=IssueType.PACING, severity=IssueSeverity.MINOR, description=text)
        for text in result.issues
    )
    return result.score, issues


# ==================== 目标达成 ====================

class _CriterionResult(BaseModel):
    criterion: str
    achieved: bool
    evidence: Optional[str] = None


class _GoalCheck(BaseModel):
    primaryGoalAchieved: bool
    successCriteriaResults: List[_CriterionResult] = Field(default_factory=list)
    scenesCompleted: List[str] = Field(default_factory=list)
    scenesMissing: List[str] = Field(default_factory=list)
    hookEffectiveness: int = Field(ge=1, le=10)
    hookAnalysis: str = ""
    score: int = Field(ge=0, le=100)
    issues: List[str] = Field(default_factory=list)


GOAL_CHECK_SYSTEM = """
你是一个专业的大纲执行检查员。检查章节是否完成了大纲规定的目标。

检查：主要目标是否体现、验证标准是否满足、场景是否完整、章末钩子是否有效。

只输出 JSON:
{"primaryGoalAchieved": true, "successCriteriaResults": [{"criterion": "", "achieved": true, "evidence": ""}],
 "scenesCompleted": [], "scenesMissing": [], "hookEffectiveness": 1-10, "hookAnalysis": "",
 "score": 0-100, "issues": []}
""".strip()


def check_goal_achievement(
    client: TextCompletionClient,
    chapter_text: str,
    chapter: OutlineChapter,
    guide: Optional[NarrativeGuide] = None,
) -> Tuple[int, List[QCIssue]]:
    scenes = ""
    if guide is not None and guide.scene_requirements:
        scenes = "【场景要求】\n" + "\n".join(
            f"{s.order}. [{s.type}] {s.purpose}" for s in guide.scene_requirements
        ) + "\n"
    prompt = (
        "【章节大纲】\n"
        f"- 标题: {chapter.title}\n"
        f"- 主要目标: {chapter.goal}\n"
        f"- 章末钩子: {chapter.hook or '（未指定）'}\n"
        f"{scenes}\n"
        f"【实际章节内容】\n{chapter_text[:5000]}\n\n请检查目标达成情况:"
    )
    try:
        result = request_structured(
            client, CompletionRequest(system=GOAL_CHECK_SYSTEM, prompt=prompt, temperature=0.2), _GoalCheck,
        )
    except NovelForgeError as e:
        logger.warning("⚠️ 目标达成检测失败，使用默认分数: %s", e)
        return GOAL_FALLBACK_SCORE, []

    issues = []
    if not result.primaryGoalAchieved:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.CRITICAL,
            description=f"主要目标未达成: {chapter.goal}",
            suggestion="请确保章节内容完成主要目标",
        ))
    for criterion in result.successCriteriaResults:
        if not criterion.achieved:
            issues.append(QCIssue(
                type=IssueType.STRUCTURE,
                severity=IssueSeverity.MAJOR,
                description=f"验证标准未满足: {criterion.criterion}",
                suggestion="请补充相关内容以满足验证标准",
            ))
    if result.scenesMissing:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.MAJOR if len(result.scenesMissing) > 1 else IssueSeverity.MINOR,
            description=f"缺失场景: {', '.join(result.scenesMissing)}",
            suggestion="请补充缺失的场景",
        ))
    if result.hookEffectiveness < 5:
        issues.append(QCIssue(
            type=IssueType.STRUCTURE,
            severity=IssueSeverity.MAJOR if result.hookEffectiveness < 3 else IssueSeverity.MINOR,
            description=f"钩子效果不佳 ({result.hookEffectiveness}/10): {result.hookAnalysis}",
            suggestion="请加强章末悬念，让读者想要继续阅读",
        ))
    issues.extend(
        QCIssue(type=IssueType.STRUCTURE, severity=IssueSeverity.MINOR, description=text)
        for text in result.issues
    )
    return result.score, issues

