import logging
import re
from typing import Callable, Optional

from app.agents.common import invoke_stage, join_prompt
from app.core.stage_results import AnalyzerResult, PlanRecommendation, Stage, StageFailure, ValidationResult
from app.services.llm import CompletionClient, parse_llm_json

logger = logging.getLogger("uvicorn.error")

MIN_PROFILE_CHARS = 30
RICH_PROFILE_CHARS = 150

ALLERGY_FIELD = re.compile(r"allergies?:\s*([^\n]+)")
DISLIKE_FIELD = re.compile(r"dislikes?:\s*([^\n;]+)")
AVOID_FIELD = re.compile(r"avoids?:\s*([^\n;]+)")
CONDITION_FIELD = re.compile(r"conditions?:\s*([^\n]+)")
QUOTED_TERM = re.compile(r'"([^"]+)"')

HIGH_INTENSITY_WORDS = ["hiit", "sprint", "intense", "heavy", "crossfit"]
LIMITING_CONDITIONS = ["back pain", "knee pain", "injury", "chronic pain", "arthritis"]
EMPTY_TERMS = {"none", "n/a", "na", "no"}


def _field_terms(pattern: re.Pattern[str], text: str) -> list[str]:
    match = pattern.search(text)
    if not match:
        return []
    terms = [term.strip() for term in match.group(1).split(",")]
    return [term for term in terms if term and term not in EMPTY_TERMS]


def local_validation(plan: PlanRecommendation, profile_text: str) -> list[str]:
    """Deterministic conflict check of the plan against labeled fields in the profile text."""
    lowered = profile_text.lower()
    allergies = _field_terms(ALLERGY_FIELD, lowered)
    dislikes = _field_terms(DISLIKE_FIELD, lowered)
    avoids = _field_terms(AVOID_FIELD, lowered)
    conditions = _field_terms(CONDITION_FIELD, lowered)

    diet_text = " ".join(plan.diet).lower()
    exercise_text = " ".join(plan.exercise).lower()

    conflicts: list[str] = []
    for allergy in allergies:
        if allergy in diet_text:
            conflicts.append(f'ALLERGY CONFLICT: Plan suggests "{allergy}" but user is allergic')
    for dislike in dislikes:
        if dislike in diet_text:
            conflicts.append(f'PREFERENCE CONFLICT: Plan suggests "{dislike}" but user dislikes it')
    for avoid in avoids:
        if avoid in exercise_text:
            conflicts.append(f'EXERCISE CONFLICT: Plan suggests "{avoid}" but user avoids it')

    limiting = [c for c in conditions if any(term in c for term in LIMITING_CONDITIONS)]
    if limiting:
        for word in HIGH_INTENSITY_WORDS:
            if word in exercise_text:
                conflicts.append(
                    f'SAFETY CONFLICT: Plan suggests "{word}" exercise but user has {", ".join(limiting)}'
                )
    return conflicts


def conflict_terms(conflicts: list[str]) -> list[str]:
    terms = []
    for conflict in conflicts:
        match = QUOTED_TERM.search(conflict)
        if match:
            terms.append(match.group(1))
    return terms


def deep_validation(
    client: CompletionClient,
    plan: PlanRecommendation,
    analyzer: AnalyzerResult,
    profile_text: str,
    session_id: str,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> ValidationResult:
    prompt = join_prompt(
        [
            f"HEALTH TWIN PROFILE:\n{profile_text}",
            "\nANALYZER ASSESSMENT:",
            f"Energy: {analyzer.energy_score}/100",
            f"Risks: {', '.join(analyzer.risk_flags) or 'none'}",
            "\nPLANNER RECOMMENDATIONS:",
            f"Diet: {'; '.join(plan.diet)}",
            f"Exercise: {'; '.join(plan.exercise)}",
            f"Recovery: {plan.recovery}",
        ]
    )
    try:
        raw = invoke_stage(client, Stage.validator, session_id, prompt, is_cancelled=is_cancelled)
        parsed = parse_llm_json(raw)
    except (StageFailure, ValueError) as exc:
        logger.warning("validator_deep_check_skipped session_id=%s detail=%s", session_id, str(exc)[:220])
        return ValidationResult(approved=True, reasoning="Validation skipped (error)", tier="deep")

    conflicts = parsed.get("conflicts")
    suggestions = parsed.get("suggestions")
    reasoning = parsed.get("reasoning")
    return ValidationResult(
        approved=parsed.get("approved") is not False,
        conflicts=[str(c) for c in conflicts] if isinstance(conflicts, list) else [],
        suggestions=[str(s) for s in suggestions] if isinstance(suggestions, list) else [],
        reasoning=reasoning if isinstance(reasoning, str) else "Validation complete",
        tier="deep",
    )


def validate_plan(
    client: CompletionClient,
    plan: PlanRecommendation,
    analyzer: AnalyzerResult,
    profile_text: Optional[str],
    session_id: str = "",
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> ValidationResult:
    if not profile_text or len(profile_text) < MIN_PROFILE_CHARS:
        return ValidationResult(approved=True, reasoning="No Health Twin data, skipping validation", tier="skipped")

    conflicts = local_validation(plan, profile_text)
    if conflicts:
        logger.info("validator_local_conflicts session_id=%s count=%s", session_id, len(conflicts))
        return ValidationResult(
            approved=False,
            conflicts=conflicts,
            reasoning="Local validation found direct conflicts with Health Twin profile",
            tier="local",
        )

    if len(profile_text) > RICH_PROFILE_CHARS:
        return deep_validation(client, plan, analyzer, profile_text, session_id, is_cancelled)

    return ValidationResult(approved=True, reasoning="Plan validated, no conflicts detected", tier="passed")


def strip_conflicting_items(plan: PlanRecommendation, conflicts: list[str]) -> PlanRecommendation:
    terms = [term.lower() for term in conflict_terms(conflicts)]
    if not terms:
        return plan
    return plan.model_copy(
        update={
            "diet": [item for item in plan.diet if not any(term in item.lower() for term in terms)],
            "exercise": [item for item in plan.exercise if not any(term in item.lower() for term in terms)],
        }
    )
