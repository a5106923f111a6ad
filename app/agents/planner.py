from typing import Callable, Optional, Sequence

from app.agents.common import invoke_stage, join_prompt, safe_list, safe_str
from app.core.stage_results import AnalyzerResult, ChatMessage, PlanRecommendation, Stage, StageOutcome, ValidationResult
from app.services.llm import CompletionClient, parse_llm_json

DEFAULT_SUMMARY = "A light recovery-first plan balancing energy support and movement."
DEFAULT_DIET = [
    "Post-work meal: lean protein + whole grains + vegetables.",
    "Evening snack: Greek yogurt with berries or nuts.",
]
DEFAULT_EXERCISE = [
    "15-20 minute low-intensity walk after work.",
    "6 minutes of mobility and breathing before bed.",
]
DEFAULT_HYDRATION = "Spread water intake across afternoon and evening."
DEFAULT_RECOVERY = "Aim for consistent bedtime and 7+ hours sleep opportunity."
MAX_PLAN_ITEMS = 6


def default_plan(nutrition_context: Sequence[str]) -> PlanRecommendation:
    return PlanRecommendation(
        summary=DEFAULT_SUMMARY,
        diet=list(DEFAULT_DIET),
        exercise=list(DEFAULT_EXERCISE),
        hydration=DEFAULT_HYDRATION,
        recovery=DEFAULT_RECOVERY,
        nutrition_context=list(nutrition_context),
    )


def parse_plan_result(raw: str, nutrition_context: Sequence[str]) -> StageOutcome[PlanRecommendation]:
    try:
        parsed = parse_llm_json(raw)
    except ValueError:
        return StageOutcome(status="fallback", value=default_plan(nutrition_context), raw=raw)

    plan = PlanRecommendation(
        summary=safe_str(parsed.get("summary"), DEFAULT_SUMMARY),
        diet=safe_list(parsed.get("diet"), MAX_PLAN_ITEMS, list(DEFAULT_DIET)),
        exercise=safe_list(parsed.get("exercise"), MAX_PLAN_ITEMS, list(DEFAULT_EXERCISE)),
        hydration=safe_str(parsed.get("hydration"), DEFAULT_HYDRATION),
        recovery=safe_str(parsed.get("recovery"), DEFAULT_RECOVERY),
        nutrition_context=safe_list(parsed.get("nutritionContext"), MAX_PLAN_ITEMS, list(nutrition_context)),
    )
    return StageOutcome(status="ok", value=plan, raw=raw)


def revision_instruction(validation: ValidationResult) -> str:
    lines = [
        "CRITICAL: The Validator agent found these conflicts with the user's Health Twin profile. "
        "You MUST fix them in the revised plan:",
        *[f"- {conflict}" for conflict in validation.conflicts],
    ]
    if validation.suggestions:
        lines.append("Suggested replacements:")
        lines.extend(f"- {suggestion}" for suggestion in validation.suggestions)
    return "\n".join(lines)


def build_planner_prompt(
    *,
    message: str,
    analyzer: AnalyzerResult,
    nutrition_context: Sequence[str],
    adaptation_notes: Sequence[str],
    user_facts: Sequence[str],
    profile_text: str = "",
    feedback: Optional[str] = None,
    user_context: Optional[str] = None,
) -> str:
    return join_prompt(
        [
            f"User message: {message}",
            f"User feedback on previous plan: {feedback}" if feedback else "",
            f"\nAnalyzer assessment: {analyzer.model_dump_json()}",
            f"Energy score: {analyzer.energy_score}/100",
            f"\nNutrition context: {' | '.join(nutrition_context)}",
            ("\nAdaptation notes:\n- " + "\n- ".join(adaptation_notes)) if adaptation_notes else "",
            ("\nKnown user preferences/restrictions:\n- " + "\n- ".join(user_facts)) if user_facts else "",
            f"\n{profile_text}" if profile_text else "",
            f"\nUser context:\n{user_context}" if user_context else "",
        ]
    )


def run_planner(
    client: CompletionClient,
    *,
    session_id: str,
    message: str,
    analyzer: AnalyzerResult,
    nutrition_context: Sequence[str],
    history: Sequence[ChatMessage],
    adaptation_notes: Sequence[str],
    user_facts: Sequence[str],
    profile_text: str = "",
    feedback: Optional[str] = None,
    user_context: Optional[str] = None,
    rejected: Optional[ValidationResult] = None,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> StageOutcome[PlanRecommendation]:
    prompt = build_planner_prompt(
        message=message,
        analyzer=analyzer,
        nutrition_context=nutrition_context,
        adaptation_notes=adaptation_notes,
        user_facts=user_facts,
        profile_text=profile_text,
        feedback=feedback,
        user_context=user_context,
    )
    extra = revision_instruction(rejected) if rejected is not None else None
    raw = invoke_stage(
        client, Stage.planner, session_id, prompt, history, extra_instruction=extra, is_cancelled=is_cancelled
    )
    return parse_plan_result(raw, nutrition_context)
