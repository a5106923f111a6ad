from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError

from app.agents.common import invoke_stage, join_prompt, safe_str
from app.core.health_twin import ProfileUpdates
from app.core.stage_results import AnalyzerResult, ChatMessage, MonitorResult, PlanRecommendation, Stage, StageOutcome
from app.services.llm import CompletionClient, parse_llm_json

DEFAULT_REPLY = (
    "It sounds like your body needs a recovery-first evening. I have prepared a lighter plan for tonight."
)
DEFAULT_TONE = "empathetic"
DEFAULT_FEEDBACK_PROMPT = "Would you like tomorrow's plan to be gentler, balanced, or more active?"
DEFAULT_ADAPTATION_NOTE = "Adjust plan intensity based on user preference next turn."

LIGHT_DEFAULT_REPLY = "Hey! Tell me how you're feeling today and I'll put together something that fits your day."
LIGHT_DEFAULT_TONE = "encouraging"

PREVIOUS_MESSAGE_PREVIEW_CHARS = 120


def default_monitor_result(light: bool = False) -> MonitorResult:
    if light:
        return MonitorResult(reply=LIGHT_DEFAULT_REPLY, tone=LIGHT_DEFAULT_TONE)
    return MonitorResult(
        reply=DEFAULT_REPLY,
        tone=DEFAULT_TONE,
        feedback_prompt=DEFAULT_FEEDBACK_PROMPT,
        adaptation_note=DEFAULT_ADAPTATION_NOTE,
    )


def parse_profile_updates(value: Any) -> ProfileUpdates:
    if not isinstance(value, dict):
        return ProfileUpdates()
    cleaned: dict[str, Any] = {}
    for key, item in value.items():
        if key == "sessionNote":
            if isinstance(item, str) and item.strip():
                cleaned[key] = item.strip()
        elif isinstance(item, list):
            cleaned[key] = [str(v).strip() for v in item if str(v).strip()]
    try:
        return ProfileUpdates.model_validate(cleaned)
    except ValidationError:
        return ProfileUpdates()


def parse_monitor_result(raw: str, light: bool = False) -> StageOutcome[MonitorResult]:
    default = default_monitor_result(light)
    try:
        parsed = parse_llm_json(raw)
    except ValueError:
        return StageOutcome(status="fallback", value=default, raw=raw)

    # Light replies may legitimately omit the note and question.
    result = MonitorResult(
        reply=safe_str(parsed.get("reply"), default.reply),
        tone=safe_str(parsed.get("tone"), default.tone),
        feedback_prompt=safe_str(parsed.get("feedbackPrompt"), default.feedback_prompt),
        adaptation_note=safe_str(parsed.get("adaptationNote"), default.adaptation_note),
        profile_updates=parse_profile_updates(parsed.get("profileUpdates")),
    )
    return StageOutcome(status="ok", value=result, raw=raw)


def build_monitor_prompt(
    *,
    message: str,
    analyzer: AnalyzerResult,
    plan: PlanRecommendation,
    history: Sequence[ChatMessage],
    profile_text: str = "",
    feedback: Optional[str] = None,
    user_context: Optional[str] = None,
) -> str:
    previous = [m.content[:PREVIOUS_MESSAGE_PREVIEW_CHARS] for m in history if m.role == "user"]
    return join_prompt(
        [
            f"Current user message: {message}",
            f"User feedback: {feedback}" if feedback else "",
            ("\nPREVIOUS MESSAGES FROM USER (reference these naturally):\n" + "\n".join(f'- "{p}"' for p in previous))
            if previous
            else "",
            f"\nAnalyzer summary: {analyzer.summary}",
            f"Energy score: {analyzer.energy_score}/100",
            f"Key signals: {', '.join(analyzer.key_signals)}",
            f"\nPlan summary: {plan.summary}",
            f"Diet highlights: {'; '.join(plan.diet[:2])}",
            f"Exercise: {'; '.join(plan.exercise[:2])}",
            f"Hydration: {plan.hydration}" if plan.hydration else "",
            f"Recovery: {plan.recovery}" if plan.recovery else "",
            f"\nRisk flags: {' | '.join(analyzer.risk_flags)}",
            f"\n{profile_text}" if profile_text else "",
            f"\nUser context:\n{user_context}" if user_context else "",
            "\nCompose a warm, natural response and end with one brief feedback question.",
        ]
    )


def build_light_monitor_prompt(*, message: str, history: Sequence[ChatMessage], profile_text: str = "") -> str:
    previous = [m.content[:PREVIOUS_MESSAGE_PREVIEW_CHARS] for m in history if m.role == "user"][-3:]
    return join_prompt(
        [
            f"Current user message: {message}",
            ("\nEarlier in this conversation the user said:\n" + "\n".join(f'- "{p}"' for p in previous))
            if previous
            else "",
            f"\n{profile_text}" if profile_text else "",
        ]
    )


def run_monitor(
    client: CompletionClient,
    *,
    session_id: str,
    message: str,
    analyzer: AnalyzerResult,
    plan: PlanRecommendation,
    history: Sequence[ChatMessage],
    profile_text: str = "",
    feedback: Optional[str] = None,
    user_context: Optional[str] = None,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> StageOutcome[MonitorResult]:
    prompt = build_monitor_prompt(
        message=message,
        analyzer=analyzer,
        plan=plan,
        history=history,
        profile_text=profile_text,
        feedback=feedback,
        user_context=user_context,
    )
    raw = invoke_stage(client, Stage.monitor, session_id, prompt, history, is_cancelled=is_cancelled)
    return parse_monitor_result(raw)


def run_light_monitor(
    client: CompletionClient,
    *,
    session_id: str,
    message: str,
    history: Sequence[ChatMessage],
    profile_text: str = "",
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> StageOutcome[MonitorResult]:
    prompt = build_light_monitor_prompt(message=message, history=history, profile_text=profile_text)
    raw = invoke_stage(client, Stage.light_monitor, session_id, prompt, history, is_cancelled=is_cancelled)
    return parse_monitor_result(raw, light=True)
