from typing import Callable, Optional, Sequence

from app.agents.common import history_to_prompt, invoke_stage, join_prompt, safe_list, safe_str
from app.core.stage_results import AnalyzerResult, ChatMessage, Stage, StageOutcome
from app.services.integrations import WearableSnapshot, format_wearable_for_prompt, user_stated_overrides
from app.services.llm import CompletionClient, parse_llm_json

DEFAULT_ANALYZER_RESULT = AnalyzerResult(
    summary="User may be experiencing routine fatigue based on current activity and recovery signals.",
    energy_score=55,
    key_signals=["Lower perceived energy", "Heart rate and sleep suggest moderate recovery load"],
    risk_flags=["If fatigue persists, suggest clinical follow-up."],
)


def parse_analyzer_result(raw: str) -> StageOutcome[AnalyzerResult]:
    try:
        parsed = parse_llm_json(raw)
    except ValueError:
        return StageOutcome(status="fallback", value=DEFAULT_ANALYZER_RESULT, raw=raw)

    score = parsed.get("energyScore")
    if isinstance(score, (int, float)) and not isinstance(score, bool):
        energy_score = max(0, min(100, round(score)))
    else:
        energy_score = DEFAULT_ANALYZER_RESULT.energy_score
    result = AnalyzerResult(
        summary=safe_str(parsed.get("summary"), DEFAULT_ANALYZER_RESULT.summary),
        energy_score=energy_score,
        key_signals=safe_list(parsed.get("keySignals"), 5, DEFAULT_ANALYZER_RESULT.key_signals),
        risk_flags=safe_list(parsed.get("riskFlags"), 4, DEFAULT_ANALYZER_RESULT.risk_flags),
    )
    return StageOutcome(status="ok", value=result, raw=raw)


def build_analyzer_prompt(
    *,
    message: str,
    wearable: WearableSnapshot,
    history: Sequence[ChatMessage],
    adaptation_notes: Sequence[str],
    user_facts: Sequence[str],
    profile_text: str = "",
    feedback: Optional[str] = None,
    user_context: Optional[str] = None,
) -> str:
    overrides = user_stated_overrides(history, message)
    return join_prompt(
        [
            f"CONVERSATION HISTORY:\n{history_to_prompt(history)}" if history else "",
            f"\nCURRENT USER MESSAGE: {message}",
            f"User feedback on previous plan: {feedback}" if feedback else "",
            "\n" + format_wearable_for_prompt(wearable),
            ("\nUSER-STATED VALUES (override sensor data):\n- " + "\n- ".join(overrides)) if overrides else "",
            ("\nAdaptation notes:\n- " + "\n- ".join(adaptation_notes)) if adaptation_notes else "",
            ("\nKnown user facts:\n- " + "\n- ".join(user_facts)) if user_facts else "",
            f"\n{profile_text}" if profile_text else "",
            f"\nUser context:\n{user_context}" if user_context else "",
        ]
    )


def run_analyzer(
    client: CompletionClient,
    *,
    session_id: str,
    message: str,
    wearable: WearableSnapshot,
    history: Sequence[ChatMessage],
    adaptation_notes: Sequence[str],
    user_facts: Sequence[str],
    profile_text: str = "",
    feedback: Optional[str] = None,
    user_context: Optional[str] = None,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> StageOutcome[AnalyzerResult]:
    prompt = build_analyzer_prompt(
        message=message,
        wearable=wearable,
        history=history,
        adaptation_notes=adaptation_notes,
        user_facts=user_facts,
        profile_text=profile_text,
        feedback=feedback,
        user_context=user_context,
    )
    raw = invoke_stage(client, Stage.analyzer, session_id, prompt, history, is_cancelled=is_cancelled)
    return parse_analyzer_result(raw)
