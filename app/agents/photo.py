from typing import Callable, Optional

from app.agents.common import invoke_stage, join_prompt, safe_list, safe_str
from app.core.stage_results import PhotoAnalysisResult, Stage, StageOutcome
from app.services.llm import CompletionClient, parse_llm_json

DEFAULT_PHOTO_RESULT = PhotoAnalysisResult(
    summary="Could not analyze the photo in detail.",
    reply=(
        "I couldn't get a clear read on that photo. Could you tell me what's in it, "
        "or try another shot with better lighting?"
    ),
    tone="gentle",
    feedback_prompt="What did the meal include?",
)


def parse_photo_result(raw: str) -> StageOutcome[PhotoAnalysisResult]:
    try:
        parsed = parse_llm_json(raw)
    except ValueError:
        return StageOutcome(status="fallback", value=DEFAULT_PHOTO_RESULT, raw=raw)

    calories = parsed.get("estimatedCalories")
    if isinstance(calories, (int, float)) and not isinstance(calories, bool) and calories >= 0:
        estimated: Optional[int] = round(calories)
    else:
        estimated = None
    result = PhotoAnalysisResult(
        summary=safe_str(parsed.get("summary"), DEFAULT_PHOTO_RESULT.summary),
        foods=safe_list(parsed.get("foods"), 8, []),
        estimated_calories=estimated,
        reply=safe_str(parsed.get("reply"), DEFAULT_PHOTO_RESULT.reply),
        tone=safe_str(parsed.get("tone"), "encouraging"),
        feedback_prompt=safe_str(parsed.get("feedbackPrompt"), ""),
    )
    return StageOutcome(status="ok", value=result, raw=raw)


def run_photo_analysis(
    client: CompletionClient,
    *,
    session_id: str,
    message: str,
    image_bytes: bytes,
    mime_type: str,
    profile_text: str = "",
    user_context: Optional[str] = None,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> StageOutcome[PhotoAnalysisResult]:
    prompt = join_prompt(
        [
            f"User message: {message or 'Please analyze this photo.'}",
            f"\n{profile_text}" if profile_text else "",
            f"\nUser context:\n{user_context}" if user_context else "",
        ]
    )
    raw = invoke_stage(
        client, Stage.photo, session_id, prompt, image=(image_bytes, mime_type), is_cancelled=is_cancelled
    )
    return parse_photo_result(raw)
