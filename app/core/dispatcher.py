import re
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from app.core.safety import DANGEROUS_ACTIVITY_FLAG, SELF_HARM_FLAG, detect_urgent_flags


class Route(str, Enum):
    greeting = "greeting"
    quick = "quick"
    followup = "followup"
    full = "full"
    photo = "photo"


@dataclass(frozen=True)
class DispatchDecision:
    route: Route
    confidence: float
    reasoning: str


GREETING = re.compile(
    r"^(h(i|ello|ey|owdy)|yo|hola|what'?s up|good (morning|afternoon|evening))[\s!?.]*$"
)
ACKNOWLEDGEMENT = re.compile(
    r"^(thanks?|thank you|ok(ay)?|got it|sure|cool|nice|great|good|perfect|understood)[\s!?.]*$"
)
HEALTH_KEYWORDS = re.compile(
    r"sleep|tired|eat|food|exercise|workout|stress|pain|calori|diet|weight|run|gym|walk"
)
FOLLOWUP_OPENERS = re.compile(r"^(yes|no|yeah|nah|that|this|the first|the second|option|which|and what about)")
FULL_PIPELINE = re.compile(
    r"feel|plan|program|routine|hurt|ache|suggest|recommend|analyze|what should i|give me a|create|make me|help me with"
)

SHORT_MESSAGE_CHARS = 15
FOLLOWUP_MAX_CHARS = 60
FOLLOWUP_MIN_HISTORY = 2
PLAN_ROUTES = {Route.full, Route.followup}


def _last_route_produced_plan(prior_routes: Sequence[str]) -> bool:
    if not prior_routes:
        return False
    last = prior_routes[-1]
    return last in {route.value for route in PLAN_ROUTES}


def dispatch(
    message: str,
    has_image: bool,
    conversation_length: int,
    prior_routes: Sequence[str] = (),
    has_feedback: bool = False,
) -> DispatchDecision:
    """Pick the route for a turn. Pure and total; ambiguous input falls through to ``full``."""
    if has_image:
        return DispatchDecision(Route.photo, 0.99, "Image attached")

    lowered = (message or "").lower().strip()
    flags = detect_urgent_flags(lowered)
    if SELF_HARM_FLAG in flags:
        return DispatchDecision(Route.full, 0.99, "Self-harm language")
    if DANGEROUS_ACTIVITY_FLAG in flags:
        return DispatchDecision(Route.full, 0.99, "Dangerous activity")
    if flags:
        return DispatchDecision(Route.full, 0.99, "Urgent symptom language")

    if GREETING.match(lowered):
        return DispatchDecision(Route.greeting, 0.95, "Simple greeting detected")
    if ACKNOWLEDGEMENT.match(lowered) and not has_feedback:
        return DispatchDecision(Route.quick, 0.95, "Quick acknowledgement")

    follows_plan = _last_route_produced_plan(prior_routes) and conversation_length >= FOLLOWUP_MIN_HISTORY
    if has_feedback and follows_plan:
        return DispatchDecision(Route.followup, 0.9, "Feedback on the previous plan")

    if follows_plan and FOLLOWUP_OPENERS.match(lowered) and len(lowered) < FOLLOWUP_MAX_CHARS:
        return DispatchDecision(Route.followup, 0.85, "Short follow-up to previous plan")

    if len(lowered) < SHORT_MESSAGE_CHARS and not HEALTH_KEYWORDS.search(lowered):
        return DispatchDecision(Route.quick, 0.8, "Short non-health message")

    if FULL_PIPELINE.search(lowered):
        return DispatchDecision(Route.full, 0.85, "Health/plan request detected")

    return DispatchDecision(Route.full, 0.5, "Ambiguous message, defaulting to full pipeline")
