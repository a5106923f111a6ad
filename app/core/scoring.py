import re
from typing import Iterable, Optional

from app.core.stage_results import AnalyzerResult

PREVIOUS_ENERGY_NOTE = re.compile(r"Previous energy score:\s*(\d+)/100")
EMERGENCY_LANGUAGE = re.compile(
    r"(?:emergency|faint|unconscious|hospital|ambulance|chest\s*pain|can'?t\s*breathe|severe|collapsed|dizzy|blacking\s*out)",
    re.IGNORECASE,
)
WORSENING_LANGUAGE = re.compile(
    r"(?:worse|terrible|awful|horrible|can'?t\s*move|much\s*more\s*tired|significantly\s*worse|really\s*bad)",
    re.IGNORECASE,
)
IMPROVING_LANGUAGE = re.compile(
    r"(?:better|great|amazing|wonderful|much\s*better|recovered|well[\s-]*rested|energized|fantastic)",
    re.IGNORECASE,
)

EMERGENCY_FLOOR = 5
DEFAULT_FLOOR = 20
MAX_STEP = 15
MAX_STEP_REPORTED_CHANGE = 30
FOLLOWUP_DEFAULT_ENERGY = 65


def _clamp_score(value: float) -> int:
    return int(max(0, min(100, round(value))))


def previous_energy_score(notes: Iterable[str]) -> Optional[int]:
    previous = None
    for note in notes:
        match = PREVIOUS_ENERGY_NOTE.search(note)
        if match:
            previous = _clamp_score(int(match.group(1)))
    return previous


def energy_note(score: int) -> str:
    return f"Previous energy score: {score}/100, maintain consistency unless user reports significant change"


def stabilize_energy_score(raw_score: int, notes: Iterable[str], message: str) -> int:
    """Keep the energy score from swinging between turns unless the user reports a real change."""
    floor = EMERGENCY_FLOOR if EMERGENCY_LANGUAGE.search(message) else DEFAULT_FLOOR
    score = max(_clamp_score(raw_score), floor)

    previous = previous_energy_score(notes)
    if previous is None:
        return score
    max_drop = MAX_STEP_REPORTED_CHANGE if WORSENING_LANGUAGE.search(message) else MAX_STEP
    max_rise = MAX_STEP_REPORTED_CHANGE if IMPROVING_LANGUAGE.search(message) else MAX_STEP
    lower = max(previous - max_drop, floor)
    upper = min(previous + max_rise, 100)
    return max(lower, min(upper, score))


def followup_assessment(cached: Optional[AnalyzerResult], notes: Iterable[str]) -> AnalyzerResult:
    if cached is not None:
        return cached
    previous = previous_energy_score(notes)
    return AnalyzerResult(
        summary="Follow-up to previous conversation, using existing context.",
        energy_score=previous if previous is not None else FOLLOWUP_DEFAULT_ENERGY,
        key_signals=["Follow-up message"],
        risk_flags=[],
    )
