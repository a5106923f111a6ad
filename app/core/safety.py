import re
from typing import Optional

URGENT_SYMPTOM_PATTERNS = [
    "chest pain",
    "pressure in chest",
    "shortness of breath",
    "can't breathe",
    "cant breathe",
    "faint",
    "fainting",
    "passed out",
    "collapsed",
    "stroke",
    "face droop",
    "slurred speech",
    "one side weak",
]

SELF_HARM_PATTERNS = [
    re.compile(r"suicid"),
    re.compile(r"\b(kill|harm)\s*(my ?self|yourself)\b"),
    re.compile(r"\bend (my life|it all)\b"),
    re.compile(r"\bwant to die\b"),
    re.compile(r"\bdon'?t want to (live|be alive)\b"),
    re.compile(r"\bself[- ]harm"),
]

DANGEROUS_ACTIVITY_PATTERNS = [
    re.compile(r"\b(huff|sniff|inhale)\w*\b.*\b(gas|spray|aerosol|glue|paint|fume)"),
    re.compile(r"\bdrink\w*\b.*\b(bleach|household cleaner|detergent|poison)"),
    re.compile(r"\beat\w*\b.*\b(tide pod|glue|batter(y|ies)|magnets?)\b"),
    re.compile(r"\binject\w*\b.*\b(air|bleach)\b"),
]

URGENT_FLAG = "urgent_symptom_language"
SELF_HARM_FLAG = "self_harm_language"
DANGEROUS_ACTIVITY_FLAG = "dangerous_activity"

MAX_MESSAGE_LENGTH = 600
MAX_FEEDBACK_LENGTH = 300

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_TAGS = re.compile(r"<[^>]+>")
_SCRIPT_URIS = re.compile(r"(javascript:|data:text/html)", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

PROMPT_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions"),
    re.compile(r"ignore\s+(all\s+)?above"),
    re.compile(r"disregard\s+(all\s+)?previous"),
    re.compile(r"you\s+are\s+now\s+(?:a|an|the)\b"),
    re.compile(r"new\s+system\s+prompt"),
    re.compile(r"override\s+(?:your|the)\s+(?:system|instructions|prompt)"),
    re.compile(r"forget\s+(?:all|your)\s+(?:previous|instructions|rules)"),
    re.compile(r"act\s+as\s+(?:a\s+)?(?:different|new)\s+(?:ai|assistant|bot)"),
    re.compile(r"\bsystem:\s"),
    re.compile(r"\bassistant:\s"),
    re.compile(r"\bdo not\s+follow\s+(?:your|the)\s+(?:instructions|rules|guidelines)"),
    re.compile(r"jailbreak"),
    re.compile(r"dan\s+mode"),
    re.compile(r"developer\s+mode\s+enabled"),
]
_INSTRUCTION_PHRASES = re.compile(r"\b(you must|you should|you will|always|never|important|rule|instruction)\b")


def detect_urgent_flags(message: str) -> list[str]:
    """Flags for language that needs a safety notice ahead of any coaching."""
    lowered = (message or "").lower()
    flags = []
    if any(pattern.search(lowered) for pattern in SELF_HARM_PATTERNS):
        flags.append(SELF_HARM_FLAG)
    if any(pattern.search(lowered) for pattern in DANGEROUS_ACTIVITY_PATTERNS):
        flags.append(DANGEROUS_ACTIVITY_FLAG)
    if any(pattern in lowered for pattern in URGENT_SYMPTOM_PATTERNS):
        flags.append(URGENT_FLAG)
    return flags


def urgent_care_notice() -> str:
    return (
        "Some of what you described could need urgent care. "
        "If symptoms are severe or getting worse, please contact emergency services or a clinician right away."
    )


def crisis_notice() -> str:
    return (
        "I'm really sorry you're going through this. You don't have to handle it alone. "
        "If you might act on thoughts of hurting yourself, please call your local emergency number now, "
        "or reach a crisis line (in the US, call or text 988). Talking to someone you trust can help too."
    )


def safety_notices(flags: list[str]) -> list[str]:
    notices = []
    if SELF_HARM_FLAG in flags:
        notices.append(crisis_notice())
    if URGENT_FLAG in flags or DANGEROUS_ACTIVITY_FLAG in flags:
        notices.append(urgent_care_notice())
    return notices


def sanitize_input(value: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    cleaned = _CONTROL_CHARS.sub(" ", value or "")
    cleaned = _TAGS.sub(" ", cleaned)
    cleaned = _SCRIPT_URIS.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:max_length]


def sanitize_message_input(value: str) -> str:
    return sanitize_input(value, MAX_MESSAGE_LENGTH)


def sanitize_feedback_input(value: str) -> str:
    return sanitize_input(value, MAX_FEEDBACK_LENGTH)


def detect_prompt_injection(message: str) -> Optional[str]:
    lowered = message.lower()
    if any(pattern.search(lowered) for pattern in PROMPT_INJECTION_PATTERNS):
        return "potential_injection"
    # Long messages stuffed with instruction-like phrasing.
    if len(message) > 500 and len(_INSTRUCTION_PHRASES.findall(lowered)) >= 5:
        return "suspicious_instructions"
    return None
