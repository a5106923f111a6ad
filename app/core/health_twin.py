import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PROFILE_VERSION = 1
MAX_LIST_ITEMS = 30
MAX_SESSION_SUMMARIES = 20
PROMPT_RECENT_SESSIONS = 5
PROFILE_PROMPT_HEADER = "HEALTH TWIN PROFILE (what you know about this user from past conversations):"

TOPIC_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("fatigue", re.compile(r"tired|exhausted|fatigue|sleepy|drained|low energy|no energy")),
    ("stress", re.compile(r"stress|anxious|overwhelm|nervous|tense")),
    ("pain", re.compile(r"sore|pain|hurt|ache|injury")),
    ("motivation", re.compile(r"motivat|lazy|bored")),
    ("nutrition", re.compile(r"weight|diet|eat|food|calories|meal")),
    ("sleep", re.compile(r"sleep|insomnia|\brest\b")),
    ("exercise", re.compile(r"\brun|workout|gym|exercise|training")),
    ("headache", re.compile(r"headache|migrain")),
    ("positive", re.compile(r"happy|great|good|awesome|fantastic|amazing|full of energy")),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Preferences(_CamelModel):
    food_likes: list[str] = Field(default_factory=list)
    food_dislikes: list[str] = Field(default_factory=list)
    exercise_likes: list[str] = Field(default_factory=list)
    exercise_dislikes: list[str] = Field(default_factory=list)


class SessionSummary(_CamelModel):
    date: datetime
    topics: list[str] = Field(default_factory=list)
    energy_score: int = 70
    key_finding: str = ""


class Averages(_CamelModel):
    energy_score: Optional[int] = None
    sleep_hours: Optional[float] = None
    daily_steps: Optional[int] = None
    sessions_count: int = 0


class HealthTwinProfile(_CamelModel):
    version: int = PROFILE_VERSION
    created_at: datetime = Field(default_factory=_utcnow)
    last_updated_at: datetime = Field(default_factory=_utcnow)
    conditions: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    preferences: Preferences = Field(default_factory=Preferences)
    patterns: list[str] = Field(default_factory=list)
    lifestyle: list[str] = Field(default_factory=list)
    session_summaries: list[SessionSummary] = Field(default_factory=list)
    averages: Averages = Field(default_factory=Averages)


class ProfileUpdates(_CamelModel):
    add_conditions: list[str] = Field(default_factory=list)
    add_allergies: list[str] = Field(default_factory=list)
    add_medications: list[str] = Field(default_factory=list)
    add_food_likes: list[str] = Field(default_factory=list)
    add_food_dislikes: list[str] = Field(default_factory=list)
    add_exercise_likes: list[str] = Field(default_factory=list)
    add_exercise_dislikes: list[str] = Field(default_factory=list)
    add_patterns: list[str] = Field(default_factory=list)
    add_lifestyle: list[str] = Field(default_factory=list)
    session_note: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(
            [
                self.add_conditions,
                self.add_allergies,
                self.add_medications,
                self.add_food_likes,
                self.add_food_dislikes,
                self.add_exercise_likes,
                self.add_exercise_dislikes,
                self.add_patterns,
                self.add_lifestyle,
                (self.session_note or "").strip(),
            ]
        )


def create_empty_profile() -> HealthTwinProfile:
    return HealthTwinProfile()


def add_unique(existing: list[str], new_items: Iterable[str], max_items: int = MAX_LIST_ITEMS) -> list[str]:
    """Append trimmed items not already present (case-insensitive) and keep the newest ``max_items``."""
    merged = list(existing)
    seen = {item.lower() for item in merged}
    for item in new_items:
        trimmed = str(item).strip()
        if trimmed and trimmed.lower() not in seen:
            merged.append(trimmed)
            seen.add(trimmed.lower())
    return merged[-max_items:]


def apply_profile_updates(profile: HealthTwinProfile, updates: ProfileUpdates) -> HealthTwinProfile:
    updated = profile.model_copy(deep=True)
    updated.conditions = add_unique(updated.conditions, updates.add_conditions)
    updated.allergies = add_unique(updated.allergies, updates.add_allergies)
    updated.medications = add_unique(updated.medications, updates.add_medications)
    prefs = updated.preferences
    prefs.food_likes = add_unique(prefs.food_likes, updates.add_food_likes)
    prefs.food_dislikes = add_unique(prefs.food_dislikes, updates.add_food_dislikes)
    prefs.exercise_likes = add_unique(prefs.exercise_likes, updates.add_exercise_likes)
    prefs.exercise_dislikes = add_unique(prefs.exercise_dislikes, updates.add_exercise_dislikes)
    updated.patterns = add_unique(updated.patterns, updates.add_patterns)
    updated.lifestyle = add_unique(updated.lifestyle, updates.add_lifestyle)
    updated.last_updated_at = _utcnow()
    return updated


def _running_mean(previous: Optional[float], count: int, value: float) -> float:
    base = value if previous is None else previous
    return (base * count + value) / (count + 1)


def add_session_summary(
    profile: HealthTwinProfile,
    energy_score: int,
    topics: list[str],
    key_finding: str,
    sleep_hours: Optional[float] = None,
    daily_steps: Optional[int] = None,
) -> HealthTwinProfile:
    updated = profile.model_copy(deep=True)
    updated.session_summaries.append(
        SessionSummary(date=_utcnow(), topics=list(topics), energy_score=energy_score, key_finding=key_finding)
    )
    updated.session_summaries = updated.session_summaries[-MAX_SESSION_SUMMARIES:]

    averages = updated.averages
    n = averages.sessions_count
    averages.energy_score = round(_running_mean(averages.energy_score, n, energy_score))
    if sleep_hours is not None:
        averages.sleep_hours = round(_running_mean(averages.sleep_hours, n, sleep_hours), 1)
    if daily_steps is not None:
        averages.daily_steps = round(_running_mean(averages.daily_steps, n, daily_steps))
    averages.sessions_count = n + 1
    updated.last_updated_at = _utcnow()
    return updated


def detect_topics(message: str) -> list[str]:
    lowered = (message or "").lower()
    topics = [name for name, pattern in TOPIC_PATTERNS if pattern.search(lowered)]
    # Negative topics win over a mixed positive reading.
    if "positive" in topics and len(topics) > 1:
        topics = [topic for topic in topics if topic != "positive"]
    return topics or ["general"]


def format_health_twin_for_prompt(profile: HealthTwinProfile) -> str:
    parts: list[str] = []
    if profile.conditions:
        parts.append(f"Health conditions: {', '.join(profile.conditions)}")
    if profile.allergies:
        parts.append(f"Allergies: {', '.join(profile.allergies)}")
    if profile.medications:
        parts.append(f"Medications/supplements: {', '.join(profile.medications)}")

    prefs = profile.preferences
    pref_parts: list[str] = []
    if prefs.food_likes:
        pref_parts.append(f"Likes: {', '.join(prefs.food_likes)}")
    if prefs.food_dislikes:
        pref_parts.append(f"Dislikes: {', '.join(prefs.food_dislikes)}")
    if prefs.exercise_likes:
        pref_parts.append(f"Enjoys: {', '.join(prefs.exercise_likes)}")
    if prefs.exercise_dislikes:
        pref_parts.append(f"Avoids: {', '.join(prefs.exercise_dislikes)}")
    if pref_parts:
        parts.append(f"Preferences: {'; '.join(pref_parts)}")

    if profile.patterns:
        parts.append(f"Known patterns: {'; '.join(profile.patterns)}")
    if profile.lifestyle:
        parts.append(f"Lifestyle: {'; '.join(profile.lifestyle)}")

    if profile.session_summaries:
        lines = [
            f"  {item.date.month}/{item.date.day}: {item.key_finding} (energy: {item.energy_score}/100)"
            for item in profile.session_summaries[-PROMPT_RECENT_SESSIONS:]
        ]
        parts.append("Recent sessions:\n" + "\n".join(lines))

    averages = profile.averages
    if averages.sessions_count > 1:
        avg_parts: list[str] = []
        if averages.energy_score is not None:
            avg_parts.append(f"energy {averages.energy_score}/100")
        if averages.sleep_hours is not None:
            avg_parts.append(f"sleep {averages.sleep_hours}h")
        if averages.daily_steps is not None:
            avg_parts.append(f"{averages.daily_steps} steps")
        if avg_parts:
            parts.append(f"Averages ({averages.sessions_count} sessions): {', '.join(avg_parts)}")

    if not parts:
        return ""
    return PROFILE_PROMPT_HEADER + "\n" + "\n".join(parts)
