import hashlib
import logging
import os
import re
from datetime import datetime, timezone
from typing import Literal, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field

from app.core.stage_results import ChatMessage

logger = logging.getLogger("uvicorn.error")

USDA_SEARCH_URL = "https://api.nal.usda.gov/fdc/v1/foods/search"
USDA_API_KEY = os.getenv("USDA_API_KEY", "DEMO_KEY")
NUTRITION_LOOKUP_ENABLED = os.getenv("NUTRITION_LOOKUP_ENABLED", "true").strip().lower() == "true"
NUTRITION_TIMEOUT_SECONDS = float(os.getenv("NUTRITION_TIMEOUT_SECONDS", "5"))

FALLBACK_NUTRITION_CONTEXT = [
    "Focus on balanced meals with protein + fiber in each meal.",
    "Prefer low-glycemic snacks in late afternoon to reduce energy crash.",
    "Hydration target: 2-2.5L water daily unless medically restricted.",
]

# USDA nutrient ids
NUTRIENT_ENERGY = 1008
NUTRIENT_PROTEIN = 1003
NUTRIENT_CARBS = 1005
NUTRIENT_FAT = 1004

FOOD_KEYWORDS = re.compile(
    r"\b(eat|ate|eaten|food|meal|breakfast|lunch|dinner|snack|chicken|salmon|rice|pasta|salad|egg|bread|pizza|"
    r"burger|sandwich|fruit|yogurt|milk|cheese|oats|banana|apple|coffee|tea|water|juice|protein|calories|kcal)",
    re.IGNORECASE,
)
QUERY_STOPWORDS = {
    "the", "and", "for", "with", "what", "should", "have", "had", "was", "just", "today", "yesterday",
    "feel", "feeling", "tired", "some", "ate", "eat", "eaten", "about", "this", "that", "very", "really",
}

SLEEP_STATED = re.compile(r"(?:slept|sleep|sleeping)\s+(?:only\s+)?(\d+(?:\.\d+)?)\s*(?:hours?|h\b)")
STEPS_STATED = re.compile(r"(\d{1,2}[,.]?\d{3})\s*steps")
DISTANCE_STATED = re.compile(r"walked\s+(\d+(?:\.\d+)?)\s*km")
PAIN_STATED = re.compile(r"(?:back|neck|knee|head|shoulder|muscle)\s*(?:hurts?|pain|ache|sore)")
CALORIES_STATED = re.compile(r"(\d{3,4})\s*(?:cal|kcal|calories)")


class WearableSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    steps: int
    average_heart_rate: int
    resting_heart_rate: int
    sleep_hours: float
    stress_level: Literal["low", "moderate", "high"]
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "mock"


def _seeded_int(seed: str, low: int, high: int) -> int:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    normalized = int.from_bytes(digest[:4], "big") % 10_000 / 10_000
    return int(normalized * (high - low + 1)) + low


class WearableProvider:
    """Deterministic stand-in for device integrations, seeded by session id."""

    def snapshot(self, session_id: str) -> WearableSnapshot:
        return WearableSnapshot(
            steps=_seeded_int(f"{session_id}-steps", 2400, 9800),
            average_heart_rate=_seeded_int(f"{session_id}-avg-hr", 74, 108),
            resting_heart_rate=_seeded_int(f"{session_id}-rest-hr", 56, 76),
            sleep_hours=float(_seeded_int(f"{session_id}-sleep", 5, 8)),
            stress_level=("low", "moderate", "high")[_seeded_int(f"{session_id}-stress", 0, 2)],
        )


def _user_text(history: Sequence[ChatMessage], message: str) -> str:
    return " ".join([m.content for m in history if m.role == "user"] + [message]).lower()


def apply_user_stated_values(
    snapshot: WearableSnapshot, history: Sequence[ChatMessage], message: str
) -> WearableSnapshot:
    text = _user_text(history, message)
    changes: dict[str, object] = {}
    sleep_match = SLEEP_STATED.search(text)
    if sleep_match:
        changes["sleep_hours"] = float(sleep_match.group(1))
    steps_match = STEPS_STATED.search(text)
    if steps_match:
        changes["steps"] = int(re.sub(r"[,.]", "", steps_match.group(1)))
    if not changes:
        return snapshot
    return snapshot.model_copy(update={**changes, "source": "user_stated"})


def user_stated_overrides(history: Sequence[ChatMessage], message: str) -> list[str]:
    text = _user_text(history, message)
    overrides: list[str] = []
    sleep_match = SLEEP_STATED.search(text)
    if sleep_match:
        overrides.append(f"Sleep: user stated {sleep_match.group(1)} hours; use this, not sensor data")
    steps_match = STEPS_STATED.search(text) or DISTANCE_STATED.search(text)
    if steps_match:
        overrides.append(f"Activity: user stated {steps_match.group(0)}; use this, not sensor data")
    if PAIN_STATED.search(text):
        overrides.append("Pain: user mentioned physical discomfort; factor into energy and exercise")
    calories_match = CALORIES_STATED.search(text)
    if calories_match:
        overrides.append(f"Nutrition: user mentioned {calories_match.group(0)} intake")
    return overrides


def format_wearable_for_prompt(snapshot: WearableSnapshot) -> str:
    source_note = "(estimated, not from real sensors)" if snapshot.source == "mock" else f"({snapshot.source})"
    return "\n".join(
        [
            f"Sensor data {source_note}:",
            f"  Steps today: {snapshot.steps}",
            f"  Average heart rate: {snapshot.average_heart_rate} bpm",
            f"  Resting heart rate: {snapshot.resting_heart_rate} bpm",
            f"  Sleep last night: {snapshot.sleep_hours}h",
            f"  Stress level: {snapshot.stress_level}",
        ]
    )


def extract_food_query(message: str) -> Optional[str]:
    if not FOOD_KEYWORDS.search(message or ""):
        return None
    words = re.findall(r"[a-z]+", message.lower())
    food_words = [word for word in words if len(word) >= 3 and word not in QUERY_STOPWORDS]
    if not food_words:
        return None
    return " ".join(food_words)[:100]


def _nutrient(nutrients: list[dict], nutrient_id: int) -> int:
    for item in nutrients:
        if item.get("nutrientId") == nutrient_id:
            return round(float(item.get("value") or 0))
    return 0


class NutritionLookup:
    def __init__(self, enabled: bool = NUTRITION_LOOKUP_ENABLED, api_key: str = USDA_API_KEY) -> None:
        self.enabled = enabled
        self.api_key = api_key

    def query(self, text: str) -> list[str]:
        food_query = extract_food_query(text)
        if not self.enabled or not food_query:
            return list(FALLBACK_NUTRITION_CONTEXT)
        try:
            response = httpx.get(
                USDA_SEARCH_URL,
                params={
                    "api_key": self.api_key,
                    "query": food_query,
                    "pageSize": 3,
                    "dataType": "Survey (FNDDS)",
                },
                timeout=NUTRITION_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            foods = (response.json() or {}).get("foods") or []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("nutrition_lookup_error query=%s detail=%s", food_query, str(exc)[:220])
            return list(FALLBACK_NUTRITION_CONTEXT)
        summary = []
        totals = [0, 0, 0, 0]
        for food in foods[:3]:
            nutrients = food.get("foodNutrients") or []
            values = [
                _nutrient(nutrients, NUTRIENT_ENERGY),
                _nutrient(nutrients, NUTRIENT_PROTEIN),
                _nutrient(nutrients, NUTRIENT_CARBS),
                _nutrient(nutrients, NUTRIENT_FAT),
            ]
            totals = [a + b for a, b in zip(totals, values)]
            serving = f"{round(food.get('servingSize') or 100)}{food.get('servingSizeUnit') or 'g'}"
            summary.append(
                f"{food.get('description') or 'Food item'} ({serving}): {values[0]} kcal | "
                f"P: {values[1]}g | C: {values[2]}g | F: {values[3]}g"
            )
        if not summary:
            return list(FALLBACK_NUTRITION_CONTEXT)
        if len(summary) > 1:
            summary.append(
                f"Total: {totals[0]} kcal | Protein: {totals[1]}g | Carbs: {totals[2]}g | Fat: {totals[3]}g"
            )
        logger.info("nutrition_lookup_done query=%s items=%s", food_query, len(summary))
        return summary
