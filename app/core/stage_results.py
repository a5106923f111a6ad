from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Literal, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from app.core.health_twin import ProfileUpdates


class Stage(str, Enum):
    analyzer = "analyzer"
    planner = "planner"
    validator = "validator"
    monitor = "monitor"
    light_monitor = "light_monitor"
    photo = "photo"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class ChatMessage(_FrozenModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    role: Literal["user", "assistant", "system", "agent"]
    content: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    agent: Optional[str] = None


class AnalyzerResult(_FrozenModel):
    summary: str
    energy_score: int = Field(ge=0, le=100)
    key_signals: list[str] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)


class PlanRecommendation(_FrozenModel):
    summary: str
    diet: list[str] = Field(default_factory=list)
    exercise: list[str] = Field(default_factory=list)
    hydration: str = ""
    recovery: str = ""
    nutrition_context: list[str] = Field(default_factory=list)


class MonitorResult(_FrozenModel):
    reply: str
    tone: str
    feedback_prompt: str = ""
    adaptation_note: str = ""
    profile_updates: ProfileUpdates = Field(default_factory=ProfileUpdates)


class ValidationResult(_FrozenModel):
    approved: bool
    conflicts: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    reasoning: str = ""
    tier: Literal["skipped", "local", "deep", "passed"] = "skipped"


class PhotoAnalysisResult(_FrozenModel):
    summary: str
    foods: list[str] = Field(default_factory=list)
    estimated_calories: Optional[int] = None
    reply: str
    tone: str = "encouraging"
    feedback_prompt: str = ""


T = TypeVar("T")


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    """Tagged parse result: ``ok`` when the model output parsed, ``fallback`` when defaults were used."""

    status: Literal["ok", "fallback"]
    value: T
    raw: str = ""

    @property
    def used_fallback(self) -> bool:
        return self.status == "fallback"


class StageFailure(RuntimeError):
    def __init__(self, stage: Stage, session_id: str, detail: str, status_code: Optional[int] = None):
        super().__init__(f"stage {stage.value} failed for session {session_id}: {detail}")
        self.stage = stage
        self.session_id = session_id
        self.detail = detail
        self.status_code = status_code


class TurnCancelled(RuntimeError):
    def __init__(self, session_id: str, before_stage: Optional[Stage] = None):
        label = before_stage.value if before_stage else "completion"
        super().__init__(f"turn cancelled for session {session_id} at {label}")
        self.session_id = session_id
        self.before_stage = before_stage
