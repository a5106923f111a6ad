import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from app.agents.analyzer import run_analyzer
from app.agents.monitor import run_light_monitor, run_monitor
from app.agents.photo import run_photo_analysis
from app.agents.planner import run_planner
from app.agents.validator import strip_conflicting_items, validate_plan
from app.core.dispatcher import Route, dispatch
from app.core.health_twin import (
    HealthTwinProfile,
    ProfileUpdates,
    add_session_summary,
    apply_profile_updates,
    detect_topics,
    format_health_twin_for_prompt,
)
from app.core.safety import (
    detect_prompt_injection,
    detect_urgent_flags,
    safety_notices,
    sanitize_feedback_input,
    sanitize_message_input,
)
from app.core.scoring import energy_note, followup_assessment, stabilize_energy_score
from app.core.stage_results import (
    AnalyzerResult,
    ChatMessage,
    MonitorResult,
    PhotoAnalysisResult,
    PlanRecommendation,
    Stage,
    StageFailure,
    StageOutcome,
    TurnCancelled,
    ValidationResult,
)
from app.services.integrations import NutritionLookup, WearableProvider, WearableSnapshot, apply_user_stated_values
from app.services.llm import CompletionClient
from app.services.profile_memory import ProfileMemoryStore
from app.services.session_memory import BackgroundWriter, SessionMemoryStore
from app.services.stores import SqlTurnAuditStore

logger = logging.getLogger("uvicorn.error")

VALIDATOR_MAX_REVISIONS = int(os.getenv("VALIDATOR_MAX_REVISIONS", "1"))
KEY_FINDING_MAX_CHARS = 160
USER_FACT_MARKERS = ("allerg", "prefer")
STAGE_FAILURE_REPLY = (
    "Sorry, I couldn't finish putting your answer together just now. "
    "Please try again in a moment."
)

ROUTE_STAGES: dict[Route, tuple[Stage, ...]] = {
    Route.full: (Stage.analyzer, Stage.planner, Stage.validator, Stage.monitor),
    Route.followup: (Stage.planner, Stage.validator, Stage.monitor),
    Route.quick: (Stage.light_monitor,),
    Route.greeting: (Stage.light_monitor,),
    Route.photo: (Stage.photo,),
}
PLAN_ROUTES = {Route.full, Route.followup}


@dataclass(frozen=True)
class TurnInput:
    session_id: str
    user_id: str
    message: str
    feedback: Optional[str] = None
    user_context: Optional[str] = None
    image_bytes: Optional[bytes] = None
    image_mime_type: Optional[str] = None


class DispatchInfo(BaseModel):
    confidence: float
    reasoning: str


class ValidationSummary(BaseModel):
    approved: bool
    conflicts: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    reasoning: str = ""
    tier: str = "skipped"
    revisions: int = 0


class TurnResult(BaseModel):
    session_id: str
    route: Route
    dispatch: DispatchInfo
    reply: str
    tone: str = ""
    timing: dict[str, int] = Field(default_factory=dict)
    validation: Optional[ValidationSummary] = None
    analyzer: Optional[AnalyzerResult] = None
    plan: Optional[PlanRecommendation] = None
    monitor: Optional[MonitorResult] = None
    photo: Optional[PhotoAnalysisResult] = None
    profile_updates: Optional[ProfileUpdates] = None
    wearable: Optional[WearableSnapshot] = None
    memory_size: int = 0
    safety_flags: list[str] = Field(default_factory=list)
    fallback_stages: list[str] = Field(default_factory=list)
    stage_error: Optional[str] = None


@dataclass
class _TurnState:
    turn: TurnInput
    message: str
    feedback: Optional[str]
    route: Route
    history: list[ChatMessage]
    notes: list[str]
    all_notes: list[str]
    user_facts: list[str]
    profile_text: str
    wearable: Optional[WearableSnapshot] = None
    nutrition_context: list[str] = field(default_factory=list)
    analyzer: Optional[AnalyzerResult] = None
    plan: Optional[PlanRecommendation] = None
    validation: Optional[ValidationResult] = None
    revisions: int = 0
    revision_ms: int = 0
    monitor: Optional[MonitorResult] = None
    photo: Optional[PhotoAnalysisResult] = None
    fallback_stages: list[str] = field(default_factory=list)


class AgentOrchestrator:
    def __init__(
        self,
        client: CompletionClient,
        memory: SessionMemoryStore,
        profiles: ProfileMemoryStore,
        wearables: Optional[WearableProvider] = None,
        nutrition: Optional[NutritionLookup] = None,
        writer: Optional[BackgroundWriter] = None,
        audit: Optional[SqlTurnAuditStore] = None,
        max_revisions: int = VALIDATOR_MAX_REVISIONS,
    ) -> None:
        self.client = client
        self.memory = memory
        self.profiles = profiles
        self.wearables = wearables or WearableProvider()
        self.nutrition = nutrition or NutritionLookup()
        self.writer = writer
        self.audit = audit
        self.max_revisions = max(0, max_revisions)
        self._handlers: dict[Stage, Callable[[_TurnState, Callable[[], bool]], None]] = {
            Stage.analyzer: self._run_analyzer,
            Stage.planner: self._run_planner,
            Stage.validator: self._run_validator,
            Stage.monitor: self._run_monitor,
            Stage.light_monitor: self._run_light_monitor,
            Stage.photo: self._run_photo,
        }

    def run_turn(self, turn: TurnInput, is_cancelled: Optional[Callable[[], bool]] = None) -> TurnResult:
        pipeline_start = time.perf_counter()
        cancelled = is_cancelled or (lambda: False)
        session_id = turn.session_id
        message = sanitize_message_input(turn.message)
        feedback = sanitize_feedback_input(turn.feedback) if turn.feedback else None
        safety_flags = detect_urgent_flags(message)
        injection = detect_prompt_injection(message)
        if injection:
            logger.warning("agent_prompt_injection session_id=%s kind=%s", session_id, injection)
            safety_flags.append(injection)

        history = self.memory.recent_messages(session_id)
        dispatch_start = time.perf_counter()
        decision = dispatch(
            message,
            has_image=turn.image_bytes is not None,
            conversation_length=len(history),
            prior_routes=self.memory.route_history(session_id),
            has_feedback=bool(feedback),
        )
        timing = {"dispatcher": _elapsed_ms(dispatch_start)}
        logger.info(
            "agent_dispatch session_id=%s route=%s confidence=%s reasoning=%s",
            session_id,
            decision.route.value,
            decision.confidence,
            decision.reasoning,
        )

        profile = self.profiles.load(turn.user_id)
        state = _TurnState(
            turn=turn,
            message=message,
            feedback=feedback,
            route=decision.route,
            history=history,
            notes=self.memory.adaptation_notes(session_id),
            all_notes=self.memory.all_adaptation_notes(session_id),
            user_facts=self.memory.user_facts(session_id),
            profile_text=format_health_twin_for_prompt(profile),
        )
        if decision.route in PLAN_ROUTES:
            self._collect_context(state, timing)

        stage_error: Optional[str] = None
        try:
            for stage in ROUTE_STAGES[decision.route]:
                if cancelled():
                    raise TurnCancelled(session_id, stage)
                stage_start = time.perf_counter()
                self._handlers[stage](state, cancelled)
                elapsed = _elapsed_ms(stage_start)
                if stage == Stage.validator and state.revision_ms:
                    # Revisions run inside the validator loop but are planner work.
                    timing[Stage.planner.value] = timing.get(Stage.planner.value, 0) + state.revision_ms
                    elapsed = max(0, elapsed - state.revision_ms)
                timing[stage.value] = timing.get(stage.value, 0) + elapsed
        except StageFailure as exc:
            logger.error(
                "agent_stage_failure session_id=%s route=%s stage=%s detail=%s",
                exc.session_id,
                decision.route.value,
                exc.stage.value,
                exc.detail,
            )
            stage_error = exc.stage.value
            safety_flags.append(_failure_flag(exc.status_code))

        if stage_error:
            reply, tone = STAGE_FAILURE_REPLY, "apologetic"
        else:
            reply, tone = self._compose_reply(state, safety_flags)
            self._remember_turn(state, reply)
        profile_updates = self._update_profile(state) if not stage_error else None

        timing["total"] = _elapsed_ms(pipeline_start)
        result = TurnResult(
            session_id=session_id,
            route=decision.route,
            dispatch=DispatchInfo(confidence=decision.confidence, reasoning=decision.reasoning),
            reply=reply,
            tone=tone,
            timing=timing,
            validation=_validation_summary(state),
            analyzer=state.analyzer,
            plan=state.plan,
            monitor=state.monitor,
            photo=state.photo,
            profile_updates=profile_updates,
            wearable=state.wearable,
            memory_size=self.memory.memory_size(session_id),
            safety_flags=safety_flags,
            fallback_stages=state.fallback_stages,
            stage_error=stage_error,
        )
        self._record_audit(turn, result, message)
        logger.info(
            "agent_turn_complete session_id=%s route=%s total_ms=%s stage_error=%s",
            session_id,
            decision.route.value,
            timing["total"],
            stage_error,
        )
        return result

    def _collect_context(self, state: _TurnState, timing: dict[str, int]) -> None:
        started = time.perf_counter()
        snapshot = self.wearables.snapshot(state.turn.session_id)
        state.wearable = apply_user_stated_values(snapshot, state.history, state.message)
        state.nutrition_context = self.nutrition.query(state.message)
        timing["context"] = _elapsed_ms(started)

    def _track(self, state: _TurnState, stage: Stage, outcome: StageOutcome[Any]) -> Any:
        if outcome.used_fallback:
            logger.warning("agent_stage_fallback session_id=%s stage=%s", state.turn.session_id, stage.value)
            state.fallback_stages.append(stage.value)
        return outcome.value

    def _run_analyzer(self, state: _TurnState, cancelled: Callable[[], bool]) -> None:
        outcome = run_analyzer(
            self.client,
            session_id=state.turn.session_id,
            message=state.message,
            wearable=state.wearable or self.wearables.snapshot(state.turn.session_id),
            history=state.history,
            adaptation_notes=state.notes,
            user_facts=state.user_facts,
            profile_text=state.profile_text,
            feedback=state.feedback,
            user_context=state.turn.user_context,
            is_cancelled=cancelled,
        )
        analyzer = self._track(state, Stage.analyzer, outcome)
        stabilized = stabilize_energy_score(analyzer.energy_score, state.all_notes, state.message)
        if stabilized != analyzer.energy_score:
            logger.info(
                "agent_energy_stabilized session_id=%s raw=%s stabilized=%s",
                state.turn.session_id,
                analyzer.energy_score,
                stabilized,
            )
            analyzer = analyzer.model_copy(update={"energy_score": stabilized})
        state.analyzer = analyzer

    def _plan(
        self, state: _TurnState, cancelled: Callable[[], bool], rejected: Optional[ValidationResult] = None
    ) -> PlanRecommendation:
        outcome = run_planner(
            self.client,
            session_id=state.turn.session_id,
            message=state.message,
            analyzer=state.analyzer,
            nutrition_context=state.nutrition_context,
            history=state.history,
            adaptation_notes=state.notes,
            user_facts=state.user_facts,
            profile_text=state.profile_text,
            feedback=state.feedback,
            user_context=state.turn.user_context,
            rejected=rejected,
            is_cancelled=cancelled,
        )
        return self._track(state, Stage.planner, outcome)

    def _run_planner(self, state: _TurnState, cancelled: Callable[[], bool]) -> None:
        if state.analyzer is None:
            state.analyzer = followup_assessment(self.memory.last_assessment(state.turn.session_id), state.all_notes)
        state.plan = self._plan(state, cancelled)

    def _validate(self, state: _TurnState, cancelled: Callable[[], bool]) -> ValidationResult:
        return validate_plan(
            self.client, state.plan, state.analyzer, state.profile_text, state.turn.session_id, cancelled
        )

    def _run_validator(self, state: _TurnState, cancelled: Callable[[], bool]) -> None:
        session_id = state.turn.session_id
        validation = self._validate(state, cancelled)
        while not validation.approved and state.revisions < self.max_revisions:
            if cancelled():
                raise TurnCancelled(session_id, Stage.planner)
            state.revisions += 1
            logger.info(
                "agent_plan_revision session_id=%s revision=%s conflicts=%s",
                session_id,
                state.revisions,
                len(validation.conflicts),
            )
            revision_start = time.perf_counter()
            state.plan = self._plan(state, cancelled, rejected=validation)
            state.revision_ms += _elapsed_ms(revision_start)
            validation = self._validate(state, cancelled)
        if not validation.approved:
            state.plan = strip_conflicting_items(state.plan, validation.conflicts)
        state.validation = validation

    def _run_monitor(self, state: _TurnState, cancelled: Callable[[], bool]) -> None:
        outcome = run_monitor(
            self.client,
            session_id=state.turn.session_id,
            message=state.message,
            analyzer=state.analyzer,
            plan=state.plan,
            history=state.history,
            profile_text=state.profile_text,
            feedback=state.feedback,
            user_context=state.turn.user_context,
            is_cancelled=cancelled,
        )
        state.monitor = self._track(state, Stage.monitor, outcome)

    def _run_light_monitor(self, state: _TurnState, cancelled: Callable[[], bool]) -> None:
        outcome = run_light_monitor(
            self.client,
            session_id=state.turn.session_id,
            message=state.message,
            history=state.history,
            profile_text=state.profile_text,
            is_cancelled=cancelled,
        )
        state.monitor = self._track(state, Stage.light_monitor, outcome)

    def _run_photo(self, state: _TurnState, cancelled: Callable[[], bool]) -> None:
        turn = state.turn
        outcome = run_photo_analysis(
            self.client,
            session_id=turn.session_id,
            message=state.message,
            image_bytes=turn.image_bytes or b"",
            mime_type=turn.image_mime_type or "image/jpeg",
            profile_text=state.profile_text,
            user_context=turn.user_context,
            is_cancelled=cancelled,
        )
        state.photo = self._track(state, Stage.photo, outcome)

    def _compose_reply(self, state: _TurnState, safety_flags: list[str]) -> tuple[str, str]:
        if state.photo is not None:
            parts, tone = [state.photo.reply, state.photo.feedback_prompt], state.photo.tone
        elif state.monitor is not None:
            parts, tone = [state.monitor.reply, state.monitor.feedback_prompt], state.monitor.tone
        else:
            parts, tone = [STAGE_FAILURE_REPLY], "apologetic"
        parts = safety_notices(safety_flags) + parts
        return "\n\n".join(part for part in parts if part), tone

    def _remember_turn(self, state: _TurnState, reply: str) -> None:
        session_id = state.turn.session_id
        self.memory.add_message(session_id, ChatMessage(role="user", content=state.message or "[photo]"))
        self.memory.add_message(session_id, ChatMessage(role="assistant", content=reply, agent="monitor"))
        self.memory.record_route(session_id, state.route.value)
        if state.feedback:
            self.memory.add_adaptation_note(session_id, f"User feedback on last plan: {state.feedback}")
        monitor = state.monitor
        if monitor is not None and monitor.adaptation_note:
            self.memory.add_adaptation_note(session_id, monitor.adaptation_note)
            lowered = monitor.adaptation_note.lower()
            if any(marker in lowered for marker in USER_FACT_MARKERS):
                self.memory.add_user_fact(session_id, monitor.adaptation_note)
        if state.route in PLAN_ROUTES and state.analyzer is not None:
            self.memory.add_adaptation_note(session_id, energy_note(state.analyzer.energy_score))
            if state.route == Route.full:
                self.memory.set_last_assessment(session_id, state.analyzer)

    def _update_profile(self, state: _TurnState) -> Optional[ProfileUpdates]:
        updates = state.monitor.profile_updates if state.monitor is not None else ProfileUpdates()
        summarize = state.route in PLAN_ROUTES and state.analyzer is not None
        if updates.is_empty() and not summarize:
            return None
        analyzer = state.analyzer
        wearable = state.wearable

        # Applied to the live cached profile, not the copy loaded at turn start.
        def change(profile: HealthTwinProfile) -> HealthTwinProfile:
            if not updates.is_empty():
                profile = apply_profile_updates(profile, updates)
            if summarize:
                key_finding = (updates.session_note or analyzer.summary or "").strip()[:KEY_FINDING_MAX_CHARS]
                profile = add_session_summary(
                    profile,
                    energy_score=analyzer.energy_score,
                    topics=detect_topics(state.message),
                    key_finding=key_finding,
                    sleep_hours=wearable.sleep_hours if wearable else None,
                    daily_steps=wearable.steps if wearable else None,
                )
            return profile

        self.profiles.update(state.turn.user_id, change)
        return updates if not updates.is_empty() else None

    def _record_audit(self, turn: TurnInput, result: TurnResult, message: str) -> None:
        if self.audit is None:
            return
        audit = self.audit
        validation = result.validation.model_dump() if result.validation else None
        self._submit(
            ("turn", uuid4().hex),
            lambda: audit.record(
                session_id=turn.session_id,
                user_id=turn.user_id,
                route=result.route.value,
                message=message,
                reply=result.reply,
                safety_flags=result.safety_flags,
                timing=result.timing,
                validation=validation,
                stage_error=result.stage_error,
            ),
        )

    def _submit(self, key: tuple[str, str], write: Callable[[], Any]) -> None:
        if self.writer is None:
            write()
            return
        self.writer.submit(key, write)


def _failure_flag(status_code: Optional[int]) -> str:
    if status_code == 401:
        return "llm_auth_error"
    if status_code == 404:
        return "llm_model_not_found"
    if status_code == 429:
        return "llm_rate_limited"
    if status_code and status_code >= 500:
        return "llm_provider_error"
    return "llm_unavailable"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _validation_summary(state: _TurnState) -> Optional[ValidationSummary]:
    if state.validation is None:
        return None
    validation = state.validation
    return ValidationSummary(
        approved=validation.approved,
        conflicts=validation.conflicts,
        suggestions=validation.suggestions,
        reasoning=validation.reasoning,
        tier=validation.tier,
        revisions=state.revisions,
    )
