import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.health_twin import HealthTwinProfile, create_empty_profile
from app.core.stage_results import AnalyzerResult, ChatMessage
from app.db.models import HealthTwinRecord, SessionRecord, TurnRecord
from app.db.session import SessionLocal, session_scope

logger = logging.getLogger("uvicorn.error")

SESSION_FIELD_COLUMNS = {
    "messages": "messages_json",
    "adaptation_notes": "adaptation_notes_json",
    "user_facts": "user_facts_json",
    "route_history": "route_history_json",
    "last_assessment": "last_assessment_json",
}
AUDIT_TEXT_MAX_CHARS = 1024


class SessionSnapshot(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    adaptation_notes: list[str] = Field(default_factory=list)
    user_facts: list[str] = Field(default_factory=list)
    route_history: list[str] = Field(default_factory=list)
    last_assessment: Optional[AnalyzerResult] = None
    last_updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SqlProfileStore:
    """Health Twin profiles, one JSON document per user. Reads never fail; writes report success."""

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def get(self, user_id: str) -> Optional[HealthTwinProfile]:
        """Stored profile, or None when there is none. Database errors propagate."""
        with session_scope(self._session_factory) as db:
            row = db.query(HealthTwinRecord).filter(HealthTwinRecord.user_id == user_id).first()
            raw = row.profile_json if row else None
        if raw is None:
            return None
        try:
            return HealthTwinProfile.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("profile_invalid user_id=%s detail=%s", user_id, str(exc)[:220])
            return None

    def load(self, user_id: str) -> HealthTwinProfile:
        try:
            profile = self.get(user_id)
        except SQLAlchemyError as exc:
            logger.warning("profile_load_error user_id=%s detail=%s", user_id, str(exc)[:220])
            return create_empty_profile()
        return profile or create_empty_profile()

    def save(self, user_id: str, profile: HealthTwinProfile) -> bool:
        payload = profile.model_dump_json(by_alias=True)
        try:
            with session_scope(self._session_factory) as db:
                row = db.query(HealthTwinRecord).filter(HealthTwinRecord.user_id == user_id).first()
                if row:
                    row.profile_json = payload
                    row.updated_at = datetime.utcnow()
                else:
                    db.add(HealthTwinRecord(user_id=user_id, profile_json=payload))
            return True
        except SQLAlchemyError as exc:
            logger.warning("profile_save_error user_id=%s detail=%s", user_id, str(exc)[:220])
            return False


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


class SqlSessionStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def get(self, session_id: str) -> Optional[SessionSnapshot]:
        try:
            with session_scope(self._session_factory) as db:
                row = db.query(SessionRecord).filter(SessionRecord.session_id == session_id).first()
                if not row:
                    return None
                return SessionSnapshot(
                    messages=_loads(row.messages_json, []),
                    adaptation_notes=_loads(row.adaptation_notes_json, []),
                    user_facts=_loads(row.user_facts_json, []),
                    route_history=_loads(row.route_history_json, []),
                    last_assessment=_loads(row.last_assessment_json, None),
                    last_updated_at=row.updated_at.replace(tzinfo=timezone.utc),
                )
        except (SQLAlchemyError, ValidationError) as exc:
            logger.warning("session_store_get_error session_id=%s detail=%s", session_id, str(exc)[:220])
            return None

    def put(self, session_id: str, snapshot: SessionSnapshot) -> bool:
        data = snapshot.model_dump(mode="json")
        return self._write(session_id, {field: data[field] for field in SESSION_FIELD_COLUMNS})

    def update(self, session_id: str, field: str, value: Any) -> bool:
        if field not in SESSION_FIELD_COLUMNS:
            raise ValueError(f"Unknown session field: {field}")
        return self._write(session_id, {field: value})

    def _write(self, session_id: str, fields: dict[str, Any]) -> bool:
        try:
            with session_scope(self._session_factory) as db:
                row = db.query(SessionRecord).filter(SessionRecord.session_id == session_id).first()
                if not row:
                    row = SessionRecord(session_id=session_id)
                    db.add(row)
                for field, value in fields.items():
                    setattr(row, SESSION_FIELD_COLUMNS[field], None if value is None else json.dumps(value))
                row.updated_at = datetime.utcnow()
            return True
        except SQLAlchemyError as exc:
            logger.warning("session_store_write_error session_id=%s detail=%s", session_id, str(exc)[:220])
            return False


class SqlTurnAuditStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def record(
        self,
        *,
        session_id: str,
        user_id: str,
        route: str,
        message: str,
        reply: str,
        safety_flags: list[str],
        timing: dict[str, int],
        validation: Optional[dict[str, Any]],
        stage_error: Optional[str],
    ) -> bool:
        try:
            with session_scope(self._session_factory) as db:
                db.add(
                    TurnRecord(
                        session_id=session_id,
                        user_id=user_id,
                        route=route,
                        message=message[:AUDIT_TEXT_MAX_CHARS],
                        reply_summary=reply[:AUDIT_TEXT_MAX_CHARS],
                        safety_flags=",".join(safety_flags) if safety_flags else None,
                        timing_json=json.dumps(timing),
                        validation_json=json.dumps(validation) if validation is not None else None,
                        stage_error=stage_error,
                    )
                )
            return True
        except SQLAlchemyError as exc:
            logger.warning("turn_audit_error session_id=%s detail=%s", session_id, str(exc)[:220])
            return False
