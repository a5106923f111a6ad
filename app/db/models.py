from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

Base = declarative_base()


class HealthTwinRecord(Base):
    __tablename__ = "health_twins"
    __table_args__ = (UniqueConstraint("user_id", name="uq_health_twins_user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    profile_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SessionRecord(Base):
    __tablename__ = "session_memories"
    __table_args__ = (UniqueConstraint("session_id", name="uq_session_memories_session_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    messages_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    adaptation_notes_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    user_facts_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    route_history_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    last_assessment_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class TurnRecord(Base):
    __tablename__ = "turn_records"
    __table_args__ = (Index("ix_turn_records_session_created", "session_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    route: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(String(1024), nullable=False)
    reply_summary: Mapped[str] = mapped_column(String(1024), nullable=False)
    safety_flags: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    timing_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    validation_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stage_error: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
