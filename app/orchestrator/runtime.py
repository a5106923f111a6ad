import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from app.db.session import SessionLocal
from app.orchestrator.pipeline import AgentOrchestrator
from app.services.integrations import NutritionLookup, WearableProvider
from app.services.llm import CompletionClient
from app.services.profile_memory import ProfileMemoryStore
from app.services.session_memory import BackgroundWriter, SessionMemoryStore, SessionSweeper
from app.services.stores import SqlProfileStore, SqlSessionStore, SqlTurnAuditStore

logger = logging.getLogger("uvicorn.error")


@dataclass
class AgentRuntime:
    memory: SessionMemoryStore
    profiles: ProfileMemoryStore
    audit: SqlTurnAuditStore
    writer: BackgroundWriter
    wearables: WearableProvider
    nutrition: NutritionLookup
    sweeper: Optional[SessionSweeper] = None

    def orchestrator(self, client: CompletionClient) -> AgentOrchestrator:
        return AgentOrchestrator(
            client=client,
            memory=self.memory,
            profiles=self.profiles,
            wearables=self.wearables,
            nutrition=self.nutrition,
            writer=self.writer,
            audit=self.audit,
        )

    def start(self) -> None:
        if self.sweeper is None:
            self.sweeper = SessionSweeper(self.memory, self.profiles)
        self.sweeper.start()
        logger.info("agent_runtime_started")

    def stop(self) -> None:
        if self.sweeper is not None:
            self.sweeper.stop()
        self.writer.shutdown()
        flushed = self.profiles.flush_dirty()
        logger.info("agent_runtime_stopped dropped_writes=%s flushed_profiles=%s", self.writer.dropped, flushed)


def build_runtime(session_factory: sessionmaker = SessionLocal) -> AgentRuntime:
    writer = BackgroundWriter()
    return AgentRuntime(
        memory=SessionMemoryStore(durable=SqlSessionStore(session_factory), writer=writer),
        profiles=ProfileMemoryStore(SqlProfileStore(session_factory), writer=writer),
        audit=SqlTurnAuditStore(session_factory),
        writer=writer,
        wearables=WearableProvider(),
        nutrition=NutritionLookup(),
    )
