import logging
import os
import threading
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Hashable, Optional, Protocol

from app.core.stage_results import AnalyzerResult, ChatMessage
from app.services.stores import SessionSnapshot

logger = logging.getLogger("uvicorn.error")

MEMORY_WINDOW_MESSAGES = int(os.getenv("MEMORY_WINDOW_MESSAGES", "8"))
SESSION_MEMORY_TTL_SECONDS = int(os.getenv("SESSION_MEMORY_TTL_SECONDS", str(6 * 60 * 60)))
SESSION_SWEEP_INTERVAL_SECONDS = float(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "300"))
SESSION_MEMORY_SHARDS = int(os.getenv("SESSION_MEMORY_SHARDS", "16"))
PERSISTENCE_MAX_WORKERS = int(os.getenv("PERSISTENCE_MAX_WORKERS", "2"))
PERSISTENCE_MAX_PENDING = int(os.getenv("PERSISTENCE_MAX_PENDING", "256"))
MAX_ADAPTATION_NOTES = 10
MAX_USER_FACTS = 20
MAX_ROUTE_HISTORY = 10
DEFAULT_NOTES_LIMIT = 3


class DurableSessionStore(Protocol):
    def get(self, session_id: str) -> Optional[SessionSnapshot]:
        ...

    def put(self, session_id: str, snapshot: SessionSnapshot) -> bool:
        ...

    def update(self, session_id: str, field: str, value: Any) -> bool:
        ...


class BackgroundWriter:
    """Bounded worker pool for durable writes.

    Pending writes are coalesced per key, so only the newest write for a key runs. Writes for the
    same key never run concurrently. When ``max_pending`` distinct keys are waiting, new keys are
    dropped with a warning instead of queueing without bound.
    """

    def __init__(self, max_workers: int = PERSISTENCE_MAX_WORKERS, max_pending: int = PERSISTENCE_MAX_PENDING) -> None:
        self.max_pending = max_pending
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="persistence")
        self._cond = threading.Condition()
        self._pending: dict[Hashable, Callable[[], Any]] = {}
        self._running: set[Hashable] = set()
        self._closed = False
        self.dropped = 0

    def submit(self, key: Hashable, write: Callable[[], Any]) -> bool:
        with self._cond:
            if self._closed:
                return False
            if key in self._pending:
                self._pending[key] = write
                return True
            if len(self._pending) >= self.max_pending:
                self.dropped += 1
                logger.warning("persistence_write_dropped key=%s pending=%s", key, len(self._pending))
                return False
            self._pending[key] = write
            if key not in self._running:
                self._running.add(key)
                self._executor.submit(self._run, key)
        return True

    def _run(self, key: Hashable) -> None:
        while True:
            with self._cond:
                write = self._pending.pop(key, None)
                if write is None:
                    self._running.discard(key)
                    self._cond.notify_all()
                    return
            try:
                ok = write()
                if ok is False:
                    logger.warning("persistence_write_failed key=%s", key)
            except Exception:
                logger.exception("persistence_write_error key=%s", key)

    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def drain(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and not self._running, timeout=timeout)

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        drained = self.drain(timeout)
        with self._cond:
            self._closed = True
        if not drained:
            logger.warning("persistence_shutdown_incomplete pending=%s", self.pending_count())
        self._executor.shutdown(wait=drained)


@dataclass
class _SessionState:
    last_updated_at: float
    last_active_at: float = 0.0
    messages: list[ChatMessage] = field(default_factory=list)
    adaptation_notes: list[str] = field(default_factory=list)
    user_facts: list[str] = field(default_factory=list)
    route_history: list[str] = field(default_factory=list)
    last_assessment: Optional[AnalyzerResult] = None


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    sessions: dict[str, _SessionState] = field(default_factory=dict)
    # Session ids already looked up in the durable store, with the lookup time.
    looked_up: dict[str, float] = field(default_factory=dict)


class SessionMemoryStore:
    """In-process session memory, sharded by session id with one lock per shard.

    Tier 1 is authoritative. Every mutation is mirrored to the durable store through the
    background writer, and the durable store is read once to rehydrate a session that is not
    in memory yet.
    """

    def __init__(
        self,
        durable: Optional[DurableSessionStore] = None,
        writer: Optional[BackgroundWriter] = None,
        window_messages: int = MEMORY_WINDOW_MESSAGES,
        ttl_seconds: int = SESSION_MEMORY_TTL_SECONDS,
        shard_count: int = SESSION_MEMORY_SHARDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.durable = durable
        self.writer = writer
        self.max_messages = window_messages * 2
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._shards = [_Shard() for _ in range(max(1, shard_count))]

    def _shard(self, session_id: str) -> _Shard:
        return self._shards[zlib.crc32(session_id.encode("utf-8")) % len(self._shards)]

    def _rehydrate(self, session_id: str) -> None:
        """Look the session up in the durable store once, the first time this process touches it."""
        if self.durable is None:
            return
        shard = self._shard(session_id)
        with shard.lock:
            if session_id in shard.sessions or session_id in shard.looked_up:
                return
        snapshot = self.durable.get(session_id)
        now = self._clock()
        state = self._state_from_snapshot(snapshot, now)
        with shard.lock:
            shard.looked_up[session_id] = now
            if state is None:
                return
            # Live state written meanwhile wins over the durable copy.
            shard.sessions.setdefault(session_id, state)
        logger.info("session_rehydrated session_id=%s messages=%s", session_id, len(state.messages))

    def _state_from_snapshot(self, snapshot: Optional[SessionSnapshot], now: float) -> Optional[_SessionState]:
        if snapshot is None:
            return None
        updated_at = snapshot.last_updated_at.timestamp()
        if now - updated_at > self.ttl_seconds:
            return None
        return _SessionState(
            last_updated_at=updated_at,
            last_active_at=now,
            messages=list(snapshot.messages)[-self.max_messages :],
            adaptation_notes=list(snapshot.adaptation_notes)[-MAX_ADAPTATION_NOTES:],
            user_facts=list(snapshot.user_facts)[-MAX_USER_FACTS:],
            route_history=list(snapshot.route_history)[-MAX_ROUTE_HISTORY:],
            last_assessment=snapshot.last_assessment,
        )

    def _mutate(self, session_id: str, field_name: str, change: Callable[[_SessionState], Any]) -> None:
        self._rehydrate(session_id)
        shard = self._shard(session_id)
        now = self._clock()
        with shard.lock:
            state = shard.sessions.get(session_id)
            if state is None:
                state = _SessionState(last_updated_at=now)
                shard.sessions[session_id] = state
            change(state)
            state.last_updated_at = now
            state.last_active_at = now
            value = _field_value(state, field_name)
        self._persist_field(session_id, field_name, value)

    def _persist_field(self, session_id: str, field_name: str, value: Any) -> None:
        if self.durable is None or self.writer is None:
            return
        durable = self.durable
        self.writer.submit((session_id, field_name), lambda: durable.update(session_id, field_name, value))

    def _read(self, session_id: str, reader: Callable[[_SessionState], Any], default: Any) -> Any:
        self._rehydrate(session_id)
        shard = self._shard(session_id)
        with shard.lock:
            state = shard.sessions.get(session_id)
            if state is None:
                return default
            # A turn reading its session keeps it alive until the turn writes.
            state.last_active_at = self._clock()
            return reader(state)

    def add_message(self, session_id: str, message: ChatMessage) -> None:
        def change(state: _SessionState) -> None:
            state.messages.append(message)
            del state.messages[: max(0, len(state.messages) - self.max_messages)]

        self._mutate(session_id, "messages", change)

    def add_adaptation_note(self, session_id: str, note: str) -> None:
        note = (note or "").strip()
        if not note:
            return

        def change(state: _SessionState) -> None:
            state.adaptation_notes.append(note)
            del state.adaptation_notes[: max(0, len(state.adaptation_notes) - MAX_ADAPTATION_NOTES)]

        self._mutate(session_id, "adaptation_notes", change)

    def add_user_fact(self, session_id: str, fact: str) -> None:
        fact = (fact or "").strip()
        if not fact:
            return

        def change(state: _SessionState) -> None:
            if fact in state.user_facts:
                return
            state.user_facts.append(fact)
            del state.user_facts[: max(0, len(state.user_facts) - MAX_USER_FACTS)]

        self._mutate(session_id, "user_facts", change)

    def record_route(self, session_id: str, route: str) -> None:
        def change(state: _SessionState) -> None:
            state.route_history.append(route)
            del state.route_history[: max(0, len(state.route_history) - MAX_ROUTE_HISTORY)]

        self._mutate(session_id, "route_history", change)

    def set_last_assessment(self, session_id: str, assessment: AnalyzerResult) -> None:
        def change(state: _SessionState) -> None:
            state.last_assessment = assessment

        self._mutate(session_id, "last_assessment", change)

    def recent_messages(self, session_id: str) -> list[ChatMessage]:
        return self._read(session_id, lambda state: list(state.messages), [])

    def adaptation_notes(self, session_id: str, limit: int = DEFAULT_NOTES_LIMIT) -> list[str]:
        return self._read(session_id, lambda state: state.adaptation_notes[-limit:] if limit else [], [])

    def all_adaptation_notes(self, session_id: str) -> list[str]:
        return self._read(session_id, lambda state: list(state.adaptation_notes), [])

    def user_facts(self, session_id: str) -> list[str]:
        return self._read(session_id, lambda state: list(state.user_facts), [])

    def route_history(self, session_id: str) -> list[str]:
        return self._read(session_id, lambda state: list(state.route_history), [])

    def last_assessment(self, session_id: str) -> Optional[AnalyzerResult]:
        return self._read(session_id, lambda state: state.last_assessment, None)

    def memory_size(self, session_id: str) -> int:
        return self._read(session_id, lambda state: len(state.messages), 0)

    def snapshot(self, session_id: str) -> Optional[SessionSnapshot]:
        return self._read(session_id, _to_snapshot, None)

    def flush(self, session_id: str) -> bool:
        """Synchronously write the full session to the durable store."""
        snapshot = self.snapshot(session_id)
        if snapshot is None or self.durable is None:
            return False
        return self.durable.put(session_id, snapshot)

    def sweep_expired(self, now: Optional[float] = None) -> int:
        cutoff = (self._clock() if now is None else now) - self.ttl_seconds
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [sid for sid, state in shard.sessions.items() if state.last_active_at < cutoff]
                for sid in expired:
                    del shard.sessions[sid]
                for sid in [sid for sid, looked_up_at in shard.looked_up.items() if looked_up_at < cutoff]:
                    del shard.looked_up[sid]
                removed += len(expired)
        return removed

    def session_count(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.sessions)
        return total

    def reset(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.sessions.clear()
                shard.looked_up.clear()


def _field_value(state: _SessionState, field_name: str) -> Any:
    if field_name == "messages":
        return [message.model_dump(mode="json") for message in state.messages]
    if field_name == "last_assessment":
        return state.last_assessment.model_dump(mode="json") if state.last_assessment else None
    return list(getattr(state, field_name))


def _to_snapshot(state: _SessionState) -> SessionSnapshot:
    return SessionSnapshot(
        messages=list(state.messages),
        adaptation_notes=list(state.adaptation_notes),
        user_facts=list(state.user_facts),
        route_history=list(state.route_history),
        last_assessment=state.last_assessment,
        last_updated_at=datetime.fromtimestamp(state.last_updated_at, tz=timezone.utc),
    )


class Sweepable(Protocol):
    def sweep_expired(self, now: Optional[float] = None) -> int:
        ...


class SessionSweeper:
    def __init__(self, *stores: Sweepable, interval_seconds: float = SESSION_SWEEP_INTERVAL_SECONDS) -> None:
        self.stores = stores
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="session-sweeper", daemon=True)
        self._thread.start()

    def sweep_once(self) -> int:
        total = 0
        for store in self.stores:
            try:
                removed = store.sweep_expired()
            except Exception:
                logger.exception("session_sweep_error store=%s", type(store).__name__)
                continue
            if removed:
                logger.info("session_sweep store=%s removed=%s", type(store).__name__, removed)
            total += removed
        return total

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.sweep_once()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
