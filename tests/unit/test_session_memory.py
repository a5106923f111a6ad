import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.core.stage_results import AnalyzerResult, ChatMessage
from app.db.session import SessionLocal
from app.services.session_memory import BackgroundWriter, SessionMemoryStore, SessionSweeper
from app.services.stores import SessionSnapshot, SqlSessionStore


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingDurableStore:
    def __init__(self, snapshots: Optional[dict[str, SessionSnapshot]] = None) -> None:
        self.snapshots = snapshots or {}
        self.updates: list[tuple[str, str, Any]] = []
        self.puts: list[str] = []

    def get(self, session_id: str) -> Optional[SessionSnapshot]:
        return self.snapshots.get(session_id)

    def put(self, session_id: str, snapshot: SessionSnapshot) -> bool:
        self.puts.append(session_id)
        self.snapshots[session_id] = snapshot
        return True

    def update(self, session_id: str, field: str, value: Any) -> bool:
        self.updates.append((session_id, field, value))
        return True


def _message(index: int) -> ChatMessage:
    return ChatMessage(role="user" if index % 2 == 0 else "assistant", content=f"message {index}")


def test_message_window_keeps_two_n_messages() -> None:
    store = SessionMemoryStore(window_messages=3)
    for index in range(10):
        store.add_message("s1", _message(index))

    messages = store.recent_messages("s1")
    assert [m.content for m in messages] == [f"message {i}" for i in range(4, 10)]
    assert store.memory_size("s1") == 6


def test_notes_facts_and_routes() -> None:
    store = SessionMemoryStore()
    for index in range(5):
        store.add_adaptation_note("s1", f"note {index}")
    store.add_adaptation_note("s1", "   ")
    store.add_user_fact("s1", "Allergic to peanuts")
    store.add_user_fact("s1", "Allergic to peanuts")
    store.record_route("s1", "full")

    assert store.adaptation_notes("s1") == ["note 2", "note 3", "note 4"]
    assert len(store.all_adaptation_notes("s1")) == 5
    assert store.user_facts("s1") == ["Allergic to peanuts"]
    assert store.route_history("s1") == ["full"]


def test_unknown_session_reads_are_empty() -> None:
    store = SessionMemoryStore()
    assert store.recent_messages("missing") == []
    assert store.last_assessment("missing") is None
    assert store.snapshot("missing") is None
    assert store.session_count() == 0


def test_sweep_removes_only_idle_sessions() -> None:
    clock = FakeClock()
    store = SessionMemoryStore(ttl_seconds=60, clock=clock)
    store.add_message("old", _message(0))
    clock.now += 45
    store.add_message("fresh", _message(1))
    clock.now += 30

    removed = store.sweep_expired()

    assert removed == 1
    assert store.recent_messages("old") == []
    assert len(store.recent_messages("fresh")) == 1


def test_rehydrates_from_durable_store() -> None:
    clock = FakeClock(datetime.now(timezone.utc).timestamp())
    snapshot = SessionSnapshot(
        messages=[_message(0), _message(1)],
        adaptation_notes=["Prefers walks"],
        route_history=["full"],
        last_assessment=AnalyzerResult(summary="Tired", energy_score=44),
        last_updated_at=datetime.now(timezone.utc) - timedelta(minutes=5),
    )
    durable = RecordingDurableStore({"s1": snapshot})
    store = SessionMemoryStore(durable=durable, clock=clock)

    assert store.memory_size("s1") == 2
    assert store.route_history("s1") == ["full"]
    assert store.last_assessment("s1").energy_score == 44


def test_rehydrate_ignores_expired_snapshot() -> None:
    snapshot = SessionSnapshot(messages=[_message(0)], last_updated_at=datetime.now(timezone.utc) - timedelta(days=2))
    store = SessionMemoryStore(durable=RecordingDurableStore({"s1": snapshot}), ttl_seconds=3600)
    assert store.recent_messages("s1") == []


def test_rehydrate_never_overwrites_live_state() -> None:
    durable = RecordingDurableStore()
    store = SessionMemoryStore(durable=durable)
    store.add_message("s1", ChatMessage(role="user", content="live"))
    durable.snapshots["s1"] = SessionSnapshot(messages=[ChatMessage(role="user", content="stale")])

    assert [m.content for m in store.recent_messages("s1")] == ["live"]


def test_mutations_are_mirrored_through_writer() -> None:
    durable = RecordingDurableStore()
    writer = BackgroundWriter(max_workers=1)
    store = SessionMemoryStore(durable=durable, writer=writer)
    try:
        store.add_message("s1", _message(0))
        store.record_route("s1", "greeting")
        assert writer.drain(timeout=5)
    finally:
        writer.shutdown()

    fields = {field for _, field, _ in durable.updates}
    assert {"messages", "route_history"} <= fields
    routes = [value for _, field, value in durable.updates if field == "route_history"]
    assert routes[-1] == ["greeting"]


def test_flush_writes_full_snapshot() -> None:
    durable = RecordingDurableStore()
    store = SessionMemoryStore(durable=durable)
    assert store.flush("s1") is False
    store.add_message("s1", _message(0))

    assert store.flush("s1") is True
    assert durable.puts == ["s1"]
    assert durable.snapshots["s1"].messages[0].content == "message 0"


def test_background_writer_coalesces_pending_writes_per_key() -> None:
    writer = BackgroundWriter(max_workers=1)
    gate = threading.Event()
    results: list[str] = []
    try:
        writer.submit("blocker", lambda: gate.wait(5))
        writer.submit("k", lambda: results.append("first"))
        writer.submit("k", lambda: results.append("second"))
        writer.submit("k", lambda: results.append("third"))
        gate.set()
        assert writer.drain(timeout=5)
    finally:
        writer.shutdown()

    assert results == ["third"]


def test_background_writer_drops_when_full() -> None:
    writer = BackgroundWriter(max_workers=1, max_pending=2)
    gate = threading.Event()
    started = threading.Event()

    def blocker() -> None:
        started.set()
        gate.wait(5)

    try:
        writer.submit("blocker", blocker)
        assert started.wait(5)
        assert writer.submit("a", lambda: None) is True
        assert writer.submit("b", lambda: None) is True
        assert writer.submit("c", lambda: None) is False
        assert writer.dropped == 1
        gate.set()
        assert writer.drain(timeout=5)
    finally:
        writer.shutdown()


def test_sql_session_store_round_trip(test_db_path) -> None:
    durable = SqlSessionStore(SessionLocal)
    store = SessionMemoryStore(durable=durable)
    store.add_message("sql-session", _message(0))
    store.add_adaptation_note("sql-session", "Prefers evening walks")
    store.set_last_assessment("sql-session", AnalyzerResult(summary="Okay", energy_score=61))
    assert store.flush("sql-session")

    loaded = durable.get("sql-session")
    assert loaded is not None
    assert loaded.messages[0].content == "message 0"
    assert loaded.adaptation_notes == ["Prefers evening walks"]
    assert loaded.last_assessment.energy_score == 61

    assert durable.update("sql-session", "route_history", ["quick"])
    assert durable.get("sql-session").route_history == ["quick"]


def test_sql_session_store_rejects_unknown_field(test_db_path) -> None:
    durable = SqlSessionStore(SessionLocal)
    try:
        durable.update("sql-session", "secrets", [])
    except ValueError as exc:
        assert "Unknown session field" in str(exc)
    else:
        raise AssertionError("expected ValueError")


class CountingDurableStore(RecordingDurableStore):
    def __init__(self, snapshots: Optional[dict[str, SessionSnapshot]] = None) -> None:
        super().__init__(snapshots)
        self.gets: list[str] = []

    def get(self, session_id: str) -> Optional[SessionSnapshot]:
        self.gets.append(session_id)
        return super().get(session_id)


def test_cold_session_is_looked_up_once() -> None:
    durable = CountingDurableStore()
    store = SessionMemoryStore(durable=durable)

    assert store.recent_messages("s1") == []
    assert store.route_history("s1") == []
    assert store.adaptation_notes("s1") == []
    store.add_message("s1", _message(0))
    store.record_route("s1", "quick")
    assert store.memory_size("s1") == 1

    assert durable.gets == ["s1"]


def test_stored_session_is_looked_up_once() -> None:
    clock = FakeClock(datetime.now(timezone.utc).timestamp())
    durable = CountingDurableStore({"s1": SessionSnapshot(messages=[_message(0)])})
    store = SessionMemoryStore(durable=durable, clock=clock)

    for _ in range(5):
        assert store.memory_size("s1") == 1
    store.add_message("s1", _message(1))

    assert durable.gets == ["s1"]
    assert store.memory_size("s1") == 2


def test_swept_session_is_looked_up_again() -> None:
    clock = FakeClock()
    durable = CountingDurableStore()
    store = SessionMemoryStore(durable=durable, ttl_seconds=60, clock=clock)
    store.add_message("s1", _message(0))
    clock.now += 120
    assert store.sweep_expired() == 1

    store.recent_messages("s1")

    assert durable.gets == ["s1", "s1"]


def test_reads_keep_a_session_alive() -> None:
    clock = FakeClock()
    store = SessionMemoryStore(ttl_seconds=60, clock=clock)
    store.add_message("s1", _message(0))
    clock.now += 45
    assert store.memory_size("s1") == 1
    clock.now += 45

    assert store.sweep_expired() == 0
    assert store.memory_size("s1") == 1


def test_session_sweeper_sweeps_every_store() -> None:
    clock = FakeClock()
    sessions = SessionMemoryStore(ttl_seconds=60, clock=clock)
    other = SessionMemoryStore(ttl_seconds=60, clock=clock)
    sessions.add_message("a", _message(0))
    other.add_message("b", _message(0))
    clock.now += 120

    assert SessionSweeper(sessions, other).sweep_once() == 2
    assert sessions.session_count() == 0
    assert other.session_count() == 0
