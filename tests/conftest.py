import os
import re
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence
from uuid import uuid4

os.environ.setdefault("DB_PATH", str(Path(tempfile.gettempdir()) / "health_twin_test_default.db"))
os.environ["NUTRITION_LOOKUP_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from app.core.health_twin import HealthTwinProfile, ProfileUpdates, apply_profile_updates, create_empty_profile
from app.db.session import SessionLocal, configure_database, create_tables
from app.orchestrator.pipeline import AgentOrchestrator
from app.services.integrations import NutritionLookup, WearableProvider
from app.services.llm import CompletionCancelled, CompletionRequestError, get_completion_client
from app.services.profile_memory import ProfileMemoryStore
from app.services.session_memory import SessionMemoryStore
from app.services.stores import SqlProfileStore, SqlTurnAuditStore

AGENT_TITLE = re.compile(r"^Agent: (.+)$", re.MULTILINE)
STAGE_BY_TITLE = {
    "Analyzer": "analyzer",
    "Planner": "planner",
    "Plan Validator": "validator",
    "Monitor": "monitor",
    "Photo Analyst": "photo",
}
STAGE_FIXTURES = {
    "analyzer": "ANALYZER_TIRED.json",
    "planner": "PLANNER_OK.json",
    "validator": "VALIDATOR_APPROVED.json",
    "monitor": "MONITOR_OK.json",
    "light_monitor": "LIGHT_MONITOR_OK.json",
    "photo": "PHOTO_OK.json",
}
REVISION_MARKER = "CRITICAL: The Validator agent found these conflicts"


class FakeScenario(str, Enum):
    OK = "OK"
    ALLERGY_CONFLICT = "ALLERGY_CONFLICT"
    STUBBORN_CONFLICT = "STUBBORN_CONFLICT"
    MALFORMED_JSON = "MALFORMED_JSON"
    TIMEOUT = "TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"


class FakeCompletionClient:
    """Answers each stage from a canned fixture, keyed by the ``Agent:`` line of the system prompt."""

    def __init__(
        self,
        scenario: FakeScenario,
        fixture_dir: Path,
        fail_stage: Optional[str] = None,
        delays: Optional[Mapping[str, float]] = None,
    ) -> None:
        self.scenario = scenario
        self.fixture_dir = fixture_dir
        self.fail_stage = fail_stage
        self.delays = dict(delays or {})
        self.calls: list[dict[str, Any]] = []

    def stages_called(self) -> list[str]:
        return [call["stage"] for call in self.calls]

    def _stage(self, system_prompt: str) -> str:
        match = AGENT_TITLE.search(system_prompt)
        title = match.group(1).strip() if match else ""
        if title == "Monitor" and "small talk" in system_prompt:
            return "light_monitor"
        return STAGE_BY_TITLE.get(title, "unknown")

    def _fixture_name(self, stage: str, system_prompt: str) -> str:
        if stage == "planner":
            if self.scenario == FakeScenario.STUBBORN_CONFLICT:
                return "PLANNER_PEANUT.json"
            if self.scenario == FakeScenario.ALLERGY_CONFLICT and REVISION_MARKER not in system_prompt:
                return "PLANNER_PEANUT.json"
        return STAGE_FIXTURES[stage]

    def _wait(self, stage: str, is_cancelled: Optional[Callable[[], bool]]) -> None:
        deadline = time.monotonic() + self.delays.get(stage, 0.0)
        while time.monotonic() < deadline:
            if is_cancelled is not None and is_cancelled():
                raise CompletionCancelled("completion abandoned after cancellation")
            time.sleep(0.005)

    def _respond(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
        is_cancelled: Optional[Callable[[], bool]],
    ) -> str:
        stage = self._stage(system_prompt)
        self.calls.append(
            {
                "stage": stage,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "cancellable": is_cancelled is not None,
            }
        )
        self._wait(stage, is_cancelled)
        if self.fail_stage in {stage, "*"} or self.scenario == FakeScenario.PROVIDER_ERROR:
            raise CompletionRequestError("openai", "gpt-4.1-mini", "OpenAI error 503: upstream unavailable", 503)
        if self.scenario == FakeScenario.TIMEOUT:
            raise TimeoutError("simulated timeout")
        if self.scenario == FakeScenario.MALFORMED_JSON:
            return (self.fixture_dir / "MALFORMED_JSON.txt").read_text(encoding="utf-8")
        return (self.fixture_dir / self._fixture_name(stage, system_prompt)).read_text(encoding="utf-8")

    def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        history: Sequence[dict[str, str]] = (),
        max_tokens: int = 600,
        temperature: float = 0.3,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> str:
        _ = history
        return self._respond(system_prompt, user_prompt, max_tokens, temperature, is_cancelled)

    def invoke_with_image(
        self,
        system_prompt: str,
        user_prompt: str,
        image_bytes: bytes,
        mime_type: str,
        max_tokens: int = 700,
        temperature: float = 0.3,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> str:
        _ = (image_bytes, mime_type)
        return self._respond(system_prompt, user_prompt, max_tokens, temperature, is_cancelled)


@pytest.fixture(scope="session")
def fixture_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures" / "llm"


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "health_twin_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from app.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def user_id() -> str:
    return f"user_{uuid4().hex[:10]}"


@pytest.fixture
def session_id() -> str:
    return f"session_{uuid4().hex[:10]}"


@pytest.fixture
def fake_completion_factory(fixture_dir: Path) -> Callable[..., FakeCompletionClient]:
    def _factory(
        scenario: FakeScenario = FakeScenario.OK,
        fail_stage: Optional[str] = None,
        delays: Optional[Mapping[str, float]] = None,
    ) -> FakeCompletionClient:
        return FakeCompletionClient(scenario=scenario, fixture_dir=fixture_dir, fail_stage=fail_stage, delays=delays)

    return _factory


@pytest.fixture
def override_completion(app, fake_completion_factory):
    def _override(scenario: FakeScenario = FakeScenario.OK, fail_stage: Optional[str] = None) -> FakeCompletionClient:
        fake = fake_completion_factory(scenario, fail_stage)
        app.dependency_overrides[get_completion_client] = lambda: fake
        return fake

    return _override


@pytest.fixture
def profile_store(test_db_path: Path) -> SqlProfileStore:
    return SqlProfileStore(SessionLocal)


@pytest.fixture
def seed_profile(profile_store: SqlProfileStore) -> Callable[..., HealthTwinProfile]:
    def _seed(user_id: str, **updates: Any) -> HealthTwinProfile:
        profile = apply_profile_updates(create_empty_profile(), ProfileUpdates(**updates))
        assert profile_store.save(user_id, profile)
        return profile

    return _seed


@pytest.fixture
def orchestrator_factory(
    test_db_path: Path,
    profile_store: SqlProfileStore,
    fake_completion_factory,
) -> Callable[..., tuple[AgentOrchestrator, FakeCompletionClient]]:
    def _build(
        scenario: FakeScenario = FakeScenario.OK,
        fail_stage: Optional[str] = None,
        memory: Optional[SessionMemoryStore] = None,
        max_revisions: int = 1,
        delays: Optional[Mapping[str, float]] = None,
    ) -> tuple[AgentOrchestrator, FakeCompletionClient]:
        fake = fake_completion_factory(scenario, fail_stage, delays)
        orchestrator = AgentOrchestrator(
            client=fake,
            memory=memory or SessionMemoryStore(),
            profiles=ProfileMemoryStore(profile_store),
            wearables=WearableProvider(),
            nutrition=NutritionLookup(enabled=False),
            audit=SqlTurnAuditStore(SessionLocal),
            max_revisions=max_revisions,
        )
        return orchestrator, fake

    return _build
