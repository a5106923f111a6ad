from fastapi.testclient import TestClient

from conftest import FakeScenario
from app.db.session import SessionLocal
from app.services.stores import SqlSessionStore

TIRED_MESSAGE = "I feel tired and only slept 5 hours, what should I eat today?"


def _message_payload(session_id: str, user_id: str, message: str = TIRED_MESSAGE, **extra) -> dict:
    return {"session_id": session_id, "user_id": user_id, "message": message, **extra}


def _drain(client: TestClient) -> None:
    assert client.app.state.runtime.writer.drain(timeout=5)


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_runtime_not_ready_returns_503(app) -> None:
    app.state.runtime = None
    bare_client = TestClient(app)
    response = bare_client.get("/agent/sessions/anything")
    assert response.status_code == 503


def test_message_full_route_shape(client, override_completion, session_id, user_id) -> None:
    override_completion(FakeScenario.OK)

    response = client.post("/agent/message", json=_message_payload(session_id, user_id))

    assert response.status_code == 200
    body = response.json()
    for key in [
        "session_id",
        "route",
        "dispatch",
        "reply",
        "tone",
        "timing",
        "validation",
        "analyzer",
        "plan",
        "monitor",
        "profile_updates",
        "wearable",
        "memory_size",
        "safety_flags",
    ]:
        assert key in body
    assert body["route"] == "full"
    assert body["dispatch"]["confidence"] == 0.85
    assert body["timing"]["total"] >= 0
    assert body["validation"]["tier"] == "skipped"
    assert body["memory_size"] == 2
    assert body["stage_error"] is None
    assert body["profile_updates"]["sessionNote"] == "Fatigue tied to 5 hours of sleep"


def test_message_greeting_route(client, override_completion, session_id, user_id) -> None:
    fake = override_completion(FakeScenario.OK)

    response = client.post("/agent/message", json=_message_payload(session_id, user_id, "hey!"))

    assert response.status_code == 200
    body = response.json()
    assert body["route"] == "greeting"
    assert body["validation"] is None
    assert fake.stages_called() == ["light_monitor"]


def test_message_validation_errors(client, override_completion, session_id, user_id) -> None:
    override_completion(FakeScenario.OK)
    assert client.post("/agent/message", json={"session_id": session_id}).status_code == 422
    assert client.post("/agent/message", json=_message_payload(session_id, user_id, "")).status_code == 422
    assert client.post("/agent/message", json=_message_payload(session_id, user_id, "   ")).status_code == 422


def test_message_stage_failure_reports_error(client, override_completion, session_id, user_id) -> None:
    override_completion(FakeScenario.PROVIDER_ERROR)

    response = client.post("/agent/message", json=_message_payload(session_id, user_id))

    assert response.status_code == 200
    body = response.json()
    assert body["stage_error"] == "analyzer"
    assert "llm_provider_error" in body["safety_flags"]
    assert body["memory_size"] == 0


def test_validator_revision_over_api(client, override_completion, seed_profile, session_id, user_id) -> None:
    seed_profile(user_id, add_allergies=["peanuts"])
    override_completion(FakeScenario.ALLERGY_CONFLICT)

    response = client.post("/agent/message", json=_message_payload(session_id, user_id))

    assert response.status_code == 200
    validation = response.json()["validation"]
    assert validation["approved"] is True
    assert validation["revisions"] == 1


def test_photo_upload(client, override_completion, session_id, user_id) -> None:
    fake = override_completion(FakeScenario.OK)

    response = client.post(
        "/agent/photo",
        data={"session_id": session_id, "user_id": user_id, "message": "my lunch"},
        files={"image": ("meal.png", b"\x89PNG\r\n\x1a\nfake", "image/png")},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["route"] == "photo"
    assert body["photo"]["foods"] == ["salmon", "white rice", "broccoli"]
    assert fake.stages_called() == ["photo"]


def test_photo_rejects_non_image_and_empty(client, override_completion, session_id, user_id) -> None:
    override_completion(FakeScenario.OK)
    form = {"session_id": session_id, "user_id": user_id}

    not_image = client.post("/agent/photo", data=form, files={"image": ("notes.txt", b"hello", "text/plain")})
    empty = client.post("/agent/photo", data=form, files={"image": ("meal.png", b"", "image/png")})

    assert not_image.status_code == 400
    assert empty.status_code == 400
    assert empty.json()["detail"] == "Uploaded image is empty."


def test_session_inspection_and_flush(client, override_completion, session_id, user_id) -> None:
    override_completion(FakeScenario.OK)
    assert client.get(f"/agent/sessions/{session_id}").status_code == 404

    client.post("/agent/message", json=_message_payload(session_id, user_id))
    snapshot = client.get(f"/agent/sessions/{session_id}")
    assert snapshot.status_code == 200
    assert len(snapshot.json()["messages"]) == 2
    assert snapshot.json()["route_history"] == ["full"]

    flushed = client.post(f"/agent/sessions/{session_id}/flush")
    assert flushed.status_code == 200
    assert flushed.json() == {"session_id": session_id, "flushed": True}
    _drain(client)
    stored = SqlSessionStore(SessionLocal).get(session_id)
    assert stored is not None
    assert stored.route_history == ["full"]


def test_flush_unknown_session(client, session_id) -> None:
    response = client.post(f"/agent/sessions/{session_id}/flush")
    assert response.status_code == 200
    assert response.json()["flushed"] is False


def test_health_twin_read_after_turn(client, override_completion, session_id, user_id) -> None:
    override_completion(FakeScenario.OK)
    client.post("/agent/message", json=_message_payload(session_id, user_id))
    _drain(client)

    response = client.get(f"/health-twin/{user_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == user_id
    assert body["profile"]["patterns"] == ["Energy dips after short sleep"]
    assert body["profile"]["averages"]["sessionsCount"] == 1
    assert "Known patterns: Energy dips after short sleep" in body["prompt_text"]


def test_health_twin_unknown_user_is_empty(client, user_id) -> None:
    response = client.get(f"/health-twin/{user_id}")
    assert response.status_code == 200
    assert response.json()["prompt_text"] == ""
