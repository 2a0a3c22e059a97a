import asyncio
import threading

import pytest

import db
import notifications


@pytest.mark.usefixtures("temp_db")
def test_emit_persists_and_forwards_to_webhook(monkeypatch):
    event = threading.Event()
    calls = []

    async def fake_forward(payload, *, webhook_url, headers, timeout=5.0, max_attempts=3):
        calls.append((webhook_url, payload, headers, timeout, max_attempts))
        event.set()

    monkeypatch.setattr(notifications, "_forward_event_with_retry", fake_forward)
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "https://example.com/hooks/engine")
    monkeypatch.setenv("NOTIFY_WEBHOOK_AUTH", "Token abc")

    notifications.emit(notifications.MASTERY_ACHIEVED, "alice", {"concept_id": "c-add"})

    stored = db.list_engine_events("alice")
    assert len(stored) == 1
    assert stored[0]["event_type"] == "mastery_achieved"
    assert stored[0]["payload"] == {"concept_id": "c-add"}

    event.wait(0.5)
    assert calls
    url, payload, headers, timeout, attempts = calls[0]
    assert url == "https://example.com/hooks/engine"
    assert headers["Authorization"] == "Token abc"
    assert headers["Content-Type"] == "application/json"
    assert (timeout, attempts) == (5.0, 3)
    assert payload["type"] == "mastery_achieved"
    assert payload["student_id"] == "alice"


@pytest.mark.usefixtures("temp_db")
def test_emit_without_webhook_only_records(monkeypatch):
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    forwarded = []
    monkeypatch.setattr(notifications, "_schedule_forward", lambda *args, **kwargs: forwarded.append(args))

    notifications.emit(notifications.SESSION_COMPLETED, "bob")

    assert forwarded == []
    assert db.list_engine_events("bob")[0]["payload"] == {}


def test_validate_event_rejects_unknown_type():
    with pytest.raises(ValueError):
        notifications.validate_event("level_up", "alice", {})
    with pytest.raises(ValueError):
        notifications.validate_event(notifications.PLAN_ADVANCED, "  ", {})
    with pytest.raises(ValueError):
        notifications.validate_event(notifications.PLAN_ADVANCED, "alice", ["not", "a", "dict"])


@pytest.mark.usefixtures("temp_db")
def test_publish_never_raises(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("outbox unavailable")

    monkeypatch.setattr(notifications.db, "insert_engine_event", broken)

    assert notifications.publish(notifications.PLAN_ADVANCED, "alice", {"plan_id": "p"}) is False
    assert notifications.publish("unknown", "alice") is False


def test_forward_retries_server_errors(monkeypatch):
    statuses = iter([503, 502, 200])
    attempts = []

    class FakeResponse:
        def __init__(self, status_code):
            self.status_code = status_code

    def fake_post(url, json, headers, timeout):
        attempts.append(url)
        return FakeResponse(next(statuses))

    async def no_sleep(delay):
        return None

    monkeypatch.setattr(notifications.requests, "post", fake_post)
    monkeypatch.setattr(notifications.asyncio, "sleep", no_sleep)

    asyncio.run(
        notifications._forward_event_with_retry(
            {"type": "plan_advanced"}, webhook_url="https://example.com/hook", headers={}
        )
    )

    assert len(attempts) == 3
