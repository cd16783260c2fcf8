from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import main
from app.utils import sms as sms_util
from config import settings


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    monkeypatch.setattr(settings, "DATABASE_PUBLIC_URL", None)
    monkeypatch.setattr(settings, "TELNYX_PUBLIC_KEY", None)
    monkeypatch.setattr(settings, "SWEEP_MODE", "celery")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_PUBLIC_URL", raising=False)

    sent = []
    monkeypatch.setattr(sms_util, "send_sms", lambda to, body: sent.append((to, body)))

    with TestClient(main.app) as c:
        c.sent = sent
        yield c


def _event(**payload):
    return {"data": {"event_type": "message.received", "payload": payload}}


def test_healthz(client):
    assert client.get("/healthz").text == "OK"


def test_ping(client):
    resp = client.post("/v1/sms/telnyx", json=_event(type="ping"))
    assert resp.text == "PONG"


def test_missing_sender_is_ignored(client):
    resp = client.post("/v1/sms/telnyx", json=_event(id="m1", text="!remindme in 5 minutes"))
    assert resp.text == "IGNORED"


def test_inbound_command_schedules_reminder(client):
    received_at = datetime.now(timezone.utc).isoformat()
    resp = client.post(
        "/v1/sms/telnyx",
        json=_event(
            id="msg-1",
            text='!remindme in 5 minutes "tea"',
            received_at=received_at,
            **{"from": {"phone_number": "+15551234"}, "to": [{"phone_number": "+15550000"}]},
        ),
    )

    assert resp.text == "OK"
    store = main.app.state.services.store
    entries = [k for k in store.keys() if k[:2] == ("reminder_by_user", "+15551234")]
    assert entries == [("reminder_by_user", "+15551234", "msg-1")]
    assert client.sent and client.sent[0][0] == "+15551234"
    assert client.sent[0][1].startswith("I will remind at")


def test_message_from_payload_parses_timestamp():
    message = main.message_from_payload(
        {"id": "m1", "from": {"phone_number": "+1"}, "text": " hi ", "received_at": "2026-01-01T00:00:00Z"}
    )
    assert message.created_at == 1_767_225_600
    assert message.text == "hi"
    assert message.recipient is None
