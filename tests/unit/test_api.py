from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from common.config import ConfigurationError, Settings
from common.telegram import TelegramApiError
from relay.notifier import NotificationRelay


class _FakeTG:
    def __init__(self) -> None:
        self.photos = []
        self.raise_exc = None

    def send_photo(self, chat_id, photo, **_kwargs):
        if self.raise_exc is not None:
            raise self.raise_exc
        self.photos.append((chat_id, photo))
        return {"message_id": 5}


class _FakeAI:
    def generate(self, prompt: str) -> str:
        return "We ship within 2 days."


def _settings(**overrides) -> Settings:
    base = dict(
        gemini_api_key="k",
        session_bucket="b",
        session_fernet_key="unused",
        bridge_url="http://bridge",
        telegram_chat_id=123,
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def tg():
    return _FakeTG()


@pytest.fixture
def make_client(store, automation, tg):
    def _make(**settings_overrides):
        settings = _settings(**settings_overrides)
        relay = NotificationRelay(tg, settings.telegram_chat_id, render=lambda c: f"PNG:{c}".encode())
        app = create_app(settings, store=store, client=automation, relay=relay, ai=_FakeAI())
        return TestClient(app)

    return _make


def test_status_and_qr_before_start(make_client):
    with make_client() as client:
        assert client.get("/status").json()["status"] == "idle"
        resp = client.get("/qr")
        assert resp.status_code == 404
        assert resp.json()["status"] == "idle"


def test_start_is_idempotent(make_client, automation):
    with make_client() as client:
        assert client.get("/start").json()["status"] == "initializing"
        assert client.get("/start").json()["status"] == "connecting"
        assert automation.initialized == [None]

        resp = client.get("/qr")
        assert resp.status_code == 200
        assert resp.json()["status"] == "connecting"


def test_qr_event_then_png_and_auto_relay(make_client, tg):
    with make_client() as client:
        client.get("/start")
        resp = client.post("/events", json={"type": "qr", "qr": "2@ABC123"})
        assert resp.json()["status"] == "awaiting_scan"

        img = client.get("/qr")
        assert img.status_code == 200
        assert img.headers["content-type"] == "image/png"
        assert img.content.startswith(b"\x89PNG")

        # relayed once by the webhook's background task
        assert tg.photos == [(123, b"PNG:2@ABC123")]


def test_auto_relay_can_be_disabled(make_client, tg):
    with make_client(relay_on_qr=False) as client:
        client.get("/start")
        client.post("/events", json={"type": "qr", "qr": "2@ABC123"})
    assert tg.photos == []


def test_ready_event_checkpoints_session(make_client, store):
    session = base64.b64encode(b"blob").decode()
    with make_client() as client:
        client.get("/start")
        client.post("/events", json={"type": "qr", "qr": "2@ABC123"})
        resp = client.post("/events", json={"type": "ready", "session": session})
        assert resp.json()["status"] == "ready"
        assert client.get("/start").json()["status"] == "ready"
        assert client.get("/qr").json()["status"] == "ready"
    assert store.saves == [("store-bot", b"blob")]


def test_auth_failure_event_erases_session(make_client, store):
    store.records["store-bot"] = b"old"
    with make_client() as client:
        client.get("/start")
        resp = client.post("/events", json={"type": "auth_failure", "reason": "restore failed"})
        assert resp.json()["status"] == "disconnected"
    assert "store-bot" not in store.records


def test_relay_endpoint_errors(make_client, tg):
    with make_client() as client:
        resp = client.post("/relay")
        assert resp.status_code == 409
        assert resp.json() == {
            "status": "error",
            "error": "no_code_available",
            "message": "No pairing code while status is idle",
        }

        client.get("/start")
        client.post("/events", json={"type": "qr", "qr": "CODE"})
        tg.raise_exc = TelegramApiError("Forbidden (code=403)", status_code=403)
        resp = client.post("/relay")
        assert resp.status_code == 502
        assert resp.json()["error"] == "delivery_failed"
        assert resp.json()["upstream_status"] == 403

        tg.raise_exc = None
        resp = client.post("/relay")
        assert resp.status_code == 200
        assert resp.json()["status"] == "delivered"


def test_relay_not_configured(make_client):
    with make_client(telegram_chat_id=None) as client:
        client.get("/start")
        client.post("/events", json={"type": "qr", "qr": "CODE"})
        resp = client.post("/relay")
        assert resp.status_code == 503
        assert resp.json()["error"] == "not_configured"


def test_store_unavailable_maps_to_503(make_client, store):
    with make_client() as client:
        store.failing.add("extract")
        resp = client.get("/start")
        assert resp.status_code == 503
        assert resp.json()["status"] == "error"
        assert resp.json()["error"] == "store_unavailable"
        assert client.get("/status").json()["status"] == "idle"


def test_bridge_failure_maps_to_502(make_client, automation):
    automation.fail_initialize = True
    with make_client() as client:
        resp = client.get("/start")
        assert resp.status_code == 502
        assert resp.json()["error"] == "automation_client_error"
        assert client.get("/status").json()["status"] == "disconnected"


def test_message_event_is_answered_through_bridge(make_client, automation):
    with make_client() as client:
        resp = client.post(
            "/events",
            json={"type": "message", "message": {"chat_id": "628123@c.us", "body": "shipping time?"}},
        )
        assert resp.status_code == 200
    assert automation.sent == [("628123@c.us", "We ship within 2 days.")]


def test_events_require_bridge_token_when_configured(make_client):
    with make_client(bridge_token="s3cret") as client:
        resp = client.post("/events", json={"type": "authenticated"})
        assert resp.status_code == 401
        resp = client.post("/events", json={"type": "authenticated"}, headers={"X-Bridge-Token": "s3cret"})
        assert resp.status_code == 200


def test_invalid_event_payload(make_client):
    with make_client() as client:
        resp = client.post("/events", json={"type": "qr"})
        assert resp.status_code == 422
        assert resp.json()["status"] == "error"
        client.get("/start")
        resp = client.post("/events", json={"type": "ready", "session": "***"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "bad_event"
        assert client.get("/status").json()["status"] == "connecting"


def test_logout_endpoint(make_client, store, automation):
    store.records["store-bot"] = b"blob"
    with make_client() as client:
        resp = client.post("/logout")
        assert resp.json()["status"] == "disconnected"
    assert automation.logouts == 1
    assert store.records == {}


def test_unreachable_store_at_startup_is_configuration_error(make_client, store):
    store.failing.add("check")
    client = make_client()
    with pytest.raises(ConfigurationError):
        with client:
            pass
