"""
tests/test_api.py
─────────────────────────────────────────────────────────────────────────────
Tests for voxtally.api: VoxtallyAPI class and the FastAPI routes.

Coverage:
  - list_ledger projection
  - account_status / current_qr_challenge via AccountState
  - chat_durations: eligibility, timestamp localization, read-only default,
    catch-up mode with idempotency
  - HTTP: /user_durations, /whatsapp-status, /qrcode, /messages, /events,
    /session/* webhooks, generic 500 bodies

All tests use a temporary SQLite DB and an in-memory fake bridge.
"""

from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from voxtally.api import VoxtallyAPI, _build_app
from voxtally.errors import EventSourceUnavailable
from voxtally.models.record import ChatSnapshot, VoiceMessageEvent
from voxtally.sources.base import EventSource
from voxtally.sources.state import AccountState
from voxtally.store.ledger_store import LedgerStore


# ── HELPERS ──────────────────────────────────────────────────────────────────

class FakeSource(EventSource):
    def __init__(self, chats: Optional[List[ChatSnapshot]] = None, fail: bool = False):
        self.chats = chats or []
        self.fail  = fail
        self.names = {}

    def is_ready(self) -> bool:
        if self.fail:
            raise EventSourceUnavailable("bridge down")
        return True

    def get_contact_display_name(self, sender_id):
        if self.fail:
            raise EventSourceUnavailable("bridge down")
        return self.names.get(sender_id)

    def list_chats_with_last_message(self):
        if self.fail:
            raise EventSourceUnavailable("bridge down")
        return self.chats


def _voice(sender="923001234567@c.us", duration=12, ts=1704067200, **kw):
    return VoiceMessageEvent(
        sender_raw_id=sender, display_name_hint="Ali",
        duration_sec=duration, timestamp=ts, **kw,
    )


def _api(tmp_path, source=None, **kw) -> VoxtallyAPI:
    return VoxtallyAPI(
        store  = LedgerStore(tmp_path / "voxtally.db"),
        state  = AccountState(),
        source = source,
        **kw,
    )


def _client(tmp_path, source=None, state=None, config=None, db_path=None):
    app = _build_app(
        db_path = db_path or (tmp_path / "voxtally.db"),
        config  = config,
        source  = source or FakeSource(),
        state   = state or AccountState(),
    )
    return TestClient(app)


VOICE_PAYLOAD = {
    "id":         "MSG-1",
    "from":       "923001234567@c.us",
    "notifyName": "Ali",
    "type":       "ptt",
    "fromMe":     False,
    "duration":   12,
    "timestamp":  1000,
}


# ── TESTS: QUERY SERVICE ─────────────────────────────────────────────────────

class TestListLedger:
    def test_empty(self, tmp_path):
        assert _api(tmp_path).list_ledger() == []

    def test_projection_fields(self, tmp_path):
        api = _api(tmp_path)
        api.ingest(_voice(duration=12, ts=1000))
        api.ingest(_voice(duration=8, ts=2000))
        rows = api.list_ledger()
        assert len(rows) == 1
        row = rows[0]
        assert set(row) == {"id", "name", "notify_name", "total_duration", "last_timestamp"}
        assert row["name"] == "923001234567"
        assert row["total_duration"] == 20
        assert row["last_timestamp"] == 2000


class TestAccountState:
    def test_status_reflects_state(self, tmp_path):
        api = _api(tmp_path)
        assert api.account_status() == {"ready": False}
        api.state.on_ready()
        assert api.account_status() == {"ready": True}

    def test_qr_absent_until_issued(self, tmp_path):
        api = _api(tmp_path)
        assert api.current_qr_challenge() is None
        api.state.on_qr("2@abc")
        assert api.current_qr_challenge() == "2@abc"


class TestChatDurations:
    def test_no_source_raises(self, tmp_path):
        with pytest.raises(EventSourceUnavailable):
            _api(tmp_path).chat_durations()

    def test_rows_for_each_chat(self, tmp_path):
        source = FakeSource(chats=[
            ChatSnapshot("Ali", _voice(duration=15)),
            ChatSnapshot("Me", _voice(duration=9, from_me=True)),
            ChatSnapshot("Text", _voice(msg_type="chat")),
            ChatSnapshot("Empty", None),
        ])
        rows = _api(tmp_path, source=source).chat_durations()
        assert [(r.name, r.total_duration) for r in rows] == [
            ("Ali", 15), ("Me", 0), ("Text", 0), ("Empty", 0),
        ]
        assert rows[0].timestamp is not None
        assert all(r.timestamp is None for r in rows[1:])

    def test_timestamp_localized_to_karachi(self, tmp_path):
        # 1704067200 = 2024-01-01 00:00:00 UTC = 05:00 in Asia/Karachi
        source = FakeSource(chats=[ChatSnapshot("Ali", _voice(ts=1704067200))])
        rows = _api(tmp_path, source=source, tz_name="Asia/Karachi").chat_durations()
        assert rows[0].timestamp == "Mon, 01 Jan 2024, 05:00:00 AM"

    def test_unknown_timezone_falls_back_to_utc(self, tmp_path):
        api = _api(tmp_path, tz_name="Not/AZone")
        assert api.format_timestamp(1704067200) == "Mon, 01 Jan 2024, 12:00:00 AM"

    def test_read_only_by_default(self, tmp_path):
        source = FakeSource(chats=[ChatSnapshot("Ali", _voice(message_id="M1"))])
        api = _api(tmp_path, source=source)
        api.chat_durations()
        api.chat_durations()
        assert api.list_ledger() == []

    def test_catch_up_records_once(self, tmp_path):
        source = FakeSource(chats=[ChatSnapshot("Ali", _voice(duration=7, message_id="M1"))])
        api = _api(tmp_path, source=source, catch_up=True)
        api.chat_durations()
        api.chat_durations()
        rows = api.list_ledger()
        assert len(rows) == 1
        assert rows[0]["total_duration"] == 7

    def test_catch_up_does_not_double_count_primary(self, tmp_path):
        msg = _voice(duration=7, message_id="M1")
        api = _api(tmp_path, source=FakeSource(chats=[ChatSnapshot("Ali", msg)]), catch_up=True)
        api.ingest(msg)
        api.chat_durations()
        assert api.list_ledger()[0]["total_duration"] == 7

    def test_catch_up_skips_messages_without_id(self, tmp_path):
        source = FakeSource(chats=[ChatSnapshot("Ali", _voice(duration=7))])
        api = _api(tmp_path, source=source, catch_up=True)
        api.chat_durations()
        assert api.list_ledger() == []


# ── TESTS: HTTP ROUTES ───────────────────────────────────────────────────────

class TestHttpReadRoutes:
    def test_user_durations_empty(self, tmp_path):
        client = _client(tmp_path)
        resp = client.get("/user_durations")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_user_durations_after_events(self, tmp_path):
        client = _client(tmp_path)
        client.post("/events", json=VOICE_PAYLOAD)
        client.post("/events", json={**VOICE_PAYLOAD, "id": "MSG-2",
                                     "notifyName": "Ali K.", "duration": 8, "timestamp": 2000})
        rows = client.get("/user_durations").json()
        assert len(rows) == 1
        assert rows[0]["name"] == "923001234567"
        assert rows[0]["notify_name"] == "Ali K."
        assert rows[0]["total_duration"] == 20
        assert rows[0]["last_timestamp"] == 2000

    def test_user_durations_store_failure_generic_500(self, tmp_path):
        client = _client(tmp_path, db_path=tmp_path)   # directory → cannot open
        resp = client.get("/user_durations")
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal Server Error"}

    def test_status_not_ready_then_ready(self, tmp_path):
        state = AccountState()
        client = _client(tmp_path, state=state)
        assert client.get("/whatsapp-status").json() == {"status": "not_ready"}
        state.on_ready()
        assert client.get("/whatsapp-status").json() == {"status": "ready"}

    def test_qrcode_404_then_value(self, tmp_path):
        state = AccountState()
        client = _client(tmp_path, state=state)
        resp = client.get("/qrcode")
        assert resp.status_code == 404
        assert resp.json() == {"error": "QR code not generated yet"}
        state.on_qr("2@xyz")
        resp = client.get("/qrcode")
        assert resp.status_code == 200
        assert resp.json() == {"qr": "2@xyz"}

    def test_messages(self, tmp_path):
        source = FakeSource(chats=[
            ChatSnapshot("Ali", _voice(duration=15, ts=1704067200)),
            ChatSnapshot("Other", None),
        ])
        resp = _client(tmp_path, source=source).get("/messages")
        assert resp.status_code == 200
        body = resp.json()
        assert body[0] == {"name": "Ali", "totalDuration": 15,
                           "timestamp": "Mon, 01 Jan 2024, 05:00:00 AM"}
        assert body[1] == {"name": "Other", "totalDuration": 0, "timestamp": None}

    def test_messages_bridge_down(self, tmp_path):
        resp = _client(tmp_path, source=FakeSource(fail=True)).get("/messages")
        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to fetch chats"}

    def test_messages_does_not_touch_ledger(self, tmp_path):
        source = FakeSource(chats=[ChatSnapshot("Ali", _voice(message_id="M1"))])
        client = _client(tmp_path, source=source)
        client.get("/messages")
        assert client.get("/user_durations").json() == []

    def test_health(self, tmp_path):
        body = _client(tmp_path).get("/health").json()
        assert body["status"] == "ok"
        assert body["ready"] is False
        assert body["bridge_ready"] is True

    def test_health_bridge_down(self, tmp_path):
        resp = _client(tmp_path, source=FakeSource(fail=True)).get("/health")
        assert resp.status_code == 200
        assert resp.json()["bridge_ready"] is False


class TestHttpWebhooks:
    def test_event_recorded(self, tmp_path):
        resp = _client(tmp_path).post("/events", json=VOICE_PAYLOAD)
        assert resp.status_code == 200
        assert resp.json() == {"status": "recorded"}

    def test_duplicate_event_ignored(self, tmp_path):
        client = _client(tmp_path)
        client.post("/events", json=VOICE_PAYLOAD)
        resp = client.post("/events", json=VOICE_PAYLOAD)
        assert resp.json() == {"status": "ignored"}
        assert client.get("/user_durations").json()[0]["total_duration"] == 12

    def test_outgoing_event_ignored(self, tmp_path):
        client = _client(tmp_path)
        resp = client.post("/events", json={**VOICE_PAYLOAD, "fromMe": True})
        assert resp.json() == {"status": "ignored"}
        assert client.get("/user_durations").json() == []

    def test_text_event_ignored(self, tmp_path):
        resp = _client(tmp_path).post("/events", json={**VOICE_PAYLOAD, "type": "chat"})
        assert resp.json() == {"status": "ignored"}

    def test_malformed_event_422(self, tmp_path):
        resp = _client(tmp_path).post("/events", json={"type": "ptt", "duration": 3})
        assert resp.status_code == 422

    def test_oversized_duration_422(self, tmp_path):
        client = _client(tmp_path)
        resp = client.post("/events", json={**VOICE_PAYLOAD, "duration": "1e19"})
        assert resp.status_code == 422
        assert "error" in resp.json()
        assert client.get("/user_durations").json() == []

    def test_event_store_failure_generic_500(self, tmp_path):
        client = _client(tmp_path, db_path=tmp_path)
        resp = client.post("/events", json=VOICE_PAYLOAD)
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal Server Error"}

    def test_event_contact_lookup_failure_still_recorded(self, tmp_path):
        client = _client(tmp_path, source=FakeSource(fail=True))
        resp = client.post("/events", json={**VOICE_PAYLOAD, "notifyName": ""})
        assert resp.json() == {"status": "recorded"}

    def test_session_lifecycle(self, tmp_path):
        state = AccountState()
        client = _client(tmp_path, state=state)
        assert client.post("/session/qr", json={"qr": "2@abc"}).status_code == 200
        assert client.get("/qrcode").json() == {"qr": "2@abc"}
        client.post("/session/ready")
        assert client.get("/whatsapp-status").json() == {"status": "ready"}
        client.post("/session/auth_failure")
        assert client.get("/whatsapp-status").json() == {"status": "not_ready"}
        client.post("/session/ready")
        client.post("/session/disconnected")
        assert state.is_ready() is False

    def test_session_qr_requires_payload(self, tmp_path):
        resp = _client(tmp_path).post("/session/qr", json={})
        assert resp.status_code == 422

    def test_catch_up_config(self, tmp_path):
        source = FakeSource(chats=[ChatSnapshot("Ali", _voice(duration=7, message_id="M1"))])
        client = _client(tmp_path, source=source, config={"messages_catch_up": True})
        client.get("/messages")
        client.get("/messages")
        assert client.get("/user_durations").json()[0]["total_duration"] == 7


class TestModuleApp:
    def test_app_built_once_on_first_access(self, monkeypatch):
        import voxtally.api as api_module

        built = []
        monkeypatch.setattr(api_module, "_app_instance", None)
        monkeypatch.setattr(api_module, "_default_app", lambda: built.append(1) or "app")
        assert built == []
        assert api_module.app == "app"
        assert api_module.app == "app"
        assert built == [1]

    def test_unknown_attribute_raises(self):
        import voxtally.api as api_module

        with pytest.raises(AttributeError):
            api_module.not_there
