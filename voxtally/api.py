"""
voxtally/api.py
─────────────────────────────────────────────────────────────────────────────
voxtally query layer + HTTP server

TWO USAGE MODES:
  1. Importable module:
         from voxtally.api import VoxtallyAPI
         api = VoxtallyAPI(store=LedgerStore(Path("voxtally.db")), state=AccountState())
         rows = api.list_ledger()

  2. FastAPI HTTP server:
         voxtally serve                           # default: 0.0.0.0:3000
         uvicorn voxtally.api:app --port 3000

ENDPOINTS (read):
  GET  /messages          live chat listing with last voice-note duration
  GET  /user_durations    the ledger, one row per sender
  GET  /whatsapp-status   {"status": "ready" | "not_ready"}
  GET  /qrcode            latest QR challenge, 404 until the bridge sends one
  GET  /health            server status + bridge readiness

ENDPOINTS (bridge webhooks):
  POST /events                one message payload → ledger
  POST /session/qr            {"qr": "..."}
  POST /session/ready
  POST /session/auth_failure
  POST /session/disconnected

ERRORS:
  Store failures return 500 with a generic body. SQLite error text is
  logged, never returned.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import Body, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from voxtally import __version__
from voxtally.aggregators.duration_aggregator import DurationAggregator, is_eligible
from voxtally.errors import AggregationError, EventSourceUnavailable, StoreError
from voxtally.models.record import ChatDurationRow, VoiceMessageEvent
from voxtally.sources.base import EventSource
from voxtally.sources.bridge_source import BridgeEventSource, event_from_payload
from voxtally.sources.state import AccountState
from voxtally.store.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%a, %d %b %Y, %I:%M:%S %p"


# ═══════════════════════════════════════════════════════════════════════════
# IMPORTABLE CLASS
# ═══════════════════════════════════════════════════════════════════════════

class VoxtallyAPI:
    """
    Read-side projections over the ledger and account state, plus the
    ingestion entry point used by the /events webhook.

    Usage:
        api = VoxtallyAPI(store=store, state=state, source=bridge)
        api.list_ledger()
        api.account_status()          # {"ready": False}
        api.current_qr_challenge()    # None until the bridge sends one
        api.chat_durations()
    """

    def __init__(
        self,
        store:          LedgerStore,
        state:          AccountState,
        source:         Optional[EventSource] = None,
        default_region: str  = "PK",
        tz_name:        str  = "Asia/Karachi",
        catch_up:       bool = False,
    ):
        self.store      = store
        self.state      = state
        self.source     = source
        self.catch_up   = catch_up
        self.tz         = _load_timezone(tz_name)
        self.aggregator = DurationAggregator(
            store, source=source, default_region=default_region
        )

    # ── QUERY: LEDGER ─────────────────────────────────────────────────────

    def list_ledger(self) -> List[Dict[str, Any]]:
        """
        All ledger rows, insertion order, in the persisted column names:
        id, name, notify_name, total_duration, last_timestamp.
        """
        return [
            {
                "id":             r.id,
                "name":           r.key,
                "notify_name":    r.display_name,
                "total_duration": r.total_duration_sec,
                "last_timestamp": r.last_timestamp,
            }
            for r in self.store.list_all()
        ]

    # ── QUERY: ACCOUNT STATE ──────────────────────────────────────────────

    def account_status(self) -> Dict[str, bool]:
        return {"ready": self.state.is_ready()}

    def current_qr_challenge(self) -> Optional[str]:
        return self.state.current_qr()

    # ── QUERY: LIVE CHATS ─────────────────────────────────────────────────

    def chat_durations(self) -> List[ChatDurationRow]:
        """
        One row per chat from the bridge. Chats whose last message is a
        received voice note carry its duration and localized timestamp;
        all others carry 0 / None.

        Read-only unless catch_up is enabled, in which case each eligible
        last message is also recorded (once per message id).

        Raises:
            EventSourceUnavailable: no source configured or bridge down.
        """
        if self.source is None:
            raise EventSourceUnavailable("no event source configured")

        rows: List[ChatDurationRow] = []
        for chat in self.source.list_chats_with_last_message():
            row  = ChatDurationRow(name=chat.chat_name)
            last = chat.last_message
            if last is not None and is_eligible(last):
                row.total_duration = last.duration_sec
                row.timestamp      = self.format_timestamp(last.timestamp)
                if self.catch_up:
                    self._catch_up(last)
            rows.append(row)

        logger.debug(f"Chats with durations: {len(rows)}")
        return rows

    def format_timestamp(self, epoch_sec: int) -> str:
        dt = datetime.fromtimestamp(int(epoch_sec), tz=self.tz)
        return dt.strftime(TIMESTAMP_FORMAT)

    # ── INGESTION ─────────────────────────────────────────────────────────

    def ingest(self, event: VoiceMessageEvent) -> bool:
        """Primary ingestion path. Raises AggregationError on store failure."""
        return self.aggregator.record_event(event)

    def _catch_up(self, event: VoiceMessageEvent) -> None:
        # Catch-up only writes events that carry a message id.
        if not event.message_id:
            logger.debug(f"Catch-up skipped for {event.sender_raw_id}: no message id")
            return
        self.aggregator.record_event(event)


def _load_timezone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Unknown timezone {name!r}, using UTC: {e}")
        return timezone.utc


# ═══════════════════════════════════════════════════════════════════════════
# FASTAPI HTTP APP
# ═══════════════════════════════════════════════════════════════════════════

class QrPayload(BaseModel):
    qr: str


def _build_app(
    db_path: Path = Path("voxtally.db"),
    config:  Optional[Dict[str, Any]] = None,
    source:  Optional[EventSource] = None,
    state:   Optional[AccountState] = None,
) -> FastAPI:
    """
    Build and return the FastAPI application instance.

    source/state are injectable for tests; by default a BridgeEventSource
    is built from config and a fresh AccountState is owned by the app.
    """
    from voxtally.config import DEFAULT_CONFIG

    cfg = {**DEFAULT_CONFIG, **(config or {})}

    if source is None:
        source = BridgeEventSource(
            host        = cfg["bridge_host"],
            timeout_sec = int(cfg["bridge_timeout_sec"]),
        )
    state = state or AccountState()
    store = LedgerStore(db_path)

    _api = VoxtallyAPI(
        store          = store,
        state          = state,
        source         = source,
        default_region = cfg["default_region"],
        tz_name        = cfg["timezone"],
        catch_up       = bool(cfg["messages_catch_up"]),
    )

    _app = FastAPI(
        title       = "voxtally",
        description = "WhatsApp voice-message duration ledger",
        version     = __version__,
        docs_url    = "/docs",
        redoc_url   = None,
    )
    _app.state.api = _api

    _app.add_middleware(
        CORSMiddleware,
        allow_origins     = list(cfg["cors_origins"]),
        allow_methods     = ["GET", "POST"],
        allow_headers     = ["Content-Type", "Authorization"],
        allow_credentials = False,
    )

    # ── READ ENDPOINTS ──────────────────────────────────────────────────

    @_app.get("/messages", summary="Chats with last voice-note duration")
    def get_messages():
        try:
            rows = _api.chat_durations()
        except (EventSourceUnavailable, AggregationError) as exc:
            logger.error(f"Error fetching chats: {exc}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Failed to fetch chats"})
        return [
            {"name": r.name, "totalDuration": r.total_duration, "timestamp": r.timestamp}
            for r in rows
        ]

    @_app.get("/user_durations", summary="Per-sender duration ledger")
    def get_user_durations():
        try:
            return _api.list_ledger()
        except StoreError as exc:
            logger.error(f"Error fetching data from database: {exc}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    @_app.get("/whatsapp-status", summary="Account session readiness")
    def whatsapp_status():
        ready = _api.account_status()["ready"]
        return {"status": "ready" if ready else "not_ready"}

    @_app.get("/qrcode", summary="Latest QR challenge")
    def get_qrcode():
        qr = _api.current_qr_challenge()
        if qr is None:
            return JSONResponse(status_code=404, content={"error": "QR code not generated yet"})
        return {"qr": qr}

    @_app.get("/health", summary="Health check")
    def health():
        try:
            bridge_ready = source.is_ready()
        except EventSourceUnavailable as exc:
            logger.warning(f"Bridge health check failed: {exc}")
            bridge_ready = False
        return {
            "status":       "ok",
            "db_path":      str(store.db_path),
            "ready":        state.is_ready(),
            "bridge_ready": bridge_ready,
            "version":      __version__,
        }

    # ── BRIDGE WEBHOOKS ─────────────────────────────────────────────────

    @_app.post("/events", summary="Ingest one message from the bridge")
    def post_event(payload: Dict[str, Any] = Body(...)):
        try:
            event = event_from_payload(payload)
        except ValueError as exc:
            return JSONResponse(status_code=422, content={"error": str(exc)})
        try:
            recorded = _api.ingest(event)
        except AggregationError as exc:
            logger.error(f"Event ingestion failed: {exc}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Internal Server Error"})
        return {"status": "recorded" if recorded else "ignored"}

    @_app.post("/session/qr", summary="Bridge issued a QR challenge")
    def session_qr(payload: QrPayload):
        state.on_qr(payload.qr)
        return {"status": "ok"}

    @_app.post("/session/ready", summary="Bridge session ready")
    def session_ready():
        state.on_ready()
        return {"status": "ok"}

    @_app.post("/session/auth_failure", summary="Bridge authentication failed")
    def session_auth_failure():
        state.on_auth_failure()
        return {"status": "ok"}

    @_app.post("/session/disconnected", summary="Bridge session lost")
    def session_disconnected():
        state.on_disconnected()
        return {"status": "ok"}

    return _app


def _default_app() -> FastAPI:
    from voxtally.config import ensure_config
    cfg = ensure_config()
    return _build_app(db_path=Path(cfg["db_path"]), config=cfg)


_app_instance: Optional[FastAPI] = None


def __getattr__(name: str):
    # Module-level `app` for uvicorn voxtally.api:app, built on first access.
    global _app_instance
    if name == "app":
        if _app_instance is None:
            _app_instance = _default_app()
        return _app_instance
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
