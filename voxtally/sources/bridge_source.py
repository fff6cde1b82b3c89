"""
voxtally/sources/bridge_source.py
HTTP adapter for the WhatsApp bridge sidecar.

The bridge owns the whatsapp-web session (QR pairing, credentials,
reconnects). It exposes a small REST API that this adapter reads:

  GET /health              → {"ready": bool}
  GET /contacts/{id}       → {"pushname": str, "name": str}   (404 if unknown)
  GET /chats               → [{"name": str, "lastMessage": {...} | null}, ...]

Message payloads (here and on the /events webhook) use the bridge's
field names: from, notifyName, duration, timestamp, type, fromMe, id.
"""

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional

from voxtally.errors import EventSourceUnavailable
from voxtally.models.record import ChatSnapshot, VoiceMessageEvent
from voxtally.sources.base import EventSource

logger = logging.getLogger(__name__)

# Largest value a SQLite INTEGER column can hold.
MAX_INTEGER = 2**63 - 1


class BridgeEventSource(EventSource):

    def __init__(
        self,
        host:        str = 'http://localhost:3001',
        timeout_sec: int = 10,
    ):
        self.host        = host.rstrip('/')
        self.timeout_sec = timeout_sec

    # ── TRANSPORT ────────────────────────────────────────────
    def _get_json(self, path: str) -> Any:
        req = urllib.request.Request(f"{self.host}{path}", method='GET')
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                return json.loads(resp.read().decode('utf-8'))
        except urllib.error.HTTPError:
            raise
        except urllib.error.URLError as e:
            logger.warning(f"Bridge not reachable at {self.host}: {e}")
            raise EventSourceUnavailable(f"bridge not reachable: {self.host}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Bridge returned non-JSON for {path}: {e}")
            raise EventSourceUnavailable("bridge returned invalid JSON") from e
        except OSError as e:
            logger.warning(f"Bridge request {path} failed: {e}")
            raise EventSourceUnavailable("bridge request failed") from e

    # ── EventSource ──────────────────────────────────────────
    def is_ready(self) -> bool:
        try:
            data = self._get_json('/health')
        except urllib.error.HTTPError as e:
            raise EventSourceUnavailable(f"bridge health check: HTTP {e.code}") from e
        return bool(data.get('ready', False)) if isinstance(data, dict) else False

    def get_contact_display_name(self, sender_id: str) -> Optional[str]:
        path = '/contacts/' + urllib.parse.quote(sender_id, safe='')
        try:
            data = self._get_json(path)
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            raise EventSourceUnavailable(f"contact lookup: HTTP {e.code}") from e
        if not isinstance(data, dict):
            return None
        return data.get('pushname') or data.get('name') or None

    def list_chats_with_last_message(self) -> List[ChatSnapshot]:
        try:
            data = self._get_json('/chats')
        except urllib.error.HTTPError as e:
            raise EventSourceUnavailable(f"chat listing: HTTP {e.code}") from e
        if not isinstance(data, list):
            raise EventSourceUnavailable("chat listing is not a JSON array")

        chats: List[ChatSnapshot] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            last = item.get('lastMessage')
            message = None
            if isinstance(last, dict):
                try:
                    message = event_from_payload(last)
                except ValueError as e:
                    logger.debug(f"Skipped unparseable last message: {e}")
            chats.append(ChatSnapshot(
                chat_name    = str(item.get('name') or ''),
                last_message = message,
            ))
        logger.debug(f"Bridge listed {len(chats)} chats")
        return chats


# ── PAYLOAD PARSING ──────────────────────────────────────────

def event_from_payload(payload: Dict[str, Any]) -> VoiceMessageEvent:
    """
    Convert a bridge message payload into a VoiceMessageEvent.

    Raises ValueError when 'from' is missing, or duration/timestamp are
    not numeric or outside 0..MAX_INTEGER. Non-voice messages carry no
    duration and parse with 0; eligibility is decided by the aggregator.
    A missing timestamp means "now".
    """
    sender = payload.get('from')
    if not sender:
        raise ValueError("message payload has no 'from'")

    duration = _to_int(payload.get('duration'), 'duration', default=0)
    if duration < 0:
        raise ValueError(f"duration is negative: {duration}")

    timestamp = _to_int(payload.get('timestamp'), 'timestamp', default=int(time.time()))
    if timestamp < 0:
        raise ValueError(f"timestamp is negative: {timestamp}")

    return VoiceMessageEvent(
        sender_raw_id     = str(sender),
        display_name_hint = str(payload.get('notifyName') or ''),
        duration_sec      = duration,
        timestamp         = timestamp,
        msg_type          = str(payload.get('type') or ''),
        from_me           = bool(payload.get('fromMe', False)),
        message_id        = _message_id(payload.get('id')),
    )


def _to_int(value: Any, field_name: str, default: int) -> int:
    if value is None or value == '':
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f"{field_name} is not numeric: {value!r}")
    if number > MAX_INTEGER:
        raise ValueError(f"{field_name} is out of range: {value!r}")
    return number


def _message_id(raw: Any) -> Optional[str]:
    # whatsapp-web serializes ids as {"_serialized": "...", ...}
    if isinstance(raw, dict):
        raw = raw.get('_serialized') or raw.get('id')
    return str(raw) if raw else None
