"""
voxtally/sources/state.py
Account readiness + latest QR challenge.

One AccountState is created at app build time and handed to both the
webhook routes (writers) and VoxtallyAPI (reader). Lifecycle callbacks
are the only mutators.
"""

import logging
import threading
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AccountState:

    def __init__(self):
        self._lock  = threading.Lock()
        self._ready = False
        self._qr: Optional[str] = None

    # ── LIFECYCLE CALLBACKS ──────────────────────────────────
    def on_qr(self, payload: str) -> None:
        with self._lock:
            self._qr = payload
        logger.info("QR challenge received from bridge")

    def on_ready(self) -> None:
        with self._lock:
            self._ready = True
        logger.info("WhatsApp session is ready")

    def on_auth_failure(self) -> None:
        with self._lock:
            self._ready = False
        logger.error("WhatsApp authentication failed")

    def on_disconnected(self) -> None:
        with self._lock:
            self._ready = False
        logger.warning("WhatsApp session disconnected")

    # ── READERS ──────────────────────────────────────────────
    def is_ready(self) -> bool:
        with self._lock:
            return self._ready

    def current_qr(self) -> Optional[str]:
        with self._lock:
            return self._qr

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {"ready": self._ready, "qr": self._qr}
