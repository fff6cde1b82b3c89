"""
voxtally/store/ledger_store.py
SQLite-backed duration ledger.

SCHEMA DESIGN NOTES:
- user_durations is the ledger: one row per PhoneKey (UNIQUE(name))
- processed_events records platform message ids already counted,
  so a redelivered event is ignored instead of double-counted
- ledger_meta stores the schema version
- All timestamps stored as INTEGER epoch SECONDS (WhatsApp format)

WRITE PATH:
  Every mutation goes through upsert_add(), which holds the store's
  write lock and issues ONE atomic INSERT ... ON CONFLICT DO UPDATE
  inside a BEGIN IMMEDIATE transaction. Same-key increments therefore
  never interleave, whether they come from request threads in this
  process or from another process sharing the file.
  Reads open their own connection (WAL) and never wait on the lock.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from voxtally.errors import StoreError
from voxtally.models.record import LedgerRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = '1.0'


class LedgerStore:
    """
    Durable PhoneKey → LedgerRecord mapping.

    Usage:
        store = LedgerStore(Path("voxtally.db"))
        store.upsert_add("923001234567", "Ali", 12, 1700000000)
        store.get("923001234567").total_duration_sec   # 12
    """

    def __init__(self, db_path: Path = Path("voxtally.db"), busy_timeout_sec: float = 30.0):
        self.db_path          = Path(db_path)
        self.busy_timeout_sec = busy_timeout_sec
        self._write_lock      = threading.Lock()
        self._schema_ready    = False

    # ── INTERNAL ──────────────────────────────────────────────────────────

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_sec,
            isolation_level=None,        # explicit BEGIN/COMMIT below
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _connect(self) -> sqlite3.Connection:
        if not self._schema_ready:
            self.init_schema()
        return self._open()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> LedgerRecord:
        return LedgerRecord(
            id                 = row["id"],
            key                = row["name"],
            display_name       = row["notify_name"] or row["name"],
            total_duration_sec = row["total_duration"],
            last_timestamp     = row["last_timestamp"],
        )

    # ── SCHEMA ────────────────────────────────────────────────────────────

    def init_schema(self) -> None:
        """Create tables if missing. Safe to call repeatedly."""
        try:
            conn = self._open()
        except sqlite3.Error as e:
            logger.error(f"Cannot open ledger database {self.db_path}: {e}")
            raise StoreError(f"cannot open ledger database: {self.db_path}") from e
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS user_durations (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    name            TEXT    NOT NULL,   -- PhoneKey (bare digits)
                    notify_name     TEXT,               -- last-seen display name
                    total_duration  INTEGER NOT NULL DEFAULT 0
                                    CHECK (total_duration >= 0),
                    last_timestamp  INTEGER NOT NULL,
                    UNIQUE(name)
                );

                CREATE TABLE IF NOT EXISTS processed_events (
                    message_id      TEXT    PRIMARY KEY,
                    name            TEXT    NOT NULL,
                    recorded_at     INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ledger_meta (
                    key             TEXT PRIMARY KEY,
                    value           TEXT
                );
            """)
            conn.execute(
                "INSERT OR IGNORE INTO ledger_meta (key, value) VALUES ('schema_version', ?)",
                (SCHEMA_VERSION,),
            )
        except sqlite3.Error as e:
            logger.error(f"Ledger schema creation failed: {e}", exc_info=True)
            raise StoreError("ledger schema creation failed") from e
        finally:
            conn.close()
        self._schema_ready = True

    # ── READS ─────────────────────────────────────────────────────────────

    def get(self, key: str) -> Optional[LedgerRecord]:
        """Point lookup by PhoneKey. None when the sender has no row yet."""
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM user_durations WHERE name = ?", (key,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Ledger read failed for {key}: {e}", exc_info=True)
            raise StoreError("ledger read failed") from e
        return self._row_to_record(row) if row else None

    def list_all(self) -> List[LedgerRecord]:
        """All ledger rows in insertion order."""
        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT * FROM user_durations ORDER BY id"
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Ledger listing failed: {e}", exc_info=True)
            raise StoreError("ledger listing failed") from e
        return [self._row_to_record(r) for r in rows]

    def is_processed(self, message_id: str) -> bool:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT 1 FROM processed_events WHERE message_id = ?", (message_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Processed-event lookup failed: {e}", exc_info=True)
            raise StoreError("processed-event lookup failed") from e
        return row is not None

    # ── WRITE ─────────────────────────────────────────────────────────────

    def upsert_add(
        self,
        key:          str,
        display_name: str,
        delta_sec:    int,
        timestamp:    int,
        message_id:   Optional[str] = None,
    ) -> bool:
        """
        Add delta_sec to the sender's total, creating the row if absent.
        display_name and last_timestamp are overwritten unconditionally.

        When message_id is given and was already recorded, nothing
        changes and False is returned.

        Raises:
            ValueError: delta_sec is negative.
            StoreError: SQLite rejected the write, or a value does not
                        fit a 64-bit integer. The transaction is
                        rolled back; the ledger is unchanged.
        """
        delta_sec = int(delta_sec)
        if delta_sec < 0:
            raise ValueError(f"delta_sec must be non-negative, got {delta_sec}")

        with self._write_lock:
            try:
                conn = self._connect()
            except sqlite3.Error as e:
                logger.error(f"Cannot open ledger for write: {e}", exc_info=True)
                raise StoreError("ledger write failed") from e
            try:
                conn.execute("BEGIN IMMEDIATE")

                if message_id:
                    cur = conn.execute(
                        "INSERT OR IGNORE INTO processed_events "
                        "(message_id, name, recorded_at) VALUES (?,?,?)",
                        (message_id, key, int(timestamp)),
                    )
                    if cur.rowcount == 0:
                        conn.execute("ROLLBACK")
                        logger.info(f"Duplicate event {message_id} for {key} ignored")
                        return False

                conn.execute("""
                    INSERT INTO user_durations
                    (name, notify_name, total_duration, last_timestamp)
                    VALUES (?,?,?,?)
                    ON CONFLICT(name) DO UPDATE SET
                        total_duration = user_durations.total_duration + excluded.total_duration,
                        notify_name    = excluded.notify_name,
                        last_timestamp = excluded.last_timestamp
                """, (key, display_name, delta_sec, int(timestamp)))

                total = conn.execute(
                    "SELECT total_duration FROM user_durations WHERE name = ?", (key,)
                ).fetchone()[0]
                conn.execute("COMMIT")

            except (sqlite3.Error, OverflowError) as e:
                # OverflowError: value does not fit a 64-bit SQLite INTEGER
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.error(f"Ledger write failed for {key}: {e}", exc_info=True)
                raise StoreError("ledger write failed") from e
            finally:
                conn.close()

        logger.info(f"Ledger {key} ({display_name}): +{delta_sec}s → total {total}s")
        return True
