"""
voxtally/models/record.py
Shared dataclass schema. Parsers, store, aggregator and API all
use these types. Do not add logic here, data only.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class NormalizedPhone:
    """Output of phone_parser.normalize()."""
    key:            str         # bare digits, ledger identity
    display_format: str         # national format, or key when unparsed
    parsed:         bool = True


@dataclass
class VoiceMessageEvent:
    """One inbound message as delivered by the bridge. Never persisted."""
    sender_raw_id:     str      # e.g. '923001234567@c.us'
    display_name_hint: str
    duration_sec:      int
    timestamp:         int      # epoch seconds
    msg_type:          str           = 'ptt'
    from_me:           bool          = False
    message_id:        Optional[str] = None   # platform id, idempotency key


@dataclass
class LedgerRecord:
    """One row of user_durations."""
    id:                 int
    key:                str
    display_name:       str
    total_duration_sec: int
    last_timestamp:     int


@dataclass
class ChatSnapshot:
    """A chat from the bridge listing plus its most recent message."""
    chat_name:    str
    last_message: Optional[VoiceMessageEvent] = None


@dataclass
class ChatDurationRow:
    """One entry of the /messages response."""
    name:           str
    total_duration: int           = 0
    timestamp:      Optional[str] = None
