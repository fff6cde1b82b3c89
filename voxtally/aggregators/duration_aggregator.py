"""
voxtally/aggregators/duration_aggregator.py
Voice-message duration aggregation.

Turns a stream of VoiceMessageEvents into per-sender totals in the
ledger. Holds no state of its own: each record_event() call is one
normalize → resolve name → upsert_add.

ELIGIBILITY:
  Only received voice notes count (msg_type 'ptt'/'voice', from_me False).
  Anything else is a no-op, even if the bridge forwarded it.

DISPLAY NAME FALLBACK ORDER:
  event.display_name_hint → source contact lookup → national format → raw id
  A failing contact lookup never aborts the event.

DUPLICATES:
  Events carrying message_id are counted once (see LedgerStore).
  Events without one are counted every time they arrive.
"""

import logging
from typing import Iterable, Optional

from voxtally.errors import AggregationError, EventSourceUnavailable, StoreError
from voxtally.models.record import VoiceMessageEvent
from voxtally.parsers.phone_parser import DEFAULT_REGION, normalize
from voxtally.sources.base import EventSource
from voxtally.store.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

VOICE_TYPES = ('ptt', 'voice')


def is_eligible(event: VoiceMessageEvent) -> bool:
    """True for received voice messages."""
    return (event.msg_type or '').lower() in VOICE_TYPES and not event.from_me


class DurationAggregator:

    def __init__(
        self,
        store:          LedgerStore,
        source:         Optional[EventSource] = None,
        default_region: str = DEFAULT_REGION,
    ):
        self.store          = store
        self.source         = source
        self.default_region = default_region

    def record_event(self, event: VoiceMessageEvent) -> bool:
        """
        Add one voice message's duration to its sender's total.

        Returns True if the ledger changed, False if the event was not
        eligible or was a duplicate.

        Raises:
            AggregationError: the store rejected the write.
        """
        if not is_eligible(event):
            logger.debug(
                f"Ignored message type={event.msg_type!r} from_me={event.from_me}"
            )
            return False

        phone = normalize(event.sender_raw_id, self.default_region)
        name  = self._resolve_display_name(event, phone.display_format)

        logger.info(
            f"Received voice message: sender={phone.key} name={name} "
            f"duration={event.duration_sec}s ts={event.timestamp}"
        )

        try:
            return self.store.upsert_add(
                phone.key,
                name,
                event.duration_sec,
                event.timestamp,
                message_id=event.message_id,
            )
        except StoreError as e:
            raise AggregationError(
                f"could not record {event.duration_sec}s for {phone.key}"
            ) from e

    def record_events(self, events: Iterable[VoiceMessageEvent]) -> int:
        """Record events in order. Returns how many changed the ledger."""
        applied = 0
        for event in events:
            if self.record_event(event):
                applied += 1
        return applied

    # ── HELPERS ──────────────────────────────────────────────

    def _resolve_display_name(self, event: VoiceMessageEvent, display_format: str) -> str:
        hint = (event.display_name_hint or '').strip()
        if hint:
            return hint

        if self.source is not None:
            try:
                looked_up = self.source.get_contact_display_name(event.sender_raw_id)
                if looked_up:
                    return looked_up
            except EventSourceUnavailable as e:
                logger.warning(f"Contact lookup failed for {event.sender_raw_id}, using fallback: {e}")

        return display_format or event.sender_raw_id
