"""
voxtally/sources/base.py
Abstract base class for all event sources.
To add a new backend: subclass EventSource and implement the three lookups.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from voxtally.models.record import ChatSnapshot


class EventSource(ABC):
    """
    The aggregator and API call these lookups; they never know which
    backend is running. All methods raise EventSourceUnavailable on
    transport failure.
    """

    @abstractmethod
    def is_ready(self) -> bool:
        """True when the account session is authenticated and usable."""
        ...

    @abstractmethod
    def get_contact_display_name(self, sender_id: str) -> Optional[str]:
        """
        Push name / saved name for a sender, or None if the contact
        has none.
        """
        ...

    @abstractmethod
    def list_chats_with_last_message(self) -> List[ChatSnapshot]:
        """Live chat listing, each with its most recent message."""
        ...
