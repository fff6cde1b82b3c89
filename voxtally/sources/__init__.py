"""
voxtally/sources: the messaging-account collaborator.

The WhatsApp session runs in a bridge process. It pushes messages and
lifecycle notifications to /events and /session/* and answers lookups
over its own REST API (BridgeEventSource).
"""

from voxtally.sources.base import EventSource
from voxtally.sources.state import AccountState

__all__ = [
    "AccountState",
    "EventSource",
]
