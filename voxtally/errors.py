"""
voxtally/errors.py
Exception taxonomy shared by the store, aggregator and event sources.

A phone number that cannot be formatted is NOT an error: normalize()
returns NormalizedPhone(parsed=False) and the raw digits are used.
"""


class VoxtallyError(Exception):
    """Base class for all voxtally failures."""


class StoreError(VoxtallyError):
    """SQLite rejected a read or write (disk, constraint, connection)."""


class AggregationError(VoxtallyError):
    """An eligible event could not be written to the ledger."""


class EventSourceUnavailable(VoxtallyError):
    """The messaging bridge could not be reached or returned garbage."""
