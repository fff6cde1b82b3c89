"""
voxtally: per-sender voice-message duration ledger for a WhatsApp account.
"""

__version__ = '1.0.0'
