"""
voxtally/parsers/phone_parser.py
Sender id → ledger key normalization.

WhatsApp delivers senders as '<digits>@c.us' (or '@s.whatsapp.net',
sometimes with a ':<device>' suffix on multi-device sessions). The
bare digit string is the ledger key. phonenumbers is used ONLY to build
a human-readable national format; the key never depends on its output.

normalize() is total: malformed ids fall back to the stripped id.
"""

import logging

import phonenumbers

from voxtally.models.record import NormalizedPhone

logger = logging.getLogger(__name__)

DEFAULT_REGION = 'PK'


def strip_platform_suffix(raw_id: str) -> str:
    """'923001234567:3@s.whatsapp.net' → '923001234567'."""
    bare = (raw_id or '').strip()
    bare = bare.split('@', 1)[0]
    bare = bare.split(':', 1)[0]
    return bare.strip()


def normalize(raw_id: str, default_region: str = DEFAULT_REGION) -> NormalizedPhone:
    """
    Normalize a raw sender id.

    Args:
        raw_id:         sender id as delivered by the bridge.
        default_region: ISO region used to parse numbers without a '+'.

    Returns:
        NormalizedPhone. parsed=False when the id is not a possible
        phone number; display_format is then the bare key.

    Examples:
        >>> normalize('923001234567@c.us').key
        '923001234567'
        >>> normalize('abc').display_format
        'abc'
    """
    key = strip_platform_suffix(raw_id)
    if not key:
        fallback = (raw_id or '').strip()
        return NormalizedPhone(key=fallback, display_format=fallback, parsed=False)

    try:
        number = phonenumbers.parse(key, default_region)
        if not phonenumbers.is_possible_number(number):
            logger.debug(f"Not a possible number for region {default_region}: {key}")
            return NormalizedPhone(key=key, display_format=key, parsed=False)
        display = phonenumbers.format_number(
            number, phonenumbers.PhoneNumberFormat.NATIONAL
        )
        return NormalizedPhone(key=key, display_format=display or key, parsed=True)

    except phonenumbers.NumberParseException as e:
        logger.debug(f"Could not parse sender id '{key}': {e}")
    except Exception as e:
        logger.warning(f"Unexpected error normalizing sender id '{key}': {e}")
    return NormalizedPhone(key=key, display_format=key, parsed=False)
