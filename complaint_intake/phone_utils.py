"""
Caller-id normalisation (E.164) using the `phonenumbers` library.
"""

from __future__ import annotations

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

UNKNOWN_CALLER = "unknown"

# Values Twilio uses in `From` when the caller id is withheld.
_WITHHELD = {"", "anonymous", "restricted", "unavailable", "unknown", "private"}


def normalise_phone(raw: str | None, region: str = "US") -> str:
    """
    Return the E.164 form of ``raw`` when it parses as a valid number,
    the stripped raw string when it doesn't, and ``"unknown"`` for
    withheld or empty caller ids.
    """
    cleaned = (raw or "").strip()
    if cleaned.lower() in _WITHHELD:
        return UNKNOWN_CALLER

    try:
        parsed = phonenumbers.parse(cleaned, region)
    except NumberParseException:
        return cleaned

    if not phonenumbers.is_valid_number(parsed):
        return cleaned

    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)


def format_for_display(number: str) -> str:
    """International format for tables; non-numbers are returned unchanged."""
    try:
        parsed = phonenumbers.parse(number, None)
    except NumberParseException:
        return number
    if not phonenumbers.is_valid_number(parsed):
        return number
    return phonenumbers.format_number(parsed, PhoneNumberFormat.INTERNATIONAL)
