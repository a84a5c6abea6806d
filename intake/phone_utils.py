"""
Phone-number normalisation (E.164) used wherever caller numbers are compared.
Numbers without a country code are parsed against a default region (US).
Uses the `phonenumbers` library.
"""

from __future__ import annotations

from typing import Iterable

import phonenumbers
from phonenumbers import PhoneNumberFormat, NumberParseException

# Default region for numbers without a country code
DEFAULT_REGION = "US"


def normalise_phone(raw: str, region: str = DEFAULT_REGION) -> str:
    """
    Normalise a raw phone string to E.164.

    Never raises. When the string cannot be parsed, or parses to something
    that cannot be a phone number, the original string is returned unchanged
    so callers fall back to exact-string matching.
    """
    if not isinstance(raw, str):
        return raw
    cleaned = raw.strip()
    if not cleaned:
        return raw

    # Bare international digits, e.g. "14155550100"
    if cleaned.isdigit() and len(cleaned) > 10 and not cleaned.startswith("0"):
        cleaned = "+" + cleaned

    try:
        parsed = phonenumbers.parse(cleaned, region)
    except NumberParseException:
        return raw

    if not phonenumbers.is_possible_number(parsed):
        return raw

    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)


def normalise_candidates(raw_numbers: Iterable[object], region: str = DEFAULT_REGION) -> list[str]:
    """
    Normalise candidate phone fields in priority order.

    Empty / non-string values are skipped and duplicates collapse onto their
    first position, so the caller can treat the list as a lookup order.
    """
    seen: set[str] = set()
    out: list[str] = []
    for raw in raw_numbers:
        if not isinstance(raw, str) or not raw.strip():
            continue
        e164 = normalise_phone(raw, region)
        if e164 not in seen:
            seen.add(e164)
            out.append(e164)
    return out

