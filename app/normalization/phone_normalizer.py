"""Recipient phone normalizer.

Converts a raw parent/teacher phone string to an E.164-like form
(e.g. ``+919876543210``).  A bare 10-digit number is treated as domestic
and receives the default country code.

Both functions are pure: no I/O, no logging of raw values.
"""
from __future__ import annotations

import re

from app.core.security import hash_value

DEFAULT_COUNTRY_CODE = "91"

_NON_DIGITS = re.compile(r"\D")
_DOMESTIC = re.compile(r"^[6-9]\d{9}$")


def _digits(raw: str) -> str:
    return _NON_DIGITS.sub("", raw or "")


def normalize_phone(raw: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Return *raw* in ``+<country><number>`` form.

    - 10 digits: prefixed with ``+<country_code>``.
    - 12 digits starting with *country_code*: prefixed with ``+``.
    - anything else: the stripped digits with a leading ``+`` (best effort,
      not guaranteed valid; check with :func:`is_valid_phone`).
    """
    cleaned = _digits(raw)
    if len(cleaned) == 10:
        return f"+{country_code}{cleaned}"
    # Already carries the country code, or unknown length: digits only, one leading +.
    return f"+{cleaned}"


def is_valid_phone(raw: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> bool:
    """True for a 10-digit mobile number starting 6-9, with or without the country code."""
    cleaned = _digits(raw)
    if len(cleaned) == 10:
        return bool(_DOMESTIC.match(cleaned))
    if len(cleaned) == 10 + len(country_code) and cleaned.startswith(country_code):
        return bool(_DOMESTIC.match(cleaned[len(country_code):]))
    return False


def phone_key(normalized: str) -> str:
    """Storage key for per-phone state; the phone itself is never stored there."""
    return hash_value(normalized)
