"""MSISDN canonicalisation.

Every component keys subscribers by the digits-only international form
produced by :func:`normalize_msisdn`.  The function is pure and total: it
never raises, never touches storage, and is idempotent, so a value that has
already been normalised passes through unchanged.  Raw input is kept by the
callers for display and audit only.
"""

from __future__ import annotations

import re

DEFAULT_COUNTRY_CODE = "49"

_NON_DIGIT_RE = re.compile(r"\D")

# Longest prefixes first so that "1" does not shadow a two-digit code.
_COUNTRY_PREFIXES: tuple[tuple[str, str], ...] = (
    ("49", "DE"),
    ("43", "AT"),
    ("41", "CH"),
    ("44", "GB"),
    ("33", "FR"),
    ("39", "IT"),
    ("34", "ES"),
    ("31", "NL"),
    ("32", "BE"),
    ("48", "PL"),
    ("1", "US"),
)

MIN_DIGITS = 8
MAX_DIGITS = 15


def normalize_msisdn(raw: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Canonicalise a raw phone number into its digits-only international form.

    * every non-digit character is dropped (``+``, spaces, dashes, ...);
    * international ``00`` prefixes are stripped;
    * a remaining single leading ``0`` (local format) is replaced by
      *country_code*.

    Malformed input yields a best-effort digit string (possibly empty).
    """
    if not raw:
        return ""
    digits = _NON_DIGIT_RE.sub("", str(raw))
    while digits.startswith("00"):
        digits = digits[2:]
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    return digits


def is_valid_msisdn(raw: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> bool:
    """True when the normalised form has a plausible E.164 length."""
    normalized = normalize_msisdn(raw, country_code)
    return MIN_DIGITS <= len(normalized) <= MAX_DIGITS


def country_for_msisdn(raw: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> str | None:
    """ISO country for the number's calling-code prefix, if known."""
    normalized = normalize_msisdn(raw, country_code)
    for prefix, country in _COUNTRY_PREFIXES:
        if normalized.startswith(prefix):
            return country
    return None


def mask_msisdn(raw: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Hide all but the last four digits; used whenever a number is logged."""
    normalized = normalize_msisdn(raw, country_code)
    if len(normalized) < MIN_DIGITS:
        return "*" * len(normalized)
    return "*" * (len(normalized) - 4) + normalized[-4:]


def format_msisdn(raw: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Human-readable ``+49 170 1234 567`` form for German numbers."""
    normalized = normalize_msisdn(raw, country_code)
    if normalized.startswith("49") and len(normalized) >= 12:
        rest = normalized[2:]
        return f"+49 {rest[:3]} {rest[3:7]} {rest[7:]}"
    return f"+{normalized}" if normalized else ""
