"""Row-level parsing for bulk billing imports.

Turns one string-keyed row of a settlement file into a :class:`ParsedRow`
using the batch's :class:`ColumnMapping`.  Missing or unusable required
fields raise :class:`RowValidationError`; everything else is coerced
best-effort:

* amounts accept comma or dot decimals and currency decorations; values
  strictly between zero and the major-unit threshold are taken to be in
  major units (euros) and scaled to minor units;
* status keywords are matched by substring, case-insensitively;
* unparsable dates fall back to the current time.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel

from billing_core.ingestion.msisdn_normalizer import (
    DEFAULT_COUNTRY_CODE,
    is_valid_msisdn,
    mask_msisdn,
    normalize_msisdn,
)
from billing_core.storage.errors import BatchInputError, RowValidationError
from billing_core.storage.models.billing import BillingStatus, ColumnMapping

logger = logging.getLogger(__name__)

MAJOR_UNIT_THRESHOLD = 100

# ---------------------------------------------------------------------------
# Column detection
# ---------------------------------------------------------------------------

# Checked in order; each field claims the first unclaimed header containing a pattern.
_COLUMN_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("msisdn", ("msisdn", "phone", "mobile", "nummer", "number")),
    ("transaction_id", ("transaction", "trans_id", "reference", "id")),
    ("amount", ("amount", "price", "betrag", "value")),
    ("currency", ("currency", "waehrung", "curr")),
    ("status", ("status", "state")),
    ("date", ("date", "time", "datum", "timestamp", "created")),
    ("product_code", ("product", "service", "article", "produkt")),
    ("description", ("description", "desc", "beschreibung", "name")),
)

_HEADER_CLEAN_RE = re.compile(r"[^a-z0-9_]")


def _clean_header(header: str) -> str:
    return _HEADER_CLEAN_RE.sub("_", header.strip().lower())


def detect_column_mapping(headers: Iterable[str]) -> ColumnMapping:
    """Guess a :class:`ColumnMapping` from the header names of a file.

    Raises:
        BatchInputError: No column looks like a subscriber number.
    """
    columns = list(headers)
    cleaned = [_clean_header(h) for h in columns]
    claimed: set[int] = set()
    found: dict[str, str] = {}

    for field, patterns in _COLUMN_PATTERNS:
        for pattern in patterns:
            idx = next(
                (i for i, h in enumerate(cleaned) if i not in claimed and pattern in h),
                None,
            )
            if idx is not None:
                claimed.add(idx)
                found[field] = columns[idx]
                break

    if "msisdn" not in found:
        raise BatchInputError(f"Cannot find an MSISDN/phone column in {columns}")
    logger.debug("Detected column mapping %s", found)
    return ColumnMapping(**found)


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------

_AMOUNT_JUNK_RE = re.compile(r"[^0-9.,\-]")


def parse_amount(raw: str, major_unit_threshold: int = MAJOR_UNIT_THRESHOLD) -> int:
    """Parse an amount into integer minor units.

    ``"0,99"`` -> 99, ``"4.99 EUR"`` -> 499, ``"5"`` -> 500, ``"250"`` -> 250.

    Raises:
        RowValidationError: The value is not a number.
    """
    cleaned = _AMOUNT_JUNK_RE.sub("", raw.strip())
    if "," in cleaned and "." in cleaned:
        # The right-most separator is the decimal one.
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")

    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        raise RowValidationError(f"Invalid amount: {raw!r}", field="amount") from None
    if not value.is_finite():
        raise RowValidationError(f"Invalid amount: {raw!r}", field="amount")

    if 0 < abs(value) < major_unit_threshold:
        value *= 100
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# Checked in order; first keyword contained in the raw status wins.
_STATUS_KEYWORDS: tuple[tuple[str, BillingStatus], ...] = (
    ("refund", BillingStatus.REFUNDED),
    ("chargeback", BillingStatus.CHARGEBACK),
    ("fail", BillingStatus.FAILED),
    ("cancel", BillingStatus.CANCELLED),
    ("pend", BillingStatus.PENDING),
)


def parse_status(raw: str | None) -> BillingStatus:
    """Map a free-text status onto :class:`BillingStatus`; defaults to billed."""
    text = (raw or "").strip().lower()
    for keyword, status in _STATUS_KEYWORDS:
        if keyword in text:
            return status
    return BillingStatus.BILLED


_COMMON_TZ_OFFSETS: dict[str, str] = {
    "CEST": "+02:00",
    "CET": "+01:00",
    "UTC": "+00:00",
    "GMT": "+00:00",
}

_DATE_FORMATS: tuple[str, ...] = (
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


def parse_timestamp(raw: Any) -> datetime:
    """Best-effort timestamp parsing; always returns UTC, falls back to now."""
    if isinstance(raw, datetime):
        return raw.replace(tzinfo=UTC) if raw.tzinfo is None else raw.astimezone(UTC)
    if not raw or not str(raw).strip():
        return datetime.now(UTC)

    cleaned = str(raw).strip()
    if cleaned.isdigit():
        seconds = int(cleaned)
        # Millisecond epochs have 13 digits.
        return datetime.fromtimestamp(seconds / 1000 if len(cleaned) > 10 else seconds, tz=UTC)
    for abbr, offset in _COMMON_TZ_OFFSETS.items():
        cleaned = cleaned.replace(f" {abbr}", offset).replace(abbr, offset)
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"

    try:
        dt = datetime.fromisoformat(cleaned)
    except ValueError:
        dt = None
        for fmt in _DATE_FORMATS:
            try:
                dt = datetime.strptime(cleaned, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        logger.warning("Unparseable timestamp '%s'; defaulting to now()", raw)
        return datetime.now(UTC)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


class ParsedRow(BaseModel):
    """One import row with canonical, typed fields."""

    msisdn: str
    normalized_msisdn: str
    transaction_id: str
    amount: int
    currency: str = "EUR"
    status: BillingStatus = BillingStatus.BILLED
    event_time: datetime
    product_code: str | None = None
    description: str | None = None
    raw: dict[str, Any]


def _cell(row: Mapping[str, Any], column: str | None) -> str:
    if not column:
        return ""
    value = row.get(column)
    return "" if value is None else str(value).strip()


def map_row(
    row: Mapping[str, Any],
    mapping: ColumnMapping,
    *,
    country_code: str = DEFAULT_COUNTRY_CODE,
    major_unit_threshold: int = MAJOR_UNIT_THRESHOLD,
) -> ParsedRow:
    """Map and validate one raw row.

    Raises:
        RowValidationError: A required field is missing or unusable.
    """
    raw_msisdn = _cell(row, mapping.msisdn)
    if not raw_msisdn:
        raise RowValidationError("Missing MSISDN", field="msisdn")
    if not is_valid_msisdn(raw_msisdn, country_code):
        raise RowValidationError(f"Invalid phone number: {mask_msisdn(raw_msisdn)}", field="msisdn")

    transaction_id = _cell(row, mapping.transaction_id)
    if not transaction_id:
        raise RowValidationError("Missing transaction id", field="transaction_id")

    raw_amount = _cell(row, mapping.amount)
    if not raw_amount:
        raise RowValidationError("Missing amount", field="amount")

    return ParsedRow(
        msisdn=raw_msisdn,
        normalized_msisdn=normalize_msisdn(raw_msisdn, country_code),
        transaction_id=transaction_id,
        amount=parse_amount(raw_amount, major_unit_threshold),
        currency=_cell(row, mapping.currency).upper() or "EUR",
        status=parse_status(_cell(row, mapping.status)),
        event_time=parse_timestamp(_cell(row, mapping.date)),
        product_code=_cell(row, mapping.product_code) or None,
        description=_cell(row, mapping.description) or None,
        raw={str(k): v for k, v in row.items()},
    )
