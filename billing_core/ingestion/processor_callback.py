"""Inbound real-time callbacks from the carrier billing processor.

A callback reports one charge.  When a shared secret is configured the
processor signs ``transaction_id|msisdn|amount|timestamp`` (values exactly as
sent) with HMAC-SHA256 and passes the hex digest in ``X-Callback-Signature``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from billing_core.ingestion.billing_row_parser import parse_status
from billing_core.storage.errors import InvalidCallbackSignature
from billing_core.storage.models.billing import BillingStatus

logger = logging.getLogger(__name__)

SIGNED_FIELDS = ("transaction_id", "msisdn", "amount", "timestamp")

_SUCCESS_STATUSES = frozenset({"success", "successful", "completed", "complete", "ok", "paid"})


class ProcessorCallback(BaseModel):
    """Payload of one processor callback; ``amount`` is in minor units."""

    msisdn: str
    amount: int = Field(ge=0)
    currency: str = "EUR"
    transaction_id: str = Field(min_length=1)
    timestamp: datetime
    product_code: str | None = None
    status: str = "success"
    content_item: str | None = None
    content_slug: str | None = None
    session_id: str | None = None
    service_name: str | None = None

    @property
    def billing_status(self) -> BillingStatus:
        """A successful charge is completed; anything else goes through keyword matching."""
        text = self.status.strip().lower()
        if text in _SUCCESS_STATUSES:
            return BillingStatus.COMPLETED
        return parse_status(text)


def canonical_callback_string(payload: Mapping[str, Any]) -> str:
    return "|".join("" if payload.get(k) is None else str(payload.get(k)) for k in SIGNED_FIELDS)


def sign_callback(payload: Mapping[str, Any], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical_callback_string(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_callback_signature(payload: Mapping[str, Any], signature: str, secret: str) -> None:
    """Raise :class:`InvalidCallbackSignature` unless *signature* matches.

    Verification is skipped when no secret is configured.
    """
    if not secret:
        logger.warning("BILLING_CALLBACK_SECRET not set -- skipping verification")
        return
    expected = sign_callback(payload, secret)
    if not hmac.compare_digest(expected, signature or ""):
        raise InvalidCallbackSignature(
            f"Invalid signature for transaction {payload.get('transaction_id')}"
        )
