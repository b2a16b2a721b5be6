"""Per-(subscriber, content item) access grants."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from billing_core.storage.models.base import MongoModel, utcnow
from billing_core.storage.models.billing import BillingStatus


class GrantStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    @classmethod
    def mirror(cls, status: BillingStatus | str) -> GrantStatus:
        """Grant status that follows a billing event's status change."""
        return {
            BillingStatus.PENDING: cls.PENDING,
            BillingStatus.BILLED: cls.PENDING,
            BillingStatus.COMPLETED: cls.COMPLETED,
            BillingStatus.REFUNDED: cls.REFUNDED,
            BillingStatus.CHARGEBACK: cls.REFUNDED,
            BillingStatus.FAILED: cls.FAILED,
            BillingStatus.CANCELLED: cls.FAILED,
        }[BillingStatus(status)]


class GrantSource(StrEnum):
    PROCESSOR = "processor"
    IMPORT = "import"
    MANUAL = "manual"


class UnlockGrant(MongoModel):
    msisdn: str
    normalized_msisdn: str
    content_item: str
    transaction_id: str
    billing_event_id: str | None = None
    amount: int
    currency: str = "EUR"
    status: GrantStatus = GrantStatus.COMPLETED
    granted_by: GrantSource = GrantSource.PROCESSOR
    granted_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class UnlockStats(BaseModel):
    total_unlocks: int = 0
    total_revenue: int = 0
    unique_users: int = 0
