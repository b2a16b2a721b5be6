"""Customer identity aggregate, keyed by normalised MSISDN.

The funnel modelled here is Visitor -> Identified -> Customer.  A customer
document stores denormalised counters and attribution strings only; it never
embeds billing events or visitor sessions, so the three aggregates can be
written independently.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from billing_core.storage.models.base import MongoModel, utcnow


class ConversionStatus(StrEnum):
    """Funnel stage; only ever moves forward."""

    VISITOR = "visitor"
    IDENTIFIED = "identified"
    CUSTOMER = "customer"

    @property
    def rank(self) -> int:
        return _CONVERSION_RANK[self]


_CONVERSION_RANK: dict[ConversionStatus, int] = {
    ConversionStatus.VISITOR: 0,
    ConversionStatus.IDENTIFIED: 1,
    ConversionStatus.CUSTOMER: 2,
}


def statuses_below(status: ConversionStatus) -> list[str]:
    """Statuses a customer may be upgraded *from* when moving to *status*."""
    return [s.value for s in ConversionStatus if s.rank < status.rank]


class CustomerSession(BaseModel):
    """Entry of the bounded recent-session history."""

    session_id: str
    first_seen_at: datetime
    last_seen_at: datetime
    landing_page_slug: str | None = None
    campaign: str | None = None
    source: str | None = None


class Customer(MongoModel):
    normalized_msisdn: str = Field(alias="_id")
    msisdn: str
    tenant_id: str
    conversion_status: ConversionStatus = ConversionStatus.VISITOR
    identified_at: datetime | None = None
    converted_at: datetime | None = None
    first_purchase_date: datetime | None = None
    last_purchase_date: datetime | None = None
    last_billing_date: datetime | None = None
    # linked human account
    user_id: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    # attribution
    first_landing_page: str | None = None
    last_landing_page: str | None = None
    landing_pages_visited: list[str] = Field(default_factory=list)
    carrier: str | None = None
    country: str | None = None
    top_campaign: str | None = None
    top_source: str | None = None
    # activity
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    total_visits: int = 0
    visits_last_30d: int = 0
    heavy_user_flag: bool = False
    sessions: list[CustomerSession] = Field(default_factory=list)
    # billing
    total_billing_amount: int = 0
    total_purchases: int = 0
    repurchase_count: int = 0
    average_purchase_value: int = 0
    applied_purchase_refs: list[str] = Field(default_factory=list)
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class IdentifiedInput(BaseModel):
    """Signal that a subscriber number was observed for a visitor."""

    msisdn: str
    tenant_id: str
    normalized_msisdn: str | None = None
    session_id: str | None = None
    landing_page_slug: str | None = None
    campaign: str | None = None
    source: str | None = None
    carrier: str | None = None
    country: str | None = None
    user_id: str | None = None
    user_email: str | None = None
    user_name: str | None = None


class VisitMeta(BaseModel):
    session_id: str | None = None
    landing_page_slug: str | None = None
    campaign: str | None = None
    source: str | None = None


class CustomerFilters(BaseModel):
    msisdn_contains: str | None = None
    tenant_id: str | None = None
    heavy_user_only: bool = False
    min_visits: int | None = None
    campaign: str | None = None
    source: str | None = None
    conversion_status: ConversionStatus | None = None
    landing_page_slug: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=1000)


class LandingPageStats(BaseModel):
    landing_page_slug: str
    visitors: int = 0
    identified: int = 0
    customers: int = 0
    revenue: int = 0
    conversion_rate: float = 0.0
    repurchase_rate: float = 0.0
    average_order_value: int = 0


class CustomerStats(BaseModel):
    total_customers: int = 0
    heavy_users: int = 0
    active_last_week: int = 0
    active_last_month: int = 0
    total_billing_amount: int = 0
