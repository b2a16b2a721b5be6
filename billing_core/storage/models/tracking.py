"""Anonymous visitor sessions and the context used to open them."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from billing_core.storage.models.base import MongoModel, utcnow


class MsisdnConfidence(StrEnum):
    """How sure we are that a session belongs to a subscriber number."""

    NONE = "NONE"
    UNCONFIRMED = "UNCONFIRMED"
    CONFIRMED = "CONFIRMED"

    @property
    def rank(self) -> int:
        return list(MsisdnConfidence).index(self)


class NetworkType(StrEnum):
    MOBILE_DATA = "MOBILE_DATA"
    WIFI = "WIFI"
    UNKNOWN = "UNKNOWN"


class DeviceInfo(BaseModel):
    type: str = "unknown"
    os: str | None = None
    os_version: str | None = None
    browser: str | None = None
    browser_version: str | None = None
    model: str | None = None
    vendor: str | None = None


class UtmParams(BaseModel):
    source: str | None = None
    medium: str | None = None
    campaign: str | None = None
    adgroup: str | None = None
    creative: str | None = None
    content: str | None = None
    term: str | None = None


class SessionContext(BaseModel):
    """Request context supplied by the cookie/session layer."""

    tenant_id: str
    ip: str = ""
    user_agent: str = ""
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    referrer: str | None = None
    utm: UtmParams = Field(default_factory=UtmParams)
    landing_page_id: str | None = None
    landing_page_slug: str | None = None
    page_url: str | None = None


class VisitorSession(MongoModel):
    session_id: str
    tenant_id: str
    landing_page_id: str | None = None
    landing_page_slug: str | None = None
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    ip: str = ""
    user_agent: str = ""
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    referrer: str | None = None
    utm: UtmParams = Field(default_factory=UtmParams)
    msisdn: str | None = None
    normalized_msisdn: str | None = None
    msisdn_confidence: MsisdnConfidence = MsisdnConfidence.NONE
    network_type: NetworkType = NetworkType.UNKNOWN
    carrier: str | None = None
    carrier_code: str | None = None
    page_views: int = 0
    events: int = 0
    entered_portal: bool = False
    purchase_completed: bool = False
    last_page_url: str | None = None


class SessionFilters(BaseModel):
    tenant_id: str | None = None
    msisdn_confidence: MsisdnConfidence | None = None
    network_type: NetworkType | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=1000)


class SessionStats(BaseModel):
    total_sessions: int = 0
    msisdn_confirmed: int = 0
    mobile_data: int = 0
    wifi: int = 0
    entered_portal: int = 0
