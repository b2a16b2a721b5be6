"""Billing events and bulk-import bookkeeping.

A :class:`BillingEvent` is the immutable record of one carrier charge,
whichever way it reached us (processor callback, settlement file, SMS
billing, ...).  An :class:`ImportBatch` tracks one bulk file from upload to
its terminal status.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from billing_core.storage.models.base import MongoModel, utcnow

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class BillingSource(StrEnum):
    """Originating channel of a billing event."""

    PROCESSOR = "processor"
    BULK_IMPORT = "bulk_import"
    SMS_BILLING = "sms_billing"
    SUBSCRIPTION = "subscription"
    OTHER = "other"


class BillingStatus(StrEnum):
    PENDING = "pending"
    BILLED = "billed"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CHARGEBACK = "chargeback"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ImportSource(StrEnum):
    """Kind of file an operator uploaded."""

    DIMOCO = "DIMOCO"
    SMS = "SMS"
    SUBSCRIPTION = "SUBSCRIPTION"
    OTHER = "OTHER"

    @property
    def billing_source(self) -> BillingSource:
        return {
            ImportSource.DIMOCO: BillingSource.BULK_IMPORT,
            ImportSource.SMS: BillingSource.SMS_BILLING,
            ImportSource.SUBSCRIPTION: BillingSource.SUBSCRIPTION,
        }.get(self, BillingSource.OTHER)


class ImportStatus(StrEnum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_IMPORT_STATUSES = frozenset(
    {ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED}
)


# ---------------------------------------------------------------------------
# Billing events
# ---------------------------------------------------------------------------


class BillingEventInput(BaseModel):
    """Caller-side description of a charge, before identifiers are derived."""

    msisdn: str
    tenant_id: str
    source: BillingSource
    amount: int
    normalized_msisdn: str | None = None
    event_id: str | None = None
    currency: str = "EUR"
    product_code: str | None = None
    service_name: str | None = None
    description: str | None = None
    event_time: datetime | None = None
    status: BillingStatus = BillingStatus.BILLED
    raw_payload: dict[str, Any] | None = None
    import_batch_id: str | None = None
    session_id: str | None = None
    content_item: str | None = None
    content_slug: str | None = None
    transaction_id: str | None = None


class BillingEvent(MongoModel):
    """Stored billing event; ``event_id`` is the document ``_id``."""

    event_id: str = Field(alias="_id")
    msisdn: str
    normalized_msisdn: str
    tenant_id: str
    source: BillingSource
    amount: int
    currency: str = "EUR"
    product_code: str | None = None
    service_name: str | None = None
    description: str | None = None
    event_time: datetime
    status: BillingStatus = BillingStatus.BILLED
    raw_payload: dict[str, Any] | None = None
    import_batch_id: str | None = None
    session_id: str | None = None
    content_item: str | None = None
    content_slug: str | None = None
    transaction_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def purchase_ref(self) -> str:
        """Reference used to make downstream effects apply once per purchase."""
        return self.transaction_id or self.event_id


class BillingEventFilters(BaseModel):
    normalized_msisdn: str | None = None
    msisdn_contains: str | None = None
    tenant_id: str | None = None
    source: BillingSource | None = None
    status: BillingStatus | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    import_batch_id: str | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=1000)


class SourceTotals(BaseModel):
    count: int = 0
    amount: int = 0


class BillingStats(BaseModel):
    total_events: int = 0
    total_amount: int = 0
    by_source: dict[str, SourceTotals] = Field(default_factory=dict)
    by_status: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Import batches
# ---------------------------------------------------------------------------


class ColumnMapping(BaseModel):
    """Maps canonical billing fields to the column names of an import file."""

    msisdn: str = "msisdn"
    transaction_id: str = "transaction_id"
    amount: str = "amount"
    status: str = "status"
    date: str = "date"
    currency: str | None = None
    product_code: str | None = None
    description: str | None = None


class ImportRowError(BaseModel):
    row: int
    message: str
    field: str | None = None
    data: dict[str, Any] | None = None


class ImportBatchCreate(BaseModel):
    tenant_id: str
    file_name: str
    uploaded_by: str
    source: ImportSource = ImportSource.DIMOCO
    original_file_name: str | None = None
    file_size: int | None = None
    column_mapping: ColumnMapping = Field(default_factory=ColumnMapping)
    notes: str | None = None


class ImportBatch(MongoModel):
    batch_id: str = Field(alias="_id", default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    file_name: str
    original_file_name: str | None = None
    file_size: int | None = None
    uploaded_by: str
    uploaded_at: datetime = Field(default_factory=utcnow)
    source: ImportSource = ImportSource.DIMOCO
    status: ImportStatus = ImportStatus.PROCESSING
    total_rows: int = 0
    accepted: int = 0
    rejected: int = 0
    duplicates: int = 0
    errors: list[ImportRowError] = Field(default_factory=list)
    column_mapping: ColumnMapping = Field(default_factory=ColumnMapping)
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    failure_reason: str | None = None
    notes: str | None = None


class ImportBatchFilters(BaseModel):
    tenant_id: str | None = None
    source: ImportSource | None = None
    status: ImportStatus | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=500)
