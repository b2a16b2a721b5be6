"""System of record for billing events.

Events are keyed by a deterministic id (``_id``) derived from
``(normalized_msisdn, event_time, amount, source, product_code)`` unless the
caller supplies its own dedup key, and an optional external transaction id
carries a sparse unique index.  Concurrent or repeated ``record()`` calls for
the same logical event race on those constraints; the loser reads back the
winner's document, which makes recording idempotent under retry and
reprocessing.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from billing_core.common.metrics import billing_events_recorded_total
from billing_core.ingestion.msisdn_normalizer import DEFAULT_COUNTRY_CODE, mask_msisdn, normalize_msisdn
from billing_core.storage.errors import StorageFailure, translate_storage_errors
from billing_core.storage.models.base import utcnow
from billing_core.storage.models.billing import (
    BillingEvent,
    BillingEventFilters,
    BillingEventInput,
    BillingSource,
    BillingStats,
    BillingStatus,
    SourceTotals,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordResult:
    """Outcome of :meth:`BillingEventStore.record`."""

    event: BillingEvent
    duplicate: bool


def compute_event_id(
    normalized_msisdn: str,
    event_time: datetime,
    amount: int,
    source: BillingSource | str,
    product_code: str | None = None,
) -> str:
    """Deterministic 32-hex-char id for a charge.

    The timestamp is rendered at millisecond precision in UTC, the resolution
    MongoDB keeps, so an event read back from storage hashes identically.
    """
    ts = event_time.astimezone(UTC).isoformat(timespec="milliseconds")
    data = f"{normalized_msisdn}|{ts}|{amount}|{BillingSource(source).value}|{product_code or ''}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:32]


def _time_range(date_from: datetime | None, date_to: datetime | None) -> dict[str, datetime]:
    bounds: dict[str, datetime] = {}
    if date_from:
        bounds["$gte"] = date_from
    if date_to:
        bounds["$lte"] = date_to
    return bounds


class BillingEventStore:
    """Async CRUD and reporting over the ``billing_events`` collection."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        country_code: str = DEFAULT_COUNTRY_CODE,
        collection: str = "billing_events",
    ) -> None:
        self._events: AsyncIOMotorCollection = db[collection]
        self._country_code = country_code

    # ── writes ────────────────────────────────────────────────────────

    async def record(self, data: BillingEventInput) -> RecordResult:
        """Store a billing event once.

        A uniqueness violation on the event id or the transaction id returns
        the pre-existing document with ``duplicate=True`` instead of raising.
        """
        normalized = data.normalized_msisdn or normalize_msisdn(data.msisdn, self._country_code)
        event_time = data.event_time or utcnow()
        if event_time.tzinfo is None:
            event_time = event_time.replace(tzinfo=UTC)
        event_id = data.event_id or compute_event_id(
            normalized, event_time, data.amount, data.source, data.product_code
        )

        event = BillingEvent(
            event_id=event_id,
            msisdn=data.msisdn,
            normalized_msisdn=normalized,
            tenant_id=data.tenant_id,
            source=data.source,
            amount=data.amount,
            currency=data.currency,
            product_code=data.product_code,
            service_name=data.service_name,
            description=data.description,
            event_time=event_time,
            status=data.status,
            raw_payload=data.raw_payload,
            import_batch_id=data.import_batch_id,
            session_id=data.session_id,
            content_item=data.content_item,
            content_slug=data.content_slug,
            transaction_id=data.transaction_id,
        )

        with translate_storage_errors("record billing event"):
            try:
                await self._events.insert_one(event.to_document())
            except DuplicateKeyError as exc:
                existing = await self._find_conflicting(event_id, data.transaction_id)
                if existing is None:
                    raise StorageFailure(
                        f"Duplicate key on billing event {event_id} but no existing document found"
                    ) from exc
                billing_events_recorded_total.labels(source=event.source, outcome="duplicate").inc()
                logger.info(
                    "Billing event %s already recorded for %s (txn=%s)",
                    existing.event_id,
                    mask_msisdn(normalized),
                    existing.transaction_id,
                )
                return RecordResult(event=existing, duplicate=True)

        billing_events_recorded_total.labels(source=event.source, outcome="recorded").inc()
        logger.info(
            "Recorded billing event %s: %s %d %s (%s, %s)",
            event_id,
            mask_msisdn(normalized),
            event.amount,
            event.currency,
            event.source,
            event.status,
        )
        return RecordResult(event=event, duplicate=False)

    async def update_status(self, event_id: str, status: BillingStatus) -> BillingEvent | None:
        """Set a new status; any transition is accepted, ``None`` if unknown."""
        with translate_storage_errors("update billing status"):
            doc = await self._events.find_one_and_update(
                {"_id": event_id},
                {"$set": {"status": BillingStatus(status).value}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            return None
        logger.info("Billing event %s moved to %s", event_id, status)
        return BillingEvent.from_document(doc)

    # ── reads ─────────────────────────────────────────────────────────

    async def find_by_event_id(self, event_id: str) -> BillingEvent | None:
        with translate_storage_errors("find billing event"):
            doc = await self._events.find_one({"_id": event_id})
        return BillingEvent.from_document(doc) if doc else None

    async def find_by_transaction_id(self, transaction_id: str) -> BillingEvent | None:
        with translate_storage_errors("find billing event by transaction"):
            doc = await self._events.find_one({"transaction_id": transaction_id})
        return BillingEvent.from_document(doc) if doc else None

    async def _find_conflicting(self, event_id: str, transaction_id: str | None) -> BillingEvent | None:
        clauses: list[dict[str, Any]] = [{"_id": event_id}]
        if transaction_id:
            clauses.append({"transaction_id": transaction_id})
        doc = await self._events.find_one({"$or": clauses})
        return BillingEvent.from_document(doc) if doc else None

    async def list_for_identifier(
        self,
        normalized_msisdn: str,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        source: BillingSource | None = None,
        status: BillingStatus | None = None,
        limit: int = 100,
    ) -> list[BillingEvent]:
        """Most recent events of one subscriber."""
        events, _ = await self.search(
            BillingEventFilters(
                normalized_msisdn=normalized_msisdn,
                date_from=date_from,
                date_to=date_to,
                source=source,
                status=status,
                limit=limit,
            )
        )
        return events

    async def search(self, filters: BillingEventFilters) -> tuple[list[BillingEvent], int]:
        """Paginated search, newest first; returns ``(events, total)``."""
        query = self._build_query(
            filters.tenant_id, filters.date_from, filters.date_to, filters.normalized_msisdn
        )
        if filters.msisdn_contains:
            query["normalized_msisdn"] = {
                "$regex": normalize_msisdn(filters.msisdn_contains, self._country_code)
            }
        if filters.source:
            query["source"] = BillingSource(filters.source).value
        if filters.status:
            query["status"] = BillingStatus(filters.status).value
        if filters.import_batch_id:
            query["import_batch_id"] = filters.import_batch_id

        events: list[BillingEvent] = []
        with translate_storage_errors("search billing events"):
            cursor = (
                self._events.find(query)
                .sort("event_time", DESCENDING)
                .skip((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
            async for doc in cursor:
                events.append(BillingEvent.from_document(doc))
            total = await self._events.count_documents(query)
        return events, total

    async def get_stats(
        self,
        tenant_id: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> BillingStats:
        """Reconciliation roll-up: totals plus breakdowns by source and status."""
        match = self._build_query(tenant_id, date_from, date_to)
        stats = BillingStats()
        with translate_storage_errors("billing stats"):
            async for row in self._events.aggregate(
                [
                    {"$match": match},
                    {
                        "$group": {
                            "_id": "$source",
                            "count": {"$sum": 1},
                            "amount": {"$sum": "$amount"},
                        }
                    },
                ]
            ):
                stats.by_source[row["_id"]] = SourceTotals(count=row["count"], amount=row["amount"])
                stats.total_events += row["count"]
                stats.total_amount += row["amount"]
            async for row in self._events.aggregate(
                [
                    {"$match": match},
                    {"$group": {"_id": "$status", "count": {"$sum": 1}}},
                ]
            ):
                stats.by_status[row["_id"]] = row["count"]
        return stats

    @staticmethod
    def _build_query(
        tenant_id: str | None,
        date_from: datetime | None,
        date_to: datetime | None,
        normalized_msisdn: str | None = None,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {}
        if normalized_msisdn:
            query["normalized_msisdn"] = normalized_msisdn
        if tenant_id:
            query["tenant_id"] = tenant_id
        bounds = _time_range(date_from, date_to)
        if bounds:
            query["event_time"] = bounds
        return query

    # ── indexing ───────────────────────────────────────────────────────

    async def ensure_indexes(self) -> None:
        """Uniqueness constraints plus the lookups used by search and stats."""
        with translate_storage_errors("billing indexes"):
            await self._events.create_index("transaction_id", unique=True, sparse=True)
            await self._events.create_index(
                [("normalized_msisdn", ASCENDING), ("event_time", DESCENDING)]
            )
            await self._events.create_index(
                [("tenant_id", ASCENDING), ("source", ASCENDING), ("event_time", DESCENDING)]
            )
            await self._events.create_index("import_batch_id", sparse=True)
            await self._events.create_index([("event_time", DESCENDING)])
            await self._events.create_index("status")
        logger.info("MongoDB indexes ensured on collection %s", self._events.name)
