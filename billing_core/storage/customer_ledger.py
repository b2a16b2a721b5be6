"""Customer identity ledger: one document per normalised MSISDN.

All writes are atomic MongoDB operators on the ``_id`` of the subscriber.
Counters move with ``$inc``; "first" fields (carrier, country, attribution,
linked account, ``converted_at``) are written by conditional updates that
only match while the field is still unset; conversion status is upgraded by
a filter on the statuses ranked below the target, so it never regresses.
Purchases carry an optional reference (transaction or event id) that is
recorded on the document in the same update that applies the purchase, which
makes a repeated conversion for the same purchase a no-op.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from billing_core.common.metrics import customer_conversions_total
from billing_core.ingestion.msisdn_normalizer import DEFAULT_COUNTRY_CODE, mask_msisdn, normalize_msisdn
from billing_core.storage.errors import translate_storage_errors
from billing_core.storage.models.base import utcnow
from billing_core.storage.models.customer import (
    ConversionStatus,
    Customer,
    CustomerFilters,
    CustomerSession,
    CustomerStats,
    IdentifiedInput,
    LandingPageStats,
    VisitMeta,
    statuses_below,
)

logger = logging.getLogger(__name__)

# Input attribute -> document field, written only while the field is unset.
_FIRST_WRITE_FIELDS: dict[str, str] = {
    "carrier": "carrier",
    "country": "country",
    "landing_page_slug": "first_landing_page",
    "campaign": "top_campaign",
    "source": "top_source",
    "user_id": "user_id",
    "user_email": "user_email",
    "user_name": "user_name",
}


def rounded_average(total_amount: int, count: int) -> int:
    """``total_amount / count`` rounded half up to whole minor units."""
    if count <= 0:
        return 0
    return int((Decimal(total_amount) / Decimal(count)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole > 0 else 0.0


class CustomerLedger:
    """Async read/write access to the ``customers`` collection."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        country_code: str = DEFAULT_COUNTRY_CODE,
        heavy_user_threshold: int = 3,
        session_history_cap: int = 100,
        purchase_ref_cap: int = 500,
        collection: str = "customers",
    ) -> None:
        self._col: AsyncIOMotorCollection = db[collection]
        self._country_code = country_code
        self._heavy_user_threshold = heavy_user_threshold
        self._session_history_cap = session_history_cap
        self._purchase_ref_cap = purchase_ref_cap

    def _normalize(self, msisdn: str) -> str:
        return normalize_msisdn(msisdn, self._country_code)

    # ── funnel writes ─────────────────────────────────────────────────

    async def upsert_identified(self, data: IdentifiedInput) -> Customer:
        """Register a sighting of a subscriber number.

        Creates the customer as ``identified`` on first sighting; afterwards
        counts the visit, extends the landing-page set and bumps ``last_seen_at``
        without touching fields that are already set.
        """
        normalized = data.normalized_msisdn or self._normalize(data.msisdn)
        now = utcnow()

        on_insert: dict[str, Any] = {
            "msisdn": data.msisdn,
            "tenant_id": data.tenant_id,
            "conversion_status": ConversionStatus.IDENTIFIED.value,
            "identified_at": now,
            "first_seen_at": now,
            "created_at": now,
            "heavy_user_flag": False,
            "sessions": [],
            "total_billing_amount": 0,
            "total_purchases": 0,
            "repurchase_count": 0,
            "average_purchase_value": 0,
            "applied_purchase_refs": [],
            "tags": [],
        }
        if data.landing_page_slug:
            on_insert["first_landing_page"] = data.landing_page_slug
        update = self._visit_update(now, data.landing_page_slug)
        update["$setOnInsert"] = on_insert

        with translate_storage_errors("upsert identified customer"):
            try:
                doc = await self._col.find_one_and_update(
                    {"_id": normalized}, update, upsert=True, return_document=ReturnDocument.AFTER
                )
            except DuplicateKeyError:
                doc = await self._col.find_one_and_update(
                    {"_id": normalized}, update, return_document=ReturnDocument.AFTER
                )

            if doc["total_visits"] == 1:
                logger.info("New identified customer %s (tenant %s)", mask_msisdn(normalized), data.tenant_id)
            await self._upgrade_status(normalized, ConversionStatus.IDENTIFIED, now)
            await self._set_missing(normalized, doc, data.model_dump())
            await self._after_visit(normalized, doc, data.session_id, data, now)
            doc = await self._col.find_one({"_id": normalized})
        return Customer.from_document(doc)

    async def record_visit(self, msisdn: str, meta: VisitMeta) -> Customer | None:
        """Count a visit of a known subscriber; no effect on the funnel stage."""
        normalized = self._normalize(msisdn)
        now = utcnow()
        with translate_storage_errors("record customer visit"):
            doc = await self._col.find_one_and_update(
                {"_id": normalized},
                self._visit_update(now, meta.landing_page_slug),
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                return None
            await self._set_missing(
                normalized,
                doc,
                {"landing_page_slug": meta.landing_page_slug, "campaign": meta.campaign, "source": meta.source},
            )
            await self._after_visit(normalized, doc, meta.session_id, meta, now)
            doc = await self._col.find_one({"_id": normalized})
        return Customer.from_document(doc)

    async def convert_to_customer(
        self,
        msisdn: str,
        purchase_amount: int,
        *,
        purchase_ref: str | None = None,
        tenant_id: str | None = None,
        purchased_at: datetime | None = None,
    ) -> Customer:
        """Apply one completed purchase.

        With a *purchase_ref* the purchase is applied at most once: the
        reference is pushed in the same update that increments the totals and
        the update only matches while the reference is absent.  Only the
        latest ``purchase_ref_cap`` references are kept on the document; a
        replay of an older purchase is applied again.
        """
        normalized = self._normalize(msisdn)
        now = utcnow()
        when = purchased_at or now

        query: dict[str, Any] = {"_id": normalized}
        update: dict[str, Any] = {
            "$set": {
                "conversion_status": ConversionStatus.CUSTOMER.value,
                "last_seen_at": now,
                "updated_at": now,
                "last_purchase_date": when,
                "last_billing_date": when,
            },
            "$inc": {"total_purchases": 1, "total_billing_amount": purchase_amount},
            "$setOnInsert": {
                "msisdn": msisdn,
                "tenant_id": tenant_id or "",
                "identified_at": now,
                "first_seen_at": now,
                "created_at": now,
                "total_visits": 0,
                "visits_last_30d": 0,
                "heavy_user_flag": False,
                "landing_pages_visited": [],
                "sessions": [],
                "tags": [],
            },
        }
        if purchase_ref:
            query["applied_purchase_refs"] = {"$ne": purchase_ref}
            update["$push"] = {
                "applied_purchase_refs": {"$each": [purchase_ref], "$slice": -self._purchase_ref_cap}
            }
        else:
            update["$setOnInsert"]["applied_purchase_refs"] = []

        with translate_storage_errors("convert customer"):
            try:
                doc = await self._col.find_one_and_update(
                    query, update, upsert=True, return_document=ReturnDocument.AFTER
                )
            except DuplicateKeyError:
                if purchase_ref:
                    # The document exists and the filter excluded it: purchase already applied.
                    customer_conversions_total.labels(outcome="already_applied").inc()
                    logger.info(
                        "Purchase %s already applied to %s", purchase_ref, mask_msisdn(normalized)
                    )
                    existing = await self._col.find_one({"_id": normalized})
                    return Customer.from_document(existing)
                doc = await self._col.find_one_and_update(
                    query, update, return_document=ReturnDocument.AFTER
                )

            total = doc["total_purchases"]
            first = doc.get("converted_at") is None
            if first:
                await self._col.update_one(
                    {"_id": normalized, "converted_at": None},
                    {"$set": {"converted_at": when, "first_purchase_date": when}},
                )
            await self._col.update_one(
                {"_id": normalized, "total_purchases": total},
                {
                    "$set": {
                        "repurchase_count": max(0, total - 1),
                        "average_purchase_value": rounded_average(doc["total_billing_amount"], total),
                    }
                },
            )
            doc = await self._col.find_one({"_id": normalized})

        customer_conversions_total.labels(outcome="first" if first else "repeat").inc()
        logger.info(
            "Applied purchase of %d to %s (purchase %d, ref=%s)",
            purchase_amount,
            mask_msisdn(normalized),
            total,
            purchase_ref,
        )
        return Customer.from_document(doc)

    async def link_account(
        self,
        msisdn: str,
        user_id: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
    ) -> Customer | None:
        """Attach a human account; fields already linked are kept."""
        normalized = self._normalize(msisdn)
        with translate_storage_errors("link customer account"):
            doc = await self._col.find_one({"_id": normalized})
            if doc is None:
                return None
            await self._set_missing(
                normalized, doc, {"user_id": user_id, "user_email": user_email, "user_name": user_name}
            )
            doc = await self._col.find_one({"_id": normalized})
        return Customer.from_document(doc)

    async def recalculate_visits_last_30d(self, tenant_id: str | None = None) -> int:
        """Recount ``visits_last_30d`` from the bounded session history."""
        cutoff = utcnow() - timedelta(days=30)
        query: dict[str, Any] = {"tenant_id": tenant_id} if tenant_id else {}
        with translate_storage_errors("recalculate visits"):
            result = await self._col.update_many(
                query,
                [
                    {
                        "$set": {
                            "visits_last_30d": {
                                "$size": {
                                    "$filter": {
                                        "input": {"$ifNull": ["$sessions", []]},
                                        "as": "session",
                                        "cond": {"$gte": ["$$session.last_seen_at", cutoff]},
                                    }
                                }
                            }
                        }
                    }
                ],
            )
        logger.info("Recalculated 30-day visits on %d customers", result.modified_count)
        return result.modified_count

    # ── write helpers ─────────────────────────────────────────────────

    @staticmethod
    def _visit_update(now: datetime, landing_page_slug: str | None) -> dict[str, Any]:
        update: dict[str, Any] = {
            "$inc": {"total_visits": 1, "visits_last_30d": 1},
            "$set": {"last_seen_at": now, "updated_at": now},
        }
        if landing_page_slug:
            update["$set"]["last_landing_page"] = landing_page_slug
            update["$addToSet"] = {"landing_pages_visited": landing_page_slug}
        return update

    async def _upgrade_status(self, normalized: str, status: ConversionStatus, now: datetime) -> None:
        updates: dict[str, Any] = {"conversion_status": status.value, "updated_at": now}
        if status is ConversionStatus.IDENTIFIED:
            updates["identified_at"] = now
        await self._col.update_one(
            {"_id": normalized, "conversion_status": {"$in": statuses_below(status)}},
            {"$set": updates},
        )

    async def _set_missing(self, normalized: str, doc: dict[str, Any], values: dict[str, Any]) -> None:
        """First write wins: set each field only while it is still unset."""
        for attr, field in _FIRST_WRITE_FIELDS.items():
            value = values.get(attr)
            if value and doc.get(field) is None:
                await self._col.update_one({"_id": normalized, field: None}, {"$set": {field: value}})

    async def _after_visit(
        self,
        normalized: str,
        doc: dict[str, Any],
        session_id: str | None,
        meta: IdentifiedInput | VisitMeta,
        now: datetime,
    ) -> None:
        if session_id:
            await self._remember_session(
                normalized,
                CustomerSession(
                    session_id=session_id,
                    first_seen_at=now,
                    last_seen_at=now,
                    landing_page_slug=meta.landing_page_slug,
                    campaign=meta.campaign,
                    source=meta.source,
                ),
            )
        if doc["total_visits"] >= self._heavy_user_threshold and not doc.get("heavy_user_flag"):
            result = await self._col.update_one(
                {"_id": normalized, "heavy_user_flag": {"$ne": True}},
                {"$set": {"heavy_user_flag": True}},
            )
            if result.modified_count:
                logger.info("Customer %s flagged as heavy user", mask_msisdn(normalized))

    async def _remember_session(self, normalized: str, entry: CustomerSession) -> None:
        """Append to the capped session history, or refresh an entry already there."""
        result = await self._col.update_one(
            {"_id": normalized, "sessions.session_id": {"$ne": entry.session_id}},
            {
                "$push": {
                    "sessions": {
                        "$each": [entry.model_dump(exclude_none=True)],
                        "$slice": -self._session_history_cap,
                    }
                }
            },
        )
        if result.matched_count == 0:
            await self._col.update_one(
                {"_id": normalized, "sessions.session_id": entry.session_id},
                {"$set": {"sessions.$.last_seen_at": entry.last_seen_at}},
            )

    # ── reads ─────────────────────────────────────────────────────────

    async def find_by_msisdn(self, msisdn: str) -> Customer | None:
        """Lookup by subscriber number in any format."""
        with translate_storage_errors("find customer"):
            doc = await self._col.find_one({"_id": self._normalize(msisdn)})
        return Customer.from_document(doc) if doc else None

    async def find_by_raw_msisdn(self, msisdn: str) -> Customer | None:
        """Lookup by the number exactly as first observed."""
        with translate_storage_errors("find customer by raw msisdn"):
            doc = await self._col.find_one({"msisdn": msisdn})
        return Customer.from_document(doc) if doc else None

    async def search(self, filters: CustomerFilters) -> tuple[list[Customer], int]:
        """Paginated search, most recently seen first; returns ``(customers, total)``."""
        query: dict[str, Any] = {}
        if filters.msisdn_contains:
            digits = "".join(ch for ch in filters.msisdn_contains if ch.isdigit())
            if digits:
                query["$or"] = [{"_id": {"$regex": digits}}, {"msisdn": {"$regex": digits}}]
        if filters.tenant_id:
            query["tenant_id"] = filters.tenant_id
        if filters.heavy_user_only:
            query["heavy_user_flag"] = True
        if filters.min_visits:
            query["total_visits"] = {"$gte": filters.min_visits}
        if filters.campaign:
            query["top_campaign"] = filters.campaign
        if filters.source:
            query["top_source"] = filters.source
        if filters.conversion_status:
            query["conversion_status"] = ConversionStatus(filters.conversion_status).value
        if filters.landing_page_slug:
            query["landing_pages_visited"] = filters.landing_page_slug
        if filters.date_from or filters.date_to:
            query["last_seen_at"] = {}
            if filters.date_from:
                query["last_seen_at"]["$gte"] = filters.date_from
            if filters.date_to:
                query["last_seen_at"]["$lte"] = filters.date_to

        customers: list[Customer] = []
        with translate_storage_errors("search customers"):
            cursor = (
                self._col.find(query)
                .sort("last_seen_at", DESCENDING)
                .skip((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
            async for doc in cursor:
                customers.append(Customer.from_document(doc))
            total = await self._col.count_documents(query)
        return customers, total

    async def list_by_conversion_status(
        self,
        status: ConversionStatus,
        *,
        tenant_id: str | None = None,
        landing_page_slug: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Customer], int]:
        return await self.search(
            CustomerFilters(
                conversion_status=status,
                tenant_id=tenant_id,
                landing_page_slug=landing_page_slug,
                page=page,
                limit=limit,
            )
        )

    # ── aggregations ──────────────────────────────────────────────────

    async def get_stats(self, tenant_id: str | None = None) -> CustomerStats:
        now = utcnow()
        match: dict[str, Any] = {"tenant_id": tenant_id} if tenant_id else {}
        pipeline = [
            {"$match": match},
            {
                "$group": {
                    "_id": None,
                    "total_customers": {"$sum": 1},
                    "heavy_users": {"$sum": {"$cond": ["$heavy_user_flag", 1, 0]}},
                    "active_last_week": {
                        "$sum": {"$cond": [{"$gte": ["$last_seen_at", now - timedelta(days=7)]}, 1, 0]}
                    },
                    "active_last_month": {
                        "$sum": {"$cond": [{"$gte": ["$last_seen_at", now - timedelta(days=30)]}, 1, 0]}
                    },
                    "total_billing_amount": {"$sum": "$total_billing_amount"},
                }
            },
        ]
        with translate_storage_errors("customer stats"):
            async for row in self._col.aggregate(pipeline):
                row.pop("_id", None)
                return CustomerStats.model_validate(row)
        return CustomerStats()

    async def get_landing_page_stats(self, slug: str, tenant_id: str | None = None) -> LandingPageStats:
        """Funnel figures over the customers that visited landing page *slug*."""
        match: dict[str, Any] = {"landing_pages_visited": slug}
        if tenant_id:
            match["tenant_id"] = tenant_id
        pipeline = [
            {"$match": match},
            {
                "$group": {
                    "_id": None,
                    "visitors": {"$sum": 1},
                    "identified": {
                        "$sum": {
                            "$cond": [
                                {"$eq": ["$conversion_status", ConversionStatus.IDENTIFIED.value]},
                                1,
                                0,
                            ]
                        }
                    },
                    "customers": {
                        "$sum": {
                            "$cond": [
                                {"$eq": ["$conversion_status", ConversionStatus.CUSTOMER.value]},
                                1,
                                0,
                            ]
                        }
                    },
                    "revenue": {"$sum": "$total_billing_amount"},
                    "purchases": {"$sum": "$total_purchases"},
                    "repurchases": {"$sum": "$repurchase_count"},
                }
            },
        ]
        with translate_storage_errors("landing page stats"):
            rows = [row async for row in self._col.aggregate(pipeline)]
        if not rows:
            return LandingPageStats(landing_page_slug=slug)
        row = rows[0]
        return LandingPageStats(
            landing_page_slug=slug,
            visitors=row["visitors"],
            identified=row["identified"],
            customers=row["customers"],
            revenue=row["revenue"],
            conversion_rate=_percentage(row["customers"], row["visitors"]),
            repurchase_rate=_percentage(row["repurchases"], row["purchases"]),
            average_order_value=rounded_average(row["revenue"], row["purchases"]),
        )

    async def get_all_landing_page_stats(self, tenant_id: str | None = None) -> list[LandingPageStats]:
        """Per-landing-page visitors, customers and revenue, busiest page first."""
        match: dict[str, Any] = {"tenant_id": tenant_id} if tenant_id else {}
        pipeline = [
            {"$match": match},
            {"$unwind": "$landing_pages_visited"},
            {
                "$group": {
                    "_id": "$landing_pages_visited",
                    "visitors": {"$sum": 1},
                    "identified": {
                        "$sum": {
                            "$cond": [
                                {"$eq": ["$conversion_status", ConversionStatus.IDENTIFIED.value]},
                                1,
                                0,
                            ]
                        }
                    },
                    "customers": {
                        "$sum": {
                            "$cond": [
                                {"$eq": ["$conversion_status", ConversionStatus.CUSTOMER.value]},
                                1,
                                0,
                            ]
                        }
                    },
                    "revenue": {"$sum": "$total_billing_amount"},
                    "purchases": {"$sum": "$total_purchases"},
                    "repurchases": {"$sum": "$repurchase_count"},
                }
            },
            {"$sort": {"visitors": -1}},
        ]
        results: list[LandingPageStats] = []
        with translate_storage_errors("all landing page stats"):
            async for row in self._col.aggregate(pipeline):
                results.append(
                    LandingPageStats(
                        landing_page_slug=row["_id"],
                        visitors=row["visitors"],
                        identified=row["identified"],
                        customers=row["customers"],
                        revenue=row["revenue"],
                        conversion_rate=_percentage(row["customers"], row["visitors"]),
                        repurchase_rate=_percentage(row["repurchases"], row["purchases"]),
                        average_order_value=rounded_average(row["revenue"], row["purchases"]),
                    )
                )
        return results

    # ── indexing ───────────────────────────────────────────────────────

    async def ensure_indexes(self) -> None:
        with translate_storage_errors("customer indexes"):
            await self._col.create_index("msisdn")
            await self._col.create_index([("tenant_id", ASCENDING), ("last_seen_at", DESCENDING)])
            await self._col.create_index([("conversion_status", ASCENDING), ("last_seen_at", DESCENDING)])
            await self._col.create_index("landing_pages_visited")
            await self._col.create_index("heavy_user_flag")
            await self._col.create_index("total_visits")
            await self._col.create_index("user_id", sparse=True)
        logger.info("MongoDB indexes ensured on collection %s", self._col.name)
