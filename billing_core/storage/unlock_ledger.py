"""Entitlement ledger: content unlocks bought with a completed billing event.

There is at most one grant per originating transaction (unique index on
``transaction_id``).  A grant is written with an upsert whose only operator
is ``$setOnInsert``, so a repeated ``grant()`` for the same purchase leaves
the stored grant untouched.  The paywall read path, ``has_access``, is backed
by the ``(normalized_msisdn, content_item, status)`` index.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from billing_core.common.metrics import access_checks_total, unlock_grants_total
from billing_core.ingestion.msisdn_normalizer import DEFAULT_COUNTRY_CODE, mask_msisdn, normalize_msisdn
from billing_core.storage.errors import translate_storage_errors
from billing_core.storage.models.base import utcnow
from billing_core.storage.models.billing import BillingEvent, BillingStatus
from billing_core.storage.models.unlock import GrantSource, GrantStatus, UnlockGrant, UnlockStats

logger = logging.getLogger(__name__)


def _to_grant(doc: dict[str, Any]) -> UnlockGrant:
    doc.pop("_id", None)
    return UnlockGrant.from_document(doc)


class UnlockLedger:
    """Async access to the ``unlocks`` collection."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        country_code: str = DEFAULT_COUNTRY_CODE,
        collection: str = "unlocks",
    ) -> None:
        self._col: AsyncIOMotorCollection = db[collection]
        self._country_code = country_code

    # ── writes ────────────────────────────────────────────────────────

    async def grant(
        self,
        msisdn: str,
        content_item: str,
        event: BillingEvent,
        *,
        granted_by: GrantSource = GrantSource.PROCESSOR,
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> UnlockGrant:
        """Unlock *content_item* for the buyer of *event*.

        Raises ``ValueError`` unless *event* is completed.  A grant that
        already exists for the event's transaction is returned as stored.
        """
        if event.status != BillingStatus.COMPLETED:
            raise ValueError(f"Billing event {event.event_id} is {event.status}, not completed")

        transaction_id = event.purchase_ref
        normalized = normalize_msisdn(msisdn, self._country_code)
        doc = UnlockGrant(
            msisdn=msisdn,
            normalized_msisdn=normalized,
            content_item=content_item,
            transaction_id=transaction_id,
            billing_event_id=event.event_id,
            amount=event.amount,
            currency=event.currency,
            status=GrantStatus.COMPLETED,
            granted_by=granted_by,
            expires_at=expires_at,
            metadata=metadata,
        ).to_document()
        doc.pop("transaction_id")

        with translate_storage_errors("grant unlock"):
            try:
                result = await self._col.update_one(
                    {"transaction_id": transaction_id}, {"$setOnInsert": doc}, upsert=True
                )
                created = result.upserted_id is not None
            except DuplicateKeyError:
                created = False
            stored = await self._col.find_one({"transaction_id": transaction_id})

        if created:
            unlock_grants_total.labels(outcome="granted").inc()
            logger.info(
                "Unlocked %s for %s (txn=%s)", content_item, mask_msisdn(normalized), transaction_id
            )
        else:
            unlock_grants_total.labels(outcome="already_granted").inc()
            logger.info("Grant for transaction %s already exists, not granting again", transaction_id)
        return _to_grant(stored)

    async def mirror_status(
        self, transaction_id: str, billing_status: BillingStatus
    ) -> UnlockGrant | None:
        """Make the grant of *transaction_id* follow its billing event's status."""
        status = GrantStatus.mirror(billing_status)
        with translate_storage_errors("update grant status"):
            doc = await self._col.find_one_and_update(
                {"transaction_id": transaction_id},
                {"$set": {"status": status.value, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            return None
        logger.info("Grant for transaction %s is now %s", transaction_id, status)
        return _to_grant(doc)

    async def revoke(self, transaction_id: str) -> UnlockGrant | None:
        return await self.mirror_status(transaction_id, BillingStatus.REFUNDED)

    # ── reads ─────────────────────────────────────────────────────────

    async def has_access(self, msisdn: str, content_item: str) -> bool:
        """True iff a completed, unexpired grant exists for the pair."""
        query = {
            "normalized_msisdn": normalize_msisdn(msisdn, self._country_code),
            "content_item": content_item,
            "status": GrantStatus.COMPLETED.value,
            "$or": [{"expires_at": None}, {"expires_at": {"$gt": utcnow()}}],
        }
        with translate_storage_errors("check access"):
            doc = await self._col.find_one(query, {"_id": 1})
        granted = doc is not None
        access_checks_total.labels(granted=str(granted).lower()).inc()
        return granted

    async def find_by_transaction_id(self, transaction_id: str) -> UnlockGrant | None:
        with translate_storage_errors("find grant"):
            doc = await self._col.find_one({"transaction_id": transaction_id})
        return _to_grant(doc) if doc else None

    async def list_for_identifier(self, msisdn: str, limit: int = 100) -> list[UnlockGrant]:
        grants: list[UnlockGrant] = []
        with translate_storage_errors("list grants"):
            cursor = (
                self._col.find({"normalized_msisdn": normalize_msisdn(msisdn, self._country_code)})
                .sort("granted_at", DESCENDING)
                .limit(limit)
            )
            async for doc in cursor:
                grants.append(_to_grant(doc))
        return grants

    async def count_for_identifier(self, msisdn: str) -> int:
        """Number of completed grants held by the subscriber."""
        with translate_storage_errors("count grants"):
            return await self._col.count_documents(
                {
                    "normalized_msisdn": normalize_msisdn(msisdn, self._country_code),
                    "status": GrantStatus.COMPLETED.value,
                }
            )

    async def get_stats(
        self, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> UnlockStats:
        match: dict[str, Any] = {"status": GrantStatus.COMPLETED.value}
        if date_from or date_to:
            match["granted_at"] = {}
            if date_from:
                match["granted_at"]["$gte"] = date_from
            if date_to:
                match["granted_at"]["$lte"] = date_to
        pipeline = [
            {"$match": match},
            {
                "$group": {
                    "_id": None,
                    "total_unlocks": {"$sum": 1},
                    "total_revenue": {"$sum": "$amount"},
                    "users": {"$addToSet": "$normalized_msisdn"},
                }
            },
        ]
        with translate_storage_errors("unlock stats"):
            async for row in self._col.aggregate(pipeline):
                return UnlockStats(
                    total_unlocks=row["total_unlocks"],
                    total_revenue=row["total_revenue"],
                    unique_users=len(row["users"]),
                )
        return UnlockStats()

    # ── indexing ───────────────────────────────────────────────────────

    async def ensure_indexes(self) -> None:
        with translate_storage_errors("unlock indexes"):
            await self._col.create_index("transaction_id", unique=True)
            await self._col.create_index(
                [("normalized_msisdn", ASCENDING), ("content_item", ASCENDING), ("status", ASCENDING)]
            )
            await self._col.create_index([("granted_at", DESCENDING)])
        logger.info("MongoDB indexes ensured on collection %s", self._col.name)
