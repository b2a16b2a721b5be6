"""Persistence for bulk-import batches.

A batch moves one way from ``processing`` to a terminal status.  Every
transition is a conditional update on ``status == processing``, so a batch
that was cancelled or failed cannot be reopened and two finalizers cannot
both win.  Row outcomes are counted with ``$inc``; the error list is appended
with a capped ``$push`` so a large, broken file cannot grow the document
without bound.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from billing_core.storage.errors import translate_storage_errors
from billing_core.storage.models.base import utcnow
from billing_core.storage.models.billing import (
    ColumnMapping,
    ImportBatch,
    ImportBatchCreate,
    ImportBatchFilters,
    ImportRowError,
    ImportSource,
    ImportStatus,
)

logger = logging.getLogger(__name__)

RowOutcome = Literal["accepted", "rejected", "duplicate"]

_OUTCOME_COUNTERS: dict[str, str] = {
    "accepted": "accepted",
    "rejected": "rejected",
    "duplicate": "duplicates",
}


class ImportBatchStore:
    """Async CRUD over the ``import_batches`` collection."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        error_cap: int = 1000,
        collection: str = "import_batches",
    ) -> None:
        self._col: AsyncIOMotorCollection = db[collection]
        self._error_cap = error_cap

    # ── writes ────────────────────────────────────────────────────────

    async def create_batch(self, data: ImportBatchCreate) -> ImportBatch:
        """Open a batch in ``processing`` with all counters at zero."""
        now = utcnow()
        batch = ImportBatch(
            **data.model_dump(),
            uploaded_at=now,
            processing_started_at=now,
        )
        with translate_storage_errors("create import batch"):
            await self._col.insert_one(batch.to_document())
        logger.info(
            "Created import batch %s (%s, %s) for tenant %s",
            batch.batch_id,
            batch.file_name,
            batch.source,
            batch.tenant_id,
        )
        return batch

    async def record_outcome(
        self, batch_id: str, outcome: RowOutcome, error: ImportRowError | None = None
    ) -> bool:
        """Count one row.  Returns ``False`` once the batch left ``processing``."""
        update: dict[str, Any] = {"$inc": {"total_rows": 1, _OUTCOME_COUNTERS[outcome]: 1}}
        if error is not None:
            update["$push"] = {
                "errors": {"$each": [error.model_dump(exclude_none=True)], "$slice": self._error_cap}
            }
        with translate_storage_errors("record import row"):
            result = await self._col.update_one(
                {"_id": batch_id, "status": ImportStatus.PROCESSING.value}, update
            )
        return result.matched_count > 0

    async def set_column_mapping(self, batch_id: str, mapping: ColumnMapping) -> None:
        with translate_storage_errors("set column mapping"):
            await self._col.update_one(
                {"_id": batch_id}, {"$set": {"column_mapping": mapping.model_dump(exclude_none=True)}}
            )

    async def finalize(self, batch_id: str) -> ImportBatch | None:
        """``processing -> completed``; a batch already terminal is returned unchanged."""
        return await self._close(batch_id, ImportStatus.COMPLETED)

    async def fail(self, batch_id: str, reason: str) -> ImportBatch | None:
        """``processing -> failed`` for resource-level failures."""
        return await self._close(batch_id, ImportStatus.FAILED, failure_reason=reason)

    async def cancel_batch(self, batch_id: str) -> ImportBatch | None:
        """``processing -> cancelled``.  ``None`` if the batch is unknown or already terminal."""
        with translate_storage_errors("cancel import batch"):
            doc = await self._col.find_one_and_update(
                {"_id": batch_id, "status": ImportStatus.PROCESSING.value},
                {
                    "$set": {
                        "status": ImportStatus.CANCELLED.value,
                        "processing_completed_at": utcnow(),
                    }
                },
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            return None
        logger.info("Cancelled import batch %s", batch_id)
        return ImportBatch.from_document(doc)

    async def _close(
        self, batch_id: str, status: ImportStatus, failure_reason: str | None = None
    ) -> ImportBatch | None:
        updates: dict[str, Any] = {"status": status.value, "processing_completed_at": utcnow()}
        if failure_reason:
            updates["failure_reason"] = failure_reason
        with translate_storage_errors(f"close import batch as {status}"):
            doc = await self._col.find_one_and_update(
                {"_id": batch_id, "status": ImportStatus.PROCESSING.value},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            existing = await self.get_batch(batch_id)
            if existing is not None:
                logger.warning(
                    "Import batch %s already %s, not moving to %s", batch_id, existing.status, status
                )
            return existing
        return ImportBatch.from_document(doc)

    # ── reads ─────────────────────────────────────────────────────────

    async def get_batch(self, batch_id: str) -> ImportBatch | None:
        with translate_storage_errors("get import batch"):
            doc = await self._col.find_one({"_id": batch_id})
        return ImportBatch.from_document(doc) if doc else None

    async def list_batches(self, filters: ImportBatchFilters) -> tuple[list[ImportBatch], int]:
        """Paginated listing, newest upload first; the error lists are not loaded."""
        query: dict[str, Any] = {}
        if filters.tenant_id:
            query["tenant_id"] = filters.tenant_id
        if filters.source:
            query["source"] = ImportSource(filters.source).value
        if filters.status:
            query["status"] = ImportStatus(filters.status).value
        if filters.date_from or filters.date_to:
            query["uploaded_at"] = {}
            if filters.date_from:
                query["uploaded_at"]["$gte"] = filters.date_from
            if filters.date_to:
                query["uploaded_at"]["$lte"] = filters.date_to

        batches: list[ImportBatch] = []
        with translate_storage_errors("list import batches"):
            cursor = (
                self._col.find(query, {"errors": 0})
                .sort("uploaded_at", DESCENDING)
                .skip((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
            async for doc in cursor:
                batches.append(ImportBatch.from_document(doc))
            total = await self._col.count_documents(query)
        return batches, total

    # ── indexing ───────────────────────────────────────────────────────

    async def ensure_indexes(self) -> None:
        with translate_storage_errors("import batch indexes"):
            await self._col.create_index([("tenant_id", ASCENDING), ("uploaded_at", DESCENDING)])
            await self._col.create_index("status")
            await self._col.create_index("source")
        logger.info("MongoDB indexes ensured on collection %s", self._col.name)
