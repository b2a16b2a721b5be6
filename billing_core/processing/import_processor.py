"""Bulk import of billing settlement files.

A batch is processed by one worker, row by row:

1. map the raw row through the batch's column mapping and validate it;
2. hand the parsed row to :meth:`BillingEventStore.record`, keyed by the
   row's transaction id, so re-importing the same file only hits the
   duplicate path;
3. count the outcome on the batch (``accepted`` / ``rejected`` /
   ``duplicate``, plus ``total_rows``).

A bad row never aborts the batch: validation and single-row storage failures
become entries in the batch's error list.  Only an unreadable input resource
fails the whole batch.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from billing_core.common.metrics import import_batches_total, import_rows_total, processing_latency_seconds
from billing_core.ingestion.billing_file_reader import read_billing_file
from billing_core.ingestion.billing_row_parser import (
    MAJOR_UNIT_THRESHOLD,
    ParsedRow,
    detect_column_mapping,
    map_row,
)
from billing_core.ingestion.msisdn_normalizer import DEFAULT_COUNTRY_CODE
from billing_core.storage.billing_event_store import BillingEventStore
from billing_core.storage.errors import BatchClosedError, BatchInputError, RowValidationError, StorageFailure
from billing_core.storage.import_batch_store import ImportBatchStore, RowOutcome
from billing_core.storage.models.billing import (
    BillingEvent,
    BillingEventInput,
    ColumnMapping,
    ImportBatch,
    ImportBatchCreate,
    ImportRowError,
    ImportSource,
)

logger = logging.getLogger(__name__)

# Called for every stored (or already stored) row: (event, parsed row, duplicate).
EventHook = Callable[[BillingEvent, ParsedRow, bool], Awaitable[None]]


class ImportBatchProcessor:
    """Drives import batches from creation to a terminal status."""

    def __init__(
        self,
        batches: ImportBatchStore,
        billing: BillingEventStore,
        *,
        country_code: str = DEFAULT_COUNTRY_CODE,
        major_unit_threshold: int = MAJOR_UNIT_THRESHOLD,
        on_event: EventHook | None = None,
    ) -> None:
        self._batches = batches
        self._billing = billing
        self._country_code = country_code
        self._major_unit_threshold = major_unit_threshold
        self._on_event = on_event

    async def create_batch(self, meta: ImportBatchCreate) -> ImportBatch:
        return await self._batches.create_batch(meta)

    # ── rows ─────────────────────────────────────────────────────────

    async def process_row(
        self,
        batch: ImportBatch,
        row_number: int,
        raw_row: Mapping[str, Any],
        mapping: ColumnMapping | None = None,
    ) -> RowOutcome:
        """Process one row and count its outcome on the batch.

        Raises:
            BatchClosedError: The batch is no longer processing (e.g. cancelled).
        """
        with processing_latency_seconds.labels(stage="import_row").time():
            try:
                parsed = map_row(
                    raw_row,
                    mapping or batch.column_mapping,
                    country_code=self._country_code,
                    major_unit_threshold=self._major_unit_threshold,
                )
            except RowValidationError as exc:
                return await self._reject(batch, row_number, exc.message, exc.field, raw_row)

            data = BillingEventInput(
                msisdn=parsed.msisdn,
                normalized_msisdn=parsed.normalized_msisdn,
                tenant_id=batch.tenant_id,
                source=ImportSource(batch.source).billing_source,
                amount=parsed.amount,
                currency=parsed.currency,
                product_code=parsed.product_code,
                service_name=parsed.description,
                event_time=parsed.event_time,
                status=parsed.status,
                raw_payload=parsed.raw,
                import_batch_id=batch.batch_id,
                transaction_id=parsed.transaction_id,
                event_id=parsed.transaction_id,
            )
            try:
                result = await self._billing.record(data)
                if self._on_event is not None:
                    await self._on_event(result.event, parsed, result.duplicate)
            except StorageFailure as exc:
                return await self._reject(batch, row_number, f"Storage failure: {exc}", None, raw_row)

            outcome: RowOutcome = "duplicate" if result.duplicate else "accepted"
            await self._count(batch, outcome)
            return outcome

    async def process_rows(
        self,
        batch: ImportBatch,
        rows: Iterable[Mapping[str, Any]],
        mapping: ColumnMapping | None = None,
        *,
        first_row_number: int = 1,
    ) -> ImportBatch:
        """Process every row in order, then finalize the batch.

        Stops early, without finalizing, when the batch is closed underneath
        (cancelled by an operator).
        """
        for row_number, row in enumerate(rows, start=first_row_number):
            try:
                await self.process_row(batch, row_number, row, mapping)
            except BatchClosedError:
                logger.warning("Import batch %s closed at row %d; stopping", batch.batch_id, row_number)
                current = await self._batches.get_batch(batch.batch_id)
                return current or batch
        return await self.finalize_batch(batch)

    async def _reject(
        self,
        batch: ImportBatch,
        row_number: int,
        message: str,
        field: str | None,
        raw_row: Mapping[str, Any],
    ) -> RowOutcome:
        logger.debug("Import batch %s row %d rejected: %s", batch.batch_id, row_number, message)
        error = ImportRowError(
            row=row_number,
            message=message,
            field=field,
            data={str(k): v for k, v in raw_row.items()},
        )
        await self._count(batch, "rejected", error)
        return "rejected"

    async def _count(
        self, batch: ImportBatch, outcome: RowOutcome, error: ImportRowError | None = None
    ) -> None:
        if not await self._batches.record_outcome(batch.batch_id, outcome, error):
            raise BatchClosedError(f"Import batch {batch.batch_id} is not processing")
        import_rows_total.labels(outcome=outcome).inc()

    # ── batch lifecycle ──────────────────────────────────────────────

    async def finalize_batch(self, batch: ImportBatch) -> ImportBatch:
        """Move the batch to ``completed`` once all rows are consumed."""
        final = await self._batches.finalize(batch.batch_id)
        if final is None:
            raise BatchInputError(f"Import batch {batch.batch_id} does not exist")
        import_batches_total.labels(status=final.status).inc()
        logger.info(
            "Import batch %s %s: %d rows, %d accepted, %d rejected, %d duplicates",
            final.batch_id,
            final.status,
            final.total_rows,
            final.accepted,
            final.rejected,
            final.duplicates,
        )
        return final

    async def fail_batch(self, batch: ImportBatch, reason: str) -> ImportBatch:
        """Move the batch to ``failed`` after a resource-level failure."""
        failed = await self._batches.fail(batch.batch_id, reason)
        import_batches_total.labels(status="failed").inc()
        logger.error("Import batch %s failed: %s", batch.batch_id, reason)
        return failed or batch

    async def import_file(
        self,
        meta: ImportBatchCreate,
        source: str | Path | bytes,
        *,
        detect_columns: bool = True,
    ) -> ImportBatch:
        """Create a batch for a settlement file and process all of its rows.

        Raises:
            BatchInputError: The file cannot be read; the batch is left ``failed``.
        """
        batch = await self.create_batch(meta)
        try:
            billing_file = read_billing_file(source)
            mapping = detect_column_mapping(billing_file.columns) if detect_columns else batch.column_mapping
        except BatchInputError as exc:
            await self.fail_batch(batch, str(exc))
            raise

        if detect_columns:
            await self._batches.set_column_mapping(batch.batch_id, mapping)
            batch = batch.model_copy(update={"column_mapping": mapping})
        return await self.process_rows(batch, billing_file.rows, mapping)
