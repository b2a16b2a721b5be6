"""Unit tests for the import batch processor."""

from unittest.mock import AsyncMock

import pytest

from billing_core.processing.import_processor import ImportBatchProcessor
from billing_core.storage.billing_event_store import RecordResult
from billing_core.storage.errors import BatchInputError, StorageFailure
from billing_core.storage.models.billing import (
    BillingEvent,
    BillingEventInput,
    ImportBatch,
    ImportBatchCreate,
    ImportStatus,
)


@pytest.fixture
def batch() -> ImportBatch:
    return ImportBatch(batch_id="batch_001", tenant_id="brand_a", file_name="import_1.csv", uploaded_by="ops")


@pytest.fixture
def mock_batch_store(batch: ImportBatch) -> AsyncMock:
    store = AsyncMock()
    store.create_batch = AsyncMock(return_value=batch)
    store.record_outcome = AsyncMock(return_value=True)
    store.finalize = AsyncMock(return_value=batch.model_copy(update={"status": ImportStatus.COMPLETED}))
    store.fail = AsyncMock(return_value=batch.model_copy(update={"status": ImportStatus.FAILED}))
    store.get_batch = AsyncMock(return_value=batch.model_copy(update={"status": ImportStatus.CANCELLED}))
    return store


@pytest.fixture
def mock_billing_store() -> AsyncMock:
    """Records each transaction id once; repeats come back as duplicates."""
    seen: dict[str, BillingEvent] = {}

    async def record(data: BillingEventInput) -> RecordResult:
        if data.event_id in seen:
            return RecordResult(event=seen[data.event_id], duplicate=True)
        event = BillingEvent(
            event_id=data.event_id,
            msisdn=data.msisdn,
            normalized_msisdn=data.normalized_msisdn,
            tenant_id=data.tenant_id,
            source=data.source,
            amount=data.amount,
            event_time=data.event_time,
            status=data.status,
            import_batch_id=data.import_batch_id,
            transaction_id=data.transaction_id,
        )
        seen[data.event_id] = event
        return RecordResult(event=event, duplicate=False)

    store = AsyncMock()
    store.record = AsyncMock(side_effect=record)
    return store


@pytest.fixture
def processor(mock_batch_store: AsyncMock, mock_billing_store: AsyncMock) -> ImportBatchProcessor:
    return ImportBatchProcessor(mock_batch_store, mock_billing_store)


def _row(msisdn: str = "0170 1234567", txn: str = "TXN-1", amount: str = "0,99") -> dict[str, str]:
    return {"msisdn": msisdn, "transaction_id": txn, "amount": amount, "status": "billed", "date": "01.03.2024"}


def _outcomes(store: AsyncMock) -> list[str]:
    return [c.args[1] for c in store.record_outcome.await_args_list]


class TestProcessRows:
    """Tests for per-row outcomes and batch bookkeeping."""

    @pytest.mark.asyncio
    async def test_valid_invalid_and_duplicate_rows(
        self, processor: ImportBatchProcessor, batch: ImportBatch, mock_batch_store: AsyncMock
    ) -> None:
        """One of each outcome; the batch is finalized after the last row."""
        rows = [_row(), _row(msisdn=""), _row()]

        result = await processor.process_rows(batch, rows)

        assert _outcomes(mock_batch_store) == ["accepted", "rejected", "duplicate"]
        error = mock_batch_store.record_outcome.await_args_list[1].args[2]
        assert error.row == 2
        assert error.message == "Missing MSISDN"
        assert error.data["transaction_id"] == "TXN-1"
        mock_batch_store.finalize.assert_awaited_once_with("batch_001")
        assert result.status == ImportStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_event_keyed_by_transaction_id(
        self, processor: ImportBatchProcessor, batch: ImportBatch, mock_billing_store: AsyncMock
    ) -> None:
        await processor.process_rows(batch, [_row(txn="TXN-9", amount="4,99")])

        data = mock_billing_store.record.await_args.args[0]
        assert data.event_id == "TXN-9"
        assert data.transaction_id == "TXN-9"
        assert data.amount == 499
        assert data.source == "bulk_import"
        assert data.import_batch_id == "batch_001"
        assert data.normalized_msisdn == "491701234567"

    @pytest.mark.asyncio
    async def test_storage_failure_rejects_only_that_row(
        self,
        processor: ImportBatchProcessor,
        batch: ImportBatch,
        mock_batch_store: AsyncMock,
        mock_billing_store: AsyncMock,
    ) -> None:
        record = mock_billing_store.record.side_effect
        calls = {"n": 0}

        async def flaky(data: BillingEventInput) -> RecordResult:
            calls["n"] += 1
            if calls["n"] == 1:
                raise StorageFailure("record billing event failed: timed out")
            return await record(data)

        mock_billing_store.record.side_effect = flaky

        await processor.process_rows(batch, [_row(txn="TXN-1"), _row(txn="TXN-2")])

        assert _outcomes(mock_batch_store) == ["rejected", "accepted"]
        error = mock_batch_store.record_outcome.await_args_list[0].args[2]
        assert error.message.startswith("Storage failure")

    @pytest.mark.asyncio
    async def test_cancelled_batch_stops_processing(
        self,
        processor: ImportBatchProcessor,
        batch: ImportBatch,
        mock_batch_store: AsyncMock,
        mock_billing_store: AsyncMock,
    ) -> None:
        """Once the batch left processing no further rows are consumed."""
        mock_batch_store.record_outcome.return_value = False

        result = await processor.process_rows(batch, [_row(txn="TXN-1"), _row(txn="TXN-2")])

        assert mock_billing_store.record.await_count == 1
        mock_batch_store.finalize.assert_not_awaited()
        assert result.status == ImportStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_event_hook_sees_duplicates(
        self, mock_batch_store: AsyncMock, mock_billing_store: AsyncMock, batch: ImportBatch
    ) -> None:
        hook = AsyncMock()
        processor = ImportBatchProcessor(mock_batch_store, mock_billing_store, on_event=hook)

        await processor.process_rows(batch, [_row(), _row()])

        assert [c.args[2] for c in hook.await_args_list] == [False, True]
        assert hook.await_args_list[0].args[1].transaction_id == "TXN-1"


class TestImportFile:
    @pytest.mark.asyncio
    async def test_unreadable_file_fails_batch(
        self, processor: ImportBatchProcessor, mock_batch_store: AsyncMock
    ) -> None:
        meta = ImportBatchCreate(tenant_id="brand_a", file_name="empty.csv", uploaded_by="ops")

        with pytest.raises(BatchInputError):
            await processor.import_file(meta, b"")

        mock_batch_store.fail.assert_awaited_once_with("batch_001", "Import file is empty")
        mock_batch_store.record_outcome.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_detected_mapping_is_stored(
        self, processor: ImportBatchProcessor, mock_batch_store: AsyncMock
    ) -> None:
        meta = ImportBatchCreate(tenant_id="brand_a", file_name="dimoco.csv", uploaded_by="ops")
        data = "Rufnummer;Betrag;Datum;ID\n0170 1234567;0,99;01.03.2024;TXN-1\n0170 7654321;1,99;01.03.2024;TXN-2\n"

        await processor.import_file(meta, data.encode("utf-8"))

        mapping = mock_batch_store.set_column_mapping.await_args.args[1]
        assert mapping.msisdn == "Rufnummer"
        assert mapping.transaction_id == "ID"
        assert _outcomes(mock_batch_store) == ["accepted", "accepted"]
