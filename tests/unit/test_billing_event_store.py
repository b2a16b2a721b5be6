"""Unit tests for the billing event store."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from billing_core.storage.billing_event_store import BillingEventStore, compute_event_id
from billing_core.storage.errors import StorageFailure
from billing_core.storage.models.billing import (
    BillingEventFilters,
    BillingEventInput,
    BillingSource,
    BillingStatus,
)


@pytest.fixture
def store(db: MagicMock) -> BillingEventStore:
    return BillingEventStore(db)


@pytest.fixture
def charge(event_time: datetime) -> BillingEventInput:
    return BillingEventInput(
        msisdn="0170 1234567",
        tenant_id="brand_a",
        source=BillingSource.PROCESSOR,
        amount=99,
        event_time=event_time,
        status=BillingStatus.COMPLETED,
        transaction_id="TXN-1",
    )


def _stored(event_id: str, event_time: datetime) -> dict:
    return {
        "_id": event_id,
        "msisdn": "0170 1234567",
        "normalized_msisdn": "491701234567",
        "tenant_id": "brand_a",
        "source": "processor",
        "amount": 99,
        "event_time": event_time.replace(tzinfo=None),
        "status": "completed",
        "transaction_id": "TXN-1",
    }


class TestComputeEventId:
    def test_deterministic(self, event_time: datetime) -> None:
        first = compute_event_id("491701234567", event_time, 99, "processor", "P1")
        assert first == compute_event_id("491701234567", event_time, 99, BillingSource.PROCESSOR, "P1")
        assert len(first) == 32

    def test_same_instant_in_another_zone_hashes_equally(self, event_time: datetime) -> None:
        cet = event_time.astimezone(timezone(timedelta(hours=1)))
        assert compute_event_id("491701234567", event_time, 99, "processor") == compute_event_id(
            "491701234567", cet, 99, "processor"
        )

    def test_amount_changes_id(self, event_time: datetime) -> None:
        assert compute_event_id("491701234567", event_time, 99, "processor") != compute_event_id(
            "491701234567", event_time, 199, "processor"
        )


class TestRecord:
    """Tests for idempotent event recording."""

    @pytest.mark.asyncio
    async def test_new_event_is_inserted(
        self, store: BillingEventStore, collection: MagicMock, charge: BillingEventInput, event_time: datetime
    ) -> None:
        result = await store.record(charge)

        assert result.duplicate is False
        assert result.event.normalized_msisdn == "491701234567"
        assert result.event.event_id == compute_event_id("491701234567", event_time, 99, "processor")
        inserted = collection.insert_one.call_args.args[0]
        assert inserted["_id"] == result.event.event_id
        assert inserted["transaction_id"] == "TXN-1"
        assert "import_batch_id" not in inserted

    @pytest.mark.asyncio
    async def test_caller_supplied_event_id_wins(
        self, store: BillingEventStore, collection: MagicMock, charge: BillingEventInput
    ) -> None:
        result = await store.record(charge.model_copy(update={"event_id": "row-key-7"}))
        assert result.event.event_id == "row-key-7"

    @pytest.mark.asyncio
    async def test_duplicate_returns_existing_event(
        self, store: BillingEventStore, collection: MagicMock, charge: BillingEventInput, event_time: datetime
    ) -> None:
        """A uniqueness violation is answered with the stored document."""
        collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key error")
        collection.find_one.return_value = _stored("evt_original", event_time)

        result = await store.record(charge)

        assert result.duplicate is True
        assert result.event.event_id == "evt_original"
        query = collection.find_one.call_args.args[0]
        assert {"transaction_id": "TXN-1"} in query["$or"]

    @pytest.mark.asyncio
    async def test_duplicate_without_visible_winner_is_a_failure(
        self, store: BillingEventStore, collection: MagicMock, charge: BillingEventInput
    ) -> None:
        collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key error")
        collection.find_one.return_value = None

        with pytest.raises(StorageFailure):
            await store.record(charge)

    @pytest.mark.asyncio
    async def test_driver_errors_become_storage_failures(
        self, store: BillingEventStore, collection: MagicMock, charge: BillingEventInput
    ) -> None:
        collection.insert_one.side_effect = ServerSelectionTimeoutError("no primary")

        with pytest.raises(StorageFailure):
            await store.record(charge)


class TestReads:
    @pytest.mark.asyncio
    async def test_update_status_unknown_event(self, store: BillingEventStore, collection: MagicMock) -> None:
        collection.find_one_and_update.return_value = None
        assert await store.update_status("missing", BillingStatus.REFUNDED) is None

    @pytest.mark.asyncio
    async def test_update_status_returns_new_state(
        self, store: BillingEventStore, collection: MagicMock, event_time: datetime
    ) -> None:
        collection.find_one_and_update.return_value = {**_stored("evt_1", event_time), "status": "refunded"}

        event = await store.update_status("evt_1", BillingStatus.REFUNDED)

        assert event is not None and event.status == BillingStatus.REFUNDED
        assert collection.find_one_and_update.call_args.args[1] == {"$set": {"status": "refunded"}}

    @pytest.mark.asyncio
    async def test_search_by_partial_number(
        self, store: BillingEventStore, collection: MagicMock, cursor, event_time: datetime
    ) -> None:
        collection.find.return_value = cursor([_stored("evt_1", event_time)])
        collection.count_documents.return_value = 1

        events, total = await store.search(BillingEventFilters(tenant_id="brand_a", msisdn_contains="0170 1234567"))

        assert total == 1
        assert events[0].event_id == "evt_1"
        assert collection.find.call_args.args[0] == {
            "tenant_id": "brand_a",
            "normalized_msisdn": {"$regex": "491701234567"},
        }

    @pytest.mark.asyncio
    async def test_stats_roll_up(self, store: BillingEventStore, collection: MagicMock, cursor) -> None:
        collection.aggregate.side_effect = [
            cursor(
                [
                    {"_id": "processor", "count": 2, "amount": 198},
                    {"_id": "bulk_import", "count": 1, "amount": 499},
                ]
            ),
            cursor([{"_id": "completed", "count": 2}, {"_id": "refunded", "count": 1}]),
        ]

        stats = await store.get_stats("brand_a")

        assert stats.total_events == 3
        assert stats.total_amount == 697
        assert stats.by_source["bulk_import"].amount == 499
        assert stats.by_status == {"completed": 2, "refunded": 1}

    @pytest.mark.asyncio
    async def test_ensure_indexes(self, store: BillingEventStore, collection: MagicMock) -> None:
        await store.ensure_indexes()
        collection.create_index.assert_any_await("transaction_id", unique=True, sparse=True)
