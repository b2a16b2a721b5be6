"""Unit tests for the customer identity ledger."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from billing_core.storage.customer_ledger import CustomerLedger, rounded_average
from billing_core.storage.models.customer import ConversionStatus, IdentifiedInput, VisitMeta

MSISDN = "0170 1234567"
NORMALIZED = "491701234567"


@pytest.fixture
def ledger(db: MagicMock) -> CustomerLedger:
    return CustomerLedger(db, heavy_user_threshold=3)


def _customer_doc(**overrides) -> dict:
    doc = {
        "_id": NORMALIZED,
        "msisdn": MSISDN,
        "tenant_id": "brand_a",
        "conversion_status": "identified",
        "first_seen_at": datetime(2024, 3, 1, 10, 0),
        "last_seen_at": datetime(2024, 3, 1, 10, 0),
        "total_visits": 1,
        "total_purchases": 0,
        "total_billing_amount": 0,
    }
    doc.update(overrides)
    return doc


def _update_calls(collection: MagicMock) -> list[tuple[dict, dict]]:
    return [(c.args[0], c.args[1]) for c in collection.update_one.await_args_list]


class TestRoundedAverage:
    @pytest.mark.parametrize(
        ("total", "count", "expected"),
        [(1000, 3, 333), (5, 2, 3), (998, 2, 499), (0, 0, 0), (99, 1, 99)],
    )
    def test_half_up(self, total: int, count: int, expected: int) -> None:
        assert rounded_average(total, count) == expected


class TestUpsertIdentified:
    """Tests for the visitor -> identified step."""

    @pytest.mark.asyncio
    async def test_first_sighting(self, ledger: CustomerLedger, collection: MagicMock) -> None:
        collection.find_one_and_update.return_value = _customer_doc()
        collection.find_one.return_value = _customer_doc(carrier="Telekom", landing_pages_visited=["lp-quiz"])

        customer = await ledger.upsert_identified(
            IdentifiedInput(
                msisdn=MSISDN,
                tenant_id="brand_a",
                session_id="sess_001",
                landing_page_slug="lp-quiz",
                carrier="Telekom",
            )
        )

        assert customer.normalized_msisdn == NORMALIZED
        assert customer.conversion_status == ConversionStatus.IDENTIFIED
        query, update = collection.find_one_and_update.call_args.args
        assert query == {"_id": NORMALIZED}
        assert update["$inc"] == {"total_visits": 1, "visits_last_30d": 1}
        assert update["$addToSet"] == {"landing_pages_visited": "lp-quiz"}
        assert update["$setOnInsert"]["conversion_status"] == "identified"
        assert update["$setOnInsert"]["first_landing_page"] == "lp-quiz"

        calls = _update_calls(collection)
        assert ({"_id": NORMALIZED, "carrier": None}, {"$set": {"carrier": "Telekom"}}) in calls
        upgrade = next(q for q, _ in calls if "conversion_status" in q)
        assert upgrade["conversion_status"] == {"$in": ["visitor"]}

    @pytest.mark.asyncio
    async def test_existing_carrier_is_kept(self, ledger: CustomerLedger, collection: MagicMock) -> None:
        """First write wins for attribution fields."""
        collection.find_one_and_update.return_value = _customer_doc(total_visits=2, carrier="Vodafone")
        collection.find_one.return_value = _customer_doc(total_visits=2, carrier="Vodafone")

        await ledger.upsert_identified(IdentifiedInput(msisdn=MSISDN, tenant_id="brand_a", carrier="Telekom"))

        assert not any("carrier" in q for q, _ in _update_calls(collection))

    @pytest.mark.asyncio
    async def test_first_landing_page_for_customer_created_by_purchase(
        self, ledger: CustomerLedger, collection: MagicMock
    ) -> None:
        """A buyer who bought before any identified visit gets the first landing page they visit."""
        converted = _customer_doc(conversion_status="customer", total_visits=1, total_purchases=1)
        collection.find_one_and_update.return_value = converted
        collection.find_one.return_value = {**converted, "first_landing_page": "promo-a"}

        customer = await ledger.upsert_identified(
            IdentifiedInput(msisdn=MSISDN, tenant_id="brand_a", landing_page_slug="promo-a")
        )

        assert customer.first_landing_page == "promo-a"
        assert (
            {"_id": NORMALIZED, "first_landing_page": None},
            {"$set": {"first_landing_page": "promo-a"}},
        ) in _update_calls(collection)

    @pytest.mark.asyncio
    async def test_first_landing_page_is_kept(self, ledger: CustomerLedger, collection: MagicMock) -> None:
        collection.find_one_and_update.return_value = _customer_doc(first_landing_page="lp-quiz")
        collection.find_one.return_value = _customer_doc(first_landing_page="lp-quiz")

        await ledger.record_visit(MSISDN, VisitMeta(landing_page_slug="promo-a"))

        assert not any("first_landing_page" in q for q, _ in _update_calls(collection))

    @pytest.mark.asyncio
    async def test_heavy_user_flag_at_threshold(self, ledger: CustomerLedger, collection: MagicMock) -> None:
        collection.find_one_and_update.return_value = _customer_doc(total_visits=3)
        collection.find_one.return_value = _customer_doc(total_visits=3, heavy_user_flag=True)

        customer = await ledger.upsert_identified(IdentifiedInput(msisdn=MSISDN, tenant_id="brand_a"))

        assert customer.heavy_user_flag is True
        assert ({"_id": NORMALIZED, "heavy_user_flag": {"$ne": True}}, {"$set": {"heavy_user_flag": True}}) in (
            _update_calls(collection)
        )

    @pytest.mark.asyncio
    async def test_record_visit_of_unknown_subscriber(self, ledger: CustomerLedger, collection: MagicMock) -> None:
        collection.find_one_and_update.return_value = None
        assert await ledger.record_visit(MSISDN, VisitMeta(session_id="sess_001")) is None


class TestConvertToCustomer:
    """Tests for applying purchases to the ledger."""

    @pytest.mark.asyncio
    async def test_first_purchase(self, ledger: CustomerLedger, collection: MagicMock) -> None:
        collection.find_one_and_update.return_value = _customer_doc(
            conversion_status="customer", total_purchases=1, total_billing_amount=99
        )
        collection.find_one.return_value = _customer_doc(
            conversion_status="customer",
            total_purchases=1,
            total_billing_amount=99,
            average_purchase_value=99,
            converted_at=datetime(2024, 3, 1, 10, 0),
        )

        customer = await ledger.convert_to_customer(MSISDN, 99, purchase_ref="TXN-1", tenant_id="brand_a")

        assert customer.conversion_status == ConversionStatus.CUSTOMER
        assert customer.total_purchases == 1
        query, update = collection.find_one_and_update.call_args.args
        assert query == {"_id": NORMALIZED, "applied_purchase_refs": {"$ne": "TXN-1"}}
        assert update["$push"] == {"applied_purchase_refs": {"$each": ["TXN-1"], "$slice": -500}}
        assert update["$inc"] == {"total_purchases": 1, "total_billing_amount": 99}

        calls = _update_calls(collection)
        assert calls[0][0] == {"_id": NORMALIZED, "converted_at": None}
        assert calls[1] == (
            {"_id": NORMALIZED, "total_purchases": 1},
            {"$set": {"repurchase_count": 0, "average_purchase_value": 99}},
        )

    @pytest.mark.asyncio
    async def test_repeat_purchase_keeps_conversion_date(self, ledger: CustomerLedger, collection: MagicMock) -> None:
        converted = datetime(2024, 2, 1, 10, 0)
        doc = _customer_doc(
            conversion_status="customer", total_purchases=3, total_billing_amount=1000, converted_at=converted
        )
        collection.find_one_and_update.return_value = doc
        collection.find_one.return_value = {**doc, "repurchase_count": 2, "average_purchase_value": 333}

        customer = await ledger.convert_to_customer(MSISDN, 500, purchase_ref="TXN-3")

        calls = _update_calls(collection)
        assert calls == [
            (
                {"_id": NORMALIZED, "total_purchases": 3},
                {"$set": {"repurchase_count": 2, "average_purchase_value": 333}},
            )
        ]
        assert customer.repurchase_count == 2

    @pytest.mark.asyncio
    async def test_already_applied_reference_is_a_no_op(
        self, ledger: CustomerLedger, collection: MagicMock
    ) -> None:
        """The ref filter excludes the document, so the upsert collides on _id."""
        collection.find_one_and_update.side_effect = DuplicateKeyError("E11000 duplicate key error")
        collection.find_one.return_value = _customer_doc(
            conversion_status="customer", total_purchases=1, applied_purchase_refs=["TXN-1"]
        )

        customer = await ledger.convert_to_customer(MSISDN, 99, purchase_ref="TXN-1")

        assert customer.total_purchases == 1
        collection.update_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reference_history_is_capped(self, db: MagicMock, collection: MagicMock) -> None:
        ledger = CustomerLedger(db, purchase_ref_cap=2)
        collection.find_one_and_update.return_value = _customer_doc(total_purchases=1, total_billing_amount=99)
        collection.find_one.return_value = _customer_doc(total_purchases=1, conversion_status="customer")

        await ledger.convert_to_customer(MSISDN, 99, purchase_ref="TXN-9")

        _, update = collection.find_one_and_update.call_args.args
        assert update["$push"] == {"applied_purchase_refs": {"$each": ["TXN-9"], "$slice": -2}}

    @pytest.mark.asyncio
    async def test_without_reference(self, ledger: CustomerLedger, collection: MagicMock) -> None:
        collection.find_one_and_update.return_value = _customer_doc(total_purchases=1, total_billing_amount=99)
        collection.find_one.return_value = _customer_doc(total_purchases=1, conversion_status="customer")

        await ledger.convert_to_customer(MSISDN, 99)

        query, update = collection.find_one_and_update.call_args.args
        assert query == {"_id": NORMALIZED}
        assert "$push" not in update
        assert update["$setOnInsert"]["applied_purchase_refs"] == []


class TestLandingPageStats:
    @pytest.mark.asyncio
    async def test_rates(self, ledger: CustomerLedger, collection: MagicMock, cursor) -> None:
        collection.aggregate.return_value = cursor(
            [
                {
                    "_id": None,
                    "visitors": 10,
                    "identified": 6,
                    "customers": 4,
                    "revenue": 1000,
                    "purchases": 5,
                    "repurchases": 1,
                }
            ]
        )

        stats = await ledger.get_landing_page_stats("lp-quiz", "brand_a")

        assert stats.conversion_rate == 40.0
        assert stats.repurchase_rate == 20.0
        assert stats.average_order_value == 200
        pipeline = collection.aggregate.call_args.args[0]
        assert pipeline[0] == {"$match": {"landing_pages_visited": "lp-quiz", "tenant_id": "brand_a"}}

    @pytest.mark.asyncio
    async def test_unvisited_page(self, ledger: CustomerLedger) -> None:
        stats = await ledger.get_landing_page_stats("lp-none")
        assert stats.visitors == 0
        assert stats.conversion_rate == 0.0
