"""Shared fixtures: mocked Motor collections and sample domain objects."""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from billing_core.storage.models.billing import BillingEvent, BillingSource, BillingStatus


class FakeCursor:
    """Stands in for a Motor cursor: chainable modifiers plus ``async for``."""

    def __init__(self, docs: list[dict[str, Any]] | None = None) -> None:
        self._docs = list(docs or [])

    def sort(self, *args: Any, **kwargs: Any) -> "FakeCursor":
        return self

    def skip(self, *args: Any) -> "FakeCursor":
        return self

    def limit(self, *args: Any) -> "FakeCursor":
        return self

    def __aiter__(self):  # type: ignore[no-untyped-def]
        return self._iterate()

    async def _iterate(self):  # type: ignore[no-untyped-def]
        for doc in self._docs:
            yield doc


def make_collection(name: str = "test") -> MagicMock:
    col = MagicMock()
    col.name = name
    for method in (
        "insert_one",
        "find_one",
        "find_one_and_update",
        "update_one",
        "update_many",
        "count_documents",
        "create_index",
    ):
        setattr(col, method, AsyncMock())
    col.update_one.return_value = MagicMock(matched_count=1, modified_count=1, upserted_id=None)
    col.count_documents.return_value = 0
    col.find = MagicMock(return_value=FakeCursor())
    col.aggregate = MagicMock(return_value=FakeCursor())
    return col


@pytest.fixture
def cursor() -> type[FakeCursor]:
    return FakeCursor


@pytest.fixture
def collection() -> MagicMock:
    return make_collection()


@pytest.fixture
def db(collection: MagicMock) -> MagicMock:
    database = MagicMock()
    database.__getitem__.return_value = collection
    return database


@pytest.fixture
def event_time() -> datetime:
    return datetime(2024, 3, 1, 10, 0, tzinfo=UTC)


@pytest.fixture
def completed_event(event_time: datetime) -> BillingEvent:
    return BillingEvent(
        event_id="evt_001",
        msisdn="0170 1234567",
        normalized_msisdn="491701234567",
        tenant_id="brand_a",
        source=BillingSource.PROCESSOR,
        amount=99,
        event_time=event_time,
        status=BillingStatus.COMPLETED,
        transaction_id="TXN-1",
        content_item="article-42",
        session_id="sess_001",
    )
