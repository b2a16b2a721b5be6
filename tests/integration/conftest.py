"""In-memory MongoDB for store scenarios.

The stores talk to Motor's awaitable API; these thin wrappers put that API
over a synchronous ``mongomock`` database so scenarios run without a server.
"""

from collections.abc import AsyncIterator
from typing import Any

import mongomock
import pytest
import pytest_asyncio

from billing_core.common.settings import CoreSettings
from billing_core.processing.reconciler import BillingReconciler
from billing_core.storage.connection_registry import TenantStores


class AsyncCursor:
    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    def sort(self, *args: Any, **kwargs: Any) -> "AsyncCursor":
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, count: int) -> "AsyncCursor":
        self._cursor = self._cursor.skip(count)
        return self

    def limit(self, count: int) -> "AsyncCursor":
        self._cursor = self._cursor.limit(count)
        return self

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        for doc in self._cursor:
            yield doc


class AsyncCollection:
    """Motor-shaped collection over a ``mongomock`` one."""

    def __init__(self, collection: mongomock.Collection) -> None:
        self._collection = collection

    @property
    def name(self) -> str:
        return self._collection.name

    async def insert_one(self, *args: Any, **kwargs: Any) -> Any:
        return self._collection.insert_one(*args, **kwargs)

    async def find_one(self, *args: Any, **kwargs: Any) -> Any:
        return self._collection.find_one(*args, **kwargs)

    async def find_one_and_update(self, *args: Any, **kwargs: Any) -> Any:
        return self._collection.find_one_and_update(*args, **kwargs)

    async def update_one(self, *args: Any, **kwargs: Any) -> Any:
        return self._collection.update_one(*args, **kwargs)

    async def update_many(self, *args: Any, **kwargs: Any) -> Any:
        return self._collection.update_many(*args, **kwargs)

    async def count_documents(self, *args: Any, **kwargs: Any) -> int:
        return self._collection.count_documents(*args, **kwargs)

    async def create_index(self, *args: Any, **kwargs: Any) -> str:
        return self._collection.create_index(*args, **kwargs)

    def find(self, *args: Any, **kwargs: Any) -> AsyncCursor:
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, pipeline: list[dict[str, Any]], **kwargs: Any) -> AsyncCursor:
        return AsyncCursor(self._collection.aggregate(pipeline, **kwargs))


class AsyncDatabase:
    def __init__(self, database: mongomock.Database) -> None:
        self._database = database

    def __getitem__(self, name: str) -> AsyncCollection:
        return AsyncCollection(self._database[name])


@pytest.fixture
def settings() -> CoreSettings:
    return CoreSettings(heavy_user_threshold=3)


@pytest_asyncio.fixture
async def stores(settings: CoreSettings) -> TenantStores:
    database = AsyncDatabase(mongomock.MongoClient()["newsportal_brand_a"])
    bundle = TenantStores.build("brand_a", database, settings)  # type: ignore[arg-type]
    await bundle.ensure_indexes()
    return bundle


@pytest.fixture
def reconciler(stores: TenantStores, settings: CoreSettings) -> BillingReconciler:
    return BillingReconciler(stores, settings)
