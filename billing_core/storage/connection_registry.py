"""Per-tenant MongoDB connections and store bundles.

Each tenant (brand) lives in its own database ``{prefix}{tenant_id}``.  The
:class:`TenantConnectionRegistry` opens one pooled client per tenant on first
use; concurrent first requests for the same tenant await a single in-flight
connection task instead of opening one client each.  The
:class:`StoreRegistry` hands out one :class:`TenantStores` bundle per tenant
and makes sure its indexes exist before the bundle is first used.

Both registries are owned by the process (API lifespan, CLI invocation) and
passed explicitly to whoever needs them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from billing_core.common.metrics import tenant_connections_open
from billing_core.common.settings import CoreSettings
from billing_core.storage.billing_event_store import BillingEventStore
from billing_core.storage.customer_ledger import CustomerLedger
from billing_core.storage.import_batch_store import ImportBatchStore
from billing_core.storage.session_store import VisitorSessionStore
from billing_core.storage.unlock_ledger import UnlockLedger

logger = logging.getLogger(__name__)


class TenantConnectionRegistry:
    """Lazily opened, deduplicated MongoDB clients keyed by tenant."""

    def __init__(
        self,
        settings: CoreSettings,
        client_factory: Callable[..., Any] = AsyncIOMotorClient,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory
        self._clients: dict[str, Any] = {}
        self._databases: dict[str, AsyncIOMotorDatabase] = {}
        self._pending: dict[str, asyncio.Task[AsyncIOMotorDatabase]] = {}

    def database_name(self, tenant_id: str) -> str:
        return f"{self._settings.database_prefix}{tenant_id}"

    async def get_database(self, tenant_id: str) -> AsyncIOMotorDatabase:
        """Return the tenant's database, connecting on first use."""
        db = self._databases.get(tenant_id)
        if db is not None:
            return db

        task = self._pending.get(tenant_id)
        if task is None:
            task = asyncio.ensure_future(self._connect(tenant_id))
            self._pending[tenant_id] = task
            task.add_done_callback(lambda _t, key=tenant_id: self._pending.pop(key, None))
        return await asyncio.shield(task)

    async def _connect(self, tenant_id: str) -> AsyncIOMotorDatabase:
        client = self._client_factory(
            self._settings.mongodb_uri,
            maxPoolSize=self._settings.max_pool_size,
            timeoutMS=int(self._settings.store_timeout_seconds * 1000),
            tz_aware=True,
        )
        try:
            await self._ping(client)
        except Exception:
            client.close()
            raise

        name = self.database_name(tenant_id)
        db = client[name]
        self._clients[tenant_id] = client
        self._databases[tenant_id] = db
        tenant_connections_open.inc()
        logger.info("Connected to MongoDB database %s", name)
        return db

    @retry(
        retry=retry_if_exception_type(ConnectionFailure),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _ping(self, client: Any) -> None:
        await client.admin.command("ping")

    async def close(self) -> None:
        """Close every open client (graceful shutdown)."""
        for tenant_id, client in self._clients.items():
            client.close()
            tenant_connections_open.dec()
            logger.info("Closed MongoDB connection for tenant %s", tenant_id)
        self._clients.clear()
        self._databases.clear()


@dataclass
class TenantStores:
    """All stores of one tenant, sharing a database handle."""

    tenant_id: str
    sessions: VisitorSessionStore
    billing: BillingEventStore
    batches: ImportBatchStore
    customers: CustomerLedger
    unlocks: UnlockLedger

    @classmethod
    def build(cls, tenant_id: str, db: AsyncIOMotorDatabase, settings: CoreSettings) -> TenantStores:
        country_code = settings.country_code_for(tenant_id)
        return cls(
            tenant_id=tenant_id,
            sessions=VisitorSessionStore(db, country_code=country_code),
            billing=BillingEventStore(db, country_code=country_code),
            batches=ImportBatchStore(db, error_cap=settings.import_error_cap),
            customers=CustomerLedger(
                db,
                country_code=country_code,
                heavy_user_threshold=settings.heavy_user_threshold,
                session_history_cap=settings.session_history_cap,
                purchase_ref_cap=settings.purchase_ref_cap,
            ),
            unlocks=UnlockLedger(db, country_code=country_code),
        )

    async def ensure_indexes(self) -> None:
        await self.sessions.ensure_indexes()
        await self.billing.ensure_indexes()
        await self.batches.ensure_indexes()
        await self.customers.ensure_indexes()
        await self.unlocks.ensure_indexes()


class StoreRegistry:
    """One :class:`TenantStores` bundle per tenant, created once and reused."""

    def __init__(self, settings: CoreSettings, connections: TenantConnectionRegistry) -> None:
        self.settings = settings
        self._connections = connections
        self._stores: dict[str, TenantStores] = {}
        self._lock = asyncio.Lock()

    async def for_tenant(self, tenant_id: str) -> TenantStores:
        stores = self._stores.get(tenant_id)
        if stores is not None:
            return stores
        async with self._lock:
            stores = self._stores.get(tenant_id)
            if stores is None:
                db = await self._connections.get_database(tenant_id)
                stores = TenantStores.build(tenant_id, db, self.settings)
                await stores.ensure_indexes()
                self._stores[tenant_id] = stores
        return stores

    async def close(self) -> None:
        self._stores.clear()
        await self._connections.close()
