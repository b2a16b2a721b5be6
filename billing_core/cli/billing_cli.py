"""Click-based operator CLI for the billing reconciliation core.

Provides four commands:

* ``import-file`` -- imports a CSV/TSV settlement file as a new batch.
* ``ensure-indexes`` -- creates the indexes of a tenant's collections.
* ``replay`` -- re-runs the post-completion sequence for a billing event.
* ``stats`` -- prints billing, customer and unlock roll-ups for a tenant.

Connection settings come from the environment (``MONGODB_URI``,
``BILLING_*``).
"""

from __future__ import annotations

import asyncio
import json
import pathlib
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from billing_core.common.logging_config import setup_logging
from billing_core.common.settings import CoreSettings
from billing_core.processing.reconciler import BillingReconciler
from billing_core.storage.connection_registry import StoreRegistry, TenantConnectionRegistry
from billing_core.storage.errors import BatchInputError, StorageFailure
from billing_core.storage.models.billing import ImportBatchCreate, ImportSource

T = TypeVar("T")


def _run(tenant: str, action: Callable[[BillingReconciler], Awaitable[T]]) -> T:
    """Open the tenant's stores, run *action*, and close the connections."""

    async def runner() -> T:
        settings = CoreSettings.from_env()
        registry = StoreRegistry(settings, TenantConnectionRegistry(settings))
        try:
            stores = await registry.for_tenant(tenant)
            return await action(BillingReconciler(stores, settings))
        finally:
            await registry.close()

    try:
        return asyncio.run(runner())
    except StorageFailure as exc:
        raise click.ClickException(f"Storage unavailable: {exc}") from exc


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# --------------------------------------------------------------------------- #
# CLI group                                                                    #
# --------------------------------------------------------------------------- #


@click.group()
@click.option("--log-level", default="WARNING", show_default=True, help="Root log level.")
def cli(log_level: str) -> None:
    """Billing core -- imports, replays and reconciliation stats."""
    setup_logging("billing-cli", log_level)


@cli.command("import-file")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path))
@click.option("--tenant", required=True, help="Tenant (brand) id.")
@click.option(
    "--source",
    type=click.Choice([s.value for s in ImportSource], case_sensitive=False),
    default=ImportSource.DIMOCO.value,
    show_default=True,
    help="Kind of settlement file.",
)
@click.option("--uploaded-by", default="cli", show_default=True, help="Operator recorded on the batch.")
@click.option(
    "--detect-columns/--default-columns",
    default=True,
    show_default=True,
    help="Guess the column mapping from the header row.",
)
def import_file(path: pathlib.Path, tenant: str, source: str, uploaded_by: str, detect_columns: bool) -> None:
    """Import a settlement file PATH as a new batch."""
    meta = ImportBatchCreate(
        tenant_id=tenant,
        file_name=path.name,
        original_file_name=path.name,
        file_size=path.stat().st_size,
        uploaded_by=uploaded_by,
        source=ImportSource(source.upper()),
    )
    try:
        batch = _run(tenant, lambda r: r.import_file(meta, path, detect_columns=detect_columns))
    except BatchInputError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(
        f"Batch {batch.batch_id} {batch.status}: {batch.total_rows} rows, "
        f"{batch.accepted} accepted, {batch.rejected} rejected, {batch.duplicates} duplicates"
    )
    for error in batch.errors[:20]:
        click.echo(f"  row {error.row}: {error.message}")


@cli.command("ensure-indexes")
@click.option("--tenant", required=True, help="Tenant (brand) id.")
def ensure_indexes(tenant: str) -> None:
    """Create the indexes of every collection of TENANT."""

    async def action(reconciler: BillingReconciler) -> None:
        await reconciler.stores.ensure_indexes()

    _run(tenant, action)
    click.echo(f"Indexes ensured for tenant {tenant}")


@cli.command("replay")
@click.argument("event_id")
@click.option("--tenant", required=True, help="Tenant (brand) id.")
def replay(event_id: str, tenant: str) -> None:
    """Re-run customer conversion and unlock for a completed EVENT_ID."""
    try:
        completion = _run(tenant, lambda r: r.replay_completion(event_id))
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    if completion is None:
        raise click.ClickException(f"Billing event {event_id} not found")
    _echo_json(
        {
            "event_id": event_id,
            "conversion_status": completion.customer.conversion_status,
            "total_purchases": completion.customer.total_purchases,
            "grant": completion.grant.model_dump(mode="json") if completion.grant else None,
        }
    )


@cli.command("stats")
@click.option("--tenant", required=True, help="Tenant (brand) id.")
def stats(tenant: str) -> None:
    """Print billing, customer, unlock and landing-page roll-ups for TENANT."""

    async def action(reconciler: BillingReconciler) -> dict[str, Any]:
        stores = reconciler.stores
        return {
            "billing": (await stores.billing.get_stats(tenant)).model_dump(mode="json"),
            "customers": (await stores.customers.get_stats(tenant)).model_dump(mode="json"),
            "unlocks": (await stores.unlocks.get_stats()).model_dump(mode="json"),
            "sessions": (await stores.sessions.get_session_stats(tenant)).model_dump(mode="json"),
            "landing_pages": [
                s.model_dump(mode="json") for s in await stores.customers.get_all_landing_page_stats(tenant)
            ],
        }

    _echo_json(_run(tenant, action))


if __name__ == "__main__":
    cli()
