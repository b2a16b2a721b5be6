"""FastAPI adapter over the billing reconciliation core.

Thin HTTP surface for the collaborators around the core: the processor's
real-time callback, the session/cookie layer (tracking), the paywall (access
checks) and the admin back office (imports, billing search and stats,
customer lookup).  The tenant is taken from the ``X-Tenant-ID`` header.

Connections and per-tenant stores live on ``app.state`` for the lifetime of
the process; routes get a :class:`BillingReconciler` through ``Depends`` so
tests can override it.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from billing_core.common.logging_config import set_correlation_id, setup_logging
from billing_core.common.metrics import PrometheusMiddleware, get_metrics_app
from billing_core.common.settings import CoreSettings
from billing_core.ingestion.processor_callback import ProcessorCallback, verify_callback_signature
from billing_core.processing.reconciler import BillingReconciler
from billing_core.storage.connection_registry import StoreRegistry, TenantConnectionRegistry
from billing_core.storage.errors import BatchInputError, InvalidCallbackSignature, StorageFailure
from billing_core.storage.models.billing import (
    BillingEventFilters,
    BillingSource,
    BillingStatus,
    ImportBatchCreate,
    ImportBatchFilters,
    ImportSource,
    ImportStatus,
)
from billing_core.storage.models.tracking import (
    DeviceInfo,
    MsisdnConfidence,
    NetworkType,
    SessionContext,
    UtmParams,
)

logger = logging.getLogger(__name__)

# Errors returned inline with an import result; the full list stays on the batch.
RESPONSE_ERROR_LIMIT = 20


# ── Request schemas ───────────────────────────────────────────────────


class TrackSessionRequest(BaseModel):
    session_id: str = Field(min_length=1)
    ip: str | None = None
    user_agent: str | None = None
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    referrer: str | None = None
    utm: UtmParams = Field(default_factory=UtmParams)
    landing_page_id: str | None = None
    landing_page_slug: str | None = None
    page_url: str | None = None


class IdentifyRequest(BaseModel):
    msisdn: str = Field(min_length=1)
    session_id: str | None = None
    confidence: MsisdnConfidence = MsisdnConfidence.CONFIRMED
    carrier: str | None = None
    carrier_code: str | None = None
    network_type: NetworkType | None = None


class StatusChangeRequest(BaseModel):
    status: BillingStatus


# ── Lifespan & dependencies ───────────────────────────────────────────


def create_app(settings: CoreSettings | None = None) -> FastAPI:
    settings = settings or CoreSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging("billing-api")
        connections = TenantConnectionRegistry(settings)
        app.state.stores = StoreRegistry(settings, connections)
        logger.info("Billing API started (env=%s)", settings.environment)
        yield
        await app.state.stores.close()
        logger.info("Billing API stopped")

    app = FastAPI(title="Billing Reconciliation API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(PrometheusMiddleware)
    app.middleware("http")(request_tracing)
    app.mount("/internal", get_metrics_app())
    app.add_exception_handler(StorageFailure, _storage_failure_handler)
    app.add_exception_handler(InvalidCallbackSignature, _invalid_signature_handler)
    app.add_exception_handler(BatchInputError, _batch_input_handler)
    _register_routes(app)
    return app


def get_settings(request: Request) -> CoreSettings:
    return request.app.state.settings


def get_tenant_id(
    request: Request,
    x_tenant_id: Annotated[str | None, Header()] = None,
) -> str:
    return x_tenant_id or get_settings(request).default_tenant


async def get_reconciler(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
) -> BillingReconciler:
    """Reconciler bound to the request's tenant; overridden in tests."""
    registry: StoreRegistry = request.app.state.stores
    stores = await registry.for_tenant(tenant_id)
    return BillingReconciler(stores, registry.settings)


# ── Middleware & error mapping ────────────────────────────────────────


async def request_tracing(request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    set_correlation_id(request_id)
    start = time.monotonic()
    response: Response = await call_next(request)
    elapsed = time.monotonic() - start
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "req=%s method=%s path=%s status=%d latency=%.4fs",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        elapsed,
    )
    return response


async def _storage_failure_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable, retry later"})


async def _invalid_signature_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Rejected callback on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=401, content={"detail": "Invalid callback signature"})


async def _batch_input_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ── Endpoints ─────────────────────────────────────────────────────────


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # -- processor callback ------------------------------------------------

    @app.post("/callbacks/processor")
    async def processor_callback(
        request: Request,
        x_callback_signature: Annotated[str, Header()] = "",
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
        settings: CoreSettings = Depends(get_settings),  # noqa: B008
    ) -> dict[str, Any]:
        payload: dict[str, Any] = await request.json()
        verify_callback_signature(payload, x_callback_signature, settings.callback_secret)
        try:
            callback = ProcessorCallback.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422, detail=exc.errors(include_url=False, include_context=False)
            ) from exc

        result = await reconciler.handle_processor_callback(
            callback, timeout=settings.store_timeout_seconds
        )
        grant = result.completion.grant if result.completion else None
        return {
            "event_id": result.event.event_id,
            "status": result.event.status,
            "duplicate": result.duplicate,
            "granted": grant is not None and grant.status == "completed",
        }

    # -- tracking ----------------------------------------------------------

    @app.post("/tracking/session")
    async def track_session(
        body: TrackSessionRequest,
        request: Request,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        context = SessionContext(
            tenant_id=reconciler.tenant_id,
            ip=body.ip or (request.client.host if request.client else ""),
            user_agent=body.user_agent or request.headers.get("user-agent", ""),
            device=body.device,
            referrer=body.referrer,
            utm=body.utm,
            landing_page_id=body.landing_page_id,
            landing_page_slug=body.landing_page_slug,
            page_url=body.page_url,
        )
        session = await reconciler.track_page_view(body.session_id, context)
        return session.model_dump(mode="json", exclude={"msisdn", "normalized_msisdn"})

    @app.post("/tracking/identify")
    async def identify(
        body: IdentifyRequest,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        customer = await reconciler.identify(
            body.session_id,
            body.msisdn,
            body.confidence,
            carrier=body.carrier,
            carrier_code=body.carrier_code,
            network_type=body.network_type,
        )
        if customer is None:
            return {"identified": False}
        return {
            "identified": True,
            "conversion_status": customer.conversion_status,
            "total_visits": customer.total_visits,
        }

    # -- paywall -----------------------------------------------------------

    @app.get("/access/{msisdn}/{content_item}")
    async def check_access(
        msisdn: str,
        content_item: str,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        return {"content_item": content_item, "granted": await reconciler.has_access(msisdn, content_item)}

    # -- imports -----------------------------------------------------------

    @app.post("/imports", status_code=201)
    async def upload_import(
        file: UploadFile = File(...),  # noqa: B008
        source: ImportSource = Form(ImportSource.DIMOCO),  # noqa: B008
        uploaded_by: str = Form("admin"),
        notes: str | None = Form(None),
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        content = await file.read()
        meta = ImportBatchCreate(
            tenant_id=reconciler.tenant_id,
            file_name=f"import_{uuid.uuid4().hex}.csv",
            original_file_name=file.filename,
            file_size=len(content),
            uploaded_by=uploaded_by,
            source=source,
            notes=notes,
        )
        batch = await reconciler.import_file(meta, content)
        data = batch.model_dump(mode="json")
        data["errors"] = data["errors"][:RESPONSE_ERROR_LIMIT]
        return data

    @app.get("/imports")
    async def list_imports(
        source: ImportSource | None = None,
        status: ImportStatus | None = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=500),
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        batches, total = await reconciler.stores.batches.list_batches(
            ImportBatchFilters(
                tenant_id=reconciler.tenant_id, source=source, status=status, page=page, limit=limit
            )
        )
        return {
            "batches": [b.model_dump(mode="json", exclude={"errors"}) for b in batches],
            "total": total,
            "page": page,
        }

    @app.get("/imports/{batch_id}")
    async def get_import(
        batch_id: str,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        batch = await reconciler.stores.batches.get_batch(batch_id)
        if batch is None:
            raise HTTPException(status_code=404, detail="Import batch not found")
        return batch.model_dump(mode="json")

    @app.post("/imports/{batch_id}/cancel")
    async def cancel_import(
        batch_id: str,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        batch = await reconciler.stores.batches.cancel_batch(batch_id)
        if batch is None:
            raise HTTPException(status_code=409, detail="Import batch is not processing")
        return batch.model_dump(mode="json", exclude={"errors"})

    # -- billing -----------------------------------------------------------

    @app.get("/billing/events")
    async def search_billing_events(
        msisdn: str | None = None,
        source: BillingSource | None = None,
        status: BillingStatus | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        import_batch_id: str | None = None,
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=1000),
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        events, total = await reconciler.stores.billing.search(
            BillingEventFilters(
                msisdn_contains=msisdn,
                tenant_id=reconciler.tenant_id,
                source=source,
                status=status,
                date_from=date_from,
                date_to=date_to,
                import_batch_id=import_batch_id,
                page=page,
                limit=limit,
            )
        )
        return {
            "events": [e.model_dump(mode="json", exclude={"raw_payload"}) for e in events],
            "total": total,
            "page": page,
        }

    @app.get("/billing/stats")
    async def billing_stats(
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        stats = await reconciler.stores.billing.get_stats(reconciler.tenant_id, date_from, date_to)
        return stats.model_dump(mode="json")

    @app.post("/billing/events/{event_id}/status")
    async def change_billing_status(
        event_id: str,
        body: StatusChangeRequest,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        event = await reconciler.apply_status_change(event_id, body.status)
        if event is None:
            raise HTTPException(status_code=404, detail="Billing event not found")
        return event.model_dump(mode="json", exclude={"raw_payload"})

    # -- customers ---------------------------------------------------------

    @app.get("/landing-pages/{slug}/stats")
    async def landing_page_stats(
        slug: str,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        stats = await reconciler.stores.customers.get_landing_page_stats(slug, reconciler.tenant_id)
        return stats.model_dump(mode="json")

    @app.get("/customers/{msisdn}")
    async def get_customer(
        msisdn: str,
        reconciler: BillingReconciler = Depends(get_reconciler),  # noqa: B008
    ) -> dict[str, Any]:
        customer = await reconciler.stores.customers.find_by_msisdn(msisdn)
        if customer is None:
            raise HTTPException(status_code=404, detail="Customer not found")
        return customer.model_dump(mode="json", exclude={"applied_purchase_refs"})


app = create_app()
