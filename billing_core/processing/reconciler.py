"""Identity and billing reconciliation for one tenant.

Wires the stores together along the funnel:

* page views open or refresh a visitor session;
* an observed subscriber number is attached to the session and registers an
  identified customer;
* a billing event that reaches ``completed`` identifies the buyer on the
  session it came from, converts the customer and, when it names a content
  item, unlocks that item.

The post-completion sequence (customer conversion, then unlock grant) is not
transactional.  Each step is idempotent per purchase reference, so running it
again for an event that is already completed converges to the same state;
this is what :meth:`BillingReconciler.replay_completion` is for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from billing_core.common.metrics import processing_latency_seconds
from billing_core.common.settings import CoreSettings
from billing_core.ingestion.billing_row_parser import ParsedRow
from billing_core.ingestion.msisdn_normalizer import country_for_msisdn, mask_msisdn
from billing_core.ingestion.processor_callback import ProcessorCallback
from billing_core.processing.import_processor import ImportBatchProcessor
from billing_core.storage.connection_registry import TenantStores
from billing_core.storage.errors import store_timeout
from billing_core.storage.models.billing import (
    BillingEvent,
    BillingEventInput,
    BillingSource,
    BillingStatus,
    ColumnMapping,
    ImportBatch,
    ImportBatchCreate,
)
from billing_core.storage.models.customer import Customer, IdentifiedInput
from billing_core.storage.models.tracking import (
    MsisdnConfidence,
    NetworkType,
    SessionContext,
    VisitorSession,
)
from billing_core.storage.models.unlock import UnlockGrant

logger = logging.getLogger(__name__)

# Import rows in these statuses count as purchases; the settlement file is the carrier's report.
IMPORT_PURCHASE_STATUSES = frozenset({BillingStatus.BILLED, BillingStatus.COMPLETED})

# Statuses an import row may push onto an event that was already recorded.
IMPORT_REVERSAL_STATUSES = frozenset({BillingStatus.REFUNDED, BillingStatus.CHARGEBACK})


@dataclass(frozen=True)
class CompletionResult:
    customer: Customer
    grant: UnlockGrant | None


@dataclass(frozen=True)
class CallbackResult:
    event: BillingEvent
    duplicate: bool
    completion: CompletionResult | None


class BillingReconciler:
    """Orchestrates sessions, billing events, customers and unlocks of one tenant.

    Every public operation accepts an optional ``timeout`` (seconds) that
    bounds each store call it makes.
    """

    def __init__(self, stores: TenantStores, settings: CoreSettings) -> None:
        self.stores = stores
        self._settings = settings
        self.imports = ImportBatchProcessor(
            stores.batches,
            stores.billing,
            country_code=settings.country_code_for(stores.tenant_id),
            major_unit_threshold=settings.major_unit_threshold,
            on_event=self._apply_imported_event,
        )

    @property
    def tenant_id(self) -> str:
        return self.stores.tenant_id

    # ── visitor funnel ────────────────────────────────────────────────

    async def track_page_view(
        self, session_id: str, context: SessionContext, *, timeout: float | None = None
    ) -> VisitorSession:
        with store_timeout(timeout):
            return await self.stores.sessions.get_or_create(session_id, context)

    async def identify(
        self,
        session_id: str | None,
        raw_msisdn: str,
        confidence: MsisdnConfidence = MsisdnConfidence.CONFIRMED,
        *,
        carrier: str | None = None,
        carrier_code: str | None = None,
        network_type: NetworkType | None = None,
        timeout: float | None = None,
    ) -> Customer | None:
        """Attach a detected number to the session and register the customer.

        Returns ``None`` when *confidence* is ``NONE`` (nothing is recorded).
        """
        if MsisdnConfidence(confidence) is MsisdnConfidence.NONE:
            return None

        with store_timeout(timeout):
            return await self._register_identifier(
                session_id,
                raw_msisdn,
                confidence,
                carrier=carrier,
                carrier_code=carrier_code,
                network_type=network_type,
            )

    async def _register_identifier(
        self,
        session_id: str | None,
        raw_msisdn: str,
        confidence: MsisdnConfidence,
        *,
        carrier: str | None = None,
        carrier_code: str | None = None,
        network_type: NetworkType | None = None,
    ) -> Customer:
        session: VisitorSession | None = None
        if session_id:
            session = await self.stores.sessions.attach_identifier(
                session_id,
                raw_msisdn,
                confidence,
                carrier=carrier,
                carrier_code=carrier_code,
                network_type=network_type,
            )
        return await self.stores.customers.upsert_identified(
            IdentifiedInput(
                msisdn=raw_msisdn,
                tenant_id=self.tenant_id,
                session_id=session_id if session else None,
                landing_page_slug=session.landing_page_slug if session else None,
                campaign=session.utm.campaign if session else None,
                source=session.utm.source if session else None,
                carrier=carrier,
                country=country_for_msisdn(raw_msisdn, self._country_code),
            )
        )

    async def _identify_buyer(self, event: BillingEvent) -> None:
        """Attach the buyer of a completed purchase to the session it came from.

        Nothing is written when the session is unknown or already holds the
        buyer's confirmed number, so a replayed callback counts no extra visit.
        """
        session = await self.stores.sessions.find_session(event.session_id)
        if session is None:
            logger.info("Purchase %s names unknown session %s", event.event_id, event.session_id)
            return
        if (
            session.msisdn_confidence == MsisdnConfidence.CONFIRMED
            and session.normalized_msisdn == event.normalized_msisdn
        ):
            return
        await self._register_identifier(event.session_id, event.msisdn, MsisdnConfidence.CONFIRMED)
        logger.info("Identified session %s from purchase %s", event.session_id, event.event_id)

    async def link_purchase_to_recent_session(
        self,
        ip: str,
        raw_msisdn: str,
        *,
        window_hours: float = 24,
        timeout: float | None = None,
    ) -> VisitorSession | None:
        """Tie a purchase that arrived without a session reference to the
        most recently active session opened from the same address."""
        with store_timeout(timeout):
            candidates = await self.stores.sessions.find_recent_by_ip(ip, window_hours)
            if not candidates:
                logger.info("No recent session from %s to link purchase of %s", ip, mask_msisdn(raw_msisdn))
                return None
            session = candidates[0]
            linked = await self.stores.sessions.attach_identifier(
                session.session_id, raw_msisdn, MsisdnConfidence.CONFIRMED
            )
            await self.stores.sessions.mark_purchase_completed(session.session_id)
        logger.info("Linked purchase of %s to session %s", mask_msisdn(raw_msisdn), session.session_id)
        return linked

    # ── real-time billing ────────────────────────────────────────────

    async def handle_processor_callback(
        self, callback: ProcessorCallback, *, timeout: float | None = None
    ) -> CallbackResult:
        """Record a processor callback and run the completion sequence.

        A repeated callback returns the stored event; if it reports a
        different status the change is applied to the stored event.
        """
        status = callback.billing_status
        with processing_latency_seconds.labels(stage="callback").time(), store_timeout(timeout):
            result = await self.stores.billing.record(
                BillingEventInput(
                    msisdn=callback.msisdn,
                    tenant_id=self.tenant_id,
                    source=BillingSource.PROCESSOR,
                    amount=callback.amount,
                    currency=callback.currency,
                    product_code=callback.product_code,
                    service_name=callback.service_name,
                    event_time=callback.timestamp,
                    status=status,
                    raw_payload=callback.model_dump(mode="json"),
                    session_id=callback.session_id,
                    content_item=callback.content_item,
                    content_slug=callback.content_slug,
                    transaction_id=callback.transaction_id,
                )
            )
            event = result.event
            if result.duplicate and event.status != status:
                event = await self.stores.billing.update_status(event.event_id, status) or event
                await self.stores.unlocks.mirror_status(event.purchase_ref, status)

            completion = None
            if event.status == BillingStatus.COMPLETED:
                if event.session_id:
                    await self._identify_buyer(event)
                completion = await self._complete(event)
                if event.session_id:
                    await self.stores.sessions.mark_purchase_completed(event.session_id)
        return CallbackResult(event=event, duplicate=result.duplicate, completion=completion)

    async def apply_status_change(
        self, event_id: str, status: BillingStatus, *, timeout: float | None = None
    ) -> BillingEvent | None:
        """Move an event to *status*; its grant follows, a completion runs the sequence."""
        with store_timeout(timeout):
            event = await self.stores.billing.update_status(event_id, status)
            if event is None:
                return None
            await self.stores.unlocks.mirror_status(event.purchase_ref, status)
            if event.status == BillingStatus.COMPLETED:
                await self._complete(event)
        return event

    async def replay_completion(self, event_id: str, *, timeout: float | None = None) -> CompletionResult | None:
        """Re-run the post-completion sequence for a completed event.

        Returns ``None`` for an unknown event.

        Raises:
            ValueError: The event is not completed.
        """
        with store_timeout(timeout):
            event = await self.stores.billing.find_by_event_id(event_id)
            if event is None:
                return None
            if event.status != BillingStatus.COMPLETED:
                raise ValueError(f"Billing event {event_id} is {event.status}, not completed")
            completion = await self._complete(event)
        logger.info("Replayed completion of billing event %s", event_id)
        return completion

    async def _complete(self, event: BillingEvent) -> CompletionResult:
        customer = await self.stores.customers.convert_to_customer(
            event.msisdn,
            event.amount,
            purchase_ref=event.purchase_ref,
            tenant_id=event.tenant_id,
            purchased_at=event.event_time,
        )
        grant = None
        if event.content_item:
            grant = await self.stores.unlocks.grant(event.msisdn, event.content_item, event)
        return CompletionResult(customer=customer, grant=grant)

    async def has_access(self, raw_msisdn: str, content_item: str, *, timeout: float | None = None) -> bool:
        with store_timeout(timeout):
            return await self.stores.unlocks.has_access(raw_msisdn, content_item)

    # ── bulk import ──────────────────────────────────────────────────

    async def import_rows(
        self,
        meta: ImportBatchCreate,
        rows: list[dict[str, Any]],
        mapping: ColumnMapping | None = None,
        *,
        timeout: float | None = None,
    ) -> ImportBatch:
        with store_timeout(timeout):
            batch = await self.imports.create_batch(meta)
            return await self.imports.process_rows(batch, rows, mapping)

    async def import_file(
        self,
        meta: ImportBatchCreate,
        source: str | Path | bytes,
        *,
        detect_columns: bool = True,
        timeout: float | None = None,
    ) -> ImportBatch:
        with store_timeout(timeout):
            return await self.imports.import_file(meta, source, detect_columns=detect_columns)

    async def _apply_imported_event(self, event: BillingEvent, row: ParsedRow, duplicate: bool) -> None:
        if duplicate and row.status in IMPORT_REVERSAL_STATUSES and event.status != row.status:
            logger.info("Import reports %s for billing event %s", row.status, event.event_id)
            await self.stores.billing.update_status(event.event_id, row.status)
            await self.stores.unlocks.mirror_status(event.purchase_ref, row.status)
            return
        if event.status in IMPORT_PURCHASE_STATUSES:
            await self.stores.customers.convert_to_customer(
                event.msisdn,
                event.amount,
                purchase_ref=event.purchase_ref,
                tenant_id=event.tenant_id,
                purchased_at=event.event_time,
            )

    @property
    def _country_code(self) -> str:
        return self._settings.country_code_for(self.tenant_id)
