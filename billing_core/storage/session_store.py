"""Async MongoDB store for anonymous visitor sessions.

One document per opaque session id (unique index).  Page views and events are
counted with ``$inc`` on an upsert keyed by the session id, so concurrent
requests for the same session never create a second document nor lose an
increment.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from billing_core.ingestion.msisdn_normalizer import DEFAULT_COUNTRY_CODE, mask_msisdn, normalize_msisdn
from billing_core.storage.errors import translate_storage_errors
from billing_core.storage.models.base import utcnow
from billing_core.storage.models.tracking import (
    MsisdnConfidence,
    NetworkType,
    SessionContext,
    SessionFilters,
    SessionStats,
    VisitorSession,
)

logger = logging.getLogger(__name__)

RECENT_BY_IP_LIMIT = 10

# Fields driven by $inc/$set on every hit; excluded from the insert template.
_PER_HIT_FIELDS = ("page_views", "last_seen_at", "last_page_url")


def _to_session(doc: dict[str, Any]) -> VisitorSession:
    doc.pop("_id", None)
    return VisitorSession.from_document(doc)


class VisitorSessionStore:
    """Async CRUD over the ``visitor_sessions`` collection."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        country_code: str = DEFAULT_COUNTRY_CODE,
        collection: str = "visitor_sessions",
    ) -> None:
        self._col: AsyncIOMotorCollection = db[collection]
        self._country_code = country_code

    # ── writes ────────────────────────────────────────────────────────

    async def get_or_create(self, session_id: str, context: SessionContext) -> VisitorSession:
        """Count a page view, creating the session on its first one."""
        now = utcnow()
        template = VisitorSession(
            session_id=session_id,
            tenant_id=context.tenant_id,
            landing_page_id=context.landing_page_id,
            landing_page_slug=context.landing_page_slug,
            first_seen_at=now,
            last_seen_at=now,
            ip=context.ip,
            user_agent=context.user_agent,
            device=context.device,
            referrer=context.referrer,
            utm=context.utm,
        ).to_document()
        for key in _PER_HIT_FIELDS:
            template.pop(key, None)

        on_hit: dict[str, Any] = {"last_seen_at": now}
        if context.page_url:
            on_hit["last_page_url"] = context.page_url
        update = {"$setOnInsert": template, "$inc": {"page_views": 1}, "$set": on_hit}

        with translate_storage_errors("get or create session"):
            try:
                doc = await self._col.find_one_and_update(
                    {"session_id": session_id},
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # Lost the insert race: the document now exists, so this is a plain update.
                doc = await self._col.find_one_and_update(
                    {"session_id": session_id},
                    update,
                    return_document=ReturnDocument.AFTER,
                )
        session = _to_session(doc)
        if session.page_views == 1:
            logger.debug("Created visitor session %s for tenant %s", session_id, context.tenant_id)
        return session

    async def attach_identifier(
        self,
        session_id: str,
        raw_msisdn: str,
        confidence: MsisdnConfidence,
        *,
        carrier: str | None = None,
        carrier_code: str | None = None,
        network_type: NetworkType | None = None,
    ) -> VisitorSession | None:
        """Attach a subscriber number to a session.

        Confidence only moves up: CONFIRMED always wins, UNCONFIRMED is
        ignored once the session holds a CONFIRMED number, NONE writes
        nothing.  Returns the stored session (``None`` if unknown).
        """
        confidence = MsisdnConfidence(confidence)
        if confidence is MsisdnConfidence.NONE:
            return await self.find_session(session_id)

        updates: dict[str, Any] = {
            "msisdn": raw_msisdn,
            "normalized_msisdn": normalize_msisdn(raw_msisdn, self._country_code),
            "msisdn_confidence": confidence.value,
            "last_seen_at": utcnow(),
        }
        if carrier:
            updates["carrier"] = carrier
        if carrier_code:
            updates["carrier_code"] = carrier_code
        if network_type:
            updates["network_type"] = NetworkType(network_type).value

        writable = [c.value for c in MsisdnConfidence if c.rank <= confidence.rank]
        with translate_storage_errors("attach identifier"):
            doc = await self._col.find_one_and_update(
                {"session_id": session_id, "msisdn_confidence": {"$in": writable}},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            logger.debug("Kept existing identifier on session %s", session_id)
            return await self.find_session(session_id)

        logger.info(
            "Attached %s (%s) to session %s",
            mask_msisdn(updates["normalized_msisdn"]),
            confidence,
            session_id,
        )
        return _to_session(doc)

    async def mark_entered_portal(self, session_id: str) -> bool:
        return await self._set_flag(session_id, "entered_portal")

    async def mark_purchase_completed(self, session_id: str) -> bool:
        return await self._set_flag(session_id, "purchase_completed")

    async def _set_flag(self, session_id: str, flag: str) -> bool:
        with translate_storage_errors(f"set {flag}"):
            result = await self._col.update_one({"session_id": session_id}, {"$set": {flag: True}})
        return result.matched_count > 0

    async def record_event(self, session_id: str) -> bool:
        """Count an in-page event (click, scroll depth, ...)."""
        with translate_storage_errors("record session event"):
            result = await self._col.update_one(
                {"session_id": session_id},
                {"$inc": {"events": 1}, "$set": {"last_seen_at": utcnow()}},
            )
        return result.matched_count > 0

    async def update_network(
        self,
        session_id: str,
        network_type: NetworkType,
        carrier: str | None = None,
        carrier_code: str | None = None,
    ) -> bool:
        updates: dict[str, Any] = {"network_type": NetworkType(network_type).value}
        if carrier:
            updates["carrier"] = carrier
        if carrier_code:
            updates["carrier_code"] = carrier_code
        with translate_storage_errors("update session network"):
            result = await self._col.update_one({"session_id": session_id}, {"$set": updates})
        return result.matched_count > 0

    # ── reads ─────────────────────────────────────────────────────────

    async def find_session(self, session_id: str) -> VisitorSession | None:
        with translate_storage_errors("find session"):
            doc = await self._col.find_one({"session_id": session_id})
        return _to_session(doc) if doc else None

    async def find_recent_by_ip(
        self, ip: str, window_hours: float = 24, limit: int = RECENT_BY_IP_LIMIT
    ) -> list[VisitorSession]:
        """Sessions opened from *ip* within the window, most recently active first."""
        cutoff = utcnow() - timedelta(hours=window_hours)
        return await self._find(
            {"ip": ip, "first_seen_at": {"$gte": cutoff}}, limit=limit, operation="recent sessions by ip"
        )

    async def find_by_identifier(self, normalized_msisdn: str, limit: int = 50) -> list[VisitorSession]:
        return await self._find(
            {"normalized_msisdn": normalized_msisdn}, limit=limit, operation="sessions by identifier"
        )

    async def _find(self, query: dict[str, Any], *, limit: int, operation: str) -> list[VisitorSession]:
        results: list[VisitorSession] = []
        with translate_storage_errors(operation):
            cursor = self._col.find(query).sort("last_seen_at", DESCENDING).limit(limit)
            async for doc in cursor:
                results.append(_to_session(doc))
        return results

    async def list_sessions(self, filters: SessionFilters) -> tuple[list[VisitorSession], int]:
        """Paginated listing, most recently opened first; returns ``(sessions, total)``."""
        query = self._scope(filters.tenant_id, filters.date_from, filters.date_to)
        if filters.msisdn_confidence:
            query["msisdn_confidence"] = MsisdnConfidence(filters.msisdn_confidence).value
        if filters.network_type:
            query["network_type"] = NetworkType(filters.network_type).value

        sessions: list[VisitorSession] = []
        with translate_storage_errors("list sessions"):
            cursor = (
                self._col.find(query)
                .sort("first_seen_at", DESCENDING)
                .skip((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
            async for doc in cursor:
                sessions.append(_to_session(doc))
            total = await self._col.count_documents(query)
        return sessions, total

    async def get_session_stats(
        self,
        tenant_id: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> SessionStats:
        base = self._scope(tenant_id, date_from, date_to)
        with translate_storage_errors("session stats"):
            return SessionStats(
                total_sessions=await self._col.count_documents(base),
                msisdn_confirmed=await self._col.count_documents(
                    {**base, "msisdn_confidence": MsisdnConfidence.CONFIRMED.value}
                ),
                mobile_data=await self._col.count_documents(
                    {**base, "network_type": NetworkType.MOBILE_DATA.value}
                ),
                wifi=await self._col.count_documents({**base, "network_type": NetworkType.WIFI.value}),
                entered_portal=await self._col.count_documents({**base, "entered_portal": True}),
            )

    @staticmethod
    def _scope(
        tenant_id: str | None, date_from: datetime | None, date_to: datetime | None
    ) -> dict[str, Any]:
        query: dict[str, Any] = {}
        if tenant_id:
            query["tenant_id"] = tenant_id
        if date_from or date_to:
            query["first_seen_at"] = {}
            if date_from:
                query["first_seen_at"]["$gte"] = date_from
            if date_to:
                query["first_seen_at"]["$lte"] = date_to
        return query

    # ── indexing ───────────────────────────────────────────────────────

    async def ensure_indexes(self) -> None:
        with translate_storage_errors("session indexes"):
            await self._col.create_index("session_id", unique=True)
            await self._col.create_index(
                [("normalized_msisdn", ASCENDING), ("last_seen_at", DESCENDING)], sparse=True
            )
            await self._col.create_index([("ip", ASCENDING), ("first_seen_at", DESCENDING)])
            await self._col.create_index([("tenant_id", ASCENDING), ("first_seen_at", DESCENDING)])
            await self._col.create_index("landing_page_slug", sparse=True)
        logger.info("MongoDB indexes ensured on collection %s", self._col.name)
