"""Apply call lifecycle events to the call store.

The provider gives no ordering or exactly-once guarantee, so every branch is an
upsert: an event for a call we have never seen creates the row instead of being
rejected. Rows created that way carry approximate, backdated times; they are
never corrected afterwards.
"""
import asyncio
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ..config import Settings, get_settings
from ..db import get_db
from .event_normalizer import (
    CALL_ENDED,
    CALL_STARTED,
    CALL_SUMMARY,
    CALL_TRANSCRIPTION,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

UNKNOWN_CALLER = "Unknown"

STATUS_IN_PROGRESS = "in-progress"
STATUS_ENDED = "ended"
STATUS_COMPLETED = "completed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CallReconciler:
    def __init__(self, db, settings: Optional[Settings] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock or _utc_now
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._handlers = {
            CALL_STARTED: self._call_started,
            CALL_ENDED: self._call_ended,
            CALL_TRANSCRIPTION: self._call_transcription,
            CALL_SUMMARY: self._call_summary,
        }

    def _lock_for(self, call_id: str) -> asyncio.Lock:
        lock = self._locks.get(call_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[call_id] = lock
        return lock

    async def reconcile(
        self,
        event_kind: str,
        call_id: str,
        agent_id: Optional[str],
        tenant_id: int,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the persisted record, or None when the event changes nothing."""
        handler = self._handlers.get(event_kind)
        if handler is None:
            logger.warning(f"Unknown event kind {event_kind!r} for call {call_id}; acknowledging without changes")
            return None
        async with self._lock_for(call_id):
            return await handler(call_id, agent_id, tenant_id, payload or {})

    def _base_create(self, agent_id: Optional[str], tenant_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "caller_id": payload.get("caller_id") or UNKNOWN_CALLER,
            "workflow_id": agent_id,
            "tenant_id": tenant_id,
        }

    async def _call_started(self, call_id, agent_id, tenant_id, payload):
        now = self.clock()
        fields: Dict[str, Any] = {
            "start_time": now.isoformat(),
            "status": STATUS_IN_PROGRESS,
        }
        # A replayed start without caller/agent keeps what we already have
        if payload.get("caller_id"):
            fields["caller_id"] = payload["caller_id"]
        if agent_id:
            fields["workflow_id"] = agent_id
        create = dict(self._base_create(agent_id, tenant_id, payload), **fields)
        record, created = await self.db.upsert_call(call_id, create, fields)
        logger.info(f"Call {call_id} started ({'created' if created else 'updated'})")
        return record

    async def _call_ended(self, call_id, agent_id, tenant_id, payload):
        existing = await self.db.get_call(call_id)
        end = payload.get("end_time") or self.clock()
        reported = payload.get("duration_seconds")
        start = parse_timestamp(existing.get("start_time")) if existing else None

        # Provider clock skew (or a same-tick start) must not put the end at or before our start
        if start is not None and end <= start:
            end = start + timedelta(seconds=max(reported or 0, 1))

        duration = reported
        if duration is None:
            if start is not None:
                duration = max(0, round((end - start).total_seconds()))
            else:
                duration = self.settings.fallback_call_seconds

        fields = {
            "end_time": end.isoformat(),
            "duration_seconds": duration,
            "status": STATUS_ENDED,
        }
        # Start event never recorded: backdate the start by the call length
        create = dict(
            self._base_create(agent_id, tenant_id, payload),
            start_time=(end - timedelta(seconds=duration)).isoformat(),
            **fields,
        )
        if existing is None:
            logger.info(f"Call {call_id} ended before a start was recorded; synthesizing record")
        record, _ = await self.db.upsert_call(call_id, create, fields)
        logger.info(f"Call {call_id} ended after {duration}s")
        return record

    async def _call_transcription(self, call_id, agent_id, tenant_id, payload):
        text = payload.get("transcription")
        if text is None:
            logger.warning(f"Transcription event for call {call_id} has no transcript; nothing stored")
            return None
        now = self.clock()
        fields = {"transcription": text}
        create = dict(
            self._base_create(agent_id, tenant_id, payload),
            start_time=(now - timedelta(seconds=self.settings.transcription_backdate_seconds)).isoformat(),
            status=STATUS_IN_PROGRESS,
            **fields,
        )
        record, created = await self.db.upsert_call(call_id, create, fields)
        logger.info(f"Transcription stored for call {call_id} ({len(text)} chars, {'new' if created else 'existing'} record)")
        return record

    async def _call_summary(self, call_id, agent_id, tenant_id, payload):
        text = payload.get("summary")
        if text is None:
            logger.warning(f"Summary event for call {call_id} has no summary; nothing stored")
            return None
        now = self.clock()
        fields = {"summary": text, "status": STATUS_COMPLETED}
        create = dict(
            self._base_create(agent_id, tenant_id, payload),
            start_time=(now - timedelta(seconds=self.settings.fallback_call_seconds)).isoformat(),
            end_time=now.isoformat(),
            **fields,
        )
        record, created = await self.db.upsert_call(call_id, create, fields)
        logger.info(f"Summary stored for call {call_id} ({'new' if created else 'existing'} record)")
        return record


_reconciler: Optional[CallReconciler] = None


def get_reconciler() -> CallReconciler:
    global _reconciler
    db = get_db()
    if _reconciler is None or _reconciler.db is not db:
        _reconciler = CallReconciler(db, settings=get_settings())
    return _reconciler


def reset_reconciler() -> None:
    global _reconciler
    _reconciler = None
