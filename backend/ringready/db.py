from typing import Any, Dict, Iterable, List, Optional, Tuple
import os
import math
import logging
from datetime import datetime, timezone

import httpx
from fastapi.concurrency import run_in_threadpool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

# Call store adapters: Supabase when SUPABASE_URL is set, in-process otherwise.
from supabase import create_client, Client

from .models.db_models import CALLS_TABLE, CALL_COLUMNS

logger = logging.getLogger(__name__)

# Columns a partial update may touch; identity columns are fixed at insert.
MUTABLE_COLUMNS = frozenset(CALL_COLUMNS) - {"id", "call_id", "created_at"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _writable(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (fields or {}).items() if k in MUTABLE_COLUMNS}


def compute_call_stats(rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Aggregate totals over every call row.

    Minutes are rounded up from the summed seconds; rows without a workflow id
    are left out of the per-workflow counts.
    """
    total_calls = 0
    total_seconds = 0
    workflow_counts: Dict[str, int] = {}
    for row in rows:
        total_calls += 1
        total_seconds += max(0, row.get("duration_seconds") or 0)
        workflow_id = row.get("workflow_id")
        if workflow_id:
            workflow_counts[workflow_id] = workflow_counts.get(workflow_id, 0) + 1
    return {
        "totalCalls": total_calls,
        "totalMinutes": math.ceil(total_seconds / 60),
        "workflowCounts": workflow_counts,
    }


class InMemoryDB:
    # Coroutines below never await between reading and writing a row, so each one
    # is atomic with respect to other tasks on the event loop.
    def __init__(self) -> None:
        self.calls: Dict[str, Dict[str, Any]] = {}
        self._next_id = 1

    async def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        row = self.calls.get(str(call_id))
        return dict(row) if row else None

    def _insert(self, call_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        obj: Dict[str, Any] = {column: None for column in CALL_COLUMNS}
        obj.update({"status": "started", "tenant_id": 1})
        obj.update(_writable(fields))
        obj["id"] = self._next_id
        obj["call_id"] = call_id
        obj["created_at"] = utc_now_iso()
        self._next_id += 1
        self.calls[call_id] = obj
        return obj

    async def upsert_call(self, call_id: str, create_fields: Dict[str, Any], update_fields: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        call_id = str(call_id)
        existing = self.calls.get(call_id)
        if existing is None:
            return dict(self._insert(call_id, create_fields)), True
        existing.update(_writable(update_fields))
        return dict(existing), False

    async def update_call(self, call_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        existing = self.calls.get(str(call_id))
        if existing is None:
            return None
        existing.update(_writable(fields))
        return dict(existing)

    async def list_calls(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        items = list(self.calls.values())
        if status:
            items = [c for c in items if c.get("status") == status]
        items.sort(key=lambda c: (c["created_at"], c["id"]), reverse=True)
        if limit and limit > 0:
            items = items[:limit]
        return [dict(c) for c in items]

    async def get_call_stats(self) -> Dict[str, Any]:
        return compute_call_stats(self.calls.values())


@retry(
    wait=wait_exponential(min=0.5, max=4),
    stop=stop_after_attempt(3),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
def _execute(query):
    return query.execute()


class SupabaseDB:
    def __init__(self, client: Client) -> None:
        self.client = client

    def _table(self):
        return self.client.table(CALLS_TABLE)

    async def _run(self, query) -> List[Dict[str, Any]]:
        # supabase-py is synchronous; keep it off the event loop
        res = await run_in_threadpool(_execute, query)
        return res.data or []

    async def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._run(self._table().select("*").eq("call_id", str(call_id)).limit(1))
        return rows[0] if rows else None

    async def upsert_call(self, call_id: str, create_fields: Dict[str, Any], update_fields: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        row = dict(_writable(create_fields), call_id=str(call_id))
        # ignore_duplicates turns the insert into a no-op when another delivery won the race
        inserted = await self._run(self._table().upsert(row, on_conflict="call_id", ignore_duplicates=True))
        if inserted:
            return inserted[0], True
        updated = await self.update_call(call_id, update_fields)
        if updated:
            return updated, False
        existing = await self.get_call(call_id)
        if existing is None:
            raise RuntimeError(f"Call {call_id} vanished during upsert")
        return existing, False

    async def update_call(self, call_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = _writable(fields)
        if not payload:
            return await self.get_call(call_id)
        rows = await self._run(self._table().update(payload).eq("call_id", str(call_id)))
        return rows[0] if rows else None

    async def list_calls(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = self._table().select("*")
        if status:
            query = query.eq("status", status)
        query = query.order("created_at", desc=True)
        if limit and limit > 0:
            query = query.limit(limit)
        return await self._run(query)

    async def get_call_stats(self) -> Dict[str, Any]:
        rows = await self._run(self._table().select("duration_seconds,workflow_id"))
        return compute_call_stats(rows)


_client: Optional[Client] = None
_db_instance: Optional[Any] = None


def get_db():
    global _client, _db_instance

    # Ensure environment variables are loaded
    from dotenv import load_dotenv
    load_dotenv()

    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if url and key:
        if _client is None:
            _client = create_client(url, key)
        if _db_instance is None or not isinstance(_db_instance, SupabaseDB):
            logger.info("Using Supabase call store")
            _db_instance = SupabaseDB(_client)
        return _db_instance
    if _db_instance is None or not isinstance(_db_instance, InMemoryDB):
        logger.info("SUPABASE_URL not set, using in-memory call store")
        _db_instance = InMemoryDB()
    return _db_instance


def reset_db() -> None:
    global _client, _db_instance
    _client = None
    _db_instance = None
