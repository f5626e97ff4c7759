import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..config import get_settings
from .event_normalizer import CALL_ENDED, CALL_STARTED, CALL_SUMMARY, CALL_TRANSCRIPTION

logger = logging.getLogger(__name__)

MESSAGE_TYPES = {
    CALL_STARTED: "call_started",
    CALL_ENDED: "call_ended",
    CALL_TRANSCRIPTION: "call_transcription",
    CALL_SUMMARY: "call_summary",
}


def lifecycle_message(event_kind: str, record: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": MESSAGE_TYPES[event_kind], "data": record}


async def build_snapshot(db, limit: int) -> Dict[str, Any]:
    recent_calls = await db.list_calls(limit=limit)
    stats = await db.get_call_stats()
    return {"type": "initial_data", "data": {"recentCalls": recent_calls, "stats": stats}}


class DashboardConnection:
    """One dashboard socket plus its outbound queue.

    Only ``pump`` writes to the socket, so messages reach the client in the order
    they were offered.
    """

    def __init__(
        self,
        websocket,
        max_pending: int = 100,
        on_close: Optional[Callable[["DashboardConnection"], Awaitable[None]]] = None,
    ) -> None:
        self.websocket = websocket
        self.on_close = on_close
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=max_pending)
        self.closed = False
        self.dropped = 0

    def offer(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Dashboard client backlog full; dropped {message.get('type')} (total dropped {self.dropped})")
            return False
        return True

    async def pump(self, initial: Optional[Dict[str, Any]] = None) -> None:
        try:
            if initial is not None:
                await self.websocket.send_json(initial)
            while True:
                message = await self.queue.get()
                await self.websocket.send_json(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info(f"Stopped pushing to dashboard client: {e}")
            if self.on_close is not None:
                await self.on_close(self)
        finally:
            self.closed = True


class BroadcastHub:
    def __init__(self, max_pending: int = 100) -> None:
        self.max_pending = max_pending
        self._connections: Set[DashboardConnection] = set()
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def register(self, websocket) -> DashboardConnection:
        conn = DashboardConnection(websocket, self.max_pending, on_close=self.unregister)
        async with self._lock:
            self._connections.add(conn)
        logger.info(f"Dashboard client connected ({len(self._connections)} open)")
        return conn

    async def unregister(self, conn: DashboardConnection) -> None:
        conn.closed = True
        async with self._lock:
            if conn not in self._connections:
                return
            self._connections.discard(conn)
        logger.info(f"Dashboard client disconnected ({len(self._connections)} open)")

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Queue ``message`` for every open connection; returns how many accepted it."""
        async with self._lock:
            targets = list(self._connections)
        delivered = 0
        for conn in targets:
            if conn.offer(message):
                delivered += 1
        return delivered

    async def publish(self, event_kind: str, record: Dict[str, Any]) -> int:
        return await self.broadcast(lifecycle_message(event_kind, record))


_hub: Optional[BroadcastHub] = None


def get_hub() -> BroadcastHub:
    global _hub
    if _hub is None:
        _hub = BroadcastHub(max_pending=get_settings().broadcast_queue_size)
    return _hub


def reset_hub() -> None:
    global _hub
    _hub = None
