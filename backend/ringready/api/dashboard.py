from fastapi import APIRouter, WebSocket
from ..config import get_settings
from ..db import get_db
from ..services.broadcast_hub import build_snapshot, get_hub
import asyncio
import contextlib
import logging


logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws")
async def dashboard_ws(websocket: WebSocket):
    await websocket.accept()
    hub = get_hub()
    # Register before the snapshot so nothing committed after this point is missed
    conn = await hub.register(websocket)
    pump_task = None
    try:
        try:
            snapshot = await build_snapshot(get_db(), get_settings().recent_calls_limit)
        except Exception:
            logger.exception("Error building initial data for dashboard client")
            snapshot = None
        pump_task = asyncio.create_task(conn.pump(snapshot))

        # Clients only listen; drain whatever they send until they go away
        while True:
            raw = await websocket.receive()
            if raw.get("type") == "websocket.disconnect":
                break
    finally:
        await hub.unregister(conn)
        if pump_task is not None:
            pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump_task
