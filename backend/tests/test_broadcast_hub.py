import asyncio

from ringready.services.broadcast_hub import BroadcastHub, build_snapshot, lifecycle_message
from ringready.services.event_normalizer import CALL_ENDED, CALL_STARTED


class FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.arrived = asyncio.Event()

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)
        self.arrived.set()


async def _wait_for(ws, count):
    while len(ws.sent) < count:
        ws.arrived.clear()
        await asyncio.wait_for(ws.arrived.wait(), timeout=1)


async def test_broadcast_reaches_open_connections_only():
    hub = BroadcastHub()
    open_conn = await hub.register(FakeWebSocket())
    closed_conn = await hub.register(FakeWebSocket())
    await hub.unregister(closed_conn)

    delivered = await hub.publish(CALL_STARTED, {"call_id": "c1"})

    assert delivered == 1
    assert hub.connection_count == 1
    assert open_conn.queue.get_nowait() == {"type": "call_started", "data": {"call_id": "c1"}}
    assert closed_conn.queue.empty()


async def test_full_backlog_drops_for_that_client_only():
    hub = BroadcastHub(max_pending=1)
    slow = await hub.register(FakeWebSocket())
    await hub.broadcast({"type": "call_started"})
    fast = await hub.register(FakeWebSocket())

    delivered = await hub.broadcast({"type": "call_ended"})

    assert delivered == 1
    assert slow.dropped == 1
    assert slow.queue.get_nowait() == {"type": "call_started"}
    assert fast.queue.get_nowait() == {"type": "call_ended"}


async def test_pump_sends_snapshot_first_then_fifo():
    hub = BroadcastHub()
    ws = FakeWebSocket()
    conn = await hub.register(ws)
    # queued before the snapshot went out
    await hub.publish(CALL_STARTED, {"call_id": "c1"})
    await hub.publish(CALL_ENDED, {"call_id": "c1"})

    task = asyncio.create_task(conn.pump({"type": "initial_data", "data": {}}))
    try:
        await _wait_for(ws, 3)
    finally:
        task.cancel()

    assert [m["type"] for m in ws.sent] == ["initial_data", "call_started", "call_ended"]


async def test_failed_send_closes_connection_without_raising():
    hub = BroadcastHub()
    conn = await hub.register(FakeWebSocket(fail=True))
    await hub.broadcast({"type": "call_started"})

    await asyncio.wait_for(conn.pump(), timeout=1)

    assert conn.closed
    assert hub.connection_count == 0
    assert not conn.offer({"type": "call_ended"})
    assert await hub.broadcast({"type": "call_ended"}) == 0


async def test_unregister_twice_is_harmless():
    hub = BroadcastHub()
    conn = await hub.register(FakeWebSocket())
    await hub.unregister(conn)
    await hub.unregister(conn)
    assert hub.connection_count == 0


async def test_build_snapshot(memory_db):
    await memory_db.upsert_call("c1", {"workflow_id": "w", "duration_seconds": 30}, {})
    await memory_db.upsert_call("c2", {}, {})

    snapshot = await build_snapshot(memory_db, limit=1)

    assert snapshot["type"] == "initial_data"
    assert [c["call_id"] for c in snapshot["data"]["recentCalls"]] == ["c2"]
    assert snapshot["data"]["stats"] == {"totalCalls": 2, "totalMinutes": 1, "workflowCounts": {"w": 1}}


def test_lifecycle_message_tags():
    assert lifecycle_message(CALL_ENDED, {"call_id": "x"})["type"] == "call_ended"
