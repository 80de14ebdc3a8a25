import asyncio
import threading
from unittest.mock import AsyncMock

import pytest

from monitor_stream.client import ClientConnection
from monitor_stream.errors import DeliverySkipped
from monitor_stream.messages import SessionsState


@pytest.mark.asyncio
async def test_broadcast_reaches_every_connection(registry, coordinator, make_connection):
    conns = [make_connection() for _ in range(3)]
    for conn, _ in conns:
        coordinator.register(conn)

    session = registry.start_session(5)
    delivered = await coordinator.broadcast(registry.active_sessions())

    assert delivered == 3
    expected = session.summary().to_wire()
    for _, ws in conns:
        assert ws.sent[-1] == {"type": "sessions_state", "sessions": [expected]}


@pytest.mark.asyncio
async def test_broadcast_skips_failing_recipient(coordinator, make_connection):
    good, good_ws = make_connection()
    bad, bad_ws = make_connection()
    bad_ws.fail = True
    coordinator.register(bad)
    coordinator.register(good)

    delivered = await coordinator.broadcast([])

    assert delivered == 1
    assert good_ws.types() == ["sessions_state"]
    assert bad.closed is True
    assert coordinator.stats()["skipped"] == 1

    # Closed recipients are not retried.
    delivered = await coordinator.broadcast([])
    assert delivered == 1
    assert coordinator.stats()["skipped"] == 1


@pytest.mark.asyncio
async def test_unregistered_connection_gets_nothing(coordinator, make_connection):
    conn, ws = make_connection()
    coordinator.register(conn)
    coordinator.unregister(conn)
    assert coordinator.connections == 0
    await coordinator.broadcast([])
    assert ws.sent == []


@pytest.mark.asyncio
async def test_registry_mutation_publishes_exactly_once(registry, coordinator, make_connection):
    coordinator.attach_loop(asyncio.get_running_loop())
    conn, ws = make_connection()
    coordinator.register(conn)

    registry.start_session(1)
    await coordinator.flush()
    assert len(ws.of_type("sessions_state")) == 1

    registry.stop_session(1)
    await coordinator.flush()
    states = ws.of_type("sessions_state")
    assert len(states) == 2
    assert states[0]["sessions"][0]["cameraId"] == 1
    assert states[1]["sessions"] == []


@pytest.mark.asyncio
async def test_publish_from_worker_thread(registry, coordinator, make_connection):
    coordinator.attach_loop(asyncio.get_running_loop())
    conn, ws = make_connection()
    coordinator.register(conn)

    thread = threading.Thread(target=registry.start_session, args=(8,))
    thread.start()
    thread.join()

    for _ in range(50):
        if ws.sent:
            break
        await asyncio.sleep(0.01)
    assert ws.of_type("sessions_state")[0]["sessions"][0]["cameraId"] == 8


def test_publish_without_loop_is_dropped(registry, coordinator, make_connection):
    conn, ws = make_connection()
    coordinator.register(conn)
    registry.start_session(1)
    assert ws.sent == []
    assert coordinator.stats()["pending"] == 0


@pytest.mark.asyncio
async def test_closed_connection_raises_delivery_skipped(make_connection):
    conn, ws = make_connection()
    conn.mark_closed()
    with pytest.raises(DeliverySkipped):
        await conn.send(SessionsState())
    assert ws.sent == []


@pytest.mark.asyncio
async def test_connection_serializes_camel_case_payload():
    websocket = AsyncMock()
    conn = ClientConnection(websocket, client_id="abc")
    await conn.send(SessionsState())
    websocket.send_json.assert_awaited_once_with({"type": "sessions_state", "sessions": []})
    assert conn.messages_sent == 1

    websocket.send_json.side_effect = RuntimeError("reset by peer")
    with pytest.raises(DeliverySkipped):
        await conn.send(SessionsState())
    assert conn.closed is True
    assert websocket.send_json.await_count == 2
