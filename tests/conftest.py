import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure project root is in sys.path
ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from monitor_stream.broadcast import BroadcastCoordinator
from monitor_stream.client import ClientConnection
from monitor_stream.connection import ConnectionController, ControllerSettings
from monitor_stream.heartbeat import HeartbeatMonitor
from monitor_stream.record_store import MemoryStorage
from monitor_stream.session_registry import SessionRegistry


class FakeWebSocket:
    """Collects JSON payloads; flip ``fail`` to simulate a dropped socket."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [msg for msg in self.sent if msg.get("type") == message_type]

    def types(self) -> List[str]:
        return [msg.get("type") for msg in self.sent]


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def coordinator(registry):
    coord = BroadcastCoordinator()
    coord.attach(registry)
    return coord


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_controller(registry, coordinator, clock):
    """
    Builds a controller around a FakeWebSocket. Timers are never started by
    the tests; they drive ``emit_once``/``send_ping`` directly.
    """

    def _make(
        owner_id: Optional[int] = None,
        storage: Optional[MemoryStorage] = None,
        settings: Optional[ControllerSettings] = None,
    ):
        websocket = FakeWebSocket()
        connection = ClientConnection(websocket, owner_id=owner_id)
        controller = ConnectionController(
            connection,
            registry,
            coordinator,
            settings=settings,
            storage=storage,
            heartbeat=HeartbeatMonitor(connection, 1.0, clock=clock),
        )
        return controller, websocket

    return _make


@pytest.fixture
def make_connection():
    def _make(owner_id: Optional[int] = None):
        websocket = FakeWebSocket()
        return ClientConnection(websocket, owner_id=owner_id), websocket

    return _make
