import asyncio
import logging
import uuid
from typing import Any, Optional

from .errors import DeliverySkipped
from .messages import WireModel


LOGGER = logging.getLogger("monitor_stream.client")


class ClientConnection:
    """
    Best-effort sender wrapped around one WebSocket.

    Sends from the heartbeat, the frame emitter and broadcasts are serialized
    through one lock. Once a send fails the connection is considered closed
    and every later send raises ``DeliverySkipped`` without touching the socket.
    """

    def __init__(self, websocket: Any, *, client_id: str = "", owner_id: Optional[int] = None):
        self.websocket = websocket
        self.client_id = client_id or uuid.uuid4().hex[:8]
        self.owner_id = owner_id
        self.closed = False
        self.messages_sent = 0
        self._lock: Optional[asyncio.Lock] = None

    def _ensure_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def mark_closed(self) -> None:
        self.closed = True

    async def send(self, message: WireModel) -> None:
        if self.closed:
            raise DeliverySkipped(f"Connection {self.client_id} is closed")
        payload = message.to_wire()
        async with self._ensure_lock():
            if self.closed:
                raise DeliverySkipped(f"Connection {self.client_id} is closed")
            try:
                await self.websocket.send_json(payload)
            except Exception as exc:
                self.closed = True
                raise DeliverySkipped(f"Send to {self.client_id} failed: {exc}") from exc
            self.messages_sent += 1

    def __repr__(self) -> str:
        return f"ClientConnection({self.client_id!r}, owner_id={self.owner_id!r}, closed={self.closed})"
