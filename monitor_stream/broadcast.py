import asyncio
import logging
from typing import Dict, List, Optional, Set

from .client import ClientConnection
from .errors import DeliverySkipped
from .messages import SessionsState, SessionSummary
from .session_registry import SessionRegistry


LOGGER = logging.getLogger("monitor_stream.broadcast")


class BroadcastCoordinator:
    """
    Fans session snapshots out to every open connection.

    The registry calls ``publish`` synchronously after each mutation, possibly
    from a worker thread. ``publish`` hands the actual sends to the attached
    event loop so the mutating caller never waits on a slow client.
    """

    def __init__(self) -> None:
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._connections: Set[ClientConnection] = set()
        self._pending: Set[asyncio.Task] = set()
        self._broadcasts = 0
        self._skipped = 0

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        LOGGER.info("BroadcastCoordinator attached to loop %s", loop)

    def attach(self, registry: SessionRegistry) -> None:
        registry.add_listener(self.publish)

    def detach(self, registry: SessionRegistry) -> None:
        registry.remove_listener(self.publish)

    # ---------------------------------------------------------------------
    # Membership
    # ---------------------------------------------------------------------
    def register(self, connection: ClientConnection) -> None:
        self._connections.add(connection)
        LOGGER.debug("Registered %r (connections=%s)", connection, len(self._connections))

    def unregister(self, connection: ClientConnection) -> None:
        self._connections.discard(connection)
        LOGGER.debug("Unregistered %r (connections=%s)", connection, len(self._connections))

    @property
    def connections(self) -> int:
        return len(self._connections)

    # ---------------------------------------------------------------------
    # Fan-out
    # ---------------------------------------------------------------------
    async def _deliver(self, connection: ClientConnection, message: SessionsState) -> bool:
        try:
            await connection.send(message)
            return True
        except DeliverySkipped as exc:
            LOGGER.warning("Skipping broadcast recipient: %s", exc)
        except Exception as exc:
            LOGGER.warning("Broadcast to %r failed: %s", connection, exc)
        self._skipped += 1
        return False

    async def broadcast(self, snapshot: List[SessionSummary]) -> int:
        message = SessionsState(sessions=list(snapshot))
        recipients = [conn for conn in self._connections if not conn.closed]
        results = await asyncio.gather(*(self._deliver(conn, message) for conn in recipients))
        self._broadcasts += 1
        delivered = sum(1 for ok in results if ok)
        LOGGER.debug(
            "Broadcast sessions_state (sessions=%s, delivered=%s/%s)",
            len(message.sessions),
            delivered,
            len(recipients),
        )
        return delivered

    def publish(self, snapshot: List[SessionSummary]) -> None:
        loop = self.loop
        if loop is None or loop.is_closed():
            LOGGER.debug("No event loop attached; dropping sessions_state broadcast")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            task = loop.create_task(self.broadcast(snapshot))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            asyncio.run_coroutine_threadsafe(self.broadcast(snapshot), loop)

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self._connections),
            "broadcasts": self._broadcasts,
            "skipped": self._skipped,
            "pending": len(self._pending),
        }
