import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .client import ClientConnection
from .errors import DeliverySkipped
from .messages import ConnectionTest, Ping


LOGGER = logging.getLogger("monitor_stream.heartbeat")


@dataclass
class QosSample:
    latency_ms: float = 0.0
    packet_loss: float = 0.0
    sent: int = 0
    received: int = 0

    def to_message(self) -> ConnectionTest:
        return ConnectionTest(latency=round(self.latency_ms, 3), packet_loss=self.packet_loss)


def _clamp_ratio(value: float) -> float:
    return max(0.0, min(1.0, value))


class HeartbeatMonitor:
    """
    Per-connection ping/pong loop estimating latency and packet loss.

    Loss is cumulative since the connection opened: ``1 - received / sent``,
    clamped to [0, 1]. Each ping carries a sequence number; a pong echoing an
    unknown or already-acknowledged sequence is ignored.
    """

    def __init__(
        self,
        connection: ClientConnection,
        interval_s: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_outstanding: int = 64,
    ):
        self.connection = connection
        self.interval_s = interval_s
        self.clock = clock
        self.max_outstanding = max_outstanding
        self.sent = 0
        self.received = 0
        self.latency_ms = 0.0
        self.packet_loss = 0.0
        self._outstanding: "OrderedDict[int, float]" = OrderedDict()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            if not await self.send_ping():
                LOGGER.debug("Heartbeat stopped for %r", self.connection)
                return

    async def send_ping(self) -> bool:
        seq = self.sent + 1
        self.sent = seq
        self._outstanding[seq] = self.clock()
        while len(self._outstanding) > self.max_outstanding:
            self._outstanding.popitem(last=False)
        try:
            await self.connection.send(Ping(seq=seq, timestamp=datetime.now(timezone.utc)))
        except DeliverySkipped:
            return False
        return True

    def record_pong(self, seq: Optional[int] = None) -> Optional[QosSample]:
        if self.sent == 0:
            LOGGER.debug("Pong before any ping on %r; ignoring", self.connection)
            return None
        if seq is None:
            if not self._outstanding:
                return None
            seq = next(reversed(self._outstanding))
        sent_at = self._outstanding.pop(seq, None)
        if sent_at is None:
            LOGGER.debug("Pong for unknown seq=%s on %r; ignoring", seq, self.connection)
            return None
        # Everything older than an acknowledged ping is treated as lost.
        for stale in [key for key in self._outstanding if key < seq]:
            del self._outstanding[stale]
        self.received += 1
        self.latency_ms = max(0.0, (self.clock() - sent_at) * 1000.0)
        self.packet_loss = _clamp_ratio(1.0 - self.received / self.sent)
        return self.sample()

    async def handle_pong(self, seq: Optional[int] = None) -> None:
        sample = self.record_pong(seq)
        if sample is None:
            return
        try:
            await self.connection.send(sample.to_message())
        except DeliverySkipped:
            LOGGER.debug("connection_test skipped for %r", self.connection)

    def sample(self) -> QosSample:
        return QosSample(
            latency_ms=self.latency_ms,
            packet_loss=self.packet_loss,
            sent=self.sent,
            received=self.received,
        )
