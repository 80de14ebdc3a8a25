import asyncio
import base64
import io
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np
from PIL import Image

from .client import ClientConnection
from .errors import DeliverySkipped
from .messages import FrameMessage
from .session_registry import SessionRegistry


LOGGER = logging.getLogger("monitor_stream.frame_emitter")

PLACEHOLDER_PAYLOAD = "mock-frame-data"
PAYLOAD_MODES = ("placeholder", "png")

PayloadFactory = Callable[[int], str]


def placeholder_payload(frame_number: int) -> str:
    return PLACEHOLDER_PAYLOAD


def make_png_payload_factory(frame_width: int = 64, frame_height: int = 48) -> PayloadFactory:
    """
    Synthetic test-card frames: a horizontal gradient that scrolls one column
    per frame, PNG-encoded and base64'd.
    """

    ramp = np.linspace(0, 255, frame_width, dtype=np.float32)

    def _factory(frame_number: int) -> str:
        row = np.roll(ramp, frame_number % frame_width).astype(np.uint8)
        image = np.zeros((frame_height, frame_width, 3), dtype=np.uint8)
        image[:, :, 0] = row
        image[:, :, 1] = row[::-1]
        image[:, :, 2] = frame_number % 256
        with io.BytesIO() as buffer:
            Image.fromarray(image).save(buffer, format="PNG")
            return base64.b64encode(buffer.getvalue()).decode("ascii")

    return _factory


def payload_factory_for(mode: str, frame_width: int = 64, frame_height: int = 48) -> PayloadFactory:
    if mode == "placeholder":
        return placeholder_payload
    if mode == "png":
        return make_png_payload_factory(frame_width, frame_height)
    raise ValueError(f"Unknown frame payload mode {mode!r}; expected one of {PAYLOAD_MODES}")


class FrameEmitter:
    """
    Per-connection synthetic frame stream.

    Frames are numbered per connection from 0 without gaps, across camera
    rebinds. Every frame is sent to the connection; it is also appended to the
    bound camera's session when that camera is recording.
    """

    def __init__(
        self,
        connection: ClientConnection,
        registry: SessionRegistry,
        frame_rate: float = 30.0,
        payload_factory: Optional[PayloadFactory] = None,
    ):
        self.connection = connection
        self.registry = registry
        self.frame_rate = frame_rate
        self._frame_interval = 1.0 / frame_rate
        self.payload_factory = payload_factory or placeholder_payload
        self.camera_id: Optional[int] = None
        self.frame_number = 0
        self.frames_retained = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def bind(self, camera_id: Optional[int]) -> None:
        self.camera_id = camera_id

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
            await asyncio.sleep(self._frame_interval)
            if self.camera_id is None:
                continue
            if await self.emit_once() is None:
                LOGGER.debug("Frame emitter stopped for %r", self.connection)
                return

    async def _build_frame(self) -> FrameMessage:
        frame_number = self.frame_number
        self.frame_number += 1
        if self.payload_factory is placeholder_payload:
            payload = placeholder_payload(frame_number)
        else:
            # Image encoding runs in the default executor to keep the loop free.
            loop = asyncio.get_running_loop()
            payload = await loop.run_in_executor(None, self.payload_factory, frame_number)
        return FrameMessage(
            frame_number=frame_number,
            timestamp=datetime.now(timezone.utc),
            payload=payload,
        )

    async def emit_once(self) -> Optional[FrameMessage]:
        camera_id = self.camera_id
        if camera_id is None:
            return None
        frame = await self._build_frame()
        if self.registry.append_frame(camera_id, frame):
            self.frames_retained += 1
        try:
            await self.connection.send(frame)
        except DeliverySkipped:
            return None
        LOGGER.debug("Sent frame %s to %r (camera=%s)", frame.frame_number, self.connection, camera_id)
        return frame
