import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import ValidationError

from .broadcast import BroadcastCoordinator
from .client import ClientConnection
from .errors import AlreadyActive, DeliverySkipped, MalformedMessage, NotFound
from .frame_emitter import FrameEmitter, payload_factory_for
from .heartbeat import HeartbeatMonitor
from .messages import (
    INBOUND_TYPES,
    CameraDescriptor,
    CameraSelect,
    GetSessionsState,
    InboundMessage,
    Pong,
    RestoredSession,
    SessionRestored,
    SessionsState,
    StartRecording,
    StopRecording,
    WireModel,
    parse_inbound,
)
from .record_store import MemoryStorage
from .session_registry import Session, SessionRegistry


LOGGER = logging.getLogger("monitor_stream.connection")


class ConnectionPhase(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    RECORDING = "recording"
    CLOSED = "closed"


@dataclass
class ControllerSettings:
    frame_rate: float = 30.0
    heartbeat_interval_s: float = 1.0
    frame_payload: str = "placeholder"
    frame_width: int = 64
    frame_height: int = 48

    @classmethod
    def from_runtime_config(cls, config: Dict[str, Any]) -> "ControllerSettings":
        defaults = cls()
        return cls(
            frame_rate=float(config.get("frame_rate", defaults.frame_rate)),
            heartbeat_interval_s=float(config.get("heartbeat_interval_s", defaults.heartbeat_interval_s)),
            frame_payload=str(config.get("frame_payload", defaults.frame_payload)),
            frame_width=int(config.get("frame_width", defaults.frame_width)),
            frame_height=int(config.get("frame_height", defaults.frame_height)),
        )


Handler = Callable[[Any], Awaitable[None]]


class ConnectionController:
    """
    State machine for one /ws connection.

    unbound -> bound (camera_select) -> recording (start_recording or a
    restored session) -> bound (stop_recording) ... -> closed.

    Sessions are camera-scoped: rebinding or closing never stops a session,
    and the controller only keeps a lookup pointer to the session it saw.
    """

    def __init__(
        self,
        connection: ClientConnection,
        registry: SessionRegistry,
        coordinator: BroadcastCoordinator,
        settings: Optional[ControllerSettings] = None,
        storage: Optional[MemoryStorage] = None,
        *,
        heartbeat: Optional[HeartbeatMonitor] = None,
        emitter: Optional[FrameEmitter] = None,
    ):
        self.connection = connection
        self.registry = registry
        self.coordinator = coordinator
        self.settings = settings or ControllerSettings()
        self.storage = storage
        self.heartbeat = heartbeat or HeartbeatMonitor(connection, self.settings.heartbeat_interval_s)
        self.emitter = emitter or FrameEmitter(
            connection,
            registry,
            frame_rate=self.settings.frame_rate,
            payload_factory=payload_factory_for(
                self.settings.frame_payload,
                self.settings.frame_width,
                self.settings.frame_height,
            ),
        )
        self.phase = ConnectionPhase.UNBOUND
        self.selected_camera: Optional[CameraDescriptor] = None
        self.session_id: Optional[str] = None
        self._handlers: Dict[type, Handler] = {
            CameraSelect: self._on_camera_select,
            StartRecording: self._on_start_recording,
            StopRecording: self._on_stop_recording,
            GetSessionsState: self._on_get_sessions_state,
            Pong: self._on_pong,
        }
        missing = [cls.__name__ for cls in INBOUND_TYPES if cls not in self._handlers]
        if missing:
            raise TypeError(f"No handler for inbound message types: {', '.join(missing)}")

    @property
    def camera_id(self) -> Optional[int]:
        return self.selected_camera.id if self.selected_camera else None

    @property
    def closed(self) -> bool:
        return self.phase is ConnectionPhase.CLOSED

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------
    async def open(self, *, start_timers: bool = True) -> None:
        self.coordinator.register(self.connection)
        LOGGER.info("Connection %s opened (owner=%s)", self.connection.client_id, self.connection.owner_id)
        await self._send(SessionsState(sessions=self.registry.active_sessions()))
        if start_timers:
            self.heartbeat.start()
            self.emitter.start()

    async def close(self) -> None:
        if self.closed:
            return
        self.phase = ConnectionPhase.CLOSED
        self.connection.mark_closed()
        self.coordinator.unregister(self.connection)
        await self.heartbeat.stop()
        await self.emitter.stop()
        self.emitter.bind(None)
        self.session_id = None
        self.selected_camera = None
        LOGGER.info("Connection %s closed", self.connection.client_id)

    # ---------------------------------------------------------------------
    # Dispatch
    # ---------------------------------------------------------------------
    async def handle_text(self, raw: Union[str, bytes]) -> None:
        try:
            message = parse_inbound(raw)
        except MalformedMessage as exc:
            LOGGER.warning("Ignoring message from %s: %s", self.connection.client_id, exc)
            return
        await self.handle(message)

    async def handle(self, message: InboundMessage) -> None:
        if self.closed:
            LOGGER.debug("Dropping %s on closed connection %s", message.type, self.connection.client_id)
            return
        handler = self._handlers[type(message)]
        await handler(message)

    async def _send(self, message: WireModel) -> None:
        try:
            await self.connection.send(message)
        except DeliverySkipped as exc:
            LOGGER.debug("Send skipped: %s", exc)

    # ---------------------------------------------------------------------
    # Handlers
    # ---------------------------------------------------------------------
    async def _on_camera_select(self, message: CameraSelect) -> None:
        camera = message.camera
        previous = self.camera_id
        self.selected_camera = camera
        self.emitter.bind(camera.id)
        LOGGER.info(
            "Connection %s bound to camera %s (previous=%s)",
            self.connection.client_id,
            camera.id,
            previous,
        )

        session = self.registry.get(camera.id)
        if session is not None and session.is_active:
            self.session_id = session.id
            self.phase = ConnectionPhase.RECORDING
            await self._send(
                SessionRestored(
                    session=RestoredSession(start_time=session.start_time, is_active=session.is_active)
                )
            )
        else:
            self.session_id = None
            self.phase = ConnectionPhase.BOUND

        if message.action == "test_connection":
            await self._send(self.heartbeat.sample().to_message())

    async def _on_start_recording(self, message: StartRecording) -> None:
        camera_id = self.camera_id
        if self.phase is ConnectionPhase.UNBOUND or camera_id is None:
            LOGGER.debug("start_recording ignored: connection %s is unbound", self.connection.client_id)
            return
        try:
            session = self.registry.start_session(camera_id)
        except AlreadyActive:
            LOGGER.debug("start_recording ignored: camera %s already recording", camera_id)
            return
        self.session_id = session.id
        self.phase = ConnectionPhase.RECORDING
        self._persist_start(session)

    async def _on_stop_recording(self, message: StopRecording) -> None:
        camera_id = self.camera_id
        if self.phase is not ConnectionPhase.RECORDING or camera_id is None:
            LOGGER.debug("stop_recording ignored: connection %s is %s", self.connection.client_id, self.phase.value)
            return
        # Only the session this connection started or restored may be stopped.
        try:
            session = self.registry.stop_session(camera_id, session_id=self.session_id)
        except NotFound:
            LOGGER.debug(
                "stop_recording: session %s on camera %s is no longer active",
                self.session_id,
                camera_id,
            )
            session = None
        self.session_id = None
        self.phase = ConnectionPhase.BOUND
        if session is not None:
            self._persist_stop(session)

    async def _on_get_sessions_state(self, message: GetSessionsState) -> None:
        await self._send(SessionsState(sessions=self.registry.active_sessions()))

    async def _on_pong(self, message: Pong) -> None:
        await self.heartbeat.handle_pong(message.seq)

    # ---------------------------------------------------------------------
    # Recording records
    # ---------------------------------------------------------------------
    def _persist_start(self, session: Session) -> None:
        owner_id = self.connection.owner_id
        if self.storage is None or owner_id is None:
            return
        started_ms = int(session.start_time.timestamp() * 1000)
        try:
            recording = self.storage.recordings.create(
                {
                    "filename": f"camera-{session.camera_id}-{started_ms}.mp4",
                    "startTime": session.start_time,
                    "userId": owner_id,
                    "isActive": True,
                    "cameraId": session.camera_id,
                    "sessionId": session.id,
                }
            )
        except ValidationError as exc:
            LOGGER.error("Failed to persist recording for session %s: %s", session.id, exc)
            return
        session.recording_id = recording.id

    def _persist_stop(self, session: Session) -> None:
        if self.storage is None or session.recording_id is None:
            return
        try:
            self.storage.recordings.update(
                session.recording_id,
                {
                    "endTime": datetime.now(timezone.utc),
                    "isActive": False,
                    "frameCount": len(session.frames),
                },
            )
        except (NotFound, ValidationError) as exc:
            LOGGER.error("Failed to finalize recording %s: %s", session.recording_id, exc)
