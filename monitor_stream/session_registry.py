"""
Process-wide registry of active recording sessions, keyed by camera id.

A camera has at most one active session. Sessions survive the connection
that started them; they only leave the registry on an explicit stop.

All access is thread-safe. Listeners are notified once per successful
start/stop with a snapshot taken under the same lock as the mutation.
Notifications are delivered in mutation order, even across threads.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Callable, Dict, List, Optional

from .errors import AlreadyActive, NotFound
from .messages import FrameMessage, SessionSummary


LOGGER = logging.getLogger("monitor_stream.registry")

SnapshotListener = Callable[[List[SessionSummary]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    id: str
    camera_id: int
    start_time: datetime
    is_active: bool = True
    frames: List[FrameMessage] = field(default_factory=list)
    recording_id: Optional[int] = None

    def summary(self) -> SessionSummary:
        return SessionSummary(camera_id=self.camera_id, start_time=self.start_time)


class SessionRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        # Held from mutation through notification; reentrant for listeners that mutate.
        self._publish_lock = RLock()
        self._sessions: Dict[int, Session] = {}
        self._sequence = itertools.count(1)
        self._listeners: List[SnapshotListener] = []

    # ---------------------------------------------------------------------
    # Listeners
    # ---------------------------------------------------------------------
    def add_listener(self, listener: SnapshotListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, listeners: List[SnapshotListener], snapshot: List[SessionSummary]) -> None:
        for listener in listeners:
            try:
                listener(list(snapshot))
            except Exception as exc:
                LOGGER.error("Session listener %r failed: %s", listener, exc)

    # ---------------------------------------------------------------------
    # Mutations
    # ---------------------------------------------------------------------
    def start_session(self, camera_id: int) -> Session:
        with self._publish_lock:
            with self._lock:
                if camera_id in self._sessions:
                    raise AlreadyActive(camera_id)
                started_ms = _now_ms()
                session = Session(
                    id=f"{camera_id}-{started_ms}-{next(self._sequence)}",
                    camera_id=camera_id,
                    start_time=datetime.fromtimestamp(started_ms / 1000, tz=timezone.utc),
                )
                self._sessions[camera_id] = session
                snapshot = self._snapshot_locked()
                listeners = list(self._listeners)
            LOGGER.info("Started recording session %s", session.id)
            self._notify(listeners, snapshot)
        return session

    def stop_session(self, camera_id: int, session_id: Optional[str] = None) -> Session:
        """
        Stop the camera's active session. With ``session_id`` the stop only
        applies to that session; a newer session on the camera raises
        ``NotFound`` and stays active.
        """
        with self._publish_lock:
            with self._lock:
                session = self._sessions.get(camera_id)
                if session is None or (session_id is not None and session.id != session_id):
                    raise NotFound("Session for camera", camera_id)
                del self._sessions[camera_id]
                session.is_active = False
                snapshot = self._snapshot_locked()
                listeners = list(self._listeners)
            LOGGER.info(
                "Stopped recording session %s (frames=%s)",
                session.id,
                len(session.frames),
            )
            self._notify(listeners, snapshot)
        return session

    def append_frame(self, camera_id: int, frame: FrameMessage) -> bool:
        with self._lock:
            session = self._sessions.get(camera_id)
            if session is None or not session.is_active:
                return False
            session.frames.append(frame)
            return True

    def clear(self) -> None:
        with self._lock:
            for session in self._sessions.values():
                session.is_active = False
            self._sessions.clear()

    # ---------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------
    def _snapshot_locked(self) -> List[SessionSummary]:
        return [session.summary() for session in self._sessions.values() if session.is_active]

    def active_sessions(self) -> List[SessionSummary]:
        with self._lock:
            return self._snapshot_locked()

    def get(self, camera_id: int) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(camera_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
