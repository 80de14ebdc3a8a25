"""
Session-state synchronization engine for the camera monitoring dashboard.

The server owns one SessionRegistry and one BroadcastCoordinator and injects
them into a ConnectionController per /ws connection.
"""

from .broadcast import BroadcastCoordinator  # noqa: F401
from .connection import ConnectionController, ConnectionPhase, ControllerSettings  # noqa: F401
from .session_registry import Session, SessionRegistry  # noqa: F401
