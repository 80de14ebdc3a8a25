"""
Wire models for the /ws control protocol.

Every message is a JSON object tagged by ``type``. Inbound messages are
decoded into one variant of ``InboundMessage``; outbound messages are built
from the models below and serialized with camelCase keys.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .errors import MalformedMessage


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CameraDescriptor(WireModel):
    model_config = ConfigDict(extra="allow")

    id: int
    name: Optional[str] = None


# ---------------------------------------------------------------------
# Inbound (client -> server)
# ---------------------------------------------------------------------
class CameraSelect(WireModel):
    type: Literal["camera_select"] = "camera_select"
    camera: CameraDescriptor
    action: Optional[str] = None


class StartRecording(WireModel):
    type: Literal["start_recording"] = "start_recording"


class StopRecording(WireModel):
    type: Literal["stop_recording"] = "stop_recording"


class GetSessionsState(WireModel):
    type: Literal["get_sessions_state"] = "get_sessions_state"


class Pong(WireModel):
    type: Literal["pong"] = "pong"
    seq: Optional[int] = None


InboundMessage = Annotated[
    Union[CameraSelect, StartRecording, StopRecording, GetSessionsState, Pong],
    Field(discriminator="type"),
]

INBOUND_TYPES = (CameraSelect, StartRecording, StopRecording, GetSessionsState, Pong)

_INBOUND_ADAPTER: TypeAdapter = TypeAdapter(InboundMessage)


def parse_inbound(raw: Union[str, bytes, Dict[str, Any]]) -> InboundMessage:
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (TypeError, ValueError, RecursionError) as exc:
            raise MalformedMessage(f"Invalid JSON: {exc}") from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise MalformedMessage("Message must be a JSON object")
    try:
        return _INBOUND_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise MalformedMessage(
            f"Unsupported or invalid message type={data.get('type')!r}: {exc.error_count()} error(s)"
        ) from exc


# ---------------------------------------------------------------------
# Outbound (server -> client)
# ---------------------------------------------------------------------
class SessionSummary(WireModel):
    model_config = ConfigDict(frozen=True)

    camera_id: int
    start_time: datetime


class SessionsState(WireModel):
    type: Literal["sessions_state"] = "sessions_state"
    sessions: List[SessionSummary] = Field(default_factory=list)


class RestoredSession(WireModel):
    start_time: datetime
    is_active: bool


class SessionRestored(WireModel):
    type: Literal["session_restored"] = "session_restored"
    session: RestoredSession


class ConnectionTest(WireModel):
    type: Literal["connection_test"] = "connection_test"
    latency: float
    packet_loss: float


class FrameMessage(WireModel):
    type: Literal["frame"] = "frame"
    frame_number: int
    timestamp: datetime
    payload: str


class Ping(WireModel):
    type: Literal["ping"] = "ping"
    seq: int
    timestamp: datetime
