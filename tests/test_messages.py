import json
from datetime import datetime, timezone

import pytest

from monitor_stream.errors import MalformedMessage
from monitor_stream.messages import (
    CameraSelect,
    ConnectionTest,
    FrameMessage,
    GetSessionsState,
    Pong,
    RestoredSession,
    SessionRestored,
    StartRecording,
    StopRecording,
    parse_inbound,
)


def test_parse_camera_select_keeps_descriptor_fields():
    message = parse_inbound(
        json.dumps({"type": "camera_select", "camera": {"id": 3, "name": "Lab Room 1", "url": "rtsp://x"}})
    )
    assert isinstance(message, CameraSelect)
    assert message.camera.id == 3
    assert message.camera.name == "Lab Room 1"
    assert message.action is None


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"type": "start_recording"}, StartRecording),
        ({"type": "stop_recording"}, StopRecording),
        ({"type": "get_sessions_state"}, GetSessionsState),
        ({"type": "pong", "seq": 4}, Pong),
    ],
)
def test_parse_control_messages(payload, expected):
    assert isinstance(parse_inbound(payload), expected)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        json.dumps({"type": "self_destruct"}),
        json.dumps({"camera": {"id": 1}}),
        json.dumps({"type": "camera_select"}),
        json.dumps({"type": "camera_select", "camera": {"name": "no id"}}),
        "[" * 100000,
        b"\xff\xfe",
    ],
)
def test_malformed_messages_raise(raw):
    with pytest.raises(MalformedMessage):
        parse_inbound(raw)


def test_outbound_wire_format():
    ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert ConnectionTest(latency=12.5, packet_loss=0.25).to_wire() == {
        "type": "connection_test",
        "latency": 12.5,
        "packetLoss": 0.25,
    }
    frame = FrameMessage(frame_number=7, timestamp=ts, payload="mock-frame-data").to_wire()
    assert frame["type"] == "frame"
    assert frame["frameNumber"] == 7
    assert frame["payload"] == "mock-frame-data"
    assert frame["timestamp"].startswith("2024-01-02T03:04:05")

    restored = SessionRestored(session=RestoredSession(start_time=ts, is_active=True)).to_wire()
    assert restored["type"] == "session_restored"
    assert restored["session"]["isActive"] is True
    assert restored["session"]["startTime"].startswith("2024-01-02T03:04:05")
