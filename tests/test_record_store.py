from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from monitor_stream.errors import NotFound
from monitor_stream.record_store import Camera, MemoryStorage


@pytest.fixture
def empty_storage():
    return MemoryStorage(seed_demo=False)


def test_demo_seed(storage):
    demo = storage.get_user_by_username("demo")
    assert demo is storage.demo_user
    assert len(storage.cameras.list_by_owner(demo.id)) == 3
    assert [s.name for s in storage.sensors.list_by_owner(demo.id)] == [
        "Motion Sensor 1",
        "Temperature Sensor 1",
    ]
    assert storage.get_user_by_username("nobody") is None


def test_create_assigns_ids_and_accepts_models(empty_storage):
    first = empty_storage.cameras.create({"name": "A", "url": "rtsp://a", "type": "rtsp", "userId": 1, "id": 50})
    second = empty_storage.cameras.create(
        Camera(name="B", url="rtsp://b", type="rtsp", user_id=1)
    )
    assert (first.id, second.id) == (1, 2)
    assert empty_storage.cameras.get(2).name == "B"


def test_field_names_and_aliases_both_accepted(empty_storage):
    cam = empty_storage.cameras.create(
        {"name": "A", "url": "rtsp://a", "type": "rtsp", "user_id": 3, "isActive": False, "bogus": True}
    )
    assert cam.user_id == 3
    assert cam.is_active is False


def test_get_and_update_unknown_raise_not_found(empty_storage):
    with pytest.raises(NotFound):
        empty_storage.sensors.get(1)
    with pytest.raises(NotFound):
        empty_storage.sensors.update(1, {"name": "x"})


def test_update_merges_and_validates(empty_storage):
    cam = empty_storage.cameras.create({"name": "A", "url": "rtsp://a", "type": "rtsp", "userId": 1})
    updated = empty_storage.cameras.update(cam.id, {"name": "Renamed", "id": 99})
    assert updated.id == cam.id
    assert updated.name == "Renamed"
    assert updated.url == "rtsp://a"

    with pytest.raises(ValidationError):
        empty_storage.cameras.update(cam.id, {"userId": "not-a-number"})
    assert empty_storage.cameras.get(cam.id).name == "Renamed"


def test_list_by_owner_sort_orders(empty_storage):
    cams = empty_storage.cameras
    cams.create({"name": "off", "url": "u", "type": "rtsp", "userId": 1, "isActive": False})
    cams.create({"name": "on", "url": "u", "type": "rtsp", "userId": 1})
    cams.create({"name": "other", "url": "u", "type": "rtsp", "userId": 2})
    assert [c.name for c in cams.list_by_owner(1)] == ["on", "off"]

    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    recs = empty_storage.recordings
    for offset in (0, 2, 1):
        recs.create({"filename": f"r{offset}.mp4", "startTime": base + timedelta(minutes=offset), "userId": 1})
    assert [r.filename for r in recs.list_by_owner(1)] == ["r2.mp4", "r1.mp4", "r0.mp4"]
    assert recs.list_by_owner(2) == []


def test_wire_format_is_camel_case(empty_storage):
    rec = empty_storage.recordings.create(
        {"filename": "a.mp4", "startTime": datetime(2024, 1, 1, tzinfo=timezone.utc), "userId": 1}
    )
    wire = rec.to_wire()
    assert wire["startTime"].startswith("2024-01-01T00:00:00")
    assert wire["frameCount"] == 0
    assert "endTime" not in wire
