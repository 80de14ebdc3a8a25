"""
In-memory record store for users, cameras, sensors and recordings.

Each table exposes the collaborator interface the session engine relies on:
``get``, ``create``, ``update`` and ``list_by_owner``, all keyed by numeric id
and raising ``NotFound`` for unknown ids. Access is thread-safe.
"""

from __future__ import annotations

import logging
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar, Union

from pydantic import Field

from .errors import NotFound
from .messages import WireModel


LOGGER = logging.getLogger("monitor_stream.record_store")


class StoreRecord(WireModel):
    id: int = 0


class User(StoreRecord):
    username: str
    password: str


class CameraConfig(WireModel):
    resolution: Optional[str] = "1280x720"
    framerate: Optional[int] = 30
    quality: Optional[int] = 80


class Camera(StoreRecord):
    name: str
    url: str
    type: str
    username: Optional[str] = None
    password: Optional[str] = None
    config: CameraConfig = Field(default_factory=CameraConfig)
    user_id: int
    is_active: bool = True


class SensorEvent(WireModel):
    timestamp: datetime
    detected: bool
    value: Optional[float] = None


class SensorConfig(WireModel):
    protocol: str = "mqtt"
    address: str = "default/sensor"
    interval: int = 60
    unit: Optional[str] = ""
    events: Optional[List[SensorEvent]] = None


class Sensor(StoreRecord):
    name: str
    type: str
    config: SensorConfig = Field(default_factory=SensorConfig)
    user_id: int
    is_active: bool = True


class Recording(StoreRecord):
    filename: str
    start_time: datetime
    end_time: Optional[datetime] = None
    user_id: int
    is_active: bool = False
    camera_id: Optional[int] = None
    session_id: Optional[str] = None
    frame_count: int = 0


RecordT = TypeVar("RecordT", bound=StoreRecord)


class RecordTable(Generic[RecordT]):
    def __init__(
        self,
        name: str,
        model: Type[RecordT],
        *,
        sort_key: Optional[Callable[[RecordT], Any]] = None,
        reverse: bool = False,
    ) -> None:
        self.name = name
        self.model = model
        self._sort_key = sort_key
        self._reverse = reverse
        self._lock = Lock()
        self._records: Dict[int, RecordT] = {}
        self._next_id = 1
        self._aliases = {
            field_name: info.alias or field_name for field_name, info in model.model_fields.items()
        }

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        known_aliases = set(self._aliases.values())
        normalized: Dict[str, Any] = {}
        for key, value in data.items():
            if key in self._aliases:
                normalized[self._aliases[key]] = value
            elif key in known_aliases:
                normalized[key] = value
            else:
                LOGGER.debug("Ignoring unknown %s field %r", self.name, key)
        normalized.pop("id", None)
        return normalized

    def find(self, record_id: int) -> Optional[RecordT]:
        with self._lock:
            return self._records.get(record_id)

    def get(self, record_id: int) -> RecordT:
        record = self.find(record_id)
        if record is None:
            raise NotFound(self.name, record_id)
        return record

    def create(self, record: Union[RecordT, Dict[str, Any]]) -> RecordT:
        data = record.model_dump(by_alias=True) if isinstance(record, StoreRecord) else dict(record)
        payload = self._normalize(data)
        with self._lock:
            created = self.model.model_validate({**payload, "id": self._next_id})
            self._records[created.id] = created
            self._next_id += 1
        LOGGER.debug("Created %s %s", self.name, created.id)
        return created

    def update(self, record_id: int, partial: Dict[str, Any]) -> RecordT:
        changes = self._normalize(partial)
        with self._lock:
            existing = self._records.get(record_id)
            if existing is None:
                raise NotFound(self.name, record_id)
            merged = {**existing.model_dump(by_alias=True), **changes}
            updated = self.model.model_validate(merged)
            self._records[record_id] = updated
        return updated

    def list_by_owner(self, owner_id: int) -> List[RecordT]:
        with self._lock:
            records = [r for r in self._records.values() if getattr(r, "user_id", None) == owner_id]
        if self._sort_key is not None:
            records.sort(key=self._sort_key, reverse=self._reverse)
        return records

    def all(self) -> List[RecordT]:
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class MemoryStorage:
    def __init__(self, seed_demo: bool = True) -> None:
        self.users: RecordTable[User] = RecordTable("User", User)
        self.cameras: RecordTable[Camera] = RecordTable(
            "Camera", Camera, sort_key=lambda c: c.is_active, reverse=True
        )
        self.sensors: RecordTable[Sensor] = RecordTable("Sensor", Sensor, sort_key=lambda s: s.name)
        self.recordings: RecordTable[Recording] = RecordTable(
            "Recording", Recording, sort_key=lambda r: r.start_time, reverse=True
        )
        self.demo_user: Optional[User] = None
        if seed_demo:
            self.demo_user = self._seed_demo()

    def get_user_by_username(self, username: str) -> Optional[User]:
        for user in self.users.all():
            if user.username == username:
                return user
        return None

    def _seed_demo(self) -> User:
        user = self.users.create({"username": "demo", "password": "password"})
        lab_config = {"resolution": "1280x720", "framerate": 30, "quality": 80}
        for name, url in (
            ("Lab Room 1", "rtsp://192.168.1.100:554"),
            ("Lab Room 2", "rtsp://192.168.1.101:554"),
            ("Main Corridor", "rtsp://192.168.1.102:80"),
        ):
            self.cameras.create(
                {"name": name, "url": url, "type": "rtsp", "userId": user.id, "config": lab_config}
            )
        self.sensors.create(
            {
                "name": "Temperature Sensor 1",
                "type": "temperature",
                "userId": user.id,
                "config": {"protocol": "mqtt", "address": "sensor/temp/1", "interval": 60, "unit": "°C"},
            }
        )
        self.sensors.create(
            {
                "name": "Motion Sensor 1",
                "type": "motion",
                "userId": user.id,
                "config": {"protocol": "mqtt", "address": "sensor/motion/1", "interval": 1},
            }
        )
        LOGGER.info("Seeded demo user %r with %s cameras", user.username, len(self.cameras))
        return user
