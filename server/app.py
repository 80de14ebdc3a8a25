import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
from starlette.responses import PlainTextResponse

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from monitor_stream.broadcast import BroadcastCoordinator
from monitor_stream.client import ClientConnection
from monitor_stream.config_store import load_runtime_config, normalize_runtime_config, save_runtime_config
from monitor_stream.connection import ConnectionController, ControllerSettings
from monitor_stream.errors import NotFound
from monitor_stream.messages import SessionsState
from monitor_stream.record_store import Camera, MemoryStorage, Recording, RecordTable, Sensor, StoreRecord
from monitor_stream.session_registry import SessionRegistry


LOGGER = logging.getLogger("monitor_stream.api")

runtime_config = load_runtime_config()
registry: Optional[SessionRegistry] = None
broadcaster: Optional[BroadcastCoordinator] = None
storage: Optional[MemoryStorage] = None

router = APIRouter()


class RuntimeConfigPayload(BaseModel):
    frame_rate: Optional[int] = None
    heartbeat_interval_s: Optional[float] = None
    frame_payload: Optional[str] = None
    frame_width: Optional[int] = None
    frame_height: Optional[int] = None


def _require_runtime() -> None:
    if registry is None or broadcaster is None or storage is None:
        raise HTTPException(status_code=500, detail="Session runtime unavailable")


def current_owner(x_user_id: Optional[int] = Header(default=None)) -> int:
    # Authentication lives in front of this service; the header carries the resolved user.
    _require_runtime()
    if x_user_id is not None:
        return x_user_id
    if storage.demo_user is not None:
        return storage.demo_user.id
    raise HTTPException(status_code=401, detail="Not authenticated")


def _owned(table: RecordTable, record_id: int, owner_id: int) -> StoreRecord:
    try:
        record = table.get(record_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=f"{table.name} not found") from exc
    if getattr(record, "user_id", None) != owner_id:
        raise HTTPException(status_code=403, detail="Not authorized")
    return record


def _create(table: RecordTable, payload: Dict[str, Any], **overrides: Any) -> StoreRecord:
    data = {key: value for key, value in payload.items() if value is not None}
    data.update(overrides)
    try:
        return table.create(data)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _update(table: RecordTable, record_id: int, payload: Dict[str, Any]) -> StoreRecord:
    payload = {key: value for key, value in payload.items() if key not in ("userId", "user_id")}
    try:
        return table.update(record_id, payload)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=f"{table.name} not found") from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/api/healthcheck")
async def healthcheck():
    _require_runtime()
    return {
        "status": "ok",
        "connections": broadcaster.connections,
        "activeSessions": len(registry),
    }


@router.get("/api/sessions")
async def get_sessions():
    _require_runtime()
    return SessionsState(sessions=registry.active_sessions()).to_wire()


@router.get("/api/config")
async def get_runtime_config():
    return dict(runtime_config)


@router.post("/api/config")
async def update_runtime_config(payload: RuntimeConfigPayload):
    normalized = normalize_runtime_config(payload.model_dump(exclude_none=True))
    runtime_config.update(normalized)
    save_runtime_config(runtime_config)
    LOGGER.info("Runtime config updated: %s", normalized)
    return dict(runtime_config)


# ---------------------------------------------------------------------
# Cameras
# ---------------------------------------------------------------------
@router.get("/api/cameras", response_model=List[Camera])
async def list_cameras(owner_id: int = Depends(current_owner)):
    return storage.cameras.list_by_owner(owner_id)


@router.get("/api/cameras/{camera_id}", response_model=Camera)
async def get_camera(camera_id: int, owner_id: int = Depends(current_owner)):
    return _owned(storage.cameras, camera_id, owner_id)


@router.post("/api/cameras", response_model=Camera, status_code=201)
async def create_camera(payload: Dict[str, Any] = Body(...), owner_id: int = Depends(current_owner)):
    return _create(storage.cameras, payload, userId=owner_id)


@router.patch("/api/cameras/{camera_id}", response_model=Camera)
async def update_camera(
    camera_id: int,
    payload: Dict[str, Any] = Body(...),
    owner_id: int = Depends(current_owner),
):
    _owned(storage.cameras, camera_id, owner_id)
    return _update(storage.cameras, camera_id, payload)


# ---------------------------------------------------------------------
# Sensors
# ---------------------------------------------------------------------
@router.get("/api/sensors", response_model=List[Sensor])
async def list_sensors(owner_id: int = Depends(current_owner)):
    return storage.sensors.list_by_owner(owner_id)


@router.get("/api/sensors/{sensor_id}", response_model=Sensor)
async def get_sensor(sensor_id: int, owner_id: int = Depends(current_owner)):
    return _owned(storage.sensors, sensor_id, owner_id)


@router.post("/api/sensors", response_model=Sensor, status_code=201)
async def create_sensor(payload: Dict[str, Any] = Body(...), owner_id: int = Depends(current_owner)):
    return _create(storage.sensors, payload, userId=owner_id)


@router.patch("/api/sensors/{sensor_id}", response_model=Sensor)
async def update_sensor(
    sensor_id: int,
    payload: Dict[str, Any] = Body(...),
    owner_id: int = Depends(current_owner),
):
    _owned(storage.sensors, sensor_id, owner_id)
    return _update(storage.sensors, sensor_id, payload)


# ---------------------------------------------------------------------
# Recordings
# ---------------------------------------------------------------------
@router.get("/api/recordings", response_model=List[Recording])
async def list_recordings(owner_id: int = Depends(current_owner)):
    return storage.recordings.list_by_owner(owner_id)


@router.post("/api/recordings", response_model=Recording, status_code=201)
async def create_recording(payload: Dict[str, Any] = Body(...), owner_id: int = Depends(current_owner)):
    return _create(
        storage.recordings,
        payload,
        userId=owner_id,
        startTime=datetime.now(timezone.utc),
        isActive=True,
    )


@router.patch("/api/recordings/{recording_id}", response_model=Recording)
async def update_recording(
    recording_id: int,
    payload: Dict[str, Any] = Body(...),
    owner_id: int = Depends(current_owner),
):
    _owned(storage.recordings, recording_id, owner_id)
    return _update(storage.recordings, recording_id, payload)


@router.get("/api/recordings/{recording_id}/download")
async def download_recording(recording_id: int, owner_id: int = Depends(current_owner)):
    recording = _owned(storage.recordings, recording_id, owner_id)
    if recording.is_active:
        raise HTTPException(status_code=400, detail="Recording is still active")
    return PlainTextResponse(
        "This is a mock video recording file. "
        f"Session {recording.session_id or 'n/a'} retained {recording.frame_count} frames.",
        headers={"Content-Disposition": f'attachment; filename="{recording.filename}"'},
    )


# ---------------------------------------------------------------------
# Live session socket
# ---------------------------------------------------------------------
@router.websocket("/ws")
async def session_socket(websocket: WebSocket, user_id: Optional[int] = None):
    if registry is None or broadcaster is None:
        await websocket.close(code=1011)
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    if broadcaster.loop is not loop:
        broadcaster.attach_loop(loop)

    connection = ClientConnection(websocket, owner_id=user_id)
    controller = ConnectionController(
        connection,
        registry,
        broadcaster,
        settings=ControllerSettings.from_runtime_config(runtime_config),
        storage=storage,
    )
    await controller.open()
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await controller.handle_text(raw)
    except WebSocketDisconnect as exc:
        LOGGER.info("Connection %s disconnected (code=%s)", connection.client_id, exc.code)
    finally:
        await controller.close()


def bootstrap_runtime(seed_demo: bool = True) -> None:
    global registry, broadcaster, storage
    registry = SessionRegistry()
    broadcaster = BroadcastCoordinator()
    broadcaster.attach(registry)
    storage = MemoryStorage(seed_demo=seed_demo)


def create_app() -> FastAPI:
    from fastapi.middleware.cors import CORSMiddleware

    app = FastAPI(title="monitor-stream")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Camera monitoring session server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--frame-rate", type=int, default=None)
    parser.add_argument("--heartbeat-interval", type=float, default=None)
    parser.add_argument("--frame-payload", choices=("placeholder", "png"), default=None)
    parser.add_argument("--log-level", default="info")
    return parser.parse_args()


def main():
    import uvicorn

    args = parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")

    overrides = {
        "frame_rate": args.frame_rate,
        "heartbeat_interval_s": args.heartbeat_interval,
        "frame_payload": args.frame_payload,
    }
    runtime_config.update(normalize_runtime_config({k: v for k, v in overrides.items() if v is not None}))

    bootstrap_runtime()
    app = create_app()

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
