import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict


LOGGER = logging.getLogger("monitor_stream.config_store")

ROOT_DIR = Path(__file__).resolve().parent.parent
SETTINGS_DIR = ROOT_DIR / "settings"
_CONFIG_PATH_OVERRIDE = os.environ.get("MONITOR_STREAM_SETTINGS_PATH")
CONFIG_PATH = Path(_CONFIG_PATH_OVERRIDE) if _CONFIG_PATH_OVERRIDE else SETTINGS_DIR / "monitor_runtime_config.json"

DEFAULT_RUNTIME_CONFIG: Dict[str, Any] = {
    "frame_rate": 30,
    "heartbeat_interval_s": 1.0,
    "frame_payload": "placeholder",
    "frame_width": 64,
    "frame_height": 48,
}

_CONFIG_LOCK = Lock()


def _ensure_settings_dir() -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)


def normalize_runtime_config(config: Dict[str, Any]) -> Dict[str, Any]:
    def _norm(value: Any, minimum: float, maximum: float, cast=int):
        return max(minimum, min(cast(value), maximum))

    normalized: Dict[str, Any] = {}
    for key, value in config.items():
        if key not in DEFAULT_RUNTIME_CONFIG:
            continue
        try:
            if key == "frame_rate":
                normalized[key] = _norm(value, 1, 120)
            elif key == "heartbeat_interval_s":
                normalized[key] = _norm(value, 0.05, 60.0, cast=float)
            elif key in ("frame_width", "frame_height"):
                normalized[key] = _norm(value, 8, 1920)
            elif key == "frame_payload":
                mode = str(value).strip().lower()
                if mode not in ("placeholder", "png"):
                    raise ValueError(f"unknown payload mode {value!r}")
                normalized[key] = mode
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring invalid runtime setting %s=%r: %s", key, value, exc)
    return normalized


def load_runtime_config() -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    with _CONFIG_LOCK:
        if CONFIG_PATH.exists():
            try:
                with open(CONFIG_PATH, "r", encoding="utf-8") as fp:
                    loaded = json.load(fp)
                if isinstance(loaded, dict):
                    data = normalize_runtime_config(loaded)
            except Exception as exc:  # pragma: no cover - just log and continue
                LOGGER.error("Failed to load runtime config: %s", exc)
    merged = DEFAULT_RUNTIME_CONFIG.copy()
    merged.update(data)
    return merged


def save_runtime_config(config: Dict[str, Any]) -> None:
    _ensure_settings_dir()
    with _CONFIG_LOCK:
        try:
            with open(CONFIG_PATH, "w", encoding="utf-8") as fp:
                json.dump(config, fp, indent=2)
        except Exception as exc:  # pragma: no cover - persistence failure
            LOGGER.error("Failed to save runtime config: %s", exc)
