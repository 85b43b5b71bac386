import os
from pathlib import Path

import torch


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _path_env(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip())


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = _path_env("FACE_ROSTER_DATA_DIR", BASE_DIR / "data")
LOG_DIR = _path_env("FACE_ROSTER_LOG_DIR", BASE_DIR / "logs")
DB_PATH = _path_env("FACE_ROSTER_DB_PATH", DATA_DIR / "roster.db")
THUMBNAIL_DIR = _path_env("FACE_ROSTER_THUMBNAIL_DIR", DATA_DIR / "thumbnails")
MODEL_PATH = _path_env("FACE_ROSTER_MODEL_PATH", BASE_DIR / "assets" / "model" / "mobilefacenet.pt")

# Key under which the roster JSON blob lives in the key-value store.
ROSTER_KEY = "known_persons"
THUMBNAIL_EXTENSION = ".png"

# Camera settings
CAMERA_INDEX = _int_env("FACE_ROSTER_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("FACE_ROSTER_FRAME_WIDTH", 640)
FRAME_HEIGHT = _int_env("FACE_ROSTER_FRAME_HEIGHT", 480)
FRAME_FPS = _int_env("FACE_ROSTER_FRAME_FPS", 30)
CAMERA_STREAMING = _bool_env("FACE_ROSTER_CAMERA_STREAMING", True)
STILL_JPEG_QUALITY = _int_env("FACE_ROSTER_STILL_JPEG_QUALITY", 90)

# Model / tensor settings
MODEL_INPUT_SIZE = _int_env("FACE_ROSTER_MODEL_INPUT_SIZE", 112)
THUMBNAIL_SIZE = _int_env("FACE_ROSTER_THUMBNAIL_SIZE", 128)

# Recognition settings
MATCH_THRESHOLD = _float_env("FACE_ROSTER_MATCH_THRESHOLD", 0.20)
MATCH_COOLDOWN_SECONDS = _float_env("FACE_ROSTER_MATCH_COOLDOWN_SECONDS", 5.0)

# Scheduling settings
FALLBACK_INTERVAL_SECONDS = _float_env("FACE_ROSTER_FALLBACK_INTERVAL_SECONDS", 0.5)
MIN_INFERENCE_INTERVAL_SECONDS = _float_env("FACE_ROSTER_MIN_INFERENCE_INTERVAL_SECONDS", 0.0)

# Remote event sink; an empty URL disables it.
EVENT_SINK_URL = os.getenv("FACE_ROSTER_EVENT_SINK_URL", "").strip()
EVENT_SINK_TIMEOUT_SECONDS = _float_env("FACE_ROSTER_EVENT_SINK_TIMEOUT_SECONDS", 5.0)
EVENT_SINK_QUEUE_SIZE = _int_env("FACE_ROSTER_EVENT_SINK_QUEUE_SIZE", 32)

# Runtime settings
DEVICE = "cuda" if torch.cuda.is_available() else "cpu"

# Logging settings
LOG_LEVEL = os.getenv("FACE_ROSTER_LOG_LEVEL", "INFO").strip().upper()
LOG_MAX_BYTES = _int_env("FACE_ROSTER_LOG_MAX_BYTES", 2_000_000)
LOG_BACKUP_COUNT = _int_env("FACE_ROSTER_LOG_BACKUP_COUNT", 5)
