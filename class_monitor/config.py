import os
from pathlib import Path
from typing import Optional

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


def _path_env(name: str, default: Optional[Path]) -> Optional[Path]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip())


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
LOG_DIR = _path_env("CLASS_MONITOR_LOG_DIR", BASE_DIR / "logs")
LOG_LEVEL = os.getenv("CLASS_MONITOR_LOG_LEVEL", "INFO").strip().upper()
LOG_TO_CONSOLE = _bool_env("CLASS_MONITOR_LOG_CONSOLE", True)
DB_PATH = _path_env("CLASS_MONITOR_DB_PATH", DATA_DIR / "class_monitor.db")
SCHEDULE_PATH = _path_env("CLASS_MONITOR_SCHEDULE", None)

# Camera settings
CAMERA_INDEX = _int_env("CLASS_MONITOR_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("CLASS_MONITOR_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("CLASS_MONITOR_FRAME_HEIGHT", 720)

# Detection settings
DETECTOR_MODEL = os.getenv("CLASS_MONITOR_DETECTOR_MODEL", "yolov8n.pt")
DETECTOR_IMAGE_SIZE = _int_env("CLASS_MONITOR_DETECTOR_IMGSZ", 640)
DETECTOR_IOU = _float_env("CLASS_MONITOR_DETECTOR_IOU", 0.45)
DETECTION_TARGET_LABEL = os.getenv("CLASS_MONITOR_TARGET_LABEL", "person")
DETECTION_SCORE_THRESHOLD = _float_env("CLASS_MONITOR_DETECTION_THRESHOLD", 0.5)

# Embedding settings
EMBEDDING_DIM = _int_env("CLASS_MONITOR_EMBEDDING_DIM", 512)
EMBEDDING_INPUT_SIZE = 224
EMBEDDING_PRETRAINED = _bool_env("CLASS_MONITOR_EMBEDDING_PRETRAINED", True)

# Recognition settings
MATCH_THRESHOLD = _float_env("CLASS_MONITOR_MATCH_THRESHOLD", 0.7)

# Monitoring settings
MONITOR_INTERVAL_SECONDS = _float_env("CLASS_MONITOR_INTERVAL_SECONDS", 10.0)

# (start, end, class-hour label, is_break); first matching window wins.
DEFAULT_SCHEDULE = (
    ("09:00", "10:00", "09:00:00", False),
    ("10:00", "10:45", "10:00:00", False),
    ("10:46", "10:59", "10:46:00", True),
    ("11:00", "12:00", "11:00:00", False),
    ("12:00", "12:45", "12:00:00", False),
    ("12:46", "13:29", "12:46:00", True),
    ("13:30", "14:30", "13:30:00", False),
    ("14:30", "15:30", "14:30:00", False),
    ("15:31", "15:44", "15:31:00", True),
    ("15:45", "16:20", "15:45:00", False),
)

# Runtime settings
DEVICE = "cuda" if torch.cuda.is_available() else "cpu"
