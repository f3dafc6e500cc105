from __future__ import annotations

import os
import time
from pathlib import Path
from threading import Lock
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import CAMERA_INDEX, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError
from .logger import setup_logger


def capture_backends() -> List[Tuple[str, Optional[int]]]:
    known = {
        "auto": ("Auto", getattr(cv2, "CAP_ANY", None)),
        "dshow": ("DirectShow", getattr(cv2, "CAP_DSHOW", None)),
        "msmf": ("Media Foundation", getattr(cv2, "CAP_MSMF", None)),
        "v4l2": ("V4L2", getattr(cv2, "CAP_V4L2", None)),
    }
    raw = os.getenv("CLASS_MONITOR_CAMERA_BACKENDS", "").strip()
    if raw:
        order = [token.strip().lower() for token in raw.split(",") if token.strip()]
    elif os.name == "nt":
        # Laptop webcams are generally more stable on DirectShow.
        order = ["dshow", "msmf", "auto"]
    else:
        order = ["auto", "v4l2"]

    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set[Optional[int]] = set()
    for key in order + ["auto"]:
        if key not in known:
            continue
        name, backend = known[key]
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int) -> tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []
    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)
        if cap.isOpened():
            # Some backends report opened=True but never deliver frames.
            for _ in range(6):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    raise CameraError(f"Unable to open camera index {camera_index}. Tried backends: {', '.join(attempted)}.")


class CameraFrameSource:
    """Callable frame source that opens the camera on first use."""

    def __init__(self, camera_index: int = CAMERA_INDEX, width: int = FRAME_WIDTH, height: int = FRAME_HEIGHT):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self.logger = setup_logger(self.__class__.__name__)
        self._lock = Lock()

    def __call__(self) -> np.ndarray:
        return self.read()

    def __enter__(self) -> "CameraFrameSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def read(self) -> np.ndarray:
        with self._lock:
            if self.cap is None:
                self._open()

            success, frame = self.cap.read()
            if not success or frame is None:
                # Reopen on the next call in case the device was unplugged.
                self.cap.release()
                self.cap = None
                raise CameraError(f"Failed to read frame from camera {self.camera_index}.")
            return frame

    def close(self) -> None:
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None

    def _open(self) -> None:
        self.cap, self.backend_name = open_camera_capture(self.camera_index)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.logger.info("Camera %s opened with %s backend", self.camera_index, self.backend_name)


class ImageFileFrameSource:
    def __init__(self, path: Path):
        self.path = Path(path)

    def __call__(self) -> np.ndarray:
        return read_image(self.path)


def read_image(path: Path) -> np.ndarray:
    frame = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if frame is None or frame.size == 0:
        raise CameraError(f"Unable to decode image {path}.")
    return frame
