from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import torch

from .config import (
    DETECTION_SCORE_THRESHOLD,
    DETECTION_TARGET_LABEL,
    DETECTOR_IMAGE_SIZE,
    DETECTOR_IOU,
    DETECTOR_MODEL,
)
from .exceptions import DetectorError, InitializationError
from .monitor_types import BBox, Region

try:
    from ultralytics import YOLO
except ImportError:  # pragma: no cover - handled at runtime.
    YOLO = None


@dataclass(frozen=True)
class RawDetection:
    class_id: int
    label: str
    score: float
    bbox: BBox


def clamp_bbox(bbox: BBox, width: int, height: int) -> Optional[BBox]:
    x1, y1, x2, y2 = bbox
    x1 = min(max(0, x1), width)
    x2 = min(max(0, x2), width)
    y1 = min(max(0, y1), height)
    y2 = min(max(0, y2), height)
    if x2 <= x1 or y2 <= y1:
        return None
    return x1, y1, x2, y2


def select_regions(
    detections: Iterable[RawDetection],
    label: str = DETECTION_TARGET_LABEL,
    threshold: float = DETECTION_SCORE_THRESHOLD,
    frame_size: Optional[tuple[int, int]] = None,
) -> list[Region]:
    """Keep detections of the target class scoring strictly above the threshold."""
    regions: list[Region] = []
    for det in detections:
        if det.label != label or not det.score > threshold:
            continue

        bbox: Optional[BBox] = det.bbox
        if frame_size is not None:
            bbox = clamp_bbox(det.bbox, frame_size[0], frame_size[1])
        elif det.bbox[2] <= det.bbox[0] or det.bbox[3] <= det.bbox[1]:
            bbox = None
        if bbox is None:
            continue

        regions.append(Region(bbox=bbox, score=float(det.score)))
    return regions


class PersonDetector:
    def __init__(
        self,
        model_path: str | Path = DETECTOR_MODEL,
        target_label: str = DETECTION_TARGET_LABEL,
        score_threshold: float = DETECTION_SCORE_THRESHOLD,
        iou_threshold: float = DETECTOR_IOU,
        img_size: int = DETECTOR_IMAGE_SIZE,
        prefer_gpu: bool = True,
    ) -> None:
        self.model_path = str(model_path)
        self.target_label = target_label
        self.score_threshold = score_threshold
        self.iou_threshold = iou_threshold
        self.img_size = img_size

        self._gpu_enabled = bool(prefer_gpu and torch.cuda.is_available())
        self._device = "cuda:0" if self._gpu_enabled else "cpu"
        self._half = self._gpu_enabled
        self.model = None

    @property
    def loaded(self) -> bool:
        return self.model is not None

    @property
    def model_name(self) -> str:
        return Path(self.model_path).name

    def load(self) -> None:
        if self.model is not None:
            return
        if YOLO is None:
            raise InitializationError(
                "Ultralytics YOLO is not installed. Install dependencies with: pip install -e ."
            )
        try:
            self.model = YOLO(self.model_path)
        except Exception as exc:
            raise InitializationError(f"Failed to initialize YOLO model '{self.model_path}': {exc}") from exc

    def detect(self, frame: np.ndarray) -> list[Region]:
        if self.model is None:
            raise DetectorError("Detector model is not loaded.")

        h, w = frame.shape[:2]
        return select_regions(
            self._predict(frame),
            label=self.target_label,
            threshold=self.score_threshold,
            frame_size=(w, h),
        )

    def _predict(self, frame: np.ndarray) -> list[RawDetection]:
        try:
            # The strict score threshold is applied in select_regions; the model
            # only prunes at its own confidence floor.
            results = self.model.predict(
                source=frame,
                conf=self.score_threshold,
                iou=self.iou_threshold,
                imgsz=self.img_size,
                device=self._device,
                half=self._half,
                verbose=False,
            )
        except Exception as exc:
            raise DetectorError(f"YOLO inference failed: {exc}") from exc

        if not results:
            return []

        result = results[0]
        boxes = result.boxes
        if boxes is None:
            return []

        names = result.names
        detections: list[RawDetection] = []
        for box in boxes:
            x1, y1, x2, y2 = (int(v) for v in box.xyxy[0].tolist())
            class_id = int(box.cls.item())
            if isinstance(names, dict):
                label = str(names.get(class_id, class_id))
            elif isinstance(names, (list, tuple)) and class_id < len(names):
                label = str(names[class_id])
            else:
                label = str(class_id)

            detections.append(
                RawDetection(
                    class_id=class_id,
                    label=label,
                    score=float(box.conf.item()),
                    bbox=(x1, y1, x2, y2),
                )
            )
        return detections
