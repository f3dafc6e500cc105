from __future__ import annotations

from threading import Lock
from typing import List, Optional

import numpy as np

from .config import DEVICE
from .detector import PersonDetector
from .embedder import FaceEmbedder, crop_region
from .exceptions import InitializationError, MonitorError
from .logger import setup_logger
from .monitor_types import ProbeEmbedding, Region


class FaceEngine:
    """Process-wide holder of the detection and embedding models.

    Construct once and hand the same instance to every monitoring loop and
    enrollment service. Models load on the first `initialize()` call only;
    after that they are shared read-only.
    """

    def __init__(
        self,
        detector: Optional[PersonDetector] = None,
        embedder: Optional[FaceEmbedder] = None,
        device: str = DEVICE,
    ):
        self.detector = detector or PersonDetector(prefer_gpu=device.startswith("cuda"))
        self.embedder = embedder or FaceEmbedder(device=device)
        self.logger = setup_logger(self.__class__.__name__)
        self._init_lock = Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            self.logger.info("Initializing detection and embedding models...")
            try:
                self.detector.load()
                self.embedder.load()
            except MonitorError:
                self.logger.exception("Model initialization failed")
                raise
            except Exception as exc:
                self.logger.exception("Model initialization failed")
                raise InitializationError(f"Failed to initialize models: {exc}") from exc

            self._initialized = True
            self.logger.info("Models initialized (detector=%s)", self.detector.model_name)

    def detect(self, image: np.ndarray) -> List[Region]:
        self.initialize()
        regions = self.detector.detect(image)
        self.logger.debug("Detected %d regions", len(regions))
        return regions

    def embed(self, face_crop: np.ndarray) -> np.ndarray:
        self.initialize()
        return self.embedder.embed(face_crop)

    def extract(self, image: np.ndarray) -> List[ProbeEmbedding]:
        regions = self.detect(image)
        probes: List[ProbeEmbedding] = []
        for region in regions:
            vector = self.embed(crop_region(image, region))
            if vector.size == 0:
                self.logger.warning("No embedding for region %s; skipping", region.bbox)
                continue
            probes.append(ProbeEmbedding(region=region, vector=vector))
        return probes

    def embed_image(self, image: np.ndarray) -> np.ndarray:
        """Reference embedding for enrollment: best region, else the whole photo."""
        regions = self.detect(image)
        if regions:
            best = max(regions, key=lambda region: region.score)
            vector = self.embed(crop_region(image, best))
            if vector.size:
                return vector
            self.logger.warning("Best region produced no embedding; falling back to the full image")
        return self.embed(image)
