from pathlib import Path
from typing import Optional

import numpy as np

from .camera import read_image
from .exceptions import MonitorError
from .face_engine import FaceEngine
from .logger import setup_logger
from .monitor_types import Identity
from .store import RecordStore


class EnrollmentService:
    def __init__(self, store: RecordStore, engine: FaceEngine):
        self.store = store
        self.engine = engine
        self.logger = setup_logger(self.__class__.__name__)

    def enroll(self, external_id: str, name: str, image_path: Optional[Path] = None) -> Identity:
        if not external_id.strip():
            raise MonitorError("student id cannot be empty.")
        if not name.strip():
            raise MonitorError("name cannot be empty.")

        embedding: Optional[np.ndarray] = None
        if image_path is not None:
            image = read_image(Path(image_path))
            self.engine.initialize()
            embedding = self.engine.embed_image(image)
            if embedding.size == 0:
                self.logger.warning(
                    "Could not compute a face embedding from %s; %s will be saved without one",
                    image_path,
                    external_id,
                )
                embedding = None

        identity = self.store.upsert_student(
            external_id=external_id,
            name=name,
            embedding=embedding,
            photo_path=str(image_path) if image_path is not None else None,
        )
        self.logger.info(
            "Student %s (%s) enrolled%s",
            identity.external_id,
            identity.display_name,
            "" if identity.has_embedding else " without a reference embedding",
        )
        return identity
