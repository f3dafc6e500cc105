from __future__ import annotations

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import DEVICE, EMBEDDING_DIM, EMBEDDING_INPUT_SIZE, EMBEDDING_PRETRAINED
from .exceptions import ConfigurationError, EmbedderError, InitializationError
from .logger import setup_logger
from .monitor_types import Region

EMPTY_EMBEDDING = np.empty(0, dtype=np.float32)


def crop_region(image: np.ndarray, region: Region) -> np.ndarray:
    h, w = image.shape[:2]
    x1, y1, x2, y2 = region.bbox
    x1, x2 = max(0, int(x1)), min(w, int(x2))
    y1, y2 = max(0, int(y1)), min(h, int(y2))
    if x2 <= x1 or y2 <= y1:
        return np.empty((0, 0) + image.shape[2:], dtype=image.dtype)
    return image[y1:y2, x1:x2]


class FaceEmbedder:
    """ResNet-18 appearance embedder producing L2-normalized vectors.

    `embed` never raises once the model is loaded: an empty float32 array is
    the "no embedding" result and callers skip the region.
    """

    def __init__(
        self,
        device: str = DEVICE,
        dimension: int = EMBEDDING_DIM,
        input_size: int = EMBEDDING_INPUT_SIZE,
        pretrained: bool = EMBEDDING_PRETRAINED,
    ):
        if dimension <= 0:
            raise ConfigurationError(f"Embedding dimension must be positive, got {dimension}.")
        if input_size < 32:
            raise ConfigurationError(f"Embedding input size is too small: {input_size}.")

        self.device = torch.device(device)
        self.dimension = dimension
        self.input_size = input_size
        self.pretrained = pretrained
        self.logger = setup_logger(self.__class__.__name__)

        self.model = None
        self.mean = None
        self.std = None
        self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        self.mask = self._focus_mask(input_size)

    @property
    def loaded(self) -> bool:
        return self.model is not None

    def load(self) -> None:
        if self.model is not None:
            return

        try:
            weights = ResNet18_Weights.DEFAULT if self.pretrained else None
            backbone = models.resnet18(weights=weights)
            feature_dim = int(backbone.fc.in_features)
            backbone.fc = torch.nn.Identity()
            model = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
        except Exception as exc:
            raise InitializationError(f"Failed to initialize embedding model: {exc}") from exc

        if feature_dim != self.dimension:
            raise ConfigurationError(
                f"Embedding model produces {feature_dim}-d vectors but {self.dimension} is configured."
            )
        self.model = model

    def embed(self, face_crop: np.ndarray) -> np.ndarray:
        if self.model is None:
            raise EmbedderError("Embedding model is not loaded.")
        if face_crop is None or face_crop.ndim != 3 or face_crop.shape[2] != 3 or face_crop.size == 0:
            self.logger.warning("Skipping malformed face crop with shape %s", getattr(face_crop, "shape", None))
            return EMPTY_EMBEDDING

        try:
            tensor = self._to_tensor(face_crop)
            with torch.inference_mode():
                raw = self.model(tensor)
                normed = f.normalize(raw, p=2, dim=1)
            vector = normed.detach().cpu().numpy().astype(np.float32)[0]
        except Exception:
            self.logger.exception("Embedding generation failed")
            return EMPTY_EMBEDDING

        if vector.shape[0] != self.dimension or not np.all(np.isfinite(vector)):
            self.logger.warning("Discarding embedding with unexpected shape or values: %s", vector.shape)
            return EMPTY_EMBEDDING
        return vector

    def _to_tensor(self, crop_bgr: np.ndarray) -> torch.Tensor:
        rgb = cv2.cvtColor(crop_bgr, cv2.COLOR_BGR2RGB)
        prepared = self._preprocess_crop(rgb)
        tensor = torch.from_numpy(prepared).permute(2, 0, 1).float().unsqueeze(0) / 255.0
        tensor = tensor.to(self.device)
        return (tensor - self.mean) / self.std

    def _preprocess_crop(self, crop: np.ndarray) -> np.ndarray:
        size = self.input_size
        if crop.shape[0] < size or crop.shape[1] < size:
            resized = cv2.resize(crop, (size, size), interpolation=cv2.INTER_CUBIC)
        else:
            resized = cv2.resize(crop, (size, size), interpolation=cv2.INTER_AREA)

        # Equalize luminance, then fade the corners toward the mean colour.
        ycrcb = cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb)
        y_channel, cr_channel, cb_channel = cv2.split(ycrcb)
        y_channel = self.clahe.apply(y_channel)
        balanced = cv2.cvtColor(
            cv2.merge([y_channel, cr_channel, cb_channel]),
            cv2.COLOR_YCrCb2RGB,
        )

        balanced_f = balanced.astype(np.float32)
        mean_color = balanced_f.mean(axis=(0, 1), keepdims=True)
        focused = (balanced_f * self.mask) + (mean_color * (1.0 - self.mask))
        return np.clip(focused, 0.0, 255.0).astype(np.uint8)

    @staticmethod
    def _focus_mask(size: int) -> np.ndarray:
        mask = np.zeros((size, size), dtype=np.float32)
        center = (size // 2, size // 2)
        axes = (int(size * 0.375), int(size * 0.446))
        cv2.ellipse(mask, center, axes, 0, 0, 360, 1.0, -1)
        mask = cv2.GaussianBlur(mask, (0, 0), sigmaX=6.0, sigmaY=6.0)
        return mask[..., None]
