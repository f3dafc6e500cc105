import threading

import numpy as np
import pytest

from class_monitor.exceptions import InitializationError
from class_monitor.face_engine import FaceEngine
from class_monitor.monitor_types import Region


class StubDetector:
    model_name = "stub.pt"

    def __init__(self, regions=(), fail=False):
        self.regions = list(regions)
        self.fail = fail
        self.load_calls = 0

    def load(self):
        self.load_calls += 1
        if self.fail:
            raise RuntimeError("weights not found")

    def detect(self, image):
        return list(self.regions)


class StubEmbedder:
    def __init__(self, vectors):
        self.vectors = list(vectors)
        self.load_calls = 0
        self.crops = []

    def load(self):
        self.load_calls += 1

    def embed(self, crop):
        self.crops.append(crop.shape)
        return self.vectors.pop(0)


def test_initialize_loads_models_once_across_threads():
    detector = StubDetector()
    embedder = StubEmbedder([])
    engine = FaceEngine(detector=detector, embedder=embedder)

    threads = [threading.Thread(target=engine.initialize) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert engine.initialized
    assert detector.load_calls == 1
    assert embedder.load_calls == 1


def test_initialize_failure_is_retryable():
    detector = StubDetector(fail=True)
    engine = FaceEngine(detector=detector, embedder=StubEmbedder([]))

    with pytest.raises(InitializationError):
        engine.initialize()
    assert not engine.initialized

    detector.fail = False
    engine.initialize()
    assert engine.initialized
    assert detector.load_calls == 2


def test_extract_skips_regions_without_embeddings():
    regions = [Region(bbox=(0, 0, 10, 10), score=0.9), Region(bbox=(10, 10, 30, 20), score=0.7)]
    engine = FaceEngine(
        detector=StubDetector(regions),
        embedder=StubEmbedder([np.empty(0, dtype=np.float32), np.ones(4, dtype=np.float32)]),
    )

    probes = engine.extract(np.zeros((40, 40, 3), dtype=np.uint8))

    assert len(probes) == 1
    assert probes[0].region == regions[1]
    assert engine.embedder.crops == [(10, 10, 3), (10, 20, 3)]


def test_embed_image_prefers_best_region_then_whole_image():
    regions = [Region(bbox=(0, 0, 4, 4), score=0.6), Region(bbox=(0, 0, 8, 6), score=0.95)]
    embedder = StubEmbedder([np.ones(4, dtype=np.float32)])
    engine = FaceEngine(detector=StubDetector(regions), embedder=embedder)

    vector = engine.embed_image(np.zeros((20, 20, 3), dtype=np.uint8))
    assert vector.size == 4
    assert embedder.crops == [(6, 8, 3)]

    fallback = StubEmbedder([np.full(4, 0.5, dtype=np.float32)])
    engine = FaceEngine(detector=StubDetector([]), embedder=fallback)
    engine.embed_image(np.zeros((20, 30, 3), dtype=np.uint8))
    assert fallback.crops == [(20, 30, 3)]
