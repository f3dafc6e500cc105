from __future__ import annotations

from typing import Dict, List, Sequence

import numpy as np

from .config import MATCH_THRESHOLD
from .exceptions import ConfigurationError
from .monitor_types import Identity, Match, ProbeEmbedding


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float64).reshape(-1)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0 or not np.isfinite(norm):
        return vector
    return vector / norm


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """dot(a, b) / (|a| |b|); 0.0 when the vectors cannot be compared."""
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.size == 0 or a.size != b.size:
        return 0.0

    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    score = float(np.dot(a, b) / (norm_a * norm_b))
    if not np.isfinite(score):
        return 0.0
    return score


class SimilarityMatcher:
    """Greedy best-match-per-identity matcher.

    Every probe is compared with every roster identity holding a reference
    embedding of the same length. Scores strictly above the threshold are
    kept and only the highest one survives per identity.
    """

    def __init__(self, threshold: float = MATCH_THRESHOLD):
        if not -1.0 < threshold <= 1.0:
            raise ConfigurationError(f"Match threshold must be in (-1, 1], got {threshold}.")
        self.threshold = threshold

    def match(self, probes: Sequence[ProbeEmbedding], roster: Sequence[Identity]) -> List[Match]:
        if not probes or not roster:
            return []

        candidates = [identity for identity in roster if identity.has_embedding]
        best: Dict[str, Match] = {}
        for probe in probes:
            vector = np.asarray(probe.vector, dtype=np.float32).reshape(-1)
            if vector.size == 0:
                continue
            for identity in candidates:
                if identity.reference_embedding.size != vector.size:
                    continue

                score = cosine_similarity(vector, identity.reference_embedding)
                if not score > self.threshold:
                    continue

                current = best.get(identity.identity_id)
                if current is None or score > current.confidence:
                    best[identity.identity_id] = Match(identity=identity, confidence=score)

        return [best[key] for key in sorted(best)]
