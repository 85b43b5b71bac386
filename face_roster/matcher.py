from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .config import MATCH_THRESHOLD
from .exceptions import DimensionMismatchError
from .roster import Identity

UNKNOWN = "Unknown"


@dataclass(frozen=True)
class MatchResult:
    name: Optional[str]
    distance: float
    identity: Optional[Identity] = None

    @property
    def is_unknown(self) -> bool:
        return self.name is None

    @property
    def label(self) -> str:
        return self.name if self.name is not None else UNKNOWN

    @property
    def confidence(self) -> float:
        if math.isinf(self.distance):
            return 0.0
        return float(min(1.0, max(0.0, 1.0 - self.distance)))

    @property
    def confidence_level(self) -> str:
        confidence = self.confidence
        if confidence > 0.8:
            return "high"
        if confidence > 0.6:
            return "medium"
        return "low"


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatchError(f"Embedding lengths differ: {a.shape} vs {b.shape}")

    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a <= 0.0 or norm_b <= 0.0:
        return 1.0
    return 1.0 - float(np.dot(a, b)) / (norm_a * norm_b)


class Matcher:
    def __init__(self, threshold: float = MATCH_THRESHOLD):
        self.threshold = float(threshold)

    def match(self, query: np.ndarray, identities: Sequence[Identity]) -> MatchResult:
        if not identities:
            return MatchResult(name=None, distance=math.inf)

        query = np.asarray(query, dtype=np.float64).reshape(-1)
        matrix = self._stack(identities, query.size)

        norms = np.linalg.norm(matrix, axis=1)
        query_norm = float(np.linalg.norm(query))
        distances = np.ones(len(identities), dtype=np.float64)
        if query_norm > 0.0:
            valid = norms > 0.0
            distances[valid] = 1.0 - (matrix[valid] @ query) / (norms[valid] * query_norm)

        # argmin returns the first minimum, i.e. the earliest-enrolled entry on ties.
        best = int(np.argmin(distances))
        best_distance = float(distances[best])

        if best_distance > self.threshold:
            return MatchResult(name=None, distance=best_distance)
        identity = identities[best]
        return MatchResult(name=identity.name, distance=best_distance, identity=identity)

    @staticmethod
    def _stack(identities: Sequence[Identity], dim: int) -> np.ndarray:
        for identity in identities:
            if len(identity.embedding) != dim:
                raise DimensionMismatchError(
                    f"Embedding for '{identity.name}' has length {len(identity.embedding)}, expected {dim}"
                )
        return np.asarray([identity.embedding for identity in identities], dtype=np.float64)
