"""Identity matching over L2-normalized embedding vectors."""

from __future__ import annotations
import logging
import threading
from typing import Dict, List, Sequence

import numpy as np

from .errors import InputValidationError
from .results import IdentityEmbedding, IdentityMatch

DEFAULT_THRESHOLD = 0.6


def _as_vector(values: Sequence[float]) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float64)
    if vec.ndim != 1 or vec.size == 0:
        raise InputValidationError("Embedding must be a non-empty 1-D vector")
    if not np.all(np.isfinite(vec)):
        raise InputValidationError("Embedding contains non-finite values")
    return vec


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Raises:
        InputValidationError: When the dimensionalities differ or a vector is
            all zeros.
    """
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.shape != vb.shape:
        raise InputValidationError(
            f"Embedding dimensions differ: {va.shape[0]} != {vb.shape[0]}"
        )
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        raise InputValidationError("Cannot compare a zero vector")
    return float(np.dot(va, vb) / (na * nb))


class IdentityMatcher:
    """In-memory identity store queried by cosine similarity."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        self.threshold = threshold
        self._store: Dict[str, IdentityEmbedding] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def register_identity(self, identity_id: str, vector: Sequence[float]) -> IdentityEmbedding:
        """Normalizes and stores ``vector``, replacing any earlier embedding."""
        vec = _as_vector(vector)
        norm = np.linalg.norm(vec)
        if norm == 0:
            raise InputValidationError("Cannot register a zero embedding")
        embedding = IdentityEmbedding(
            identity_id=identity_id, vector=(vec / norm).tolist(), normalized=True
        )
        with self._lock:
            self._store[identity_id] = embedding
        self.logger.info(f"Registered identity {identity_id} ({vec.size} dims)")
        return embedding

    def remove_identity(self, identity_id: str) -> bool:
        with self._lock:
            return self._store.pop(identity_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def identities(self) -> List[str]:
        with self._lock:
            return list(self._store)

    def score_all(self, probe: Sequence[float]) -> List[IdentityMatch]:
        """Similarity of ``probe`` to every identity, best first.

        Raises:
            InputValidationError: On dimension mismatch with a stored identity.
        """
        with self._lock:
            stored = list(self._store.values())
        scores = [
            IdentityMatch(e.identity_id, cosine_similarity(e.vector, probe)) for e in stored
        ]
        return sorted(scores, key=lambda m: m.similarity, reverse=True)

    def match(self, probe: Sequence[float]) -> List[IdentityMatch]:
        """Identities whose similarity to ``probe`` exceeds the threshold."""
        return [m for m in self.score_all(probe) if m.similarity > self.threshold]

    def __len__(self) -> int:
        return len(self._store)
