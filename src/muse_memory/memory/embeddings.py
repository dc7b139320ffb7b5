"""
Embedding utilities
===================

Vector (de)serialization for the durable store and the in-process cosine
search used when the vector index is not configured.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


def to_bytes(vec: np.ndarray) -> bytes:
    """Serialize an embedding array to raw bytes."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def from_bytes(blob: bytes) -> np.ndarray:
    """Deserialize raw bytes into a ``np.ndarray`` embedding."""
    return np.frombuffer(blob, dtype=np.float32)


def cosine_similarities(query: np.ndarray, matrix: Sequence[np.ndarray]) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``.

    Zero vectors score 0.0 rather than NaN.
    """
    if len(matrix) == 0:
        return np.zeros(0, dtype=np.float32)
    m = np.vstack([np.asarray(v, dtype=np.float32) for v in matrix])
    q = np.asarray(query, dtype=np.float32).reshape(-1)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims.astype(np.float32)
