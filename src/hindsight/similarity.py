"""
Cosine similarity helpers.

All math runs in float64 regardless of how embeddings are stored, so
results agree across backends and platforms.
"""

from typing import Iterator, Optional, Sequence, Tuple

import numpy as np


def as_vector(embedding: Optional[Sequence[float]], dimension: Optional[int] = None) -> Optional[np.ndarray]:
    """
    Convert an embedding to a float64 array, or None if it is unusable.

    An embedding is unusable when it is missing, has the wrong dimension,
    contains non-finite values, or has zero norm.
    """
    if embedding is None:
        return None
    try:
        vector = np.asarray(embedding, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if vector.ndim != 1 or vector.size == 0:
        return None
    if dimension is not None and vector.shape[0] != dimension:
        return None
    if not np.all(np.isfinite(vector)):
        return None
    if not np.any(vector):
        return None
    return vector


def is_valid_embedding(embedding: Optional[Sequence[float]], dimension: Optional[int] = None) -> bool:
    return as_vector(embedding, dimension) is not None


def normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError("Vectors must have the same length")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    value = float(np.dot(a, b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, value))


def cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Similarity of one query against each row of an already-normalized matrix."""
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    scores = matrix @ normalize(np.asarray(query, dtype=np.float64))
    return np.clip(scores, -1.0, 1.0)


def similar_pairs(matrix: np.ndarray, threshold: float, block_size: int = 1024) -> Iterator[Tuple[int, int]]:
    """
    Yield index pairs (i, j), i < j, whose rows have similarity >= threshold.

    Rows must be normalized. Works in row blocks so memory stays bounded
    for large candidate sets.
    """
    count = matrix.shape[0]
    for start in range(0, count, block_size):
        block = matrix[start:start + block_size] @ matrix.T
        rows, cols = np.nonzero(block >= threshold)
        for row, col in zip(rows.tolist(), cols.tolist()):
            i = start + row
            if i < col:
                yield i, col
