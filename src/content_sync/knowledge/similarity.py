"""Vector helpers for similarity edges and cluster centroids."""

from typing import Optional, Sequence

import numpy as np


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Calculate cosine similarity between two vectors.

    Args:
        vec_a: First embedding vector
        vec_b: Second embedding vector

    Returns:
        Similarity score; 0.0 for empty, zero or mismatched vectors
    """
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0

    a = np.asarray(vec_a, dtype=np.float32)
    b = np.asarray(vec_b, dtype=np.float32)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def normalize_rows(vectors: Sequence[Sequence[float]]) -> tuple[np.ndarray, np.ndarray]:
    """Stack vectors into a unit-normalized matrix.

    Returns:
        (matrix, valid) where ``valid`` flags rows with a nonzero norm;
        invalid rows are left as zeros
    """
    matrix = np.array(vectors, dtype=np.float32)
    if matrix.size == 0:
        return matrix.reshape(0, 0), np.zeros(0, dtype=bool)
    norms = np.linalg.norm(matrix, axis=1)
    valid = norms > 0
    matrix[valid] = matrix[valid] / norms[valid][:, None]
    return matrix, valid


def similarities_to(
    vector: Sequence[float], candidates: Sequence[Sequence[float]]
) -> np.ndarray:
    """Cosine similarity of one vector against each candidate."""
    if not candidates:
        return np.zeros(0, dtype=np.float32)
    matrix, valid = normalize_rows(candidates)
    query = np.asarray(vector, dtype=np.float32)
    norm = np.linalg.norm(query)
    if norm == 0 or matrix.shape[1] != query.shape[0]:
        return np.zeros(len(candidates), dtype=np.float32)
    scores = matrix @ (query / norm)
    scores[~valid] = 0.0
    return scores


def centroid(vectors: Sequence[Sequence[float]]) -> Optional[list[float]]:
    """Mean of the given vectors, or None if there are none."""
    if not vectors:
        return None
    return np.mean(np.array(vectors, dtype=np.float32), axis=0).tolist()
