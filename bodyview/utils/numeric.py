"""
Vector helpers shared by classification, batching and retrieval.

Distances are always computed in float64 so that mathematically equal
distances compare equal and tie-breaking stays deterministic.
"""

from typing import Sequence, Union

import numpy as np

ArrayLike = Union[np.ndarray, Sequence[float]]


def flatten_features(features: np.ndarray) -> np.ndarray:
    """
    Flatten a network output of any rank (e.g. (1, 2048, 8, 8)) to 1-D in C order.

    Args:
        features: Feature tensor as numpy array

    Returns:
        1-D float32 array
    """
    return np.ascontiguousarray(features, dtype=np.float32).reshape(-1)


def as_embedding(values: ArrayLike) -> np.ndarray:
    """
    Convert raw values to an immutable 1-D float32 embedding.

    Args:
        values: Sequence or array of numbers (any shape)

    Returns:
        Read-only 1-D float32 array
    """
    embedding = flatten_features(np.asarray(values)).copy()
    embedding.setflags(write=False)
    return embedding


def l2_normalize(embedding: np.ndarray) -> np.ndarray:
    """Normalize an embedding to unit length; zero vectors are returned unchanged."""
    norm = np.linalg.norm(embedding)
    if norm > 0:
        return embedding / norm
    return embedding


def euclidean_distance(a: ArrayLike, b: ArrayLike) -> float:
    """Plain L2 distance between two vectors of equal length."""
    a64 = np.asarray(a, dtype=np.float64)
    b64 = np.asarray(b, dtype=np.float64)
    return float(np.linalg.norm(a64 - b64))


def euclidean_distances(query: ArrayLike, matrix: np.ndarray) -> np.ndarray:
    """
    L2 distance from a query to every row of a matrix.

    Args:
        query: Query vector (D,)
        matrix: Candidate vectors (N, D)

    Returns:
        Distances (N,) as float64
    """
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    return np.linalg.norm(m - q, axis=1)


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 when either vector has zero norm.
    """
    a64 = np.asarray(a, dtype=np.float64)
    b64 = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(a64)
    norm_b = np.linalg.norm(b64)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a64, b64) / (norm_a * norm_b))


def cosine_similarities(query: ArrayLike, matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity between a query and every row of a matrix.

    Rows with zero norm (and a zero query) score 0.0.

    Args:
        query: Query vector (D,)
        matrix: Candidate vectors (N, D)

    Returns:
        Similarities (N,) in [-1, 1]
    """
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)

    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    similarities = np.zeros(len(m), dtype=np.float64)
    nonzero = norms > 0
    similarities[nonzero] = dots[nonzero] / norms[nonzero]
    return np.clip(similarities, -1.0, 1.0)
