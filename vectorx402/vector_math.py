"""
Vector math primitives for embeddings.

Pure functions over real-valued sequences (lists, tuples or numpy arrays).
Results are plain Python floats so they serialize and compare predictably.

Norms and similarities are computed on operands scaled by their largest
absolute component, so very large or very small magnitudes neither overflow
nor underflow when squared.
"""

import math
from typing import List, Sequence, Tuple

import numpy as np

from vectorx402.errors import DimensionMismatch, ZeroVectorError


def _as_array(vector: Sequence[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float64).reshape(-1)
    if not np.isfinite(arr).all():
        raise ValueError("Vector contains NaN or infinite values")
    return arr


def _pair(a: Sequence[float], b: Sequence[float]):
    left, right = _as_array(a), _as_array(b)
    if left.shape[0] != right.shape[0]:
        raise DimensionMismatch(left.shape[0], right.shape[0])
    return left, right


def _scaled(arr: np.ndarray) -> Tuple[float, np.ndarray]:
    """Largest absolute component and the array divided by it (0 for zero vectors)."""
    scale = float(np.max(np.abs(arr))) if arr.size else 0.0
    if scale == 0:
        return 0.0, arr
    return scale, arr / scale


def dot_product(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Dot product of two vectors.

    Raises:
        DimensionMismatch: If the vectors differ in length.
        ValueError: If either vector holds NaN or infinite values.
    """
    left, right = _pair(a, b)
    return float(np.dot(left, right))


def vector_norm(vector: Sequence[float]) -> float:
    """Euclidean norm (magnitude) of a vector."""
    scale, unit = _scaled(_as_array(vector))
    if scale == 0:
        return 0.0
    return scale * math.sqrt(float(np.dot(unit, unit)))


def normalize_vector(vector: Sequence[float]) -> List[float]:
    """
    Scale a vector to unit length.

    Raises:
        ZeroVectorError: If the vector has zero norm.
    """
    scale, unit = _scaled(_as_array(vector))
    if scale == 0:
        raise ZeroVectorError("Cannot normalize zero vector")
    return (unit / math.sqrt(float(np.dot(unit, unit)))).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity = (A . B) / (||A|| * ||B||), in [-1, 1].

    Each operand is first divided by its largest absolute component, then
    the result is dot / sqrt(|A|^2 * |B|^2). Identical vectors yield exactly
    1.0 and swapping the operands yields the identical float.

    Raises:
        DimensionMismatch: If the vectors differ in length.
        ZeroVectorError: If either vector has zero norm.
        ValueError: If either vector holds NaN or infinite values.
    """
    left, right = _pair(a, b)
    left_scale, left = _scaled(left)
    right_scale, right = _scaled(right)
    if left_scale == 0 or right_scale == 0:
        raise ZeroVectorError("Cannot calculate similarity for zero vectors")

    squared = float(np.dot(left, left)) * float(np.dot(right, right))
    similarity = float(np.dot(left, right)) / math.sqrt(squared)
    # Rounding can push |similarity| a hair past 1
    return max(-1.0, min(1.0, similarity))


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Euclidean distance between two vectors.

    Raises:
        DimensionMismatch: If the vectors differ in length.
        ValueError: If either vector holds NaN or infinite values.
    """
    left, right = _pair(a, b)
    # Halved operands cannot overflow when subtracted
    return 2 * vector_norm(left / 2 - right / 2)
