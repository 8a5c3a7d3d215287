"""Conversions between pose matrices, vectors and quaternions."""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

__all__ = [
    "to_descriptor_vector",
    "se3_to_matrix",
    "sim3_to_matrix",
    "to_vector3d",
    "to_matrix3d",
    "to_quaternion",
]


def to_descriptor_vector(descriptors: np.ndarray) -> list[np.ndarray]:
    """Split a descriptor matrix into a list of its rows."""
    matrix = np.asarray(descriptors)
    if matrix.ndim != 2:
        raise ValueError("descriptors must be a two-dimensional array")
    return list(matrix)


def se3_to_matrix(rotation: np.ndarray, translation: Sequence[float]) -> np.ndarray:
    """Build a 4x4 single-precision homogeneous transform from R and t."""
    r = np.asarray(rotation, dtype=np.float64)
    t = np.asarray(translation, dtype=np.float64).reshape(-1)
    if r.shape != (3, 3) or t.shape != (3,):
        raise ValueError("rotation must be 3x3 and translation must have 3 elements")
    matrix = np.eye(4, dtype=np.float32)
    matrix[:3, :3] = r
    matrix[:3, 3] = t
    return matrix


def sim3_to_matrix(
    rotation: np.ndarray, translation: Sequence[float], scale: float
) -> np.ndarray:
    """Build a 4x4 similarity transform whose linear part is scale * R."""
    return se3_to_matrix(scale * np.asarray(rotation, dtype=np.float64), translation)


def to_vector3d(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    """Return the first three elements of a single-precision vector as doubles."""
    flat = np.asarray(vector, dtype=np.float32).reshape(-1)
    if flat.size < 3:
        raise ValueError("a 3D vector needs at least three elements")
    return flat[:3].astype(np.float64)


def to_matrix3d(matrix: np.ndarray) -> np.ndarray:
    """Return the top-left 3x3 block of a single-precision matrix as doubles."""
    m = np.asarray(matrix, dtype=np.float32)
    if m.ndim != 2 or m.shape[0] < 3 or m.shape[1] < 3:
        raise ValueError("matrix must be at least 3x3")
    return m[:3, :3].astype(np.float64)


def to_quaternion(matrix: np.ndarray) -> np.ndarray:
    """Convert a rotation matrix to a quaternion ordered (x, y, z, w)."""
    m = to_matrix3d(matrix)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        xyz = [
            (m[2, 1] - m[1, 2]) * t,
            (m[0, 2] - m[2, 0]) * t,
            (m[1, 0] - m[0, 1]) * t,
        ]
    else:
        i = 0
        if m[1, 1] > m[0, 0]:
            i = 1
        if m[2, 2] > m[i, i]:
            i = 2
        j = (i + 1) % 3
        k = (j + 1) % 3
        t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
        xyz = [0.0, 0.0, 0.0]
        xyz[i] = 0.5 * t
        t = 0.5 / t
        w = (m[k, j] - m[j, k]) * t
        xyz[j] = (m[j, i] + m[i, j]) * t
        xyz[k] = (m[k, i] + m[i, k]) * t
    return np.array([xyz[0], xyz[1], xyz[2], w], dtype=np.float32)