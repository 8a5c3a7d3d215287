"""Two-view geometry: homography and fundamental estimation, scoring,
essential-matrix decomposition and triangulation of matched keypoints.

Keypoints may be any objects with ``x`` and ``y`` attributes, or pairs
of coordinates. Matches are ``(index_in_first, index_in_second)`` pairs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

__all__ = [
    "Reconstruction",
    "compute_h21",
    "compute_f21",
    "normalize",
    "triangulate",
    "decompose_essential",
    "check_homography",
    "check_fundamental",
    "check_rt",
]

_HOMOGRAPHY_TH = 5.991
_FUNDAMENTAL_TH = 3.841
_FUNDAMENTAL_SCORE_TH = 5.991
_PARALLAX_COS_LIMIT = 0.99998
_PARALLAX_INDEX = 50


@dataclass
class Reconstruction:
    """Motion hypothesis with the points it triangulates.

    ``points`` has one row per keypoint of the first view; ``triangulated``
    marks the rows holding a point seen with enough parallax.
    """

    rotation: np.ndarray
    translation: np.ndarray
    points: np.ndarray
    triangulated: list[bool] = field(default_factory=list)
    parallax: float = 0.0
    n_good: int = 0


def _xy(point: Any) -> tuple[float, float]:
    if hasattr(point, "x") and hasattr(point, "y"):
        return float(point.x), float(point.y)
    x, y = point[0], point[1]
    return float(x), float(y)


def _as_array(points: Sequence[Any]) -> np.ndarray:
    coords = [_xy(p) for p in points]
    return np.array(coords, dtype=np.float64).reshape(-1, 2)


def compute_h21(points1: Sequence[Any], points2: Sequence[Any]) -> np.ndarray:
    """Homography mapping the first points onto the second (DLT, up to scale)."""
    p1 = _as_array(points1)
    p2 = _as_array(points2)
    if len(p1) != len(p2):
        raise ValueError("point lists must have the same length")
    if len(p1) < 4:
        raise ValueError("a homography needs at least four correspondences")
    rows = []
    for (u1, v1), (u2, v2) in zip(p1, p2):
        rows.append([0.0, 0.0, 0.0, -u1, -v1, -1.0, v2 * u1, v2 * v1, v2])
        rows.append([u1, v1, 1.0, 0.0, 0.0, 0.0, -u2 * u1, -u2 * v1, -u2])
    a = np.array(rows)
    _, _, vt = np.linalg.svd(a, full_matrices=True)
    return vt[8].reshape(3, 3).astype(np.float32)


def compute_f21(points1: Sequence[Any], points2: Sequence[Any]) -> np.ndarray:
    """Rank-2 fundamental matrix with x2^T F x1 = 0 (eight-point method)."""
    p1 = _as_array(points1)
    p2 = _as_array(points2)
    if len(p1) != len(p2):
        raise ValueError("point lists must have the same length")
    if len(p1) < 8:
        raise ValueError("a fundamental matrix needs at least eight correspondences")
    a = np.array(
        [
            [u2 * u1, u2 * v1, u2, v2 * u1, v2 * v1, v2, u1, v1, 1.0]
            for (u1, v1), (u2, v2) in zip(p1, p2)
        ]
    )
    _, _, vt = np.linalg.svd(a, full_matrices=True)
    f_pre = vt[8].reshape(3, 3)
    u, w, vt = np.linalg.svd(f_pre, full_matrices=True)
    w[2] = 0.0
    return (u @ np.diag(w) @ vt).astype(np.float32)


def normalize(points: Sequence[Any]) -> tuple[np.ndarray, np.ndarray]:
    """Centre the points and scale them to unit mean absolute deviation.

    Returns the normalized points (N x 2) and the 3x3 transform T with
    normalized = T @ [x, y, 1].
    """
    p = _as_array(points)
    if len(p) == 0:
        raise ValueError("cannot normalize an empty point set")
    mean = p.mean(axis=0)
    centred = p - mean
    dev = np.abs(centred).mean(axis=0)
    if np.any(dev == 0.0):
        raise ValueError("points have zero spread along an axis")
    scale = 1.0 / dev
    normalized = centred * scale
    t = np.eye(3, dtype=np.float32)
    t[0, 0] = scale[0]
    t[1, 1] = scale[1]
    t[0, 2] = -mean[0] * scale[0]
    t[1, 2] = -mean[1] * scale[1]
    return normalized.astype(np.float32), t


def triangulate(point1: Any, point2: Any, p1: np.ndarray, p2: np.ndarray) -> np.ndarray:
    """Linear triangulation of one correspondence from two 3x4 projections."""
    m1 = np.asarray(p1, dtype=np.float64)
    m2 = np.asarray(p2, dtype=np.float64)
    x1, y1 = _xy(point1)
    x2, y2 = _xy(point2)
    a = np.vstack(
        [
            x1 * m1[2] - m1[0],
            y1 * m1[2] - m1[1],
            x2 * m2[2] - m2[0],
            y2 * m2[2] - m2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a, full_matrices=True)
    x = vt[3]
    with np.errstate(divide="ignore", invalid="ignore"):
        return (x[:3] / x[3]).astype(np.float32)


def decompose_essential(e: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Two rotations and the unit translation (up to sign) encoded by E."""
    u, _, vt = np.linalg.svd(np.asarray(e, dtype=np.float64))
    t = u[:, 2] / np.linalg.norm(u[:, 2])
    w = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    r1 = u @ w @ vt
    if np.linalg.det(r1) < 0:
        r1 = -r1
    r2 = u @ w.T @ vt
    if np.linalg.det(r2) < 0:
        r2 = -r2
    return r1.astype(np.float32), r2.astype(np.float32), t.astype(np.float32)


def check_homography(
    keys1: Sequence[Any],
    keys2: Sequence[Any],
    matches: Sequence[tuple[int, int]],
    h21: np.ndarray,
    h12: np.ndarray,
    sigma: float,
) -> tuple[float, list[bool]]:
    """Symmetric transfer-error score of a homography and its inlier flags."""
    h = np.asarray(h21, dtype=np.float64)
    hinv = np.asarray(h12, dtype=np.float64)
    inv_sigma2 = 1.0 / (sigma * sigma)
    score = 0.0
    inliers: list[bool] = []
    for i1, i2 in matches:
        u1, v1 = _xy(keys1[i1])
        u2, v2 = _xy(keys2[i2])
        inlier = True

        w = 1.0 / (hinv[2, 0] * u2 + hinv[2, 1] * v2 + hinv[2, 2])
        u2in1 = (hinv[0, 0] * u2 + hinv[0, 1] * v2 + hinv[0, 2]) * w
        v2in1 = (hinv[1, 0] * u2 + hinv[1, 1] * v2 + hinv[1, 2]) * w
        chi1 = ((u1 - u2in1) ** 2 + (v1 - v2in1) ** 2) * inv_sigma2
        if chi1 > _HOMOGRAPHY_TH:
            inlier = False
        else:
            score += _HOMOGRAPHY_TH - chi1

        w = 1.0 / (h[2, 0] * u1 + h[2, 1] * v1 + h[2, 2])
        u1in2 = (h[0, 0] * u1 + h[0, 1] * v1 + h[0, 2]) * w
        v1in2 = (h[1, 0] * u1 + h[1, 1] * v1 + h[1, 2]) * w
        chi2 = ((u2 - u1in2) ** 2 + (v2 - v1in2) ** 2) * inv_sigma2
        if chi2 > _HOMOGRAPHY_TH:
            inlier = False
        else:
            score += _HOMOGRAPHY_TH - chi2

        inliers.append(inlier)
    return score, inliers


def check_fundamental(
    keys1: Sequence[Any],
    keys2: Sequence[Any],
    matches: Sequence[tuple[int, int]],
    f21: np.ndarray,
    sigma: float,
) -> tuple[float, list[bool]]:
    """Symmetric epipolar-distance score of a fundamental matrix and inlier flags."""
    f = np.asarray(f21, dtype=np.float64)
    inv_sigma2 = 1.0 / (sigma * sigma)
    score = 0.0
    inliers: list[bool] = []
    for i1, i2 in matches:
        u1, v1 = _xy(keys1[i1])
        u2, v2 = _xy(keys2[i2])
        inlier = True

        a2, b2, c2 = f @ np.array([u1, v1, 1.0])
        num2 = a2 * u2 + b2 * v2 + c2
        chi1 = num2 * num2 / (a2 * a2 + b2 * b2) * inv_sigma2
        if chi1 > _FUNDAMENTAL_TH:
            inlier = False
        else:
            score += _FUNDAMENTAL_SCORE_TH - chi1

        a1, b1, c1 = np.array([u2, v2, 1.0]) @ f
        num1 = a1 * u1 + b1 * v1 + c1
        chi2 = num1 * num1 / (a1 * a1 + b1 * b1) * inv_sigma2
        if chi2 > _FUNDAMENTAL_TH:
            inlier = False
        else:
            score += _FUNDAMENTAL_SCORE_TH - chi2

        inliers.append(inlier)
    return score, inliers


def _reprojection_error(point: np.ndarray, k: np.ndarray, observed: tuple[float, float]) -> float:
    z = float(point[2])
    if z == 0.0:
        return math.inf
    inv_z = 1.0 / z
    u = k[0, 0] * float(point[0]) * inv_z + k[0, 2]
    v = k[1, 1] * float(point[1]) * inv_z + k[1, 2]
    return (u - observed[0]) ** 2 + (v - observed[1]) ** 2


def check_rt(
    rotation: np.ndarray,
    translation: np.ndarray,
    keys1: Sequence[Any],
    keys2: Sequence[Any],
    matches: Sequence[tuple[int, int]],
    inliers: Sequence[bool],
    k: np.ndarray,
    th2: float,
) -> Reconstruction:
    """Triangulate inlier matches under a motion and count the consistent ones."""
    r = np.asarray(rotation, dtype=np.float64)
    t = np.asarray(translation, dtype=np.float64).reshape(3)
    kk = np.asarray(k, dtype=np.float64)

    points = np.zeros((len(keys1), 3), dtype=np.float32)
    good = [False] * len(keys1)
    cos_parallaxes: list[float] = []

    p1 = np.zeros((3, 4))
    p1[:, :3] = kk
    rt = np.zeros((3, 4))
    rt[:, :3] = r
    rt[:, 3] = t
    p2 = kk @ rt
    o2 = -r.T @ t

    n_good = 0
    for (i1, i2), is_inlier in zip(matches, inliers):
        if not is_inlier:
            continue
        kp1 = _xy(keys1[i1])
        kp2 = _xy(keys2[i2])
        p3d = triangulate(kp1, kp2, p1, p2).astype(np.float64)
        if not np.all(np.isfinite(p3d)):
            good[i1] = False
            continue

        normal1 = p3d
        normal2 = p3d - o2
        dist1 = float(np.linalg.norm(normal1))
        dist2 = float(np.linalg.norm(normal2))
        cos_parallax = float(normal1 @ normal2) / (dist1 * dist2)

        if p3d[2] <= 0 and cos_parallax < _PARALLAX_COS_LIMIT:
            continue
        p3d_c2 = r @ p3d + t
        if p3d_c2[2] <= 0 and cos_parallax < _PARALLAX_COS_LIMIT:
            continue

        if _reprojection_error(p3d, kk, kp1) > th2:
            continue
        if _reprojection_error(p3d_c2, kk, kp2) > th2:
            continue

        cos_parallaxes.append(cos_parallax)
        points[i1] = p3d
        n_good += 1
        if cos_parallax < _PARALLAX_COS_LIMIT:
            good[i1] = True

    parallax = 0.0
    if n_good > 0:
        cos_parallaxes.sort()
        idx = min(_PARALLAX_INDEX, len(cos_parallaxes) - 1)
        parallax = math.degrees(math.acos(max(-1.0, min(1.0, cos_parallaxes[idx]))))

    return Reconstruction(
        rotation=r.astype(np.float32),
        translation=t.astype(np.float32),
        points=points,
        triangulated=good,
        parallax=parallax,
        n_good=n_good,
    )