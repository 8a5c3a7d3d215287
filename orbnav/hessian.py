"""Hessian of the bundle-adjustment problem and the reduced camera system.

Keyframes are expected to provide ``id``, ``fx``, ``fy``, ``cx``, ``cy``,
``tcw`` (4x4 world-to-camera pose), ``keys_un`` (keypoints with ``octave``),
``inv_level_sigma2`` and the methods ``map_points()`` and
``covisible_keyframes()``. Map points provide ``id``, ``world_pos`` and
``observations`` (a mapping from keyframe to keypoint index).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import numpy as np
from scipy import sparse

from orbnav.converter import to_quaternion, to_vector3d

__all__ = [
    "PinholeCalibration",
    "FactorGraph",
    "rotation_matrix",
    "compose_pose_point",
    "map_point_jacobian",
    "keyframe_jacobian",
    "collect_observations",
    "compute_hessian",
    "hpp_inverse",
    "decompose_blocks",
    "reduced_camera_system",
    "build_factor_graph",
    "compute_factor_graph",
]

KF_DOF = 6
MP_DOF = 3
OBS_DOF = 2


def _by_id(item: Any) -> Any:
    return item.id


@dataclass(frozen=True)
class PinholeCalibration:
    """Pinhole camera intrinsics."""

    fx: float
    fy: float
    cx: float
    cy: float

    def project_jacobian(self, xc: Iterable[float]) -> np.ndarray:
        """Jacobian of the pixel projection with respect to a camera-frame point."""
        x, y, z = np.asarray(xc, dtype=np.float64).reshape(3)
        z2 = z * z
        return np.array(
            [
                [self.fx / z, 0.0, -self.fx * x / z2],
                [0.0, self.fy / z, -self.fy * y / z2],
            ]
        )


@dataclass
class FactorGraph:
    """Pose graph with reduced-Hessian edges and the landmarks behind it.

    ``vertices`` holds ``(id, quaternion_wxyz, translation)``,
    ``edges`` holds ``(id, other_id, 6x6 block)`` and
    ``points`` holds ``(id, position, observer_ids)``.
    """

    vertices: list[tuple[int, np.ndarray, np.ndarray]] = field(default_factory=list)
    edges: list[tuple[int, int, np.ndarray]] = field(default_factory=list)
    points: list[tuple[int, np.ndarray, list[int]]] = field(default_factory=list)


def rotation_matrix(tcw: np.ndarray) -> np.ndarray:
    """Rotation block of a 4x4 pose."""
    return np.asarray(tcw, dtype=np.float32)[:3, :3]


def compose_pose_point(tcw: np.ndarray, xw: Iterable[float]) -> np.ndarray:
    """Transform a world point into the camera frame."""
    pose = np.asarray(tcw, dtype=np.float32)
    point = np.asarray(xw, dtype=np.float32).reshape(3)
    return pose[:3, :3] @ point + pose[:3, 3]


def map_point_jacobian(
    tcw: np.ndarray, xw: Iterable[float], calibration: PinholeCalibration
) -> np.ndarray:
    """2x3 Jacobian of the reprojection residual with respect to the point."""
    xc = compose_pose_point(tcw, xw).astype(np.float64)
    return -calibration.project_jacobian(xc) @ rotation_matrix(tcw).astype(np.float64)


def keyframe_jacobian(
    tcw: np.ndarray, xw: Iterable[float], calibration: PinholeCalibration
) -> np.ndarray:
    """2x6 Jacobian of the reprojection residual with respect to the pose."""
    xc = compose_pose_point(tcw, xw).astype(np.float64)
    x, y, z = xc
    se3_deriv = np.array(
        [
            [0.0, z, -y, 1.0, 0.0, 0.0],
            [-z, 0.0, x, 0.0, 1.0, 0.0],
            [y, -x, 0.0, 0.0, 0.0, 1.0],
        ]
    )
    return -calibration.project_jacobian(xc) @ se3_deriv


def collect_observations(keyframes: Iterable[Any], threshold: int):
    """Select keyframes sharing at least ``threshold`` points with a covisible one.

    Returns ``(keyframes, map_points, observations, n_obs)`` where the
    keyframes are ordered by id and ``observations`` maps each selected
    keyframe to the points it shares.
    """
    selected: dict[Any, Any] = {}
    map_points: set[Any] = set()
    observations: dict[Any, set[Any]] = {}
    n_obs = 0

    for keyframe in keyframes:
        current = set(keyframe.map_points())
        used: set[Any] = set()
        connected = 0
        for other in keyframe.covisible_keyframes():
            if other.id == keyframe.id:
                continue
            common = current & set(other.map_points())
            if len(common) < threshold:
                continue
            connected += 1
            map_points |= common
            used |= common
        if not connected:
            continue
        if keyframe.id not in selected:
            selected[keyframe.id] = keyframe
            n_obs += len(used)
        observations[keyframe] = used

    ordered = sorted(selected.values(), key=_by_id)
    return ordered, map_points, observations, n_obs


def _append_block(entries: list, row0: int, col0: int, block: np.ndarray) -> None:
    for r, c in np.ndindex(block.shape):
        entries.append((row0 + r, col0 + c, block[r, c]))


def compute_hessian(
    keyframes: Iterable[Any],
    map_points: set[Any],
    observations: Mapping[Any, Iterable[Any]],
    n_obs: int,
) -> tuple[sparse.csr_matrix, dict[int, int]]:
    """Gauss-Newton Hessian J^T W J, with keyframe blocks first.

    Returns the Hessian and a table from keyframe id to its block index.
    """
    ordered = sorted(keyframes, key=_by_id)
    if not ordered:
        raise ValueError("at least one keyframe is needed")

    n_rows = OBS_DOF * n_obs
    n_cols = KF_DOF * len(ordered) + MP_DOF * len(map_points)

    first = ordered[0]
    calibration = PinholeCalibration(first.fx, first.fy, first.cx, first.cy)

    jac_entries: list[tuple[int, int, float]] = []
    weights: list[float] = []
    lookup: dict[int, int] = {}
    point_columns: dict[int, int] = {}
    next_point_column = KF_DOF * len(ordered)
    obs_row = 0

    for index, keyframe in enumerate(ordered):
        lookup[keyframe.id] = index
        kf_column = KF_DOF * index
        tcw = np.asarray(keyframe.tcw, dtype=np.float32)

        for point in sorted(observations.get(keyframe, ()), key=_by_id):
            if point not in map_points:
                continue
            column = point_columns.get(point.id)
            if column is None:
                column = point_columns[point.id] = next_point_column
                next_point_column += MP_DOF

            xw = np.asarray(point.world_pos, dtype=np.float32).reshape(-1)[:3]
            _append_block(jac_entries, obs_row, column, map_point_jacobian(tcw, xw, calibration))
            _append_block(jac_entries, obs_row, kf_column, keyframe_jacobian(tcw, xw, calibration))

            idx = point.observations.get(keyframe, -1)
            if idx < 0:
                raise ValueError(f"point {point.id} is not observed by keyframe {keyframe.id}")
            octave = keyframe.keys_un[idx].octave
            w = float(keyframe.inv_level_sigma2[octave])
            weights.extend((w, w))
            obs_row += OBS_DOF

    if jac_entries:
        rows, cols, vals = zip(*jac_entries)
    else:
        rows, cols, vals = (), (), ()
    jac = sparse.coo_matrix((vals, (rows, cols)), shape=(n_rows, n_cols)).tocsr()
    diag = np.arange(len(weights))
    w_mat = sparse.coo_matrix((weights, (diag, diag)), shape=(n_rows, n_rows)).tocsr()

    hessian = (jac.T @ w_mat @ jac).tocsr()
    return hessian, lookup


def hpp_inverse(hpp: sparse.spmatrix) -> sparse.csr_matrix:
    """Invert a block-diagonal point Hessian 3x3 block by 3x3 block."""
    hpp = sparse.csr_matrix(hpp)
    rows: list[int] = []
    cols: list[int] = []
    vals: list[float] = []
    for i in range(hpp.shape[1] // MP_DOF):
        start = MP_DOF * i
        block = hpp[start:start + MP_DOF, start:start + MP_DOF].toarray()
        inverse = np.linalg.inv(block)
        for r, c in np.ndindex(inverse.shape):
            rows.append(start + r)
            cols.append(start + c)
            vals.append(inverse[r, c])
    return sparse.coo_matrix((vals, (rows, cols)), shape=hpp.shape).tocsr()


def decompose_blocks(n_cameras: int, h: sparse.spmatrix):
    """Split H into (Hcc, Hpp, Hcp); Hcp has point rows and camera columns."""
    h = sparse.csr_matrix(h)
    size = n_cameras * KF_DOF
    hcc = h[:size, :size]
    hpp = h[size:, size:]
    hcp = h[size:, :size]
    return hcc, hpp, hcp


def reduced_camera_system(n_keyframes: int, h: sparse.spmatrix) -> sparse.csr_matrix:
    """Schur complement Hcc - Hcp^T Hpp^-1 Hcp over the point blocks."""
    hcc, hpp, hcp = decompose_blocks(n_keyframes, h)
    return (hcc - hcp.T @ hpp_inverse(hpp) @ hcp).tocsr()


def build_factor_graph(
    h: sparse.spmatrix,
    keyframes: Iterable[Any],
    lookup: Mapping[int, int],
    map_points: Iterable[Any],
) -> FactorGraph:
    """Collect poses, camera-camera Hessian blocks and landmarks."""
    h = sparse.csr_matrix(h)
    graph = FactorGraph()

    for keyframe in sorted(keyframes, key=_by_id):
        tcw = np.asarray(keyframe.tcw, dtype=np.float32)
        x, y, z, w = to_quaternion(tcw)
        graph.vertices.append(
            (keyframe.id, np.array([w, x, y, z], dtype=np.float32), tcw[:3, 3].copy())
        )
        for other in keyframe.covisible_keyframes():
            if other.id not in lookup:
                continue
            row = lookup[keyframe.id] * KF_DOF
            col = lookup[other.id] * KF_DOF
            block = h[row:row + KF_DOF, col:col + KF_DOF].toarray()
            graph.edges.append((keyframe.id, other.id, block))

    for point in sorted(map_points, key=_by_id):
        position = to_vector3d(point.world_pos)
        observers = [kf.id for kf in sorted(point.observations, key=_by_id)]
        graph.points.append((point.id, position, observers))

    return graph


def compute_factor_graph(keyframes: Iterable[Any], threshold: int) -> FactorGraph | None:
    """Build the reduced factor graph, or None when nothing is observed."""
    selected, map_points, observations, n_obs = collect_observations(keyframes, threshold)
    if n_obs < 1:
        return None
    h, lookup = compute_hessian(selected, map_points, observations, n_obs)
    reduced = reduced_camera_system(len(selected), h)
    return build_factor_graph(reduced, selected, lookup, map_points)