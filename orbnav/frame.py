"""Image frames: keypoints, a search grid, camera pose and depth lookup."""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass
from typing import Any, ClassVar, Iterator, Sequence

import numpy as np

__all__ = [
    "FRAME_GRID_COLS",
    "FRAME_GRID_ROWS",
    "KeyPoint",
    "CameraIntrinsics",
    "ImageBounds",
    "compute_image_bounds",
    "Frame",
]

FRAME_GRID_COLS = 64
FRAME_GRID_ROWS = 48

_MAX_UNPROJECT_DEPTH = 5.0


def _round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


@dataclass(frozen=True)
class KeyPoint:
    """A detected image feature."""

    x: float
    y: float
    octave: int = 0
    angle: float = -1.0
    size: float = 0.0
    response: float = 0.0


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics plus the stereo baseline times focal length."""

    fx: float
    fy: float
    cx: float
    cy: float
    bf: float = 0.0

    @classmethod
    def from_matrix(cls, k: np.ndarray, bf: float) -> "CameraIntrinsics":
        """Read fx, fy, cx, cy from a 3x3 calibration matrix."""
        m = np.asarray(k, dtype=np.float64)
        if m.shape != (3, 3):
            raise ValueError("calibration matrix must be 3x3")
        return cls(float(m[0, 0]), float(m[1, 1]), float(m[0, 2]), float(m[1, 2]), float(bf))

    @property
    def invfx(self) -> float:
        return 1.0 / self.fx

    @property
    def invfy(self) -> float:
        return 1.0 / self.fy

    @property
    def baseline(self) -> float:
        """Stereo baseline in metres."""
        return self.bf / self.fx


@dataclass(frozen=True)
class ImageBounds:
    """Rectangle covered by undistorted keypoints."""

    min_x: float
    max_x: float
    min_y: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y


def compute_image_bounds(width: float, height: float) -> ImageBounds:
    """Bounds of an undistorted image of the given size."""
    if width <= 0 or height <= 0:
        raise ValueError("image size must be positive")
    return ImageBounds(0.0, float(width), 0.0, float(height))


class Frame:
    """A processed image with keypoints bucketed into a regular grid."""

    _ids: ClassVar[Iterator[int]] = itertools.count()

    def __init__(
        self,
        keys: Sequence[KeyPoint],
        intrinsics: CameraIntrinsics,
        bounds: ImageBounds,
        *,
        keys_un: Sequence[KeyPoint] | None = None,
        descriptors: np.ndarray | None = None,
        timestamp: float = 0.0,
        scale_factors: Sequence[float] = (1.0,),
        th_depth: float = 0.0,
        grid_cols: int = FRAME_GRID_COLS,
        grid_rows: int = FRAME_GRID_ROWS,
    ) -> None:
        self.id = next(Frame._ids)
        self.timestamp = timestamp
        self.intrinsics = intrinsics
        self.bounds = bounds
        self.th_depth = th_depth
        self.keys = list(keys)
        self.keys_un = list(keys_un) if keys_un is not None else list(self.keys)
        if len(self.keys_un) != len(self.keys):
            raise ValueError("keys and keys_un must have the same length")
        self.n = len(self.keys)
        if descriptors is None:
            descriptors = np.zeros((self.n, 32), dtype=np.uint8)
        self.descriptors = np.asarray(descriptors)

        factors = [float(f) for f in scale_factors]
        if not factors:
            raise ValueError("at least one scale factor is needed")
        self.scale_levels = len(factors)
        self.scale_factor = factors[1] if len(factors) > 1 else factors[0]
        self.log_scale_factor = math.log(self.scale_factor)
        self.scale_factors = factors
        self.inv_scale_factors = [1.0 / f for f in factors]
        self.level_sigma2 = [f * f for f in factors]
        self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        self.u_right = np.full(self.n, -1.0, dtype=np.float32)
        self.depths = np.full(self.n, -1.0, dtype=np.float32)
        self.map_points: list[Any] = [None] * self.n
        self.outliers = [False] * self.n
        self.reference_keyframe: Any = None

        self.grid_cols = grid_cols
        self.grid_rows = grid_rows
        self.grid_element_width_inv = grid_cols / bounds.width
        self.grid_element_height_inv = grid_rows / bounds.height
        self.baseline = intrinsics.baseline

        self.tcw: np.ndarray | None = None
        self.rcw: np.ndarray | None = None
        self.rwc: np.ndarray | None = None
        self.t_cw: np.ndarray | None = None
        self.ow: np.ndarray | None = None

        self.grid: list[list[list[int]]] = [
            [[] for _ in range(grid_rows)] for _ in range(grid_cols)
        ]
        for index, kp in enumerate(self.keys_un):
            cell = self.pos_in_grid(kp)
            if cell is not None:
                self.grid[cell[0]][cell[1]].append(index)

    def set_pose(self, tcw: np.ndarray) -> None:
        """Set the world-to-camera pose and derive rotation and camera centre."""
        pose = np.array(tcw, dtype=np.float32)
        if pose.shape != (4, 4):
            raise ValueError("pose must be a 4x4 matrix")
        self.tcw = pose
        self.rcw = pose[:3, :3].copy()
        self.rwc = self.rcw.T.copy()
        self.t_cw = pose[:3, 3].copy()
        self.ow = -self.rcw.T @ self.t_cw

    def pos_in_grid(self, keypoint: KeyPoint) -> tuple[int, int] | None:
        """Grid cell of a keypoint, or None when it falls outside the grid."""
        pos_x = _round_half_away((keypoint.x - self.bounds.min_x) * self.grid_element_width_inv)
        pos_y = _round_half_away((keypoint.y - self.bounds.min_y) * self.grid_element_height_inv)
        if pos_x < 0 or pos_x >= self.grid_cols or pos_y < 0 or pos_y >= self.grid_rows:
            return None
        return pos_x, pos_y

    def features_in_area(
        self, x: float, y: float, r: float, min_level: int = -1, max_level: int = -1
    ) -> list[int]:
        """Indices of keypoints strictly within a square window around (x, y)."""
        b = self.bounds
        min_cell_x = max(0, math.floor((x - b.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(
            self.grid_cols - 1, math.ceil((x - b.min_x + r) * self.grid_element_width_inv)
        )
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - b.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(
            self.grid_rows - 1, math.ceil((y - b.min_y + r) * self.grid_element_height_inv)
        )
        if max_cell_y < 0:
            return []

        check_levels = min_level > 0 or max_level >= 0
        found: list[int] = []
        for ix in range(min_cell_x, max_cell_x + 1):
            for iy in range(min_cell_y, max_cell_y + 1):
                for index in self.grid[ix][iy]:
                    kp = self.keys_un[index]
                    if check_levels:
                        if kp.octave < min_level:
                            continue
                        if max_level >= 0 and kp.octave > max_level:
                            continue
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        found.append(index)
        return found

    def _require_pose(self) -> None:
        if self.tcw is None:
            raise ValueError("frame pose has not been set")

    def is_in_frustum(self, point: Any, viewing_cos_limit: float) -> bool:
        """Check whether a map point projects into this frame and record it.

        The point provides ``world_pos``, ``normal``,
        ``min_distance_invariance``, ``max_distance_invariance`` and
        ``predict_scale(dist, frame)``; on success its ``track_*`` fields are set.
        """
        self._require_pose()
        point.track_in_view = False

        p = np.asarray(point.world_pos, dtype=np.float32).reshape(-1)[:3]
        pc = self.rcw @ p + self.t_cw
        pc_x, pc_y, pc_z = (float(v) for v in pc)
        if pc_z < 0.0:
            return False

        k = self.intrinsics
        invz = 1.0 / pc_z
        u = k.fx * pc_x * invz + k.cx
        v = k.fy * pc_y * invz + k.cy
        b = self.bounds
        if u < b.min_x or u > b.max_x:
            return False
        if v < b.min_y or v > b.max_y:
            return False

        po = p - self.ow
        dist = float(np.linalg.norm(po))
        if dist < point.min_distance_invariance or dist > point.max_distance_invariance:
            return False

        normal = np.asarray(point.normal, dtype=np.float32).reshape(-1)[:3]
        view_cos = float(po @ normal) / dist
        if view_cos < viewing_cos_limit:
            return False

        level = point.predict_scale(dist, self)
        point.track_in_view = True
        point.track_proj_x = u
        point.track_proj_xr = u - k.bf * invz
        point.track_proj_y = v
        point.track_scale_level = level
        point.track_view_cos = view_cos
        return True

    def compute_stereo_from_rgbd(self, depth: np.ndarray) -> None:
        """Fill depths and virtual right coordinates from a registered depth map."""
        image = np.asarray(depth, dtype=np.float32)
        if image.ndim != 2:
            raise ValueError("depth map must be two-dimensional")
        self.u_right = np.full(self.n, -1.0, dtype=np.float32)
        self.depths = np.full(self.n, -1.0, dtype=np.float32)
        for index, (kp, kp_un) in enumerate(zip(self.keys, self.keys_un)):
            v = _round_half_away(kp.y)
            u = _round_half_away(kp.x)
            d = float(image[v, u])
            if not math.isnan(d) and d > 0:
                self.depths[index] = d
                self.u_right[index] = kp_un.x - self.intrinsics.bf / d

    def unproject_stereo(self, index: int) -> np.ndarray | None:
        """World position of a keypoint with valid depth, else None."""
        self._require_pose()
        z = float(self.depths[index])
        if math.isnan(z) or z <= 0 or z >= _MAX_UNPROJECT_DEPTH:
            return None
        k = self.intrinsics
        kp = self.keys_un[index]
        x = (kp.x - k.cx) * z * k.invfx
        y = (kp.y - k.cy) * z * k.invfy
        x3dc = np.array([x, y, z], dtype=np.float32)
        return self.rwc @ x3dc + self.ow