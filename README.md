# orbnav

Building blocks for feature-based visual SLAM, written in plain Python on top
of NumPy and SciPy.

## What is inside

- `orbnav.converter`: `to_descriptor_vector` (split a descriptor matrix into
  rows), `se3_to_matrix` and `sim3_to_matrix` (4x4 single-precision homogeneous
  transforms), `to_vector3d`, `to_matrix3d` and `to_quaternion` (rotation matrix
  to a quaternion ordered x, y, z, w).
- `orbnav.frame`: `KeyPoint`, `CameraIntrinsics` (with `from_matrix`),
  `ImageBounds`, `compute_image_bounds` and `Frame`. A `Frame` buckets its
  undistorted keypoints into a 64x48 grid and offers `pos_in_grid`,
  `features_in_area`, `set_pose`, `is_in_frustum`, `compute_stereo_from_rgbd`
  and `unproject_stereo`.
- `orbnav.two_view`: two-view geometry: `compute_h21` (homography by DLT),
  `compute_f21` (rank-2 fundamental matrix by the eight-point method),
  `normalize`, `triangulate`, `decompose_essential`, and hypothesis scoring with
  `check_homography`, `check_fundamental` and `check_rt`, which returns a
  `Reconstruction`.
- `orbnav.initializer`: `Initializer`, a RANSAC two-view map initializer. It fits
  a homography and a fundamental matrix over the same minimal sets of eight
  matches, picks one by score ratio and decomposes it into a motion and
  triangulated points.
- `orbnav.hessian`: `PinholeCalibration` with its projection Jacobian,
  map-point and keyframe Jacobians, the sparse bundle-adjustment Hessian
  (`compute_hessian`), its block split (`decompose_blocks`), the Schur complement
  on the cameras (`reduced_camera_system`) and a `FactorGraph` of keyframe poses,
  camera-camera Hessian blocks and landmarks (`compute_factor_graph`).

## Install

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Examples

Convert a rotation matrix to a quaternion:

```python
import numpy as np
from orbnav.converter import to_quaternion

x, y, z, w = to_quaternion(np.eye(3))   # (0, 0, 0, 1)
```

Query features near a pixel:

```python
from orbnav.frame import CameraIntrinsics, Frame, KeyPoint, compute_image_bounds

intrinsics = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0)
frame = Frame(
    [KeyPoint(100.0, 100.0), KeyPoint(300.0, 200.0)],
    intrinsics,
    compute_image_bounds(640, 480),
)
print(frame.features_in_area(101.0, 99.0, 5.0))   # [0]
```

Initialize from two views:

```python
from orbnav.initializer import Initializer

init = Initializer(reference_keys, k, sigma=1.0, iterations=200)
result = init.initialize(current_keys, matches, seed=0)
if result is not None:
    print(result.rotation, result.translation, result.n_good, result.parallax)
```

`matches[i]` is the index in `current_keys` matched to reference keypoint `i`,
or a negative number when it has none. Fewer than eight matches raise
`ValueError`; a failed initialization returns `None`.

Reduce a bundle-adjustment problem to the camera poses:

```python
from orbnav.hessian import compute_factor_graph

graph = compute_factor_graph(keyframes, threshold=15)
```

The result is `None` when no keyframe shares at least `threshold` map points
with a covisible one. Vertex quaternions in the graph are ordered w, x, y, z.

## What it does not do

The package has no keyframe class, no covisibility graph or spanning tree to
maintain between keyframes, no bag-of-words place recognition, and no tracking
or mapping loop. `orbnav.hessian` works on objects you supply: keyframes must
have `id`, `fx`, `fy`, `cx`, `cy`, `tcw` (4x4 world-to-camera pose), `keys_un`
(keypoints with `octave`), `inv_level_sigma2` and the methods `map_points()` and
`covisible_keyframes()`; map points must have `id`, `world_pos` and
`observations` (a mapping from keyframe to keypoint index). Likewise
`Frame.is_in_frustum` expects a map point object you provide. Feature
extraction, lens undistortion and stereo matching between two images are not
included: keypoints and undistorted keypoints are passed in. There is no
command-line program and no storage of maps.