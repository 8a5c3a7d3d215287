from types import SimpleNamespace

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from orbnav.hessian import (
    FactorGraph,
    PinholeCalibration,
    collect_observations,
    compose_pose_point,
    compute_factor_graph,
    compute_hessian,
    decompose_blocks,
    hpp_inverse,
    keyframe_jacobian,
    map_point_jacobian,
    reduced_camera_system,
    rotation_matrix,
)

FX, FY, CX, CY = 500.0, 480.0, 320.0, 240.0
N_POINTS = 10
N_KF = 3


class FakeMapPoint:
    def __init__(self, pid, pos):
        self.id = pid
        self.world_pos = np.asarray(pos, dtype=np.float32)
        self.observations = {}


class FakeKeyFrame:
    def __init__(self, kid, tcw):
        self.id = kid
        self.tcw = np.asarray(tcw, dtype=np.float32)
        self.fx, self.fy, self.cx, self.cy = FX, FY, CX, CY
        self.keys_un = []
        self.inv_level_sigma2 = [1.0, 1.0 / 1.44]
        self.points = []
        self.covisible = []

    def map_points(self):
        return set(self.points)

    def covisible_keyframes(self):
        return list(self.covisible)


def _pose(rotvec, t):
    m = np.eye(4, dtype=np.float32)
    m[:3, :3] = Rotation.from_rotvec(rotvec).as_matrix()
    m[:3, 3] = t
    return m


def _scene():
    rng = np.random.default_rng(3)
    keyframes = [
        FakeKeyFrame(i, _pose([0.0, 0.02 * i, 0.0], [-0.3 * i, 0.0, 0.0]))
        for i in range(N_KF)
    ]
    points = []
    for j in range(N_POINTS):
        pos = [rng.uniform(-1, 1), rng.uniform(-1, 1), rng.uniform(4, 6)]
        points.append(FakeMapPoint(100 + j, pos))
    for kf in keyframes:
        for p in points:
            p.observations[kf] = len(kf.keys_un)
            kf.keys_un.append(SimpleNamespace(octave=len(kf.keys_un) % 2))
            kf.points.append(p)
        kf.covisible = [o for o in keyframes if o is not kf]
    return keyframes, points


def _project(xc):
    return np.array([FX * xc[0] / xc[2] + CX, FY * xc[1] / xc[2] + CY])


def test_project_jacobian_on_optical_axis():
    calib = PinholeCalibration(FX, FY, CX, CY)
    np.testing.assert_allclose(
        calib.project_jacobian([0.0, 0.0, 1.0]), [[FX, 0.0, 0.0], [0.0, FY, 0.0]]
    )


def test_compose_pose_point_and_rotation():
    pose = _pose([0.0, 0.0, 0.0], [1.0, 2.0, 3.0])
    np.testing.assert_allclose(rotation_matrix(pose), np.eye(3))
    np.testing.assert_allclose(compose_pose_point(pose, [0.5, 0.5, 0.5]), [1.5, 2.5, 3.5])


def test_map_point_jacobian_matches_finite_difference():
    calib = PinholeCalibration(FX, FY, CX, CY)
    pose = _pose([0.1, -0.05, 0.2], [0.2, -0.1, 0.3]).astype(np.float64)
    xw = np.array([0.3, -0.2, 5.0])
    jac = map_point_jacobian(pose, xw, calib)
    eps = 1e-4
    numeric = np.zeros((2, 3))
    for k in range(3):
        d = np.zeros(3)
        d[k] = eps
        plus = _project(pose[:3, :3] @ (xw + d) + pose[:3, 3])
        minus = _project(pose[:3, :3] @ (xw - d) + pose[:3, 3])
        numeric[:, k] = -(plus - minus) / (2 * eps)
    np.testing.assert_allclose(jac, numeric, rtol=1e-2, atol=1e-2)


def test_keyframe_jacobian_matches_left_perturbation():
    calib = PinholeCalibration(FX, FY, CX, CY)
    pose = _pose([0.0, 0.0, 0.0], [0.0, 0.0, 0.0]).astype(np.float64)
    xw = np.array([0.4, -0.3, 4.0])
    jac = keyframe_jacobian(pose, xw, calib)
    eps = 1e-5
    numeric = np.zeros((2, 6))
    for k in range(6):
        d = np.zeros(6)
        d[k] = eps
        r_plus = Rotation.from_rotvec(d[:3]).as_matrix()
        r_minus = Rotation.from_rotvec(-d[:3]).as_matrix()
        plus = _project(r_plus @ xw + d[3:])
        minus = _project(r_minus @ xw - d[3:])
        numeric[:, k] = -(plus - minus) / (2 * eps)
    np.testing.assert_allclose(jac, numeric, rtol=1e-2, atol=1e-2)


def test_collect_observations_selects_all_with_low_threshold():
    keyframes, points = _scene()
    selected, mps, obs, n_obs = collect_observations(list(reversed(keyframes)), 5)
    assert [kf.id for kf in selected] == [0, 1, 2]
    assert mps == set(points)
    assert n_obs == N_KF * N_POINTS
    assert all(obs[kf] == set(points) for kf in keyframes)


def test_collect_observations_threshold_too_high():
    keyframes, _ = _scene()
    selected, mps, obs, n_obs = collect_observations(keyframes, N_POINTS + 1)
    assert selected == []
    assert mps == set()
    assert n_obs == 0


def test_hessian_shape_symmetry_and_psd():
    keyframes, _ = _scene()
    selected, mps, obs, n_obs = collect_observations(keyframes, 1)
    h, lookup = compute_hessian(selected, mps, obs, n_obs)
    size = 6 * N_KF + 3 * N_POINTS
    assert h.shape == (size, size)
    assert lookup == {0: 0, 1: 1, 2: 2}
    dense = h.toarray()
    np.testing.assert_allclose(dense, dense.T, atol=1e-6)
    assert np.linalg.eigvalsh(dense).min() > -1e-3 * np.abs(dense).max()


def test_compute_hessian_needs_keyframes():
    with pytest.raises(ValueError):
        compute_hessian([], set(), {}, 0)


def test_decompose_blocks_reassemble():
    keyframes, _ = _scene()
    selected, mps, obs, n_obs = collect_observations(keyframes, 1)
    h, _ = compute_hessian(selected, mps, obs, n_obs)
    hcc, hpp, hcp = decompose_blocks(N_KF, h)
    assert hcc.shape == (6 * N_KF, 6 * N_KF)
    assert hpp.shape == (3 * N_POINTS, 3 * N_POINTS)
    assert hcp.shape == (3 * N_POINTS, 6 * N_KF)
    dense = h.toarray()
    np.testing.assert_allclose(hcp.toarray(), dense[6 * N_KF:, : 6 * N_KF])
    np.testing.assert_allclose(hpp.toarray(), dense[6 * N_KF:, 6 * N_KF:])


def test_hpp_inverse_is_block_inverse():
    keyframes, _ = _scene()
    selected, mps, obs, n_obs = collect_observations(keyframes, 1)
    h, _ = compute_hessian(selected, mps, obs, n_obs)
    _, hpp, _ = decompose_blocks(N_KF, h)
    product = (hpp @ hpp_inverse(hpp)).toarray()
    np.testing.assert_allclose(product, np.eye(3 * N_POINTS), atol=1e-6)


def test_reduced_system_symmetric():
    keyframes, _ = _scene()
    selected, mps, obs, n_obs = collect_observations(keyframes, 1)
    h, _ = compute_hessian(selected, mps, obs, n_obs)
    reduced = reduced_camera_system(N_KF, h).toarray()
    assert reduced.shape == (6 * N_KF, 6 * N_KF)
    np.testing.assert_allclose(reduced, reduced.T, atol=1e-3 * np.abs(reduced).max())


def test_factor_graph_contents():
    keyframes, points = _scene()
    graph = compute_factor_graph(keyframes, 1)
    assert isinstance(graph, FactorGraph)
    assert [v[0] for v in graph.vertices] == [0, 1, 2]
    np.testing.assert_allclose(graph.vertices[0][1], [1, 0, 0, 0], atol=1e-6)
    assert len(graph.edges) == N_KF * (N_KF - 1)
    blocks = {(a, b): m for a, b, m in graph.edges}
    tol = 1e-3 * max(np.abs(m).max() for m in blocks.values())
    np.testing.assert_allclose(blocks[(0, 1)], blocks[(1, 0)].T, atol=tol)
    assert [p[0] for p in graph.points] == [p.id for p in points]
    assert all(p[2] == [0, 1, 2] for p in graph.points)
    np.testing.assert_allclose(graph.points[0][1], points[0].world_pos, atol=1e-6)


def test_factor_graph_none_without_observations():
    keyframes, _ = _scene()
    assert compute_factor_graph(keyframes, N_POINTS + 1) is None