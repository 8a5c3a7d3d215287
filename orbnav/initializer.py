"""Map initialization from two views of a monocular camera.

A homography and a fundamental matrix are fitted in parallel RANSAC
schemes over the same minimal sets; the model that explains the matches
better is decomposed into a motion and a set of triangulated points.
"""

from __future__ import annotations

import math
import random
from typing import Any, Sequence

import numpy as np

from orbnav.two_view import (
    Reconstruction,
    check_fundamental,
    check_homography,
    check_rt,
    compute_f21,
    compute_h21,
    decompose_essential,
    normalize,
)

__all__ = ["Initializer"]

_MIN_SET = 8
_HOMOGRAPHY_RATIO = 0.40
_MIN_PARALLAX = 1.0
_MIN_TRIANGULATED = 50


class Initializer:
    """Two-view initializer anchored on a reference frame's undistorted keypoints."""

    def __init__(
        self,
        reference_keys: Sequence[Any],
        k: np.ndarray,
        sigma: float = 1.0,
        iterations: int = 200,
    ) -> None:
        self.k = np.array(k, dtype=np.float32)
        if self.k.shape != (3, 3):
            raise ValueError("calibration matrix must be 3x3")
        if iterations < 1:
            raise ValueError("at least one RANSAC iteration is needed")
        self.keys1 = list(reference_keys)
        self.keys2: list[Any] = []
        self.sigma = float(sigma)
        self.sigma2 = self.sigma * self.sigma
        self.max_iterations = iterations
        self.matches: list[tuple[int, int]] = []
        self.matched1: list[bool] = []
        self.sets: list[list[int]] = []

    def initialize(
        self, current_keys: Sequence[Any], matches: Sequence[int], seed: int = 0
    ) -> Reconstruction | None:
        """Recover motion and structure, or None when initialization fails.

        ``matches[i]`` is the index in ``current_keys`` matched to reference
        keypoint ``i``, or a negative number when it has no match.
        """
        if len(matches) > len(self.keys1):
            raise ValueError("more matches than reference keypoints")
        self.keys2 = list(current_keys)
        self.matches = [(i, int(m)) for i, m in enumerate(matches) if m >= 0]
        self.matched1 = [m >= 0 for m in matches]
        self.matched1.extend([False] * (len(self.keys1) - len(self.matched1)))

        n = len(self.matches)
        if n < _MIN_SET:
            raise ValueError(f"at least {_MIN_SET} matches are needed, got {n}")

        rng = random.Random(seed)
        self.sets = [rng.sample(range(n), _MIN_SET) for _ in range(self.max_iterations)]

        inliers_h, score_h, h21 = self.find_homography()
        inliers_f, score_f, f21 = self.find_fundamental()

        total = score_h + score_f
        if total <= 0.0:
            return None
        if score_h / total > _HOMOGRAPHY_RATIO:
            if h21 is None:
                return None
            return self.reconstruct_h(inliers_h, h21, self.k, _MIN_PARALLAX, _MIN_TRIANGULATED)
        if f21 is None:
            return None
        return self.reconstruct_f(inliers_f, f21, self.k, _MIN_PARALLAX, _MIN_TRIANGULATED)

    def _minimal_sets(self):
        pn1, t1 = normalize(self.keys1)
        pn2, t2 = normalize(self.keys2)
        for chosen in self.sets:
            pairs = [self.matches[i] for i in chosen]
            yield pn1[[a for a, _ in pairs]], pn2[[b for _, b in pairs]], t1, t2

    def find_homography(self) -> tuple[list[bool], float, np.ndarray | None]:
        """Best homography over the RANSAC sets: (inliers, score, H21)."""
        best_inliers = [False] * len(self.matches)
        best_score = 0.0
        best_h: np.ndarray | None = None
        for sel1, sel2, t1, t2 in self._minimal_sets():
            hn = compute_h21(sel1, sel2).astype(np.float64)
            h21 = (np.linalg.inv(t2.astype(np.float64)) @ hn @ t1).astype(np.float32)
            try:
                h12 = np.linalg.inv(h21.astype(np.float64)).astype(np.float32)
            except np.linalg.LinAlgError:
                continue
            score, inliers = check_homography(
                self.keys1, self.keys2, self.matches, h21, h12, self.sigma
            )
            if score > best_score:
                best_score, best_inliers, best_h = score, inliers, h21.copy()
        return best_inliers, best_score, best_h

    def find_fundamental(self) -> tuple[list[bool], float, np.ndarray | None]:
        """Best fundamental matrix over the RANSAC sets: (inliers, score, F21)."""
        best_inliers = [False] * len(self.matches)
        best_score = 0.0
        best_f: np.ndarray | None = None
        for sel1, sel2, t1, t2 in self._minimal_sets():
            fn = compute_f21(sel1, sel2).astype(np.float64)
            f21 = (t2.T.astype(np.float64) @ fn @ t1).astype(np.float32)
            score, inliers = check_fundamental(
                self.keys1, self.keys2, self.matches, f21, self.sigma
            )
            if score > best_score:
                best_score, best_inliers, best_f = score, inliers, f21.copy()
        return best_inliers, best_score, best_f

    def _check(self, rotation, translation, inliers, k) -> Reconstruction:
        return check_rt(
            rotation, translation, self.keys1, self.keys2, self.matches,
            inliers, k, 4.0 * self.sigma2,
        )

    def reconstruct_f(
        self,
        inliers: Sequence[bool],
        f21: np.ndarray,
        k: np.ndarray,
        min_parallax: float,
        min_triangulated: int,
    ) -> Reconstruction | None:
        """Pick the one of four essential-matrix motions that triangulates best."""
        n = sum(1 for flag in inliers if flag)
        kk = np.asarray(k, dtype=np.float64)
        e21 = kk.T @ np.asarray(f21, dtype=np.float64) @ kk
        r1, r2, t = decompose_essential(e21)

        hypotheses = [
            self._check(r1, t, inliers, k),
            self._check(r2, t, inliers, k),
            self._check(r1, -t, inliers, k),
            self._check(r2, -t, inliers, k),
        ]
        goods = [h.n_good for h in hypotheses]
        max_good = max(goods)
        min_good = max(int(0.9 * n), min_triangulated)
        similar = sum(1 for g in goods if g > 0.7 * max_good)
        if max_good < min_good or similar > 1:
            return None

        best = next(h for h in hypotheses if h.n_good == max_good)
        if best.parallax > min_parallax:
            return best
        return None

    def reconstruct_h(
        self,
        inliers: Sequence[bool],
        h21: np.ndarray,
        k: np.ndarray,
        min_parallax: float,
        min_triangulated: int,
    ) -> Reconstruction | None:
        """Decompose a homography into eight motions and keep a clear winner."""
        n = sum(1 for flag in inliers if flag)
        kk = np.asarray(k, dtype=np.float64)
        a = np.linalg.inv(kk) @ np.asarray(h21, dtype=np.float64) @ kk
        u, w, vt = np.linalg.svd(a, full_matrices=True)
        s = np.linalg.det(u) * np.linalg.det(vt)
        d1, d2, d3 = (float(x) for x in w)
        if d2 <= 0.0 or d3 <= 0.0:
            return None
        if d1 / d2 < 1.00001 or d2 / d3 < 1.00001:
            return None

        aux1 = math.sqrt((d1 * d1 - d2 * d2) / (d1 * d1 - d3 * d3))
        aux3 = math.sqrt((d2 * d2 - d3 * d3) / (d1 * d1 - d3 * d3))
        x1 = (aux1, aux1, -aux1, -aux1)
        x3 = (aux3, -aux3, aux3, -aux3)
        root = math.sqrt((d1 * d1 - d2 * d2) * (d2 * d2 - d3 * d3))

        motions: list[tuple[np.ndarray, np.ndarray]] = []

        aux_stheta = root / ((d1 + d3) * d2)
        ctheta = (d2 * d2 + d1 * d3) / ((d1 + d3) * d2)
        stheta = (aux_stheta, -aux_stheta, -aux_stheta, aux_stheta)
        for i in range(4):
            rp = np.eye(3)
            rp[0, 0] = ctheta
            rp[0, 2] = -stheta[i]
            rp[2, 0] = stheta[i]
            rp[2, 2] = ctheta
            tp = np.array([x1[i], 0.0, -x3[i]]) * (d1 - d3)
            t = u @ tp
            motions.append((s * u @ rp @ vt, t / np.linalg.norm(t)))

        aux_sphi = root / ((d1 - d3) * d2)
        cphi = (d1 * d3 - d2 * d2) / ((d1 - d3) * d2)
        sphi = (aux_sphi, -aux_sphi, -aux_sphi, aux_sphi)
        for i in range(4):
            rp = np.eye(3)
            rp[0, 0] = cphi
            rp[0, 2] = sphi[i]
            rp[1, 1] = -1.0
            rp[2, 0] = sphi[i]
            rp[2, 2] = -cphi
            tp = np.array([x1[i], 0.0, x3[i]]) * (d1 + d3)
            t = u @ tp
            motions.append((s * u @ rp @ vt, t / np.linalg.norm(t)))

        best_good = 0
        second_good = 0
        best: Reconstruction | None = None
        best_parallax = -1.0
        for rotation, translation in motions:
            candidate = self._check(rotation, translation, inliers, k)
            if candidate.n_good > best_good:
                second_good = best_good
                best_good = candidate.n_good
                best = candidate
                best_parallax = candidate.parallax
            elif candidate.n_good > second_good:
                second_good = candidate.n_good

        if (
            best is not None
            and second_good < 0.75 * best_good
            and best_parallax >= min_parallax
            and best_good > min_triangulated
            and best_good > 0.9 * n
        ):
            return best
        return None