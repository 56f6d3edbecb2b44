"""Monocular map initialization from two views."""

from __future__ import annotations

import random
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import numpy as np

from vslam_backend.reconstruction import Reconstruction, reconstruct_f, reconstruct_h
from vslam_backend.two_view_models import (
    check_fundamental,
    check_homography,
    compute_f21,
    compute_h21,
    normalize,
)

__all__ = ["Initializer"]

_MINIMUM_SET = 8
# Homography is preferred when its share of the total score exceeds this.
_HOMOGRAPHY_RATIO = 0.40
_MIN_PARALLAX = 1.0
_MIN_TRIANGULATED = 50


class Initializer:
    """Estimates relative motion and structure between a reference and a current view.

    Both a homography and a fundamental matrix are fitted by RANSAC over the
    same random minimal sets; the better explaining model is used to
    reconstruct.
    """

    def __init__(self, reference_keys: Sequence, k, sigma: float = 1.0, iterations: int = 200) -> None:
        self._keys1 = list(reference_keys)
        self._k = np.array(k, dtype=float).reshape(3, 3)
        self.sigma = float(sigma)
        self.sigma2 = self.sigma * self.sigma
        self.max_iterations = int(iterations)
        self._keys2: list | None = None
        self._matches: list[tuple[int, int]] = []
        self._sets: list[list[int]] = []
        self.matched1: list[bool] = [False] * len(self._keys1)

    @property
    def matches(self) -> list[tuple[int, int]]:
        return list(self._matches)

    def initialize(self, current_keys: Sequence, matches12) -> Reconstruction | None:
        """Reconstruct from the current keypoints and matches (-1 for unmatched).

        ``matches12[i]`` is the index in ``current_keys`` matched to reference
        keypoint ``i``. Returns None when no reliable reconstruction is found.
        """
        self._keys2 = list(current_keys)
        matches12 = list(matches12)
        self._matches = [(i, int(j)) for i, j in enumerate(matches12) if j >= 0]
        self.matched1 = [False] * len(self._keys1)
        for i, j in enumerate(matches12):
            if i < len(self.matched1):
                self.matched1[i] = j >= 0

        n = len(self._matches)
        if n < _MINIMUM_SET:
            raise ValueError(f"at least {_MINIMUM_SET} matches are needed")

        rng = random.Random(0)
        self._sets = []
        for _ in range(self.max_iterations):
            available = list(range(n))
            chosen = []
            for _ in range(_MINIMUM_SET):
                pick = rng.randint(0, len(available) - 1)
                chosen.append(available[pick])
                available[pick] = available[-1]
                available.pop()
            self._sets.append(chosen)

        with ThreadPoolExecutor(max_workers=2) as pool:
            homography = pool.submit(self.find_homography)
            fundamental = pool.submit(self.find_fundamental)
            inliers_h, score_h, h21 = homography.result()
            inliers_f, score_f, f21 = fundamental.result()

        total = score_h + score_f
        ratio_h = score_h / total if total > 0 else 0.0

        if ratio_h > _HOMOGRAPHY_RATIO:
            if h21 is None:
                return None
            return reconstruct_h(inliers_h, h21, self._k, self._keys1, self._keys2,
                                 self._matches, self.sigma2, _MIN_PARALLAX, _MIN_TRIANGULATED)
        if f21 is None:
            return None
        return reconstruct_f(inliers_f, f21, self._k, self._keys1, self._keys2,
                             self._matches, self.sigma2, _MIN_PARALLAX, _MIN_TRIANGULATED)

    def _prepared(self):
        if self._keys2 is None or not self._sets:
            raise RuntimeError("initialize must be called first")
        points1, t1 = normalize(self._keys1)
        points2, t2 = normalize(self._keys2)
        return points1, t1, points2, t2

    def _minimal_set(self, points1, points2, sample):
        p1 = np.array([points1[self._matches[i][0]] for i in sample])
        p2 = np.array([points2[self._matches[i][1]] for i in sample])
        return p1, p2

    def find_homography(self) -> tuple[list[bool], float, np.ndarray | None]:
        """RANSAC homography: returns ``(inliers, score, h21)`` of the best set."""
        points1, t1, points2, t2 = self._prepared()
        t2_inv = np.linalg.inv(t2)

        best_score = 0.0
        best_inliers = [False] * len(self._matches)
        best_h = None
        for sample in self._sets:
            p1, p2 = self._minimal_set(points1, points2, sample)
            h21 = t2_inv @ compute_h21(p1, p2) @ t1
            try:
                h12 = np.linalg.inv(h21)
            except np.linalg.LinAlgError:
                continue
            score, inliers = check_homography(h21, h12, self._keys1, self._keys2,
                                              self._matches, self.sigma)
            if score > best_score:
                best_score, best_inliers, best_h = score, inliers, h21.copy()
        return best_inliers, best_score, best_h

    def find_fundamental(self) -> tuple[list[bool], float, np.ndarray | None]:
        """RANSAC fundamental matrix: returns ``(inliers, score, f21)`` of the best set."""
        points1, t1, points2, t2 = self._prepared()

        best_score = 0.0
        best_inliers = [False] * len(self._matches)
        best_f = None
        for sample in self._sets:
            p1, p2 = self._minimal_set(points1, points2, sample)
            f21 = t2.T @ compute_f21(p1, p2) @ t1
            score, inliers = check_fundamental(f21, self._keys1, self._keys2,
                                               self._matches, self.sigma)
            if score > best_score:
                best_score, best_inliers, best_f = score, inliers, f21.copy()
        return best_inliers, best_score, best_f