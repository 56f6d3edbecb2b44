"""Two-view models: homography and fundamental matrix estimation and scoring."""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np

__all__ = [
    "normalize",
    "compute_h21",
    "compute_f21",
    "check_homography",
    "check_fundamental",
]

# Chi-square thresholds at 95% for 2 and 1 degrees of freedom.
_CHI2_2DOF = 5.991
_CHI2_1DOF = 3.841


def _coords(keypoints: Iterable) -> np.ndarray:
    return np.array([(kp.x, kp.y) for kp in keypoints], dtype=float).reshape(-1, 2)


def _match_indices(matches: Iterable[tuple[int, int]]) -> tuple[np.ndarray, np.ndarray]:
    pairs = np.array(list(matches), dtype=int).reshape(-1, 2)
    return pairs[:, 0], pairs[:, 1]


def _point_pairs(points1, points2, minimum: int) -> tuple[np.ndarray, np.ndarray]:
    p1 = np.asarray(points1, dtype=float).reshape(-1, 2)
    p2 = np.asarray(points2, dtype=float).reshape(-1, 2)
    if p1.shape != p2.shape:
        raise ValueError("both point sets must have the same number of points")
    if len(p1) < minimum:
        raise ValueError(f"at least {minimum} correspondences are needed")
    return p1, p2


def _inverse_sigma_square(sigma: float) -> float:
    if sigma <= 0:
        raise ValueError("sigma must be positive")
    return 1.0 / (sigma * sigma)


def _score(chi_square: np.ndarray, threshold: float, score_threshold: float) -> float:
    accepted = ~(chi_square > threshold)
    return float(np.sum(score_threshold - chi_square[accepted]))


def normalize(keypoints: Sequence) -> tuple[np.ndarray, np.ndarray]:
    """Centre keypoints and scale them to unit mean absolute deviation.

    Returns the normalized ``(N, 2)`` points and the 3x3 transform ``T`` with
    ``T @ [x, y, 1]`` giving the normalized point.
    """
    points = _coords(keypoints)
    if len(points) == 0:
        raise ValueError("no keypoints to normalize")
    mean = points.mean(axis=0)
    centred = points - mean
    deviation = np.abs(centred).mean(axis=0)
    if np.any(deviation == 0):
        raise ValueError("keypoints have no spread along an axis")
    scale = 1.0 / deviation

    transform = np.eye(3)
    transform[0, 0] = scale[0]
    transform[1, 1] = scale[1]
    transform[0, 2] = -mean[0] * scale[0]
    transform[1, 2] = -mean[1] * scale[1]
    return centred * scale, transform


def compute_h21(points1, points2) -> np.ndarray:
    """Homography mapping ``points1`` onto ``points2`` by the direct linear transform."""
    p1, p2 = _point_pairs(points1, points2, 4)
    u1, v1 = p1.T
    u2, v2 = p2.T
    zeros = np.zeros(len(p1))
    ones = np.ones(len(p1))

    a = np.empty((2 * len(p1), 9))
    a[0::2] = np.stack([zeros, zeros, zeros, -u1, -v1, -ones, v2 * u1, v2 * v1, v2], axis=1)
    a[1::2] = np.stack([u1, v1, ones, zeros, zeros, zeros, -u2 * u1, -u2 * v1, -u2], axis=1)

    _, _, vt = np.linalg.svd(a)
    return vt[-1].reshape(3, 3)


def compute_f21(points1, points2) -> np.ndarray:
    """Rank-2 fundamental matrix with ``x2^T F x1 = 0`` by the eight-point method."""
    p1, p2 = _point_pairs(points1, points2, 8)
    u1, v1 = p1.T
    u2, v2 = p2.T
    ones = np.ones(len(p1))

    a = np.stack([u2 * u1, u2 * v1, u2, v2 * u1, v2 * v1, v2, u1, v1, ones], axis=1)
    _, _, vt = np.linalg.svd(a)
    f_pre = vt[-1].reshape(3, 3)

    u, w, vt = np.linalg.svd(f_pre)
    w[2] = 0.0
    return u @ np.diag(w) @ vt


def _apply_homography(h: np.ndarray, points: np.ndarray) -> np.ndarray:
    homogeneous = np.column_stack([points, np.ones(len(points))]) @ h.T
    return homogeneous[:, :2] / homogeneous[:, 2:]


def check_homography(h21, h12, keys1, keys2, matches, sigma: float) -> tuple[float, list[bool]]:
    """Score a homography by symmetric transfer error; returns ``(score, inliers)``."""
    inv_sigma2 = _inverse_sigma_square(sigma)
    idx1, idx2 = _match_indices(matches)
    p1 = _coords(keys1)[idx1]
    p2 = _coords(keys2)[idx2]
    h21 = np.asarray(h21, dtype=float).reshape(3, 3)
    h12 = np.asarray(h12, dtype=float).reshape(3, 3)

    with np.errstate(divide="ignore", invalid="ignore"):
        chi1 = np.sum((p1 - _apply_homography(h12, p2)) ** 2, axis=1) * inv_sigma2
        chi2 = np.sum((p2 - _apply_homography(h21, p1)) ** 2, axis=1) * inv_sigma2

    score = _score(chi1, _CHI2_2DOF, _CHI2_2DOF) + _score(chi2, _CHI2_2DOF, _CHI2_2DOF)
    inliers = ~(chi1 > _CHI2_2DOF) & ~(chi2 > _CHI2_2DOF)
    return score, inliers.tolist()


def check_fundamental(f21, keys1, keys2, matches, sigma: float) -> tuple[float, list[bool]]:
    """Score a fundamental matrix by point-to-epipolar-line distance in both images."""
    inv_sigma2 = _inverse_sigma_square(sigma)
    idx1, idx2 = _match_indices(matches)
    p1 = _coords(keys1)[idx1]
    p2 = _coords(keys2)[idx2]
    f21 = np.asarray(f21, dtype=float).reshape(3, 3)
    x1 = np.column_stack([p1, np.ones(len(p1))])
    x2 = np.column_stack([p2, np.ones(len(p2))])

    with np.errstate(divide="ignore", invalid="ignore"):
        # Epipolar line of x1 in the second image.
        a2, b2, _ = (x1 @ f21.T).T
        num2 = np.sum(x2 * (x1 @ f21.T), axis=1)
        chi1 = num2 * num2 / (a2 * a2 + b2 * b2) * inv_sigma2

        # Epipolar line of x2 in the first image.
        a1, b1, _ = (x2 @ f21).T
        num1 = np.sum(x1 * (x2 @ f21), axis=1)
        chi2 = num1 * num1 / (a1 * a1 + b1 * b1) * inv_sigma2

    score = _score(chi1, _CHI2_1DOF, _CHI2_2DOF) + _score(chi2, _CHI2_1DOF, _CHI2_2DOF)
    inliers = ~(chi1 > _CHI2_1DOF) & ~(chi2 > _CHI2_1DOF)
    return score, inliers.tolist()