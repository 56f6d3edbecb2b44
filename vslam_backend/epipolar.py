"""Epipolar geometry between two keyframes."""

from __future__ import annotations

import numpy as np

__all__ = ["skew_symmetric", "compute_f12"]


def skew_symmetric(v) -> np.ndarray:
    """The matrix ``[v]x`` with ``[v]x @ w == cross(v, w)``."""
    x, y, z = _vector3(v)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def _vector3(v) -> np.ndarray:
    array = np.asarray(v, dtype=float).ravel()
    if array.shape != (3,):
        raise ValueError("expected a 3-vector")
    return array


def compute_f12(keyframe1, keyframe2) -> np.ndarray:
    """Fundamental matrix with ``x1^T F12 x2 = 0`` for pixels of the two keyframes.

    The keyframes provide ``rotation`` and ``translation`` (world to camera)
    and the calibration matrix ``k``.
    """
    r1w = np.asarray(keyframe1.rotation, dtype=float)
    t1w = np.asarray(keyframe1.translation, dtype=float).ravel()
    r2w = np.asarray(keyframe2.rotation, dtype=float)
    t2w = np.asarray(keyframe2.translation, dtype=float).ravel()

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w

    k1 = np.asarray(keyframe1.k, dtype=float)
    k2 = np.asarray(keyframe2.k, dtype=float)
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)