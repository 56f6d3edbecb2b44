"""Relative pose and structure from two views, from an essential matrix or a homography."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

__all__ = [
    "Reconstruction",
    "triangulate",
    "decompose_essential",
    "check_rt",
    "reconstruct_f",
    "reconstruct_h",
]

# Cosine of the parallax below which a point counts as well triangulated.
_COS_PARALLAX_LIMIT = 0.99998
# Index into the sorted parallax cosines used to report the parallax.
_PARALLAX_RANK = 50


@dataclass(eq=False)
class Reconstruction:
    """A recovered motion (camera 1 to camera 2) and the triangulated points.

    ``points`` has one row per keypoint of the first view; ``triangulated``
    marks the rows that hold a point triangulated with enough parallax.
    """

    rotation: np.ndarray
    translation: np.ndarray
    points: np.ndarray
    triangulated: list[bool] = field(default_factory=list)
    parallax: float = 0.0


def triangulate(kp1, kp2, p1, p2) -> np.ndarray:
    """Linear triangulation of two keypoints seen by cameras with 3x4 projections."""
    p1 = np.asarray(p1, dtype=float).reshape(3, 4)
    p2 = np.asarray(p2, dtype=float).reshape(3, 4)
    a = np.stack(
        [
            kp1.x * p1[2] - p1[0],
            kp1.y * p1[2] - p1[1],
            kp2.x * p2[2] - p2[0],
            kp2.y * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    x = vt[3]
    with np.errstate(divide="ignore", invalid="ignore"):
        return x[:3] / x[3]


def decompose_essential(e) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """The two rotations and the unit translation an essential matrix allows."""
    u, _, vt = np.linalg.svd(np.asarray(e, dtype=float).reshape(3, 3))
    t = u[:, 2] / np.linalg.norm(u[:, 2])

    w = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    r1 = u @ w @ vt
    if np.linalg.det(r1) < 0:
        r1 = -r1
    r2 = u @ w.T @ vt
    if np.linalg.det(r2) < 0:
        r2 = -r2
    return r1, r2, t


def check_rt(
    r, t, keys1: Sequence, keys2: Sequence, matches, inliers, k, th2: float
) -> tuple[int, np.ndarray, list[bool], float]:
    """Triangulate inlier matches under motion ``(r, t)`` and count the good ones.

    Returns ``(n_good, points, good, parallax)``: ``points`` has a row per
    keypoint of the first view, ``good`` flags points with enough parallax and
    ``parallax`` is in degrees.
    """
    r = np.asarray(r, dtype=float).reshape(3, 3)
    t = np.asarray(t, dtype=float).ravel()
    k = np.asarray(k, dtype=float).reshape(3, 3)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]

    good = [False] * len(keys1)
    points = np.zeros((len(keys1), 3))
    cos_parallaxes: list[float] = []

    p1 = np.zeros((3, 4))
    p1[:, :3] = k
    p2 = k @ np.column_stack([r, t])
    o2 = -r.T @ t

    n_good = 0
    for (i1, i2), inlier in zip(matches, inliers):
        if not inlier:
            continue
        kp1 = keys1[i1]
        kp2 = keys2[i2]
        p3d_c1 = triangulate(kp1, kp2, p1, p2)
        if not np.all(np.isfinite(p3d_c1)):
            continue

        normal1 = p3d_c1
        normal2 = p3d_c1 - o2
        with np.errstate(divide="ignore", invalid="ignore"):
            cos_parallax = float(
                normal1 @ normal2 / (np.linalg.norm(normal1) * np.linalg.norm(normal2))
            )

        # Points at near-infinite depth may land behind a camera; keep them.
        if p3d_c1[2] <= 0 and cos_parallax < _COS_PARALLAX_LIMIT:
            continue
        p3d_c2 = r @ p3d_c1 + t
        if p3d_c2[2] <= 0 and cos_parallax < _COS_PARALLAX_LIMIT:
            continue

        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z1 = 1.0 / p3d_c1[2]
            im1 = np.array([fx * p3d_c1[0] * inv_z1 + cx, fy * p3d_c1[1] * inv_z1 + cy])
            error1 = float(np.sum((im1 - (kp1.x, kp1.y)) ** 2))
        if error1 > th2:
            continue

        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z2 = 1.0 / p3d_c2[2]
            im2 = np.array([fx * p3d_c2[0] * inv_z2 + cx, fy * p3d_c2[1] * inv_z2 + cy])
            error2 = float(np.sum((im2 - (kp2.x, kp2.y)) ** 2))
        if error2 > th2:
            continue

        cos_parallaxes.append(cos_parallax)
        points[i1] = p3d_c1
        n_good += 1
        if cos_parallax < _COS_PARALLAX_LIMIT:
            good[i1] = True

    if n_good > 0:
        cos_parallaxes.sort()
        chosen = cos_parallaxes[min(_PARALLAX_RANK, len(cos_parallaxes) - 1)]
        parallax = math.degrees(math.acos(min(1.0, max(-1.0, chosen))))
    else:
        parallax = 0.0
    return n_good, points, good, parallax


def reconstruct_f(
    inliers,
    f21,
    k,
    keys1,
    keys2,
    matches,
    sigma2: float = 1.0,
    min_parallax: float = 1.0,
    min_triangulated: int = 50,
) -> Reconstruction | None:
    """Recover motion and structure from a fundamental matrix, or None if ambiguous."""
    n = sum(1 for flag in inliers if flag)
    k = np.asarray(k, dtype=float).reshape(3, 3)
    e21 = k.T @ np.asarray(f21, dtype=float).reshape(3, 3) @ k

    r1, r2, t = decompose_essential(e21)
    hypotheses = [(r1, t), (r2, t), (r1, -t), (r2, -t)]
    th2 = 4.0 * sigma2
    checks = [
        check_rt(r, tt, keys1, keys2, matches, inliers, k, th2) for r, tt in hypotheses
    ]
    goods = [check[0] for check in checks]
    max_good = max(goods)
    min_good = max(int(0.9 * n), min_triangulated)
    similar = sum(1 for g in goods if g > 0.7 * max_good)

    # Reject without a clear winner or with too few triangulated points.
    if max_good < min_good or similar > 1:
        return None

    best = goods.index(max_good)
    _, points, good, parallax = checks[best]
    if parallax <= min_parallax:
        return None
    r, tt = hypotheses[best]
    return Reconstruction(r.copy(), tt.copy(), points, good, parallax)


def _homography_motions(a: np.ndarray) -> list[tuple[np.ndarray, np.ndarray]] | None:
    u, w, vt = np.linalg.svd(a)
    s = np.linalg.det(u) * np.linalg.det(vt)
    d1, d2, d3 = (np.float64(v) for v in w)

    with np.errstate(divide="ignore", invalid="ignore"):
        if d1 / d2 < 1.00001 or d2 / d3 < 1.00001:
            return None

        aux1 = np.sqrt((d1 * d1 - d2 * d2) / (d1 * d1 - d3 * d3))
        aux3 = np.sqrt((d2 * d2 - d3 * d3) / (d1 * d1 - d3 * d3))
        x1 = [aux1, aux1, -aux1, -aux1]
        x3 = [aux3, -aux3, aux3, -aux3]
        root = np.sqrt((d1 * d1 - d2 * d2) * (d2 * d2 - d3 * d3))

        motions = []

        # Case d' = d2
        aux_stheta = root / ((d1 + d3) * d2)
        ctheta = (d2 * d2 + d1 * d3) / ((d1 + d3) * d2)
        stheta = [aux_stheta, -aux_stheta, -aux_stheta, aux_stheta]
        for a1, a3, st in zip(x1, x3, stheta):
            rp = np.eye(3)
            rp[0, 0] = ctheta
            rp[0, 2] = -st
            rp[2, 0] = st
            rp[2, 2] = ctheta
            tvec = u @ (np.array([a1, 0.0, -a3]) * (d1 - d3))
            motions.append((s * u @ rp @ vt, tvec / np.linalg.norm(tvec)))

        # Case d' = -d2
        aux_sphi = root / ((d1 - d3) * d2)
        cphi = (d1 * d3 - d2 * d2) / ((d1 - d3) * d2)
        sphi = [aux_sphi, -aux_sphi, -aux_sphi, aux_sphi]
        for a1, a3, sp in zip(x1, x3, sphi):
            rp = np.eye(3)
            rp[0, 0] = cphi
            rp[0, 2] = sp
            rp[1, 1] = -1.0
            rp[2, 0] = sp
            rp[2, 2] = -cphi
            tvec = u @ (np.array([a1, 0.0, a3]) * (d1 + d3))
            motions.append((s * u @ rp @ vt, tvec / np.linalg.norm(tvec)))
    return motions


def reconstruct_h(
    inliers,
    h21,
    k,
    keys1,
    keys2,
    matches,
    sigma2: float = 1.0,
    min_parallax: float = 1.0,
    min_triangulated: int = 50,
) -> Reconstruction | None:
    """Recover motion and structure from a homography, or None if ambiguous.

    The eight motion hypotheses of the homography decomposition are all
    triangulated; the best one must clearly beat the others.
    """
    n = sum(1 for flag in inliers if flag)
    k = np.asarray(k, dtype=float).reshape(3, 3)
    a = np.linalg.inv(k) @ np.asarray(h21, dtype=float).reshape(3, 3) @ k

    motions = _homography_motions(a)
    if motions is None:
        return None

    th2 = 4.0 * sigma2
    best_good = 0
    second_good = 0
    best: Reconstruction | None = None
    best_parallax = -1.0
    for r, t in motions:
        n_good, points, good, parallax = check_rt(r, t, keys1, keys2, matches, inliers, k, th2)
        if n_good > best_good:
            second_good = best_good
            best_good = n_good
            best_parallax = parallax
            best = Reconstruction(r.copy(), t.copy(), points, good, parallax)
        elif n_good > second_good:
            second_good = n_good

    if (
        best is not None
        and second_good < 0.75 * best_good
        and best_parallax >= min_parallax
        and best_good > min_triangulated
        and best_good > 0.9 * n
    ):
        return best
    return None