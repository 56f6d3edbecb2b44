import numpy as np
import pytest

from vslam_backend.keyframe import KeyPoint
from vslam_backend.two_view_models import (
    check_fundamental,
    check_homography,
    compute_f21,
    compute_h21,
    normalize,
)

H_TRUE = np.array([[1.1, 0.02, 5.0], [0.01, 0.95, -3.0], [1e-4, 2e-4, 1.0]])
K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


def _keypoints(points):
    return [KeyPoint(float(x), float(y)) for x, y in points]


def _planar_scene(n=12):
    rng = np.random.default_rng(0)
    p1 = rng.uniform([0.0, 0.0], [640.0, 480.0], size=(n, 2))
    h = np.column_stack([p1, np.ones(n)]) @ H_TRUE.T
    p2 = h[:, :2] / h[:, 2:]
    return p1, p2


def _skew(v):
    return np.array([[0.0, -v[2], v[1]], [v[2], 0.0, -v[0]], [-v[1], v[0], 0.0]])


def _general_scene(n=12):
    rng = np.random.default_rng(1)
    points = rng.uniform([-1.0, -1.0, 4.0], [1.0, 1.0, 8.0], size=(n, 3))
    angle = 0.05
    r = np.array([[np.cos(angle), 0.0, np.sin(angle)],
                  [0.0, 1.0, 0.0],
                  [-np.sin(angle), 0.0, np.cos(angle)]])
    t = np.array([-0.5, 0.05, 0.02])
    x1 = points @ K.T
    x2 = (points @ r.T + t) @ K.T
    p1 = x1[:, :2] / x1[:, 2:]
    p2 = x2[:, :2] / x2[:, 2:]
    k_inv = np.linalg.inv(K)
    f = k_inv.T @ _skew(t) @ r @ k_inv
    return p1, p2, f


def test_normalize_invariants():
    p1, _ = _planar_scene()
    points, transform = normalize(_keypoints(p1))
    assert np.allclose(points.mean(axis=0), 0.0, atol=1e-12)
    assert np.allclose(np.abs(points).mean(axis=0), 1.0)
    mapped = np.column_stack([p1, np.ones(len(p1))]) @ transform.T
    assert np.allclose(mapped[:, :2], points)
    assert np.allclose(mapped[:, 2], 1.0)


def test_normalize_rejects_empty():
    with pytest.raises(ValueError):
        normalize([])


def test_normalize_rejects_no_spread():
    with pytest.raises(ValueError):
        normalize(_keypoints([(1.0, 2.0), (1.0, 5.0)]))


def test_compute_h21_recovers_homography():
    p1, p2 = _planar_scene()
    n1, t1 = normalize(_keypoints(p1))
    n2, t2 = normalize(_keypoints(p2))
    hn = compute_h21(n1[:8], n2[:8])
    assert np.linalg.norm(hn) == pytest.approx(1.0)
    h = np.linalg.inv(t2) @ hn @ t1
    assert np.allclose(h / h[2, 2], H_TRUE, atol=1e-6)


def test_compute_h21_needs_four_points():
    with pytest.raises(ValueError):
        compute_h21([(0, 0), (1, 0), (0, 1)], [(0, 0), (1, 0), (0, 1)])


def test_compute_h21_rejects_mismatched_sets():
    with pytest.raises(ValueError):
        compute_h21([(0, 0)] * 5, [(0, 0)] * 4)


def test_compute_f21_is_rank_two_and_satisfies_epipolar_constraint():
    p1, p2, _ = _general_scene()
    n1, t1 = normalize(_keypoints(p1))
    n2, t2 = normalize(_keypoints(p2))
    fn = compute_f21(n1[:8], n2[:8])
    singular = np.linalg.svd(fn, compute_uv=False)
    assert singular[2] == pytest.approx(0.0, abs=1e-12)
    assert singular[1] > 1e-6
    f = t2.T @ fn @ t1
    keys1, keys2 = _keypoints(p1), _keypoints(p2)
    matches = [(i, i) for i in range(len(p1))]
    _, inliers = check_fundamental(f, keys1, keys2, matches, 1.0)
    assert inliers == [True] * len(p1)


def test_compute_f21_needs_eight_points():
    with pytest.raises(ValueError):
        compute_f21([(0, 0)] * 7, [(0, 0)] * 7)


def test_check_homography_identity_scores_all_inliers():
    p1, _ = _planar_scene(6)
    keys = _keypoints(p1)
    matches = [(i, i) for i in range(6)]
    score, inliers = check_homography(np.eye(3), np.eye(3), keys, keys, matches, 1.0)
    assert inliers == [True] * 6
    assert score == pytest.approx(2 * 5.991 * 6)


def test_check_homography_flags_outlier():
    p1, p2 = _planar_scene(6)
    p2 = p2.copy()
    p2[2] += (10.0, 10.0)
    matches = [(i, i) for i in range(6)]
    score, inliers = check_homography(
        H_TRUE, np.linalg.inv(H_TRUE), _keypoints(p1), _keypoints(p2), matches, 1.0
    )
    assert inliers == [True, True, False, True, True, True]
    assert score == pytest.approx(2 * 5.991 * 5, abs=1e-4)


def test_check_homography_end_to_end_from_estimate():
    p1, p2 = _planar_scene()
    n1, t1 = normalize(_keypoints(p1))
    n2, t2 = normalize(_keypoints(p2))
    h = np.linalg.inv(t2) @ compute_h21(n1[:8], n2[:8]) @ t1
    matches = [(i, i) for i in range(len(p1))]
    score, inliers = check_homography(
        h, np.linalg.inv(h), _keypoints(p1), _keypoints(p2), matches, 1.0
    )
    assert inliers == [True] * len(p1)
    assert score == pytest.approx(2 * 5.991 * len(p1), abs=1e-3)


def test_check_fundamental_exact_scene():
    p1, p2, f = _general_scene()
    matches = [(i, i) for i in range(len(p1))]
    score, inliers = check_fundamental(f, _keypoints(p1), _keypoints(p2), matches, 1.0)
    assert inliers == [True] * len(p1)
    assert score == pytest.approx(2 * 5.991 * len(p1), abs=1e-6)


def test_check_fundamental_flags_outlier():
    p1, p2, f = _general_scene()
    p2 = p2.copy()
    p2[4, 1] += 40.0
    matches = [(i, i) for i in range(len(p1))]
    _, inliers = check_fundamental(f, _keypoints(p1), _keypoints(p2), matches, 1.0)
    assert inliers[4] is False
    assert sum(inliers) == len(p1) - 1


def test_check_uses_match_indices():
    p1, p2, f = _general_scene()
    keys2 = _keypoints(p2[::-1])
    n = len(p1)
    matches = [(i, n - 1 - i) for i in range(n)]
    score, inliers = check_fundamental(f, _keypoints(p1), keys2, matches, 1.0)
    assert inliers == [True] * n
    assert score == pytest.approx(2 * 5.991 * n, abs=1e-6)


def test_empty_matches_score_zero():
    keys = _keypoints([(1.0, 2.0)])
    assert check_homography(np.eye(3), np.eye(3), keys, keys, [], 1.0) == (0.0, [])


def test_non_positive_sigma_rejected():
    keys = _keypoints([(1.0, 2.0)])
    with pytest.raises(ValueError):
        check_fundamental(np.eye(3), keys, keys, [(0, 0)], 0.0)