import math

import numpy as np
import pytest

from vslam_backend.keyframe import FrameData, KeyFrame, KeyPoint
from vslam_backend.map_point import MapPoint
from vslam_backend.slam_map import Map


def make_keys(n):
    return [KeyPoint(20.0 + 25.0 * i, 30.0 + 15.0 * i) for i in range(n)]


def make_kf(world_map, n=20, **kwargs):
    data = FrameData(keys_un=kwargs.pop("keys_un", make_keys(n)), **kwargs)
    kf = KeyFrame(data, world_map)
    world_map.add_keyframe(kf)
    return kf


def rot_z(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def pose(r, t):
    m = np.eye(4)
    m[:3, :3] = r
    m[:3, 3] = t
    return m


def shared_points(world_map, kf_a, kf_b, count):
    points = []
    for i in range(count):
        mp = MapPoint([0.0, 0.0, 1.0 + i], kf_a, world_map)
        mp.add_observation(kf_a, i)
        mp.add_observation(kf_b, i)
        kf_a.add_map_point(mp, i)
        kf_b.add_map_point(mp, i)
        world_map.add_map_point(mp)
        points.append(mp)
    return points


def test_pose_inverse_and_center():
    m = Map()
    r = rot_z(0.3)
    t = np.array([1.0, -2.0, 0.5])
    kf = make_kf(m, tcw=pose(r, t))
    assert np.allclose(kf.pose @ kf.pose_inverse, np.eye(4))
    assert np.allclose(kf.camera_center, -r.T @ t)
    assert np.allclose(kf.rotation, r)
    assert np.allclose(kf.translation, t)


def test_stereo_center_offset_by_half_baseline():
    m = Map()
    kf = make_kf(m, baseline=0.2)
    assert np.allclose(kf.stereo_center, [0.1, 0.0, 0.0])
    assert np.allclose(kf.camera_center, [0.0, 0.0, 0.0])


def test_connections_ordered_by_weight():
    m = Map()
    kf = make_kf(m)
    a, b, c = make_kf(m), make_kf(m), make_kf(m)
    kf.add_connection(a, 5)
    kf.add_connection(b, 20)
    kf.add_connection(c, 10)
    assert kf.covisible_keyframes() == [b, c, a]
    assert kf.best_covisibility_keyframes(2) == [b, c]
    assert kf.best_covisibility_keyframes(10) == [b, c, a]
    assert kf.weight(c) == 10
    assert kf.weight(make_kf(m)) == 0
    assert kf.connected_keyframes() == {a, b, c}


def test_covisibles_by_weight():
    m = Map()
    kf = make_kf(m)
    a, b, c = make_kf(m), make_kf(m), make_kf(m)
    kf.add_connection(a, 5)
    kf.add_connection(b, 20)
    kf.add_connection(c, 10)
    assert kf.covisibles_by_weight(8) == [b, c]
    assert kf.covisibles_by_weight(1) == []
    assert make_kf(m).covisibles_by_weight(1) == []


def test_add_connection_updates_weight_and_erase_connection():
    m = Map()
    kf = make_kf(m)
    a, b = make_kf(m), make_kf(m)
    kf.add_connection(a, 5)
    kf.add_connection(b, 10)
    kf.add_connection(a, 30)
    assert kf.covisible_keyframes() == [a, b]
    kf.erase_connection(a)
    assert kf.covisible_keyframes() == [b]
    assert kf.weight(a) == 0
    kf.erase_connection(a)
    assert kf.covisible_keyframes() == [b]


def test_map_point_matches():
    m = Map()
    kf = make_kf(m, n=5)
    other = make_kf(m, n=5)
    p1 = MapPoint([0, 0, 1], kf, m)
    p2 = MapPoint([0, 0, 2], kf, m)
    kf.add_map_point(p1, 0)
    kf.add_map_point(p2, 3)
    assert kf.map_point_at(3) is p2
    assert kf.map_points() == {p1, p2}
    kf.erase_map_point_match(3)
    assert kf.map_point_at(3) is None
    kf.replace_map_point_match(1, p2)
    assert kf.map_point_matches() == [p1, p2, None, None, None]

    p1.add_observation(kf, 0)
    p1.add_observation(other, 0)
    kf.erase_map_point(p1)
    assert kf.map_point_at(0) is None


def test_map_points_skip_bad_and_tracked_count():
    m = Map()
    kf_a = make_kf(m)
    kf_b = make_kf(m)
    points = shared_points(m, kf_a, kf_b, 4)
    assert kf_a.tracked_map_points(0) == 4
    assert kf_a.tracked_map_points(2) == 4
    assert kf_a.tracked_map_points(3) == 0
    points[0].set_bad_flag()
    assert kf_a.map_points() == set(points[1:])
    assert kf_a.tracked_map_points(0) == 3


def test_update_connections_above_threshold():
    m = Map()
    kf_a = make_kf(m)
    kf_b = make_kf(m)
    shared_points(m, kf_a, kf_b, 16)
    kf_a.update_connections()
    assert kf_a.weight(kf_b) == 16
    assert kf_b.weight(kf_a) == 16
    assert kf_a.covisible_keyframes() == [kf_b]
    assert kf_a.parent is kf_b
    assert kf_b.has_child(kf_a)


def test_update_connections_below_threshold_keeps_best():
    m = Map()
    kf_a = make_kf(m)
    kf_b = make_kf(m)
    kf_c = make_kf(m)
    shared_points(m, kf_a, kf_b, 3)
    for i in range(5, 7):
        mp = MapPoint([0, 0, 1], kf_a, m)
        mp.add_observation(kf_a, i)
        mp.add_observation(kf_c, i)
        kf_a.add_map_point(mp, i)
    kf_a.update_connections()
    assert kf_a.covisible_keyframes() == [kf_b]
    assert kf_a.weight(kf_b) == 3
    assert kf_a.weight(kf_c) == 2
    assert kf_c.weight(kf_a) == 0


def test_update_connections_without_points_is_noop():
    m = Map()
    kf = make_kf(m)
    kf.update_connections()
    assert kf.covisible_keyframes() == []
    assert kf.parent is None


def test_set_bad_flag_reassigns_children():
    m = Map()
    root = make_kf(m)
    mid = make_kf(m)
    leaf = make_kf(m)
    mid.change_parent(root)
    leaf.change_parent(mid)
    leaf.add_connection(root, 30)
    root.add_connection(mid, 20)
    mid.add_connection(root, 20)

    mid.set_bad_flag()

    assert mid.is_bad
    assert leaf.parent is root
    assert root.has_child(leaf)
    assert not root.has_child(mid)
    assert root.weight(mid) == 0
    assert mid not in m.all_keyframes()
    assert np.allclose(mid.tcp, mid.pose)


def test_set_bad_flag_orphan_child_goes_to_parent():
    m = Map()
    root = make_kf(m)
    mid = make_kf(m)
    leaf = make_kf(m)
    mid.change_parent(root)
    leaf.change_parent(mid)
    mid.set_bad_flag()
    assert leaf.parent is root
    assert root.children == {leaf}


def test_not_erase_defers_bad_flag():
    m = Map()
    root = make_kf(m)
    kf = make_kf(m)
    kf.change_parent(root)
    kf.set_not_erase()
    kf.set_bad_flag()
    assert not kf.is_bad
    kf.set_erase()
    assert kf.is_bad


def test_loop_edge_prevents_erase():
    m = Map()
    root = make_kf(m)
    kf = make_kf(m)
    kf.change_parent(root)
    kf.add_loop_edge(root)
    kf.set_bad_flag()
    kf.set_erase()
    assert not kf.is_bad
    assert kf.loop_edges == {root}


def test_first_keyframe_never_bad():
    m = Map()
    kf = make_kf(m)
    kf.id = 0
    kf.set_bad_flag()
    assert not kf.is_bad
    assert kf in m.all_keyframes()


def test_features_in_area():
    m = Map()
    keys = [KeyPoint(100.0, 100.0), KeyPoint(105.0, 102.0), KeyPoint(300.0, 300.0)]
    kf = make_kf(m, keys_un=keys)
    assert sorted(kf.features_in_area(100.0, 100.0, 10.0)) == [0, 1]
    assert kf.features_in_area(300.0, 300.0, 1.0) == [2]
    assert kf.features_in_area(500.0, 50.0, 5.0) == []
    assert kf.features_in_area(5000.0, 50.0, 5.0) == []


def test_is_in_image():
    m = Map()
    kf = make_kf(m, min_x=0.0, max_x=640.0, min_y=0.0, max_y=480.0)
    assert kf.is_in_image(0.0, 0.0)
    assert not kf.is_in_image(640.0, 10.0)
    assert not kf.is_in_image(10.0, -1.0)


def test_unproject_stereo_projects_back():
    m = Map()
    k = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
    keys = [KeyPoint(420.0, 200.0), KeyPoint(100.0, 100.0)]
    r = rot_z(0.2)
    t = np.array([0.5, 0.1, -0.3])
    kf = make_kf(m, keys_un=keys, k=k, depth=[2.0, -1.0], tcw=pose(r, t))
    xw = kf.unproject_stereo(0)
    xc = r @ xw + t
    assert xc[2] == pytest.approx(2.0)
    assert 500.0 * xc[0] / xc[2] + 320.0 == pytest.approx(420.0)
    assert 500.0 * xc[1] / xc[2] + 240.0 == pytest.approx(200.0)
    assert kf.unproject_stereo(1) is None


def test_scene_median_depth():
    m = Map()
    kf = make_kf(m, n=4)
    for i, z in enumerate([3.0, 1.0, 2.0]):
        kf.add_map_point(MapPoint([0.0, 0.0, z], kf, m), i)
    assert kf.compute_scene_median_depth(2) == pytest.approx(2.0)
    assert kf.compute_scene_median_depth(1) == pytest.approx(3.0)


def test_scene_median_depth_without_points():
    m = Map()
    kf = make_kf(m, n=3)
    with pytest.raises(ValueError):
        kf.compute_scene_median_depth(2)


def test_frame_data_rejects_mismatched_lengths():
    with pytest.raises(ValueError):
        FrameData(keys_un=make_keys(3), depth=[1.0])


def test_frame_data_scale_pyramid():
    data = FrameData(keys_un=make_keys(2), n_scale_levels=3, scale_factor=2.0)
    kf = KeyFrame(data, Map())
    assert kf.scale_factors == [1.0, 2.0, 4.0]
    assert kf.level_sigma2 == [1.0, 4.0, 16.0]
    assert kf.log_scale_factor == pytest.approx(math.log(2.0))