# vslam_backend

Data structures and geometry for the back end of a keyframe-based visual SLAM system, built on numpy.

| Module | What it holds |
| --- | --- |
| `vslam_backend.map_point` | `MapPoint` and `descriptor_distance` |
| `vslam_backend.slam_map` | `Map`, the set of keyframes and map points |
| `vslam_backend.keyframe` | `KeyPoint`, `FrameData` and `KeyFrame` (covisibility graph, spanning tree, loop edges) |
| `vslam_backend.keyframe_database` | `KeyFrameDatabase`, an inverted file for loop and relocalization queries |
| `vslam_backend.two_view_models` | homography and fundamental matrix estimation and scoring |
| `vslam_backend.reconstruction` | triangulation, essential-matrix and homography decomposition, `Reconstruction` |
| `vslam_backend.epipolar` | `skew_symmetric` and `compute_f12` between two keyframes |
| `vslam_backend.initializer` | `Initializer`, two-view monocular initialization by RANSAC |
| `vslam_backend.local_mapping` | `LocalMapping`, keyframe queue, point and keyframe culling, stop/reset/finish control |

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Keyframes

A `KeyFrame` is built from a `FrameData` record. The record holds these fields:

- `keys_un`, a list of `KeyPoint(x, y, octave=0, angle=-1.0, size=7.0)`.
- Optional `keys`, `u_right`, `depth`, `descriptors` (uint8 rows) and `map_points`. Missing values get defaults: distorted keys equal to `keys_un`, no stereo (`-1`), zero descriptors and no matches.
- The calibration `k` and the pose `tcw` (4x4, world to camera).
- The scale pyramid: `n_scale_levels`, `scale_factor` and optional `scale_factors`.
- The image bounds and the feature grid size.

The grid is built from the keypoints unless one is given. `FrameData` raises `ValueError` in two cases: when the per-feature sequences differ in length, and when the image bounds are empty.

```python
import numpy as np
from vslam_backend.keyframe import FrameData, KeyFrame, KeyPoint
from vslam_backend.slam_map import Map

world = Map()
data = FrameData(
    keys_un=[KeyPoint(100.0, 120.0), KeyPoint(300.0, 200.0, octave=1)],
    k=np.array([[500.0, 0, 320], [0, 500.0, 240], [0, 0, 1]]),
)
kf = KeyFrame(data, world)            # a KeyFrameDatabase may be passed third
world.add_keyframe(kf)

kf.pose, kf.pose_inverse, kf.camera_center, kf.rotation, kf.translation
kf.features_in_area(100.0, 120.0, 5.0)   # -> [0]
kf.is_in_image(700.0, 10.0)              # -> False
```

The covisibility graph works as follows:

- `update_connections()` counts the map points this keyframe shares with every other keyframe. Every keyframe sharing at least 15 is linked both ways. If none reaches 15, only the keyframe that shares the most is linked.
- The first time the keyframe gets links, its best covisible keyframe becomes its parent in the spanning tree. Keyframe id 0 gets no parent.
- `covisible_keyframes()` and `best_covisibility_keyframes(n)` list neighbours by decreasing weight. `covisibles_by_weight(w)` and `weight(kf)` also read the weights.
- `set_bad_flag()` takes the keyframe out of the graph and reattaches its children. It also removes the keyframe from its map points, the `Map` and the database. Keyframe id 0 is never removed. A keyframe protected by `set_not_erase()` or a loop edge is only marked to be erased; it is removed when `set_erase()` is called once nothing protects it.
- `unproject_stereo(i)` gives the world point of a keypoint with positive depth, or `None`.
- `compute_scene_median_depth(q)` raises `ValueError` when the keyframe has no map points.

## Map points

```python
from vslam_backend.map_point import MapPoint, descriptor_distance

point = MapPoint(np.array([0.0, 0.0, 5.0]), kf, world)
world.add_map_point(point)
kf.add_map_point(point, 0)
point.add_observation(kf, 0)
point.update_normal_and_depth()
point.compute_distinctive_descriptors()
point.predict_scale(4.2, np.log(1.2), 8)   # level clamped to [0, 7]
```

`add_observation` counts a stereo observation (`u_right >= 0`) twice.

When `erase_observation` leaves two counted observations or fewer, the point is marked bad. A bad point is dropped from its keyframes and from the map.

`replace(other)` moves the point's observations and its visible and found counters over to `other`.

`descriptor_distance(a, b)` is the Hamming distance between two byte-array descriptors. It raises `ValueError` when the descriptors differ in length.

## Place recognition

```python
from vslam_backend.keyframe_database import KeyFrameDatabase

database = KeyFrameDatabase(vocabulary)
database.add(kf)
loops = database.detect_loop_candidates(kf, min_score=0.05)
relocs = database.detect_relocalization_candidates(frame)
```

The `vocabulary` object must provide two things:

- `len(vocabulary)`, the number of words.
- `score(bow_a, bow_b)`, the similarity of two bags of words.

A bag of words is a dict from an integer word id below `len(vocabulary)` to a weight. For relocalization, `frame` is any object with an `id` and a `bow_vec`.

Both queries work the same way:

1. Collect the keyframes that share words with the query.
2. Score those sharing more than 80% of the largest shared-word count.
3. Add up each candidate's score with the scores of up to 10 of its best covisible keyframes.
4. Return the candidates above 75% of the best total.

Loop queries also skip keyframes already connected to the query keyframe, and drop scores below `min_score`.

## Two-view geometry and initialization

```python
from vslam_backend.two_view_models import normalize, compute_h21, compute_f21
from vslam_backend.reconstruction import triangulate, decompose_essential, check_rt
from vslam_backend.epipolar import skew_symmetric, compute_f12
from vslam_backend.initializer import Initializer

init = Initializer(reference_keys, K, sigma=1.0, iterations=200)
result = init.initialize(current_keys, matches12)
if result is not None:
    print(result.rotation, result.translation, result.parallax)
```

The geometry functions:

- `normalize(keypoints)` returns the normalized points and the transform `T`, where `T @ [x, y, 1]` gives the normalized point.
- `compute_h21` needs at least 4 correspondences. `compute_f21` needs at least 8 and returns a rank-2 matrix.
- `check_homography` and `check_fundamental` return `(score, inliers)` using chi-square thresholds.
- `reconstruct_f` and `reconstruct_h` return a `Reconstruction`, or `None` when the solution is ambiguous or has too little parallax.

How `Initializer` works:

- `matches12[i]` is the index in `current_keys` matched to reference keypoint `i`, or `-1` when there is none. Fewer than 8 matches raises `ValueError`.
- It samples its minimal sets from a random generator seeded with 0, so a given input always gives the same result.
- It runs homography and fundamental RANSAC in two threads. It uses the homography when that model's share of the total score is above 0.40, and the fundamental matrix otherwise.
- The result is a `Reconstruction` with these fields:
  - `rotation`
  - `translation` (unit length)
  - `points` (one row per reference keypoint)
  - `triangulated` (flags)
  - `parallax` (degrees)

## Local mapping

```python
from vslam_backend.local_mapping import LocalMapping

mapper = LocalMapping(world, monocular=True)
mapper.insert_keyframe(kf)
while mapper.has_new_keyframes():
    mapper.process_new_keyframe()
    mapper.map_point_culling()
    mapper.keyframe_culling()
```

What the steps do:

- `process_new_keyframe()` links the keyframe's map points, updates its connections and adds it to the map. It raises `RuntimeError` when the queue is empty. `map_point_culling()` and `keyframe_culling()` also raise `RuntimeError` if no keyframe has been processed yet.
- `map_point_culling()` drops a recent point in three cases:
  - it is found in fewer than 25% of the frames where it should be visible;
  - two keyframes after its creation, it has too few observations (2 for monocular, 3 otherwise);
  - three keyframes after its creation, it leaves probation.
- `keyframe_culling()` marks a covisible keyframe as bad when more than 90% of its points are seen by at least three other keyframes at the same or a finer scale. Without a monocular camera, only points closer than `th_depth` count.

`run(poll_interval=0.003)` loops over these steps in the calling thread until `request_finish()` is called. It also serves `request_stop()`, `release()`, `request_reset()` and `set_not_stop()`. If `loop_closer` is set, each processed keyframe is passed to its `insert_keyframe`. Stop and release events are logged through `logging`.

## What this package does not do

The package takes keypoints, descriptors, bags of words and poses as given. It does not do any of the following:

- Detect or describe image features.
- Match features between frames or keyframes.
- Build a vocabulary.
- Track a camera.
- Run bundle adjustment or pose-graph optimization.
- Correct loops.
- Draw the map.

`LocalMapping` therefore does not triangulate new points between neighbouring keyframes and does not fuse duplicate points. Map points are held in memory only; nothing is saved or loaded. There is no command-line program.