"""Keyframes: frames kept in the map, linked by covisibility and a spanning tree."""

from __future__ import annotations

import itertools
import math
import threading
from dataclasses import dataclass, field
from typing import Any

import numpy as np

__all__ = ["KeyPoint", "FrameData", "KeyFrame"]

# Minimum number of shared map points for a covisibility edge.
_COVISIBILITY_THRESHOLD = 15


def _round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


@dataclass(frozen=True)
class KeyPoint:
    """An undistorted image feature."""

    x: float
    y: float
    octave: int = 0
    angle: float = -1.0
    size: float = 7.0


@dataclass(eq=False)
class FrameData:
    """Everything a keyframe copies from the frame it is created from."""

    keys_un: list = field(default_factory=list)
    keys: list | None = None
    k: np.ndarray = field(default_factory=lambda: np.eye(3))
    tcw: np.ndarray = field(default_factory=lambda: np.eye(4))
    id: int = 0
    timestamp: float = 0.0
    bf: float = 0.0
    baseline: float = 0.0
    th_depth: float = 0.0
    u_right: list | None = None
    depth: list | None = None
    descriptors: np.ndarray | None = None
    bow_vec: dict = field(default_factory=dict)
    feat_vec: dict = field(default_factory=dict)
    n_scale_levels: int = 8
    scale_factor: float = 1.2
    scale_factors: list | None = None
    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 640.0
    max_y: float = 480.0
    grid_cols: int = 64
    grid_rows: int = 48
    map_points: list | None = None
    grid: list | None = None

    def __post_init__(self) -> None:
        self.keys_un = list(self.keys_un)
        n = len(self.keys_un)
        self.keys = list(self.keys_un if self.keys is None else self.keys)
        self.u_right = [-1.0] * n if self.u_right is None else [float(v) for v in self.u_right]
        self.depth = [-1.0] * n if self.depth is None else [float(v) for v in self.depth]
        if self.descriptors is None:
            self.descriptors = np.zeros((n, 32), dtype=np.uint8)
        else:
            self.descriptors = np.asarray(self.descriptors, dtype=np.uint8)
        self.map_points = [None] * n if self.map_points is None else list(self.map_points)
        if self.scale_factors is None:
            self.scale_factors = [self.scale_factor**i for i in range(self.n_scale_levels)]
        self.k = np.array(self.k, dtype=float).reshape(3, 3)
        self.tcw = np.array(self.tcw, dtype=float).reshape(4, 4)

        lengths = {len(self.keys), len(self.u_right), len(self.depth),
                   len(self.descriptors), len(self.map_points)}
        if lengths != {n}:
            raise ValueError("per-feature sequences must all have one entry per keypoint")
        if self.max_x <= self.min_x or self.max_y <= self.min_y:
            raise ValueError("image bounds are empty")

        if self.grid is None:
            self.grid = self._build_grid()

    @property
    def grid_element_width_inv(self) -> float:
        return self.grid_cols / (self.max_x - self.min_x)

    @property
    def grid_element_height_inv(self) -> float:
        return self.grid_rows / (self.max_y - self.min_y)

    def _build_grid(self) -> list:
        grid = [[[] for _ in range(self.grid_rows)] for _ in range(self.grid_cols)]
        for index, kp in enumerate(self.keys_un):
            px = _round_half_away((kp.x - self.min_x) * self.grid_element_width_inv)
            py = _round_half_away((kp.y - self.min_y) * self.grid_element_height_inv)
            if 0 <= px < self.grid_cols and 0 <= py < self.grid_rows:
                grid[px][py].append(index)
        return grid


class KeyFrame:
    """A keyframe with its pose, features, map point matches and graph links."""

    _ids = itertools.count()

    def __init__(self, data: FrameData, world_map, keyframe_db=None) -> None:
        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self.id = next(KeyFrame._ids)
        self.frame_id = data.id
        self.timestamp = data.timestamp

        self.grid_cols = data.grid_cols
        self.grid_rows = data.grid_rows
        self.grid_element_width_inv = data.grid_element_width_inv
        self.grid_element_height_inv = data.grid_element_height_inv
        self._grid = [[list(cell) for cell in column] for column in data.grid]

        # Bookkeeping used by tracking, local mapping and loop closing
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.tcp: np.ndarray | None = None

        self.k = data.k.copy()
        self.fx = float(self.k[0, 0])
        self.fy = float(self.k[1, 1])
        self.cx = float(self.k[0, 2])
        self.cy = float(self.k[1, 2])
        self.invfx = 1.0 / self.fx
        self.invfy = 1.0 / self.fy
        self.bf = data.bf
        self.baseline = data.baseline
        self.th_depth = data.th_depth

        self.n_features = len(data.keys_un)
        self.keys = list(data.keys)
        self.keys_un = list(data.keys_un)
        self.u_right = list(data.u_right)
        self.depth = list(data.depth)
        self.descriptors = data.descriptors.copy()
        self.bow_vec = dict(data.bow_vec)
        self.feat_vec = dict(data.feat_vec)

        self.n_scale_levels = data.n_scale_levels
        self.scale_factor = data.scale_factor
        self.log_scale_factor = math.log(data.scale_factor)
        self.scale_factors = list(data.scale_factors)
        self.level_sigma2 = [s * s for s in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / s2 for s2 in self.level_sigma2]

        self.min_x = data.min_x
        self.min_y = data.min_y
        self.max_x = data.max_x
        self.max_y = data.max_y

        self._map_points: list = list(data.map_points)
        self._keyframe_db = keyframe_db
        self._map = world_map

        self._connected_weights: dict[Any, int] = {}
        self._ordered_connected: list = []
        self._ordered_weights: list[int] = []

        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: dict[Any, None] = {}
        self._loop_edges: dict[Any, None] = {}

        self._not_erase = False
        self._to_be_erased = False
        self._bad = False
        self._half_baseline = data.baseline / 2

        self.set_pose(data.tcw)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id}, bad={self._bad})"

    # ------------------------------------------------------------------ pose

    def set_pose(self, tcw) -> None:
        tcw = np.array(tcw, dtype=float).reshape(4, 4)
        with self._pose_lock:
            self._tcw = tcw.copy()
            rwc = tcw[:3, :3].T
            self._ow = -rwc @ tcw[:3, 3]
            twc = np.eye(4)
            twc[:3, :3] = rwc
            twc[:3, 3] = self._ow
            self._twc = twc
            self._cw = (twc @ np.array([self._half_baseline, 0.0, 0.0, 1.0]))[:3]

    @property
    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    @property
    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    @property
    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    @property
    def stereo_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._cw.copy()

    @property
    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    @property
    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # ---------------------------------------------------------- covisibility

    def add_connection(self, keyframe: KeyFrame, weight: int) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    @staticmethod
    def _order_by_weight(weights: dict) -> tuple[list, list]:
        pairs = sorted(((w, kf) for kf, w in weights.items()),
                       key=lambda p: (p[0], p[1].id), reverse=True)
        return [kf for _, kf in pairs], [w for w, _ in pairs]

    def update_best_covisibles(self) -> None:
        with self._connections_lock:
            self._ordered_connected, self._ordered_weights = self._order_by_weight(
                self._connected_weights
            )

    def connected_keyframes(self) -> set:
        with self._connections_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list:
        with self._connections_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n: int) -> list:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, weight: int) -> list:
        """Keyframes ahead of the first one whose weight is below ``weight``.

        When no weight is below ``weight`` the result is empty.
        """
        with self._connections_lock:
            cut = next(
                (i for i, w in enumerate(self._ordered_weights) if w < weight), None
            )
            if cut is None:
                return []
            return list(self._ordered_connected[:cut])

    def weight(self, keyframe: KeyFrame) -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # ------------------------------------------------------------ map points

    def add_map_point(self, map_point, index: int) -> None:
        with self._features_lock:
            self._map_points[index] = map_point

    def erase_map_point_match(self, index: int) -> None:
        with self._features_lock:
            self._map_points[index] = None

    def erase_map_point(self, map_point) -> None:
        index = map_point.index_in_keyframe(self)
        if index >= 0:
            with self._features_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index: int, map_point) -> None:
        self._map_points[index] = map_point

    def map_points(self) -> set:
        with self._features_lock:
            return {mp for mp in self._map_points if mp is not None and not mp.is_bad}

    def tracked_map_points(self, min_observations: int) -> int:
        with self._features_lock:
            check = min_observations > 0
            return sum(
                1
                for mp in self._map_points
                if mp is not None
                and not mp.is_bad
                and (not check or mp.n_observations >= min_observations)
            )

    def map_point_matches(self) -> list:
        with self._features_lock:
            return list(self._map_points)

    def map_point_at(self, index: int):
        with self._features_lock:
            return self._map_points[index]

    def update_connections(self) -> None:
        """Rebuild covisibility links from the map points shared with other keyframes."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[Any, int] = {}
        for mp in points:
            if mp is None or mp.is_bad:
                continue
            for keyframe in mp.observations:
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        n_max = 0
        kf_max = None
        selected: dict[Any, int] = {}
        for keyframe, count in counter.items():
            if count > n_max:
                n_max, kf_max = count, keyframe
            if count >= _COVISIBILITY_THRESHOLD:
                selected[keyframe] = count
                keyframe.add_connection(self, count)

        if not selected:
            selected[kf_max] = n_max
            kf_max.add_connection(self, n_max)

        ordered, weights = self._order_by_weight(selected)

        with self._connections_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # ---------------------------------------------------------- spanning tree

    def add_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._parent = keyframe
        keyframe.add_child(self)

    @property
    def children(self) -> set:
        with self._connections_lock:
            return set(self._children)

    @property
    def parent(self) -> KeyFrame | None:
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe: KeyFrame) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    @property
    def loop_edges(self) -> set:
        with self._connections_lock:
            return set(self._loop_edges)

    # ---------------------------------------------------------------- erasing

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove this keyframe from the graph, the map and the database."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for keyframe in connected:
            keyframe.erase_connection(self)

        for mp in list(self._map_points):
            if mp is not None:
                mp.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights = {}
            self._ordered_connected = []
            self._ordered_weights = []

            parent = self._parent
            candidates = {parent.id} if parent is not None else set()

            # Reattach each child to the candidate parent it is most covisible with.
            while self._children:
                best_weight = -1
                best_child = best_parent = None
                for child in sorted(self._children, key=lambda kf: kf.id):
                    if child.is_bad:
                        continue
                    for neighbour in child.covisible_keyframes():
                        if neighbour.id in candidates:
                            w = child.weight(neighbour)
                            if w > best_weight:
                                best_weight = w
                                best_child, best_parent = child, neighbour
                if best_child is None:
                    break
                best_child.change_parent(best_parent)
                candidates.add(best_child.id)
                del self._children[best_child]

            if parent is not None:
                for child in list(self._children):
                    child.change_parent(parent)
                parent.erase_child(self)
                self.tcp = self.pose @ parent.pose_inverse
            self._bad = True

        self._map.erase_keyframe(self)
        if self._keyframe_db is not None:
            self._keyframe_db.erase(self)

    @property
    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            if keyframe not in self._connected_weights:
                return
            del self._connected_weights[keyframe]
        self.update_best_covisibles()

    # ------------------------------------------------------------- geometry

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of keypoints within the square of half side ``r`` around (x, y)."""
        min_cx = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cx >= self.grid_cols:
            return []
        max_cx = min(self.grid_cols - 1,
                     math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cx < 0:
            return []
        min_cy = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cy >= self.grid_rows:
            return []
        max_cy = min(self.grid_rows - 1,
                     math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cy < 0:
            return []

        found = []
        for ix in range(min_cx, max_cx + 1):
            for iy in range(min_cy, max_cy + 1):
                for index in self._grid[ix][iy]:
                    kp = self.keys_un[index]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        found.append(index)
        return found

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, index: int) -> np.ndarray | None:
        """World position of a keypoint with known depth, or None without depth."""
        z = self.depth[index]
        if z <= 0:
            return None
        kp = self.keys[index]
        x3dc = np.array([(kp.x - self.cx) * z * self.invfx,
                         (kp.y - self.cy) * z * self.invfy,
                         z])
        with self._pose_lock:
            return self._twc[:3, :3] @ x3dc + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int) -> float:
        """The depth at position ``(n - 1) // q`` among sorted map point depths."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ mp.world_pos + zcw) for mp in points if mp is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]