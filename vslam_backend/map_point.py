"""Map points: 3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np

__all__ = ["MapPoint", "descriptor_distance"]


def descriptor_distance(a, b) -> int:
    """Hamming distance between two binary (uint8) descriptors."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    if xa.shape != xb.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


class MapPoint:
    """A landmark with its observations, descriptor and scale-invariance range.

    Keyframes are used by duck typing: they provide ``id``, ``frame_id``,
    ``u_right``, ``descriptors``, ``is_bad``, ``camera_center``, ``keys_un``
    (items with ``octave``), ``scale_factors``, ``n_scale_levels``,
    ``erase_map_point_match(index)`` and ``replace_map_point_match(index, point)``.
    """

    _ids = itertools.count()
    _global_lock = threading.Lock()

    def __init__(self, position, reference_keyframe, world_map) -> None:
        self._lock = threading.RLock()
        self._world_pos = np.array(position, dtype=float).reshape(3)
        self._normal = np.zeros(3)
        self._descriptor: np.ndarray | None = None
        self._reference_keyframe = reference_keyframe
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._map = world_map

        self.first_kf_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id

        # Tracking bookkeeping
        self.track_proj_x = 0.0
        self.track_proj_y = 0.0
        self.track_proj_x_right = 0.0
        self.track_in_view = False
        self.track_scale_level = 0
        self.track_view_cos = 0.0
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0

        # Local mapping bookkeeping
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0

        # Loop closing bookkeeping
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.pos_gba: np.ndarray | None = None
        self.ba_global_for_kf = 0

        with world_map.point_creation_lock:
            self.id = next(MapPoint._ids)

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id}, bad={self._bad})"

    @property
    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    def set_world_pos(self, position) -> None:
        with MapPoint._global_lock, self._lock:
            self._world_pos = np.array(position, dtype=float).reshape(3)

    @property
    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    @property
    def reference_keyframe(self):
        with self._lock:
            return self._reference_keyframe

    @property
    def observations(self) -> dict:
        with self._lock:
            return dict(self._observations)

    @property
    def n_observations(self) -> int:
        with self._lock:
            return self._n_obs

    @property
    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    @property
    def replaced(self) -> MapPoint | None:
        with self._lock:
            return self._replaced

    @property
    def found(self) -> int:
        with self._lock:
            return self._found

    @property
    def visible(self) -> int:
        with self._lock:
            return self._visible

    @property
    def descriptor(self) -> np.ndarray | None:
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def add_observation(self, keyframe, index: int) -> None:
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        bad = False
        with self._lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._reference_keyframe is keyframe:
                    self._reference_keyframe = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def index_in_keyframe(self, keyframe) -> int:
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._lock:
            return keyframe in self._observations

    def set_bad_flag(self) -> None:
        with self._lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replace(self, other: MapPoint) -> None:
        """Merge this point into ``other`` and mark this one as bad."""
        if other.id == self.id:
            return
        with self._lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible, found = self._visible, self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def increase_visible(self, n: int = 1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the rest."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.asarray(keyframe.descriptors[index], dtype=np.uint8)
            for keyframe, index in observations.items()
            if not keyframe.is_bad
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=int)
        for i, j in itertools.combinations(range(n), 2):
            distances[i, j] = distances[j, i] = descriptor_distance(
                descriptors[i], descriptors[j]
            )

        median_pos = int(0.5 * (n - 1))
        medians = [int(np.sort(row)[median_pos]) for row in distances]
        best = min(range(n), key=medians.__getitem__)

        with self._lock:
            self._descriptor = descriptors[best].copy()

    def update_normal_and_depth(self) -> None:
        """Recompute mean viewing direction and scale-invariance distances."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            reference = self._reference_keyframe
            position = self._world_pos.copy()
        if not observations:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            direction = position - np.asarray(keyframe.camera_center, dtype=float)
            normal += direction / np.linalg.norm(direction)

        distance = float(
            np.linalg.norm(position - np.asarray(reference.camera_center, dtype=float))
        )
        level = reference.keys_un[observations.get(reference, 0)].octave
        level_scale = reference.scale_factors[level]
        last_scale = reference.scale_factors[reference.n_scale_levels - 1]

        with self._lock:
            self._max_distance = distance * level_scale
            self._min_distance = self._max_distance / last_scale
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(
        self,
        current_distance: float,
        log_scale_factor: float,
        n_levels: int | None = None,
    ) -> int:
        """Predict the pyramid level; clamped to ``[0, n_levels - 1]`` when given."""
        with self._lock:
            ratio = self._max_distance / current_distance
        scale = math.ceil(math.log(ratio) / log_scale_factor)
        if n_levels is None:
            return scale
        return min(max(scale, 0), n_levels - 1)