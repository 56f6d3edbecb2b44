"""The map: the set of keyframes and map points built so far."""

from __future__ import annotations

import threading
from typing import Any

__all__ = ["Map"]


class Map:
    """Holds keyframes and map points in insertion order."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_map_points: list = []
        self._max_keyframe_id = 0
        self.keyframe_origins: list = []
        self.update_lock = threading.RLock()
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, map_point) -> None:
        with self._lock:
            self._map_points[map_point] = None

    def erase_map_point(self, map_point) -> None:
        with self._lock:
            self._map_points.pop(map_point, None)

    def erase_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, map_points) -> None:
        with self._lock:
            self._reference_map_points = list(map_points)

    @property
    def reference_map_points(self) -> list:
        with self._lock:
            return list(self._reference_map_points)

    def all_keyframes(self) -> list:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list:
        with self._lock:
            return list(self._map_points)

    @property
    def keyframe_count(self) -> int:
        with self._lock:
            return len(self._keyframes)

    @property
    def map_point_count(self) -> int:
        with self._lock:
            return len(self._map_points)

    @property
    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points = []
            self.keyframe_origins.clear()