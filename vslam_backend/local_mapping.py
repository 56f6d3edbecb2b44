"""Local mapping: inserts keyframes into the map and culls points and keyframes."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque

__all__ = ["LocalMapping"]

_log = logging.getLogger(__name__)

# A recently created point is dropped if found in fewer than this share of the
# frames where it should have been visible.
_MIN_FOUND_RATIO = 0.25
# Observations needed in other keyframes for a point to count as redundant.
_REDUNDANT_OBSERVATIONS = 3
# Share of redundant points above which a keyframe is culled.
_REDUNDANT_RATIO = 0.9


class LocalMapping:
    """Processes new keyframes and maintains the local part of the map.

    ``loop_closer`` may be set to an object with ``insert_keyframe(keyframe)``;
    processed keyframes are handed to it by :meth:`run`.
    """

    def __init__(self, world_map, monocular) -> None:
        self._map = world_map
        self.monocular = bool(monocular)
        self.loop_closer = None
        self.current_keyframe = None
        self.abort_ba = False

        self._new_keyframes: deque = deque()
        self._recent_points: list = []
        self._new_lock = threading.Lock()

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._accept_lock = threading.Lock()
        self._accept = True

        self._reset_cond = threading.Condition()
        self._reset_requested = False

    @property
    def recent_map_points(self) -> list:
        """Recently added map points still under probation."""
        return list(self._recent_points)

    # -------------------------------------------------------------- main loop

    def run(self, poll_interval: float = 0.003) -> None:
        """Process queued keyframes until a finish is requested."""
        with self._finish_lock:
            self._finished = False

        while True:
            self.set_accept_keyframes(False)

            if self.has_new_keyframes():
                self.process_new_keyframe()
                self.map_point_culling()
                self.abort_ba = False
                if not self.has_new_keyframes() and not self.stop_requested():
                    self.keyframe_culling()
                if self.loop_closer is not None:
                    self.loop_closer.insert_keyframe(self.current_keyframe)
            elif self.stop():
                while self.is_stopped() and not self.check_finish():
                    time.sleep(poll_interval)
                if self.check_finish():
                    break

            self.reset_if_requested()
            self.set_accept_keyframes(True)

            if self.check_finish():
                break
            time.sleep(poll_interval)

        self.set_finish()

    # -------------------------------------------------------------- keyframes

    def insert_keyframe(self, keyframe) -> None:
        with self._new_lock:
            self._new_keyframes.append(keyframe)
            self.abort_ba = True

    def has_new_keyframes(self) -> bool:
        with self._new_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self):
        """Take the oldest queued keyframe, link its points and add it to the map."""
        with self._new_lock:
            if not self._new_keyframes:
                raise RuntimeError("no keyframe is queued")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        for index, mp in enumerate(keyframe.map_point_matches()):
            if mp is None or mp.is_bad:
                continue
            if not mp.is_in_keyframe(keyframe):
                mp.add_observation(keyframe, index)
                mp.update_normal_and_depth()
                mp.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self._recent_points.append(mp)

        keyframe.update_connections()
        self._map.add_keyframe(keyframe)
        return keyframe

    def _require_current(self):
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe has been processed yet")
        return self.current_keyframe

    def map_point_culling(self) -> None:
        """Drop recent map points that are rarely found or weakly observed."""
        current_id = self._require_current().id
        th_obs = 2 if self.monocular else 3

        kept = []
        for mp in self._recent_points:
            if mp.is_bad:
                continue
            age = current_id - mp.first_kf_id
            if mp.found_ratio() < _MIN_FOUND_RATIO:
                mp.set_bad_flag()
            elif age >= 2 and mp.n_observations <= th_obs:
                mp.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(mp)
        self._recent_points = kept

    def keyframe_culling(self) -> None:
        """Mark local keyframes whose points are nearly all seen elsewhere as bad.

        A point is redundant when at least three other keyframes see it at the
        same or a finer scale. Without a monocular camera only close points count.
        """
        for keyframe in self._require_current().covisible_keyframes():
            if keyframe.id == 0:
                continue

            n_points = 0
            n_redundant = 0
            for index, mp in enumerate(keyframe.map_point_matches()):
                if mp is None or mp.is_bad:
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                n_points += 1
                if mp.n_observations <= _REDUNDANT_OBSERVATIONS:
                    continue

                scale_level = keyframe.keys_un[index].octave
                n_obs = 0
                for other, other_index in mp.observations.items():
                    if other is keyframe:
                        continue
                    if other.keys_un[other_index].octave <= scale_level + 1:
                        n_obs += 1
                        if n_obs >= _REDUNDANT_OBSERVATIONS:
                            break
                if n_obs >= _REDUNDANT_OBSERVATIONS:
                    n_redundant += 1

            if n_redundant > _REDUNDANT_RATIO * n_points:
                keyframe.set_bad_flag()

    # ---------------------------------------------------------- stop control

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._new_lock:
            self.abort_ba = True

    def stop(self) -> bool:
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                _log.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, discarding keyframes queued meanwhile."""
        with self._finish_lock:
            if self._finished:
                return
        with self._stop_lock:
            self._stopped = False
            self._stop_requested = False
        with self._new_lock:
            self._new_keyframes.clear()
        _log.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept

    def set_accept_keyframes(self, flag) -> None:
        with self._accept_lock:
            self._accept = bool(flag)

    def set_not_stop(self, flag) -> bool:
        """Forbid or allow stopping; fails if forbidding while already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self.abort_ba = True

    # ------------------------------------------------------- reset and finish

    def request_reset(self) -> None:
        """Ask for a reset and block until the mapping loop has performed it."""
        with self._reset_cond:
            self._reset_requested = True
            while self._reset_requested:
                self._reset_cond.wait(0.003)

    def reset_if_requested(self) -> None:
        with self._reset_cond:
            if self._reset_requested:
                with self._new_lock:
                    self._new_keyframes.clear()
                self._recent_points = []
                self._reset_requested = False
                self._reset_cond.notify_all()

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
        with self._stop_lock:
            self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished