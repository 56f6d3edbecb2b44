"""Inverted-file database of keyframes for loop and relocalization queries."""

from __future__ import annotations

import threading
from typing import Any, Iterable

__all__ = ["KeyFrameDatabase"]

# Fraction of the largest shared-word count a keyframe must exceed to be scored.
_COMMON_WORDS_RATIO = 0.8
# Fraction of the best accumulated score a candidate must exceed to be kept.
_RETAIN_RATIO = 0.75
# Number of covisible neighbours whose scores are accumulated.
_NEIGHBOURS = 10


def _unique_candidates(accumulated: Iterable[tuple[float, Any]], threshold: float) -> list:
    return list(dict.fromkeys(kf for score, kf in accumulated if score > threshold))


class KeyFrameDatabase:
    """Maps vocabulary words to the keyframes whose bag of words contains them.

    The vocabulary supports ``len()`` (number of words) and
    ``score(bow_a, bow_b)``; bags of words are dicts from word id to weight.
    """

    def __init__(self, vocabulary) -> None:
        self._vocabulary = vocabulary
        self._lock = threading.Lock()
        self._inverted: list[list] = [[] for _ in range(len(vocabulary))]

    def add(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted[word].append(keyframe)

    def erase(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted[word]
                try:
                    entries.remove(keyframe)
                except ValueError:
                    pass

    def clear(self) -> None:
        with self._lock:
            self._inverted = [[] for _ in range(len(self._vocabulary))]

    def detect_loop_candidates(self, keyframe, min_score: float) -> list:
        """Keyframes not connected to ``keyframe`` that look like the same place."""
        connected = keyframe.connected_keyframes()
        query_id = keyframe.id
        sharing: list = []

        with self._lock:
            for word in sorted(keyframe.bow_vec):
                for candidate in self._inverted[word]:
                    if candidate.loop_query != query_id:
                        candidate.loop_words = 0
                        if candidate not in connected:
                            candidate.loop_query = query_id
                            sharing.append(candidate)
                    candidate.loop_words += 1

        if not sharing:
            return []

        max_common = max(candidate.loop_words for candidate in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, candidate.bow_vec)
                candidate.loop_score = score
                if score >= min_score:
                    scored.append((score, candidate))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_accumulated = min_score
        for score, candidate in scored:
            best_score = total = score
            best_keyframe = candidate
            for neighbour in candidate.best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.loop_query == query_id and neighbour.loop_words > min_common:
                    total += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_keyframe = neighbour
                        best_score = neighbour.loop_score
            accumulated.append((total, best_keyframe))
            best_accumulated = max(best_accumulated, total)

        return _unique_candidates(accumulated, _RETAIN_RATIO * best_accumulated)

    def detect_relocalization_candidates(self, frame) -> list:
        """Keyframes that look like ``frame`` (which has ``id`` and ``bow_vec``)."""
        query_id = frame.id
        sharing: list = []

        with self._lock:
            for word in sorted(frame.bow_vec):
                for candidate in self._inverted[word]:
                    if candidate.reloc_query != query_id:
                        candidate.reloc_words = 0
                        candidate.reloc_query = query_id
                        sharing.append(candidate)
                    candidate.reloc_words += 1

        if not sharing:
            return []

        max_common = max(candidate.reloc_words for candidate in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, candidate.bow_vec)
                candidate.reloc_score = score
                scored.append((score, candidate))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_accumulated = 0.0
        for score, candidate in scored:
            best_score = total = score
            best_keyframe = candidate
            for neighbour in candidate.best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.reloc_query != query_id:
                    continue
                total += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_keyframe = neighbour
                    best_score = neighbour.reloc_score
            accumulated.append((total, best_keyframe))
            best_accumulated = max(best_accumulated, total)

        return _unique_candidates(accumulated, _RETAIN_RATIO * best_accumulated)