"""Robust multi-candidate fusion.

Pipeline for one detection cycle:
    1. iterative weighted sigma-clipping of candidate positions
    2. tie-break when the clipped pool still disagrees
    3. weighted mean position + sign-aligned weighted quaternion average
"""

from __future__ import annotations

import itertools
import math
from collections import deque
from typing import Optional, Sequence

import numpy as np

from .transforms import align_sign, distance, quat_normalize
from .types import FusedPose, PoseCandidate


def weighted_centroid(pool: Sequence[PoseCandidate]) -> np.ndarray:
    weights = np.array([c.weight for c in pool], dtype=float)
    positions = np.array([c.position for c in pool], dtype=float)
    if weights.sum() <= 0:
        return positions.mean(axis=0)
    return np.average(positions, axis=0, weights=weights)


def weighted_sigma(pool: Sequence[PoseCandidate], centroid: np.ndarray) -> float:
    weights = np.array([c.weight for c in pool], dtype=float)
    d = np.array([distance(c.position, centroid) for c in pool])
    w_sum = weights.sum()
    if w_sum <= 0:
        return float(math.sqrt(np.mean(d * d)))
    return float(math.sqrt(np.sum(weights * d * d) / w_sum))


def robust_pool(
    candidates: Sequence[PoseCandidate],
    agree_dist: float,
    outlier_distance: float,
    passes: int = 2,
) -> list[PoseCandidate]:
    """Drop candidates far from the weighted centroid; never empties the pool."""
    pool = list(candidates)
    for _ in range(passes):
        if len(pool) <= 1:
            break
        centroid = weighted_centroid(pool)
        sigma = weighted_sigma(pool, centroid)
        cutoff = min(outlier_distance, max(agree_dist, sigma * 2.2))
        filtered = [c for c in pool if distance(c.position, centroid) <= cutoff]
        if not filtered:
            break
        if len(filtered) == len(pool):
            break
        pool = filtered
    return pool


def max_pairwise_spread(pool: Sequence[PoseCandidate]) -> float:
    spread = 0.0
    for a, b in itertools.combinations(pool, 2):
        spread = max(spread, distance(a.position, b.position))
    return spread


def resolve_disagreement(pool: Sequence[PoseCandidate], agree_dist: float) -> list[PoseCandidate]:
    """Keep only the heaviest candidate when the survivors still disagree."""
    ranked = sorted(pool, key=lambda c: c.weight, reverse=True)
    if len(ranked) > 1 and max_pairwise_spread(ranked) > agree_dist:
        return ranked[:1]
    return ranked


def fuse_pool(pool: Sequence[PoseCandidate], reference_quat: Optional[np.ndarray] = None) -> FusedPose:
    """
    Weighted fusion of surviving candidates.

    Args:
        pool: Non-empty candidate list, heaviest first
        reference_quat: Orientation used to sign-align quaternions before
            averaging; defaults to the heaviest candidate

    Returns:
        FusedPose with a unit quaternion
    """
    if len(pool) == 1:
        return FusedPose(pool[0].position.copy(), quat_normalize(pool[0].quaternion))

    ref = reference_quat if reference_quat is not None else pool[0].quaternion
    weights = np.array([max(0.0, c.weight) for c in pool], dtype=float)
    if weights.sum() <= 0:
        weights = np.ones(len(pool))

    positions = np.array([c.position for c in pool], dtype=float)
    quats = np.array([align_sign(c.quaternion, ref) for c in pool], dtype=float)
    position = np.average(positions, axis=0, weights=weights)
    quaternion = quat_normalize(np.average(quats, axis=0, weights=weights))
    return FusedPose(position, quaternion)


class PositionHistory:
    """Short FIFO of fused positions; per-axis median once three samples exist.

    For an even count the upper-middle sample is taken, not the mean of the
    two middle ones.
    """

    def __init__(self, size: int = 3):
        self._items: deque = deque(maxlen=max(1, min(15, int(size))))

    @property
    def size(self) -> int:
        return self._items.maxlen or 1

    def resize(self, size: int) -> None:
        self._items = deque(self._items, maxlen=max(1, min(15, int(size))))

    def push(self, position: np.ndarray) -> np.ndarray:
        self._items.append(np.asarray(position, dtype=float).copy())
        if len(self._items) < 3:
            return position
        return np.sort(np.array(self._items), axis=0)[len(self._items) // 2]

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class QualityTracker:
    """Running EMAs of pool confidence, spread and view angle."""

    def __init__(self, decay: float = 0.85, confidence: float = 0.8):
        self.decay = decay
        self.initial_confidence = confidence
        self.confidence = confidence
        self.spread = 0.0
        self.view_angle = 0.0

    def observe(self, pool: Sequence[PoseCandidate], fused_position: np.ndarray) -> None:
        n = max(1, len(pool))
        avg_conf = sum(c.confidence for c in pool) / n
        avg_spread = sum(distance(c.position, fused_position) for c in pool) / n
        avg_angle = sum(c.camera_angle_deg or 0.0 for c in pool) / n
        k = 1.0 - self.decay
        self.confidence = self.confidence * self.decay + avg_conf * k
        self.spread = self.spread * self.decay + avg_spread * k
        self.view_angle = self.view_angle * self.decay + avg_angle * k

    def reset_view_angle(self) -> None:
        self.view_angle = 0.0
