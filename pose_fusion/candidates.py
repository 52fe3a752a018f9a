"""Per-marker object pose candidates.

Every observation with a pose is turned into the object pose it implies
(marker pose composed with that marker's offset) plus a quality weight.
Unusable observations are skipped and counted by reason.
"""

from __future__ import annotations

import math
from collections import Counter
from typing import Iterable, Optional

import numpy as np

from .adaptive import AdaptiveParameters
from .config import FusionConfig
from .offsets import MarkerOffsetTable
from .transforms import distance, marker_perimeter, pose_to_scene, quat_multiply, quat_normalize, quat_rotate
from .types import MarkerObservation, MarkerSource, PoseCandidate


SOURCE_BOOST = {
    MarkerSource.OPENCV_PNP: 1.12,
    MarkerSource.MIXED: 1.06,
}
OBLIQUE_FREE_ANGLE_DEG = 15.0


def source_boost(source: str) -> float:
    return SOURCE_BOOST.get(source, 1.0)


def temporal_gate_weight(dist: float, sigma: float) -> float:
    sigma = max(1e-4, sigma)
    return math.exp(-(dist * dist) / (2 * sigma * sigma))


def robust_error_weight(pose_error: float, max_pose_error: float) -> float:
    return 1.0 / (1.0 + (pose_error / max(0.01, max_pose_error)) ** 2)


def oblique_weight(angle_deg: float, soft_limit_deg: float, floor: float) -> float:
    span = max(1.0, soft_limit_deg - OBLIQUE_FREE_ANGLE_DEG)
    n = max(0.0, min(1.0, (angle_deg - OBLIQUE_FREE_ANGLE_DEG) / span))
    return max(floor, 1 - n * n * 0.9)


def object_pose_from_marker(obs: MarkerObservation, offsets: MarkerOffsetTable):
    """Object pose implied by one marker, or None for unknown ids."""
    offset = offsets.get(obs.id)
    if offset is None:
        return None
    marker_pos, marker_quat = pose_to_scene(obs.rvec, obs.tvec, obs.source)
    object_quat = quat_normalize(quat_multiply(marker_quat, offset.rotation_offset))
    object_pos = marker_pos - quat_rotate(object_quat, offset.position_offset)
    return object_pos, object_quat


def build_candidates(
    observations: Iterable[MarkerObservation],
    offsets: MarkerOffsetTable,
    cfg: FusionConfig,
    params: AdaptiveParameters,
    reference_position: Optional[np.ndarray] = None,
) -> tuple[list[PoseCandidate], Counter]:
    candidates: list[PoseCandidate] = []
    rejected: Counter = Counter()
    anchor_ids = set(cfg.anchor_ids or [])

    for obs in observations:
        if not obs.has_pose:
            rejected["no_pose"] += 1
            continue
        pose = object_pose_from_marker(obs, offsets)
        if pose is None:
            rejected["unknown_id"] += 1
            continue
        position, quaternion = pose

        perimeter = marker_perimeter(obs.corners)
        if perimeter < cfg.min_marker_perimeter:
            rejected["perimeter"] += 1
            continue

        pose_error = float(obs.pose_error) if obs.pose_error is not None else 0.0
        if pose_error > cfg.max_pose_error_for_fusion:
            rejected["pose_error"] += 1
            continue

        confidence = max(0.01, min(1.0, float(obs.confidence))) if obs.confidence is not None else 0.8
        angle = obs.camera_angle_deg
        angle = max(0.0, min(90.0, float(angle))) if angle is not None and math.isfinite(angle) else 0.0

        if angle > params.oblique_reject_deg:
            rejected["oblique"] += 1
            continue
        if confidence < params.confidence_threshold:
            rejected["confidence"] += 1
            continue

        gate_dist = 0.0
        if reference_position is not None:
            gate_dist = distance(position, reference_position)
            if gate_dist > params.outlier_distance * 2.0:
                rejected["gate"] += 1
                continue

        temporal_w = temporal_gate_weight(gate_dist, params.track_window) if reference_position is not None else 1.0
        anchor_mult = cfg.anchor_boost if obs.id in anchor_ids else 1.0
        weight = (
            (perimeter * perimeter * confidence) / (1 + pose_error * 8)
            * source_boost(obs.source)
            * anchor_mult
            * temporal_w
            * robust_error_weight(pose_error, cfg.max_pose_error_for_fusion)
            * oblique_weight(angle, params.oblique_soft_limit_deg, cfg.oblique_weight_floor)
        )

        candidates.append(PoseCandidate(
            id=obs.id,
            position=position,
            quaternion=quaternion,
            perimeter=perimeter,
            pose_error=pose_error,
            confidence=confidence,
            camera_angle_deg=angle,
            weight=weight,
        ))

    return candidates, rejected
