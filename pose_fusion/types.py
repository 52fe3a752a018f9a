from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np


def _is_finite_vec3(value: Any) -> bool:
    if value is None:
        return False
    try:
        arr = np.asarray(value, dtype=float)
    except (TypeError, ValueError):
        return False
    return arr.size == 3 and bool(np.all(np.isfinite(arr)))


class MarkerSource:
    POSIT = "posit"
    OPENCV_PNP = "opencv-pnp"
    MIXED = "mixed"


@dataclass(frozen=True)
class MarkerObservation:
    """One detector result for one marker in one frame (camera space)."""
    id: int
    corners: Any  # (4, 2) pixel coordinates
    rvec: Any | None = None
    tvec: Any | None = None  # meters
    pose_error: Optional[float] = None
    confidence: Optional[float] = None
    camera_angle_deg: Optional[float] = None
    source: str = MarkerSource.POSIT

    @property
    def has_pose(self) -> bool:
        return _is_finite_vec3(self.rvec) and _is_finite_vec3(self.tvec)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "MarkerObservation":
        marker_id = int(raw["id"])
        for key in ("rvec", "tvec"):
            value = raw.get(key)
            if value is not None and np.asarray(value, dtype=float).size != 3:
                raise ValueError(f"marker {marker_id}: {key} must have 3 components")
        return cls(
            id=marker_id,
            corners=raw.get("corners") or [],
            rvec=raw.get("rvec"),
            tvec=raw.get("tvec"),
            pose_error=raw.get("poseError", raw.get("pose_error")),
            confidence=raw.get("confidence"),
            camera_angle_deg=raw.get("cameraAngleDeg", raw.get("camera_angle_deg")),
            source=raw.get("source") or MarkerSource.POSIT,
        )


@dataclass
class MarkerOffset:
    position_offset: np.ndarray  # object origin -> marker centre, object frame
    rotation_offset: np.ndarray  # quaternion [x, y, z, w]


@dataclass
class PoseCandidate:
    id: int
    position: np.ndarray
    quaternion: np.ndarray
    perimeter: float
    pose_error: float
    confidence: float
    camera_angle_deg: float
    weight: float


@dataclass
class FusedPose:
    position: np.ndarray
    quaternion: np.ndarray


@dataclass
class WorldAnchorState:
    active: bool = False
    position: Optional[np.ndarray] = None
    quaternion: Optional[np.ndarray] = None
    buildup: int = 0
    target: int = 6

    def as_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "buildup": self.buildup,
            "target": self.target,
            "pos": None if self.position is None else [float(v) for v in self.position],
        }


@dataclass
class FusionStats:
    pool_size: int
    candidate_size: int
    avg_confidence: float
    spread: float
    view_angle_deg: float
    adaptive_track_window: float
    adaptive_outlier_distance: float
    adaptive_confidence_threshold: float
    adaptive_oblique_soft_limit_deg: float
    adaptive_oblique_reject_deg: float
    adaptive_enabled: bool
    anchor_active: bool = False
    pool_ids: list[int] = field(default_factory=list)


@dataclass
class PoseOutput:
    """What the renderer consumes once per tick."""
    is_tracking: bool
    position: Optional[np.ndarray] = None
    quaternion: Optional[np.ndarray] = None
    visible: bool = False
    anchor_active: bool = False
    stats: Optional[FusionStats] = None
