"""World-anchor pose lock.

Once several markers agree on the object pose for a number of consecutive
frames the pose is considered anchored in the world. While anchored the
reference pose only follows the measurements very slowly and serves as a
drift monitor; a large deviation breaks the lock.

States: unlocked -> building (buildup > 0) -> locked -> unlocked.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import numpy as np

from .config import WorldAnchorConfig
from .fusion import max_pairwise_spread
from .transforms import align_sign, distance, lerp, quat_angle_to, quat_slerp
from .types import PoseCandidate, WorldAnchorState


class WorldAnchor:
    def __init__(self, cfg: Optional[WorldAnchorConfig] = None, logger: Optional[logging.Logger] = None):
        self.cfg = cfg or WorldAnchorConfig()
        self.log = logger or logging.getLogger(__name__)
        self.active = False
        self.position: Optional[np.ndarray] = None
        self.quaternion: Optional[np.ndarray] = None
        self.buildup = 0

    @property
    def building(self) -> bool:
        return not self.active and self.buildup > 0

    def reset(self) -> None:
        self.active = False
        self.buildup = 0
        self.position = None
        self.quaternion = None

    def release(self) -> None:
        was_active = self.active
        self.reset()
        if was_active:
            self.log.info("world anchor released")

    def force(self, position: np.ndarray, quaternion: np.ndarray) -> None:
        self.active = True
        self.position = np.array(position, dtype=float)
        self.quaternion = np.array(quaternion, dtype=float)
        self.buildup = self.cfg.buildup_target
        self.log.info("world anchor forced at %s", np.round(self.position, 4).tolist())

    def drift(self, position: np.ndarray, quaternion: np.ndarray) -> tuple[float, float]:
        if self.position is None or self.quaternion is None:
            return 0.0, 0.0
        return distance(self.position, position), quat_angle_to(self.quaternion, quaternion)

    def check_drift(self, position: np.ndarray, quaternion: np.ndarray) -> bool:
        """Break the lock on a large deviation; returns True if it broke."""
        if not self.active:
            return False
        drift_dist, drift_angle = self.drift(position, quaternion)
        if drift_dist > self.cfg.break_distance or drift_angle > self.cfg.break_angle:
            self.reset()
            self.log.info(
                "world anchor unlocked (drift %.3fm / %.1fdeg)",
                drift_dist, math.degrees(drift_angle),
            )
            return True
        return False

    def track(self, position: np.ndarray, quaternion: np.ndarray, pool_size: int) -> None:
        """Slow drift-only correction of the locked reference."""
        if not self.active:
            return
        boost = min(2.0, pool_size / 2.0)
        pos_alpha = self.cfg.correction_alpha * boost
        rot_alpha = self.cfg.rot_correction_alpha * boost
        if self.position is None:
            self.position = np.array(position, dtype=float)
        if self.quaternion is None:
            self.quaternion = np.array(quaternion, dtype=float)
        self.position = lerp(self.position, position, pos_alpha)
        self.quaternion = quat_slerp(self.quaternion, align_sign(quaternion, self.quaternion), rot_alpha)

    def observe(
        self,
        pool: Sequence[PoseCandidate],
        position: np.ndarray,
        quaternion: np.ndarray,
    ) -> bool:
        """Count agreeing frames toward a lock; returns True when the lock engages."""
        if self.active or not self.cfg.enabled:
            return False
        if len(pool) < self.cfg.min_markers:
            self.buildup = max(0, self.buildup - 2)
            return False

        spread = max_pairwise_spread(pool)
        if spread <= self.cfg.max_agree_dist:
            self.buildup += 1
        else:
            self.buildup = max(0, self.buildup - 1)

        if self.buildup >= self.cfg.buildup_target:
            self.active = True
            self.position = np.array(position, dtype=float)
            self.quaternion = np.array(quaternion, dtype=float)
            self.log.info("world anchor locked (%d markers, spread %.3fm)", len(pool), spread)
            return True
        return False

    def state(self) -> WorldAnchorState:
        return WorldAnchorState(
            active=self.active,
            position=None if self.position is None else self.position.copy(),
            quaternion=None if self.quaternion is None else self.quaternion.copy(),
            buildup=self.buildup,
            target=self.cfg.buildup_target,
        )
