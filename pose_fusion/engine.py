from __future__ import annotations

import logging
import math
import time
from collections import Counter, deque
from dataclasses import replace
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from .adaptive import AdaptiveParameters, aggregate_noise, compute_adaptive_parameters
from .anchor import WorldAnchor
from .candidates import build_candidates
from .config import FusionConfig, apply_preset as apply_config_preset
from .filters import KalmanFilter3D, PredictivePositionFilter, QuaternionEKF, QuaternionFilter
from .fusion import PositionHistory, QualityTracker, fuse_pool, resolve_disagreement, robust_pool
from .logging_utils import setup_logger
from .offsets import MarkerOffsetTable
from .store import SettingsStore
from .transforms import align_sign, clamp_length, distance, lerp, marker_perimeter, quat_angle_to, quat_slerp
from .types import FusionStats, MarkerObservation, PoseCandidate, PoseOutput, WorldAnchorState


ANCHOR_IDS_STORAGE_KEY = "anchor_ids"
MARKER_HISTORY_SIZE = 20
MIN_MEASUREMENT_DT = 1.0 / 240.0


class PoseFusionEngine:
    """
    Per-session marker pose fusion.

    Call ``update`` once per detection cycle with that frame's marker
    observations (possibly empty) and ``render`` once per display tick. The
    engine keeps the smoothed object pose, the world-anchor lock and the
    lost-tracking hysteresis between calls.

    Args:
        config: Fusion configuration; a default one is used when omitted
        logger: Logger for state changes; defaults to ``setup_logger(session_name)``
        store: Optional settings store for marker offsets and anchor ids
    """

    def __init__(
        self,
        config: Optional[FusionConfig] = None,
        logger: Optional[logging.Logger] = None,
        store: Optional[SettingsStore] = None,
    ):
        self.config = config or FusionConfig()
        self.logger = logger or setup_logger(self.config.session_name)
        self.store = store

        self.offsets = MarkerOffsetTable(self.config.marker_layout, store)
        if self.config.marker_offsets:
            self.offsets.set_overrides(self.config.marker_offsets, persist=False)
        self.offsets.load()

        self.anchor = WorldAnchor(self.config.world_anchor, self.logger)
        self.history = PositionHistory(self.config.position_history_size)
        self.quality = QualityTracker()
        self._marker_history: deque = deque(maxlen=MARKER_HISTORY_SIZE)
        self._last_raw: list[MarkerObservation] = []
        self._build_filters()
        self._load_anchor_ids()

        self.is_tracking = False
        self.visible = False
        self.has_first_pose = False
        self.position: Optional[np.ndarray] = None
        self.quaternion: Optional[np.ndarray] = None
        self.display_position: Optional[np.ndarray] = None
        self.display_quaternion: Optional[np.ndarray] = None

        self.frames_without_detection = 0
        self.last_tracking_time: Optional[float] = None
        self.last_measurement_time: Optional[float] = None
        self.last_render_time: Optional[float] = None
        self._measured_since_render = False
        self.stats: Optional[FusionStats] = None
        self.last_rejected: Counter = Counter()

    def _build_filters(self) -> None:
        fcfg = self.config.filter
        self.position_filter = PredictivePositionFilter(
            responsiveness=fcfg.responsiveness,
            velocity_smoothing=fcfg.velocity_smoothing,
            prediction_factor=fcfg.prediction_factor,
            max_velocity=fcfg.max_velocity,
            max_prediction_dt=fcfg.max_prediction_dt,
            max_prediction_step=fcfg.max_prediction_step,
            velocity_damping=fcfg.velocity_damping,
            position_deadband=fcfg.position_deadband,
        )
        self.kalman = KalmanFilter3D()
        self.rotation_filter = QuaternionFilter(time_constant=fcfg.rotation_time_constant)
        self.ekf = QuaternionEKF()
        self.render_rotation = QuaternionFilter(time_constant=self.config.render_pose_tau)

    # ------------------------------------------------------------------
    # detection path

    def update(self, observations: Iterable[MarkerObservation], now: Optional[float] = None) -> PoseOutput:
        """Feed one detection cycle; returns the smoothed pose after it."""
        now = time.monotonic() if now is None else float(now)
        observations = list(observations)
        self._last_raw = observations
        self._record_history(observations)

        if not observations or not self._apply_tracked_pose(observations, now):
            self._handle_tracking_lost(now)
        return self.output()

    def _record_history(self, observations: Sequence[MarkerObservation]) -> None:
        frame = {}
        for obs in observations:
            if not obs.has_pose:
                continue
            frame[obs.id] = (marker_perimeter(obs.corners), float(obs.pose_error or 0.0))
        self._marker_history.append(frame)

    def _measurement_dt(self, now: float) -> float:
        if self.last_measurement_time is None:
            return 1.0 / max(1.0, self.config.detection_fps)
        return max(MIN_MEASUREMENT_DT, now - self.last_measurement_time)

    def _apply_tracked_pose(self, observations: Sequence[MarkerObservation], now: float) -> bool:
        cfg = self.config
        dt = self._measurement_dt(now)

        noise = aggregate_noise(self.quality.confidence, self.quality.spread, self.quality.view_angle)
        params = compute_adaptive_parameters(cfg, noise, self.quality.view_angle)

        reference = None
        if self.has_first_pose:
            reference = self.anchor.position if self.anchor.active and self.anchor.position is not None else self.position

        candidates, rejected = build_candidates(observations, self.offsets, cfg, params, reference)
        self.last_rejected = rejected
        if not candidates:
            self.logger.debug("no usable candidates (%s)", dict(rejected))
            return False

        if cfg.fusion_enabled:
            pool = robust_pool(candidates, cfg.fusion_agree_dist, params.outlier_distance)
            pool = resolve_disagreement(pool, cfg.fusion_agree_dist)
        else:
            pool = [max(candidates, key=lambda c: c.weight)]

        fused = fuse_pool(pool, self.quaternion if self.has_first_pose else None)
        fused_pos = self.history.push(fused.position)
        fused_quat = fused.quaternion
        self.quality.observe(pool, fused_pos)

        if self.has_first_pose and len(pool) < 2 and not cfg.single_marker_mode:
            jump = distance(self.position, fused_pos)
            if jump > cfg.single_marker_max_jump:
                self.logger.debug("single-marker jump rejected (%.3fm)", jump)
                return False

        if not self.is_tracking and self.last_tracking_time is not None:
            self.logger.info("tracking regained (%d markers)", len(pool))

        self.last_measurement_time = now
        self.last_tracking_time = now
        self.frames_without_detection = 0

        if not self.has_first_pose:
            final_pos, final_quat = fused_pos.copy(), fused_quat.copy()
            self.has_first_pose = True
            self.anchor.reset()
            self._reset_filters(final_pos, final_quat)
            self.logger.info("first pose acquired (%d markers)", len(pool))
        else:
            if self.anchor.active and not self.anchor.check_drift(fused_pos, fused_quat):
                self.anchor.track(fused_pos, fused_quat, len(pool))
            final_pos, final_quat = self._smooth(fused_pos, fused_quat, pool, dt, params)
            final_pos, final_quat = self._apply_filters(final_pos, final_quat, dt)

        self.anchor.observe(pool, fused_pos, fused_quat)

        self.position = final_pos
        self.quaternion = final_quat
        if not self.visible or self.display_position is None:
            self.display_position = final_pos.copy()
            self.display_quaternion = final_quat.copy()
            self.render_rotation.reset(final_quat)
        self.is_tracking = True
        self.visible = True
        self._measured_since_render = True
        self.stats = self._build_stats(pool, candidates, params)
        self.logger.debug(
            "pool=%d/%d spread=%.3f conf=%.2f anchor=%s",
            len(pool), len(candidates), self.quality.spread, self.quality.confidence, self.anchor.active,
        )
        return True

    def _smooth(
        self,
        fused_pos: np.ndarray,
        fused_quat: np.ndarray,
        pool: Sequence[PoseCandidate],
        dt: float,
        params: AdaptiveParameters,
    ) -> tuple[np.ndarray, np.ndarray]:
        cfg = self.config
        acfg = cfg.world_anchor
        prev_pos = self.position
        prev_quat = self.quaternion
        n = len(pool)
        fused_quat = align_sign(fused_quat, prev_quat)

        pos_delta = distance(prev_pos, fused_pos)
        rot_delta = quat_angle_to(prev_quat, fused_quat)
        if pos_delta < cfg.tracking_pos_deadband:
            fused_pos = prev_pos.copy()
        if rot_delta < cfg.tracking_rot_deadband:
            fused_quat = prev_quat.copy()

        motion_boost = max(min(1.0, pos_delta / 0.06), min(1.0, rot_delta / (math.pi / 10)))
        marker_count_factor = min(1.0, 0.4 + n * 0.15)
        pos_alpha = min(0.55, 0.12 + marker_count_factor * 0.15 + motion_boost * 0.28)
        rot_alpha = min(0.65, 0.10 + marker_count_factor * 0.15 + motion_boost * 0.35)

        spread_n = min(1.4, self.quality.spread / 0.05)
        conf_n = max(0.0, 1.0 - self.quality.confidence)
        noise_level = min(1.6, spread_n * 0.65 + conf_n * 1.05)
        noise_damp = max(0.28, 1.0 - noise_level * 0.48)
        pos_alpha *= noise_damp
        rot_alpha *= max(0.30, noise_damp * 0.96)

        low_trust = (
            n <= 1
            or self.quality.confidence < cfg.low_trust_confidence_threshold
            or self.quality.spread > cfg.low_trust_spread_threshold
            or self.quality.view_angle > params.oblique_soft_limit_deg
        )
        if low_trust:
            safe_dt = max(1e-4, dt)
            fused_pos = prev_pos + clamp_length(fused_pos - prev_pos, cfg.max_trusted_linear_rate * safe_dt)
            max_angle = cfg.max_trusted_angular_rate * safe_dt
            if rot_delta > max_angle > 0:
                fused_quat = quat_slerp(prev_quat, fused_quat, max_angle / rot_delta)
            linear_rate = pos_delta / safe_dt
            angular_rate = rot_delta / safe_dt
            shock = min(1.5, (linear_rate / 2.5) * 0.55 + (angular_rate / 4.0) * 0.65)
            shock_damp = max(0.22, 1.0 - shock * 0.42)
            pos_alpha *= shock_damp
            rot_alpha *= max(0.24, shock_damp * 0.95)

        if n == 1:
            pos_alpha *= 0.75
            rot_alpha *= 0.80

        locked = self.anchor.active
        if locked:
            pos_alpha *= 0.45
            rot_alpha *= 0.48
            if pos_delta < acfg.hold_pos_eps:
                fused_pos = prev_pos.copy()
            if rot_delta < acfg.hold_rot_eps:
                fused_quat = prev_quat.copy()
            if n < 2:
                pos_alpha = min(pos_alpha, acfg.single_marker_pos_alpha)
                rot_alpha = min(rot_alpha, acfg.single_marker_rot_alpha)

        fast_pos = cfg.fast_reposition_pos_delta
        fast_rot = cfg.fast_reposition_rot_delta
        fast_reposition = (n >= 2 and (pos_delta > fast_pos or rot_delta > fast_rot)) or (
            locked and (pos_delta > fast_pos * 1.35 or rot_delta > fast_rot * 1.35)
        )
        if fast_reposition:
            pos_alpha = max(pos_alpha, min(0.78, pos_alpha * 2.2 + 0.09))
            rot_alpha = max(rot_alpha, min(0.82, rot_alpha * 2.0 + 0.08))
            ratio = cfg.fast_reposition_unlock_ratio
            if locked and (
                pos_delta > acfg.break_distance * ratio or rot_delta > acfg.break_angle * ratio
            ):
                self.anchor.reset()
                self.logger.info("world anchor unlocked by fast reposition (%.3fm)", pos_delta)

        final_pos = prev_pos + clamp_length(lerp(prev_pos, fused_pos, pos_alpha) - prev_pos, cfg.max_position_jump)
        final_quat = quat_slerp(prev_quat, fused_quat, rot_alpha)
        return final_pos, final_quat

    def _reset_filters(self, position: np.ndarray, quaternion: np.ndarray) -> None:
        self.position_filter.reset(position)
        self.kalman.set_state(position)
        self.rotation_filter.reset(quaternion)
        self.ekf.set_state(quaternion)

    def _apply_filters(self, position: np.ndarray, quaternion: np.ndarray, dt: float):
        mode = self.config.position_filter_mode
        confidence = self.quality.confidence
        if mode == "predictive":
            position = self.position_filter.update(position, dt, confidence).copy()
            quaternion = self.rotation_filter.update(quaternion, dt, confidence).copy()
        elif mode == "kalman":
            position = self.kalman.update(position)
            quaternion = self.rotation_filter.update(quaternion, dt, confidence).copy()
        if self.config.use_quaternion_ekf:
            self.ekf.predict(np.zeros(3), dt)
            quaternion = self.ekf.update(align_sign(quaternion, self.ekf.q)).copy()
        return position, quaternion

    def _handle_tracking_lost(self, now: float) -> None:
        self.frames_without_detection += 1
        if self.stats is not None:
            self.stats = replace(self.stats, pool_size=0, candidate_size=0, pool_ids=[])
        if self.last_tracking_time is not None and now - self.last_tracking_time < self.config.tracking_timeout:
            # Hysteresis: hold the pose, but hide a locked pose rather than freeze it
            if self.anchor.active and self.frames_without_detection > 1:
                self.is_tracking = False
                self.visible = False
            return

        if self.is_tracking or self.has_first_pose:
            self.logger.info("tracking lost after %d empty frames", self.frames_without_detection)
        self.anchor.reset()
        self.history.clear()
        self.quality.reset_view_angle()
        self.position = None
        self.quaternion = None
        self.display_position = None
        self.display_quaternion = None
        self.last_render_time = None
        self.last_measurement_time = None
        self.is_tracking = False
        self.visible = False
        self.has_first_pose = False
        self.stats = None

    # ------------------------------------------------------------------
    # display path

    def render(self, now: Optional[float] = None) -> PoseOutput:
        """Advance the displayed pose toward the smoothed pose by one display tick."""
        now = time.monotonic() if now is None else float(now)
        if not self.visible or self.position is None or self.display_position is None:
            self.last_render_time = now
            return self.output(display=True)

        dt = 1.0 / 60.0 if self.last_render_time is None else max(1e-4, now - self.last_render_time)
        self.last_render_time = now

        target = self.position
        if self.config.position_filter_mode == "predictive" and not self._measured_since_render:
            predicted = self.position_filter.predict(dt)
            if predicted is not None:
                target = predicted
        self._measured_since_render = False

        tau = self.config.render_pose_tau_locked if self.anchor.active else self.config.render_pose_tau
        alpha = min(1.0, 1.0 - math.exp(-dt / max(1e-4, tau)))
        self.display_position = lerp(self.display_position, target, alpha)
        self.render_rotation.time_constant = tau
        self.display_quaternion = self.render_rotation.update(self.quaternion, dt).copy()
        return self.output(display=True)

    def output(self, display: bool = False) -> PoseOutput:
        position = self.display_position if display else self.position
        quaternion = self.display_quaternion if display else self.quaternion
        return PoseOutput(
            is_tracking=self.is_tracking,
            position=None if position is None else position.copy(),
            quaternion=None if quaternion is None else quaternion.copy(),
            visible=self.visible,
            anchor_active=self.anchor.active,
            stats=self.stats,
        )

    # ------------------------------------------------------------------
    # telemetry

    def _build_stats(
        self,
        pool: Sequence[PoseCandidate],
        candidates: Sequence[PoseCandidate],
        params: AdaptiveParameters,
    ) -> FusionStats:
        return FusionStats(
            pool_size=len(pool),
            candidate_size=len(candidates),
            avg_confidence=self.quality.confidence,
            spread=self.quality.spread,
            view_angle_deg=self.quality.view_angle,
            adaptive_track_window=params.track_window,
            adaptive_outlier_distance=params.outlier_distance,
            adaptive_confidence_threshold=params.confidence_threshold,
            adaptive_oblique_soft_limit_deg=params.oblique_soft_limit_deg,
            adaptive_oblique_reject_deg=params.oblique_reject_deg,
            adaptive_enabled=self.config.adaptive_tuning_enabled,
            anchor_active=self.anchor.active,
            pool_ids=[c.id for c in pool],
        )

    def hud_lines(self) -> list[str]:
        s = self.stats
        if s is None:
            return [f"tracking: {'yes' if self.is_tracking else 'no'}"]
        anchor = self.anchor.state()
        return [
            f"tracking: {'yes' if self.is_tracking else 'no'}  markers: {s.pool_size}/{s.candidate_size} {s.pool_ids}",
            f"conf: {s.avg_confidence:.2f}  spread: {s.spread * 100:.1f}cm  view: {s.view_angle_deg:.0f}deg",
            f"window: {s.adaptive_track_window:.2f}m  outlier: {s.adaptive_outlier_distance:.2f}m"
            f"  conf>= {s.adaptive_confidence_threshold:.2f}{'  (adaptive)' if s.adaptive_enabled else ''}",
            f"anchor: {'locked' if anchor.active else f'{anchor.buildup}/{anchor.target}'}",
        ]

    def last_raw_markers(self) -> list[dict[str, Any]]:
        out = []
        for obs in self._last_raw:
            tvec = None if obs.tvec is None else [float(v) for v in np.asarray(obs.tvec, dtype=float).reshape(-1)]
            out.append({
                "id": obs.id,
                "rvec": None if obs.rvec is None else [float(v) for v in np.asarray(obs.rvec, dtype=float).reshape(-1)],
                "tvec": tvec,
                "pose_error": obs.pose_error,
                "distance": None if tvec is None else float(np.linalg.norm(tvec)),
            })
        return out

    def fused_distance(self) -> Optional[float]:
        """Camera-to-object distance of the smoothed pose, in meters."""
        if self.position is None:
            return None
        return float(np.linalg.norm(self.position))

    # ------------------------------------------------------------------
    # world anchor

    def world_anchor_state(self) -> WorldAnchorState:
        return self.anchor.state()

    def force_world_anchor_lock(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else float(now)
        fresh = (
            self.is_tracking
            and self.position is not None
            and self.last_tracking_time is not None
            and now - self.last_tracking_time < self.config.tracking_timeout
        )
        if not fresh:
            self.logger.warning("world anchor lock refused: no fresh pose")
            return False
        self.anchor.force(self.position, self.quaternion)
        return True

    def release_world_anchor(self) -> None:
        self.anchor.release()

    # ------------------------------------------------------------------
    # anchor ids

    def _load_anchor_ids(self) -> None:
        if self.store is None:
            return
        try:
            parsed = self.store.get_json(ANCHOR_IDS_STORAGE_KEY)
        except ValueError as exc:
            self.logger.warning("ignoring unreadable persisted anchor ids: %s", exc)
            return
        if isinstance(parsed, list):
            self.set_anchor_ids(parsed, persist=False)

    def set_anchor_ids(self, ids: Optional[Iterable[int]], persist: bool = False) -> None:
        self.config.anchor_ids = None if ids is None else [int(i) for i in ids]
        if persist and self.store is not None:
            if self.config.anchor_ids is None:
                self.store.remove(ANCHOR_IDS_STORAGE_KEY)
            else:
                self.store.set_json(ANCHOR_IDS_STORAGE_KEY, self.config.anchor_ids)
        self.logger.info("anchor ids: %s", self.config.anchor_ids)

    def set_anchor_boost(self, boost: float) -> None:
        self.config.anchor_boost = max(1.0, float(boost))
        self.logger.info("anchor boost %.2f", self.config.anchor_boost)

    def auto_select_anchor(self, persist: bool = True, min_presence: float = 0.25) -> Optional[int]:
        """
        Pick the most stable marker of the recent history as anchor.

        Score is ``presence * ln(1 + mean perimeter) / (1 + 5 * mean pose error)``
        over markers seen in at least ``min_presence`` of the frames (and at
        least twice). Without history the largest marker of the last frame wins.
        """
        frames = [f for f in self._marker_history if f]
        if not frames:
            posed = [o for o in self._last_raw if o.has_pose]
            if not posed:
                self.logger.warning("anchor auto-select: no candidate")
                return None
            best = max(posed, key=lambda o: (marker_perimeter(o.corners), -(o.pose_error or 0.0)))
            self.set_anchor_ids([best.id], persist=persist)
            return best.id

        counts: Counter = Counter()
        sum_perim: Counter = Counter()
        sum_err: Counter = Counter()
        for frame in frames:
            for mid, (perim, err) in frame.items():
                counts[mid] += 1
                sum_perim[mid] += perim
                sum_err[mid] += err

        best_id, best_score = None, -math.inf
        for mid, cnt in counts.items():
            presence = cnt / len(frames)
            if presence < min_presence or cnt < 2:
                continue
            score = presence * math.log(1 + sum_perim[mid] / cnt) / (1 + (sum_err[mid] / cnt) * 5)
            if score > best_score:
                best_id, best_score = mid, score

        if best_id is None:
            self.logger.warning("anchor auto-select: no stable candidate")
            return None
        self.set_anchor_ids([best_id], persist=persist)
        return best_id

    # ------------------------------------------------------------------
    # marker offsets

    def set_marker_offsets(self, mapping: dict[Any, dict[str, Any]], persist: bool = True) -> None:
        self.offsets.set_overrides(mapping, persist=persist)

    def get_marker_offsets(self) -> dict[int, dict[str, list[float]]]:
        return self.offsets.to_dict()

    def clear_marker_offset(self, marker_id: int, persist: bool = True) -> None:
        self.offsets.clear_override(marker_id, persist=persist)

    # ------------------------------------------------------------------
    # parameter setters

    def apply_preset(self, name: str) -> bool:
        if not apply_config_preset(self.config, name):
            return False
        self.history.resize(self.config.position_history_size)
        self._build_filters()
        if self.position is not None:
            self._reset_filters(self.position, self.quaternion)
        self.logger.info("stability preset %s applied", name)
        return True

    def set_outlier_distance(self, meters: float) -> None:
        self.config.marker_outlier_distance = max(0.05, float(meters))
        self.logger.info("outlier distance %.3fm", self.config.marker_outlier_distance)

    def set_confidence_threshold(self, value: float) -> None:
        self.config.marker_confidence_threshold = max(0.0, min(1.0, float(value)))
        self.logger.info("confidence threshold %.2f", self.config.marker_confidence_threshold)

    def set_adaptive_tuning(self, enabled: bool) -> None:
        self.config.adaptive_tuning_enabled = bool(enabled)
        self.logger.info("adaptive tuning %s", "on" if enabled else "off")

    def set_min_marker_perimeter(self, pixels: float) -> None:
        self.config.min_marker_perimeter = max(0.0, float(pixels))
        self.logger.info("min marker perimeter %.0fpx", self.config.min_marker_perimeter)

    def set_max_position_jump(self, meters: float) -> None:
        self.config.max_position_jump = max(0.01, float(meters))
        self.logger.info("max position jump %.3fm", self.config.max_position_jump)

    def set_position_history_size(self, size: int) -> None:
        self.config.position_history_size = max(1, min(15, int(size)))
        self.history.resize(self.config.position_history_size)
        self.logger.info("position history size %d", self.config.position_history_size)

    def set_filter_params(self, **params: Any) -> None:
        for key, value in params.items():
            if value is not None and hasattr(self.config.filter, key):
                setattr(self.config.filter, key, float(value))
        self._build_filters()
        if self.position is not None:
            self._reset_filters(self.position, self.quaternion)
        self.logger.info("filter params: %s", self.config.filter.as_dict())

    def set_quaternion_ekf(self, enabled: bool) -> None:
        self.config.use_quaternion_ekf = bool(enabled)
        if self.quaternion is not None:
            self.ekf.set_state(self.quaternion)
        self.logger.info("quaternion EKF %s", "on" if enabled else "off")
