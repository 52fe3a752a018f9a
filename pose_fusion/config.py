from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Optional


logger = logging.getLogger(__name__)


@dataclass
class FilterConfig:
    """Settings for the predictive position / quaternion filters."""

    position_smoothing: float = 0.12  # responsiveness = 1 - smoothing
    rotation_time_constant: float = 0.10  # seconds
    velocity_smoothing: float = 0.25
    prediction_factor: float = 0.2
    max_velocity: float = 1.0  # m/s
    max_prediction_dt: float = 0.033
    max_prediction_step: float = 0.015
    velocity_damping: float = 0.9
    position_deadband: float = 0.0015

    @property
    def responsiveness(self) -> float:
        return max(0.02, min(0.99, 1.0 - self.position_smoothing))

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorldAnchorConfig:
    enabled: bool = True
    buildup_target: int = 6  # consecutive agreeing frames before lock
    min_markers: int = 2
    correction_alpha: float = 0.018
    rot_correction_alpha: float = 0.015
    break_distance: float = 0.18  # meters
    break_angle: float = math.pi / 5  # radians
    max_agree_dist: float = 0.08  # meters
    hold_pos_eps: float = 0.006  # ignore locked corrections below 6 mm
    hold_rot_eps: float = 0.030  # ~1.7 deg
    single_marker_pos_alpha: float = 0.045
    single_marker_rot_alpha: float = 0.055

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FusionConfig:
    session_name: str = "fusion"
    marker_layout: str = "table8"  # "table8" or "single"
    marker_offsets: Optional[dict[int, dict[str, Any]]] = None
    fusion_enabled: bool = True  # False = position-only, best candidate wins
    single_marker_mode: bool = False

    min_marker_perimeter: float = 30.0  # px
    fusion_agree_dist: float = 0.14  # meters
    fusion_track_window: float = 0.24  # meters
    marker_outlier_distance: float = 0.35  # meters
    marker_confidence_threshold: float = 0.15
    max_pose_error_for_fusion: float = 0.35
    anchor_ids: Optional[list[int]] = None
    anchor_boost: float = 3.0
    adaptive_tuning_enabled: bool = True

    max_position_jump: float = 0.5  # meters
    single_marker_max_jump: float = 0.25  # meters
    position_history_size: int = 1
    tracking_timeout: float = 0.8  # seconds of hysteresis before "lost"
    detection_fps: float = 36.0

    tracking_pos_deadband: float = 0.0035
    tracking_rot_deadband: float = 0.020
    max_trusted_linear_rate: float = 3.0  # m/s
    max_trusted_angular_rate: float = 5.2  # rad/s
    low_trust_confidence_threshold: float = 0.58
    low_trust_spread_threshold: float = 0.045
    oblique_soft_limit_deg: float = 70.0
    oblique_reject_angle_deg: float = 84.0
    oblique_weight_floor: float = 0.12
    fast_reposition_pos_delta: float = 0.032
    fast_reposition_rot_delta: float = math.pi / 12
    fast_reposition_unlock_ratio: float = 0.55

    render_pose_tau: float = 0.028
    render_pose_tau_locked: float = 0.032
    position_filter_mode: str = "none"  # "none", "predictive" or "kalman"
    use_quaternion_ekf: bool = False

    filter: FilterConfig = field(default_factory=FilterConfig)
    world_anchor: WorldAnchorConfig = field(default_factory=WorldAnchorConfig)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "FusionConfig":
        for key, value in kwargs.items():
            if value is not None and hasattr(self, key):
                setattr(self, key, value)
        return self


PRESETS: dict[str, dict[str, Any]] = {
    "minimal": {
        "filter": {"position_smoothing": 0.10, "rotation_time_constant": 0.085},
        "position_history_size": 1,
        "max_position_jump": 0.25,
        "min_marker_perimeter": 30.0,
        "anchor_boost": 1.0,
        "use_quaternion_ekf": False,
        "anchor_ids": None,
        "detection_fps": 20.0,
        "marker_outlier_distance": 0.25,
        "marker_confidence_threshold": 0.15,
    },
    "mobile": {
        "filter": {"position_smoothing": 0.12, "rotation_time_constant": 0.10},
        "position_history_size": 3,
        "max_position_jump": 0.3,
        "min_marker_perimeter": 30.0,
        "anchor_boost": 2.5,
        "use_quaternion_ekf": False,
        "anchor_ids": None,
        "detection_fps": 60.0,
        "marker_outlier_distance": 0.4,
        "marker_confidence_threshold": 0.15,
    },
    "desktop": {
        "filter": {"position_smoothing": 0.05, "rotation_time_constant": 0.05},
        "position_history_size": 1,
        "max_position_jump": 0.5,
        "min_marker_perimeter": 25.0,
        "use_quaternion_ekf": False,
        "detection_fps": 60.0,
    },
}
PRESETS["iphone13pro"] = PRESETS["mobile"]


def apply_preset(cfg: FusionConfig, name: str) -> bool:
    """Apply a named stability preset in place. Unknown names are ignored."""
    preset = PRESETS.get(name)
    if preset is None:
        logger.warning("unknown preset: %s", name)
        return False
    for key, value in preset.items():
        if key == "filter":
            for fkey, fval in value.items():
                setattr(cfg.filter, fkey, fval)
        elif key == "anchor_ids":
            cfg.anchor_ids = None if value is None else list(value)
        else:
            setattr(cfg, key, value)
    cfg.position_history_size = _clamp_history(cfg.position_history_size)
    logger.info("stability preset applied: %s", name)
    return True


def _clamp_history(n: Any) -> int:
    return max(1, min(15, int(n)))


def _normalize_ids(value: Any) -> Optional[list[int]]:
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        return [int(v) for v in value]
    if isinstance(value, (int, float)):
        return [int(value)]
    raise ValueError("anchor_ids must be a list of marker ids or null")


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "YAML config requested but PyYAML is not installed. "
            "Install with: pip install pyyaml"
        ) from exc
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML config root must be a mapping")
    return data


def _coerce_section(target: Any, raw: Any, name: str) -> None:
    if raw is None:
        return
    if not isinstance(raw, dict):
        raise ValueError(f"{name} must be a mapping")
    for key, value in raw.items():
        if not hasattr(target, key):
            continue
        default = getattr(target, key)
        if isinstance(default, bool):
            setattr(target, key, bool(value))
        elif isinstance(default, int):
            setattr(target, key, int(value))
        elif isinstance(default, float):
            setattr(target, key, float(value))
        else:
            setattr(target, key, value)


def load_config(path: str | Path) -> FusionConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)

    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON/YAML object")

    cfg = FusionConfig()
    preset = raw.get("preset")
    if preset is not None:
        apply_preset(cfg, str(preset))

    scalars = {
        k: v for k, v in raw.items()
        if k not in {"preset", "filter", "world_anchor", "anchor_ids", "marker_offsets"}
    }
    _coerce_section(cfg, scalars, "config")
    if "anchor_ids" in raw:
        cfg.anchor_ids = _normalize_ids(raw["anchor_ids"])

    offsets_raw = raw.get("marker_offsets")
    if offsets_raw is not None:
        if not isinstance(offsets_raw, dict):
            raise ValueError("marker_offsets must be a mapping of marker_id -> {pos, quat}")
        cfg.marker_offsets = {int(k): dict(v) for k, v in offsets_raw.items()}

    _coerce_section(cfg.filter, raw.get("filter"), "filter")
    _coerce_section(cfg.world_anchor, raw.get("world_anchor"), "world_anchor")
    cfg.position_history_size = _clamp_history(cfg.position_history_size)
    return cfg
