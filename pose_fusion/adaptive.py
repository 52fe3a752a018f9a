"""Noise-aware thresholds for candidate gating and fusion.

Under degraded viewing (grazing angles, low detector confidence, wide
candidate spread) the gates tighten so noise is not turned into visible
jitter or false relocalizations.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any

from .config import FusionConfig


@dataclass
class AdaptiveParameters:
    track_window: float
    outlier_distance: float
    confidence_threshold: float
    oblique_soft_limit_deg: float
    oblique_reject_deg: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _clamp(lo: float, hi: float, v: float) -> float:
    return max(lo, min(hi, v))


def aggregate_noise(confidence_ema: float, spread_ema: float, view_angle_ema: float) -> float:
    conf_noise = max(0.0, 1.0 - confidence_ema)
    spread_noise = _clamp(0.0, 1.2, spread_ema / 0.055)
    view_noise = _clamp(0.0, 1.1, view_angle_ema / 80.0)
    return _clamp(0.0, 1.35, conf_noise * 0.60 + spread_noise * 0.30 + view_noise * 0.10)


def compute_adaptive_parameters(
    cfg: FusionConfig,
    noise: float,
    view_angle_ema: float = 0.0,
) -> AdaptiveParameters:
    base_track = max(0.08, cfg.fusion_track_window or 0.24)
    base_outlier = max(0.08, cfg.marker_outlier_distance or 0.35)
    base_conf = max(0.01, cfg.marker_confidence_threshold or 0.15)
    base_soft = max(45.0, cfg.oblique_soft_limit_deg or 70.0)
    base_reject = max(65.0, cfg.oblique_reject_angle_deg or 84.0)

    if not cfg.adaptive_tuning_enabled:
        return AdaptiveParameters(base_track, base_outlier, base_conf, base_soft, base_reject)

    return AdaptiveParameters(
        track_window=_clamp(0.12, 0.46, base_track * (1 + noise * 0.45)),
        outlier_distance=_clamp(0.18, 0.52, base_outlier * (1 - noise * 0.18)),
        confidence_threshold=_clamp(
            0.08, 0.42,
            base_conf + noise * 0.08 + (0.02 if view_angle_ema > 66 else 0.0),
        ),
        oblique_soft_limit_deg=_clamp(56.0, 76.0, base_soft - noise * 8.0),
        oblique_reject_deg=_clamp(72.0, 88.0, base_reject - noise * 6.5),
    )
