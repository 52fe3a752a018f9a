import pytest

from pose_fusion.adaptive import aggregate_noise, compute_adaptive_parameters
from pose_fusion.config import FusionConfig


def test_disabled_returns_base_values():
    cfg = FusionConfig(adaptive_tuning_enabled=False)
    p = compute_adaptive_parameters(cfg, 1.0, 80.0)
    assert p.track_window == pytest.approx(0.24)
    assert p.outlier_distance == pytest.approx(0.35)
    assert p.confidence_threshold == pytest.approx(0.15)
    assert p.oblique_soft_limit_deg == pytest.approx(70.0)
    assert p.oblique_reject_deg == pytest.approx(84.0)


def test_zero_noise_keeps_base_values():
    p = compute_adaptive_parameters(FusionConfig(), 0.0)
    assert p.track_window == pytest.approx(0.24)
    assert p.outlier_distance == pytest.approx(0.35)
    assert p.confidence_threshold == pytest.approx(0.15)


def test_noise_tightens_gates():
    """Noise widens the track window and tightens the other thresholds."""
    cfg = FusionConfig()
    calm = compute_adaptive_parameters(cfg, 0.0)
    noisy = compute_adaptive_parameters(cfg, 1.35, 70.0)
    assert noisy.track_window == pytest.approx(0.24 * (1 + 1.35 * 0.45))
    assert noisy.outlier_distance == pytest.approx(0.35 * (1 - 1.35 * 0.18))
    assert noisy.confidence_threshold == pytest.approx(0.15 + 1.35 * 0.08 + 0.02)
    assert noisy.oblique_soft_limit_deg < calm.oblique_soft_limit_deg
    assert noisy.oblique_reject_deg < calm.oblique_reject_deg


def test_outputs_respect_clamps():
    cfg = FusionConfig(fusion_track_window=2.0, marker_outlier_distance=0.01)
    p = compute_adaptive_parameters(cfg, 1.35, 90.0)
    assert p.track_window == 0.46
    assert p.outlier_distance == 0.18
    assert 72.0 <= p.oblique_reject_deg <= 88.0


def test_aggregate_noise():
    assert aggregate_noise(1.0, 0.0, 0.0) == 0.0
    assert aggregate_noise(0.0, 1.0, 90.0) == pytest.approx(0.60 + 0.36 + 0.11)
    assert aggregate_noise(-5.0, 10.0, 500.0) == 1.35
