import json
import math

import pytest

from pose_fusion.config import PRESETS, FusionConfig, apply_preset, load_config


def test_defaults():
    cfg = FusionConfig()
    assert cfg.min_marker_perimeter == 30.0
    assert cfg.fusion_agree_dist == 0.14
    assert cfg.position_history_size == 1
    assert cfg.tracking_timeout == 0.8
    assert cfg.fast_reposition_rot_delta == pytest.approx(math.pi / 12)
    assert cfg.world_anchor.buildup_target == 6
    assert cfg.filter.responsiveness == pytest.approx(0.88)


def test_apply_overrides_ignores_none():
    cfg = FusionConfig().apply_overrides(anchor_boost=2.0, tracking_timeout=None, unknown_key=1)
    assert cfg.anchor_boost == 2.0
    assert cfg.tracking_timeout == 0.8
    assert not hasattr(cfg, "unknown_key")


def test_apply_preset():
    cfg = FusionConfig()
    assert apply_preset(cfg, "iphone13pro") is True
    assert cfg.position_history_size == 3
    assert cfg.anchor_boost == 2.5
    assert cfg.filter.position_smoothing == 0.12
    assert PRESETS["iphone13pro"] is PRESETS["mobile"]


def test_apply_unknown_preset_is_noop():
    cfg = FusionConfig()
    before = cfg.as_dict()
    assert apply_preset(cfg, "potato") is False
    assert cfg.as_dict() == before


def test_load_json_config(tmp_path):
    p = tmp_path / "cfg.json"
    p.write_text(json.dumps({
        "preset": "desktop",
        "session_name": "bench",
        "fusion_agree_dist": "0.2",
        "anchor_ids": 4,
        "marker_offsets": {"9": {"pos": [0, 0, 0], "quat": [0, 0, 0, 1]}},
        "filter": {"position_smoothing": 0.3},
        "world_anchor": {"enabled": False, "buildup_target": 4},
        "position_history_size": 99,
    }))
    cfg = load_config(p)
    assert cfg.session_name == "bench"
    assert cfg.fusion_agree_dist == 0.2
    assert cfg.min_marker_perimeter == 25.0
    assert cfg.anchor_ids == [4]
    assert 9 in cfg.marker_offsets
    assert cfg.filter.position_smoothing == 0.3
    assert cfg.world_anchor.enabled is False
    assert cfg.world_anchor.buildup_target == 4
    assert cfg.position_history_size == 15


def test_load_yaml_config(tmp_path):
    p = tmp_path / "cfg.yaml"
    p.write_text("marker_layout: single\nfusion_enabled: false\nanchor_ids: [1, 2]\n")
    cfg = load_config(p)
    assert cfg.marker_layout == "single"
    assert cfg.fusion_enabled is False
    assert cfg.anchor_ids == [1, 2]


def test_missing_config_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.json")


@pytest.mark.parametrize(
    "payload",
    [
        [1, 2, 3],
        {"marker_offsets": [1, 2]},
        {"anchor_ids": "abc"},
        {"filter": 3},
    ],
)
def test_malformed_config_raises(tmp_path, payload):
    p = tmp_path / "bad.json"
    p.write_text(json.dumps(payload))
    with pytest.raises(ValueError):
        load_config(p)
