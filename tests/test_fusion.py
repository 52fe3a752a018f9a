import numpy as np

from pose_fusion.fusion import (
    PositionHistory,
    QualityTracker,
    fuse_pool,
    max_pairwise_spread,
    resolve_disagreement,
    robust_pool,
)
from pose_fusion.transforms import quat_angle_to, quat_from_axis_angle


def test_robust_pool_drops_distant_outlier(make_candidate):
    """Five markers agreeing within 1 cm outvote one 50 cm away."""
    cluster = [
        make_candidate(i, (0.002 * i, 0.001 * (i % 2), -1.0)) for i in range(1, 6)
    ]
    outlier = make_candidate(6, (0.5, 0.0, -1.0))
    pool = robust_pool(cluster + [outlier], agree_dist=0.14, outlier_distance=0.35)
    assert [c.id for c in pool] == [1, 2, 3, 4, 5]

    fused = fuse_pool(pool)
    center = np.mean([c.position for c in cluster], axis=0)
    assert np.linalg.norm(fused.position - center) < 0.01


def test_robust_pool_never_empties(make_candidate):
    pool = robust_pool([make_candidate(1)], agree_dist=0.14, outlier_distance=0.35)
    assert len(pool) == 1


def test_disagreeing_pair_keeps_heaviest(make_candidate):
    """Two survivors 40 cm apart collapse to the highest-weight candidate."""
    heavy = make_candidate(1, (0.0, 0.0, -1.0), weight=2.0)
    light = make_candidate(2, (0.4, 0.0, -1.0), weight=1.0)
    pool = robust_pool([light, heavy], agree_dist=0.14, outlier_distance=0.35)
    assert len(pool) == 2
    pool = resolve_disagreement(pool, agree_dist=0.14)
    assert [c.id for c in pool] == [1]
    assert np.allclose(fuse_pool(pool).position, [0.0, 0.0, -1.0])


def test_agreeing_pool_is_sorted_not_cut(make_candidate):
    a = make_candidate(1, (0.0, 0.0, -1.0), weight=1.0)
    b = make_candidate(2, (0.02, 0.0, -1.0), weight=3.0)
    pool = resolve_disagreement([a, b], agree_dist=0.14)
    assert [c.id for c in pool] == [2, 1]
    assert np.isclose(max_pairwise_spread(pool), 0.02)


def test_fuse_pool_weighted_and_sign_aligned(make_candidate):
    q1 = quat_from_axis_angle((0, 1, 0), 0.1)
    q2 = -quat_from_axis_angle((0, 1, 0), 0.3)
    a = make_candidate(1, (0.0, 0.0, -1.0), weight=1.0, quaternion=q1)
    b = make_candidate(2, (0.03, 0.0, -1.0), weight=1.0, quaternion=q2)
    fused = fuse_pool([a, b])
    assert np.allclose(fused.position, [0.015, 0.0, -1.0])
    assert np.isclose(np.linalg.norm(fused.quaternion), 1.0)
    assert quat_angle_to(fused.quaternion, quat_from_axis_angle((0, 1, 0), 0.2)) < 1e-3


def test_position_history_median_after_three():
    h = PositionHistory(5)
    assert np.allclose(h.push(np.array([0.0, 0.0, 0.0])), [0, 0, 0])
    assert np.allclose(h.push(np.array([1.0, 0.0, 0.0])), [1, 0, 0])
    assert np.allclose(h.push(np.array([0.1, 0.0, 0.0])), [0.1, 0, 0])
    h.clear()
    assert len(h) == 0


def test_position_history_even_count_takes_upper_middle():
    h = PositionHistory(4)
    for x in (0.0, 0.4, 0.1):
        h.push(np.array([x, 0.0, 0.0]))
    out = h.push(np.array([0.2, 1.0, 0.0]))
    assert np.allclose(out, [0.2, 0.0, 0.0])


def test_position_history_size_clamped():
    assert PositionHistory(0).size == 1
    assert PositionHistory(40).size == 15


def test_quality_tracker_ema(make_candidate):
    q = QualityTracker()
    pool = [make_candidate(1, (0.0, 0.0, -1.0)), make_candidate(2, (0.02, 0.0, -1.0))]
    q.observe(pool, np.array([0.01, 0.0, -1.0]))
    assert np.isclose(q.confidence, 0.8 * 0.85 + 0.9 * 0.15)
    assert np.isclose(q.spread, 0.01 * 0.15)
    assert np.isclose(q.view_angle, 10.0 * 0.15)
    q.reset_view_angle()
    assert q.view_angle == 0.0
