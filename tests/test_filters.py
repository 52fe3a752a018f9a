import math

import numpy as np

from pose_fusion.filters import (
    AdaptivePositionFilter,
    KalmanFilter1D,
    KalmanFilter3D,
    PredictivePositionFilter,
    QuaternionEKF,
    QuaternionFilter,
)
from pose_fusion.transforms import (
    IDENTITY_QUAT,
    quat_angle_to,
    quat_from_axis_angle,
    quat_from_euler,
    quat_multiply,
)


def test_quaternion_filter_adopts_first_measurement():
    f = QuaternionFilter()
    q = quat_from_euler(0.1, 0.2, 0.3)
    assert np.allclose(f.update(q, 1 / 60), q)


def test_quaternion_filter_stays_unit_and_converges():
    """Output stays normalized and reaches a constant target."""
    f = QuaternionFilter(time_constant=0.04)
    f.reset(IDENTITY_QUAT)
    target = quat_from_euler(0.4, -0.7, 1.1)
    for _ in range(200):
        out = f.update(target, 1 / 60)
        assert math.isclose(float(np.linalg.norm(out)), 1.0, abs_tol=1e-9)
    assert quat_angle_to(out, target) < 1e-3


def test_quaternion_filter_shortest_path_on_negated_measurement():
    """A negated measurement of a nearby rotation must not flip the output."""
    f = QuaternionFilter(time_constant=0.04)
    f.reset(IDENTITY_QUAT)
    near = quat_from_axis_angle((0, 0, 1), 0.1)
    out = f.update(-near, 1 / 60)
    assert np.dot(out, IDENTITY_QUAT) > 0.99
    assert quat_angle_to(out, IDENTITY_QUAT) < 0.1


def test_quaternion_filter_none_measurement_holds():
    f = QuaternionFilter()
    assert f.update(None, 0.1) is None
    f.reset(IDENTITY_QUAT)
    assert np.allclose(f.update(None, 0.1), IDENTITY_QUAT)


def test_predictive_filter_predict_before_init_is_none():
    assert PredictivePositionFilter().predict(0.016) is None


def test_predictive_filter_deadband_returns_same_state():
    """Deltas below the deadband leave the state object untouched."""
    f = PredictivePositionFilter(position_deadband=0.0015)
    f.reset([0.0, 0.0, -1.0])
    before = f.current
    out = f.update([0.001, 0.0, -1.0], 1 / 30)
    assert out is before
    assert np.allclose(out, [0.0, 0.0, -1.0])


def test_predictive_filter_follows_and_extrapolates():
    f = PredictivePositionFilter(responsiveness=1.0, prediction_factor=1.0, max_prediction_step=1.0)
    f.reset([0.0, 0.0, 0.0])
    f.update([0.1, 0.0, 0.0], 0.1)
    assert np.allclose(f.current, [0.1, 0.0, 0.0])
    assert f.velocity[0] > 0
    predicted = f.predict(0.02)
    assert predicted[0] > 0.1


def test_predictive_filter_clamps_velocity():
    f = PredictivePositionFilter(max_velocity=2.0, velocity_smoothing=1.0)
    f.reset([0.0, 0.0, 0.0])
    f.update([10.0, 0.0, 0.0], 0.1)
    assert np.linalg.norm(f.velocity) <= 2.0 + 1e-9


def test_adaptive_position_filter_moves_toward_measurement():
    f = AdaptivePositionFilter(smoothing=0.12)
    f.reset([0.0, 0.0, 0.0])
    out = f.update([1.0, 0.0, 0.0], 0.05)
    assert 0.0 < out[0] < 1.0


def test_kalman_1d_converges():
    k = KalmanFilter1D()
    for _ in range(100):
        x = k.update(2.0)
    assert math.isclose(x, 2.0, abs_tol=1e-3)


def test_kalman_3d_smooths_noise():
    """Per-axis estimate lands near the mean of noisy samples."""
    rng = np.random.default_rng(0)
    k = KalmanFilter3D(initial=(0.0, 0.0, -1.0))
    target = np.array([0.2, -0.1, -1.0])
    for _ in range(300):
        est = k.update(target + rng.normal(0, 0.005, 3))
    assert np.allclose(est, target, atol=0.01)


def test_quaternion_ekf_update_pulls_toward_measurement():
    ekf = QuaternionEKF()
    target = quat_from_axis_angle((0, 1, 0), 0.3)
    start = quat_angle_to(ekf.q, target)
    for _ in range(50):
        ekf.predict(np.zeros(3), 1 / 30)
        q = ekf.update(target)
    assert math.isclose(float(np.linalg.norm(q)), 1.0, abs_tol=1e-9)
    assert quat_angle_to(q, target) < start


def test_quaternion_ekf_predict_integrates_rate():
    ekf = QuaternionEKF()
    for _ in range(10):
        ekf.predict([0.0, 0.0, 1.0], 0.1)
    assert math.isclose(quat_angle_to(ekf.q, IDENTITY_QUAT), 1.0, abs_tol=1e-6)


def test_quaternion_filter_antipodal_measurement_no_long_way():
    """current=(0,0,0,1), measured ~ (eps,0,0,-1-eps): result stays on the current hemisphere."""
    eps = 1e-3
    f = QuaternionFilter(time_constant=0.04)
    f.reset(IDENTITY_QUAT)
    out = f.update(np.array([eps, 0.0, 0.0, -1.0 - eps]), 1 / 30)
    assert np.dot(out, IDENTITY_QUAT) >= 0
    assert math.isclose(float(np.linalg.norm(out)), 1.0, abs_tol=1e-6)


def test_predictive_filter_converges_to_constant_target():
    f = PredictivePositionFilter()
    f.reset([0.0, 0.0, 0.0])
    target = np.array([0.5, 0.2, -1.0])
    for _ in range(200):
        out = f.update(target, 1 / 30, 1.0)
    assert np.linalg.norm(out - target) < 1e-3


def test_quaternion_ekf_converges_from_rotated_state():
    """Corrections act in the world frame, so a half-turn state still closes on the measurement."""
    start = quat_from_axis_angle((0, 1, 0), math.pi)
    measured = quat_multiply(quat_from_axis_angle((1, 0, 0), 0.3), start)
    ekf = QuaternionEKF(q_init=start, P={"ori": 1.0, "bias": 0.0001})
    assert math.isclose(quat_angle_to(ekf.q, measured), 0.3, abs_tol=1e-6)
    for _ in range(30):
        ekf.predict(np.zeros(3), 1 / 30)
        q = ekf.update(measured)
    assert quat_angle_to(q, measured) < 0.01
