"""Adaptive filters for marker pose tracking.

Filters:
    KalmanFilter1D / KalmanFilter3D -- independent-axis scalar Kalman smoothing
    QuaternionFilter                -- adaptive slerp, shortest-path safe
    AdaptivePositionFilter          -- plain EMA position follower (legacy)
    PredictivePositionFilter        -- EMA follower with velocity estimate and
                                       inter-frame extrapolation
    QuaternionEKF                   -- multiplicative EKF for orientation
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np

from .transforms import (
    IDENTITY_QUAT,
    clamp_length,
    lerp,
    quat,
    quat_conjugate,
    quat_dot,
    quat_from_axis_angle,
    quat_multiply,
    quat_normalize,
    quat_slerp,
    vec3,
)


class KalmanFilter1D:
    def __init__(self, R: float = 0.01, Q: float = 0.003, initial: float = 0.0):
        self.R = R
        self.Q = Q
        self.x = float(initial)
        self.P = 1.0

    def update(self, z: float) -> float:
        K = self.P / (self.P + self.R)
        self.x += K * (float(z) - self.x)
        self.P = (1 - K) * self.P + self.Q
        return self.x

    def set_state(self, value: float) -> None:
        self.x = float(value)


class KalmanFilter3D:
    """Three independent scalar Kalman filters sharing R and Q."""

    def __init__(self, R: float = 0.005, Q: float = 0.002, initial=(0.0, 0.0, 0.0)):
        self.R = R
        self.Q = Q
        self.x = vec3(initial)
        self.P = np.ones(3)

    def update(self, measurement) -> np.ndarray:
        z = vec3(measurement)
        K = self.P / (self.P + self.R)
        self.x = self.x + K * (z - self.x)
        self.P = (1 - K) * self.P + abs(self.Q)
        return self.x.copy()

    def set_state(self, value) -> None:
        self.x = vec3(value)


class QuaternionFilter:
    """Exponential-smoothing slerp toward the measured orientation.

    ``time_constant`` is in seconds; lower is more responsive
    (0.03-0.06 works well for AR overlays).
    """

    def __init__(self, time_constant: float = 0.04):
        self.time_constant = time_constant
        self.current: Optional[np.ndarray] = None

    def reset(self, q) -> None:
        self.current = quat_normalize(quat(q))

    def update(self, measured, dt: float, confidence: float = 1.0) -> Optional[np.ndarray]:
        if measured is None:
            return self.current
        measured = quat_normalize(quat(measured))
        if self.current is None:
            self.current = measured
            return self.current

        alpha = 1 - math.exp(-dt / max(1e-6, self.time_constant))
        adj = min(1.0, alpha * confidence)

        # q and -q are the same rotation; keep slerp on the short arc
        if quat_dot(self.current, measured) < 0:
            measured = -measured

        self.current = quat_normalize(quat_slerp(self.current, measured, adj))
        return self.current


class AdaptivePositionFilter:
    def __init__(self, smoothing: float = 0.12):
        self.smoothing = smoothing
        self.current: Optional[np.ndarray] = None

    def reset(self, v) -> None:
        self.current = vec3(v)

    def update(self, measured, dt: float, confidence: float = 1.0) -> Optional[np.ndarray]:
        if measured is None:
            return self.current
        measured = vec3(measured)
        if self.current is None:
            self.current = measured
            return self.current
        alpha = 1 - math.exp(-dt / max(1e-6, self.smoothing))
        self.current = lerp(self.current, measured, alpha * confidence)
        return self.current


class PredictivePositionFilter:
    """
    Position filter with velocity estimation for inter-frame prediction.

    On detection frames ``update`` follows the measurement and refreshes the
    velocity estimate; on render frames without a detection ``predict``
    extrapolates along that velocity. This split lets the display run at its
    own rate independently of the detector.

    Args:
        responsiveness: How fast to follow new measurements (0 = frozen, 1 = instant)
        velocity_smoothing: EMA factor for the velocity estimate
        prediction_factor: How much to trust extrapolation (0 = none, 1 = full)
        max_velocity: Velocity magnitude clamp (m/s)
        max_prediction_dt: Longest interval extrapolated in one call (s)
        max_prediction_step: Longest extrapolation step (m)
        velocity_damping: Velocity decay applied at rest and after each prediction
        position_deadband: Measurement deltas below this (m) leave the position untouched
    """

    def __init__(
        self,
        responsiveness: float = 0.85,
        velocity_smoothing: float = 0.6,
        prediction_factor: float = 0.4,
        max_velocity: float = 2.0,
        max_prediction_dt: float = 0.033,
        max_prediction_step: float = 0.02,
        velocity_damping: float = 0.9,
        position_deadband: float = 0.0015,
    ):
        self.responsiveness = responsiveness
        self.velocity_smoothing = velocity_smoothing
        self.prediction_factor = prediction_factor
        self.max_velocity = max_velocity
        self.max_prediction_dt = max_prediction_dt
        self.max_prediction_step = max_prediction_step
        self.velocity_damping = velocity_damping
        self.position_deadband = position_deadband
        self.current: Optional[np.ndarray] = None
        self.velocity: Optional[np.ndarray] = None
        self.last_measurement: Optional[np.ndarray] = None

    def reset(self, v) -> None:
        self.current = vec3(v)
        self.velocity = np.zeros(3)
        self.last_measurement = self.current.copy()

    def update(self, measured, dt: float, confidence: float = 1.0) -> Optional[np.ndarray]:
        if measured is None:
            return self.predict(dt)
        measured = vec3(measured)
        if self.current is None:
            self.reset(measured)
            return self.current

        if dt > 0.001 and self.last_measurement is not None:
            instant_vel = clamp_length((measured - self.last_measurement) / dt, self.max_velocity)
            if self.velocity is None:
                self.velocity = instant_vel
            else:
                self.velocity = lerp(self.velocity, instant_vel, self.velocity_smoothing)

        self.last_measurement = measured.copy()

        if float(np.linalg.norm(measured - self.current)) < self.position_deadband:
            if self.velocity is not None:
                self.velocity = self.velocity * self.velocity_damping
            return self.current

        alpha = min(1.0, self.responsiveness * confidence)
        self.current = lerp(self.current, measured, alpha)
        return self.current

    def predict(self, dt: float) -> Optional[np.ndarray]:
        if self.current is None:
            return None
        if self.velocity is not None and self.prediction_factor > 0 and dt > 0:
            safe_dt = min(self.max_prediction_dt, max(0.0, dt))
            step = clamp_length(self.velocity * (safe_dt * self.prediction_factor), self.max_prediction_step)
            self.current = self.current + step
            if self.velocity_damping < 1:
                self.velocity = self.velocity * self.velocity_damping
        return self.current


class QuaternionEKF:
    """
    Minimal multiplicative extended Kalman filter for orientation.

    State is the orientation ``q`` plus a gyro bias ``b``; the covariance is
    approximated by one scalar for orientation and one for bias.
    """

    def __init__(self, q_init=None, P: Optional[dict] = None, Q: Optional[dict] = None, R: float = 0.01):
        self.q = quat_normalize(quat(q_init)) if q_init is not None else IDENTITY_QUAT.copy()
        self.b = np.zeros(3)
        self.P = dict(P) if P else {"ori": 0.01, "bias": 0.0001}
        self.Q = dict(Q) if Q else {"gyro": 1e-4, "bias": 1e-6}
        self.R = R

    def set_state(self, quat_value=None, bias=None) -> None:
        if quat_value is not None:
            self.q = quat_normalize(quat(quat_value))
        if bias is not None:
            self.b = vec3(bias)

    def predict(self, omega, dt: float) -> np.ndarray:
        w = vec3(omega) - self.b
        norm = float(np.linalg.norm(w))
        theta = norm * dt
        if theta > 1e-6:
            dq = quat_from_axis_angle(w / norm, theta)
        else:
            dq = IDENTITY_QUAT.copy()
        self.q = quat_normalize(quat_multiply(self.q, dq))
        self.P["ori"] += self.Q["gyro"] * dt
        self.P["bias"] += self.Q["bias"] * dt
        return self.q

    def update(self, measured) -> np.ndarray:
        qe = quat_multiply(quat(measured), quat_conjugate(self.q))
        if qe[3] < 0:
            qe = -qe
        # Small-angle: the vector part of qe is the rotation error
        ex, ey, ez = qe[0], qe[1], qe[2]
        K = self.P["ori"] / (self.P["ori"] + self.R)
        corr = quat_normalize(np.array([ex * K, ey * K, ez * K, 1.0]))
        # qe is a world-frame error, so the correction is pre-multiplied
        self.q = quat_normalize(quat_multiply(corr, self.q))
        self.P["ori"] = (1 - K) * self.P["ori"]
        return self.q
