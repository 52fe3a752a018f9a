"""Quaternion and camera-to-scene utilities for marker pose handling.

Quaternions are numpy arrays in ``[x, y, z, w]`` order. Scene coordinates are
X right, Y up, Z backward (the camera looks along -Z).
"""

import math
from typing import Sequence, Tuple

import cv2
import numpy as np

from .types import MarkerSource


IDENTITY_QUAT = np.array([0.0, 0.0, 0.0, 1.0])
_EPS = 1e-12


def vec3(v) -> np.ndarray:
    return np.asarray(v, dtype=float).reshape(-1)[:3].copy()


def quat(q) -> np.ndarray:
    return np.asarray(q, dtype=float).reshape(-1)[:4].copy()


def quat_normalize(q: np.ndarray) -> np.ndarray:
    """Return a unit quaternion; degenerate input falls back to identity."""
    q = np.asarray(q, dtype=float)
    n = float(np.linalg.norm(q))
    if not math.isfinite(n) or n < _EPS:
        return IDENTITY_QUAT.copy()
    return q / n


def quat_conjugate(q: np.ndarray) -> np.ndarray:
    return np.array([-q[0], -q[1], -q[2], q[3]], dtype=float)


def quat_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product ``a ⊗ b`` (apply ``b`` first, then ``a``)."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return np.array([
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    ])


def quat_from_axis_angle(axis: Sequence[float], angle: float) -> np.ndarray:
    axis = np.asarray(axis, dtype=float)
    n = float(np.linalg.norm(axis))
    if n < _EPS:
        return IDENTITY_QUAT.copy()
    s = math.sin(angle / 2.0) / n
    return np.array([axis[0] * s, axis[1] * s, axis[2] * s, math.cos(angle / 2.0)])


def quat_from_euler(x: float, y: float, z: float) -> np.ndarray:
    """Intrinsic XYZ Euler angles (radians) to quaternion."""
    qx = quat_from_axis_angle((1.0, 0.0, 0.0), x)
    qy = quat_from_axis_angle((0.0, 1.0, 0.0), y)
    qz = quat_from_axis_angle((0.0, 0.0, 1.0), z)
    return quat_normalize(quat_multiply(quat_multiply(qx, qy), qz))


def quat_from_matrix(R: np.ndarray) -> np.ndarray:
    """Rotation matrix (3x3) to quaternion."""
    R = np.asarray(R, dtype=float)
    trace = R[0, 0] + R[1, 1] + R[2, 2]
    if trace > 0:
        s = 0.5 / math.sqrt(trace + 1.0)
        q = [
            (R[2, 1] - R[1, 2]) * s,
            (R[0, 2] - R[2, 0]) * s,
            (R[1, 0] - R[0, 1]) * s,
            0.25 / s,
        ]
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * math.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        q = [
            0.25 * s,
            (R[0, 1] + R[1, 0]) / s,
            (R[0, 2] + R[2, 0]) / s,
            (R[2, 1] - R[1, 2]) / s,
        ]
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * math.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        q = [
            (R[0, 1] + R[1, 0]) / s,
            0.25 * s,
            (R[1, 2] + R[2, 1]) / s,
            (R[0, 2] - R[2, 0]) / s,
        ]
    else:
        s = 2.0 * math.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        q = [
            (R[0, 2] + R[2, 0]) / s,
            (R[1, 2] + R[2, 1]) / s,
            0.25 * s,
            (R[1, 0] - R[0, 1]) / s,
        ]
    return quat_normalize(np.array(q))


def rvec_to_quat(rvec) -> np.ndarray:
    """
    Convert a Rodrigues rotation vector to a quaternion.

    Args:
        rvec: Rotation vector (3,) or (3,1)

    Returns:
        Unit quaternion [x, y, z, w]
    """
    rvec = np.asarray(rvec, dtype=float).reshape(3)
    if float(np.linalg.norm(rvec)) < 1e-6:
        return IDENTITY_QUAT.copy()
    R, _ = cv2.Rodrigues(rvec)
    return quat_from_matrix(R)


def quat_rotate(q: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Rotate vector ``v`` by unit quaternion ``q``."""
    u = np.asarray(q[:3], dtype=float)
    w = float(q[3])
    v = np.asarray(v, dtype=float)
    t = 2.0 * np.cross(u, v)
    return v + w * t + np.cross(u, t)


def quat_dot(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b))


def align_sign(q: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Return ``q`` or ``-q``, whichever lies in the hemisphere of ``reference``."""
    if quat_dot(q, reference) < 0:
        return -np.asarray(q, dtype=float)
    return np.asarray(q, dtype=float)


def quat_angle_to(a: np.ndarray, b: np.ndarray) -> float:
    """Rotation angle (radians) between two orientations."""
    d = abs(quat_dot(quat_normalize(a), quat_normalize(b)))
    return 2.0 * math.acos(min(1.0, d))


def quat_slerp(a: np.ndarray, b: np.ndarray, t: float) -> np.ndarray:
    """Spherical linear interpolation along the shortest path."""
    a = quat_normalize(a)
    b = quat_normalize(b)
    dot = quat_dot(a, b)
    if dot < 0.0:
        b = -b
        dot = -dot

    # Nearly parallel: fall back to normalized lerp
    if dot > 0.9995:
        return quat_normalize(a + t * (b - a))

    theta_0 = math.acos(min(1.0, dot))
    sin_theta_0 = math.sin(theta_0)
    theta = theta_0 * t
    s0 = math.cos(theta) - dot * math.sin(theta) / sin_theta_0
    s1 = math.sin(theta) / sin_theta_0
    return quat_normalize(s0 * a + s1 * b)


def lerp(a: np.ndarray, b: np.ndarray, t: float) -> np.ndarray:
    return a + (b - a) * t


def clamp_length(v: np.ndarray, max_length: float) -> np.ndarray:
    n = float(np.linalg.norm(v))
    if n > max_length and n > 0:
        return v * (max_length / n)
    return v


def distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(np.asarray(a) - np.asarray(b)))


def opencv_to_scene(rvec, tvec) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convert an OpenCV solvePnP pose to scene coordinates.

    OpenCV camera: X right, Y down, Z forward. The change of basis is
    F = diag(1, -1, -1), applied as F * R * F on the rotation.

    Returns:
        (position, quaternion) in scene coordinates
    """
    t = vec3(tvec)
    q = rvec_to_quat(rvec)
    position = np.array([t[0], -t[1], -t[2]])
    quaternion = np.array([q[0], -q[1], -q[2], q[3]])
    return position, quaternion


def posit_to_scene(rvec, tvec) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convert a POSIT pose to scene coordinates.

    POSIT camera: X right, Y up, Z forward. The change of basis is
    F = diag(1, 1, -1), applied as F * R * F on the rotation.

    Returns:
        (position, quaternion) in scene coordinates
    """
    t = vec3(tvec)
    q = rvec_to_quat(rvec)
    position = np.array([t[0], t[1], -t[2]])
    quaternion = np.array([-q[0], -q[1], q[2], q[3]])
    return position, quaternion


def pose_to_scene(rvec, tvec, source: str = MarkerSource.POSIT) -> Tuple[np.ndarray, np.ndarray]:
    if source == MarkerSource.OPENCV_PNP:
        return opencv_to_scene(rvec, tvec)
    return posit_to_scene(rvec, tvec)


def marker_perimeter(corners) -> float:
    """Polygon perimeter (px) of the detected marker corners."""
    if corners is None or len(corners) < 4:
        return 0.0
    pts = np.asarray(corners, dtype=float).reshape(-1, 2)
    edges = np.roll(pts, -1, axis=0) - pts
    return float(np.sum(np.hypot(edges[:, 0], edges[:, 1])))
