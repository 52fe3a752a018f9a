import math

import numpy as np

from pose_fusion.transforms import (
    IDENTITY_QUAT,
    marker_perimeter,
    opencv_to_scene,
    pose_to_scene,
    posit_to_scene,
    quat_angle_to,
    quat_from_axis_angle,
    quat_from_euler,
    quat_multiply,
    quat_normalize,
    quat_rotate,
    quat_slerp,
    rvec_to_quat,
)


def test_rvec_to_quat_matches_axis_angle():
    """Rodrigues vector about X by 90deg gives the matching quaternion."""
    q = rvec_to_quat([math.pi / 2, 0.0, 0.0])
    expected = quat_from_axis_angle((1.0, 0.0, 0.0), math.pi / 2)
    assert np.allclose(q, expected, atol=1e-6) or np.allclose(q, -expected, atol=1e-6)


def test_rvec_to_quat_zero_is_identity():
    """A near-zero rotation vector maps to identity."""
    assert np.allclose(rvec_to_quat([0.0, 0.0, 1e-9]), IDENTITY_QUAT)


def test_opencv_to_scene_flips_y_and_z():
    """OpenCV camera frame (Y down, Z forward) becomes Y up, Z backward."""
    pos, q = opencv_to_scene([0.0, 0.0, 0.3], [0.1, 0.2, 0.5])
    assert np.allclose(pos, [0.1, -0.2, -0.5])
    s, c = math.sin(0.15), math.cos(0.15)
    assert np.allclose(q, [0.0, 0.0, -s, c], atol=1e-6)


def test_posit_to_scene_flips_z_only():
    """POSIT frame (Y up, Z forward) only needs the Z axis flipped."""
    pos, q = posit_to_scene([0.0, 0.0, 0.3], [0.1, 0.2, 0.5])
    assert np.allclose(pos, [0.1, 0.2, -0.5])
    s, c = math.sin(0.15), math.cos(0.15)
    assert np.allclose(q, [0.0, 0.0, s, c], atol=1e-6)


def test_pose_to_scene_dispatches_by_source():
    """Only opencv-pnp uses the OpenCV convention; mixed goes through POSIT."""
    rvec, tvec = [0.0, 0.0, 0.0], [0.0, 0.1, 1.0]
    assert np.allclose(pose_to_scene(rvec, tvec, "opencv-pnp")[0], [0.0, -0.1, -1.0])
    assert np.allclose(pose_to_scene(rvec, tvec, "mixed")[0], [0.0, 0.1, -1.0])
    assert np.allclose(pose_to_scene(rvec, tvec, "posit")[0], [0.0, 0.1, -1.0])


def test_quat_normalize_degenerate():
    assert np.allclose(quat_normalize(np.zeros(4)), IDENTITY_QUAT)
    assert np.allclose(quat_normalize(np.array([np.nan, 0, 0, 1])), IDENTITY_QUAT)


def test_slerp_takes_shortest_path():
    """q and -q are the same rotation; slerp must not swing the long way."""
    a = quat_from_axis_angle((0, 1, 0), 0.2)
    b = -quat_from_axis_angle((0, 1, 0), 0.4)
    mid = quat_slerp(a, b, 0.5)
    assert math.isclose(np.linalg.norm(mid), 1.0, abs_tol=1e-9)
    assert quat_angle_to(mid, quat_from_axis_angle((0, 1, 0), 0.3)) < 1e-6


def test_quat_angle_to_ignores_sign():
    q = quat_from_euler(0.3, -0.2, 0.1)
    assert quat_angle_to(q, -q) < 1e-6
    assert math.isclose(quat_angle_to(IDENTITY_QUAT, quat_from_axis_angle((0, 0, 1), 0.5)), 0.5, abs_tol=1e-9)


def test_quat_rotate_and_multiply_compose():
    """Rotating by a then b equals rotating by b * a."""
    a = quat_from_axis_angle((1, 0, 0), math.pi / 2)
    b = quat_from_axis_angle((0, 0, 1), math.pi / 2)
    v = np.array([0.0, 0.0, 1.0])
    step = quat_rotate(b, quat_rotate(a, v))
    assert np.allclose(step, quat_rotate(quat_multiply(b, a), v), atol=1e-9)
    assert np.allclose(quat_rotate(a, v), [0.0, -1.0, 0.0], atol=1e-9)


def test_marker_perimeter():
    corners = [[0, 0], [100, 0], [100, 100], [0, 100]]
    assert math.isclose(marker_perimeter(corners), 400.0)
    assert marker_perimeter(corners[:3]) == 0.0
    assert marker_perimeter(None) == 0.0
