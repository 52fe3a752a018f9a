import logging

import numpy as np
import pytest

from pose_fusion.config import FusionConfig
from pose_fusion.engine import PoseFusionEngine
from pose_fusion.types import MarkerObservation, PoseCandidate


IDENTITY_OFFSET = {"pos": [0.0, 0.0, 0.0], "quat": [0.0, 0.0, 0.0, 1.0]}


def square(size: float = 100.0, x0: float = 0.0, y0: float = 0.0):
    return [[x0, y0], [x0 + size, y0], [x0 + size, y0 + size], [x0, y0 + size]]


@pytest.fixture
def make_obs():
    """Factory for a posed observation facing the camera."""

    def _make(
        marker_id=1,
        tvec=(0.0, 0.0, 1.0),
        rvec=(0.0, 0.0, 0.0),
        size=100.0,
        confidence=0.9,
        pose_error=0.02,
        angle=10.0,
        source="posit",
    ):
        return MarkerObservation(
            id=marker_id,
            corners=square(size),
            rvec=None if rvec is None else list(rvec),
            tvec=None if tvec is None else list(tvec),
            pose_error=pose_error,
            confidence=confidence,
            camera_angle_deg=angle,
            source=source,
        )

    return _make


@pytest.fixture
def make_candidate():
    def _make(marker_id=1, position=(0.0, 0.0, -1.0), weight=1.0, quaternion=(0.0, 0.0, 0.0, 1.0)):
        return PoseCandidate(
            id=marker_id,
            position=np.array(position, dtype=float),
            quaternion=np.array(quaternion, dtype=float),
            perimeter=400.0,
            pose_error=0.02,
            confidence=0.9,
            camera_angle_deg=10.0,
            weight=weight,
        )

    return _make


@pytest.fixture
def quiet_logger():
    logger = logging.getLogger("pose_fusion.tests")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def make_engine(quiet_logger):
    """Engine whose markers 1-4 sit exactly at the object origin."""

    def _make(store=None, **overrides):
        cfg = FusionConfig(
            marker_layout="single",
            marker_offsets={mid: dict(IDENTITY_OFFSET) for mid in (1, 2, 3, 4)},
        )
        cfg.apply_overrides(**overrides)
        return PoseFusionEngine(cfg, logger=quiet_logger, store=store)

    return _make
