"""Multi-marker pose fusion and temporal filtering."""

from .config import FusionConfig, load_config
from .engine import PoseFusionEngine
from .types import MarkerObservation, PoseOutput

__all__ = ["FusionConfig", "MarkerObservation", "PoseFusionEngine", "PoseOutput", "load_config"]
