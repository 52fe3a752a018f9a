"""Marker -> object geometric offsets.

Each marker is glued to a known spot of the tracked object.
``position_offset`` is the vector from the object origin to the marker centre
in the object's local frame; ``rotation_offset`` maps marker orientation to
object orientation, i.e. ``q_object = q_marker ⊗ rotation_offset``.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

import numpy as np

from .store import SettingsStore
from .transforms import IDENTITY_QUAT, quat_from_euler, quat_normalize, vec3
from .types import MarkerOffset


logger = logging.getLogger(__name__)

OFFSETS_STORAGE_KEY = "marker_offsets.v4"

# Table layout, seen from above (bottom side = object front):
#   1  7  2
#   5     6
#   3  8  4
_TABLE_X = 0.14
_TABLE_Z = 0.10
TABLE8_POSITIONS: dict[int, tuple[float, float, float]] = {
    1: (-_TABLE_X, 0.0, _TABLE_Z),
    7: (0.0, 0.0, _TABLE_Z),
    2: (_TABLE_X, 0.0, _TABLE_Z),
    5: (-_TABLE_X, 0.0, 0.0),
    6: (_TABLE_X, 0.0, 0.0),
    3: (-_TABLE_X, 0.0, -_TABLE_Z),
    8: (0.0, 0.0, -_TABLE_Z),
    4: (_TABLE_X, 0.0, -_TABLE_Z),
}


def _copy(offset: MarkerOffset) -> MarkerOffset:
    return MarkerOffset(offset.position_offset.copy(), offset.rotation_offset.copy())


def build_layout(name: str) -> dict[int, MarkerOffset]:
    """Built-in offset tables: ``table8`` (flat 8-marker board) or ``single``."""
    if name == "table8":
        # Markers lie flat; rotate so the marker normal becomes object up.
        rot = quat_from_euler(-math.pi / 2, 0.0, 0.0)
        return {
            mid: MarkerOffset(np.array(pos, dtype=float), rot.copy())
            for mid, pos in TABLE8_POSITIONS.items()
        }
    if name == "single":
        return {1: MarkerOffset(np.zeros(3), IDENTITY_QUAT.copy())}
    raise ValueError(f"Unknown marker layout: {name}")


def offset_from_dict(raw: dict[str, Any]) -> MarkerOffset:
    """Parse ``{"pos": [x,y,z], "quat": [x,y,z,w]}`` (or ``"euler"``) into an offset."""
    if not isinstance(raw, dict):
        raise ValueError("marker offset entry must be a mapping")
    pos = raw.get("pos")
    position = vec3(pos) if pos is not None and len(pos) == 3 else np.zeros(3)
    q = raw.get("quat")
    euler = raw.get("euler")
    if q is not None and len(q) == 4:
        rotation = quat_normalize(np.asarray(q, dtype=float))
    elif euler is not None and len(euler) == 3:
        rotation = quat_from_euler(*(float(a) for a in euler))
    else:
        rotation = IDENTITY_QUAT.copy()
    return MarkerOffset(position, rotation)


def offset_to_dict(offset: MarkerOffset) -> dict[str, list[float]]:
    return {
        "pos": [float(v) for v in offset.position_offset],
        "quat": [float(v) for v in offset.rotation_offset],
    }


class MarkerOffsetTable:
    """Lookup ``marker id -> MarkerOffset`` with runtime overrides on top of a layout."""

    def __init__(self, layout: str = "table8", store: Optional[SettingsStore] = None):
        self.layout = layout
        self.base = build_layout(layout)
        self.overrides: dict[int, MarkerOffset] = {}
        self.store = store

    @property
    def known_ids(self) -> set[int]:
        return set(self.base) | set(self.overrides)

    def get(self, marker_id: int) -> Optional[MarkerOffset]:
        offset = self.overrides.get(int(marker_id))
        if offset is None:
            offset = self.base.get(int(marker_id))
        if offset is None:
            return None
        return _copy(offset)

    def set_overrides(self, mapping: dict[Any, dict[str, Any]], persist: bool = True) -> None:
        for key, raw in mapping.items():
            self.overrides[int(key)] = offset_from_dict(raw)
        if persist:
            self.save()
        logger.info("marker offsets updated: %s", sorted(int(k) for k in mapping))

    def clear_override(self, marker_id: int, persist: bool = True) -> None:
        if self.overrides.pop(int(marker_id), None) is None:
            return
        if persist:
            self.save()
        logger.info("marker offset cleared for id %d", int(marker_id))

    def to_dict(self) -> dict[int, dict[str, list[float]]]:
        return {mid: offset_to_dict(o) for mid, o in self.overrides.items()}

    def save(self) -> None:
        if self.store is None:
            return
        plain = {str(mid): v for mid, v in self.to_dict().items()}
        self.store.set_json(OFFSETS_STORAGE_KEY, plain)

    def load(self) -> None:
        if self.store is None:
            return
        try:
            parsed = self.store.get_json(OFFSETS_STORAGE_KEY)
            if not parsed:
                return
            self.set_overrides(parsed, persist=False)
            logger.info("marker offsets loaded from store")
        except (ValueError, TypeError) as exc:
            logger.warning("ignoring unreadable persisted marker offsets: %s", exc)
