from __future__ import annotations

import csv
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import numpy as np

from .types import PoseOutput


class PoseSink(ABC):
    @abstractmethod
    def open(self, session_dir: Path) -> None: ...

    @abstractmethod
    def write_pose(self, ts: float, frame_idx: int, pose: PoseOutput) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class CsvPoseOutput(PoseSink):
    HEADER = [
        "timestamp", "frame_idx", "tracking",
        "x", "y", "z",
        "qx", "qy", "qz", "qw",
        "pool_size", "anchor_active",
    ]

    def __init__(self, filename: str = "poses.csv"):
        self.filename = filename
        self.path: Optional[Path] = None
        self._fh = None
        self._w = None

    def open(self, session_dir: Path) -> None:
        session_dir = Path(session_dir)
        session_dir.mkdir(parents=True, exist_ok=True)
        self.path = session_dir / self.filename
        self._fh = self.path.open("w", newline="", encoding="utf-8")
        self._w = csv.writer(self._fh)
        self._w.writerow(self.HEADER)

    @staticmethod
    def _values(vec, n: int) -> list:
        if vec is None:
            return [float("nan")] * n
        a = np.asarray(vec, dtype=float).reshape(-1).tolist()
        if len(a) < n:
            a += [float("nan")] * (n - len(a))
        return a[:n]

    def write_pose(self, ts: float, frame_idx: int, pose: PoseOutput) -> None:
        if self._w is None:
            return
        pool = pose.stats.pool_size if pose.stats is not None else 0
        self._w.writerow([
            f"{ts:.6f}",
            frame_idx,
            int(pose.is_tracking),
            *self._values(pose.position, 3),
            *self._values(pose.quaternion, 4),
            pool,
            int(pose.anchor_active),
        ])

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._w = None


class NullOutput(PoseSink):
    def open(self, session_dir: Path) -> None:
        return None

    def write_pose(self, ts: float, frame_idx: int, pose: PoseOutput) -> None:
        return None

    def close(self) -> None:
        return None
