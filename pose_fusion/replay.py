"""Offline replay of recorded marker detections through the fusion engine.

The input is a JSON-lines log, one detection cycle per line::

    {"t": 12.345, "frame": 17, "markers": [{"id": 3, "corners": [...],
      "rvec": [...], "tvec": [...], "poseError": 0.05, "confidence": 0.9,
      "cameraAngleDeg": 22.0, "source": "opencv-pnp"}, ...]}

``frame`` is optional (line order is used otherwise); ``markers`` may be
empty for frames without detections.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .config import FusionConfig
from .engine import PoseFusionEngine
from .logging_utils import add_file_handler, setup_logger
from .output import CsvPoseOutput, PoseSink
from .store import SettingsStore
from .types import MarkerObservation


@dataclass
class ReplaySummary:
    session_path: str
    frames_processed: int
    tracked_frames: int
    csv_path: str
    log_path: str
    errors: int


def parse_record(line: str, fallback_idx: int) -> tuple[float, int, list[MarkerObservation]]:
    raw: Any = json.loads(line)
    if not isinstance(raw, dict):
        raise ValueError("log record must be an object")
    ts = float(raw["t"])
    frame_idx = int(raw.get("frame", fallback_idx))
    markers = raw.get("markers") or []
    if not isinstance(markers, list):
        raise ValueError("markers must be a list")
    return ts, frame_idx, [MarkerObservation.from_dict(m) for m in markers]


class ReplaySession:
    def __init__(
        self,
        config: FusionConfig,
        log_path: str | Path,
        out_root: str | Path,
        logger=None,
        outputs: Optional[list[PoseSink]] = None,
        store: Optional[SettingsStore] = None,
        max_frames: Optional[int] = None,
    ):
        self.config = config
        self.log_path = Path(log_path)
        self.out_root = Path(out_root)
        self.logger = logger or setup_logger(config.session_name)
        self.outputs = outputs if outputs is not None else [CsvPoseOutput()]
        self.store = store
        self.max_frames = max_frames
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def _begin_session(self) -> Path:
        session_dir = self.out_root / f"{self.config.session_name}_{time.strftime('%Y%m%d_%H%M%S')}"
        (session_dir / "logs").mkdir(parents=True, exist_ok=True)
        with (session_dir / "config.json").open("w", encoding="utf-8") as fp:
            json.dump(self.config.as_dict(), fp, indent=2)
        return session_dir

    def run(self) -> ReplaySummary:
        if not self.log_path.exists():
            raise FileNotFoundError(f"Detection log not found: {self.log_path}")

        session_dir = self._begin_session()
        log_file = str(session_dir / "logs" / "session.log")
        file_handler = add_file_handler(self.logger, self.config.session_name, log_file)

        for out in self.outputs:
            out.open(session_dir)

        engine = PoseFusionEngine(self.config, logger=self.logger, store=self.store)
        self.logger.info("replay started: %s -> %s", self.log_path, session_dir)
        self.logger.info("config: %s", self.config.as_dict())

        frames = 0
        tracked = 0
        errors = 0
        try:
            with self.log_path.open("r", encoding="utf-8") as fp:
                for line_no, line in enumerate(fp, start=1):
                    if self._stop_event.is_set():
                        break
                    if self.max_frames and frames >= self.max_frames:
                        break
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        ts, frame_idx, observations = parse_record(line, frames)
                    except (ValueError, KeyError, TypeError) as exc:
                        errors += 1
                        self.logger.warning("skipping malformed record at line %d: %s", line_no, exc)
                        continue

                    pose = engine.update(observations, now=ts)
                    engine.render(now=ts)
                    if pose.is_tracking:
                        tracked += 1
                    for out in self.outputs:
                        out.write_pose(ts, frame_idx, pose)
                    frames += 1
        finally:
            for out in self.outputs:
                out.close()
            self.logger.removeHandler(file_handler)
            file_handler.close()

        self.logger.info("summary frames=%d tracked=%d errors=%d", frames, tracked, errors)

        csv_path = ""
        for out in self.outputs:
            if isinstance(out, CsvPoseOutput) and out.path is not None:
                csv_path = str(out.path)
                break
        return ReplaySummary(str(session_dir), frames, tracked, csv_path, log_file, errors)
