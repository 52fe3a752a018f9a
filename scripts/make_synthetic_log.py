#!/usr/bin/env python3
"""Generate a synthetic detection log for the replay CLI.

The object carrying the ``table8`` marker board sways slowly in front of the
camera; every visible marker is written in POSIT convention with pixel noise
on its pose. Random dropouts simulate missed detections.
"""

from __future__ import annotations

import argparse
import json
import math
import sys
from pathlib import Path

import numpy as np

from pose_fusion.offsets import build_layout
from pose_fusion.transforms import quat_conjugate, quat_from_euler, quat_multiply, quat_normalize, quat_rotate


FOCAL_PX = 800.0
MARKER_SIZE_M = 0.05


def quat_to_rvec(q: np.ndarray) -> list[float]:
    q = quat_normalize(q)
    if q[3] < 0:
        q = -q
    angle = 2.0 * math.acos(min(1.0, q[3]))
    s = math.sqrt(max(0.0, 1.0 - q[3] * q[3]))
    if s < 1e-9:
        return [0.0, 0.0, 0.0]
    return [float(v) for v in q[:3] / s * angle]


def marker_record(marker_id: int, pos: np.ndarray, quat: np.ndarray, rng: np.random.Generator) -> dict:
    # Scene -> POSIT camera frame (the conversion is its own inverse)
    tvec = np.array([pos[0], pos[1], -pos[2]]) + rng.normal(0.0, 0.002, 3)
    posit_quat = np.array([-quat[0], -quat[1], quat[2], quat[3]])
    side = FOCAL_PX * MARKER_SIZE_M / max(0.1, tvec[2])
    cx, cy = 320.0 + FOCAL_PX * tvec[0] / tvec[2], 240.0 - FOCAL_PX * tvec[1] / tvec[2]
    h = side / 2.0
    corners = [[cx - h, cy - h], [cx + h, cy - h], [cx + h, cy + h], [cx - h, cy + h]]
    return {
        "id": marker_id,
        "corners": corners,
        "rvec": quat_to_rvec(posit_quat),
        "tvec": [float(v) for v in tvec],
        "poseError": float(abs(rng.normal(0.03, 0.01))),
        "confidence": float(np.clip(rng.normal(0.85, 0.05), 0.0, 1.0)),
        "cameraAngleDeg": float(abs(rng.normal(20.0, 5.0))),
        "source": "posit",
    }


def generate(frames: int, fps: float, dropout: float, seed: int):
    rng = np.random.default_rng(seed)
    layout = build_layout("table8")
    for i in range(frames):
        t = i / fps
        obj_pos = np.array([0.05 * math.sin(t * 0.7), -0.1, -0.8 + 0.05 * math.cos(t * 0.5)])
        obj_quat = quat_from_euler(0.2, 0.3 * math.sin(t * 0.4), 0.0)
        markers = []
        if rng.random() >= dropout:
            for mid, offset in layout.items():
                if rng.random() < 0.2:
                    continue
                marker_quat = quat_multiply(obj_quat, quat_conjugate(offset.rotation_offset))
                marker_pos = obj_pos + quat_rotate(obj_quat, offset.position_offset)
                markers.append(marker_record(mid, marker_pos, marker_quat, rng))
        yield {"t": round(t, 6), "frame": i, "markers": markers}


def main() -> int:
    ap = argparse.ArgumentParser(description="Write a synthetic JSON-lines detection log")
    ap.add_argument("--out", required=True, help="Output .jsonl path")
    ap.add_argument("--frames", type=int, default=300)
    ap.add_argument("--fps", type=float, default=30.0)
    ap.add_argument("--dropout", type=float, default=0.05, help="Probability of an empty frame")
    ap.add_argument("--seed", type=int, default=0)
    args = ap.parse_args()

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as fp:
        for record in generate(args.frames, args.fps, args.dropout, args.seed):
            fp.write(json.dumps(record) + "\n")
    print(f"wrote {args.frames} frames to {out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
