import argparse
import signal
import sys

from .config import FusionConfig, apply_preset, load_config
from .logging_utils import parse_level, setup_logger
from .replay import ReplaySession
from .store import JsonFileSettingsStore


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Replay a marker detection log through the pose fusion engine")
    ap.add_argument("--log", required=True, help="Path to JSON-lines detection log")
    ap.add_argument("--config", help="Path to JSON/YAML config")
    ap.add_argument("--out", default="sessions", help="Output root directory")

    ap.add_argument("--session-name")
    ap.add_argument("--preset", help="Stability preset: minimal, mobile, desktop")
    ap.add_argument("--layout", help="Marker layout: table8 or single")
    ap.add_argument("--anchor-ids", nargs="+", type=int)
    ap.add_argument("--history-size", type=int)
    ap.add_argument("--outlier-distance", type=float)
    ap.add_argument("--confidence-threshold", type=float)
    ap.add_argument("--filter-mode", choices=["none", "predictive", "kalman"])
    ap.add_argument("--settings", help="JSON file persisting marker offsets and anchor ids")
    ap.add_argument("--max-frames", type=int)
    ap.add_argument("--log-level", default="info", help="debug, info, warning")
    ap.add_argument("--single-marker", action="store_true")
    ap.add_argument("--no-fusion", action="store_true", help="Position-only: best marker wins")
    ap.add_argument("--ekf", action="store_true")
    ap.add_argument("--no-adaptive", action="store_true")

    return ap


def _apply_args(cfg: FusionConfig, args: argparse.Namespace) -> FusionConfig:
    if args.preset:
        apply_preset(cfg, args.preset)

    cfg.apply_overrides(
        session_name=args.session_name,
        marker_layout=args.layout,
        anchor_ids=args.anchor_ids,
        position_history_size=args.history_size,
        marker_outlier_distance=args.outlier_distance,
        marker_confidence_threshold=args.confidence_threshold,
        position_filter_mode=args.filter_mode,
        single_marker_mode=True if args.single_marker else None,
        fusion_enabled=False if args.no_fusion else None,
        use_quaternion_ekf=True if args.ekf else None,
        adaptive_tuning_enabled=False if args.no_adaptive else None,
    )
    cfg.position_history_size = max(1, min(15, int(cfg.position_history_size)))
    return cfg


def main(argv=None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    cfg = load_config(args.config) if args.config else FusionConfig()
    cfg = _apply_args(cfg, args)

    store = JsonFileSettingsStore(args.settings) if args.settings else None
    logger = setup_logger(cfg.session_name, parse_level(args.log_level))
    session = ReplaySession(cfg, args.log, args.out, logger=logger, store=store, max_frames=args.max_frames)

    def _handle_signal(_sig, _frame):
        session.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    summary = session.run()
    print(summary)
    return 0 if summary.errors == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
