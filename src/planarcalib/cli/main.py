from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import numpy as np

from planarcalib.calib.estimator import calibrate
from planarcalib.calib.report import summarize
from planarcalib.config import DISTORTION_NAMES, ConfigValidationError, parse_config
from planarcalib.core.camera import IntrinsicModel
from planarcalib.core.distortion import DistortionModel
from planarcalib.errors import CalibrationError
from planarcalib.io import load_outcomes_json, write_outcomes_json, write_result_json
from planarcalib.sim.synthetic import SyntheticCamera, grid_points, synthesize_views
from planarcalib.target import target_from_config
from planarcalib.views import NotDetected

logger = logging.getLogger("planarcalib")


def _add_board_args(p: argparse.ArgumentParser, *, defaults: bool) -> None:
    p.add_argument("--rows", type=int, default=6 if defaults else None, help="Inner corners per column.")
    p.add_argument("--cols", type=int, default=9 if defaults else None, help="Inner corners per row.")
    p.add_argument("--square-size", type=float, default=50.0 if defaults else None)


def _config_from_args(args: argparse.Namespace, board: dict[str, Any]) -> dict[str, Any]:
    cfg: dict[str, Any] = {}
    if args.config is not None:
        cfg.update(json.loads(Path(args.config).read_text(encoding="utf-8")))
    for key in ("rows", "cols", "square_size"):
        if key in board and key not in cfg:
            cfg[key] = board[key]

    overrides = {
        "rows": args.rows,
        "cols": args.cols,
        "square_size": args.square_size,
        "grid_width": args.grid_width,
        "release": args.release,
        "aspect_ratio": args.aspect_ratio,
        "max_iterations": args.max_iterations,
        "max_time_s": args.max_time,
        "min_views": args.min_views,
        "workers": args.workers,
    }
    cfg.update({k: v for k, v in overrides.items() if v is not None})
    if args.extended:
        cfg["extended"] = True
    if args.fix_aspect_ratio:
        cfg["fix_aspect_ratio"] = True
    if args.fix_principal_point:
        cfg["fix_principal_point"] = True
    if args.fixed_distortion is not None:
        cfg["fixed_distortion"] = [s.strip() for s in args.fixed_distortion.split(",") if s.strip()]
    if args.strict:
        cfg["require_all_views"] = True
    if args.abort_on_degenerate:
        cfg["degenerate_policy"] = "abort"
    return cfg


def _run_simulate(args: argparse.Namespace) -> int:
    rng = np.random.default_rng(args.seed)
    w, h = int(args.width), int(args.height)
    cx = (w - 1) / 2.0 if args.cx is None else float(args.cx)
    cy = (h - 1) / 2.0 if args.cy is None else float(args.cy)
    camera = SyntheticCamera(
        intrinsics=IntrinsicModel(fx=args.fx, fy=args.fy if args.fy is not None else args.fx, cx=cx, cy=cy),
        distortion=DistortionModel(k1=args.k1, k2=args.k2, p1=args.p1, p2=args.p2, k3=args.k3),
        image_size=(w, h),
    )
    # Printed boards are often scaled: the physical pitch follows the true grid width.
    pitch = args.square_size if args.true_grid_width is None else args.true_grid_width / (args.cols - 1)
    xyz = grid_points(args.rows, args.cols, pitch)
    sim = synthesize_views(xyz, camera, args.views, rng=rng, noise_px=args.noise_px)
    outcomes = list(sim.outcomes)
    for i in args.fail or []:
        outcomes[i] = NotDetected(reason="simulated detection failure")
    board = {"rows": args.rows, "cols": args.cols, "square_size": args.square_size}
    write_outcomes_json(args.out, outcomes, board=board)
    print(f"Wrote {args.out}")
    return 0


def _run_calibrate(args: argparse.Namespace) -> int:
    outcomes, board = load_outcomes_json(args.views)
    try:
        cfg = parse_config(_config_from_args(args, board))
    except ConfigValidationError as e:
        logger.error("invalid configuration: %s", e)
        return 1
    target = target_from_config(cfg)
    try:
        result = calibrate(outcomes, cfg, target=target)
    except CalibrationError as e:
        logger.error("calibration failed: %s", e)
        return 1

    corners = (0, cfg.cols - 1, cfg.cols * (cfg.rows - 1), cfg.n_points - 1) if cfg.extended else ()
    for line in summarize(result, corner_indices=corners):
        logger.info(line)
    write_result_json(args.out, result)
    print(f"Wrote {args.out}")
    return 0 if result.converged else 2


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="planarcalib")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log LM iterations.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sim = sub.add_parser("simulate", help="Write synthetic chessboard detections for a known camera.")
    sim.add_argument("--out", type=Path, required=True)
    _add_board_args(sim, defaults=True)
    sim.add_argument("--views", type=int, default=13)
    sim.add_argument("--width", type=int, default=640)
    sim.add_argument("--height", type=int, default=480)
    sim.add_argument("--fx", type=float, default=800.0)
    sim.add_argument("--fy", type=float, default=None, help="Defaults to --fx.")
    sim.add_argument("--cx", type=float, default=None, help="Defaults to the image centre.")
    sim.add_argument("--cy", type=float, default=None, help="Defaults to the image centre.")
    for name in ("k1", "k2", "p1", "p2", "k3"):
        sim.add_argument(f"--{name}", type=float, default=0.0)
    sim.add_argument("--noise-px", type=float, default=0.1, help="Gaussian corner noise (pixels).")
    sim.add_argument(
        "--true-grid-width",
        type=float,
        default=None,
        help="Physical first-to-last distance along a row, if the printed board is scaled.",
    )
    sim.add_argument("--fail", type=int, nargs="*", help="View indices reported as not detected.")
    sim.add_argument("--seed", type=int, default=0)

    cal = sub.add_parser("calibrate", help="Estimate intrinsics, distortion and poses from detections.")
    cal.add_argument("views", type=Path, help="Detections JSON (see `simulate`).")
    cal.add_argument("--out", type=Path, default=Path("out_camera_parameters.json"))
    cal.add_argument("--config", type=Path, default=None, help="JSON config; command line flags override it.")
    _add_board_args(cal, defaults=False)
    cal.add_argument("--extended", action="store_true", help="Refine the board geometry (needs --grid-width).")
    cal.add_argument("--grid-width", type=float, default=None, help="Measured first-to-last distance along row 0.")
    cal.add_argument("--release", type=str, default=None, choices=["anchor", "grid"], help="Board points refined in extended mode (default: grid).")
    cal.add_argument("--fix-aspect-ratio", action="store_true")
    cal.add_argument("--aspect-ratio", type=float, default=None)
    cal.add_argument("--fix-principal-point", action="store_true")
    cal.add_argument(
        "--fixed-distortion",
        type=str,
        default=None,
        help=f"Comma-separated coefficients held at zero, from {','.join(DISTORTION_NAMES)}.",
    )
    cal.add_argument("--max-iterations", type=int, default=None)
    cal.add_argument("--max-time", type=float, default=None, help="Refinement time budget (seconds).")
    cal.add_argument("--min-views", type=int, default=None)
    cal.add_argument("--workers", type=int, default=None, help="Threads for Jacobian accumulation.")
    cal.add_argument("--strict", action="store_true", help="Abort if any requested view failed detection.")
    cal.add_argument("--abort-on-degenerate", action="store_true")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s: %(message)s")

    if args.cmd == "simulate":
        return _run_simulate(args)

    if args.cmd == "calibrate":
        return _run_calibrate(args)

    raise AssertionError(f"Unhandled cmd: {args.cmd}")
