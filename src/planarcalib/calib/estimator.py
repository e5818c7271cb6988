from __future__ import annotations

import logging
import warnings
from typing import Callable, Sequence

import numpy as np

from planarcalib.calib.homography import estimate_homography
from planarcalib.calib.linear_init import initialize
from planarcalib.calib.refine import IterationInfo, ParameterLayout, ReprojectionProblem, levenberg_marquardt
from planarcalib.calib.report import CalibrationResult, build_result
from planarcalib.config import CalibrationConfig, validate_config
from planarcalib.errors import DegenerateViewError, DetectionInputError, InsufficientViewsError, NonConvergenceWarning
from planarcalib.target import TargetModel, target_from_config
from planarcalib.views import DetectionOutcome, View, build_views, check_view_floor

logger = logging.getLogger(__name__)


def screen_views(
    views: Sequence[View],
    target: TargetModel,
    cfg: CalibrationConfig,
) -> tuple[list[View], list[np.ndarray]]:
    """
    Compute one homography per view, dropping (or, with
    degenerate_policy="abort", raising on) views that cannot support one.
    With require_all_views, a view whose image size disagrees aborts the run
    like a failed detection.
    """
    if not target.is_planar():
        raise ValueError("linear initialization needs a planar target (z = 0)")
    if not views:
        check_view_floor(0, cfg, (), stage="screening")

    xy = target.coordinates()[:, :2]
    image_size = views[0].image_size
    kept: list[View] = []
    homographies: list[np.ndarray] = []
    dropped: list[int] = []
    rejected: list[int] = []
    for view in views:
        if view.image_size != image_size:
            e = DetectionInputError(
                f"image size {view.image_size} differs from {image_size}", view=view.index, stage="screening"
            )
            logger.warning("dropping %s", e)
            dropped.append(view.index)
            rejected.append(view.index)
            continue
        try:
            H = estimate_homography(xy[view.target_indices], view.uv_px, view=view.index)
        except DegenerateViewError as e:
            if cfg.degenerate_policy == "abort":
                raise
            logger.warning("dropping %s", e)
            dropped.append(view.index)
            continue
        kept.append(view)
        homographies.append(H)

    if cfg.require_all_views and rejected:
        raise InsufficientViewsError(
            f"{len(rejected)} of {len(views)} views have inconsistent input: {rejected}",
            n_valid=len(kept),
            n_required=len(views),
            dropped=tuple(rejected),
            stage="screening",
        )
    check_view_floor(len(kept), cfg, dropped, stage="screening")
    return kept, homographies


def calibrate_views(
    views: Sequence[View],
    target: TargetModel,
    cfg: CalibrationConfig,
    *,
    callback: Callable[[IterationInfo], None] | None = None,
) -> CalibrationResult:
    cfg = validate_config(cfg)
    kept, homographies = screen_views(views, target, cfg)

    init = initialize(kept, homographies, cfg)
    logger.debug(
        "linear init: fx=%.3f fy=%.3f cx=%.3f cy=%.3f",
        init.intrinsics.fx,
        init.intrinsics.fy,
        init.intrinsics.cx,
        init.intrinsics.cy,
    )

    layout = ParameterLayout.build(cfg, target, len(kept), (init.intrinsics.cx, init.intrinsics.cy))
    problem = ReprojectionProblem(kept, target, layout)
    p0 = layout.pack(init.intrinsics, init.distortion, init.poses, target.coordinates())
    initial_cost = problem.cost(p0)

    outcome = levenberg_marquardt(problem, p0, cfg, callback=callback)
    result = build_result(problem, outcome, target, cfg, initial_cost=initial_cost)

    if not result.converged:
        msg = (
            f"refinement stopped without converging ({result.status.value}) after "
            f"{result.iterations} iterations, rms {result.rms_px:.4f} px"
        )
        logger.warning(msg)
        warnings.warn(msg, NonConvergenceWarning, stacklevel=2)

    logger.info(
        "calibrated %d views (%d observations): rms %.4f px, %s after %d iterations",
        len(kept),
        problem.n_observations,
        result.rms_px,
        result.termination,
        result.iterations,
    )
    return result


def calibrate(
    outcomes: Sequence[DetectionOutcome],
    cfg: CalibrationConfig,
    *,
    target: TargetModel | None = None,
    callback: Callable[[IterationInfo], None] | None = None,
) -> CalibrationResult:
    """
    Full pipeline: detector outcomes -> views -> linear init -> LM refinement.

    `target` defaults to the chessboard described by `cfg`.
    """
    cfg = validate_config(cfg)
    if target is None:
        target = target_from_config(cfg)
    views = build_views(outcomes, target, cfg)
    return calibrate_views(views, target, cfg, callback=callback)
