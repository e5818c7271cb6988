from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Sequence, Union

import numpy as np

from planarcalib.config import CalibrationConfig
from planarcalib.errors import DetectionInputError, InsufficientViewsError
from planarcalib.target import TargetModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detected:
    """Detector output for one image: corners in target order."""

    points: np.ndarray  # (rows*cols, 2)
    image_size: tuple[int, int]  # (width, height)


@dataclass(frozen=True)
class NotDetected:
    reason: str = ""


DetectionOutcome = Union[Detected, NotDetected]


@dataclass(frozen=True)
class Observation:
    view: int
    target_index: int
    uv: tuple[float, float]


@dataclass(frozen=True)
class View:
    """
    Observations of one image.

    `target_indices[i]` is the target point seen at pixel `uv_px[i]`.
    """

    index: int
    image_size: tuple[int, int]
    target_indices: np.ndarray  # (N,) int
    uv_px: np.ndarray  # (N,2)

    @property
    def n_observations(self) -> int:
        return int(self.target_indices.shape[0])

    def observations(self) -> Iterator[Observation]:
        for j, uv in zip(self.target_indices.tolist(), self.uv_px.tolist()):
            yield Observation(view=self.index, target_index=int(j), uv=(float(uv[0]), float(uv[1])))


def make_view(
    index: int,
    target_indices: Sequence[int] | np.ndarray,
    uv_px: np.ndarray,
    image_size: tuple[int, int],
    target: TargetModel,
) -> View:
    idx = np.array(target_indices, dtype=np.int64).reshape(-1)
    uv = np.array(uv_px, dtype=np.float64).reshape(-1, 2)
    if idx.shape[0] != uv.shape[0]:
        raise DetectionInputError("target_indices and uv_px sizes differ", view=index, stage="views")
    if idx.size and (int(idx.min()) < 0 or int(idx.max()) >= target.n_points):
        raise DetectionInputError(f"target index out of range [0, {target.n_points})", view=index, stage="views")
    if np.unique(idx).size != idx.size:
        raise DetectionInputError("duplicate target index", view=index, stage="views")
    if not np.all(np.isfinite(uv)):
        raise DetectionInputError("non-finite pixel coordinates", view=index, stage="views")
    w, h = int(image_size[0]), int(image_size[1])
    if w <= 0 or h <= 0:
        raise DetectionInputError("image size must be > 0", view=index, stage="views")
    idx.setflags(write=False)
    uv.setflags(write=False)
    return View(index=int(index), image_size=(w, h), target_indices=idx, uv_px=uv)


def view_from_detection(index: int, outcome: Detected, target: TargetModel) -> View:
    pts = np.asarray(outcome.points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] != target.n_points:
        raise DetectionInputError(
            f"expected {target.n_points} points, got {pts.shape[0]}", view=index, stage="views"
        )
    return make_view(index, np.arange(target.n_points), pts, outcome.image_size, target)


def check_view_floor(n_valid: int, cfg: CalibrationConfig, dropped: Sequence[int], stage: str) -> None:
    if n_valid < cfg.min_views:
        raise InsufficientViewsError(
            f"{n_valid} valid views, at least {cfg.min_views} required (dropped: {list(dropped)})",
            n_valid=n_valid,
            n_required=cfg.min_views,
            dropped=tuple(dropped),
            stage=stage,
        )


def build_views(
    outcomes: Sequence[DetectionOutcome],
    target: TargetModel,
    cfg: CalibrationConfig,
) -> list[View]:
    """
    Turn detector outcomes into validated views.

    Failed detections and malformed inputs are dropped (logged); the run is
    aborted if the surviving count is below `cfg.min_views`, or on any drop when
    `cfg.require_all_views` is set.
    """
    views: list[View] = []
    dropped: list[int] = []
    for i, outcome in enumerate(outcomes):
        if isinstance(outcome, NotDetected):
            logger.warning("view %d: detection failed%s", i, f" ({outcome.reason})" if outcome.reason else "")
            dropped.append(i)
            continue
        try:
            views.append(view_from_detection(i, outcome, target))
        except DetectionInputError as e:
            logger.warning("dropping %s", e)
            dropped.append(i)

    if cfg.require_all_views and dropped:
        raise InsufficientViewsError(
            f"{len(dropped)} of {len(outcomes)} requested views failed: {dropped}",
            n_valid=len(views),
            n_required=len(outcomes),
            dropped=tuple(dropped),
            stage="views",
        )
    check_view_floor(len(views), cfg, dropped, stage="views")
    return views
