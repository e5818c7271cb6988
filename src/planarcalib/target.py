from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from planarcalib.config import CalibrationConfig, Release

_FIXED = (False, False, False)
_FREE = (True, True, True)


@dataclass(frozen=True)
class TargetPoint:
    index: int
    xyz: tuple[float, float, float]
    free_axes: tuple[bool, bool, bool] = _FIXED

    @property
    def free(self) -> bool:
        return any(self.free_axes)


@dataclass(frozen=True)
class TargetModel:
    """
    Nominal feature points of a planar target, in the target frame.

    Points are stored row-major (index = row * cols + col) so that a detector
    returning corners in board order maps 1:1 onto `points`.
    """

    rows: int
    cols: int
    points: tuple[TargetPoint, ...]

    @property
    def n_points(self) -> int:
        return len(self.points)

    @property
    def anchor_index(self) -> int:
        """Last point of the first row: carries the measured grid width."""
        return int(self.cols) - 1

    def coordinates(self) -> np.ndarray:
        return np.array([p.xyz for p in self.points], dtype=np.float64).reshape(-1, 3)

    def free_indices(self) -> tuple[int, ...]:
        return tuple(p.index for p in self.points if p.free)

    def free_mask(self) -> np.ndarray:
        """(M,3) boolean mask of released coordinates."""
        return np.array([p.free_axes for p in self.points], dtype=bool).reshape(-1, 3)

    def is_planar(self, tol: float = 1e-9) -> bool:
        return bool(np.all(np.abs(self.coordinates()[:, 2]) <= tol))

    def with_coordinates(self, xyz: np.ndarray) -> "TargetModel":
        xyz = np.asarray(xyz, dtype=np.float64).reshape(self.n_points, 3)
        pts = tuple(
            TargetPoint(index=p.index, xyz=(float(c[0]), float(c[1]), float(c[2])), free_axes=p.free_axes)
            for p, c in zip(self.points, xyz)
        )
        return TargetModel(rows=self.rows, cols=self.cols, points=pts)


def chessboard_target(
    rows: int,
    cols: int,
    square_size: float,
    *,
    extended: bool = False,
    grid_width: float | None = None,
    release: Release = "grid",
) -> TargetModel:
    """
    Inner-corner grid of a chessboard: point (row, col) sits at
    (col * square_size, row * square_size, 0).

    With `extended`, the anchor (last point of the first row) is moved so that
    its distance to the first point equals the independently measured
    `grid_width`. Released coordinates then depend on `release`:

    - "anchor": only the anchor is free.
    - "grid": every point is free except the gauge points (first point and
      anchor fully fixed, last point with z fixed).
    """
    rows = int(rows)
    cols = int(cols)
    if rows < 2 or cols < 2:
        raise ValueError("rows and cols must be >= 2")
    if square_size <= 0:
        raise ValueError("square_size must be > 0")

    xyz = [(c * float(square_size), r * float(square_size), 0.0) for r in range(rows) for c in range(cols)]
    free = [_FIXED] * len(xyz)

    if extended:
        if grid_width is None or grid_width <= 0:
            raise ValueError("extended calibration needs a measured grid_width > 0")
        anchor = cols - 1
        xyz[anchor] = (xyz[0][0] + float(grid_width), xyz[anchor][1], xyz[anchor][2])
        if release == "anchor":
            free[anchor] = _FREE
        elif release == "grid":
            free = [_FREE] * len(xyz)
            free[0] = _FIXED
            free[anchor] = _FIXED
            free[-1] = (True, True, False)
        else:
            raise ValueError(f"unknown release mode: {release}")

    points = tuple(TargetPoint(index=i, xyz=p, free_axes=f) for i, (p, f) in enumerate(zip(xyz, free)))
    return TargetModel(rows=rows, cols=cols, points=points)


def target_from_config(cfg: CalibrationConfig) -> TargetModel:
    return chessboard_target(
        cfg.rows,
        cfg.cols,
        cfg.square_size,
        extended=cfg.extended,
        grid_width=cfg.grid_width,
        release=cfg.release,
    )
