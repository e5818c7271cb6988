from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Sequence

import numpy as np

from planarcalib.calib.refine import RefinementOutcome, ReprojectionProblem, RefinerState
from planarcalib.config import DISTORTION_NAMES, CalibrationConfig
from planarcalib.core.camera import IntrinsicModel, Pose
from planarcalib.core.distortion import DistortionModel
from planarcalib.target import TargetModel

SCHEMA_VERSION = "planarcalib.result.v0"


@dataclass(frozen=True)
class CalibrationResult:
    intrinsics: IntrinsicModel
    distortion: DistortionModel
    poses: tuple[Pose, ...]
    free_points: Mapping[int, tuple[float, float, float]]
    target_points: np.ndarray  # (M,3) target coordinates used by the final model
    rms_px: float
    per_view_rms_px: Mapping[int, float]
    initial_rms_px: float
    status: RefinerState
    termination: str
    iterations: int
    cost_history: tuple[float, ...]
    n_observations: int
    config: CalibrationConfig

    @property
    def converged(self) -> bool:
        return self.status is RefinerState.CONVERGED

    @property
    def camera_matrix(self) -> np.ndarray:
        return self.intrinsics.K()

    @property
    def views(self) -> tuple[int, ...]:
        return tuple(p.view for p in self.poses)

    def to_record(self) -> dict[str, Any]:
        """JSON-friendly record: everything needed to reuse and reproduce the result."""
        coeffs = self.distortion.vector()
        rec: dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "intrinsic": [float(x) for x in self.camera_matrix.reshape(-1).tolist()],
            "distortion": {
                "count": int(coeffs.size),
                "names": list(DISTORTION_NAMES),
                "values": [float(x) for x in coeffs.tolist()],
            },
            "rms_px": float(self.rms_px),
            "initial_rms_px": float(self.initial_rms_px),
            "per_view_rms_px": {str(k): float(v) for k, v in self.per_view_rms_px.items()},
            "status": self.status.value,
            "converged": bool(self.converged),
            "termination": self.termination,
            "iterations": int(self.iterations),
            "n_observations": int(self.n_observations),
            "views": [int(v) for v in self.views],
            "poses": [
                {
                    "view": int(p.view),
                    "rvec": [float(x) for x in np.asarray(p.rvec).reshape(3).tolist()],
                    "tvec": [float(x) for x in np.asarray(p.tvec).reshape(3).tolist()],
                }
                for p in self.poses
            ],
            "config": self.config.to_dict(),
        }
        if self.config.extended:
            rec["free_points"] = {str(k): [float(c) for c in v] for k, v in sorted(self.free_points.items())}
        return rec


def rms_from_cost(cost: float, n_observations: int) -> float:
    """sqrt(total squared error / number of observed points)."""
    if n_observations <= 0:
        raise ValueError("no observations")
    return float(np.sqrt(max(float(cost), 0.0) / float(n_observations)))


def build_result(
    problem: ReprojectionProblem,
    outcome: RefinementOutcome,
    target: TargetModel,
    cfg: CalibrationConfig,
    *,
    initial_cost: float,
) -> CalibrationResult:
    lay = outcome.layout
    p = outcome.params
    poses = tuple(lay.pose(p, k, v.index) for k, v in enumerate(problem.views))
    xyz = lay.points(p, target.coordinates())
    xyz.setflags(write=False)
    free = {int(j): (float(xyz[j, 0]), float(xyz[j, 1]), float(xyz[j, 2])) for j in target.free_indices()}

    view_costs = problem.view_costs(p)
    per_view = {
        int(v.index): rms_from_cost(float(c), v.n_observations) for v, c in zip(problem.views, view_costs)
    }
    total = float(np.sum(view_costs))
    return CalibrationResult(
        intrinsics=lay.intrinsics(p),
        distortion=lay.distortion(p),
        poses=poses,
        free_points=MappingProxyType(free),
        target_points=xyz,
        rms_px=rms_from_cost(total, problem.n_observations),
        per_view_rms_px=MappingProxyType(per_view),
        initial_rms_px=rms_from_cost(initial_cost, problem.n_observations),
        status=outcome.state,
        termination=outcome.termination,
        iterations=outcome.iterations,
        cost_history=outcome.cost_history,
        n_observations=problem.n_observations,
        config=cfg,
    )


def summarize(result: CalibrationResult, *, corner_indices: Sequence[int] = ()) -> list[str]:
    """Human-readable lines for console reporting."""
    lines = [
        f"intrinsic: {np.array2string(result.camera_matrix, precision=4, suppress_small=True)}",
        f"distortion: {np.array2string(result.distortion.vector(), precision=6)}",
        f"rms: {result.rms_px:.6f} px (linear init {result.initial_rms_px:.4f} px)",
        f"status: {result.status.value} ({result.termination}) after {result.iterations} iterations",
    ]
    for j in corner_indices:
        x, y, z = (float(c) for c in result.target_points[j])
        lines.append(f"board point {j}: [{x:.4f}, {y:.4f}, {z:.4f}]")
    return lines
