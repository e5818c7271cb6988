from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from planarcalib.config import CalibrationConfig
from planarcalib.core.camera import IntrinsicModel, Pose
from planarcalib.core.distortion import DistortionModel
from planarcalib.core.rotation import left_jacobian, rotvec_to_matrix, skew
from planarcalib.errors import NumericallySingularError
from planarcalib.target import TargetModel
from planarcalib.views import View

logger = logging.getLogger(__name__)


class RefinerState(str, Enum):
    UNCONVERGED = "unconverged"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    TIME_BUDGET_EXHAUSTED = "time_budget_exhausted"


@dataclass(frozen=True)
class ParameterLayout:
    """
    Layout of the reduced parameter vector:

      [intrinsics | free distortion coeffs | 6 per view (rvec, tvec) | free point axes]

    Intrinsics are (fy) with a fixed aspect ratio, else (fx, fy), followed by
    (cx, cy) unless the principal point is fixed. Fixed quantities have no slot.
    """

    n_views: int
    aspect_ratio: float | None
    principal_point: tuple[float, float] | None  # set when fixed
    dist_free: tuple[int, ...]
    point_slots: tuple[tuple[int, int], ...]  # (target index, axis) per point slot

    @classmethod
    def build(
        cls,
        cfg: CalibrationConfig,
        target: TargetModel,
        n_views: int,
        principal_point: tuple[float, float],
    ) -> "ParameterLayout":
        mask = target.free_mask()
        slots = tuple((int(j), int(a)) for j in range(mask.shape[0]) for a in range(3) if mask[j, a])
        return cls(
            n_views=int(n_views),
            aspect_ratio=float(cfg.aspect_ratio) if cfg.fix_aspect_ratio else None,
            principal_point=(float(principal_point[0]), float(principal_point[1])) if cfg.fix_principal_point else None,
            dist_free=cfg.free_distortion(),
            point_slots=slots,
        )

    @property
    def n_intrinsics(self) -> int:
        return (1 if self.aspect_ratio is not None else 2) + (0 if self.principal_point is not None else 2)

    @property
    def dist_offset(self) -> int:
        return self.n_intrinsics

    @property
    def pose_offset(self) -> int:
        return self.n_intrinsics + len(self.dist_free)

    @property
    def point_offset(self) -> int:
        return self.pose_offset + 6 * self.n_views

    @property
    def size(self) -> int:
        return self.point_offset + len(self.point_slots)

    def shared_indices(self) -> np.ndarray:
        """Global indices of the columns shared by every view."""
        return np.r_[np.arange(self.pose_offset), np.arange(self.point_offset, self.size)].astype(np.int64)

    def pose_indices(self, k: int) -> np.ndarray:
        return np.arange(self.pose_offset + 6 * k, self.pose_offset + 6 * k + 6, dtype=np.int64)

    def pack(
        self,
        intrinsics: IntrinsicModel,
        distortion: DistortionModel,
        poses: Sequence[Pose],
        target_xyz: np.ndarray,
    ) -> np.ndarray:
        if len(poses) != self.n_views:
            raise ValueError("pose count does not match layout")
        p = np.zeros((self.size,), dtype=np.float64)
        intr = [intrinsics.fy] if self.aspect_ratio is not None else [intrinsics.fx, intrinsics.fy]
        if self.principal_point is None:
            intr += [intrinsics.cx, intrinsics.cy]
        p[: self.n_intrinsics] = intr
        p[self.dist_offset : self.pose_offset] = distortion.vector()[list(self.dist_free)]
        for k, pose in enumerate(poses):
            base = self.pose_offset + 6 * k
            p[base : base + 3] = np.asarray(pose.rvec, dtype=np.float64).reshape(3)
            p[base + 3 : base + 6] = np.asarray(pose.tvec, dtype=np.float64).reshape(3)
        xyz = np.asarray(target_xyz, dtype=np.float64).reshape(-1, 3)
        for s, (j, a) in enumerate(self.point_slots):
            p[self.point_offset + s] = xyz[j, a]
        return p

    def intrinsics(self, p: np.ndarray) -> IntrinsicModel:
        if self.aspect_ratio is not None:
            fy = float(p[0])
            rest = p[1 : self.n_intrinsics]
        else:
            fy = float(p[1])
            rest = p[2 : self.n_intrinsics]
        if self.principal_point is not None:
            cx, cy = self.principal_point
        else:
            cx, cy = float(rest[0]), float(rest[1])
        if self.aspect_ratio is not None:
            return IntrinsicModel.with_fy(fy, cx, cy, self.aspect_ratio)
        return IntrinsicModel(fx=float(p[0]), fy=fy, cx=cx, cy=cy)

    def distortion(self, p: np.ndarray) -> DistortionModel:
        c = np.zeros((8,), dtype=np.float64)
        c[list(self.dist_free)] = p[self.dist_offset : self.pose_offset]
        return DistortionModel.from_vector(c)

    def pose(self, p: np.ndarray, k: int, view: int) -> Pose:
        base = self.pose_offset + 6 * k
        rvec = p[base : base + 3].copy()
        tvec = p[base + 3 : base + 6].copy()
        rvec.setflags(write=False)
        tvec.setflags(write=False)
        return Pose(view=int(view), rvec=rvec, tvec=tvec)

    def points(self, p: np.ndarray, nominal_xyz: np.ndarray) -> np.ndarray:
        xyz = np.array(nominal_xyz, dtype=np.float64).reshape(-1, 3)
        for s, (j, a) in enumerate(self.point_slots):
            xyz[j, a] = p[self.point_offset + s]
        return xyz


@dataclass
class _Partial:
    """Normal-equation contribution of a group of views."""

    A_ss: np.ndarray
    g_s: np.ndarray
    cost: float
    pose_blocks: list[tuple[int, np.ndarray, np.ndarray, np.ndarray]] = field(default_factory=list)


class ReprojectionProblem:
    """
    Sum of squared reprojection errors over all observations, as a function of
    the reduced parameter vector described by `layout`.
    """

    def __init__(self, views: Sequence[View], target: TargetModel, layout: ParameterLayout) -> None:
        if len(views) != layout.n_views:
            raise ValueError("view count does not match layout")
        self.views = tuple(views)
        self.layout = layout
        self.nominal_xyz = target.coordinates()
        self.n_observations = int(sum(v.n_observations for v in self.views))

        # Shared-column position of each (point, axis); -1 when fixed.
        n_pose_free = layout.pose_offset
        self._point_col = np.full((target.n_points, 3), -1, dtype=np.int64)
        for s, (j, a) in enumerate(layout.point_slots):
            self._point_col[j, a] = n_pose_free + s
        self._shared = layout.shared_indices()

    @property
    def n_shared(self) -> int:
        return int(self._shared.size)

    def _view_residuals(
        self, p: np.ndarray, k: int, with_jacobian: bool
    ) -> tuple[np.ndarray, np.ndarray | None, np.ndarray | None]:
        lay = self.layout
        view = self.views[k]
        intr = lay.intrinsics(p)
        dist = lay.distortion(p)
        base = lay.pose_offset + 6 * k
        rvec = p[base : base + 3]
        tvec = p[base + 3 : base + 6]
        R = rotvec_to_matrix(rvec)

        xyz = lay.points(p, self.nominal_xyz) if lay.point_slots else self.nominal_xyz
        X = xyz[view.target_indices]
        RX = X @ R.T
        Pc = RX + tvec.reshape(1, 3)
        Z = Pc[:, 2]
        if np.any(Z <= 1e-12):
            return np.full((2 * view.n_observations,), np.inf), None, None
        x = Pc[:, 0] / Z
        y = Pc[:, 1] / Z

        if not with_jacobian:
            xd, yd = dist.distort(x, y)
            uv = np.stack([intr.fx * xd + intr.cx, intr.fy * yd + intr.cy], axis=1)
            return (uv - view.uv_px).reshape(-1), None, None

        xd, yd, d_xy, d_coeffs = dist.distort_with_jacobians(x, y)
        uv = np.stack([intr.fx * xd + intr.cx, intr.fy * yd + intr.cy], axis=1)
        r = (uv - view.uv_px).reshape(-1)

        n = view.n_observations
        F = np.array([intr.fx, intr.fy], dtype=np.float64).reshape(1, 2, 1)
        d_uv_dxy = F * d_xy  # (n,2,2)
        inv_z = 1.0 / Z
        d_xy_dP = np.zeros((n, 2, 3), dtype=np.float64)
        d_xy_dP[:, 0, 0] = inv_z
        d_xy_dP[:, 0, 2] = -x * inv_z
        d_xy_dP[:, 1, 1] = inv_z
        d_xy_dP[:, 1, 2] = -y * inv_z
        d_uv_dP = d_uv_dxy @ d_xy_dP  # (n,2,3)

        J_pose = np.empty((n, 2, 6), dtype=np.float64)
        J_pose[:, :, :3] = d_uv_dP @ (-skew(RX) @ left_jacobian(rvec))
        J_pose[:, :, 3:] = d_uv_dP

        J_sh = np.zeros((n, 2, self.n_shared), dtype=np.float64)
        col = 0
        if lay.aspect_ratio is not None:
            J_sh[:, 0, col] = lay.aspect_ratio * xd
            J_sh[:, 1, col] = yd
            col += 1
        else:
            J_sh[:, 0, col] = xd
            J_sh[:, 1, col + 1] = yd
            col += 2
        if lay.principal_point is None:
            J_sh[:, 0, col] = 1.0
            J_sh[:, 1, col + 1] = 1.0
            col += 2
        if lay.dist_free:
            J_sh[:, :, col : col + len(lay.dist_free)] = (F * d_coeffs)[:, :, list(lay.dist_free)]

        if lay.point_slots:
            cols = self._point_col[view.target_indices]  # (n,3)
            obs_i, axis_i = np.nonzero(cols >= 0)
            if obs_i.size:
                d_uv_dX = d_uv_dP @ R  # (n,2,3)
                J_sh[obs_i, :, cols[obs_i, axis_i]] = d_uv_dX[obs_i, :, axis_i]

        return r, J_sh.reshape(2 * n, self.n_shared), J_pose.reshape(2 * n, 6)

    def residuals(self, p: np.ndarray) -> np.ndarray:
        return np.concatenate([self._view_residuals(p, k, False)[0] for k in range(len(self.views))])

    def cost(self, p: np.ndarray) -> float:
        r = self.residuals(p)
        return float(r @ r) if np.all(np.isfinite(r)) else float("inf")

    def view_costs(self, p: np.ndarray) -> np.ndarray:
        out = np.empty((len(self.views),), dtype=np.float64)
        for k in range(len(self.views)):
            r = self._view_residuals(p, k, False)[0]
            out[k] = float(r @ r)
        return out

    def jacobian(self, p: np.ndarray) -> np.ndarray:
        """Dense Jacobian of `residuals` (mainly for inspection and tests)."""
        blocks = []
        for k in range(len(self.views)):
            _r, J_sh, J_pose = self._view_residuals(p, k, True)
            if J_sh is None or J_pose is None:
                raise NumericallySingularError("point behind camera", view=self.views[k].index, stage="refine")
            J = np.zeros((J_sh.shape[0], self.layout.size), dtype=np.float64)
            J[:, self._shared] = J_sh
            J[:, self.layout.pose_indices(k)] = J_pose
            blocks.append(J)
        return np.concatenate(blocks, axis=0)

    def _accumulate(self, p: np.ndarray, ks: Sequence[int]) -> _Partial:
        part = _Partial(
            A_ss=np.zeros((self.n_shared, self.n_shared), dtype=np.float64),
            g_s=np.zeros((self.n_shared,), dtype=np.float64),
            cost=0.0,
        )
        for k in ks:
            r, J_sh, J_pose = self._view_residuals(p, k, True)
            if J_sh is None or J_pose is None:
                raise NumericallySingularError("point behind camera", view=self.views[k].index, stage="refine")
            part.A_ss += J_sh.T @ J_sh
            part.g_s += J_sh.T @ r
            part.cost += float(r @ r)
            part.pose_blocks.append((k, J_sh.T @ J_pose, J_pose.T @ J_pose, J_pose.T @ r))
        return part

    def normal_equations(self, p: np.ndarray, executor: Executor | None = None, n_chunks: int = 1) -> tuple[np.ndarray, np.ndarray, float]:
        """
        (J^T J, J^T r, r^T r) at `p`. Views are split into `n_chunks` groups; each
        group yields a partial sum, merged here in a single pass.
        """
        ks = list(range(len(self.views)))
        if executor is None or n_chunks <= 1:
            partials = [self._accumulate(p, ks)]
        else:
            chunks = [c.tolist() for c in np.array_split(np.asarray(ks), min(n_chunks, len(ks))) if c.size]
            partials = list(executor.map(lambda c: self._accumulate(p, c), chunks))

        lay = self.layout
        A = np.zeros((lay.size, lay.size), dtype=np.float64)
        g = np.zeros((lay.size,), dtype=np.float64)
        cost = 0.0
        sh = self._shared
        for part in partials:
            A[np.ix_(sh, sh)] += part.A_ss
            g[sh] += part.g_s
            cost += part.cost
            for k, A_sp, A_pp, g_p in part.pose_blocks:
                pk = lay.pose_indices(k)
                A[np.ix_(sh, pk)] += A_sp
                A[np.ix_(pk, sh)] += A_sp.T
                A[np.ix_(pk, pk)] += A_pp
                g[pk] += g_p
        return A, g, cost


@dataclass(frozen=True)
class IterationInfo:
    iteration: int
    cost: float
    damping: float
    step_norm: float
    intrinsics: IntrinsicModel


@dataclass(frozen=True)
class RefinementOutcome:
    params: np.ndarray
    layout: ParameterLayout
    state: RefinerState
    termination: str
    iterations: int
    cost_history: tuple[float, ...]
    elapsed_s: float

    @property
    def converged(self) -> bool:
        return self.state is RefinerState.CONVERGED


def _damped_step(A: np.ndarray, g: np.ndarray, mu: float) -> np.ndarray:
    """
    Solve (A + mu diag(A)) delta = -g with Marquardt scaling (Cholesky).
    Raises LinAlgError when the damped system is not positive definite.
    """
    d = np.diag(A).copy()
    dmax = float(np.max(d)) if d.size else 0.0
    if not np.isfinite(dmax) or dmax <= 0.0:
        raise LinAlgError("normal matrix has no positive diagonal")
    d = np.maximum(d, 1e-12 * dmax)
    s = 1.0 / np.sqrt(d)
    As = A * s[:, None] * s[None, :]
    As[np.diag_indices_from(As)] += mu
    c = cho_factor(As, lower=False, check_finite=True)
    y = cho_solve(c, -g * s)
    delta = y * s
    if not np.all(np.isfinite(delta)):
        raise LinAlgError("non-finite step")
    return delta


def levenberg_marquardt(
    problem: ReprojectionProblem,
    p0: np.ndarray,
    cfg: CalibrationConfig,
    *,
    callback: Callable[[IterationInfo], None] | None = None,
) -> RefinementOutcome:
    """
    Damped Gauss-Newton on the reprojection problem.

    A step is kept only if it strictly lowers the cost, so `cost_history` is
    non-increasing. Damping grows by `damping_up` after a rejected or unsolvable
    step and shrinks by `damping_down` after an accepted one.
    """
    state = RefinerState.UNCONVERGED
    p = np.asarray(p0, dtype=np.float64).copy()
    cost = problem.cost(p)
    if not np.isfinite(cost):
        raise NumericallySingularError("initial estimate does not project every point", stage="refine")

    history = [cost]
    mu = float(cfg.initial_damping)
    iterations = 0
    termination = ""
    t0 = time.monotonic()

    executor: ThreadPoolExecutor | None = ThreadPoolExecutor(max_workers=cfg.workers) if cfg.workers > 1 else None
    try:
        state = RefinerState.ITERATING
        while state is RefinerState.ITERATING:
            if iterations >= cfg.max_iterations:
                state, termination = RefinerState.MAX_ITERATIONS_REACHED, "max_iterations"
                break
            if cfg.max_time_s is not None and time.monotonic() - t0 > cfg.max_time_s:
                state, termination = RefinerState.TIME_BUDGET_EXHAUSTED, "max_time"
                break

            A, g, _ = problem.normal_equations(p, executor, n_chunks=cfg.workers)

            while True:
                try:
                    delta = _damped_step(A, g, mu)
                except LinAlgError as e:
                    mu *= cfg.damping_up
                    if mu > cfg.max_damping:
                        raise NumericallySingularError(
                            f"damped normal equations unsolvable at maximum damping: {e}", stage="refine"
                        ) from e
                    continue

                step_norm = float(np.linalg.norm(delta))
                if step_norm <= cfg.xtol * (float(np.linalg.norm(p)) + cfg.xtol):
                    state, termination = RefinerState.CONVERGED, "xtol"
                    break

                p_new = p + delta
                cost_new = problem.cost(p_new)
                if np.isfinite(cost_new) and cost_new < cost:
                    break
                mu *= cfg.damping_up
                if mu > cfg.max_damping:
                    state, termination = RefinerState.CONVERGED, "damping_limit"
                    break

            if state is not RefinerState.ITERATING:
                break

            iterations += 1
            decrease = cost - cost_new
            prev = cost
            p, cost = p_new, cost_new
            history.append(cost)
            mu = max(mu * cfg.damping_down, 1e-15)
            logger.debug("LM iter %d: cost=%.6e step=%.3e damping=%.1e", iterations, cost, step_norm, mu)
            if callback is not None:
                callback(
                    IterationInfo(
                        iteration=iterations,
                        cost=cost,
                        damping=mu,
                        step_norm=step_norm,
                        intrinsics=problem.layout.intrinsics(p),
                    )
                )

            if decrease <= cfg.atol:
                state, termination = RefinerState.CONVERGED, "atol"
            elif decrease <= cfg.ftol * prev:
                state, termination = RefinerState.CONVERGED, "ftol"
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    return RefinementOutcome(
        params=p,
        layout=problem.layout,
        state=state,
        termination=termination,
        iterations=iterations,
        cost_history=tuple(history),
        elapsed_s=time.monotonic() - t0,
    )
