from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from planarcalib.config import CalibrationConfig
from planarcalib.core.camera import IntrinsicModel, Pose
from planarcalib.core.distortion import DistortionModel
from planarcalib.core.rotation import matrix_to_rotvec, polar_rotation
from planarcalib.errors import NumericallySingularError
from planarcalib.views import View


@dataclass(frozen=True)
class LinearEstimate:
    """Distortion-free starting point for the refiner (never a final result)."""

    intrinsics: IntrinsicModel
    distortion: DistortionModel
    poses: tuple[Pose, ...]


def default_principal_point(image_size: tuple[int, int]) -> tuple[float, float]:
    w, h = int(image_size[0]), int(image_size[1])
    return (w - 1) / 2.0, (h - 1) / 2.0


def _vij(H: np.ndarray, i: int, j: int) -> np.ndarray:
    # b = (B11, B12, B22, B13, B23, B33)
    return np.array(
        [
            H[0, i] * H[0, j],
            H[0, i] * H[1, j] + H[1, i] * H[0, j],
            H[1, i] * H[1, j],
            H[2, i] * H[0, j] + H[0, i] * H[2, j],
            H[2, i] * H[1, j] + H[1, i] * H[2, j],
            H[2, i] * H[2, j],
        ],
        dtype=np.float64,
    )


def _reduction(fix_pp: bool, aspect_ratio: float | None) -> np.ndarray:
    """
    Linear map M with b = M q, q being the unknowns left once skew (B12=0) and
    the configured constraints are substituted.
    """
    cols: list[np.ndarray] = []

    def e(*pairs: tuple[int, float]) -> np.ndarray:
        v = np.zeros((6,), dtype=np.float64)
        for k, val in pairs:
            v[k] = val
        return v

    if aspect_ratio is None:
        cols += [e((0, 1.0)), e((2, 1.0))]
    else:
        # fx = a fy  =>  B11 = B22 / a^2
        cols.append(e((0, 1.0 / (aspect_ratio * aspect_ratio)), (2, 1.0)))
    if not fix_pp:
        cols += [e((3, 1.0)), e((4, 1.0))]
    cols.append(e((5, 1.0)))
    return np.stack(cols, axis=1)


def estimate_intrinsics(
    homographies: Sequence[np.ndarray],
    image_size: tuple[int, int],
    cfg: CalibrationConfig,
    *,
    cond_tol: float = 1e-12,
) -> IntrinsicModel:
    """
    Zhang's closed-form intrinsics from plane homographies (zero skew).

    Image coordinates are re-centred on the principal point (fixed) or the image
    centre (free) and scaled to unit range before building the constraint
    system. Both constraints per view are row-normalized.
    """
    if not homographies:
        raise NumericallySingularError("no homographies", stage="linear_init")

    w, h = int(image_size[0]), int(image_size[1])
    if cfg.fix_principal_point and cfg.principal_point is not None:
        c = (float(cfg.principal_point[0]), float(cfg.principal_point[1]))
    else:
        c = default_principal_point(image_size)
    s = 0.5 * float(w + h)
    N = np.array([[1.0 / s, 0.0, -c[0] / s], [0.0, 1.0 / s, -c[1] / s], [0.0, 0.0, 1.0]], dtype=np.float64)

    aspect = float(cfg.aspect_ratio) if cfg.fix_aspect_ratio else None
    M = _reduction(cfg.fix_principal_point, aspect)

    rows: list[np.ndarray] = []
    for H in homographies:
        Hn = N @ np.asarray(H, dtype=np.float64).reshape(3, 3)
        Hn = Hn / np.linalg.norm(Hn)
        for v in (_vij(Hn, 0, 1), _vij(Hn, 0, 0) - _vij(Hn, 1, 1)):
            nv = float(np.linalg.norm(v))
            if nv > 0.0:
                rows.append(v / nv)
    V = np.stack(rows, axis=0) @ M

    n_unknowns = M.shape[1]
    if V.shape[0] < n_unknowns - 1:
        raise NumericallySingularError(
            f"{V.shape[0]} constraints for {n_unknowns - 1} intrinsic degrees of freedom", stage="linear_init"
        )
    _u, sv, Vt = np.linalg.svd(V)
    # The solution is the one-dimensional null space; the next singular value must be clear of zero.
    if n_unknowns >= 2 and sv[n_unknowns - 2] <= cond_tol * sv[0]:
        raise NumericallySingularError("intrinsic constraint system is rank deficient", stage="linear_init")

    b = M @ Vt[-1]
    if b[0] < 0:
        b = -b
    B11, _B12, B22, B13, B23, B33 = (float(x) for x in b)
    if B11 <= 0.0 or B22 <= 0.0:
        raise NumericallySingularError("recovered conic is not positive definite", stage="linear_init")

    cx_n = -B13 / B11
    cy_n = -B23 / B22
    lam = B33 - B13 * B13 / B11 - B23 * B23 / B22
    if not np.isfinite(lam) or lam <= 0.0:
        raise NumericallySingularError("recovered conic is not positive definite", stage="linear_init")

    fy = s * float(np.sqrt(lam / B22))
    cx = s * cx_n + c[0]
    cy = s * cy_n + c[1]
    if aspect is not None:
        return IntrinsicModel.with_fy(fy, cx, cy, aspect)
    fx = s * float(np.sqrt(lam / B11))
    return IntrinsicModel(fx=fx, fy=fy, cx=cx, cy=cy)


def pose_from_homography(K: np.ndarray, H: np.ndarray, view: int) -> Pose:
    """Decompose K^-1 H into a rotation (re-orthogonalized) and a translation."""
    A = np.linalg.solve(np.asarray(K, dtype=np.float64), np.asarray(H, dtype=np.float64))
    n1 = float(np.linalg.norm(A[:, 0]))
    n2 = float(np.linalg.norm(A[:, 1]))
    if n1 < 1e-15 or n2 < 1e-15:
        raise NumericallySingularError("homography columns vanish under K^-1", view=view, stage="linear_init")
    lam = 2.0 / (n1 + n2)
    # Target must lie in front of the camera.
    if A[2, 2] < 0:
        lam = -lam
    r1 = lam * A[:, 0]
    r2 = lam * A[:, 1]
    R = polar_rotation(np.column_stack([r1, r2, np.cross(r1, r2)]))
    t = lam * A[:, 2]
    return Pose(view=int(view), rvec=matrix_to_rotvec(R), tvec=t)


def initialize(
    views: Sequence[View],
    homographies: Sequence[np.ndarray],
    cfg: CalibrationConfig,
) -> LinearEstimate:
    if len(views) != len(homographies):
        raise ValueError("one homography per view is required")
    intrinsics = estimate_intrinsics(homographies, views[0].image_size, cfg)
    K = intrinsics.K()
    poses = tuple(pose_from_homography(K, H, v.index) for v, H in zip(views, homographies))
    return LinearEstimate(intrinsics=intrinsics, distortion=DistortionModel(), poses=poses)
