from __future__ import annotations

import numpy as np

from planarcalib.errors import DegenerateViewError

MIN_POINTS = 4


def normalize_2d(pts: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Hartley normalization: centroid to origin, mean distance sqrt(2).
    Returns (normalized points, 3x3 similarity T).
    """
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    mean = pts.mean(axis=0)
    dif = pts - mean
    mean_dist = float(np.mean(np.sqrt(np.sum(dif * dif, axis=1))))
    s = 1.0 if mean_dist < 1e-12 else np.sqrt(2.0) / mean_dist
    T = np.array([[s, 0.0, -s * mean[0]], [0.0, s, -s * mean[1]], [0.0, 0.0, 1.0]], dtype=np.float64)
    return dif * s, T


def collinearity(pts: np.ndarray) -> float:
    """Ratio of the smallest to the largest principal spread (0 for collinear points)."""
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    s = np.linalg.svd(pts - pts.mean(axis=0), compute_uv=False)
    if s.size < 2 or s[0] <= 0.0:
        return 0.0
    return float(s[1] / s[0])


def estimate_homography(
    target_xy: np.ndarray,
    image_uv: np.ndarray,
    *,
    view: int | None = None,
    collinear_tol: float = 1e-4,
    rank_tol: float = 1e-10,
) -> np.ndarray:
    """
    Homography H (3x3, H[2,2] = 1) with [u,v,1]^T ~ H [x,y,1]^T, by normalized DLT.

    Raises DegenerateViewError when the correspondences cannot define a unique,
    invertible homography.
    """
    target_xy = np.asarray(target_xy, dtype=np.float64).reshape(-1, 2)
    image_uv = np.asarray(image_uv, dtype=np.float64).reshape(-1, 2)
    n = target_xy.shape[0]
    if n != image_uv.shape[0]:
        raise DegenerateViewError("mismatched correspondence arrays", view=view, stage="homography")
    if n < MIN_POINTS:
        raise DegenerateViewError(f"{n} points, at least {MIN_POINTS} required", view=view, stage="homography")
    if collinearity(target_xy) < collinear_tol:
        raise DegenerateViewError("target points are collinear", view=view, stage="homography")
    if collinearity(image_uv) < collinear_tol:
        raise DegenerateViewError("image points are collinear", view=view, stage="homography")

    Xn, TX = normalize_2d(target_xy)
    xn, Tx = normalize_2d(image_uv)
    X, Y = Xn[:, 0], Xn[:, 1]
    u, v = xn[:, 0], xn[:, 1]
    zeros = np.zeros_like(X)
    ones = np.ones_like(X)
    A = np.empty((2 * n, 9), dtype=np.float64)
    A[0::2] = np.stack([-X, -Y, -ones, zeros, zeros, zeros, u * X, u * Y, u], axis=1)
    A[1::2] = np.stack([zeros, zeros, zeros, -X, -Y, -ones, v * X, v * Y, v], axis=1)

    _u, s, Vt = np.linalg.svd(A)
    # A unique solution needs a one-dimensional null space.
    if s[7] <= rank_tol * s[0]:
        raise DegenerateViewError("DLT system is rank deficient", view=view, stage="homography")

    Hn = Vt[-1].reshape(3, 3)
    H = np.linalg.inv(Tx) @ Hn @ TX
    if abs(H[2, 2]) < 1e-15 or not np.all(np.isfinite(H)):
        raise DegenerateViewError("homography is not normalizable", view=view, stage="homography")
    H = H / H[2, 2]
    if np.linalg.cond(H) > 1e12:
        raise DegenerateViewError("homography is ill-conditioned", view=view, stage="homography")
    return H


def apply_homography(H: np.ndarray, xy: np.ndarray) -> np.ndarray:
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    q = np.c_[xy, np.ones(xy.shape[0])] @ np.asarray(H, dtype=np.float64).T
    return q[:, :2] / q[:, 2:3]
