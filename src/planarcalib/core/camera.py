from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from planarcalib.core.distortion import DistortionModel
from planarcalib.core.rotation import rotvec_to_matrix


@dataclass(frozen=True)
class IntrinsicModel:
    """
    Zero-skew pinhole intrinsics. When `aspect_ratio` is set, fx == aspect_ratio * fy
    is enforced by construction (see `with_fy`).
    """

    fx: float
    fy: float
    cx: float
    cy: float
    aspect_ratio: float | None = None

    @classmethod
    def with_fy(cls, fy: float, cx: float, cy: float, aspect_ratio: float) -> "IntrinsicModel":
        return cls(fx=float(aspect_ratio) * float(fy), fy=float(fy), cx=float(cx), cy=float(cy), aspect_ratio=float(aspect_ratio))

    def K(self) -> np.ndarray:
        return np.array(
            [[float(self.fx), 0.0, float(self.cx)], [0.0, float(self.fy), float(self.cy)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )


@dataclass(frozen=True)
class Pose:
    """Target frame -> camera frame: X_cam = R(rvec) X + tvec."""

    view: int
    rvec: np.ndarray  # (3,)
    tvec: np.ndarray  # (3,)

    def R(self) -> np.ndarray:
        return rotvec_to_matrix(self.rvec)

    def transform(self, XYZ: np.ndarray) -> np.ndarray:
        XYZ = np.asarray(XYZ, dtype=np.float64).reshape(-1, 3)
        return XYZ @ self.R().T + np.asarray(self.tvec, dtype=np.float64).reshape(1, 3)


def project_points(
    intrinsics: IntrinsicModel,
    distortion: DistortionModel,
    pose: Pose,
    XYZ: np.ndarray,
) -> np.ndarray:
    """
    Forward model: pose transform, perspective divide, distortion, intrinsics.
    Points behind or on the camera plane project to NaN.
    """
    P = pose.transform(XYZ)
    uv = np.full((P.shape[0], 2), np.nan, dtype=np.float64)
    Z = P[:, 2]
    good = np.isfinite(Z) & (np.abs(Z) > 1e-12)
    if not np.any(good):
        return uv
    x = P[good, 0] / Z[good]
    y = P[good, 1] / Z[good]
    xd, yd = distortion.distort(x, y)
    uv[good, 0] = intrinsics.fx * xd + intrinsics.cx
    uv[good, 1] = intrinsics.fy * yd + intrinsics.cy
    return uv
