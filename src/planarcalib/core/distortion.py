from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from planarcalib.config import DISTORTION_NAMES


@dataclass(frozen=True)
class DistortionModel:
    """
    Brown-Conrady distortion with the rational radial term, on normalized camera
    coordinates (x=X/Z, y=Y/Z).

    Coefficient order follows OpenCV:
      k1, k2, p1, p2, k3, k4, k5, k6

    radial = (1 + k1 r^2 + k2 r^4 + k3 r^6) / (1 + k4 r^2 + k5 r^4 + k6 r^6)
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0
    k4: float = 0.0
    k5: float = 0.0
    k6: float = 0.0

    @classmethod
    def from_vector(cls, coeffs: np.ndarray) -> "DistortionModel":
        c = np.zeros((8,), dtype=np.float64)
        v = np.asarray(coeffs, dtype=np.float64).reshape(-1)
        if v.size > 8:
            raise ValueError("at most 8 distortion coefficients are supported")
        c[: v.size] = v
        return cls(*(float(x) for x in c))

    def vector(self) -> np.ndarray:
        return np.array([getattr(self, n) for n in DISTORTION_NAMES], dtype=np.float64)

    def _radial(self, r2: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        r4 = r2 * r2
        r6 = r4 * r2
        num = 1.0 + self.k1 * r2 + self.k2 * r4 + self.k3 * r6
        den = 1.0 + self.k4 * r2 + self.k5 * r4 + self.k6 * r6
        return num, den, num / den

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        _num, _den, radial = self._radial(r2)
        xy = x * y
        xd = x * radial + 2.0 * self.p1 * xy + self.p2 * (r2 + 2.0 * x * x)
        yd = y * radial + self.p1 * (r2 + 2.0 * y * y) + 2.0 * self.p2 * xy
        return xd, yd

    def distort_with_jacobians(
        self, x: np.ndarray, y: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Distort and return the derivatives needed by the refiner.

        Returns (xd, yd, d_xy, d_coeffs):
          d_xy: (N,2,2) = d(xd,yd)/d(x,y)
          d_coeffs: (N,2,8) = d(xd,yd)/d(k1,k2,p1,p2,k3,k4,k5,k6)
        """
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        y = np.asarray(y, dtype=np.float64).reshape(-1)
        r2 = x * x + y * y
        r4 = r2 * r2
        r6 = r4 * r2
        num, den, radial = self._radial(r2)
        xy = x * y
        xd = x * radial + 2.0 * self.p1 * xy + self.p2 * (r2 + 2.0 * x * x)
        yd = y * radial + self.p1 * (r2 + 2.0 * y * y) + 2.0 * self.p2 * xy

        dnum = self.k1 + 2.0 * self.k2 * r2 + 3.0 * self.k3 * r4
        dden = self.k4 + 2.0 * self.k5 * r2 + 3.0 * self.k6 * r4
        g = dnum / den - num * dden / (den * den)  # d radial / d r^2

        d_xy = np.empty((x.size, 2, 2), dtype=np.float64)
        d_xy[:, 0, 0] = radial + 2.0 * x * x * g + 2.0 * self.p1 * y + 6.0 * self.p2 * x
        d_xy[:, 0, 1] = 2.0 * x * y * g + 2.0 * self.p1 * x + 2.0 * self.p2 * y
        d_xy[:, 1, 0] = 2.0 * x * y * g + 2.0 * self.p1 * x + 2.0 * self.p2 * y
        d_xy[:, 1, 1] = radial + 2.0 * y * y * g + 6.0 * self.p1 * y + 2.0 * self.p2 * x

        inv_den = 1.0 / den
        d_radial = np.stack(
            [r2 * inv_den, r4 * inv_den, r6 * inv_den, -num * r2 * inv_den**2, -num * r4 * inv_den**2, -num * r6 * inv_den**2],
            axis=-1,
        )  # (N,6) for k1,k2,k3,k4,k5,k6
        d_coeffs = np.zeros((x.size, 2, 8), dtype=np.float64)
        radial_cols = (0, 1, 4, 5, 6, 7)
        for j, col in enumerate(radial_cols):
            d_coeffs[:, 0, col] = x * d_radial[:, j]
            d_coeffs[:, 1, col] = y * d_radial[:, j]
        d_coeffs[:, 0, 2] = 2.0 * xy
        d_coeffs[:, 0, 3] = r2 + 2.0 * x * x
        d_coeffs[:, 1, 2] = r2 + 2.0 * y * y
        d_coeffs[:, 1, 3] = 2.0 * xy
        return xd, yd, d_xy, d_coeffs

