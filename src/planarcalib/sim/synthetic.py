from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from planarcalib.core.camera import IntrinsicModel, Pose, project_points
from planarcalib.core.distortion import DistortionModel
from planarcalib.core.rotation import matrix_to_rotvec
from planarcalib.views import Detected


@dataclass(frozen=True)
class SyntheticCamera:
    intrinsics: IntrinsicModel
    distortion: DistortionModel = DistortionModel()
    image_size: tuple[int, int] = (640, 480)


@dataclass(frozen=True)
class SyntheticViews:
    outcomes: tuple[Detected, ...]
    poses: tuple[Pose, ...]  # ground truth, target -> camera


def grid_points(rows: int, cols: int, pitch_x: float, pitch_y: float | None = None) -> np.ndarray:
    """(rows*cols, 3) row-major board points; `pitch_y` defaults to `pitch_x`."""
    py = float(pitch_x if pitch_y is None else pitch_y)
    return np.array(
        [(c * float(pitch_x), r * py, 0.0) for r in range(int(rows)) for c in range(int(cols))],
        dtype=np.float64,
    )


def _rot_x(a: float) -> np.ndarray:
    ca, sa = np.cos(a), np.sin(a)
    return np.array([[1, 0, 0], [0, ca, -sa], [0, sa, ca]], dtype=np.float64)


def _rot_y(a: float) -> np.ndarray:
    ca, sa = np.cos(a), np.sin(a)
    return np.array([[ca, 0, sa], [0, 1, 0], [-sa, 0, ca]], dtype=np.float64)


def _rot_z(a: float) -> np.ndarray:
    ca, sa = np.cos(a), np.sin(a)
    return np.array([[ca, -sa, 0], [sa, ca, 0], [0, 0, 1]], dtype=np.float64)


def _in_image(uv: np.ndarray, w: int, h: int, margin: float) -> bool:
    return bool(
        np.all(np.isfinite(uv))
        and np.all(uv[:, 0] >= margin)
        and np.all(uv[:, 0] <= w - 1 - margin)
        and np.all(uv[:, 1] >= margin)
        and np.all(uv[:, 1] <= h - 1 - margin)
    )


def synthesize_views(
    target_xyz: np.ndarray,
    camera: SyntheticCamera,
    n_views: int,
    *,
    rng: np.random.Generator,
    noise_px: float = 0.0,
    fill: tuple[float, float] = (0.45, 0.7),
    max_tilt: float = 0.6,
    min_tilt: float = 0.15,
    margin_px: float = 10.0,
    max_attempts: int = 200,
) -> SyntheticViews:
    """
    Observe a planar board from `n_views` random poses.

    The board faces the camera with a random tilt (|tilt| >= min_tilt, so views
    constrain the focal length) and covers a `fill` fraction of the image width.
    Poses are rejection-sampled until every point lands inside the image.
    """
    target_xyz = np.asarray(target_xyz, dtype=np.float64).reshape(-1, 3)
    w, h = int(camera.image_size[0]), int(camera.image_size[1])
    center = 0.5 * (target_xyz.min(axis=0) + target_xyz.max(axis=0))
    extent = float(np.max(target_xyz.max(axis=0) - target_xyz.min(axis=0)))
    fx = float(camera.intrinsics.fx)

    outcomes: list[Detected] = []
    poses: list[Pose] = []
    for view in range(int(n_views)):
        for _attempt in range(int(max_attempts)):
            tilt_x = float(rng.uniform(-max_tilt, max_tilt))
            tilt_y = float(rng.uniform(-max_tilt, max_tilt))
            if np.hypot(tilt_x, tilt_y) < min_tilt:
                continue
            roll = float(rng.uniform(-0.3, 0.3))
            R = _rot_z(roll) @ _rot_y(tilt_y) @ _rot_x(tilt_x)
            distance = fx * extent / (float(rng.uniform(*fill)) * w)
            offset = np.array(
                [rng.uniform(-0.1, 0.1) * distance, rng.uniform(-0.1, 0.1) * distance, distance], dtype=np.float64
            )
            t = offset - R @ center
            pose = Pose(view=view, rvec=matrix_to_rotvec(R), tvec=t)
            uv = project_points(camera.intrinsics, camera.distortion, pose, target_xyz)
            if _in_image(uv, w, h, margin_px):
                break
        else:
            raise RuntimeError(f"could not place view {view} inside the image after {max_attempts} attempts")

        if noise_px > 0.0:
            uv = uv + rng.normal(scale=float(noise_px), size=uv.shape)
        outcomes.append(Detected(points=uv, image_size=(w, h)))
        poses.append(pose)

    return SyntheticViews(outcomes=tuple(outcomes), poses=tuple(poses))
