from __future__ import annotations

import warnings

import numpy as np
import pytest

from planarcalib import calibrate, calibrate_views
from planarcalib.calib.refine import RefinerState
from planarcalib.config import CalibrationConfig
from planarcalib.core.camera import IntrinsicModel
from planarcalib.core.distortion import DistortionModel
from planarcalib.errors import DegenerateViewError, InsufficientViewsError, NonConvergenceWarning
from planarcalib.sim.synthetic import SyntheticCamera, grid_points, synthesize_views
from planarcalib.target import chessboard_target
from planarcalib.views import Detected, NotDetected, build_views, make_view

CAMERA = SyntheticCamera(intrinsics=IntrinsicModel(fx=800.0, fy=800.0, cx=319.5, cy=239.5))


def _outcomes(camera: SyntheticCamera, n_views: int, *, noise_px: float, seed: int, xyz: np.ndarray | None = None):
    if xyz is None:
        xyz = grid_points(6, 9, 50.0)
    sim = synthesize_views(xyz, camera, n_views, rng=np.random.default_rng(seed), noise_px=noise_px)
    return list(sim.outcomes), sim.poses


def test_noisy_views_converge():
    outcomes, _ = _outcomes(CAMERA, 13, noise_px=0.1, seed=0)
    res = calibrate(outcomes, CalibrationConfig())
    assert res.converged
    assert res.status is RefinerState.CONVERGED
    assert res.iterations <= 50
    assert res.rms_px < 0.2
    assert res.rms_px <= res.initial_rms_px
    assert res.intrinsics.fx == pytest.approx(800.0, rel=5e-3)
    assert res.intrinsics.fy == pytest.approx(800.0, rel=5e-3)
    assert res.views == tuple(range(13))
    assert set(res.per_view_rms_px) == set(range(13))
    assert res.n_observations == 13 * 54


def test_noise_free_roundtrip_recovers_camera():
    camera = SyntheticCamera(
        intrinsics=IntrinsicModel(fx=810.0, fy=790.0, cx=330.0, cy=245.0),
        distortion=DistortionModel(k1=-0.1, k2=0.02, p1=0.001, p2=-0.0005),
    )
    outcomes, poses = _outcomes(camera, 13, noise_px=0.0, seed=1)
    cfg = CalibrationConfig(fixed_distortion=("k3", "k4", "k5", "k6"))
    res = calibrate(outcomes, cfg)

    assert res.converged
    assert res.rms_px < 1e-6
    intr = res.intrinsics
    assert intr.fx == pytest.approx(810.0, rel=1e-6)
    assert intr.fy == pytest.approx(790.0, rel=1e-6)
    assert intr.cx == pytest.approx(330.0, rel=1e-6)
    assert intr.cy == pytest.approx(245.0, rel=1e-6)
    assert np.allclose(res.distortion.vector(), camera.distortion.vector(), atol=1e-6)
    for got, want in zip(res.poses, poses):
        assert np.allclose(got.R(), want.R(), atol=1e-6)
        assert np.allclose(got.tvec, want.tvec, rtol=1e-6)


def test_cost_history_is_monotone():
    camera = SyntheticCamera(
        intrinsics=IntrinsicModel(fx=780.0, fy=800.0, cx=310.0, cy=250.0),
        distortion=DistortionModel(k1=-0.15, k2=0.05),
    )
    outcomes, _ = _outcomes(camera, 10, noise_px=0.2, seed=2)
    costs: list[float] = []
    res = calibrate(outcomes, CalibrationConfig(), callback=lambda info: costs.append(info.cost))
    hist = res.cost_history
    assert len(hist) == res.iterations + 1
    assert all(b <= a for a, b in zip(hist, hist[1:]))
    assert list(hist[1:]) == costs


def test_fixed_aspect_ratio_holds_every_iteration():
    camera = SyntheticCamera(intrinsics=IntrinsicModel(fx=840.0, fy=800.0, cx=320.0, cy=240.0))
    outcomes, _ = _outcomes(camera, 8, noise_px=0.1, seed=3)
    cfg = CalibrationConfig(fix_aspect_ratio=True, aspect_ratio=1.05)
    ratios: list[tuple[float, float]] = []
    res = calibrate(outcomes, cfg, callback=lambda info: ratios.append((info.intrinsics.fx, info.intrinsics.fy)))
    assert ratios
    assert all(fx == 1.05 * fy for fx, fy in ratios)
    assert res.intrinsics.fx == 1.05 * res.intrinsics.fy
    assert res.intrinsics.fy == pytest.approx(800.0, rel=5e-3)


def test_fixed_principal_point_defaults_to_image_centre():
    outcomes, _ = _outcomes(CAMERA, 6, noise_px=0.1, seed=4)
    res = calibrate(outcomes, CalibrationConfig(fix_principal_point=True))
    assert (res.intrinsics.cx, res.intrinsics.cy) == (319.5, 239.5)


def test_three_views_are_enough():
    outcomes, _ = _outcomes(CAMERA, 3, noise_px=0.05, seed=5)
    res = calibrate(outcomes, CalibrationConfig())
    assert len(res.poses) == 3
    assert res.rms_px < 0.2


def test_two_views_are_rejected():
    outcomes, _ = _outcomes(CAMERA, 2, noise_px=0.05, seed=6)
    with pytest.raises(InsufficientViewsError) as ei:
        calibrate(outcomes, CalibrationConfig())
    assert ei.value.n_valid == 2


def test_failed_detection_is_dropped_unless_strict():
    outcomes, _ = _outcomes(CAMERA, 6, noise_px=0.1, seed=7)
    outcomes[2] = NotDetected("no corners")
    res = calibrate(outcomes, CalibrationConfig())
    assert res.views == (0, 1, 3, 4, 5)

    with pytest.raises(InsufficientViewsError) as ei:
        calibrate(outcomes, CalibrationConfig(require_all_views=True))
    assert ei.value.dropped == (2,)


def test_degenerate_view_is_screened_out():
    target = chessboard_target(6, 9, 50.0)
    outcomes, _ = _outcomes(CAMERA, 6, noise_px=0.05, seed=8)
    views = build_views(outcomes, target, CalibrationConfig())
    # Only the first row: collinear points.
    row = views[1]
    views[1] = make_view(1, np.arange(9), row.uv_px[:9], row.image_size, target)
    # Three points cannot define a homography.
    views[3] = make_view(3, [0, 10, 20], views[3].uv_px[[0, 10, 20]], views[3].image_size, target)

    res = calibrate_views(views, target, CalibrationConfig())
    assert res.views == (0, 2, 4, 5)

    with pytest.raises(DegenerateViewError) as ei:
        calibrate_views(views, target, CalibrationConfig(degenerate_policy="abort"))
    assert ei.value.view == 1


def test_partial_views_are_used():
    target = chessboard_target(6, 9, 50.0)
    outcomes, _ = _outcomes(CAMERA, 6, noise_px=0.05, seed=9)
    views = build_views(outcomes, target, CalibrationConfig())
    keep = np.arange(0, 54, 2)
    views[0] = make_view(0, keep, views[0].uv_px[keep], views[0].image_size, target)
    res = calibrate_views(views, target, CalibrationConfig())
    assert res.n_observations == 5 * 54 + 27
    assert res.converged


def test_image_size_mismatch_is_dropped():
    outcomes, _ = _outcomes(CAMERA, 5, noise_px=0.05, seed=10)
    o = outcomes[4]
    outcomes[4] = Detected(points=o.points, image_size=(1280, 960))
    res = calibrate(outcomes, CalibrationConfig())
    assert res.views == (0, 1, 2, 3)


def test_extended_anchor_recovers_measured_width():
    # Board printed with an exact 50 mm pitch, but the width was mis-measured.
    outcomes, _ = _outcomes(CAMERA, 13, noise_px=0.1, seed=11)
    cfg = CalibrationConfig(extended=True, grid_width=450.0, release="anchor")
    res = calibrate(outcomes, cfg)
    assert res.converged
    assert set(res.free_points) == {8}
    x, y, z = res.free_points[8]
    assert x == pytest.approx(400.0, abs=1.0)
    assert y == pytest.approx(0.0, abs=1.0)
    assert z == pytest.approx(0.0, abs=3.0)
    assert res.rms_px < 0.2


def test_extended_grid_fixes_anisotropic_board():
    xyz = grid_points(6, 9, 50.0, 49.0)
    outcomes, _ = _outcomes(CAMERA, 13, noise_px=0.05, seed=12, xyz=xyz)

    plain = calibrate(outcomes, CalibrationConfig(square_size=50.0))
    cfg = CalibrationConfig(square_size=56.25, extended=True, grid_width=400.0, release="grid", max_iterations=200)
    res = calibrate(outcomes, cfg)

    assert res.converged
    assert res.rms_px < 0.1
    assert res.rms_px < plain.rms_px
    assert res.target_points[0].tolist() == [0.0, 0.0, 0.0]
    assert res.target_points[8].tolist() == [400.0, 0.0, 0.0]
    x, y, z = res.free_points[53]
    assert x == pytest.approx(400.0, abs=1.0)
    assert y == pytest.approx(245.0, abs=1.0)
    assert z == 0.0
    assert np.allclose(res.target_points, xyz, atol=3.0)


def test_parallel_accumulation_matches_serial():
    outcomes, _ = _outcomes(CAMERA, 9, noise_px=0.1, seed=13)
    serial = calibrate(outcomes, CalibrationConfig())
    threaded = calibrate(outcomes, CalibrationConfig(workers=3))
    assert threaded.converged
    assert threaded.rms_px == pytest.approx(serial.rms_px, rel=1e-6)
    assert threaded.intrinsics.fx == pytest.approx(serial.intrinsics.fx, rel=1e-6)
    assert threaded.intrinsics.cy == pytest.approx(serial.intrinsics.cy, rel=1e-6)


def test_iteration_cap_warns():
    camera = SyntheticCamera(
        intrinsics=IntrinsicModel(fx=800.0, fy=800.0, cx=319.5, cy=239.5),
        distortion=DistortionModel(k1=-0.2, k2=0.05),
    )
    outcomes, _ = _outcomes(camera, 8, noise_px=0.1, seed=14)
    with pytest.warns(NonConvergenceWarning):
        res = calibrate(outcomes, CalibrationConfig(max_iterations=1))
    assert res.status is RefinerState.MAX_ITERATIONS_REACHED
    assert not res.converged
    assert res.iterations == 1


def test_time_budget_warns():
    outcomes, _ = _outcomes(CAMERA, 8, noise_px=0.1, seed=15)
    with pytest.warns(NonConvergenceWarning):
        res = calibrate(outcomes, CalibrationConfig(max_time_s=1e-9))
    assert res.status is RefinerState.TIME_BUDGET_EXHAUSTED


def test_converged_run_does_not_warn():
    outcomes, _ = _outcomes(CAMERA, 6, noise_px=0.1, seed=16)
    with warnings.catch_warnings():
        warnings.simplefilter("error", NonConvergenceWarning)
        calibrate(outcomes, CalibrationConfig())


def test_image_size_mismatch_aborts_when_strict():
    outcomes, _ = _outcomes(CAMERA, 5, noise_px=0.05, seed=10)
    outcomes[2] = Detected(points=outcomes[2].points, image_size=(1280, 960))
    with pytest.raises(InsufficientViewsError) as ei:
        calibrate(outcomes, CalibrationConfig(require_all_views=True))
    assert ei.value.dropped == (2,)
    assert ei.value.stage == "screening"


def test_extended_default_corrects_uniformly_scaled_board():
    # Nominal 56.25 mm squares (450 mm wide), printed at 50 mm (measured 400 mm).
    outcomes, _ = _outcomes(CAMERA, 13, noise_px=0.1, seed=17)
    plain = calibrate(outcomes, CalibrationConfig(square_size=56.25))
    cfg = CalibrationConfig(square_size=56.25, extended=True, grid_width=400.0, max_iterations=200)
    assert cfg.release == "grid"
    res = calibrate(outcomes, cfg)

    assert res.converged
    assert res.rms_px < plain.rms_px
    assert res.target_points[8].tolist() == [400.0, 0.0, 0.0]
    last_row = res.target_points[45:54]
    assert np.allclose(last_row[:, 0], np.arange(9) * 50.0, atol=1.5)
    assert np.allclose(last_row[:, 1], 250.0, atol=1.5)
    x, y, _z = res.free_points[53]
    assert x == pytest.approx(400.0, abs=1.0)
    assert y == pytest.approx(250.0, abs=1.0)


def test_result_is_read_only():
    outcomes, _ = _outcomes(CAMERA, 6, noise_px=0.1, seed=18)
    res = calibrate(outcomes, CalibrationConfig())
    with pytest.raises(ValueError):
        res.poses[0].rvec[0] = 123.0
    with pytest.raises(ValueError):
        res.poses[0].tvec[2] = -1.0
    with pytest.raises(ValueError):
        res.target_points[0, 0] = 1.0
    with pytest.raises(TypeError):
        res.per_view_rms_px[0] = -1.0
    with pytest.raises(TypeError):
        res.free_points[8] = (0.0, 0.0, 0.0)
