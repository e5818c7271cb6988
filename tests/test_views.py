from __future__ import annotations

import numpy as np
import pytest

from planarcalib.config import CalibrationConfig
from planarcalib.errors import DetectionInputError, InsufficientViewsError
from planarcalib.target import chessboard_target
from planarcalib.views import Detected, NotDetected, build_views, make_view


def _detected(n: int, seed: int) -> Detected:
    rng = np.random.default_rng(seed)
    return Detected(points=rng.uniform(10, 400, size=(n, 2)), image_size=(640, 480))


def test_make_view_copies_and_freezes():
    t = chessboard_target(3, 4, 10.0)
    uv = np.arange(8, dtype=np.float64).reshape(4, 2)
    v = make_view(2, [0, 1, 5, 11], uv, (640, 480), t)
    uv[0, 0] = 100.0
    assert v.uv_px[0, 0] == 0.0
    assert not v.uv_px.flags.writeable
    obs = list(v.observations())
    assert [o.target_index for o in obs] == [0, 1, 5, 11]
    assert obs[2].uv == (4.0, 5.0)
    assert all(o.view == 2 for o in obs)


@pytest.mark.parametrize(
    "indices",
    [[0, 1, 2, 12], [0, 1, 1, 2], [-1, 0, 1, 2]],
)
def test_make_view_rejects_bad_indices(indices):
    t = chessboard_target(3, 4, 10.0)
    with pytest.raises(DetectionInputError):
        make_view(0, indices, np.zeros((4, 2)), (640, 480), t)


def test_make_view_rejects_non_finite():
    t = chessboard_target(3, 4, 10.0)
    uv = np.zeros((4, 2))
    uv[1, 1] = np.nan
    with pytest.raises(DetectionInputError):
        make_view(0, [0, 1, 2, 3], uv, (640, 480), t)


def test_build_views_drops_failed_and_malformed():
    t = chessboard_target(3, 4, 10.0)
    cfg = CalibrationConfig(rows=3, cols=4, square_size=10.0)
    outcomes = [_detected(12, 0), NotDetected("blurred"), _detected(11, 1), _detected(12, 2), _detected(12, 3)]
    views = build_views(outcomes, t, cfg)
    assert [v.index for v in views] == [0, 3, 4]


def test_build_views_below_floor():
    t = chessboard_target(3, 4, 10.0)
    cfg = CalibrationConfig(rows=3, cols=4, square_size=10.0)
    with pytest.raises(InsufficientViewsError) as ei:
        build_views([_detected(12, 0), NotDetected(), _detected(12, 1)], t, cfg)
    assert ei.value.n_valid == 2
    assert ei.value.n_required == 3
    assert ei.value.dropped == (1,)


def test_build_views_require_all():
    t = chessboard_target(3, 4, 10.0)
    cfg = CalibrationConfig(rows=3, cols=4, square_size=10.0, require_all_views=True)
    outcomes = [_detected(12, i) for i in range(4)] + [NotDetected()]
    with pytest.raises(InsufficientViewsError):
        build_views(outcomes, t, cfg)
