from __future__ import annotations

import numpy as np
import pytest

from planarcalib.target import chessboard_target


def test_chessboard_layout_is_row_major():
    t = chessboard_target(6, 9, 50.0)
    xyz = t.coordinates()
    assert xyz.shape == (54, 3)
    assert tuple(xyz[0]) == (0.0, 0.0, 0.0)
    assert tuple(xyz[8]) == (400.0, 0.0, 0.0)
    assert tuple(xyz[9]) == (0.0, 50.0, 0.0)
    assert tuple(xyz[-1]) == (400.0, 250.0, 0.0)
    assert t.free_indices() == ()
    assert t.is_planar()


def test_extended_anchor_moves_and_frees_one_point():
    t = chessboard_target(6, 9, 56.25, extended=True, grid_width=400.0, release="anchor")
    assert t.anchor_index == 8
    assert t.points[8].xyz == (400.0, 0.0, 0.0)
    assert t.points[7].xyz == (7 * 56.25, 0.0, 0.0)
    assert t.free_indices() == (8,)
    assert t.points[8].free_axes == (True, True, True)


def test_extended_grid_release_keeps_gauge_points():
    t = chessboard_target(6, 9, 50.0, extended=True, grid_width=400.0, release="grid")
    mask = t.free_mask()
    assert not mask[0].any()
    assert not mask[8].any()
    assert tuple(mask[-1]) == (True, True, False)
    assert mask[1:8].all() and mask[9:-1].all()
    assert len(t.free_indices()) == 52


def test_extended_requires_positive_width():
    with pytest.raises(ValueError):
        chessboard_target(6, 9, 50.0, extended=True)


def test_with_coordinates_keeps_flags():
    t = chessboard_target(3, 4, 10.0, extended=True, grid_width=31.0)
    xyz = t.coordinates() * 2.0
    t2 = t.with_coordinates(xyz)
    assert np.allclose(t2.coordinates(), xyz)
    assert t2.free_indices() == t.free_indices()
