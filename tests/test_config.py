from __future__ import annotations

import json

import pytest

from planarcalib.config import CalibrationConfig, ConfigValidationError, load_config, parse_config


def test_parse_config_ok():
    cfg = parse_config(
        {
            "rows": 6,
            "cols": 9,
            "square_size": 50,
            "extended": True,
            "grid_width": 400,
            "fix_aspect_ratio": True,
            "aspect_ratio": 1.0,
            "fixed_distortion": ["p1", "p2", "k4", "k5", "k6"],
            "principal_point": [319.5, 239.5],
        }
    )
    assert cfg.n_points == 54
    assert cfg.grid_width == 400.0
    assert cfg.principal_point == (319.5, 239.5)
    assert cfg.free_distortion() == (0, 1, 4)


def test_to_dict_roundtrip():
    cfg = CalibrationConfig(extended=True, grid_width=410.0, release="grid", principal_point=(300.0, 200.0))
    assert parse_config(cfg.to_dict()) == cfg


def test_parse_config_rejects_unknown_keys():
    with pytest.raises(ConfigValidationError):
        parse_config({"rows": 6, "colums": 9})


def test_extended_requires_grid_width():
    with pytest.raises(ConfigValidationError):
        parse_config({"extended": True})


def test_rejects_unknown_distortion_name():
    with pytest.raises(ConfigValidationError):
        parse_config({"fixed_distortion": ["k7"]})


def test_load_config(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"rows": 5, "cols": 7, "max_iterations": 20}), encoding="utf-8")
    cfg = load_config(path)
    assert (cfg.rows, cfg.cols, cfg.max_iterations) == (5, 7, 20)


@pytest.mark.parametrize("key", ["extended", "fix_aspect_ratio", "fix_principal_point", "require_all_views"])
def test_flags_must_be_json_booleans(key):
    with pytest.raises(ConfigValidationError):
        parse_config({key: "false", "grid_width": 400})
    assert getattr(parse_config({key: False}), key) is False


def test_extended_defaults_to_grid_release():
    assert parse_config({"extended": True, "grid_width": 400}).release == "grid"
