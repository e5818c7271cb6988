from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Literal

DISTORTION_NAMES: tuple[str, ...] = ("k1", "k2", "p1", "p2", "k3", "k4", "k5", "k6")

Release = Literal["anchor", "grid"]
DegeneratePolicy = Literal["drop", "abort"]


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class CalibrationConfig:
    # Board geometry.
    rows: int = 6
    cols: int = 9
    square_size: float = 50.0
    extended: bool = False
    grid_width: float | None = None
    release: Release = "grid"

    # Model reduction.
    fix_aspect_ratio: bool = False
    aspect_ratio: float = 1.0
    fix_principal_point: bool = False
    principal_point: tuple[float, float] | None = None
    fixed_distortion: tuple[str, ...] = ("k4", "k5", "k6")

    # Levenberg-Marquardt.
    ftol: float = 1e-10
    atol: float = 1e-14
    xtol: float = 1e-12
    max_iterations: int = 100
    max_time_s: float | None = None
    initial_damping: float = 1e-3
    damping_up: float = 10.0
    damping_down: float = 0.1
    max_damping: float = 1e16
    workers: int = 1

    # View screening.
    min_views: int = 3
    require_all_views: bool = False
    degenerate_policy: DegeneratePolicy = "drop"

    @property
    def n_points(self) -> int:
        return int(self.rows) * int(self.cols)

    def free_distortion(self) -> tuple[int, ...]:
        """Indices (into k1,k2,p1,p2,k3,k4,k5,k6) of the optimised coefficients."""
        fixed = set(self.fixed_distortion)
        return tuple(i for i, name in enumerate(DISTORTION_NAMES) if name not in fixed)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["fixed_distortion"] = list(self.fixed_distortion)
        if self.principal_point is not None:
            d["principal_point"] = [float(c) for c in self.principal_point]
        return d


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def validate_config(cfg: CalibrationConfig) -> CalibrationConfig:
    _require(cfg.rows >= 2 and cfg.cols >= 2, "rows and cols must be >= 2")
    _require(cfg.square_size > 0.0, "square_size must be > 0")
    _require(cfg.release in ("anchor", "grid"), "release must be 'anchor' or 'grid'")
    if cfg.extended:
        _require(cfg.grid_width is not None, "grid_width is required when extended is enabled")
        _require(float(cfg.grid_width) > 0.0, "grid_width must be > 0")
    _require(cfg.aspect_ratio > 0.0, "aspect_ratio must be > 0")
    if cfg.principal_point is not None:
        _require(len(cfg.principal_point) == 2, "principal_point must be [cx, cy]")
    unknown = set(cfg.fixed_distortion) - set(DISTORTION_NAMES)
    _require(not unknown, f"unknown distortion coefficients: {sorted(unknown)}")
    _require(cfg.ftol >= 0.0 and cfg.atol >= 0.0 and cfg.xtol >= 0.0, "tolerances must be >= 0")
    _require(cfg.max_iterations >= 1, "max_iterations must be >= 1")
    _require(cfg.max_time_s is None or cfg.max_time_s > 0.0, "max_time_s must be > 0")
    _require(cfg.initial_damping > 0.0, "initial_damping must be > 0")
    _require(cfg.damping_up > 1.0, "damping_up must be > 1")
    _require(0.0 < cfg.damping_down < 1.0, "damping_down must be in (0, 1)")
    _require(cfg.max_damping > cfg.initial_damping, "max_damping must exceed initial_damping")
    _require(cfg.workers >= 1, "workers must be >= 1")
    _require(cfg.min_views >= 1, "min_views must be >= 1")
    _require(cfg.degenerate_policy in ("drop", "abort"), "degenerate_policy must be 'drop' or 'abort'")
    return cfg


def parse_config(data: dict[str, Any]) -> CalibrationConfig:
    known = {f.name for f in fields(CalibrationConfig)}
    unknown = sorted(set(data) - known)
    _require(not unknown, f"unknown config keys: {unknown}")
    kwargs: dict[str, Any] = dict(data)

    if "fixed_distortion" in kwargs:
        fd = kwargs["fixed_distortion"]
        _require(isinstance(fd, (list, tuple)), "fixed_distortion must be a list of coefficient names")
        kwargs["fixed_distortion"] = tuple(str(n) for n in fd)
    if kwargs.get("principal_point") is not None:
        pp = kwargs["principal_point"]
        _require(isinstance(pp, (list, tuple)) and len(pp) == 2, "principal_point must be [cx, cy]")
        kwargs["principal_point"] = (float(pp[0]), float(pp[1]))
    if kwargs.get("grid_width") is not None:
        kwargs["grid_width"] = float(kwargs["grid_width"])
    if kwargs.get("max_time_s") is not None:
        kwargs["max_time_s"] = float(kwargs["max_time_s"])
    for k in ("rows", "cols", "max_iterations", "min_views", "workers"):
        if k in kwargs:
            kwargs[k] = int(kwargs[k])
    for k in ("square_size", "aspect_ratio", "ftol", "atol", "xtol", "initial_damping", "damping_up", "damping_down", "max_damping"):
        if k in kwargs:
            kwargs[k] = float(kwargs[k])
    for k in ("extended", "fix_aspect_ratio", "fix_principal_point", "require_all_views"):
        if k in kwargs:
            _require(isinstance(kwargs[k], bool), f"{k} must be true or false")

    return validate_config(CalibrationConfig(**kwargs))


def load_config(path: Path) -> CalibrationConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    _require(isinstance(data, dict), "config file must contain a JSON object")
    return parse_config(data)
