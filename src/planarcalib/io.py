from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from planarcalib.calib.report import CalibrationResult
from planarcalib.views import Detected, DetectionOutcome, NotDetected

VIEWS_SCHEMA = "planarcalib.views.v0"


def write_result_json(path: Path, result: CalibrationResult) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result.to_record(), indent=2, sort_keys=True), encoding="utf-8")
    return path


def write_outcomes_json(
    path: Path,
    outcomes: Sequence[DetectionOutcome],
    *,
    board: dict[str, Any] | None = None,
) -> Path:
    """
    Store detector outcomes:

      {"schema_version": ..., "board": {...}, "views": [{"detected": true, "image_size": [w, h],
       "points": [[u, v], ...]}, {"detected": false, "reason": "..."}]}
    """
    views: list[dict[str, Any]] = []
    for o in outcomes:
        if isinstance(o, Detected):
            views.append(
                {
                    "detected": True,
                    "image_size": [int(o.image_size[0]), int(o.image_size[1])],
                    "points": np.asarray(o.points, dtype=np.float64).reshape(-1, 2).tolist(),
                }
            )
        else:
            views.append({"detected": False, "reason": o.reason})
    data: dict[str, Any] = {"schema_version": VIEWS_SCHEMA, "views": views}
    if board is not None:
        data["board"] = dict(board)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


def parse_outcomes(data: dict[str, Any]) -> list[DetectionOutcome]:
    if data.get("schema_version") != VIEWS_SCHEMA:
        raise ValueError(f"schema_version must be {VIEWS_SCHEMA}")
    views = data.get("views")
    if not isinstance(views, list):
        raise ValueError("views must be a list")
    out: list[DetectionOutcome] = []
    for i, v in enumerate(views):
        if not bool(v.get("detected", False)):
            out.append(NotDetected(reason=str(v.get("reason", ""))))
            continue
        size = v.get("image_size")
        if not isinstance(size, (list, tuple)) or len(size) != 2:
            raise ValueError(f"views[{i}].image_size must be [width, height]")
        pts = np.asarray(v.get("points", []), dtype=np.float64).reshape(-1, 2)
        out.append(Detected(points=pts, image_size=(int(size[0]), int(size[1]))))
    return out


def load_outcomes_json(path: Path) -> tuple[list[DetectionOutcome], dict[str, Any]]:
    """Returns (outcomes, board metadata or {})."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_outcomes(data), dict(data.get("board", {}))
