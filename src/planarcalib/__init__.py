from planarcalib.calib import CalibrationResult, RefinerState, calibrate, calibrate_views
from planarcalib.config import CalibrationConfig, ConfigValidationError, load_config, parse_config
from planarcalib.errors import (
    CalibrationError,
    DegenerateViewError,
    DetectionInputError,
    InsufficientViewsError,
    NonConvergenceWarning,
    NumericallySingularError,
)
from planarcalib.target import TargetModel, TargetPoint, chessboard_target
from planarcalib.views import Detected, NotDetected, View, make_view

__all__ = [
    "CalibrationConfig",
    "CalibrationError",
    "CalibrationResult",
    "ConfigValidationError",
    "DegenerateViewError",
    "Detected",
    "DetectionInputError",
    "InsufficientViewsError",
    "NonConvergenceWarning",
    "NotDetected",
    "NumericallySingularError",
    "RefinerState",
    "TargetModel",
    "TargetPoint",
    "View",
    "calibrate",
    "calibrate_views",
    "chessboard_target",
    "load_config",
    "make_view",
    "parse_config",
]
