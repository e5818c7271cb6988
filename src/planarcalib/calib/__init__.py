from planarcalib.calib.estimator import calibrate, calibrate_views
from planarcalib.calib.refine import RefinerState
from planarcalib.calib.report import CalibrationResult

__all__ = [
    "CalibrationResult",
    "RefinerState",
    "calibrate",
    "calibrate_views",
]
