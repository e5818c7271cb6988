from __future__ import annotations


class CalibrationError(ValueError):
    """
    Base class for estimator failures.

    `view` is the index of the offending view (None for run-level failures) and
    `stage` names the pipeline stage that raised.
    """

    def __init__(self, msg: str, *, view: int | None = None, stage: str | None = None) -> None:
        self.view = view
        self.stage = stage
        prefix = []
        if stage is not None:
            prefix.append(stage)
        if view is not None:
            prefix.append(f"view {view}")
        super().__init__(f"[{', '.join(prefix)}] {msg}" if prefix else msg)


class DetectionInputError(CalibrationError):
    pass


class InsufficientViewsError(CalibrationError):
    def __init__(self, msg: str, *, n_valid: int, n_required: int, dropped: tuple[int, ...] = (), stage: str | None = None) -> None:
        self.n_valid = int(n_valid)
        self.n_required = int(n_required)
        self.dropped = tuple(int(v) for v in dropped)
        super().__init__(msg, stage=stage)


class DegenerateViewError(CalibrationError):
    pass


class NumericallySingularError(CalibrationError):
    pass


class NonConvergenceWarning(UserWarning):
    pass
