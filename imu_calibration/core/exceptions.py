"""Error taxonomy shared by the calibrators."""


class CalibrationError(Exception):
    """Base class for every error raised by the calibration package."""


class ConfigurationError(CalibrationError, ValueError):
    """Raised when a configuration value has the wrong shape or range."""


class LockedError(CalibrationError):
    """Raised when a calibrator is modified or re-entered while running."""


class NotReadyError(CalibrationError):
    """Raised when calibrate() is invoked without enough measurements."""


class NumericalError(CalibrationError):
    """Raised on singular matrices or when the solver does not converge."""


class RobustFailureError(CalibrationError):
    """Raised when no hypothesis reaches the minimum inlier support."""
