"""Robust IMU calibration: accelerometer and gyroscope error model estimation."""

from .core import (CalibrationError, CalibrationVariant, ConfigurationError, FitParameters,
                   FrameKinematics, LockedError, MotionSequence, NotReadyError, NumericalError,
                   PhysicalParameters, RobustFailureError, SampledKinematics)
from .core.data_loader import DataLoader
from .solvers import (AccelerometerCalibrator, BaseCalibrator, CalibrationObserver, FitResult,
                      GyroscopeCalibrator, RobustAccelerometerCalibrator, RobustCalibratorConfig,
                      RobustGyroscopeCalibrator, RobustMethod, classify_inliers,
                      create_robust_calibrator, solve_linear)

__version__ = "0.1.0"

__all__ = [
    "AccelerometerCalibrator",
    "BaseCalibrator",
    "CalibrationError",
    "CalibrationObserver",
    "CalibrationVariant",
    "ConfigurationError",
    "DataLoader",
    "FitParameters",
    "FitResult",
    "FrameKinematics",
    "GyroscopeCalibrator",
    "LockedError",
    "MotionSequence",
    "NotReadyError",
    "NumericalError",
    "PhysicalParameters",
    "RobustAccelerometerCalibrator",
    "RobustCalibratorConfig",
    "RobustFailureError",
    "RobustGyroscopeCalibrator",
    "RobustMethod",
    "SampledKinematics",
    "classify_inliers",
    "create_robust_calibrator",
    "solve_linear",
]
