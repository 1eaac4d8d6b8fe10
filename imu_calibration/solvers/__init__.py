from .accelerometer_solver import AccelerometerCalibrator, solve_linear
from .base_solver import BaseCalibrator, CalibrationObserver, FitResult
from .gyroscope_solver import GyroscopeCalibrator
from .robust_estimator import RobustMethod, classify_inliers
from .robust_solver import (RobustAccelerometerCalibrator, RobustCalibratorConfig,
                            RobustGyroscopeCalibrator, create_robust_calibrator)
