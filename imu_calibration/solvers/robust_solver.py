import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from imu_calibration.core.exceptions import ConfigurationError, NumericalError
from .accelerometer_solver import AccelerometerCalibrator
from .base_solver import CalibrationObserver, build_fit_result
from .gyroscope_solver import GyroscopeCalibrator
from .robust_estimator import RobustMethod, RobustProblem, RobustResult, create_estimator

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 1e-2
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
DEFAULT_STOP_THRESHOLD = 1e-3


class _CalibrationProblem(RobustProblem):
    """Exposes a calibrator and its per-run context to the sampling loop."""

    def __init__(self, calibrator, context, subset_size: int):
        self._calibrator = calibrator
        self._context = context
        self._subset_size = subset_size

    @property
    def total_samples(self) -> int:
        return len(self._context)

    @property
    def subset_size(self) -> int:
        return self._subset_size

    @property
    def minimum_inliers(self) -> int:
        return self._calibrator.minimum_required_measurements

    def estimate_preliminary_solutions(self, indices):
        try:
            return [self._calibrator._preliminary_solution(self._context.subset(indices))]
        except NumericalError as e:
            logger.debug("Discarding subset %s: %s", np.sort(indices).tolist(), e)
            return []

    def compute_residuals(self, hypothesis) -> np.ndarray:
        try:
            return self._context.errors(hypothesis)
        except NumericalError as e:
            # scores as zero inliers
            logger.debug("Hypothesis cannot be evaluated: %s", e)
            return np.full(len(self._context), np.inf)


class RobustCalibrationMixin:
    """
    Robust estimation options shared by the robust calibrators.

    calibrate() samples subsets of measurements with the selected
    RobustMethod, keeps the best hypothesis and, when refine_result is set,
    refits it on the inliers with Levenberg-Marquardt.
    """

    def __init__(self, *args, method=RobustMethod.MSAC, threshold: float = DEFAULT_THRESHOLD,
                 confidence: float = DEFAULT_CONFIDENCE, max_iterations: int = DEFAULT_MAX_ITERATIONS,
                 preliminary_subset_size: Optional[int] = None,
                 progress_delta: float = DEFAULT_PROGRESS_DELTA, refine_result: bool = True,
                 keep_covariance: bool = True, quality_scores=None,
                 stop_threshold: float = DEFAULT_STOP_THRESHOLD, seed: Optional[int] = None,
                 **kwargs):
        self._method = RobustMethod.MSAC
        self._threshold = DEFAULT_THRESHOLD
        self._confidence = DEFAULT_CONFIDENCE
        self._max_iterations = DEFAULT_MAX_ITERATIONS
        self._preliminary_subset_size = None
        self._progress_delta = DEFAULT_PROGRESS_DELTA
        self._refine_result = True
        self._keep_covariance = True
        self._quality_scores = None
        self._stop_threshold = DEFAULT_STOP_THRESHOLD
        self._seed = None
        self._robust: Optional[RobustResult] = None
        super().__init__(*args, **kwargs)

        self.method = method
        self.threshold = threshold
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.preliminary_subset_size = preliminary_subset_size
        self.progress_delta = progress_delta
        self.refine_result = refine_result
        self.keep_covariance = keep_covariance
        self.quality_scores = quality_scores
        self.stop_threshold = stop_threshold
        self.seed = seed

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------
    @property
    def method(self) -> RobustMethod:
        return self._method

    @method.setter
    def method(self, value):
        self._ensure_not_running()
        self._method = RobustMethod.parse(value)

    @property
    def threshold(self) -> float:
        return self._threshold

    @threshold.setter
    def threshold(self, value: float):
        self._ensure_not_running()
        value = float(value)
        if not math.isfinite(value) or value <= 0.0:
            raise ConfigurationError("threshold must be positive")
        self._threshold = value

    @property
    def confidence(self) -> float:
        return self._confidence

    @confidence.setter
    def confidence(self, value: float):
        self._ensure_not_running()
        value = float(value)
        if not 0.0 < value < 1.0:
            raise ConfigurationError("confidence must be between 0 and 1")
        self._confidence = value

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int):
        self._ensure_not_running()
        if int(value) != value or value < 1:
            raise ConfigurationError("max_iterations must be a positive integer")
        self._max_iterations = int(value)

    @property
    def preliminary_subset_size(self) -> int:
        """Subset size, never below the minimum of the current variant."""
        minimum = self.minimum_required_measurements
        if self._preliminary_subset_size is None:
            return minimum
        return max(self._preliminary_subset_size, minimum)

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, value: Optional[int]):
        self._ensure_not_running()
        if value is not None:
            if int(value) != value or value < self.minimum_required_measurements:
                raise ConfigurationError(
                    f"preliminary_subset_size must be at least {self.minimum_required_measurements}")
            value = int(value)
        self._preliminary_subset_size = value

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, value: float):
        self._ensure_not_running()
        value = float(value)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError("progress_delta must be between 0 and 1")
        self._progress_delta = value

    @property
    def refine_result(self) -> bool:
        return self._refine_result

    @refine_result.setter
    def refine_result(self, value: bool):
        self._ensure_not_running()
        self._refine_result = bool(value)

    @property
    def keep_covariance(self) -> bool:
        return self._keep_covariance

    @keep_covariance.setter
    def keep_covariance(self, value: bool):
        self._ensure_not_running()
        self._keep_covariance = bool(value)

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return None if self._quality_scores is None else self._quality_scores.copy()

    @quality_scores.setter
    def quality_scores(self, value):
        self._ensure_not_running()
        if value is not None:
            value = np.asarray(value, dtype=np.float64)
            if value.ndim != 1 or not np.all(np.isfinite(value)):
                raise ConfigurationError("quality_scores must be a 1-D array of finite values")
            if len(value) < self.minimum_required_measurements:
                raise ConfigurationError(
                    f"At least {self.minimum_required_measurements} quality scores are required")
        self._quality_scores = value

    @property
    def stop_threshold(self) -> float:
        return self._stop_threshold

    @stop_threshold.setter
    def stop_threshold(self, value: float):
        self._ensure_not_running()
        value = float(value)
        if not math.isfinite(value) or value <= 0.0:
            raise ConfigurationError("stop_threshold must be positive")
        self._stop_threshold = value

    @property
    def seed(self) -> Optional[int]:
        return self._seed

    @seed.setter
    def seed(self, value: Optional[int]):
        self._ensure_not_running()
        self._seed = value

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    @property
    def is_ready(self) -> bool:
        if not super().is_ready:
            return False
        if self._method is RobustMethod.PROSAC:
            return self._quality_scores is not None and len(self._quality_scores) == len(self.measurements)
        return True

    @property
    def inliers(self) -> Optional[np.ndarray]:
        return None if self._robust is None else self._robust.inliers.copy()

    @property
    def inlier_indices(self) -> Optional[np.ndarray]:
        return None if self._robust is None else self._robust.inlier_indices

    @property
    def residuals(self) -> Optional[np.ndarray]:
        return None if self._robust is None else self._robust.residuals.copy()

    @property
    def iterations(self) -> Optional[int]:
        return None if self._robust is None else self._robust.iterations

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------
    def _preliminary_solution(self, subset_context) -> np.ndarray:
        params, _, _ = self._fit(subset_context, self.initial_parameters())
        return params

    def _calibrate(self):
        context = self._create_context()
        problem = _CalibrationProblem(self, context, self.preliminary_subset_size)
        estimator = create_estimator(
            self._method, problem,
            quality_scores=self._quality_scores,
            stop_threshold=self._stop_threshold,
            threshold=self._threshold,
            confidence=self._confidence,
            max_iterations=self._max_iterations,
            progress_delta=self._progress_delta,
            rng=np.random.default_rng(self._seed),
            on_iteration=lambda i: self._notify("on_next_iteration", i),
            on_progress=lambda p: self._notify("on_progress_change", p),
        )
        robust = estimator.estimate()
        logger.info("%s: %d/%d inliers after %d iterations", self._method.name,
                    robust.inlier_count, len(context), robust.iterations)

        params, covariance, chi_sq = robust.hypothesis, None, None
        if self._refine_result:
            try:
                params, covariance, chi_sq = self._fit(context.subset(robust.inlier_indices), robust.hypothesis)
            except NumericalError as e:
                logger.warning("Refinement failed, keeping preliminary solution: %s", e)
            if not self._keep_covariance:
                covariance = None
        return build_fit_result(self.variant, params, covariance, chi_sq), robust

    def _publish(self, outcome):
        result, robust = outcome
        self._result = result
        self._robust = robust


class RobustGyroscopeCalibrator(RobustCalibrationMixin, GyroscopeCalibrator):
    """Robust gyroscope calibration; hypotheses are nonlinear fits of sequence subsets."""


class RobustAccelerometerCalibrator(RobustCalibrationMixin, AccelerometerCalibrator):
    """
    Robust accelerometer calibration.

    Preliminary hypotheses come from the closed form linear solver by
    default; with preliminary_solution_refined (or without the linear
    solver) they are nonlinear fits of the subset.
    """

    def __init__(self, *args, linear_calibrator_used: bool = True,
                 preliminary_solution_refined: bool = False, **kwargs):
        self._linear_calibrator_used = True
        self._preliminary_solution_refined = False
        super().__init__(*args, **kwargs)
        self.linear_calibrator_used = linear_calibrator_used
        self.preliminary_solution_refined = preliminary_solution_refined

    @property
    def linear_calibrator_used(self) -> bool:
        return self._linear_calibrator_used

    @linear_calibrator_used.setter
    def linear_calibrator_used(self, value: bool):
        self._ensure_not_running()
        self._linear_calibrator_used = bool(value)

    @property
    def preliminary_solution_refined(self) -> bool:
        return self._preliminary_solution_refined

    @preliminary_solution_refined.setter
    def preliminary_solution_refined(self, value: bool):
        self._ensure_not_running()
        self._preliminary_solution_refined = bool(value)

    def _preliminary_solution(self, subset_context) -> np.ndarray:
        if not self._linear_calibrator_used:
            return super()._preliminary_solution(subset_context)
        params = subset_context.linear_solution(self.common_axis)
        if self._preliminary_solution_refined:
            params, _, _ = self._fit(subset_context, params)
        return params


@dataclass(frozen=True)
class RobustCalibratorConfig:
    """Options of create_robust_calibrator. Validated at construction."""
    threshold: float = DEFAULT_THRESHOLD
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    preliminary_subset_size: Optional[int] = None
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    refine_result: bool = True
    keep_covariance: bool = True
    quality_scores: Optional[Sequence[float]] = None
    stop_threshold: float = DEFAULT_STOP_THRESHOLD
    seed: Optional[int] = None
    common_axis: bool = True
    estimate_g_dependent_cross_biases: bool = True
    linear_calibrator_used: bool = True
    preliminary_solution_refined: bool = False
    max_function_evaluations: Optional[int] = None

    def __post_init__(self):
        if not self.threshold > 0.0:
            raise ConfigurationError("threshold must be positive")
        if not 0.0 < self.confidence < 1.0:
            raise ConfigurationError("confidence must be between 0 and 1")
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be at least 1")
        if self.preliminary_subset_size is not None and self.preliminary_subset_size < 1:
            raise ConfigurationError("preliminary_subset_size must be positive")
        if not 0.0 <= self.progress_delta <= 1.0:
            raise ConfigurationError("progress_delta must be between 0 and 1")
        if not self.stop_threshold > 0.0:
            raise ConfigurationError("stop_threshold must be positive")
        if self.max_function_evaluations is not None and self.max_function_evaluations < 1:
            raise ConfigurationError("max_function_evaluations must be positive")


SENSORS = ("gyroscope", "accelerometer")


def create_robust_calibrator(sensor: str, method=RobustMethod.MSAC, measurements: Sequence = (),
                             config: Optional[RobustCalibratorConfig] = None,
                             observer: Optional[CalibrationObserver] = None, **kwargs):
    """
    Builds a robust calibrator for "gyroscope" (MotionSequence measurements)
    or "accelerometer" (FrameKinematics measurements).

    Extra keyword arguments (initial_bias, accelerometer_bias, ...) are
    passed to the calibrator constructor.
    """
    config = config or RobustCalibratorConfig()
    options = dict(
        method=method,
        common_axis=config.common_axis,
        threshold=config.threshold,
        confidence=config.confidence,
        max_iterations=config.max_iterations,
        preliminary_subset_size=config.preliminary_subset_size,
        progress_delta=config.progress_delta,
        refine_result=config.refine_result,
        keep_covariance=config.keep_covariance,
        quality_scores=config.quality_scores,
        stop_threshold=config.stop_threshold,
        seed=config.seed,
        observer=observer,
        max_function_evaluations=config.max_function_evaluations,
    )
    options.update(kwargs)

    sensor = str(sensor).lower()
    if sensor == "gyroscope":
        options.setdefault("estimate_g_dependent_cross_biases", config.estimate_g_dependent_cross_biases)
        return RobustGyroscopeCalibrator(measurements, **options)
    if sensor == "accelerometer":
        options.setdefault("linear_calibrator_used", config.linear_calibrator_used)
        options.setdefault("preliminary_solution_refined", config.preliminary_solution_refined)
        return RobustAccelerometerCalibrator(measurements, **options)
    raise ConfigurationError(f"Unknown sensor {sensor!r}, expected one of {SENSORS}")
