import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from imu_calibration.core.error_model import (COMPONENTS, CalibrationVariant, FitParameters,
                                              PhysicalParameters, as_matrix3, as_vector3,
                                              cross_coupling_errors, enforce_common_axis,
                                              scale_factors)
from imu_calibration.core.exceptions import (ConfigurationError, LockedError, NotReadyError,
                                             NumericalError)

logger = logging.getLogger(__name__)

# MINPACK termination tolerances (must stay above machine epsilon for "lm")
TOLERANCE = 1e-12


class FitResult(NamedTuple):
    variant: CalibrationVariant
    m: np.ndarray             # 3 x 3, M = I + Mg
    b: np.ndarray             # 3, M^-1 * bg
    g: Optional[np.ndarray]   # 3 x 3, M^-1 * Gg (None when not estimated)
    mg: np.ndarray            # 3 x 3 scale factors and cross coupling errors
    bg: np.ndarray            # 3 biases
    gg: Optional[np.ndarray]  # 3 x 3 G-dependent cross biases
    covariance: Optional[np.ndarray]  # unknowns x unknowns, fit parameter order
    chi_sq: Optional[float]

    @property
    def scale_factors(self) -> np.ndarray:
        return scale_factors(self.mg)

    @property
    def cross_coupling_errors(self) -> np.ndarray:
        return cross_coupling_errors(self.mg)


class CalibrationObserver:
    """
    Receives calibration events. Every method is a no-op; override what you need.
    Observers are invoked while the calibrator is running, so any setter
    called from them raises LockedError.
    """

    def on_start(self, calibrator):
        pass

    def on_end(self, calibrator):
        pass

    def on_next_iteration(self, calibrator, iteration: int):
        pass

    def on_progress_change(self, calibrator, progress: float):
        pass


def fit_levenberg_marquardt(residuals: Callable[[np.ndarray], np.ndarray],
                            initial: np.ndarray,
                            max_function_evaluations: Optional[int] = None
                            ) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Minimizes the sum of squared (already weighted) residuals.

    Returns (solution, covariance, chi_sq). The Jacobian is estimated by
    forward differences. Covariance is the pseudo-inverse of J^T J at the
    solution.
    """
    def checked(x):
        r = residuals(x)
        if not np.all(np.isfinite(r)):
            raise NumericalError("Residuals are not finite")
        return r

    try:
        solution = least_squares(checked, initial, jac='2-point', method='lm',
                                 ftol=TOLERANCE, xtol=TOLERANCE, gtol=TOLERANCE,
                                 max_nfev=max_function_evaluations)
    except np.linalg.LinAlgError as e:
        raise NumericalError("Levenberg-Marquardt step failed") from e

    if solution.status == 0:
        raise NumericalError(f"Levenberg-Marquardt did not converge after {solution.nfev} evaluations")

    jac = solution.jac
    try:
        covariance = np.linalg.pinv(jac.T @ jac)
    except np.linalg.LinAlgError as e:
        raise NumericalError("Covariance could not be computed") from e

    chi_sq = float(2.0 * solution.cost)
    logger.debug("LM finished: status=%d nfev=%d chi2=%.3e", solution.status, solution.nfev, chi_sq)
    return solution.x, covariance, chi_sq


def _readonly_copy(array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if array is None:
        return None
    array = np.array(array, dtype=np.float64)
    array.setflags(write=False)
    return array


def build_fit_result(variant: CalibrationVariant, params: np.ndarray,
                     covariance: Optional[np.ndarray] = None,
                     chi_sq: Optional[float] = None) -> FitResult:
    """FitResult whose arrays are read-only copies."""
    b, m, g = variant.unpack(params)
    physical = FitParameters(b=b, m=m, g=g).to_physical()
    return FitResult(
        variant=variant,
        m=_readonly_copy(m),
        b=_readonly_copy(b),
        g=_readonly_copy(g) if variant.g_dependent else None,
        mg=_readonly_copy(physical.mg),
        bg=_readonly_copy(physical.bias),
        gg=_readonly_copy(physical.gg) if variant.g_dependent else None,
        covariance=_readonly_copy(covariance),
        chi_sq=chi_sq,
    )


class BaseCalibrator(ABC):
    """
    Shared state machine of every calibrator.

    calibrate() runs at most once at a time per instance. While it runs,
    every setter raises LockedError. The last successful FitResult is only
    replaced when a new calibration succeeds.
    """

    def __init__(self, measurements: Sequence = (), common_axis: bool = True,
                 initial_bias=None, initial_mg=None,
                 observer: Optional[CalibrationObserver] = None,
                 max_function_evaluations: Optional[int] = None):
        self._lock = threading.Lock()
        self._measurements: Tuple = ()
        self._common_axis = True
        self._initial_bias = np.zeros(COMPONENTS)
        self._initial_mg = np.zeros((COMPONENTS, COMPONENTS))
        self._observer = None
        self._max_function_evaluations = None
        self._result: Optional[FitResult] = None

        self.measurements = measurements
        self.common_axis = common_axis
        if initial_bias is not None:
            self.initial_bias = initial_bias
        if initial_mg is not None:
            self.initial_mg = initial_mg
        self.observer = observer
        self.max_function_evaluations = max_function_evaluations

    # ------------------------------------------------------------------
    # Guarded configuration
    # ------------------------------------------------------------------
    def _ensure_not_running(self):
        if self._lock.locked():
            raise LockedError(f"{type(self).__name__} is running")

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def measurements(self) -> Tuple:
        return self._measurements

    @measurements.setter
    def measurements(self, value):
        self._ensure_not_running()
        value = tuple(value) if value is not None else ()
        self._validate_measurements(value)
        self._measurements = value

    @abstractmethod
    def _validate_measurements(self, measurements: Tuple):
        pass

    @property
    def common_axis(self) -> bool:
        return self._common_axis

    @common_axis.setter
    def common_axis(self, value: bool):
        self._ensure_not_running()
        self._common_axis = bool(value)

    @property
    def g_dependent(self) -> bool:
        return False

    @property
    def variant(self) -> CalibrationVariant:
        return CalibrationVariant.from_flags(self.common_axis, self.g_dependent)

    @variant.setter
    def variant(self, value: CalibrationVariant):
        self._ensure_not_running()
        if not isinstance(value, CalibrationVariant):
            raise ConfigurationError(f"Expected a CalibrationVariant, got {value!r}")
        self._set_variant(value)

    def _set_variant(self, variant: CalibrationVariant):
        if variant.g_dependent:
            raise ConfigurationError(f"{type(self).__name__} does not support {variant.name}")
        self._common_axis = variant.common_axis

    @property
    def initial_bias(self) -> np.ndarray:
        return self._initial_bias.copy()

    @initial_bias.setter
    def initial_bias(self, value):
        self._ensure_not_running()
        self._initial_bias = as_vector3(value, "initial_bias")

    @property
    def initial_mg(self) -> np.ndarray:
        return self._initial_mg.copy()

    @initial_mg.setter
    def initial_mg(self, value):
        self._ensure_not_running()
        self._initial_mg = as_matrix3(value, "initial_mg")

    @property
    def observer(self) -> Optional[CalibrationObserver]:
        return self._observer

    @observer.setter
    def observer(self, value: Optional[CalibrationObserver]):
        self._ensure_not_running()
        self._observer = value

    @property
    def max_function_evaluations(self) -> Optional[int]:
        return self._max_function_evaluations

    @max_function_evaluations.setter
    def max_function_evaluations(self, value: Optional[int]):
        self._ensure_not_running()
        if value is not None and (int(value) != value or value < 1):
            raise ConfigurationError("max_function_evaluations must be a positive integer")
        self._max_function_evaluations = None if value is None else int(value)

    # ------------------------------------------------------------------
    # Readiness and results
    # ------------------------------------------------------------------
    @property
    def minimum_required_measurements(self) -> int:
        return self.variant.minimum_required_measurements

    @property
    def is_ready(self) -> bool:
        return len(self._measurements) >= self.minimum_required_measurements

    @property
    def result(self) -> Optional[FitResult]:
        return self._result

    @property
    def estimated_biases(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.bg

    @property
    def estimated_mg(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.mg

    @property
    def estimated_gg(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.gg

    @property
    def estimated_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    @property
    def estimated_chi_sq(self) -> Optional[float]:
        return None if self._result is None else self._result.chi_sq

    def initial_parameters(self) -> np.ndarray:
        """Initial fit vector from the initial physical parameters."""
        variant = self.variant
        mg = self._initial_mg
        if variant.common_axis:
            mg = enforce_common_axis(mg)
        fit = PhysicalParameters(bias=self._initial_bias, mg=mg, gg=self._initial_gg()).to_fit()
        m = enforce_common_axis(fit.m) if variant.common_axis else fit.m
        return variant.pack(fit.b, m, fit.g)

    def _initial_gg(self) -> Optional[np.ndarray]:
        return None

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------
    def _notify(self, event: str, *args):
        if self._observer is not None:
            getattr(self._observer, event)(self, *args)

    def calibrate(self) -> FitResult:
        self._ensure_not_running()
        if not self.is_ready:
            raise NotReadyError(
                f"{type(self).__name__} is not ready: {len(self._measurements)} measurements, "
                f"at least {self.minimum_required_measurements} required")
        if not self._lock.acquire(blocking=False):
            raise LockedError(f"{type(self).__name__} is running")
        try:
            self._notify("on_start")
            outcome = self._calibrate()
            self._notify("on_end")
            self._publish(outcome)
        finally:
            self._lock.release()

        logger.info("%s calibrated %d measurements (%s)", type(self).__name__,
                    len(self._measurements), self.variant.name)
        return self._result

    @abstractmethod
    def _calibrate(self):
        """Runs the fit; must not touch published results."""

    def _publish(self, outcome):
        self._result = outcome
