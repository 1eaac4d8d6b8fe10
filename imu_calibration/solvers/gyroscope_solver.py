"""
Gyroscope calibration from motion sequences.

Each sequence starts and ends with the device at rest, so the gravity
versor measured by the (already calibrated) accelerometer before and after
the motion is known. Integrating the corrected angular rate over the motion
must rotate the "before" versor onto the "after" versor; the residual of a
sequence is the difference between predicted and measured "after" versors.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from imu_calibration.core.error_model import (COMPONENTS, as_matrix3, as_vector3,
                                              correct_specific_force, invert)
from imu_calibration.core.exceptions import ConfigurationError
from imu_calibration.core.integrator import integrate_sequence, predict_after_versor
from imu_calibration.core.measurements import MotionSequence
from .base_solver import (BaseCalibrator, CalibrationObserver, build_fit_result,
                          fit_levenberg_marquardt)

logger = logging.getLogger(__name__)


def _versors(vectors: np.ndarray) -> np.ndarray:
    return vectors / np.linalg.norm(vectors, axis=1, keepdims=True)


class SequenceFitContext:
    """
    Per-run evaluation state.

    Everything that does not depend on the unknowns is computed once here:
    accelerometer corrected specific forces, before/after versors and the
    sequence weights. The matrix buffers are scratch space reused by every
    evaluation of the run.
    """

    def __init__(self, sequences: Sequence[MotionSequence], variant,
                 accelerometer_bias: np.ndarray, accelerometer_mg: np.ndarray):
        self.sequences = tuple(sequences)
        self.variant = variant

        lengths = [len(s) for s in self.sequences]
        self._bounds = np.concatenate([[0], np.cumsum(lengths)])
        self._timestamps = [s.timestamps for s in self.sequences]
        self._rates = np.concatenate([s.angular_rates for s in self.sequences])
        self._forces = correct_specific_force(
            np.concatenate([s.specific_forces for s in self.sequences]),
            accelerometer_bias, accelerometer_mg)

        before = np.stack([s.before_mean_specific_force for s in self.sequences])
        after = np.stack([s.after_mean_specific_force for s in self.sequences])
        self.before_versors = _versors(correct_specific_force(before, accelerometer_bias, accelerometer_mg))
        self.after_versors = _versors(correct_specific_force(after, accelerometer_bias, accelerometer_mg))

        std = np.array([s.average_angular_rate_std() for s in self.sequences])
        # non-positive std means unit weight
        self.weights = 1.0 / np.where(std > 0.0, std, 1.0)

        # scratch
        self._b = np.empty(COMPONENTS)
        self._m = np.empty((COMPONENTS, COMPONENTS))
        self._g = np.empty((COMPONENTS, COMPONENTS))
        self._predicted = np.empty((len(self.sequences), COMPONENTS))

    def __len__(self) -> int:
        return len(self.sequences)

    def subset(self, indices) -> "SequenceFitContext":
        """Context over some sequences, sharing the already corrected data."""
        sub = object.__new__(SequenceFitContext)
        indices = np.asarray(indices)
        sub.sequences = tuple(self.sequences[i] for i in indices)
        sub.variant = self.variant
        sub._timestamps = [self._timestamps[i] for i in indices]
        slices = [slice(self._bounds[i], self._bounds[i + 1]) for i in indices]
        sub._rates = np.concatenate([self._rates[s] for s in slices])
        sub._forces = np.concatenate([self._forces[s] for s in slices])
        sub._bounds = np.concatenate([[0], np.cumsum([len(t) for t in sub._timestamps])])
        sub.before_versors = self.before_versors[indices]
        sub.after_versors = self.after_versors[indices]
        sub.weights = self.weights[indices]
        sub._b = np.empty(COMPONENTS)
        sub._m = np.empty((COMPONENTS, COMPONENTS))
        sub._g = np.empty((COMPONENTS, COMPONENTS))
        sub._predicted = np.empty((len(indices), COMPONENTS))
        return sub

    def predicted_after_versors(self, params: np.ndarray) -> np.ndarray:
        b, m, g = self.variant.unpack(params, self._b, self._m, self._g)
        inv_m = invert(m)
        # w = M^-1 * w_meas - b - G * f
        rates = self._rates @ inv_m.T - b - self._forces @ g.T
        for k, timestamps in enumerate(self._timestamps):
            q = integrate_sequence(timestamps, rates[self._bounds[k]:self._bounds[k + 1]])
            self._predicted[k] = predict_after_versor(q, self.before_versors[k])
        return self._predicted

    def residuals(self, params: np.ndarray) -> np.ndarray:
        """Weighted 3 component residual of every sequence, flattened."""
        diff = self.predicted_after_versors(params) - self.after_versors
        return (diff * self.weights[:, None]).ravel()

    def errors(self, params: np.ndarray) -> np.ndarray:
        """Unweighted versor distance of every sequence."""
        diff = self.predicted_after_versors(params) - self.after_versors
        return np.linalg.norm(diff, axis=1)


class GyroscopeCalibrator(BaseCalibrator):
    """
    Estimates gyroscope bias, scale factors, cross coupling errors and
    (optionally) G-dependent cross biases from motion sequences, given the
    accelerometer bias and Ma obtained from a previous accelerometer
    calibration.
    """

    def __init__(self, sequences: Sequence[MotionSequence] = (), common_axis: bool = True,
                 estimate_g_dependent_cross_biases: bool = True,
                 initial_bias=None, initial_mg=None, initial_gg=None,
                 accelerometer_bias=None, accelerometer_mg=None,
                 observer: Optional[CalibrationObserver] = None,
                 max_function_evaluations: Optional[int] = None):
        self._estimate_g = True
        self._initial_gg_value = np.zeros((COMPONENTS, COMPONENTS))
        self._accelerometer_bias = np.zeros(COMPONENTS)
        self._accelerometer_mg = np.zeros((COMPONENTS, COMPONENTS))
        super().__init__(measurements=sequences, common_axis=common_axis,
                         initial_bias=initial_bias, initial_mg=initial_mg,
                         observer=observer, max_function_evaluations=max_function_evaluations)
        self.estimate_g_dependent_cross_biases = estimate_g_dependent_cross_biases
        if initial_gg is not None:
            self.initial_gg = initial_gg
        if accelerometer_bias is not None:
            self.accelerometer_bias = accelerometer_bias
        if accelerometer_mg is not None:
            self.accelerometer_mg = accelerometer_mg

    def _validate_measurements(self, measurements: Tuple):
        for s in measurements:
            if not isinstance(s, MotionSequence):
                raise ConfigurationError(f"Expected MotionSequence, got {type(s).__name__}")

    @property
    def sequences(self) -> Tuple[MotionSequence, ...]:
        return self.measurements

    @sequences.setter
    def sequences(self, value):
        self.measurements = value

    @property
    def estimate_g_dependent_cross_biases(self) -> bool:
        return self._estimate_g

    @estimate_g_dependent_cross_biases.setter
    def estimate_g_dependent_cross_biases(self, value: bool):
        self._ensure_not_running()
        self._estimate_g = bool(value)

    @property
    def g_dependent(self) -> bool:
        return self._estimate_g

    def _set_variant(self, variant):
        self._common_axis = variant.common_axis
        self._estimate_g = variant.g_dependent

    @property
    def initial_gg(self) -> np.ndarray:
        return self._initial_gg_value.copy()

    @initial_gg.setter
    def initial_gg(self, value):
        self._ensure_not_running()
        self._initial_gg_value = as_matrix3(value, "initial_gg")

    def _initial_gg(self) -> Optional[np.ndarray]:
        return self._initial_gg_value if self._estimate_g else None

    @property
    def accelerometer_bias(self) -> np.ndarray:
        return self._accelerometer_bias.copy()

    @accelerometer_bias.setter
    def accelerometer_bias(self, value):
        self._ensure_not_running()
        self._accelerometer_bias = as_vector3(value, "accelerometer_bias")

    @property
    def accelerometer_mg(self) -> np.ndarray:
        return self._accelerometer_mg.copy()

    @accelerometer_mg.setter
    def accelerometer_mg(self, value):
        self._ensure_not_running()
        ma = as_matrix3(value, "accelerometer_mg")
        if abs(np.linalg.det(np.eye(COMPONENTS) + ma)) < np.finfo(float).eps:
            raise ConfigurationError("accelerometer_mg makes I + Ma singular")
        self._accelerometer_mg = ma

    def use_accelerometer_result(self, result):
        """Takes the known accelerometer parameters from an accelerometer FitResult."""
        self._ensure_not_running()
        self.accelerometer_bias = result.bg
        self.accelerometer_mg = result.mg

    def _create_context(self, sequences=None) -> SequenceFitContext:
        return SequenceFitContext(self.measurements if sequences is None else sequences,
                                  self.variant, self._accelerometer_bias, self._accelerometer_mg)

    def _fit(self, context: SequenceFitContext, initial: np.ndarray):
        return fit_levenberg_marquardt(context.residuals, initial, self._max_function_evaluations)

    def _calibrate(self):
        context = self._create_context()
        params, covariance, chi_sq = self._fit(context, self.initial_parameters())
        return build_fit_result(self.variant, params, covariance, chi_sq)
