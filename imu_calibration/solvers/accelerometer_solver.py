import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from imu_calibration.core.error_model import COMPONENTS, PhysicalParameters
from imu_calibration.core.exceptions import ConfigurationError, NumericalError
from imu_calibration.core.measurements import FrameKinematics
from .base_solver import (BaseCalibrator, CalibrationObserver, build_fit_result,
                          fit_levenberg_marquardt)

logger = logging.getLogger(__name__)


def solve_linear(measured: np.ndarray, expected: np.ndarray, common_axis: bool = True) -> PhysicalParameters:
    """
    Closed form least squares solution of

        f_meas - f_true = ba + Ma * f_true

    solved row by row. With a common axis only the upper triangle of Ma
    is estimated.

    Args:
        measured: N x 3 measured specific forces
        expected: N x 3 true specific forces
        common_axis: Estimate an upper triangular Ma

    Returns:
        PhysicalParameters with bias ba and mg Ma
    """
    measured = np.asarray(measured, dtype=np.float64)
    expected = np.asarray(expected, dtype=np.float64)
    diff = measured - expected

    ba = np.zeros(COMPONENTS)
    ma = np.zeros((COMPONENTS, COMPONENTS))
    for row in range(COMPONENTS):
        cols = np.arange(row, COMPONENTS) if common_axis else np.arange(COMPONENTS)
        design = np.column_stack([np.ones(len(expected)), expected[:, cols]])
        solution, _, rank, _ = np.linalg.lstsq(design, diff[:, row], rcond=None)
        if rank < design.shape[1]:
            raise NumericalError("Degenerate frames: linear system is rank deficient")
        ba[row] = solution[0]
        ma[row, cols] = solution[1:]
    return PhysicalParameters(bias=ba, mg=ma)


class FrameFitContext:
    """Measured and expected specific forces of the frames of one run."""

    def __init__(self, frames: Sequence[FrameKinematics], variant):
        self.variant = variant
        self.measured = np.stack([f.measured_specific_force for f in frames])
        self.expected = np.stack([f.true_specific_force for f in frames])
        std = np.array([f.specific_force_std for f in frames])
        self.weights = 1.0 / np.where(std > 0.0, std, 1.0)
        self._b = np.empty(COMPONENTS)
        self._m = np.empty((COMPONENTS, COMPONENTS))
        self._g = np.empty((COMPONENTS, COMPONENTS))

    def __len__(self) -> int:
        return len(self.measured)

    def subset(self, indices) -> "FrameFitContext":
        sub = object.__new__(FrameFitContext)
        sub.variant = self.variant
        sub.measured = self.measured[indices]
        sub.expected = self.expected[indices]
        sub.weights = self.weights[indices]
        sub._b = np.empty(COMPONENTS)
        sub._m = np.empty((COMPONENTS, COMPONENTS))
        sub._g = np.empty((COMPONENTS, COMPONENTS))
        return sub

    def _difference(self, params: np.ndarray) -> np.ndarray:
        # f_meas - M * (f_true + b)
        b, m, _ = self.variant.unpack(params, self._b, self._m, self._g)
        return self.measured - (self.expected + b) @ m.T

    def residuals(self, params: np.ndarray) -> np.ndarray:
        return (self._difference(params) * self.weights[:, None]).ravel()

    def errors(self, params: np.ndarray) -> np.ndarray:
        return np.linalg.norm(self._difference(params), axis=1)

    def linear_solution(self, common_axis: bool) -> np.ndarray:
        """Fit vector of the closed form solution."""
        fit = solve_linear(self.measured, self.expected, common_axis).to_fit()
        return self.variant.pack(fit.b, fit.m)


class AccelerometerCalibrator(BaseCalibrator):
    """
    Estimates accelerometer bias, scale factors and cross coupling errors
    from frames whose true specific force is known.
    """

    def __init__(self, frames: Sequence[FrameKinematics] = (), common_axis: bool = True,
                 initial_bias=None, initial_mg=None,
                 observer: Optional[CalibrationObserver] = None,
                 max_function_evaluations: Optional[int] = None):
        super().__init__(measurements=frames, common_axis=common_axis,
                         initial_bias=initial_bias, initial_mg=initial_mg,
                         observer=observer, max_function_evaluations=max_function_evaluations)

    def _validate_measurements(self, measurements: Tuple):
        for f in measurements:
            if not isinstance(f, FrameKinematics):
                raise ConfigurationError(f"Expected FrameKinematics, got {type(f).__name__}")

    @property
    def frames(self) -> Tuple[FrameKinematics, ...]:
        return self.measurements

    @frames.setter
    def frames(self, value):
        self.measurements = value

    def _create_context(self) -> FrameFitContext:
        return FrameFitContext(self.measurements, self.variant)

    def _fit(self, context: FrameFitContext, initial: np.ndarray):
        return fit_levenberg_marquardt(context.residuals, initial, self._max_function_evaluations)

    def _calibrate(self):
        context = self._create_context()
        params, covariance, chi_sq = self._fit(context, self.initial_parameters())
        return build_fit_result(self.variant, params, covariance, chi_sq)
