"""
Sensor error model and its fit-friendly parameterization.

Measured values are assumed to follow the physical model

    measured = bg + (I + Mg) * true + Gg * f

where bg is the bias, Mg holds scale factors (diagonal) and cross coupling
errors (off-diagonal) and Gg the G-dependent cross biases introduced by
the specific force f. For the solver the model is rewritten with the common
factor M = I + Mg:

    measured = M * (true + b + G * f),   b = M^-1 * bg,   G = M^-1 * Gg

Mg layout:

    Mg = [sx    mxy  mxz]
         [myx   sy   myz]
         [mzx   mzy  sz ]

When a common z-axis is assumed for accelerometer and gyroscope,
myx = mzx = mzy = 0 and Mg (hence M) is upper triangular.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from .exceptions import ConfigurationError, NumericalError

COMPONENTS = 3

# Sub-diagonal entries removed by the common axis assumption
_LOWER_ROWS = np.array([1, 2, 2])
_LOWER_COLS = np.array([0, 0, 1])

# Upper triangle, column by column: m11, m12, m22, m13, m23, m33
_UPPER_ROWS = np.array([0, 0, 1, 0, 1, 2])
_UPPER_COLS = np.array([0, 1, 1, 2, 2, 2])


def _as_float_array(value, name: str, shape: Tuple[int, ...]) -> np.ndarray:
    try:
        array = np.array(value, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be numeric with shape {shape}") from e
    if array.size == np.prod(shape) and array.ndim == 2 and len(shape) == 1:
        # column or row vectors
        array = array.reshape(shape)
    if array.shape != shape:
        raise ConfigurationError(f"{name} must have shape {shape}, got {array.shape}")
    if not np.all(np.isfinite(array)):
        raise ConfigurationError(f"{name} must contain finite values")
    return array


def as_vector3(value, name: str = "vector") -> np.ndarray:
    """Return a 3-component float64 copy of a list, (3,), (3,1) or (1,3) array."""
    return _as_float_array(value, name, (COMPONENTS,))


def as_matrix3(value, name: str = "matrix") -> np.ndarray:
    """Return a 3x3 float64 copy of the provided matrix."""
    return _as_float_array(value, name, (COMPONENTS, COMPONENTS))


def _frozen(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def invert(m: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(m)
    except np.linalg.LinAlgError as e:
        raise NumericalError("Singular scaling and cross coupling matrix") from e


def enforce_common_axis(m: np.ndarray) -> np.ndarray:
    """Returns a copy of m with the three sub-diagonal entries set to 0.0."""
    result = np.array(m, dtype=np.float64)
    result[_LOWER_ROWS, _LOWER_COLS] = 0.0
    return result


class CalibrationVariant(Enum):
    """
    Closed set of model variants.

    Each member knows its number of unknowns and the layout of its flat
    parameter vector:
        b (3) | M column-major (9) or upper triangle (6) | G column-major (9)
    """
    COMMON_AXIS = (True, False, 9)
    GENERAL = (False, False, 12)
    COMMON_AXIS_G_DEPENDENT = (True, True, 18)
    GENERAL_G_DEPENDENT = (False, True, 21)

    def __init__(self, common_axis: bool, g_dependent: bool, unknowns: int):
        self.common_axis = common_axis
        self.g_dependent = g_dependent
        self.unknowns = unknowns

    @classmethod
    def from_flags(cls, common_axis: bool, g_dependent: bool) -> "CalibrationVariant":
        for variant in cls:
            if variant.common_axis == bool(common_axis) and variant.g_dependent == bool(g_dependent):
                return variant
        raise ConfigurationError("Unknown calibration variant")

    @property
    def minimum_required_measurements(self) -> int:
        return self.unknowns + 1

    def pack(self, b: np.ndarray, m: np.ndarray, g: Optional[np.ndarray] = None) -> np.ndarray:
        parts = [np.asarray(b, dtype=np.float64).reshape(COMPONENTS)]
        m = np.asarray(m, dtype=np.float64)
        if self.common_axis:
            parts.append(m[_UPPER_ROWS, _UPPER_COLS])
        else:
            parts.append(m.flatten(order="F"))
        if self.g_dependent:
            g = np.zeros((COMPONENTS, COMPONENTS)) if g is None else np.asarray(g, dtype=np.float64)
            parts.append(g.flatten(order="F"))
        return np.concatenate(parts)

    def unpack(self, params: np.ndarray,
               b: Optional[np.ndarray] = None,
               m: Optional[np.ndarray] = None,
               g: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Splits a flat parameter vector into (b, M, G).

        When output buffers are provided they are filled in place and
        returned, so that repeated evaluations do not allocate.
        G is all zeros for variants without G dependence.
        """
        params = np.asarray(params, dtype=np.float64)
        if params.shape != (self.unknowns,):
            raise ConfigurationError(
                f"{self.name} expects {self.unknowns} parameters, got shape {params.shape}")
        if b is None:
            b = np.empty(COMPONENTS)
        if m is None:
            m = np.empty((COMPONENTS, COMPONENTS))
        if g is None:
            g = np.empty((COMPONENTS, COMPONENTS))

        b[:] = params[:3]
        if self.common_axis:
            m.fill(0.0)
            m[_UPPER_ROWS, _UPPER_COLS] = params[3:9]
            k = 9
        else:
            m[:, :] = params[3:12].reshape((COMPONENTS, COMPONENTS), order="F")
            k = 12

        if self.g_dependent:
            g[:, :] = params[k:k + 9].reshape((COMPONENTS, COMPONENTS), order="F")
        else:
            g.fill(0.0)
        return b, m, g


@dataclass(frozen=True)
class PhysicalParameters:
    """Physical calibration parameters: bias bg, matrix Mg and optional Gg."""
    bias: np.ndarray
    mg: np.ndarray
    gg: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, "bias", _frozen(as_vector3(self.bias, "bias")))
        object.__setattr__(self, "mg", _frozen(as_matrix3(self.mg, "mg")))
        gg = np.zeros((COMPONENTS, COMPONENTS)) if self.gg is None else as_matrix3(self.gg, "gg")
        object.__setattr__(self, "gg", _frozen(gg))

    def to_fit(self) -> "FitParameters":
        # b = M^-1 * bg, G = M^-1 * Gg
        m = np.eye(COMPONENTS) + self.mg
        inv_m = invert(m)
        return FitParameters(b=inv_m @ self.bias, m=m, g=inv_m @ self.gg)


@dataclass(frozen=True)
class FitParameters:
    """Fit-friendly parameters: b, M = I + Mg and G."""
    b: np.ndarray
    m: np.ndarray
    g: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, "b", _frozen(as_vector3(self.b, "b")))
        object.__setattr__(self, "m", _frozen(as_matrix3(self.m, "m")))
        g = np.zeros((COMPONENTS, COMPONENTS)) if self.g is None else as_matrix3(self.g, "g")
        object.__setattr__(self, "g", _frozen(g))

    def to_physical(self) -> PhysicalParameters:
        # Mg = M - I, bg = M * b, Gg = M * G
        return PhysicalParameters(
            bias=self.m @ self.b,
            mg=self.m - np.eye(COMPONENTS),
            gg=self.m @ self.g,
        )


def scale_factors(mg: np.ndarray) -> np.ndarray:
    """Returns (sx, sy, sz)."""
    return np.diag(as_matrix3(mg, "mg")).copy()


def cross_coupling_errors(mg: np.ndarray) -> np.ndarray:
    """Returns (mxy, mxz, myx, myz, mzx, mzy)."""
    mg = as_matrix3(mg, "mg")
    return np.array([mg[0, 1], mg[0, 2], mg[1, 0], mg[1, 2], mg[2, 0], mg[2, 1]])


def mg_from_scale_factors_and_cross_coupling_errors(
        sx: float, sy: float, sz: float,
        mxy: float = 0.0, mxz: float = 0.0,
        myx: float = 0.0, myz: float = 0.0,
        mzx: float = 0.0, mzy: float = 0.0) -> np.ndarray:
    return np.array([[sx, mxy, mxz],
                     [myx, sy, myz],
                     [mzx, mzy, sz]], dtype=np.float64)


def correct_specific_force(measured: np.ndarray, bias: np.ndarray, ma: np.ndarray) -> np.ndarray:
    """
    Removes known accelerometer errors from measured specific force.

    f_true = (I + Ma)^-1 * (f_meas - ba). Works on a single (3,) vector or
    on an (N, 3) array of samples.
    """
    inv_m = invert(np.eye(COMPONENTS) + ma)
    return (np.asarray(measured, dtype=np.float64) - bias) @ inv_m.T
