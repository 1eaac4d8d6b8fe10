from dataclasses import dataclass, field
from typing import Iterable, Sequence, Tuple

import numpy as np

from .error_model import as_vector3
from .exceptions import ConfigurationError

MIN_SEQUENCE_SAMPLES = 3


def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def _non_negative(value: float, name: str) -> float:
    value = float(value)
    if not np.isfinite(value) or value < 0.0:
        raise ConfigurationError(f"{name} must be a finite non-negative value")
    return value


@dataclass(frozen=True)
class SampledKinematics:
    """
    One IMU sample.
    Specific force in m/s^2, angular rate in rad/s, timestamp in seconds.
    Standard deviations are optional noise weights (0.0 when unknown).
    """
    specific_force: np.ndarray    # 3 (fx, fy, fz)
    angular_rate: np.ndarray      # 3 (wx, wy, wz)
    timestamp: float = 0.0
    specific_force_std: float = 0.0
    angular_rate_std: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "specific_force",
                           _readonly(as_vector3(self.specific_force, "specific_force")))
        object.__setattr__(self, "angular_rate",
                           _readonly(as_vector3(self.angular_rate, "angular_rate")))
        timestamp = float(self.timestamp)
        if not np.isfinite(timestamp):
            raise ConfigurationError("timestamp must be finite")
        object.__setattr__(self, "timestamp", timestamp)
        object.__setattr__(self, "specific_force_std",
                           _non_negative(self.specific_force_std, "specific_force_std"))
        object.__setattr__(self, "angular_rate_std",
                           _non_negative(self.angular_rate_std, "angular_rate_std"))


@dataclass(frozen=True)
class MotionSequence:
    """
    Samples taken while the device moves between two quasi-static intervals.

    The mean specific force of the static interval preceding the motion
    ("before") and following it ("after") gives the gravity direction at
    both ends of the sequence.
    """
    samples: Tuple[SampledKinematics, ...]
    before_mean_specific_force: np.ndarray
    after_mean_specific_force: np.ndarray

    # derived arrays, filled once at construction
    timestamps: np.ndarray = field(init=False, repr=False, compare=False)
    specific_forces: np.ndarray = field(init=False, repr=False, compare=False)
    angular_rates: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        samples = tuple(self.samples)
        if len(samples) < MIN_SEQUENCE_SAMPLES:
            raise ConfigurationError(
                f"A motion sequence needs at least {MIN_SEQUENCE_SAMPLES} samples, got {len(samples)}")
        if not all(isinstance(s, SampledKinematics) for s in samples):
            raise ConfigurationError("Motion sequence items must be SampledKinematics")

        samples = tuple(sorted(samples, key=lambda s: s.timestamp))
        timestamps = np.array([s.timestamp for s in samples])
        if np.any(np.diff(timestamps) <= 0.0):
            raise ConfigurationError("Motion sequence timestamps must be strictly increasing")

        object.__setattr__(self, "samples", samples)
        object.__setattr__(self, "before_mean_specific_force",
                           _readonly(as_vector3(self.before_mean_specific_force,
                                                "before_mean_specific_force")))
        object.__setattr__(self, "after_mean_specific_force",
                           _readonly(as_vector3(self.after_mean_specific_force,
                                                "after_mean_specific_force")))
        object.__setattr__(self, "timestamps", _readonly(timestamps))
        object.__setattr__(self, "specific_forces",
                           _readonly(np.stack([s.specific_force for s in samples])))
        object.__setattr__(self, "angular_rates",
                           _readonly(np.stack([s.angular_rate for s in samples])))

    @classmethod
    def from_static_intervals(cls,
                              before_samples: Iterable[SampledKinematics],
                              samples: Sequence[SampledKinematics],
                              after_samples: Iterable[SampledKinematics]) -> "MotionSequence":
        """Builds a sequence averaging the specific force of both static intervals."""
        before = [s.specific_force for s in before_samples]
        after = [s.specific_force for s in after_samples]
        if not before or not after:
            raise ConfigurationError("Static intervals must contain at least one sample")
        return cls(samples=tuple(samples),
                   before_mean_specific_force=np.mean(before, axis=0),
                   after_mean_specific_force=np.mean(after, axis=0))

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def duration(self) -> float:
        return float(self.timestamps[-1] - self.timestamps[0])

    def average_angular_rate_std(self) -> float:
        """Average angular rate standard deviation of the samples (rad/s)."""
        return float(np.mean([s.angular_rate_std for s in self.samples]))


@dataclass(frozen=True)
class FrameKinematics:
    """
    Accelerometer sample taken at a known position and attitude.

    true_specific_force is the specific force expected for that frame;
    computing it from position/attitude is done by the caller.
    """
    measured_specific_force: np.ndarray
    true_specific_force: np.ndarray
    specific_force_std: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "measured_specific_force",
                           _readonly(as_vector3(self.measured_specific_force,
                                                "measured_specific_force")))
        object.__setattr__(self, "true_specific_force",
                           _readonly(as_vector3(self.true_specific_force,
                                                "true_specific_force")))
        object.__setattr__(self, "specific_force_std",
                           _non_negative(self.specific_force_std, "specific_force_std"))
