"""
Datasheet noise figures for common MEMS IMU chips.

Used to weight measurements when a recording does not carry per-sample
standard deviations.

Conversion notes:
- Noise density (ND) to sigma at sampling rate f: sigma = ND * sqrt(f)
- dps to rad/s: multiply by pi/180
- µg to m/s²: multiply by 9.81e-6
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CHIP = "generic_midrange"


@dataclass(frozen=True)
class NoiseParams:
    """White noise standard deviations in SI units."""
    accel_noise_sigma: float  # m/s²
    gyro_noise_sigma: float   # rad/s
    sensor_chip: str = "unknown"
    notes: str = ""


@dataclass(frozen=True)
class SensorChipSpec:
    """
    Raw specifications from sensor chip datasheets.
    These are noise densities that need to be converted based on sampling rate.
    """
    name: str
    manufacturer: str
    gyro_noise_density_dps_sqrt_hz: float  # dps/√Hz
    accel_noise_density_ug_sqrt_hz: float  # µg/√Hz

    def to_noise_params(self, sampling_rate_hz: float = 100.0) -> NoiseParams:
        if sampling_rate_hz <= 0:
            raise ValueError(f"Sampling rate must be positive, got {sampling_rate_hz}")
        sqrt_rate = math.sqrt(sampling_rate_hz)

        # Gyro: dps/√Hz -> rad/s
        gyro_sigma = self.gyro_noise_density_dps_sqrt_hz * sqrt_rate * (math.pi / 180.0)
        # Accel: µg/√Hz -> m/s²
        accel_sigma = self.accel_noise_density_ug_sqrt_hz * sqrt_rate * 9.81e-6

        return NoiseParams(
            accel_noise_sigma=accel_sigma,
            gyro_noise_sigma=gyro_sigma,
            sensor_chip=self.name,
            notes=f"Converted from {self.manufacturer} {self.name} datasheet at {sampling_rate_hz}Hz",
        )


SENSOR_CHIPS: Dict[str, SensorChipSpec] = {
    # --- Bosch Sensortec ---
    "bmi160": SensorChipSpec("BMI160", "Bosch", 0.007, 180.0),
    "bmi270": SensorChipSpec("BMI270", "Bosch", 0.007, 160.0),
    "bmi323": SensorChipSpec("BMI323", "Bosch", 0.006, 120.0),
    # --- STMicroelectronics ---
    "lsm6dso": SensorChipSpec("LSM6DSO", "STMicroelectronics", 0.0035, 70.0),
    "lsm6dsr": SensorChipSpec("LSM6DSR", "STMicroelectronics", 0.005, 60.0),
    "ism330dhcx": SensorChipSpec("ISM330DHCX", "STMicroelectronics", 0.0028, 55.0),
    # --- TDK InvenSense ---
    "icm42688": SensorChipSpec("ICM-42688-P", "TDK InvenSense", 0.0028, 70.0),
    "mpu6050": SensorChipSpec("MPU-6050", "TDK InvenSense", 0.005, 400.0),
    # --- Generic/Fallback ---
    "generic_premium": SensorChipSpec("Generic Premium", "Generic", 0.004, 80.0),
    "generic_midrange": SensorChipSpec("Generic Midrange", "Generic", 0.007, 150.0),
    "generic_budget": SensorChipSpec("Generic Budget", "Generic", 0.01, 250.0),
}


class NoiseDatabase:
    """
    Looks up noise parameters by chip name.

    Usage:
        params = noise_db.get_params("icm42688", sampling_rate_hz=200.0)
        print(f"Gyro noise: {params.gyro_noise_sigma} rad/s")
    """

    def __init__(self, sampling_rate_hz: float = 100.0):
        self.sampling_rate = sampling_rate_hz
        self._cache: Dict[str, NoiseParams] = {}

    def _normalize_key(self, chip: str) -> str:
        return chip.lower().replace(" ", "_").replace("-", "")

    def get_params(self, chip: Optional[str] = None,
                   sampling_rate_hz: Optional[float] = None) -> NoiseParams:
        """
        Get noise parameters for a chip at a sampling rate.
        Unknown chips fall back to the generic midrange chip.
        """
        key = self._normalize_key(chip) if chip else DEFAULT_CHIP
        rate = self.sampling_rate if sampling_rate_hz is None else sampling_rate_hz
        cache_key = f"{key}_{rate}"
        if cache_key in self._cache:
            return self._cache[cache_key]

        if key not in SENSOR_CHIPS:
            logger.warning("Unknown sensor chip %r, using %s noise figures", chip, DEFAULT_CHIP)
            key = DEFAULT_CHIP

        params = SENSOR_CHIPS[key].to_noise_params(sampling_rate_hz=rate)
        self._cache[cache_key] = params
        return params

    def list_chips(self):
        return sorted(SENSOR_CHIPS)


noise_db = NoiseDatabase()
