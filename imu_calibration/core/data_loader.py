import logging
from typing import List, Optional

import numpy as np
import pandas as pd

from .measurements import FrameKinematics, MotionSequence, SampledKinematics
from .noise_db import NoiseDatabase, noise_db

logger = logging.getLogger(__name__)

SEQUENCE_COLUMNS = ['sequence', 'phase', 'timestamp', 'fx', 'fy', 'fz', 'wx', 'wy', 'wz']
FRAME_COLUMNS = ['fx', 'fy', 'fz', 'true_fx', 'true_fy', 'true_fz']
PHASES = ('before', 'motion', 'after')


class DataLoader:
    """
    Reads calibration recordings from CSV files.

    Gyroscope recordings hold one row per sample:
        sequence, phase, timestamp, fx, fy, fz, wx, wy, wz[, f_std, w_std]
    where phase is 'before', 'motion' or 'after' (static interval preceding
    the motion, the motion itself, static interval following it).

    Accelerometer recordings hold one row per known frame:
        fx, fy, fz, true_fx, true_fy, true_fz[, f_std]

    When the std columns are missing they are filled with the white noise
    of the configured chip.
    """

    def __init__(self, chip: Optional[str] = None, sampling_rate_hz: float = 100.0,
                 database: NoiseDatabase = noise_db):
        self.chip = chip
        self.sampling_rate_hz = sampling_rate_hz
        self.noise = database.get_params(chip, sampling_rate_hz=sampling_rate_hz)

    def _read(self, csv_path: str, required: List[str]) -> pd.DataFrame:
        df = pd.read_csv(csv_path)
        df.columns = [c.strip().lower() for c in df.columns]
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise ValueError(f"{csv_path} is missing columns: {', '.join(missing)}")
        if df.empty:
            raise ValueError(f"No valid data found in {csv_path}.")
        return df

    def _samples(self, df: pd.DataFrame) -> List[SampledKinematics]:
        forces = df[['fx', 'fy', 'fz']].to_numpy(dtype=np.float64)
        rates = df[['wx', 'wy', 'wz']].to_numpy(dtype=np.float64)
        times = df['timestamp'].to_numpy(dtype=np.float64)
        f_std = df['f_std'].to_numpy(dtype=np.float64)
        w_std = df['w_std'].to_numpy(dtype=np.float64)
        return [SampledKinematics(specific_force=forces[i], angular_rate=rates[i], timestamp=times[i],
                                  specific_force_std=f_std[i], angular_rate_std=w_std[i])
                for i in range(len(df))]

    def load_sequences(self, csv_path: str) -> List[MotionSequence]:
        df = self._read(csv_path, SEQUENCE_COLUMNS)
        df['phase'] = df['phase'].astype(str).str.strip().str.lower()
        unknown = set(df['phase']) - set(PHASES)
        if unknown:
            raise ValueError(f"Unknown phase values in {csv_path}: {sorted(unknown)}")
        if 'f_std' not in df.columns:
            df['f_std'] = self.noise.accel_noise_sigma
        if 'w_std' not in df.columns:
            df['w_std'] = self.noise.gyro_noise_sigma

        sequences = []
        for sequence_id, group in df.groupby('sequence', sort=True):
            group = group.sort_values('timestamp')
            phases = {phase: self._samples(group[group['phase'] == phase]) for phase in PHASES}
            sequences.append(MotionSequence.from_static_intervals(
                phases['before'], phases['motion'], phases['after']))
            logger.debug("Sequence %s: %d motion samples", sequence_id, len(phases['motion']))

        logger.info("Loaded %d sequences from %s", len(sequences), csv_path)
        return sequences

    def load_frame_kinematics(self, csv_path: str) -> List[FrameKinematics]:
        df = self._read(csv_path, FRAME_COLUMNS)
        if 'f_std' not in df.columns:
            df['f_std'] = self.noise.accel_noise_sigma

        measured = df[['fx', 'fy', 'fz']].to_numpy(dtype=np.float64)
        expected = df[['true_fx', 'true_fy', 'true_fz']].to_numpy(dtype=np.float64)
        f_std = df['f_std'].to_numpy(dtype=np.float64)
        frames = [FrameKinematics(measured_specific_force=measured[i], true_specific_force=expected[i],
                                  specific_force_std=f_std[i])
                  for i in range(len(df))]

        logger.info("Loaded %d frames from %s", len(frames), csv_path)
        return frames
