import contextlib
import io
import json
import os
import sys
import tempfile
import unittest

import numpy as np
import pandas as pd

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imu_calibration.estimate_calibration import main
from imu_calibration.visualizer import plot_residuals
from synthetic_data import BA, MA, MG, make_frames, make_sequences


def frames_to_csv(frames, path):
    rows = [np.concatenate([f.measured_specific_force, f.true_specific_force]) for f in frames]
    pd.DataFrame(rows, columns=['fx', 'fy', 'fz', 'true_fx', 'true_fy', 'true_fz']).to_csv(path, index=False)


def sequences_to_csv(sequences, path):
    rows = []
    for i, seq in enumerate(sequences):
        rows.append([i, 'before', -0.1, *seq.before_mean_specific_force, 0.0, 0.0, 0.0])
        for s in seq.samples:
            rows.append([i, 'motion', s.timestamp, *s.specific_force, *s.angular_rate])
        rows.append([i, 'after', seq.timestamps[-1] + 0.1, *seq.after_mean_specific_force, 0.0, 0.0, 0.0])
    pd.DataFrame(rows, columns=['sequence', 'phase', 'timestamp', 'fx', 'fy', 'fz',
                                'wx', 'wy', 'wz']).to_csv(path, index=False)


class TestEstimateCalibration(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def test_end_to_end(self):
        rng = np.random.default_rng(0)
        accel_csv = os.path.join(self.tmp.name, "frames.csv")
        gyro_csv = os.path.join(self.tmp.name, "sequences.csv")
        frames_to_csv(make_frames(rng, 30)[0], accel_csv)
        sequences_to_csv(make_sequences(rng, 12), gyro_csv)
        output = os.path.join(self.tmp.name, "out", "calibration.json")
        plots = os.path.join(self.tmp.name, "plots")

        with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
            code = main(["--accel", accel_csv, "--gyro", gyro_csv, "--method", "ransac",
                         "--no-g-dependent", "--seed", "1", "--output", output, "--plot", plots,
                         "--log-dir", os.path.join(self.tmp.name, "logs")])
        self.assertEqual(code, 0)

        with open(output) as f:
            data = json.load(f)
        np.testing.assert_allclose(data["accelerometer"]["bias"], BA, atol=1e-6)
        np.testing.assert_allclose(data["accelerometer"]["mg"], MA, atol=1e-6)
        np.testing.assert_allclose(data["gyroscope"]["mg"], MG, atol=1e-5)
        self.assertIsNone(data["gyroscope"]["gg"])
        self.assertEqual(data["gyroscope"]["inliers"], 12)
        self.assertTrue(os.path.exists(os.path.join(plots, "gyroscope_residuals.png")))
        self.assertTrue(os.path.exists(os.path.join(self.tmp.name, "logs", "calibration.log")))

    def test_requires_an_input(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                main([])


class TestVisualizer(unittest.TestCase):
    def test_plot_residuals(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = plot_residuals(np.array([1e-4, 2e-3, 0.5, 3e-4]), np.array([True, True, False, True]),
                                  1e-2, os.path.join(tmp, "residuals.png"))
            self.assertTrue(os.path.getsize(path) > 0)


if __name__ == '__main__':
    unittest.main()
