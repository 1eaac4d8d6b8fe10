import os
import sys
import unittest

import numpy as np

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imu_calibration.core.error_model import CalibrationVariant
from imu_calibration.core.exceptions import ConfigurationError, NumericalError
from imu_calibration.solvers.accelerometer_solver import AccelerometerCalibrator, solve_linear
from synthetic_data import BA, MA, MA_GENERAL, make_frames


class TestSolveLinear(unittest.TestCase):
    def test_exact_for_noiseless_frames(self):
        rng = np.random.default_rng(0)
        frames, _ = make_frames(rng, 20, ma=MA_GENERAL)
        measured = np.stack([f.measured_specific_force for f in frames])
        expected = np.stack([f.true_specific_force for f in frames])

        physical = solve_linear(measured, expected, common_axis=False)
        np.testing.assert_allclose(physical.bias, BA, atol=1e-10)
        np.testing.assert_allclose(physical.mg, MA_GENERAL, atol=1e-10)

    def test_common_axis_solution_is_upper_triangular(self):
        rng = np.random.default_rng(1)
        frames, _ = make_frames(rng, 20)
        measured = np.stack([f.measured_specific_force for f in frames])
        expected = np.stack([f.true_specific_force for f in frames])

        physical = solve_linear(measured, expected, common_axis=True)
        self.assertTrue(np.all(physical.mg[np.tril_indices(3, -1)] == 0.0))
        np.testing.assert_allclose(physical.mg, MA, atol=1e-10)

    def test_degenerate_frames(self):
        # every frame at the same attitude
        expected = np.tile([0.0, 0.0, 9.81], (12, 1))
        with self.assertRaises(NumericalError):
            solve_linear(expected + 0.1, expected)


class TestAccelerometerCalibrator(unittest.TestCase):
    def test_general_recovery(self):
        rng = np.random.default_rng(2)
        frames, _ = make_frames(rng, 40, ma=MA_GENERAL)
        calibrator = AccelerometerCalibrator(frames, common_axis=False)
        self.assertEqual(calibrator.minimum_required_measurements, 13)

        result = calibrator.calibrate()
        self.assertIs(result.variant, CalibrationVariant.GENERAL)
        np.testing.assert_allclose(result.bg, BA, atol=1e-9)
        np.testing.assert_allclose(result.mg, MA_GENERAL, atol=1e-9)
        self.assertIsNone(result.g)
        np.testing.assert_allclose(result.scale_factors, np.diag(MA_GENERAL), atol=1e-9)

    def test_noisy_frames_weighted(self):
        rng = np.random.default_rng(3)
        frames, _ = make_frames(rng, 300, noise_std=1e-3)
        result = AccelerometerCalibrator(frames).calibrate()
        np.testing.assert_allclose(result.mg, MA, atol=2e-3)
        # chi2 of weighted residuals is close to the degrees of freedom
        self.assertLess(result.chi_sq, 2.0 * 3 * len(frames))
        self.assertTrue(np.all(np.diag(result.covariance) > 0.0))

    def test_published_result_is_read_only(self):
        rng = np.random.default_rng(4)
        frames, _ = make_frames(rng, 20)
        calibrator = AccelerometerCalibrator(frames)
        result = calibrator.calibrate()
        published = result.mg.copy()

        for array in (result.mg, result.bg, result.m, result.b, result.covariance,
                      calibrator.estimated_mg, calibrator.estimated_biases):
            with self.assertRaises(ValueError):
                array[0] = 123.0
        np.testing.assert_array_equal(calibrator.estimated_mg, published)

    def test_g_dependent_variant_is_rejected(self):
        calibrator = AccelerometerCalibrator()
        with self.assertRaises(ConfigurationError):
            calibrator.variant = CalibrationVariant.GENERAL_G_DEPENDENT
        calibrator.variant = CalibrationVariant.GENERAL
        self.assertFalse(calibrator.common_axis)


if __name__ == '__main__':
    unittest.main()
