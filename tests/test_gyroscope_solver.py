import os
import sys
import unittest

import numpy as np

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imu_calibration.core.error_model import CalibrationVariant
from imu_calibration.core.exceptions import ConfigurationError, NotReadyError, NumericalError
from imu_calibration.solvers.accelerometer_solver import AccelerometerCalibrator
from imu_calibration.solvers.gyroscope_solver import GyroscopeCalibrator, SequenceFitContext
from synthetic_data import BA, BG, GG, MA, MG, MG_GENERAL, make_frames, make_sequences


class TestSequenceFitContext(unittest.TestCase):
    def test_true_parameters_give_zero_residuals(self):
        rng = np.random.default_rng(0)
        sequences = make_sequences(rng, 5, gg=GG)
        variant = CalibrationVariant.COMMON_AXIS_G_DEPENDENT
        calibrator = GyroscopeCalibrator(sequences, initial_bias=BG, initial_mg=MG, initial_gg=GG)
        context = SequenceFitContext(sequences, variant, BA, MA)

        residuals = context.residuals(calibrator.initial_parameters())
        self.assertEqual(residuals.shape, (15,))
        np.testing.assert_allclose(residuals, 0.0, atol=1e-12)

    def test_subset_matches_full_context(self):
        rng = np.random.default_rng(1)
        sequences = make_sequences(rng, 6)
        context = SequenceFitContext(sequences, CalibrationVariant.COMMON_AXIS, BA, MA)
        params = np.zeros(9)
        params[[3, 5, 8]] = 1.0
        full = context.errors(params)
        np.testing.assert_allclose(context.subset([4, 1]).errors(params), full[[4, 1]])


class TestGyroscopeCalibrator(unittest.TestCase):
    def test_noiseless_general_recovery(self):
        rng = np.random.default_rng(42)
        sequences = make_sequences(rng, 20, mg=MG_GENERAL)
        calibrator = GyroscopeCalibrator(sequences, common_axis=False,
                                         estimate_g_dependent_cross_biases=False,
                                         accelerometer_bias=BA, accelerometer_mg=MA)
        self.assertIs(calibrator.variant, CalibrationVariant.GENERAL)
        result = calibrator.calibrate()

        np.testing.assert_allclose(result.mg, MG_GENERAL, atol=1e-6)
        np.testing.assert_allclose(result.bg, BG, atol=1e-6)
        self.assertIsNone(result.gg)
        self.assertLess(result.chi_sq, 1e-12)
        self.assertEqual(result.covariance.shape, (12, 12))
        self.assertIs(calibrator.estimated_mg, result.mg)

    def test_common_axis_keeps_lower_triangle_zero(self):
        rng = np.random.default_rng(5)
        sequences = make_sequences(rng, 12)
        calibrator = GyroscopeCalibrator(sequences, estimate_g_dependent_cross_biases=False,
                                         initial_mg=np.full((3, 3), 0.01),
                                         accelerometer_bias=BA, accelerometer_mg=MA)
        result = calibrator.calibrate()
        self.assertTrue(np.all(result.mg[np.tril_indices(3, -1)] == 0.0))
        np.testing.assert_allclose(result.mg, MG, atol=1e-6)

    def test_g_dependent_cross_biases(self):
        # G = c * I is not observable (rotation about gravity), so only
        # bias and Mg are compared, starting next to the truth.
        rng = np.random.default_rng(9)
        sequences = make_sequences(rng, 24, gg=GG)
        calibrator = GyroscopeCalibrator(sequences, initial_bias=BG + 1e-3, initial_mg=MG + 1e-3 * np.eye(3),
                                         initial_gg=GG, accelerometer_bias=BA, accelerometer_mg=MA)
        self.assertIs(calibrator.variant, CalibrationVariant.COMMON_AXIS_G_DEPENDENT)
        result = calibrator.calibrate()

        np.testing.assert_allclose(result.bg, BG, atol=1e-5)
        np.testing.assert_allclose(result.mg, MG, atol=1e-5)
        self.assertEqual(result.gg.shape, (3, 3))
        self.assertLess(result.chi_sq, 1e-10)

    def test_accelerometer_result_feeds_gyroscope(self):
        rng = np.random.default_rng(21)
        frames, _ = make_frames(rng, 30)
        accel = AccelerometerCalibrator(frames).calibrate()

        sequences = make_sequences(rng, 12)
        calibrator = GyroscopeCalibrator(sequences, estimate_g_dependent_cross_biases=False)
        calibrator.use_accelerometer_result(accel)
        np.testing.assert_allclose(calibrator.accelerometer_bias, BA, atol=1e-9)
        result = calibrator.calibrate()
        np.testing.assert_allclose(result.mg, MG, atol=1e-6)

    def test_not_ready(self):
        rng = np.random.default_rng(2)
        calibrator = GyroscopeCalibrator(make_sequences(rng, 18))
        self.assertEqual(calibrator.minimum_required_measurements, 19)
        self.assertFalse(calibrator.is_ready)
        with self.assertRaises(NotReadyError):
            calibrator.calibrate()
        calibrator.estimate_g_dependent_cross_biases = False
        self.assertTrue(calibrator.is_ready)

    def test_failed_calibration_keeps_previous_result(self):
        rng = np.random.default_rng(4)
        calibrator = GyroscopeCalibrator(make_sequences(rng, 12), estimate_g_dependent_cross_biases=False,
                                         accelerometer_bias=BA, accelerometer_mg=MA)
        first = calibrator.calibrate()

        calibrator.initial_bias = [0.5, -0.5, 0.5]
        calibrator.max_function_evaluations = 2
        with self.assertRaises(NumericalError):
            calibrator.calibrate()
        self.assertIs(calibrator.result, first)
        self.assertFalse(calibrator.is_running)

    def test_invalid_configuration(self):
        calibrator = GyroscopeCalibrator()
        with self.assertRaises(ConfigurationError):
            calibrator.initial_bias = [0.1]
        with self.assertRaises(ConfigurationError):
            calibrator.sequences = ["not a sequence"]
        with self.assertRaises(ConfigurationError):
            calibrator.accelerometer_mg = -np.eye(3)


if __name__ == '__main__':
    unittest.main()
