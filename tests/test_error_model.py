import os
import sys
import unittest

import numpy as np

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imu_calibration.core.error_model import (CalibrationVariant, FitParameters, PhysicalParameters,
                                              as_vector3, correct_specific_force,
                                              cross_coupling_errors, enforce_common_axis,
                                              mg_from_scale_factors_and_cross_coupling_errors,
                                              scale_factors)
from imu_calibration.core.exceptions import ConfigurationError, NumericalError


class TestCalibrationVariant(unittest.TestCase):
    def test_unknowns_and_minimum_measurements(self):
        expected = {
            CalibrationVariant.COMMON_AXIS: 9,
            CalibrationVariant.GENERAL: 12,
            CalibrationVariant.COMMON_AXIS_G_DEPENDENT: 18,
            CalibrationVariant.GENERAL_G_DEPENDENT: 21,
        }
        for variant, unknowns in expected.items():
            self.assertEqual(variant.unknowns, unknowns)
            self.assertEqual(variant.minimum_required_measurements, unknowns + 1)

    def test_from_flags(self):
        self.assertIs(CalibrationVariant.from_flags(True, False), CalibrationVariant.COMMON_AXIS)
        self.assertIs(CalibrationVariant.from_flags(False, True), CalibrationVariant.GENERAL_G_DEPENDENT)

    def test_general_layout_is_column_major(self):
        b = np.array([1.0, 2.0, 3.0])
        m = np.arange(9, dtype=float).reshape(3, 3) + 10
        g = np.arange(9, dtype=float).reshape(3, 3) + 100
        params = CalibrationVariant.GENERAL_G_DEPENDENT.pack(b, m, g)
        np.testing.assert_array_equal(params[:3], b)
        np.testing.assert_array_equal(params[3:12], [10, 13, 16, 11, 14, 17, 12, 15, 18])
        np.testing.assert_array_equal(params[12:], m.T.ravel() + 90)

        b2, m2, g2 = CalibrationVariant.GENERAL_G_DEPENDENT.unpack(params)
        np.testing.assert_array_equal(b2, b)
        np.testing.assert_array_equal(m2, m)
        np.testing.assert_array_equal(g2, g)

    def test_common_axis_layout_is_upper_triangle(self):
        params = np.arange(1, 10, dtype=float)
        b, m, g = CalibrationVariant.COMMON_AXIS.unpack(params)
        np.testing.assert_array_equal(b, [1, 2, 3])
        np.testing.assert_array_equal(m, [[4, 5, 7],
                                          [0, 6, 8],
                                          [0, 0, 9]])
        self.assertTrue(np.all(m[np.tril_indices(3, -1)] == 0.0))
        np.testing.assert_array_equal(g, np.zeros((3, 3)))
        np.testing.assert_array_equal(CalibrationVariant.COMMON_AXIS.pack(b, m), params)

    def test_unpack_fills_buffers_in_place(self):
        b, m, g = np.empty(3), np.full((3, 3), 7.0), np.empty((3, 3))
        out = CalibrationVariant.COMMON_AXIS.unpack(np.ones(9), b, m, g)
        self.assertIs(out[1], m)
        self.assertEqual(m[2, 0], 0.0)

    def test_wrong_parameter_count(self):
        with self.assertRaises(ConfigurationError):
            CalibrationVariant.GENERAL.unpack(np.zeros(9))


class TestParameterConversions(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(3)
        self.physical = PhysicalParameters(bias=rng.normal(0, 0.1, 3),
                                           mg=rng.normal(0, 0.02, (3, 3)),
                                           gg=rng.normal(0, 0.001, (3, 3)))

    def test_physical_round_trip(self):
        back = self.physical.to_fit().to_physical()
        np.testing.assert_allclose(back.bias, self.physical.bias, atol=1e-9)
        np.testing.assert_allclose(back.mg, self.physical.mg, atol=1e-9)
        np.testing.assert_allclose(back.gg, self.physical.gg, atol=1e-9)

    def test_fit_round_trip(self):
        fit = self.physical.to_fit()
        again = fit.to_physical().to_fit()
        np.testing.assert_allclose(again.b, fit.b, atol=1e-9)
        np.testing.assert_allclose(again.m, fit.m, atol=1e-9)
        np.testing.assert_allclose(again.g, fit.g, atol=1e-9)

    def test_fit_model_matches_physical_model(self):
        fit = self.physical.to_fit()
        true, f = np.array([0.3, -0.2, 0.1]), np.array([0.0, 0.0, 9.81])
        physical = self.physical.bias + (np.eye(3) + self.physical.mg) @ true + self.physical.gg @ f
        np.testing.assert_allclose(fit.m @ (true + fit.b + fit.g @ f), physical, atol=1e-12)

    def test_missing_gg_is_zero(self):
        p = PhysicalParameters(bias=[0, 0, 0], mg=np.zeros((3, 3)))
        np.testing.assert_array_equal(p.gg, np.zeros((3, 3)))

    def test_singular_m_raises(self):
        p = PhysicalParameters(bias=[0, 0, 0], mg=-np.eye(3))
        with self.assertRaises(NumericalError):
            p.to_fit()

    def test_arrays_are_read_only(self):
        with self.assertRaises(ValueError):
            self.physical.bias[0] = 1.0


class TestBoundaryAdapters(unittest.TestCase):
    def test_vector_shapes(self):
        for value in ([1, 2, 3], np.array([[1], [2], [3]]), np.array([[1, 2, 3]])):
            np.testing.assert_array_equal(as_vector3(value), [1.0, 2.0, 3.0])

    def test_bias_of_length_one_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            PhysicalParameters(bias=[0.1], mg=np.zeros((3, 3)))

    def test_non_finite_values_are_rejected(self):
        with self.assertRaises(ConfigurationError):
            as_vector3([0.0, np.nan, 1.0])

    def test_scale_factors_and_cross_coupling(self):
        mg = mg_from_scale_factors_and_cross_coupling_errors(0.1, 0.2, 0.3, 1, 2, 3, 4, 5, 6)
        np.testing.assert_array_equal(scale_factors(mg), [0.1, 0.2, 0.3])
        np.testing.assert_array_equal(cross_coupling_errors(mg), [1, 2, 3, 4, 5, 6])

    def test_enforce_common_axis(self):
        m = enforce_common_axis(np.ones((3, 3)))
        np.testing.assert_array_equal(m, np.triu(np.ones((3, 3))))

    def test_correct_specific_force(self):
        ba = np.array([0.1, 0.2, 0.3])
        ma = np.diag([0.01, 0.02, 0.03])
        true = np.array([[0.0, 0.0, 9.81], [1.0, -2.0, 3.0]])
        measured = ba + true @ (np.eye(3) + ma).T
        np.testing.assert_allclose(correct_specific_force(measured, ba, ma), true, atol=1e-12)


if __name__ == '__main__':
    unittest.main()
