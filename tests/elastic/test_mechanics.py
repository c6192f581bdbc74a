#!/usr/bin/env python3
"""
应变推导测试
"""

import numpy as np
import pytest

from latticestrain.elastic.mechanics import StrainCalculator, StrainFrame


@pytest.fixture
def calculator():
    return StrainCalculator()


class TestGreenLagrange:
    """Green-Lagrange 应变"""

    def test_identity_and_rotation(self, calculator, rot_z):
        np.testing.assert_allclose(calculator.green_lagrange(np.eye(3)), 0.0, atol=1e-15)
        np.testing.assert_allclose(calculator.green_lagrange(rot_z(37.0)), 0.0, atol=1e-15)

    def test_isotropic_stretch(self, calculator):
        E = calculator.green_lagrange(1.01 * np.eye(3))
        np.testing.assert_allclose(E, 0.5 * (1.01**2 - 1.0) * np.eye(3), atol=1e-15)

    def test_simple_shear_voigt(self, calculator):
        gamma = 0.02
        F = np.eye(3)
        F[0, 1] = gamma
        voigt = calculator.compute_strain(F)
        np.testing.assert_allclose(
            voigt, [0.0, 0.5 * gamma**2, 0.0, 0.0, 0.0, gamma], atol=1e-15
        )

    def test_rotation_invariance(self, calculator, rot_z, general_deformation):
        E = calculator.green_lagrange(general_deformation)
        E_rot = calculator.green_lagrange(rot_z(25.0) @ general_deformation)
        np.testing.assert_allclose(E, E_rot, atol=1e-14)


class TestPushForward:
    """推前与拉回"""

    def test_matches_closed_form(self, calculator, general_deformation):
        F = general_deformation
        e, ok = calculator.euler_almansi(F)
        assert ok
        expected = 0.5 * (np.eye(3) - np.linalg.inv(F @ F.T))
        np.testing.assert_allclose(e, expected, atol=1e-14)

    def test_pull_back_inverts_push_forward(self, calculator, general_deformation):
        F = general_deformation
        E = calculator.green_lagrange(F)
        e, ok = calculator.push_forward(E, F)
        assert ok
        np.testing.assert_allclose(calculator.pull_back(e, F), E, atol=1e-14)

    def test_isotropic_push_forward(self):
        out = StrainCalculator(push_forward=True).compute((1.01 * np.eye(3))[None])
        assert out.frame is StrainFrame.SPATIAL
        E = 0.5 * (1.01**2 - 1.0)
        np.testing.assert_allclose(out.tensors[0], (E / 1.01**2) * np.eye(3), atol=1e-15)

    def test_singular_batch_entry(self, calculator):
        F = np.stack([np.eye(3), np.zeros((3, 3))])
        e, ok = calculator.push_forward(np.zeros((2, 3, 3)), F)
        np.testing.assert_array_equal(ok, [True, False])
        assert np.all(e[1] == 0.0)


class TestCompute:
    """批量推导"""

    def test_volumetric_strain(self, calculator, general_deformation):
        F = np.stack([1.01 * np.eye(3), general_deformation])
        out = calculator.compute(F)
        assert out.frame is StrainFrame.REFERENCE
        np.testing.assert_allclose(
            out.volumetric, [1.01**3 - 1.0, np.linalg.det(general_deformation) - 1.0], atol=1e-14
        )
        assert np.all(out.valid)
        np.testing.assert_allclose(out.tensors, np.swapaxes(out.tensors, 1, 2), atol=0)

    def test_invalid_entries_are_zero(self):
        F = np.stack([np.eye(3) * 1.02, np.full((3, 3), np.nan), np.zeros((3, 3)), np.eye(3)])
        valid = np.array([True, True, True, False])
        out = StrainCalculator(push_forward=True).compute(F, valid)
        np.testing.assert_array_equal(out.valid, [True, False, True, False])
        np.testing.assert_array_equal(out.tensor_valid, [True, False, False, False])
        assert np.all(np.isfinite(out.tensors))
        assert np.all(out.tensors[1:] == 0.0)
        np.testing.assert_array_equal(out.volumetric[[1, 3]], 0.0)

    def test_failed_push_forward_keeps_volumetric(self):
        """推前求逆失败只影响应变张量，体应变仍由 det F 给出"""
        F = np.stack([np.eye(3), np.diag([1.0, 1.0, 0.0])])
        out = StrainCalculator(push_forward=True).compute(F)
        np.testing.assert_array_equal(out.valid, [True, True])
        np.testing.assert_array_equal(out.tensor_valid, [True, False])
        assert np.all(out.tensors[1] == 0.0)
        assert out.volumetric[1] == pytest.approx(-1.0)

    def test_reference_frame_accepts_singular_gradient(self, calculator):
        out = calculator.compute(np.zeros((1, 3, 3)))
        assert out.valid[0]
        np.testing.assert_allclose(out.tensors[0], -0.5 * np.eye(3))
        assert out.volumetric[0] == pytest.approx(-1.0)

    def test_without_tensors(self, calculator):
        out = calculator.compute(np.eye(3)[None], materialize_tensors=False)
        assert out.tensors is None
        assert out.voigt() is None
        np.testing.assert_array_equal(out.volumetric, [0.0])

    def test_voigt_shape(self, calculator, general_deformation):
        out = calculator.compute(np.stack([general_deformation] * 3))
        assert out.voigt().shape == (3, 6)

    def test_compute_strain_rejects_singular(self):
        with pytest.raises(ValueError):
            StrainCalculator(push_forward=True).compute_strain(np.zeros((3, 3)))
