#!/usr/bin/env python3
"""
弹性应变引擎端到端测试

合成快照施加已知形变梯度 F0 后，引擎应逐原子恢复 F0 及其应变。
"""

import json
import logging
import threading
from unittest.mock import patch

import numpy as np
import pytest

from latticestrain.core.config import ElasticStrainConfig
from latticestrain.core.crystalline_structures import CrystallineStructureBuilder
from latticestrain.core.lattice import LatticeFamily
from latticestrain.core.structure import SimulationCell
from latticestrain.elastic.deformation import Deformer
from latticestrain.elastic.engine import ElasticStrainEngine, thin_periodic_axes
from latticestrain.elastic.fitting import FitStatus
from latticestrain.elastic.identification import StructureIdentification, identify_structures
from latticestrain.elastic.mechanics import StrainCalculator, StrainFrame
from latticestrain.utils.exceptions import AnalysisCancelledError, StructureError

A = 1.63


@pytest.fixture
def deformed_bcc(bcc_snapshot, general_deformation):
    positions, cell = bcc_snapshot
    return Deformer.apply_deformation(positions, cell, general_deformation)


class TestRecovery:
    """已知形变的恢复"""

    def test_general_deformation(self, deformed_bcc, bcc_identification, general_deformation):
        positions, cell = deformed_bcc
        result = ElasticStrainEngine().run(positions, cell, bcc_identification)

        assert result.num_fitted == 128
        assert result.coverage == pytest.approx(1.0)
        assert result.num_clusters == 1
        assert result.num_failed == 0
        assert result.strain_frame is StrainFrame.REFERENCE
        np.testing.assert_allclose(
            result.deformation_gradients,
            np.broadcast_to(general_deformation, (128, 3, 3)),
            atol=1e-10,
        )
        np.testing.assert_allclose(
            result.volumetric_strains, np.linalg.det(general_deformation) - 1.0, atol=1e-10
        )
        expected = StrainCalculator.green_lagrange(general_deformation)
        np.testing.assert_allclose(
            result.strain_tensors, np.broadcast_to(expected, (128, 3, 3)), atol=1e-10
        )

    def test_isotropic_expansion(self, bcc_snapshot, bcc_identification):
        positions, cell = bcc_snapshot
        positions, cell = Deformer.apply_deformation(positions, cell, 1.01 * np.eye(3))
        result = ElasticStrainEngine().run(positions, cell, bcc_identification)
        np.testing.assert_allclose(result.volumetric_strains, 1.01**3 - 1.0, atol=1e-12)
        E = 0.5 * (1.01**2 - 1.0)
        np.testing.assert_allclose(result.strain_tensors[7], E * np.eye(3), atol=1e-12)

        engine = ElasticStrainEngine(ElasticStrainConfig(push_forward=True))
        result = engine.run(positions, cell, bcc_identification)
        assert result.strain_frame is StrainFrame.SPATIAL
        np.testing.assert_allclose(
            result.strain_tensors[7], (E / 1.01**2) * np.eye(3), atol=1e-12
        )

    def test_hcp_with_matcher(self, builder, general_deformation):
        positions, cell = builder.create_hcp(3.0, (4, 3, 3))
        config = ElasticStrainConfig(lattice_family="hcp", lattice_constant=3.0)
        engine = ElasticStrainEngine(config)
        ident = identify_structures(positions, cell, engine.lattice)
        positions, cell = Deformer.apply_deformation(positions, cell, general_deformation)
        result = engine.run(positions, cell, ident)
        assert result.lattice_family is LatticeFamily.HCP
        assert result.num_fitted == len(positions)
        np.testing.assert_allclose(
            result.deformation_gradients,
            np.broadcast_to(general_deformation, (len(positions), 3, 3)),
            atol=1e-9,
        )

    def test_output_flags(self, deformed_bcc, bcc_identification):
        positions, cell = deformed_bcc
        config = ElasticStrainConfig(
            calculate_deformation_gradients=False, calculate_strain_tensors=False
        )
        result = ElasticStrainEngine(config).run(positions, cell, bcc_identification)
        assert result.deformation_gradients is None
        assert result.strain_tensors is None
        assert result.num_fitted == 128
        assert np.all(result.volumetric_strains != 0.0)


class TestFailureModes:
    """逐原子失败与输入错误"""

    def test_periodic_two_atom_cluster(self, slot_of):
        config = ElasticStrainConfig(lattice_family="sc", lattice_constant=A)
        engine = ElasticStrainEngine(config)
        lattice = engine.lattice
        cell = SimulationCell(np.diag([3 * A, 10 * A, 10 * A]), pbc=(True, False, False))
        positions = np.array([[0.2 * A, 0.0, 0.0], [2.2 * A, 0.0, 0.0]])
        neighbors = np.full((2, 6), -1)
        slots = np.full((2, 6), -1)
        s_minus = slot_of(lattice, [-A, 0.0, 0.0])
        s_plus = slot_of(lattice, [A, 0.0, 0.0])
        neighbors[0, s_minus], slots[0, s_minus] = 1, s_minus
        neighbors[1, s_plus], slots[1, s_plus] = 0, s_plus
        ident = StructureIdentification(
            structure_types=np.full(2, int(LatticeFamily.SC)),
            orientations=np.tile(np.eye(3), (2, 1, 1)),
            neighbors=neighbors,
            template_slots=slots,
        )
        result = engine.run(positions, cell, ident)
        assert result.num_clusters == 1
        assert result.graph.clusters[0].size == 2
        np.testing.assert_array_equal(result.fit_status, FitStatus.INSUFFICIENT_NEIGHBORS)
        assert result.num_fitted == 0
        assert result.num_failed == 2
        assert np.all(result.deformation_gradients == 0.0)
        np.testing.assert_array_equal(result.volumetric_strains, 0.0)

    def test_no_crystalline_atoms(self, bcc_snapshot, bcc_identification):
        positions, cell = bcc_snapshot
        data = bcc_identification.to_dict()
        data["structure_types"][:] = 0
        result = ElasticStrainEngine().run(positions, cell, StructureIdentification(**data))
        assert result.num_fitted == 0
        assert result.num_failed == 0
        assert result.coverage == 0.0
        summary = result.summary()
        assert summary["volumetric_strain"] is None
        assert summary["fit_status"]["NO_STRUCTURE"] == 128

    def test_missing_identification(self, bcc_snapshot):
        positions, cell = bcc_snapshot
        with pytest.raises(StructureError):
            ElasticStrainEngine().run(positions, cell, None)

    def test_invalid_positions(self, bcc_snapshot, bcc_identification):
        positions, cell = bcc_snapshot
        bad = positions.copy()
        bad[3, 1] = np.nan
        with pytest.raises(StructureError):
            ElasticStrainEngine().run(bad, cell, bcc_identification)
        with pytest.raises(StructureError):
            ElasticStrainEngine().run(positions[:10], cell, bcc_identification)
        with pytest.raises(StructureError):
            ElasticStrainEngine().run(positions, None, bcc_identification)

    def test_template_mismatch(self, bcc_snapshot, bcc_identification):
        positions, cell = bcc_snapshot
        engine = ElasticStrainEngine(ElasticStrainConfig(lattice_family="fcc"))
        with pytest.raises(StructureError):
            engine.run(positions, cell, bcc_identification)

    def test_cancel(self, bcc_snapshot, bcc_identification):
        positions, cell = bcc_snapshot
        event = threading.Event()
        event.set()
        with pytest.raises(AnalysisCancelledError):
            ElasticStrainEngine(cancel_event=event).run(positions, cell, bcc_identification)

    def test_failed_push_forward_only_drops_tensor(
        self, deformed_bcc, bcc_identification, general_deformation
    ):
        positions, cell = deformed_bcc

        def _no_inverse(E, F):
            return np.zeros_like(np.asarray(E, dtype=np.float64)), np.zeros(len(F), dtype=bool)

        engine = ElasticStrainEngine(ElasticStrainConfig(push_forward=True))
        with patch.object(StrainCalculator, "push_forward", staticmethod(_no_inverse)):
            result = engine.run(positions, cell, bcc_identification)

        assert result.num_fitted == 128
        assert not np.any(result.tensor_valid)
        np.testing.assert_array_equal(result.fit_status, FitStatus.OK)
        assert np.all(result.strain_tensors == 0.0)
        np.testing.assert_allclose(
            result.deformation_gradients,
            np.broadcast_to(general_deformation, (128, 3, 3)),
            atol=1e-10,
        )
        np.testing.assert_allclose(
            result.volumetric_strains, np.linalg.det(general_deformation) - 1.0, atol=1e-10
        )
        assert result.summary()["num_tensor_undefined"] == 128

    def test_thin_periodic_cell_warns(self, builder, bcc_lattice, caplog):
        positions, cell = builder.create_bcc(A, (2, 2, 2))
        assert thin_periodic_axes(cell, bcc_lattice) == ["x", "y", "z"]
        _, thick = builder.create_bcc(A, (3, 3, 3))
        assert thin_periodic_axes(thick, bcc_lattice) == []
        _, open_cell = CrystallineStructureBuilder(pbc=False).create_bcc(A, (2, 2, 2))
        assert thin_periodic_axes(open_cell, bcc_lattice) == []

        ident = identify_structures(positions, cell, bcc_lattice)
        with caplog.at_level(logging.WARNING):
            ElasticStrainEngine().run(positions, cell, ident)
        assert "晶胞厚度不足" in caplog.text



class TestDeterminism:
    """线程数无关与幂等"""

    @pytest.fixture
    def noisy(self, bcc_snapshot, bcc_lattice, general_deformation):
        positions, cell = bcc_snapshot
        rng = np.random.default_rng(21)
        positions = positions + rng.normal(0.0, 0.02, positions.shape)
        ident = identify_structures(positions, cell, bcc_lattice)
        positions, cell = Deformer.apply_deformation(positions, cell, general_deformation)
        return positions, cell, ident

    def test_thread_count_independent(self, noisy):
        positions, cell, ident = noisy
        serial = ElasticStrainEngine().run(positions, cell, ident)
        parallel = ElasticStrainEngine(
            ElasticStrainConfig(num_workers=4, chunk_size=16)
        ).run(positions, cell, ident)
        np.testing.assert_array_equal(serial.atom_clusters, parallel.atom_clusters)
        np.testing.assert_array_equal(serial.fit_status, parallel.fit_status)
        np.testing.assert_allclose(
            serial.deformation_gradients, parallel.deformation_gradients, rtol=0, atol=1e-12
        )
        np.testing.assert_allclose(
            serial.volumetric_strains, parallel.volumetric_strains, rtol=0, atol=1e-12
        )

    def test_idempotent(self, noisy):
        positions, cell, ident = noisy
        engine = ElasticStrainEngine()
        first = engine.run(positions, cell, ident)
        second = engine.run(positions, cell, ident)
        np.testing.assert_array_equal(first.deformation_gradients, second.deformation_gradients)
        np.testing.assert_array_equal(first.strain_tensors, second.strain_tensors)
        assert first.summary() == second.summary()

    def test_summary_is_json_serializable(self, noisy):
        positions, cell, ident = noisy
        summary = ElasticStrainEngine().run(positions, cell, ident).summary()
        text = json.dumps(summary)
        assert json.loads(text)["num_atoms"] == 128
        assert summary["num_clusters"] == len(summary["clusters"])
        assert summary["lattice_family"] == "BCC"
