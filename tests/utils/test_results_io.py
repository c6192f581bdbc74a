#!/usr/bin/env python3
"""
HDF5/JSON 结果存储测试
"""

import json

import numpy as np
import pytest

from latticestrain.core.config import ElasticStrainConfig
from latticestrain.elastic.engine import ElasticStrainEngine
from latticestrain.utils.results_io import (
    ElasticStrainWriter,
    load_results,
    save_results,
    write_summary_json,
)


@pytest.fixture
def result(bcc_snapshot, bcc_identification):
    positions, cell = bcc_snapshot
    return ElasticStrainEngine().run(positions, cell, bcc_identification)


class TestSaveResults:
    """结果写入与读取"""

    def test_paths_and_content(self, result, tmp_path):
        base = str(tmp_path / "sub" / "case")
        paths = save_results(result, base, metadata={"note": "perfect"})
        assert paths == {
            "h5": base + "_elastic_strain.h5",
            "json": base + "_elastic_strain.json",
        }

        data = load_results(paths["h5"])
        attrs = data["attrs"]
        assert attrs["lattice_family"] == "BCC"
        assert attrs["strain_frame"] == "reference"
        assert attrs["num_atoms"] == 128
        assert attrs["note"] == "perfect"

        np.testing.assert_array_equal(data["atoms/cluster_ids"], result.atom_clusters)
        np.testing.assert_array_equal(data["atoms/valid"], 1)
        np.testing.assert_array_equal(data["atoms/tensor_valid"], 1)
        np.testing.assert_array_equal(data["atoms/fit_status"], 0)
        assert data["atoms/deformation_gradient"].shape == (128, 3, 3)
        assert data["atoms/strain_tensor"].shape == (128, 3, 3)
        np.testing.assert_allclose(data["atoms/volumetric_strain"], 0.0, atol=1e-12)
        np.testing.assert_array_equal(data["clusters/size"], [128])
        assert data["clusters/orientation"].shape == (1, 3, 3)
        assert data["transitions/clusters"].shape == (0, 2)
        assert data["transitions/matrix"].shape == (0, 3, 3)
        assert data["inconsistent_bonds"].shape == (0, 2)

        with open(paths["json"], encoding="utf-8") as f:
            summary = json.load(f)
        assert summary["num_fitted"] == 128
        assert summary["clusters"][0]["size"] == 128

    def test_optional_arrays_omitted(self, bcc_snapshot, bcc_identification, tmp_path):
        positions, cell = bcc_snapshot
        config = ElasticStrainConfig(
            calculate_deformation_gradients=False, calculate_strain_tensors=False
        )
        result = ElasticStrainEngine(config).run(positions, cell, bcc_identification)
        paths = save_results(result, str(tmp_path / "flags"))
        data = load_results(paths["h5"])
        assert "atoms/deformation_gradient" not in data
        assert "atoms/strain_tensor" not in data
        assert "atoms/volumetric_strain" in data

    def test_writer_context(self, result, tmp_path):
        filename = tmp_path / "direct.h5"
        with ElasticStrainWriter(str(filename), compression=None) as writer:
            writer.write(result)
        assert writer.file is None
        assert load_results(str(filename))["attrs"]["num_atoms"] == 128


def test_write_summary_json(tmp_path):
    path = write_summary_json({"应变": 0.01}, str(tmp_path / "a" / "summary.json"))
    with open(path, encoding="utf-8") as f:
        assert json.load(f) == {"应变": 0.01}
