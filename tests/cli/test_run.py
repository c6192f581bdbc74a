#!/usr/bin/env python3
"""
CLI 入口测试
"""

import json
import logging
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest
import yaml

from latticestrain.cli.pipelines.common import save_snapshot
from latticestrain.cli.run import main
from latticestrain.core.crystalline_structures import CrystallineStructureBuilder
from latticestrain.core.structure import SimulationCell
from latticestrain.elastic.deformation import Deformer
from latticestrain.utils.results_io import load_results


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """main() 会给根日志记录器添加文件 handler，测试后移除"""
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def _write_config(tmp_path: Path, **overrides) -> tuple[str, Path]:
    outdir = tmp_path / "out"
    data = {
        "run": {"name": "case", "output_dir": str(outdir)},
        "synthetic": {"supercell": [3, 3, 3]},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key].update(value)
        else:
            data[key] = value
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path), outdir


class TestSyntheticScenario:
    """合成快照场景"""

    def test_outputs(self, tmp_path):
        config, outdir = _write_config(
            tmp_path, synthetic={"strain_voigt": [0.01, 0.0, 0.0, 0.0, 0.0, 0.004]}
        )
        assert main(["-c", config]) == 0
        for name in (
            "resolved_config.yaml",
            "manifest.json",
            "run.log",
            "effective_config.yaml",
            "envelope.json",
            "case_elastic_strain.h5",
            "case_elastic_strain.json",
            "volumetric_strain_hist.png",
            "fit_status.png",
        ):
            assert (outdir / name).exists(), name

        envelope = json.loads((outdir / "envelope.json").read_text(encoding="utf-8"))
        assert envelope["is_failed"] is False
        summary = envelope["summary"]
        assert summary["num_atoms"] == 54
        assert summary["num_fitted"] == 54
        F = Deformer.from_voigt([0.01, 0.0, 0.0, 0.0, 0.0, 0.004])
        assert summary["volumetric_strain"]["mean"] == pytest.approx(np.linalg.det(F) - 1.0)

        effective = yaml.safe_load((outdir / "effective_config.yaml").read_text(encoding="utf-8"))
        assert effective["elastic_strain"]["lattice_family"] == "BCC"
        assert effective["scenario"] == "synthetic"

        data = load_results(str(outdir / "case_elastic_strain.h5"))
        np.testing.assert_allclose(
            data["atoms/deformation_gradient"], np.broadcast_to(F, (54, 3, 3)), atol=1e-10
        )

    def test_plots_disabled_and_snapshot_saved(self, tmp_path):
        config, outdir = _write_config(
            tmp_path, plots={"enabled": False}, synthetic={"save_snapshot": True}
        )
        assert main(["-c", config]) == 0
        assert not (outdir / "fit_status.png").exists()
        with np.load(outdir / "snapshot.npz") as data:
            assert data["positions"].shape == (54, 3)

    def test_unknown_family_fails(self, tmp_path):
        config, _ = _write_config(tmp_path, elastic_strain={"lattice_family": "quasi"})
        assert main(["-c", config]) == 1

    def test_unknown_key_fails(self, tmp_path):
        config, _ = _write_config(tmp_path, elastic_strain={"lattice_constnat": 1.0})
        assert main(["-c", config]) == 1

    def test_unknown_scenario(self, tmp_path):
        config, _ = _write_config(tmp_path, scenario="molecular_dynamics")
        with pytest.raises(ValueError):
            main(["-c", config])

    def test_missing_config_argument(self):
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 2


class TestSnapshotScenario:
    """快照输入场景"""

    def test_input_with_matcher(self, tmp_path):
        positions, cell = CrystallineStructureBuilder().create_bcc(1.63, (3, 3, 3))
        positions, cell = Deformer.apply_deformation(positions, cell, 1.005 * np.eye(3))
        snapshot = tmp_path / "in.npz"
        save_snapshot(str(snapshot), positions, cell)

        config, outdir = _write_config(tmp_path)
        assert main(["-c", config, "--input", str(snapshot)]) == 0
        envelope = json.loads((outdir / "envelope.json").read_text(encoding="utf-8"))
        assert envelope["summary"]["num_fitted"] == 54
        assert envelope["summary"]["volumetric_strain"]["mean"] == pytest.approx(1.005**3 - 1.0)

    def test_snapshot_path_from_config(self, tmp_path):
        positions, cell = CrystallineStructureBuilder().create_bcc(1.63, (3, 3, 3))
        snapshot = tmp_path / "in.npz"
        save_snapshot(str(snapshot), positions, cell)
        config, _ = _write_config(
            tmp_path, scenario="snapshot", snapshot={"path": str(snapshot)}
        )
        assert main(["-c", config]) == 0

    def test_incomplete_identification_fails(self, tmp_path):
        snapshot = tmp_path / "partial.npz"
        np.savez(
            snapshot,
            positions=np.zeros((2, 3)),
            cell=np.eye(3) * 5.0,
            structure_types=np.zeros(2, dtype=np.int64),
        )
        config, _ = _write_config(tmp_path)
        assert main(["-c", config, "--input", str(snapshot)]) == 1

    def test_empty_snapshot_fails(self, tmp_path):
        snapshot = tmp_path / "empty.npz"
        save_snapshot(str(snapshot), np.zeros((0, 3)), SimulationCell(np.eye(3) * 5.0))
        config, outdir = _write_config(tmp_path)
        assert main(["-c", config, "--input", str(snapshot)]) == 1
        envelope = json.loads((outdir / "envelope.json").read_text(encoding="utf-8"))
        assert envelope["is_failed"] is True
        assert envelope["summary"] is None


class TestScenarioDispatch:
    """场景调度（流水线被 mock）"""

    def test_input_forces_snapshot(self, tmp_path):
        config, outdir = _write_config(tmp_path)
        summary = {"num_fitted": 1, "num_atoms": 1, "num_clusters": 1, "num_transitions": 0}
        envelope = {"is_failed": False, "error": None, "timing": {"total_ms": 1.0}, "summary": summary}
        with patch(
            "latticestrain.cli.run.run_elastic_strain_pipeline", return_value=envelope
        ) as mock_pipeline:
            assert main(["-c", config, "--input", "x.npz"]) == 0
            mock_pipeline.assert_called_once()
            _, called_outdir, scenario, input_path = mock_pipeline.call_args.args
            assert scenario == "snapshot"
            assert input_path == "x.npz"
            assert called_outdir == str(outdir)

    def test_failed_envelope_exit_code(self, tmp_path):
        config, _ = _write_config(tmp_path)
        envelope = {"is_failed": True, "error": "boom", "timing": {"total_ms": 1.0}, "summary": None}
        with patch(
            "latticestrain.cli.run.run_elastic_strain_pipeline", return_value=envelope
        ):
            assert main(["-c", config]) == 1

    def test_nonexistent_config_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with patch("latticestrain.cli.run.run_elastic_strain_pipeline") as mock_pipeline:
            mock_pipeline.return_value = {
                "is_failed": True, "error": "x", "timing": {"total_ms": 0.0}, "summary": None
            }
            main(["-c", "nonexistent.yaml"])
            assert mock_pipeline.call_args.args[2] == "synthetic"
