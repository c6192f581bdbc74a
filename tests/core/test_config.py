#!/usr/bin/env python3
"""配置系统测试模块

测试ConfigManager的配置加载、合并和输出目录管理功能，
以及ElasticStrainConfig的参数校验。
"""

import json
from pathlib import Path

import numpy as np
import pytest
import yaml

from latticestrain.core.config import (
    ConfigManager,
    ElasticStrainConfig,
    default_config_path,
)
from latticestrain.core.lattice import LatticeFamily
from latticestrain.utils.exceptions import ConfigurationError


class TestConfigManagerBasic:
    """基本配置加载测试"""

    def test_empty_config_initialization(self):
        cfg = ConfigManager()
        assert cfg.data == {}
        assert cfg.sources == []

    def test_multiple_file_merging(self, tmp_path):
        """测试多个配置文件递归合并"""
        base = tmp_path / "base.yaml"
        base.write_text(
            yaml.dump({"elastic_strain": {"lattice_constant": 1.63, "push_forward": False}})
        )
        override = tmp_path / "override.yaml"
        override.write_text(
            yaml.dump({"elastic_strain": {"push_forward": True}, "run": {"name": "x"}})
        )

        cfg = ConfigManager(files=[str(base), str(override)])
        assert cfg.get("elastic_strain.lattice_constant") == 1.63
        assert cfg.get("elastic_strain.push_forward") is True
        assert cfg.get("run.name") == "x"
        assert cfg.get("run.missing", "default") == "default"
        assert len(cfg.sources) == 2

    def test_nonexistent_file_skipped(self):
        cfg = ConfigManager(files=["nonexistent.yaml"])
        assert cfg.data == {}

    def test_repository_defaults(self):
        assert default_config_path().exists()
        cfg = ConfigManager(use_defaults=True)
        assert cfg.get("elastic_strain.lattice_family") == "bcc"
        assert cfg.get("scenario") == "synthetic"
        # 默认配置必须能构造合法的分析参数
        assert ElasticStrainConfig.from_config(cfg) == ElasticStrainConfig()


class TestConfigManagerUtilities:
    """随机种子、输出目录与快照测试"""

    def test_set_global_seed(self):
        cfg = ConfigManager()
        assert cfg.set_global_seed(7) == 7
        first = np.random.random()
        cfg.set_global_seed(7)
        assert np.random.random() == first

    def test_seed_from_config(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text(yaml.dump({"rng": {"global_seed": 123}}))
        assert ConfigManager(files=[str(path)]).set_global_seed() == 123

    def test_make_output_dir_and_snapshot(self, tmp_path):
        path = tmp_path / "c.yaml"
        pattern = str(tmp_path / "out" / "{name}")
        path.write_text(yaml.dump({"run": {"name": "demo", "output_dir": pattern}}))
        cfg = ConfigManager(files=[str(path)])

        outdir = cfg.make_output_dir()
        assert Path(outdir) == tmp_path / "out" / "demo"
        assert Path(outdir).is_dir()

        cfg.snapshot(outdir)
        resolved = yaml.safe_load((Path(outdir) / "resolved_config.yaml").read_text())
        assert resolved["run"]["name"] == "demo"
        manifest = json.loads((Path(outdir) / "manifest.json").read_text())
        assert manifest["sources"] == [str(path)]


class TestElasticStrainConfig:
    """分析参数校验测试"""

    def test_defaults(self):
        config = ElasticStrainConfig()
        assert config.lattice_family is LatticeFamily.BCC
        assert config.lattice_constant == 1.63
        assert config.ca_ratio is None
        assert config.push_forward is False
        assert config.calculate_deformation_gradients is True
        assert config.calculate_strain_tensors is True
        assert config.orientation_tolerance == pytest.approx(np.radians(10.0))
        assert config.bond_tolerance == pytest.approx(np.radians(25.0))
        assert config.resolved_workers == 1

    def test_family_parsed_from_string(self):
        assert ElasticStrainConfig(lattice_family="fcc").lattice_family is LatticeFamily.FCC

    @pytest.mark.parametrize(
        "changes",
        [
            {"lattice_family": "foo"},
            {"lattice_constant": 0.0},
            {"lattice_constant": -1.0},
            {"lattice_constant": "1.0"},
            {"ca_ratio": -1.0},
            {"orientation_tolerance_deg": 95.0},
            {"bond_tolerance_deg": 0.0},
            {"conditioning_tolerance": 1.5},
            {"singular_tolerance": 0.0},
            {"min_correspondences": 2},
            {"num_workers": 0},
            {"chunk_size": 0},
            {"rmsd_cutoff": -0.1},
        ],
    )
    def test_invalid_values(self, changes):
        with pytest.raises(ConfigurationError):
            ElasticStrainConfig(**changes)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            ElasticStrainConfig(lattice_constant=-1.0)

    def test_replace_and_to_dict(self):
        config = ElasticStrainConfig().replace(lattice_family="hcp", ca_ratio=1.6)
        assert config.lattice_family is LatticeFamily.HCP
        data = config.to_dict()
        assert data["lattice_family"] == "HCP"
        assert data["ca_ratio"] == 1.6
        assert ElasticStrainConfig(**data) == config

    def test_build_lattice(self):
        lattice = ElasticStrainConfig(lattice_family="fcc", lattice_constant=4.05).build_lattice()
        assert lattice.family is LatticeFamily.FCC
        assert lattice.num_neighbors == 12

    def test_from_config_rejects_unknown_keys(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text(yaml.dump({"elastic_strain": {"lattice_constnt": 1.0}}))
        with pytest.raises(ConfigurationError, match="lattice_constnt"):
            ElasticStrainConfig.from_config(ConfigManager(files=[str(path)]))

    def test_from_config_section(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text(
            yaml.dump({"elastic_strain": {"lattice_family": "sc", "num_workers": None}})
        )
        config = ElasticStrainConfig.from_config(ConfigManager(files=[str(path)]))
        assert config.lattice_family is LatticeFamily.SC
        assert config.resolved_workers >= 1
