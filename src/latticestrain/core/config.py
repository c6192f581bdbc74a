"""配置加载模块

提供轻量的 YAML 配置加载与分析参数校验：

- 递归合并多份 YAML（后者覆盖前者），仓库 ``config/default.yaml`` 作为底层默认
- 点路径访问（如 ``elastic_strain.lattice_constant``）
- 统一设置随机种子（numpy/random）
- 基于模板创建输出目录并保存配置快照
- ``ElasticStrainConfig``：弹性应变分析的只读参数集合，在任何逐原子计算之前完成校验

Notes
-----
本模块刻意不引入 Hydra，以保持依赖简单与行为透明。
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import random as _random
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from latticestrain.core.lattice import (
    LatticeFamily,
    ReferenceLattice,
    build_reference_lattice,
)
from latticestrain.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _deep_update(base: dict, override: dict) -> dict:
    out = dict(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_update(out[k], v)
        else:
            out[k] = v
    return out


def _get_by_path(d: dict, path: str, default: Any = None) -> Any:
    cur = d
    for key in path.split("."):
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


@dataclass
class _Resolved:
    data: dict
    sources: list[str]


class ConfigManager:
    """配置管理器

    加载一组 YAML 配置文件并进行递归合并，提供点路径访问与常用工具。

    Parameters
    ----------
    files : Iterable[str] | None, optional
        需要加载的 YAML 文件列表，后者覆盖前者；不存在的文件被跳过。
    use_defaults : bool, optional
        是否先加载仓库内的 ``config/default.yaml``，默认 False。

    Attributes
    ----------
    data : dict
        合并后的配置数据（只读属性 ``.data`` 暴露内部字典）。
    """

    def __init__(
        self, files: Iterable[str] | None = None, use_defaults: bool = False
    ) -> None:
        self._resolved = self._load_all(files, use_defaults)

    # --------- 加载与解析 ---------
    def _load_all(self, files: Iterable[str] | None, use_defaults: bool) -> _Resolved:
        data: dict[str, Any] = {}
        sources: list[str] = []
        if use_defaults:
            default_path = default_config_path()
            if default_path.exists():
                with open(default_path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
                sources.append(str(default_path))
        # 用户覆盖
        if files:
            for p in files:
                path = Path(p)
                if not path.exists():
                    logger.warning(f"配置文件不存在，已跳过: {path}")
                    continue
                with open(path, encoding="utf-8") as f:
                    ov = yaml.safe_load(f) or {}
                data = _deep_update(data, ov)
                sources.append(str(path))
        return _Resolved(data=data, sources=sources)

    @property
    def data(self) -> dict:
        """获取合并后的配置数据字典。"""
        return self._resolved.data

    @property
    def sources(self) -> list[str]:
        """实际加载的配置文件列表。"""
        return list(self._resolved.sources)

    # --------- 访问接口 ---------
    def get(self, path: str, default: Any | None = None) -> Any:
        """获取配置值（点路径）

        使用 ``a.b.c`` 形式访问嵌套字典，若不存在则返回 ``default``。

        Parameters
        ----------
        path : str
            点路径键名，例如 ``"elastic_strain.lattice_constant"``。
        default : Any, optional
            当键不存在时返回的默认值。

        Returns
        -------
        Any
            对应的配置值或 ``default``。
        """
        return _get_by_path(self._resolved.data, path, default)

    # --------- 实用工具 ---------
    def set_global_seed(self, seed: int | None = None) -> int:
        """统一设置随机种子

        同时设置 ``numpy.random`` 与 Python ``random`` 的种子，以增强可复现性。

        Parameters
        ----------
        seed : int | None, optional
            若为 ``None``，则读取 ``rng.global_seed``（默认 42）。

        Returns
        -------
        int
            实际使用的种子值。
        """
        if seed is None:
            seed = int(self.get("rng.global_seed", 42))
        np.random.seed(seed)
        _random.seed(seed)
        return seed

    def make_output_dir(self, name: str | None = None) -> str:
        """创建输出目录

        依据模板 ``run.output_dir`` 创建目录，支持 ``{name}`` 与 ``{timestamp}`` 占位符。
        若未配置，默认使用 ``outputs/{name}_{timestamp}``。

        Parameters
        ----------
        name : str | None, optional
            运行名；若为 ``None``，则读取 ``run.name``（默认 ``"run"``）。

        Returns
        -------
        str
            创建的输出目录路径。
        """
        pattern = str(self.get("run.output_dir", "outputs/{name}_{timestamp}"))
        name = name or str(self.get("run.name", "run"))
        ts = _dt.datetime.now().strftime("%Y%m%d_%H%M%S")
        out = pattern.format(name=name, timestamp=ts)
        os.makedirs(out, exist_ok=True)
        return out

    def snapshot(self, output_dir: str) -> None:
        """保存配置快照

        在输出目录写入 ``resolved_config.yaml`` 与轻量 ``manifest.json``，帮助记录
        本次运行所使用的配置来源与时间戳。快照失败只记录警告，不阻断主流程。

        Parameters
        ----------
        output_dir : str
            输出目录路径。
        """
        try:
            path = Path(output_dir) / "resolved_config.yaml"
            with open(path, "w", encoding="utf-8") as f:
                yaml.safe_dump(
                    self._resolved.data, f, allow_unicode=True, sort_keys=True
                )
            manifest = {
                "timestamp": _dt.datetime.now().isoformat(),
                "sources": self._resolved.sources,
            }
            with open(Path(output_dir) / "manifest.json", "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.warning(f"配置快照写入失败: {e}")


def default_config_path() -> Path:
    """仓库默认配置 ``config/default.yaml`` 的路径。"""
    repo_root = Path(__file__).resolve().parents[3]
    return repo_root / "config" / "default.yaml"


@dataclass(frozen=True)
class ElasticStrainConfig:
    """弹性应变分析参数

    所有字段在构造时校验，非法配置抛出 ``ConfigurationError``，
    此时尚未进行任何逐原子计算。

    Attributes
    ----------
    lattice_family : LatticeFamily
        参考晶格族，默认 BCC
    lattice_constant : float
        晶格常数，默认 1.63
    ca_ratio : float | None
        轴比 c/a，仅六方晶族使用；``None`` 表示理想轴比
    min_correspondences : int | None
        拟合所需最少有效对应数；``None`` 表示完整近邻壳层
    calculate_deformation_gradients : bool
        是否输出形变梯度
    calculate_strain_tensors : bool
        是否输出应变张量
    push_forward : bool
        是否把应变推前到空间（Euler-Almansi）坐标系
    orientation_tolerance_deg : float
        取向一致性判据的角度容差（度）
    bond_tolerance_deg : float
        键矢量与模板方向的角度容差（度）
    conditioning_tolerance : float
        法方程矩阵的相对行列式下限 :math:`\\det V / (\\operatorname{tr} V/3)^3`
    singular_tolerance : float
        形变梯度行列式绝对值下限
    num_workers : int | None
        线程数；``None`` 表示 CPU 核数
    chunk_size : int
        每个并行任务处理的原子（或键）数
    rmsd_cutoff : float
        模板匹配识别的相对 RMSD 上限
    """

    lattice_family: LatticeFamily = LatticeFamily.BCC
    lattice_constant: float = 1.63
    ca_ratio: float | None = None
    min_correspondences: int | None = None
    calculate_deformation_gradients: bool = True
    calculate_strain_tensors: bool = True
    push_forward: bool = False
    orientation_tolerance_deg: float = 10.0
    bond_tolerance_deg: float = 25.0
    conditioning_tolerance: float = 1e-3
    singular_tolerance: float = 1e-10
    num_workers: int | None = 1
    chunk_size: int = 4096
    rmsd_cutoff: float = 0.10

    def __post_init__(self) -> None:
        object.__setattr__(self, "lattice_family", LatticeFamily.parse(self.lattice_family))

        def _positive(name: str, value, allow_none: bool = False) -> None:
            if value is None and allow_none:
                return
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ConfigurationError(f"{name} 必须为数值，得到: {value!r}")
            if not np.isfinite(value) or value <= 0:
                raise ConfigurationError(f"{name} 必须为正数，得到: {value}")

        _positive("lattice_constant", self.lattice_constant)
        _positive("ca_ratio", self.ca_ratio, allow_none=True)
        _positive("orientation_tolerance_deg", self.orientation_tolerance_deg)
        _positive("bond_tolerance_deg", self.bond_tolerance_deg)
        _positive("conditioning_tolerance", self.conditioning_tolerance)
        _positive("singular_tolerance", self.singular_tolerance)
        _positive("rmsd_cutoff", self.rmsd_cutoff)
        if self.orientation_tolerance_deg >= 90.0 or self.bond_tolerance_deg >= 90.0:
            raise ConfigurationError("角度容差必须小于 90 度")
        if self.conditioning_tolerance >= 1.0:
            raise ConfigurationError("conditioning_tolerance 必须小于 1")
        if self.min_correspondences is not None:
            if not isinstance(self.min_correspondences, int | np.integer) or (
                self.min_correspondences < 3
            ):
                raise ConfigurationError(
                    f"min_correspondences 必须为不小于 3 的整数，得到: {self.min_correspondences}"
                )
        if self.num_workers is not None and (
            not isinstance(self.num_workers, int | np.integer) or self.num_workers < 1
        ):
            raise ConfigurationError(f"num_workers 必须为正整数，得到: {self.num_workers}")
        if not isinstance(self.chunk_size, int | np.integer) or self.chunk_size < 1:
            raise ConfigurationError(f"chunk_size 必须为正整数，得到: {self.chunk_size}")
        for name in (
            "calculate_deformation_gradients",
            "calculate_strain_tensors",
            "push_forward",
        ):
            object.__setattr__(self, name, bool(getattr(self, name)))

    @property
    def orientation_tolerance(self) -> float:
        """取向容差（弧度）。"""
        return float(np.radians(self.orientation_tolerance_deg))

    @property
    def bond_tolerance(self) -> float:
        """键方向容差（弧度）。"""
        return float(np.radians(self.bond_tolerance_deg))

    @property
    def resolved_workers(self) -> int:
        """实际使用的线程数。"""
        return self.num_workers or (os.cpu_count() or 1)

    def build_lattice(self) -> ReferenceLattice:
        """按配置构建参考晶格。"""
        return build_reference_lattice(
            self.lattice_family, self.lattice_constant, self.ca_ratio
        )

    def replace(self, **changes) -> ElasticStrainConfig:
        """返回修改若干字段后的新配置。"""
        values = asdict(self)
        values.update(changes)
        return ElasticStrainConfig(**values)

    def to_dict(self) -> dict:
        """转为可序列化字典。"""
        out = asdict(self)
        out["lattice_family"] = self.lattice_family.name
        return out

    @classmethod
    def from_config(
        cls, cfg: ConfigManager, section: str = "elastic_strain"
    ) -> ElasticStrainConfig:
        """从 ``ConfigManager`` 的某一节构建配置

        Parameters
        ----------
        cfg : ConfigManager
            配置对象
        section : str, optional
            配置节名，默认 ``"elastic_strain"``

        Returns
        -------
        ElasticStrainConfig
            校验后的配置

        Raises
        ------
        ConfigurationError
            出现未知字段或字段非法
        """
        raw = cfg.get(section, {}) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"配置节 {section} 必须为映射")
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigurationError(f"未知配置项: {unknown}")
        return cls(**raw)
