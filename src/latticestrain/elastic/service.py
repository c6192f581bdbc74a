#!/usr/bin/env python3
"""
弹性应变分析服务

面向调用方的外观类：持有分析参数，执行一次完整分析，并把结果包装为
``{"is_failed", "error", "timing", "summary"}`` 信封。配置或结构错误、
取消运行都转为失败信封，不向调用方抛出异常。

默认参数：BCC 晶格，晶格常数 1.63，应变不推前，输出形变梯度与应变张量，
模板匹配 RMSD 上限 0.10，偏好取向为恒等。
"""

from __future__ import annotations

import logging
import time

import numpy as np

from latticestrain.core.config import ElasticStrainConfig
from latticestrain.core.structure import SimulationCell
from latticestrain.elastic.engine import ElasticStrainEngine, ElasticStrainResult
from latticestrain.elastic.identification import (
    StructureIdentification,
    identify_structures,
    validate_positions,
)
from latticestrain.utils.exceptions import LatticeStrainError, StructureError
from latticestrain.utils.results_io import save_results

logger = logging.getLogger(__name__)

# 表示“保持原值”的占位对象；None 是 ca_ratio 的合法取值（理想 c/a）
_KEEP = object()


class ElasticStrainService:
    """弹性应变分析服务

    Parameters
    ----------
    config : ElasticStrainConfig, optional
        初始参数，默认 :class:`ElasticStrainConfig` 的默认值
    preferred_orientations : array_like, optional
        偏好取向，默认恒等；同时作为模板匹配的种子取向
    cancel_event : threading.Event, optional
        取消标志

    Examples
    --------
    >>> service = ElasticStrainService()
    >>> service.set_parameters(lattice_constant=1.63)
    >>> envelope = service.compute(positions, cell)
    >>> envelope["is_failed"]
    False
    """

    def __init__(
        self,
        config: ElasticStrainConfig | None = None,
        preferred_orientations=None,
        cancel_event=None,
    ):
        self.config = config or ElasticStrainConfig()
        self.preferred_orientations = (
            np.eye(3)[None]
            if preferred_orientations is None
            else np.asarray(preferred_orientations, dtype=np.float64).reshape(-1, 3, 3)
        )
        self.cancel_event = cancel_event
        self.last_result: ElasticStrainResult | None = None
        self.last_outputs: dict[str, str] = {}

    # --------- 参数设置 ---------
    def set_input_crystal_structure(self, family) -> None:
        """设置参考晶格族"""
        self.config = self.config.replace(lattice_family=family)

    def set_rmsd(self, rmsd: float) -> None:
        """设置模板匹配的 RMSD 上限"""
        self.config = self.config.replace(rmsd_cutoff=rmsd)

    def set_parameters(
        self,
        lattice_constant=_KEEP,
        ca_ratio=_KEEP,
        push_forward=_KEEP,
        calculate_deformation_gradients=_KEEP,
        calculate_strain_tensors=_KEEP,
    ) -> None:
        """批量设置分析参数，未给出的参数保持原值

        ``ca_ratio=None`` 表示恢复理想 c/a。
        """
        changes = {
            "lattice_constant": lattice_constant,
            "ca_ratio": ca_ratio,
            "push_forward": push_forward,
            "calculate_deformation_gradients": calculate_deformation_gradients,
            "calculate_strain_tensors": calculate_strain_tensors,
        }
        self.config = self.config.replace(
            **{k: v for k, v in changes.items() if v is not _KEEP}
        )

    # --------- 计算 ---------
    @staticmethod
    def _failure(message: str, start: float) -> dict:
        logger.error(f"弹性应变分析失败: {message}")
        return {
            "is_failed": True,
            "error": message,
            "timing": {"total_ms": 1000.0 * (time.perf_counter() - start)},
            "summary": None,
        }

    def compute(
        self,
        positions,
        cell: SimulationCell,
        identification: StructureIdentification | None = None,
        output_base: str | None = None,
    ) -> dict:
        """执行一次分析

        Parameters
        ----------
        positions : array_like
            原子坐标 (N, 3)
        cell : SimulationCell
            模拟晶胞
        identification : StructureIdentification, optional
            结构识别结果；缺省时运行参考模板匹配器
        output_base : str, optional
            输出路径前缀；给定时写入 ``<base>_elastic_strain.h5`` 与
            ``<base>_elastic_strain.json``

        Returns
        -------
        dict
            结果信封
        """
        start = time.perf_counter()
        self.last_result = None
        self.last_outputs = {}
        try:
            positions = validate_positions(positions)
            if not isinstance(cell, SimulationCell):
                raise StructureError("缺少模拟晶胞或类型错误")
            engine = ElasticStrainEngine(
                self.config,
                preferred_orientations=self.preferred_orientations,
                cancel_event=self.cancel_event,
            )
            t0 = time.perf_counter()
            if identification is None:
                identification = identify_structures(
                    positions,
                    cell,
                    engine.lattice,
                    seed_orientations=self.preferred_orientations,
                    rmsd_cutoff=self.config.rmsd_cutoff,
                )
            identify_ms = 1000.0 * (time.perf_counter() - t0)
            result = engine.run(positions, cell, identification)
        except LatticeStrainError as e:
            return self._failure(str(e), start)

        self.last_result = result
        if output_base:
            try:
                self.last_outputs = save_results(
                    result, output_base, metadata={"lattice_constant": self.config.lattice_constant}
                )
            except OSError as e:
                logger.warning(f"无法写入结果文件 {output_base}: {e}")

        timing = {f"{k}_ms": 1000.0 * v for k, v in result.timing.items()}
        timing["identification_ms"] = identify_ms
        timing["total_ms"] = 1000.0 * (time.perf_counter() - start)
        return {
            "is_failed": False,
            "error": None,
            "timing": timing,
            "summary": result.summary(),
            "outputs": dict(self.last_outputs),
        }
