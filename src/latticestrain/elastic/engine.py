#!/usr/bin/env python3
"""
弹性应变引擎

一次分析运行的编排：参考晶格 → 团簇图 → 逐原子形变梯度 → 应变推导。
引擎持有团簇图与全部逐原子输出，输入数组只读借用。

Examples
--------
>>> engine = ElasticStrainEngine(ElasticStrainConfig(lattice_family="bcc"))
>>> result = engine.run(positions, cell, identification)
>>> result.summary()["num_clusters"]
1
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import numpy as np

from latticestrain.core.config import ElasticStrainConfig
from latticestrain.core.lattice import LatticeFamily
from latticestrain.core.structure import SimulationCell
from latticestrain.elastic.clusters import ClusterGraph, ClusterGraphBuilder
from latticestrain.elastic.fitting import DeformationFitEngine, FitStatus
from latticestrain.elastic.identification import (
    StructureIdentification,
    validate_positions,
)
from latticestrain.elastic.mechanics import StrainCalculator, StrainFrame
from latticestrain.utils.exceptions import AnalysisCancelledError, StructureError
from latticestrain.utils.utils import map_chunks

logger = logging.getLogger(__name__)

# 晶胞厚度检查的余量（相对模板半径的两倍）
_THICKNESS_MARGIN = 1.05


def thin_periodic_axes(cell: SimulationCell, lattice) -> list[str]:
    """返回厚度不足模板半径两倍的周期方向

    这些方向上位于半个晶胞处的近邻，其相反的两个镜像会被最小镜像折叠为同一个矢量。
    """
    radius = float(np.max(np.linalg.norm(lattice.vectors, axis=1)))
    widths = cell.get_perpendicular_widths()
    return [
        axis
        for axis, periodic, width in zip("xyz", cell.pbc, widths)
        if periodic and width < 2.0 * radius * _THICKNESS_MARGIN
    ]



@dataclass(frozen=True, eq=False)
class ElasticStrainResult:
    """一次弹性应变分析的结果

    Attributes
    ----------
    graph : ClusterGraph
        团簇图
    lattice_family : LatticeFamily
        参考晶格族
    deformation_gradients : numpy.ndarray | None
        形变梯度 (N, 3, 3)，未定义原子为零；关闭输出时为 ``None``
    strain_tensors : numpy.ndarray | None
        应变张量 (N, 3, 3)；关闭输出时为 ``None``
    strain_frame : StrainFrame
        应变张量坐标系
    volumetric_strains : numpy.ndarray
        体应变 (N,)，未定义原子为 0
    valid : numpy.ndarray
        形变梯度与体应变有效掩码 (N,)
    tensor_valid : numpy.ndarray
        应变张量有效掩码 (N,)，推前求逆失败的原子为 False
    fit_status : numpy.ndarray
        :class:`FitStatus` (N,)
    timing : dict
        各阶段耗时（秒）
    """

    graph: ClusterGraph
    lattice_family: LatticeFamily
    deformation_gradients: np.ndarray | None
    strain_tensors: np.ndarray | None
    strain_frame: StrainFrame
    volumetric_strains: np.ndarray
    valid: np.ndarray
    tensor_valid: np.ndarray
    fit_status: np.ndarray
    timing: dict

    @property
    def atom_clusters(self) -> np.ndarray:
        return self.graph.atom_clusters

    @property
    def num_atoms(self) -> int:
        return int(self.valid.shape[0])

    @property
    def num_fitted(self) -> int:
        """应变有效的原子数。"""
        return int(np.count_nonzero(self.valid))

    @property
    def num_excluded(self) -> int:
        """未输出应变的原子数（含非晶体原子与拟合失败原子）。"""
        return self.num_atoms - self.num_fitted

    @property
    def num_failed(self) -> int:
        """属于晶体团簇但拟合或应变推导失败的原子数。"""
        crystalline = self.fit_status != FitStatus.NO_STRUCTURE
        return int(np.count_nonzero(crystalline & ~self.valid))

    @property
    def num_clusters(self) -> int:
        return self.graph.num_clusters

    @property
    def num_singletons(self) -> int:
        return self.graph.num_singletons

    @property
    def num_transitions(self) -> int:
        return self.graph.num_transitions

    @property
    def num_inconsistent_bonds(self) -> int:
        return self.graph.num_inconsistent_bonds

    @property
    def coverage(self) -> float:
        """应变有效原子占比。"""
        return self.num_fitted / self.num_atoms if self.num_atoms else 0.0

    def status_counts(self) -> dict[str, int]:
        return {s.name: int(np.count_nonzero(self.fit_status == s)) for s in FitStatus}

    def summary(self) -> dict:
        """可直接写入 JSON 的汇总字典"""
        volumetric = self.volumetric_strains[self.valid]
        stats = (
            {
                "mean": float(np.mean(volumetric)),
                "std": float(np.std(volumetric)),
                "min": float(np.min(volumetric)),
                "max": float(np.max(volumetric)),
            }
            if volumetric.size
            else None
        )
        return {
            "lattice_family": self.lattice_family.name,
            "num_atoms": self.num_atoms,
            "num_fitted": self.num_fitted,
            "num_excluded": self.num_excluded,
            "num_failed": self.num_failed,
            "coverage": self.coverage,
            "num_clusters": self.num_clusters,
            "num_singletons": self.num_singletons,
            "num_transitions": self.num_transitions,
            "num_inconsistent_bonds": self.num_inconsistent_bonds,
            "num_tensor_undefined": int(np.count_nonzero(self.valid & ~self.tensor_valid)),
            "fit_status": self.status_counts(),
            "strain_frame": self.strain_frame.value,
            "volumetric_strain": stats,
            "clusters": [
                {
                    "id": c.id,
                    "size": c.size,
                    "orientation": c.orientation.tolist(),
                    "symmetry_index": c.symmetry_index,
                }
                for c in self.graph.crystalline_clusters
            ],
            "transitions": [
                {
                    "cluster_a": t.cluster_a,
                    "cluster_b": t.cluster_b,
                    "bond_count": t.bond_count,
                    "misorientation_deg": t.misorientation_deg,
                    "axis": t.axis.tolist(),
                }
                for t in self.graph.transitions
            ],
        }


class ElasticStrainEngine:
    """弹性应变引擎

    Parameters
    ----------
    config : ElasticStrainConfig, optional
        分析参数，默认 :class:`ElasticStrainConfig` 的默认值
    preferred_orientations : array_like, optional
        团簇取向的偏好取向 (3, 3) 或 (P, 3, 3)，默认恒等
    cancel_event : threading.Event, optional
        取消标志；置位后在下一个检查点抛出 :class:`AnalysisCancelledError`
    """

    def __init__(
        self,
        config: ElasticStrainConfig | None = None,
        preferred_orientations=None,
        cancel_event=None,
    ):
        self.config = config or ElasticStrainConfig()
        self.lattice = self.config.build_lattice()
        self.preferred_orientations = (
            np.eye(3)[None]
            if preferred_orientations is None
            else np.asarray(preferred_orientations, dtype=np.float64).reshape(-1, 3, 3)
        )
        self.cancel_event = cancel_event

    def _check_cancel(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise AnalysisCancelledError("分析已取消")

    def run(
        self,
        positions,
        cell: SimulationCell,
        identification: StructureIdentification,
    ) -> ElasticStrainResult:
        """执行一次完整分析

        Parameters
        ----------
        positions : array_like
            原子坐标 (N, 3)
        cell : SimulationCell
            模拟晶胞
        identification : StructureIdentification
            结构识别结果

        Returns
        -------
        ElasticStrainResult
            分析结果

        Raises
        ------
        StructureError
            输入结构非法
        AnalysisCancelledError
            运行被取消
        """
        positions = validate_positions(positions)
        if not isinstance(cell, SimulationCell):
            raise StructureError("缺少模拟晶胞或类型错误")
        if identification is None:
            raise StructureError("缺少结构识别结果")
        identification.check_compatible(positions.shape[0], self.lattice)
        thin = thin_periodic_axes(cell, self.lattice)
        if thin:
            logger.warning(
                f"周期方向 {', '.join(thin)} 的晶胞厚度不足模板半径的两倍，"
                "最小镜像无法区分相反方向的近邻，结果可能不完整"
            )


        cfg = self.config
        workers = cfg.resolved_workers
        timing = {}
        logger.info(
            f"开始弹性应变分析: {positions.shape[0]} 个原子, 晶格 {self.lattice.family.name}, "
            f"a={self.lattice.lattice_constant}, 线程数 {workers}"
        )

        t0 = time.perf_counter()
        builder = ClusterGraphBuilder(
            self.lattice,
            orientation_tolerance=cfg.orientation_tolerance,
            bond_tolerance=cfg.bond_tolerance,
            preferred_orientations=self.preferred_orientations,
            num_workers=workers,
            chunk_size=cfg.chunk_size,
            cancel_event=self.cancel_event,
        )
        graph = builder.build(positions, cell, identification)
        timing["clusters"] = time.perf_counter() - t0
        self._check_cancel()

        t0 = time.perf_counter()
        fitter = DeformationFitEngine(
            self.lattice,
            min_correspondences=cfg.min_correspondences,
            conditioning_tolerance=cfg.conditioning_tolerance,
            singular_tolerance=cfg.singular_tolerance,
            num_workers=workers,
            chunk_size=cfg.chunk_size,
            cancel_event=self.cancel_event,
        )
        fit = fitter.fit(positions, cell, identification, graph)
        timing["fit"] = time.perf_counter() - t0
        self._check_cancel()

        t0 = time.perf_counter()
        n = positions.shape[0]
        calculator = StrainCalculator(push_forward=cfg.push_forward)
        tensors = np.zeros((n, 3, 3))
        volumetric = np.zeros(n)
        valid = np.zeros(n, dtype=bool)
        tensor_valid = np.zeros(n, dtype=bool)

        def _chunk(start, stop):
            out = calculator.compute(fit.gradients[start:stop], fit.valid[start:stop])
            tensors[start:stop] = out.tensors
            volumetric[start:stop] = out.volumetric
            valid[start:stop] = out.valid
            tensor_valid[start:stop] = out.tensor_valid

        map_chunks(_chunk, n, cfg.chunk_size, workers, self.cancel_event)
        timing["strain"] = time.perf_counter() - t0

        gradients = None
        if cfg.calculate_deformation_gradients:
            gradients = np.where(valid[:, None, None], fit.gradients, 0.0)
        status = np.where(
            fit.valid & ~valid, int(FitStatus.SINGULAR), fit.status
        ).astype(np.int64)
        if np.any(valid & ~tensor_valid):
            logger.warning(
                f"{int(np.count_nonzero(valid & ~tensor_valid))} 个原子的形变梯度不可逆，"
                "应变张量未定义"
            )

        result = ElasticStrainResult(
            graph=graph,
            lattice_family=self.lattice.family,
            deformation_gradients=gradients,
            strain_tensors=tensors if cfg.calculate_strain_tensors else None,
            strain_frame=calculator.frame,
            volumetric_strains=volumetric,
            valid=valid,
            tensor_valid=tensor_valid,
            fit_status=status,
            timing=timing,
        )
        logger.info(
            f"分析完成: 有效原子 {result.num_fitted}/{n} ({100.0 * result.coverage:.1f}%), "
            f"失败 {result.num_failed}, 晶体团簇 {result.num_clusters}"
        )
        return result
