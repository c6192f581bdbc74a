#!/usr/bin/env python3
r"""
形变梯度拟合模块

对每个晶体原子，用其有效近邻对应求最小二乘形变梯度 :math:`\mathbf{F}`：

.. math::
    \mathbf{F} = \arg\min_{\mathbf{F}} \sum_k
    \left\| \mathbf{F}\,\mathbf{r}_k - \mathbf{o}_k \right\|^2

其中参考矢量 :math:`\mathbf{r}_k = \mathbf{O}_C\,\mathbf{S}_{b}\,\mathbf{t}_k`
（团簇取向、原子对称分支、模板槽位），观测矢量 :math:`\mathbf{o}_k` 为
:math:`\mathbf{x}_j - \mathbf{x}_i` 的最小镜像。正规方程：

.. math::
    \mathbf{V} = \sum_k \mathbf{r}_k\mathbf{r}_k^{T},\qquad
    \mathbf{W} = \sum_k \mathbf{o}_k\mathbf{r}_k^{T},\qquad
    \mathbf{F} = \mathbf{W}\mathbf{V}^{-1}

失败判据（逐原子，不抛异常）：

- 有效对应数少于下限：``INSUFFICIENT_NEIGHBORS``
- :math:`\det\mathbf{V} / (\operatorname{tr}\mathbf{V}/3)^3` 低于容差（共面等退化）：``ILL_CONDITIONED``
- :math:`|\det\mathbf{F}|` 低于容差或出现非有限值：``SINGULAR``

Notes
-----
全程使用 float64。未定义原子的形变梯度保持为零矩阵，不写入 NaN。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum

import numpy as np

from latticestrain.core.lattice import ReferenceLattice
from latticestrain.core.structure import SimulationCell
from latticestrain.elastic.clusters import ClusterGraph
from latticestrain.elastic.identification import StructureIdentification
from latticestrain.utils.utils import map_chunks

logger = logging.getLogger(__name__)


class FitStatus(IntEnum):
    """逐原子拟合状态。"""

    OK = 0
    NO_STRUCTURE = 1
    INSUFFICIENT_NEIGHBORS = 2
    ILL_CONDITIONED = 3
    SINGULAR = 4


def fit_deformation_gradients(
    reference: np.ndarray,
    observed: np.ndarray,
    mask: np.ndarray,
    min_correspondences: int = 3,
    conditioning_tolerance: float = 1e-3,
    singular_tolerance: float = 1e-10,
) -> tuple[np.ndarray, np.ndarray]:
    """批量拟合形变梯度

    Parameters
    ----------
    reference : numpy.ndarray
        参考矢量 (N, K, 3)
    observed : numpy.ndarray
        观测矢量 (N, K, 3)
    mask : numpy.ndarray
        有效对应掩码 (N, K)
    min_correspondences : int, optional
        最少有效对应数
    conditioning_tolerance : float, optional
        正规矩阵相对行列式下限
    singular_tolerance : float, optional
        :math:`|\\det\\mathbf{F}|` 下限

    Returns
    -------
    gradients : numpy.ndarray
        形变梯度 (N, 3, 3)，失败原子为零矩阵
    status : numpy.ndarray
        :class:`FitStatus` 数组 (N,)
    """
    reference = np.asarray(reference, dtype=np.float64)
    observed = np.asarray(observed, dtype=np.float64)
    weights = np.asarray(mask, dtype=np.float64)
    n = reference.shape[0]

    gradients = np.zeros((n, 3, 3))
    status = np.full(n, FitStatus.OK, dtype=np.int64)

    counts = np.count_nonzero(mask, axis=1)
    status[counts < min_correspondences] = FitStatus.INSUFFICIENT_NEIGHBORS

    V = np.einsum("nk,nka,nkb->nab", weights, reference, reference)
    W = np.einsum("nk,nka,nkb->nab", weights, observed, reference)

    # 无量纲条件数判据，与模板尺度无关
    scale = (np.trace(V, axis1=1, axis2=2) / 3.0) ** 3
    ratio = np.divide(
        np.linalg.det(V), scale, out=np.zeros(n), where=scale > 0.0
    )
    ill = (status == FitStatus.OK) & ~(ratio >= conditioning_tolerance)
    status[ill] = FitStatus.ILL_CONDITIONED

    ok = np.nonzero(status == FitStatus.OK)[0]
    if len(ok):
        try:
            # F V = W，V 对称 => V F^T = W^T
            solved = np.swapaxes(
                np.linalg.solve(V[ok], np.swapaxes(W[ok], 1, 2)), 1, 2
            )
        except np.linalg.LinAlgError:
            solved = np.zeros((len(ok), 3, 3))
            for k, idx in enumerate(ok):
                try:
                    solved[k] = np.linalg.solve(V[idx], W[idx].T).T
                except np.linalg.LinAlgError:
                    status[idx] = FitStatus.ILL_CONDITIONED
        finite = np.all(np.isfinite(solved), axis=(1, 2))
        det = np.zeros(len(ok))
        det[finite] = np.linalg.det(solved[finite])
        good = finite & (np.abs(det) >= singular_tolerance) & (status[ok] == FitStatus.OK)
        status[ok[~good & (status[ok] == FitStatus.OK)]] = FitStatus.SINGULAR
        gradients[ok[good]] = solved[good]

    return gradients, status


def fit_deformation_gradient(
    reference,
    observed,
    min_correspondences: int = 3,
    conditioning_tolerance: float = 1e-3,
    singular_tolerance: float = 1e-10,
) -> tuple[np.ndarray | None, FitStatus]:
    """单原子形变梯度拟合（纯函数）

    Parameters
    ----------
    reference : array_like
        参考矢量 (K, 3)
    observed : array_like
        观测矢量 (K, 3)

    Returns
    -------
    tuple
        ``(F, status)``；失败时 ``F`` 为 ``None``

    Examples
    --------
    >>> t = np.eye(3)
    >>> F, status = fit_deformation_gradient(t, 1.01 * t)
    >>> status is FitStatus.OK
    True
    """
    reference = np.asarray(reference, dtype=np.float64).reshape(-1, 3)
    observed = np.asarray(observed, dtype=np.float64).reshape(-1, 3)
    if reference.shape != observed.shape:
        raise ValueError(
            f"参考矢量 {reference.shape} 与观测矢量 {observed.shape} 形状不一致"
        )
    gradients, status = fit_deformation_gradients(
        reference[None],
        observed[None],
        np.ones((1, reference.shape[0]), dtype=bool),
        min_correspondences=min_correspondences,
        conditioning_tolerance=conditioning_tolerance,
        singular_tolerance=singular_tolerance,
    )
    result = FitStatus(int(status[0]))
    return (gradients[0] if result is FitStatus.OK else None), result


@dataclass(frozen=True, eq=False)
class DeformationFit:
    """逐原子拟合结果

    Attributes
    ----------
    gradients : numpy.ndarray
        形变梯度 (N, 3, 3)，未定义原子为零矩阵
    status : numpy.ndarray
        :class:`FitStatus` (N,)
    num_correspondences : numpy.ndarray
        参与拟合的有效对应数 (N,)
    """

    gradients: np.ndarray
    status: np.ndarray
    num_correspondences: np.ndarray

    @property
    def valid(self) -> np.ndarray:
        return self.status == FitStatus.OK

    def status_counts(self) -> dict[str, int]:
        """各状态的原子数。"""
        return {
            s.name: int(np.count_nonzero(self.status == s)) for s in FitStatus
        }


class DeformationFitEngine:
    """形变梯度拟合引擎

    按原子分块并行，每块只写自己的输出切片。

    Parameters
    ----------
    lattice : ReferenceLattice
        参考晶格
    min_correspondences : int, optional
        最少有效对应数，默认为完整近邻壳层
    conditioning_tolerance : float, optional
        正规矩阵相对行列式下限
    singular_tolerance : float, optional
        :math:`|\\det\\mathbf{F}|` 下限
    num_workers : int, optional
        线程数
    chunk_size : int, optional
        每块原子数
    cancel_event : threading.Event, optional
        取消标志
    """

    def __init__(
        self,
        lattice: ReferenceLattice,
        min_correspondences: int | None = None,
        conditioning_tolerance: float = 1e-3,
        singular_tolerance: float = 1e-10,
        num_workers: int = 1,
        chunk_size: int = 4096,
        cancel_event=None,
    ):
        self.lattice = lattice
        self.min_correspondences = (
            lattice.num_neighbors if min_correspondences is None else int(min_correspondences)
        )
        self.conditioning_tolerance = conditioning_tolerance
        self.singular_tolerance = singular_tolerance
        self.num_workers = num_workers
        self.chunk_size = chunk_size
        self.cancel_event = cancel_event

    def reference_frames(self, graph: ClusterGraph) -> np.ndarray:
        r"""每个原子的参考坐标系 :math:`\mathbf{O}_C\mathbf{S}_{b_i}` (N, 3, 3)"""
        orientations = graph.cluster_orientations[graph.atom_clusters]
        return orientations @ self.lattice.rotations[graph.atom_symmetry]

    def fit(
        self,
        positions,
        cell: SimulationCell,
        identification: StructureIdentification,
        graph: ClusterGraph,
    ) -> DeformationFit:
        """拟合全部原子的形变梯度

        Parameters
        ----------
        positions : numpy.ndarray
            原子坐标 (N, 3)
        cell : SimulationCell
            模拟晶胞
        identification : StructureIdentification
            结构识别结果
        graph : ClusterGraph
            已定型的团簇图

        Returns
        -------
        DeformationFit
            拟合结果
        """
        n = identification.num_atoms
        width = identification.width
        frames = self.reference_frames(graph)
        crystalline = graph.crystalline_mask
        usable = identification.valid_entries() & ~graph.excluded
        neighbors = identification.neighbors
        slots = identification.template_slots
        vectors = self.lattice.vectors

        gradients = np.zeros((n, 3, 3))
        status = np.full(n, FitStatus.NO_STRUCTURE, dtype=np.int64)
        counts = np.zeros(n, dtype=np.int64)

        def _chunk(start, stop):
            rows = np.arange(start, stop)
            sub = crystalline[start:stop]
            if not np.any(sub):
                return None
            rows = rows[sub]
            mask = usable[rows]
            j = np.where(mask, neighbors[rows], rows[:, None])
            s = np.where(mask, slots[rows], 0)
            observed = cell.minimum_image(
                (positions[j] - positions[rows][:, None, :]).reshape(-1, 3)
            ).reshape(len(rows), width, 3)
            reference = np.einsum("nab,nkb->nka", frames[rows], vectors[s])
            observed[~mask] = 0.0
            reference[~mask] = 0.0
            F, st = fit_deformation_gradients(
                reference,
                observed,
                mask,
                min_correspondences=self.min_correspondences,
                conditioning_tolerance=self.conditioning_tolerance,
                singular_tolerance=self.singular_tolerance,
            )
            gradients[rows] = F
            status[rows] = st
            counts[rows] = np.count_nonzero(mask, axis=1)
            return len(rows)

        map_chunks(_chunk, n, self.chunk_size, self.num_workers, self.cancel_event)

        result = DeformationFit(
            gradients=gradients, status=status, num_correspondences=counts
        )
        failures = {
            k: v for k, v in result.status_counts().items() if k not in ("OK", "NO_STRUCTURE") and v
        }
        logger.info(
            f"拟合完成: {int(np.count_nonzero(result.valid))}/{n} 个原子成功"
            + (f", 失败统计 {failures}" if failures else "")
        )
        return result
