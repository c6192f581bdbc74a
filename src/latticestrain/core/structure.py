#!/usr/bin/env python3
r"""
模拟晶胞模块

该模块提供弹性应变分析所需的模拟晶胞表示：三个晶胞基矢、逐轴周期性标志，
以及把原子间位移折叠为最小镜像的算法。

理论基础
--------
分数/笛卡尔坐标定义（行向量记号，晶胞矩阵 :math:`\mathbf{H}` 的每一行为一个基矢）：

.. math::
    \mathbf{r} = \mathbf{s}\,\mathbf{H},\qquad
    \mathbf{s} = \mathbf{r}\,\mathbf{H}^{-1}

最小镜像约定 (Minimum Image Convention)，仅作用于周期方向 :math:`\alpha`：

.. math::
    s_\alpha \leftarrow s_\alpha - \operatorname{round}(s_\alpha)

Classes
-------
SimulationCell
    模拟晶胞，负责坐标转换与最小镜像折叠

Functions
---------
_minimum_image_numba
    JIT优化的批量最小镜像折叠

Notes
-----
对于强烈倾斜的三斜晶胞，分数坐标取整不一定给出严格最短的镜像；
近邻壳层远小于半个晶胞时两者一致。

Examples
--------
>>> import numpy as np
>>> from latticestrain.core.structure import SimulationCell
>>> cell = SimulationCell(np.eye(3) * 10.0, pbc=(True, True, False))
>>> cell.minimum_image(np.array([9.0, 0.0, 9.0]))
array([-1.,  0.,  9.])
"""

import logging

import numpy as np
from numba import jit

from latticestrain.utils.exceptions import StructureError

logger = logging.getLogger(__name__)


@jit(nopython=True, nogil=True)
def _minimum_image_numba(vectors, inverse, cell_vectors, pbc):
    """JIT优化的最小镜像折叠

    Parameters
    ----------
    vectors : numpy.ndarray
        位移向量数组 (N, 3)
    inverse : numpy.ndarray
        晶胞矩阵的逆 (3, 3)
    cell_vectors : numpy.ndarray
        晶胞矩阵 (3, 3)，每行一个基矢
    pbc : numpy.ndarray
        逐轴周期性标志 (3,)

    Returns
    -------
    numpy.ndarray
        折叠后的位移数组 (N, 3)
    """
    n = vectors.shape[0]
    out = np.empty((n, 3))
    frac = np.empty(3)
    for i in range(n):
        for d in range(3):
            s = 0.0
            for k in range(3):
                s += vectors[i, k] * inverse[k, d]
            if pbc[d]:
                s -= np.floor(s + 0.5)
            frac[d] = s
        for d in range(3):
            acc = 0.0
            for k in range(3):
                acc += frac[k] * cell_vectors[k, d]
            out[i, d] = acc
    return out


class SimulationCell:
    r"""模拟晶胞

    晶胞矢量定义为行向量：

    .. math::
        \mathbf{H} = \begin{pmatrix}
            \mathbf{a}_1 \\
            \mathbf{a}_2 \\
            \mathbf{a}_3
        \end{pmatrix}

    Parameters
    ----------
    cell_vectors : array_like
        3×3晶胞矩阵，每行为一个基矢
    pbc : tuple of bool or bool, optional
        逐轴周期性标志，默认三个方向均为周期
    origin : array_like, optional
        晶胞原点，仅用于记录，默认为零

    Attributes
    ----------
    cell_vectors : numpy.ndarray
        晶胞矩阵 (3, 3)，只读
    inverse : numpy.ndarray
        晶胞矩阵的逆 (3, 3)，只读
    pbc : tuple of bool
        逐轴周期性标志
    volume : float
        晶胞体积

    Raises
    ------
    StructureError
        如果晶胞矩阵形状错误、含非有限值或体积接近零
    """

    def __init__(self, cell_vectors, pbc=(True, True, True), origin=None) -> None:
        if cell_vectors is None:
            raise StructureError("缺少模拟晶胞")
        cell_vectors = np.array(cell_vectors, dtype=np.float64)
        if cell_vectors.shape != (3, 3):
            raise StructureError(f"晶胞矩阵必须为 3x3，当前形状: {cell_vectors.shape}")
        if not np.all(np.isfinite(cell_vectors)):
            raise StructureError("晶胞矩阵包含无效值")

        volume = float(np.linalg.det(cell_vectors))
        lengths = np.linalg.norm(cell_vectors, axis=1)
        if np.min(lengths) <= 0.0 or abs(volume) <= 1e-12 * np.prod(lengths):
            raise StructureError("晶胞矢量线性相关或长度为零，晶胞退化")

        if isinstance(pbc, bool | np.bool_):
            pbc = (bool(pbc),) * 3
        pbc = tuple(bool(flag) for flag in pbc)
        if len(pbc) != 3:
            raise StructureError(f"周期性标志必须为 3 个布尔值，得到: {pbc}")

        self._cell_vectors = cell_vectors
        self._cell_vectors.setflags(write=False)
        self._inverse = np.linalg.inv(cell_vectors)
        self._inverse.setflags(write=False)
        self._pbc = pbc
        self._pbc_mask = np.array(pbc, dtype=np.bool_)
        self.origin = (
            np.zeros(3) if origin is None else np.array(origin, dtype=np.float64)
        )
        self.volume = abs(volume)

        logger.debug(f"SimulationCell created: volume={self.volume:.4f}, pbc={pbc}")

    @property
    def cell_vectors(self) -> np.ndarray:
        """晶胞矩阵 (3, 3)，每行一个基矢。"""
        return self._cell_vectors

    @property
    def inverse(self) -> np.ndarray:
        """晶胞矩阵的逆。"""
        return self._inverse

    @property
    def pbc(self) -> tuple[bool, bool, bool]:
        """逐轴周期性标志。"""
        return self._pbc

    @property
    def is_periodic(self) -> bool:
        """是否至少有一个周期方向。"""
        return any(self._pbc)

    def get_box_lengths(self) -> np.ndarray:
        """返回三个基矢的长度

        Returns
        -------
        numpy.ndarray
            包含三个方向长度的数组
        """
        return np.linalg.norm(self._cell_vectors, axis=1)

    def get_perpendicular_widths(self) -> np.ndarray:
        """返回三个方向上相对晶面之间的垂直距离 :math:`V / |\\mathbf{a}_j \\times \\mathbf{a}_k|`"""
        a, b, c = self._cell_vectors
        areas = np.linalg.norm([np.cross(b, c), np.cross(c, a), np.cross(a, b)], axis=1)
        return self.volume / areas

    def minimum_image(self, displacement) -> np.ndarray:
        r"""计算最小镜像位移向量

        根据最小镜像约定，在周期方向上找到最近的周期镜像之间的位移；
        非周期方向保持原值。

        .. math::
            \mathbf{d}_{\min} = \left(\mathbf{s} - \operatorname{round}_{\text{pbc}}(\mathbf{s})\right)\mathbf{H},
            \qquad \mathbf{s} = \mathbf{d}\,\mathbf{H}^{-1}

        Parameters
        ----------
        displacement : numpy.ndarray
            位移向量 (3,) 或位移数组 (N, 3)

        Returns
        -------
        numpy.ndarray
            与输入形状相同的最小镜像位移

        Raises
        ------
        ValueError
            如果位移形状错误或包含非有限值
        """
        vectors = np.asarray(displacement, dtype=np.float64)
        single = vectors.ndim == 1
        if single:
            vectors = vectors.reshape(1, -1)
        if vectors.ndim != 2 or vectors.shape[1] != 3:
            raise ValueError(f"位移向量必须是3D向量，当前形状: {vectors.shape}")
        if not np.all(np.isfinite(vectors)):
            raise ValueError("Non-finite values in displacement for minimum image")

        if not self.is_periodic:
            folded = vectors.copy()
        else:
            folded = _minimum_image_numba(
                np.ascontiguousarray(vectors),
                np.ascontiguousarray(self._inverse),
                np.ascontiguousarray(self._cell_vectors),
                self._pbc_mask,
            )
        return folded[0] if single else folded

    def get_fractional_coordinates(self, positions) -> np.ndarray:
        """将笛卡尔坐标转换为分数坐标

        Parameters
        ----------
        positions : numpy.ndarray
            笛卡尔坐标 (N, 3)

        Returns
        -------
        numpy.ndarray
            分数坐标 (N, 3)
        """
        return (np.asarray(positions, dtype=np.float64) - self.origin) @ self._inverse

    def wrap_positions(self, positions) -> np.ndarray:
        """把原子位置折回周期方向上的主晶胞

        Parameters
        ----------
        positions : numpy.ndarray
            笛卡尔坐标 (N, 3)

        Returns
        -------
        numpy.ndarray
            折回后的坐标 (N, 3)
        """
        fractional = self.get_fractional_coordinates(positions)
        fractional[:, self._pbc_mask] %= 1.0
        return fractional @ self._cell_vectors + self.origin

    def deformed(self, deformation_matrix: np.ndarray) -> "SimulationCell":
        r"""返回施加均匀形变后的新晶胞

        行向量记号下 :math:`\mathbf{H}' = \mathbf{H}\,\mathbf{F}^{T}`。

        Parameters
        ----------
        deformation_matrix : numpy.ndarray
            3×3 形变梯度

        Returns
        -------
        SimulationCell
            新的晶胞对象，周期性标志不变
        """
        deformation_matrix = np.asarray(deformation_matrix, dtype=np.float64)
        return SimulationCell(
            self._cell_vectors @ deformation_matrix.T, pbc=self._pbc, origin=self.origin
        )

    def copy(self) -> "SimulationCell":
        """创建晶胞的深拷贝"""
        return SimulationCell(self._cell_vectors.copy(), self._pbc, self.origin.copy())

    def __repr__(self) -> str:
        lengths = ", ".join(f"{v:.3f}" for v in self.get_box_lengths())
        return f"SimulationCell(lengths=[{lengths}], pbc={self._pbc})"
