# 文件名: deformation.py
# 作者: Gilbert Young
# 修改日期: 2025-09-18
# 文件描述: 构造形变梯度并对快照（坐标与晶胞）施加均匀形变的 Deformer 类。

r"""
变形模块

用于生成形变梯度并对合成快照施加均匀形变，构造已知 :math:`\mathbf{F}_0` 的测试输入。

理论基础
--------
均匀形变下每个原子坐标与晶胞基矢都按 :math:`\mathbf{F}_0` 映射（行向量记号）：

.. math::
    \mathbf{x}' = \mathbf{x}\,\mathbf{F}_0^{T},\qquad
    \mathbf{H}' = \mathbf{H}\,\mathbf{F}_0^{T}
"""

import logging

import numpy as np

from latticestrain.core.structure import SimulationCell

logger = logging.getLogger(__name__)


class Deformer:
    """构造形变梯度并应用于快照"""

    @staticmethod
    def from_voigt(strain_voigt) -> np.ndarray:
        r"""由 Voigt 小应变构造对称形变梯度 :math:`\mathbf{I} + \boldsymbol{\varepsilon}`

        Parameters
        ----------
        strain_voigt : array_like
            6 个分量，剪切为工程剪应变

        Returns
        -------
        numpy.ndarray
            3×3 形变梯度
        """
        strain_voigt = np.asarray(strain_voigt, dtype=np.float64)
        if strain_voigt.shape != (6,):
            raise ValueError(f"Voigt 应变必须有 6 个分量，得到形状 {strain_voigt.shape}")
        eps = np.diag(strain_voigt[:3])
        eps[1, 2] = eps[2, 1] = 0.5 * strain_voigt[3]
        eps[0, 2] = eps[2, 0] = 0.5 * strain_voigt[4]
        eps[0, 1] = eps[1, 0] = 0.5 * strain_voigt[5]
        return np.identity(3) + eps

    @staticmethod
    def apply_deformation(
        positions, cell: SimulationCell, deformation_matrix: np.ndarray
    ) -> tuple[np.ndarray, SimulationCell]:
        r"""对快照施加形变矩阵 :math:`\mathbf{F}`

        Parameters
        ----------
        positions : numpy.ndarray
            原子坐标 (N, 3)
        cell : SimulationCell
            模拟晶胞
        deformation_matrix : numpy.ndarray
            3×3 形变矩阵

        Returns
        -------
        tuple
            ``(positions', cell')``，输入保持不变

        Raises
        ------
        ValueError
            如果变形矩阵不是3x3矩阵或行列式接近零
        """
        deformation_matrix = np.asarray(deformation_matrix, dtype=np.float64)
        if deformation_matrix.shape != (3, 3):
            raise ValueError("变形矩阵必须是3x3矩阵")

        det = np.linalg.det(deformation_matrix)
        if np.isclose(det, 0, atol=1e-10):
            raise ValueError("变形矩阵行列式接近零，可能导致数值不稳定")

        deformed_positions = np.asarray(positions, dtype=np.float64) @ deformation_matrix.T
        deformed_cell = cell.deformed(deformation_matrix)
        logger.debug(f"成功应用变形矩阵: {deformation_matrix.tolist()}")
        return deformed_positions, deformed_cell
