#!/usr/bin/env python3
r"""
晶体结构生成器模块

该模块提供统一的理想超胞生成接口，覆盖参考晶格模块支持的全部晶格族。
主要用于为弹性应变分析构造合成快照（测试与命令行 ``synthetic`` 场景）。

支持的晶格类型：
- SC (简单立方)
- BCC (体心立方)
- FCC (面心立方)
- HCP (密排六方)，使用正交六方晶胞 :math:`(a, \sqrt{3}a, c)`
- CUBIC_DIAMOND (立方金刚石)
- HEX_DIAMOND (六方金刚石)

基本使用：
    >>> builder = CrystallineStructureBuilder()
    >>> positions, cell = builder.create_bcc(1.63, (3, 3, 3))
    >>> positions.shape
    (54, 3)

.. moduleauthor:: Gilbert Young
"""

import logging

import numpy as np

from latticestrain.core.lattice import IDEAL_CA_RATIO, LatticeFamily
from latticestrain.core.structure import SimulationCell
from latticestrain.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_SQRT3 = np.sqrt(3.0)

_HCP_BASIS = np.array(
    [
        [0.0, 0.0, 0.0],
        [0.5, 0.5, 0.0],
        [0.5, 1.0 / 6.0, 0.5],
        [0.0, 2.0 / 3.0, 0.5],
    ]
)

_FCC_BASIS = np.array(
    [
        [0.0, 0.0, 0.0],  # 角原子
        [0.5, 0.5, 0.0],  # xy面心
        [0.5, 0.0, 0.5],  # xz面心
        [0.0, 0.5, 0.5],  # yz面心
    ]
)


class CrystallineStructureBuilder:
    """
    统一的晶体结构生成器

    所有方法返回 ``(positions, cell)``：笛卡尔坐标数组 (N, 3) 与
    :class:`~latticestrain.core.structure.SimulationCell`。原子编号按
    单胞 (i, j, k) 的字典序、单胞内按基原子顺序递增。

    Parameters
    ----------
    pbc : tuple of bool, optional
        生成晶胞的周期性标志，默认三个方向均周期

    Examples
    --------
    创建 2×2×2 的FCC超胞:

    >>> builder = CrystallineStructureBuilder()
    >>> positions, cell = builder.create_fcc(4.05, (2, 2, 2))
    >>> len(positions)
    32
    """

    def __init__(self, pbc=(True, True, True)):
        self.pbc = pbc

    @staticmethod
    def _validate(lattice_constant, supercell) -> tuple[float, tuple[int, int, int]]:
        if (
            isinstance(lattice_constant, bool)
            or not isinstance(lattice_constant, int | float)
            or lattice_constant <= 0
        ):
            raise ConfigurationError(f"晶格常数必须为正数，得到: {lattice_constant}")
        if (
            not isinstance(supercell, tuple | list)
            or len(supercell) != 3
            or not all(isinstance(n, int | np.integer) and n > 0 for n in supercell)
        ):
            raise TypeError(f"超胞尺寸必须为正整数三元组，得到: {supercell}")
        return float(lattice_constant), tuple(int(n) for n in supercell)

    def _replicate(
        self, basis: np.ndarray, unit_vectors: np.ndarray, supercell, orientation=None
    ) -> tuple[np.ndarray, SimulationCell]:
        """把单胞基原子复制到超胞，并可整体转动

        Parameters
        ----------
        basis : numpy.ndarray
            单胞内基原子的分数坐标 (B, 3)
        unit_vectors : numpy.ndarray
            单胞矩阵 (3, 3)，每行一个基矢
        supercell : tuple of int
            超胞尺寸 (nx, ny, nz)
        orientation : numpy.ndarray, optional
            施加于坐标与晶胞的转动矩阵 (3, 3)

        Returns
        -------
        tuple
            ``(positions, cell)``
        """
        nx, ny, nz = supercell
        grid = np.array(
            [(i, j, k) for i in range(nx) for j in range(ny) for k in range(nz)],
            dtype=np.float64,
        )
        fractional = (grid[:, None, :] + basis[None, :, :]).reshape(-1, 3)
        positions = fractional @ unit_vectors
        cell_vectors = unit_vectors * np.array([nx, ny, nz], dtype=np.float64)[:, None]

        if orientation is not None:
            orientation = np.asarray(orientation, dtype=np.float64)
            if orientation.shape != (3, 3) or not np.allclose(
                orientation @ orientation.T, np.eye(3), atol=1e-8
            ):
                raise ValueError("orientation 必须是 3x3 正交矩阵")
            positions = positions @ orientation.T
            cell_vectors = cell_vectors @ orientation.T

        logger.debug(f"生成超胞: {len(positions)} 个原子, 尺寸 {supercell}")
        return positions, SimulationCell(cell_vectors, pbc=self.pbc)

    def create_sc(self, lattice_constant, supercell, orientation=None):
        """创建简单立方(SC)结构，每个单胞1个原子，配位数6。"""
        a, supercell = self._validate(lattice_constant, supercell)
        return self._replicate(np.zeros((1, 3)), np.eye(3) * a, supercell, orientation)

    def create_bcc(self, lattice_constant, supercell, orientation=None):
        """
        创建体心立方(BCC)结构

        BCC结构特点：
        - 单胞包含2个原子
        - 基矢：(0,0,0), (0.5,0.5,0.5)
        - 第一近邻8个，第二近邻6个

        Parameters
        ----------
        lattice_constant : float
            晶格常数
        supercell : tuple of int
            超胞尺寸 (nx, ny, nz)
        orientation : numpy.ndarray, optional
            整体转动矩阵

        Returns
        -------
        tuple
            ``(positions, cell)``，原子数 = 2 × nx × ny × nz
        """
        a, supercell = self._validate(lattice_constant, supercell)
        basis = np.array([[0.0, 0.0, 0.0], [0.5, 0.5, 0.5]])
        return self._replicate(basis, np.eye(3) * a, supercell, orientation)

    def create_fcc(self, lattice_constant, supercell, orientation=None):
        """
        创建面心立方(FCC)结构

        FCC结构特点：
        - 单胞包含4个原子
        - 基矢：(0,0,0), (0.5,0.5,0), (0.5,0,0.5), (0,0.5,0.5)
        - 配位数：12

        Returns
        -------
        tuple
            ``(positions, cell)``，原子数 = 4 × nx × ny × nz
        """
        a, supercell = self._validate(lattice_constant, supercell)
        return self._replicate(_FCC_BASIS, np.eye(3) * a, supercell, orientation)

    def create_cubic_diamond(self, lattice_constant, supercell, orientation=None):
        """创建立方金刚石结构：FCC基原子加上沿 (1/4, 1/4, 1/4) 平移的副本，每个单胞8个原子。"""
        a, supercell = self._validate(lattice_constant, supercell)
        basis = np.vstack([_FCC_BASIS, _FCC_BASIS + 0.25])
        return self._replicate(basis, np.eye(3) * a, supercell, orientation)

    @staticmethod
    def _hexagonal_cell(a: float, ca_ratio) -> np.ndarray:
        if ca_ratio is None:
            ca_ratio = IDEAL_CA_RATIO
        if isinstance(ca_ratio, bool) or not isinstance(ca_ratio, int | float) or ca_ratio <= 0:
            raise ConfigurationError(f"轴比必须为正数，得到: {ca_ratio}")
        return np.diag([a, _SQRT3 * a, float(ca_ratio) * a])

    def create_hcp(self, lattice_constant, supercell, ca_ratio=None, orientation=None):
        """
        创建密排六方(HCP)结构

        使用正交六方单胞 :math:`(a, \\sqrt{3}a, c)`，每个单胞4个原子；
        ``ca_ratio`` 为 ``None`` 时取理想轴比 :math:`\\sqrt{8/3}`。

        Returns
        -------
        tuple
            ``(positions, cell)``，原子数 = 4 × nx × ny × nz
        """
        a, supercell = self._validate(lattice_constant, supercell)
        unit = self._hexagonal_cell(a, ca_ratio)
        return self._replicate(_HCP_BASIS, unit, supercell, orientation)

    def create_hex_diamond(self, lattice_constant, supercell, ca_ratio=None, orientation=None):
        """创建六方金刚石结构：HCP基原子加上沿 c 方向平移 3/8 的副本，每个单胞8个原子。"""
        a, supercell = self._validate(lattice_constant, supercell)
        unit = self._hexagonal_cell(a, ca_ratio)
        shifted = _HCP_BASIS + np.array([0.0, 0.0, 3.0 / 8.0])
        basis = np.vstack([_HCP_BASIS, shifted])
        return self._replicate(basis, unit, supercell, orientation)

    def create_lattice(
        self, family, lattice_constant, supercell, ca_ratio=None, orientation=None
    ):
        """按晶格族分派到对应的生成方法

        Parameters
        ----------
        family : LatticeFamily | int | str
            晶格族
        lattice_constant : float
            晶格常数（六方晶族为面内常数 a）
        supercell : tuple of int
            超胞尺寸
        ca_ratio : float, optional
            轴比，仅六方晶族使用
        orientation : numpy.ndarray, optional
            整体转动矩阵

        Returns
        -------
        tuple
            ``(positions, cell)``
        """
        family = LatticeFamily.parse(family)
        if family.is_hexagonal:
            create = {
                LatticeFamily.HCP: self.create_hcp,
                LatticeFamily.HEX_DIAMOND: self.create_hex_diamond,
            }[family]
            return create(lattice_constant, supercell, ca_ratio=ca_ratio, orientation=orientation)
        create = {
            LatticeFamily.SC: self.create_sc,
            LatticeFamily.BCC: self.create_bcc,
            LatticeFamily.FCC: self.create_fcc,
            LatticeFamily.CUBIC_DIAMOND: self.create_cubic_diamond,
        }[family]
        return create(lattice_constant, supercell, orientation=orientation)
