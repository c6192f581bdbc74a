#!/usr/bin/env python3
r"""
参考晶格模块

给定晶格族、晶格常数与轴比，生成理想近邻壳层矢量（模板）以及晶格点群的对称操作。
模板与对称群在一次分析中只构建一次，并以只读形式在所有原子之间共享。

支持的晶格族与模板大小：

==================  ======  ==============================
晶格族              近邻数  壳层
==================  ======  ==============================
SC                  6       第一近邻
FCC                 12      第一近邻
HCP                 12      第一近邻
BCC                 14      第一近邻 (8) + 第二近邻 (6)
CUBIC_DIAMOND       16      第一近邻 (4) + 第二近邻 (12)
HEX_DIAMOND         16      第一近邻 (4) + 第二近邻 (12)
==================  ======  ==============================

理论基础
--------
取向矩阵 :math:`\mathbf{R}` 把晶格坐标系中的模板矢量映射到空间坐标系：
:math:`\mathbf{d}_k \approx \mathbf{R}\,\mathbf{t}_k`。两个取向 :math:`\mathbf{R}_i`、
:math:`\mathbf{R}_j` 等价，当且仅当存在点群中的纯转动 :math:`\mathbf{S}` 使

.. math::
    \mathbf{R}_i^{T}\mathbf{R}_j \approx \mathbf{S}

转动角由迹给出：:math:`\theta = \arccos\left((\operatorname{tr}\mathbf{M} - 1)/2\right)`。

Notes
-----
六方晶族的 ``lattice_constant`` 为面内常数 :math:`a`，模板的 z 分量按
:math:`(c/a) / \sqrt{8/3}` 缩放；``ca_ratio`` 为 ``None`` 时采用理想轴比。

纯转动子群（立方 24 个，六方 12 个）同时包含把金刚石/六方晶格两个子格点位
相互映射的操作，因此同一晶粒中不同子格点的原子属于同一团簇。
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import IntEnum
from functools import lru_cache

import numpy as np
from scipy.spatial.transform import Rotation

from latticestrain.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

IDEAL_CA_RATIO: float = float(np.sqrt(8.0 / 3.0))
"""理想六方密堆轴比 :math:`\\sqrt{8/3}`。"""


class LatticeFamily(IntEnum):
    """晶格族标签，``NONE`` 表示未识别出结构。"""

    NONE = 0
    SC = 1
    FCC = 2
    HCP = 3
    BCC = 4
    CUBIC_DIAMOND = 5
    HEX_DIAMOND = 6

    @property
    def is_hexagonal(self) -> bool:
        """是否为六方晶族（轴比有意义）。"""
        return self in (LatticeFamily.HCP, LatticeFamily.HEX_DIAMOND)

    @classmethod
    def parse(cls, value) -> LatticeFamily:
        """从枚举、整数或字符串解析晶格族

        Parameters
        ----------
        value : LatticeFamily | int | str
            晶格族描述，字符串大小写不敏感，如 ``"bcc"``、``"cubic_diamond"``。

        Returns
        -------
        LatticeFamily
            解析结果，不会返回 ``NONE``

        Raises
        ------
        ConfigurationError
            未知的晶格族
        """
        if isinstance(value, LatticeFamily):
            family = value
        elif isinstance(value, int | np.integer) and not isinstance(value, bool):
            try:
                family = cls(int(value))
            except ValueError as e:
                raise ConfigurationError(f"未知晶格族编号: {value}") from e
        elif isinstance(value, str):
            key = value.strip().upper().replace("-", "_").replace(" ", "_")
            key = _FAMILY_ALIASES.get(key, key)
            if key not in cls.__members__:
                raise ConfigurationError(
                    f"未知晶格族: {value}. 支持: {[m.name for m in _TEMPLATES]}"
                )
            family = cls[key]
        else:
            raise ConfigurationError(f"无法解析晶格族: {value!r}")

        if family is LatticeFamily.NONE:
            raise ConfigurationError("晶格族不能为 NONE")
        return family


_FAMILY_ALIASES = {
    "DIAMOND": "CUBIC_DIAMOND",
    "DIA": "CUBIC_DIAMOND",
    "HEXAGONAL_DIAMOND": "HEX_DIAMOND",
    "LONSDALEITE": "HEX_DIAMOND",
    "SIMPLE_CUBIC": "SC",
}


def _signed_permutations(base) -> list[tuple[float, float, float]]:
    """生成 base 的全部符号与排列组合（去重，保持首次出现顺序）。"""
    out = []
    for perm in itertools.permutations(base):
        for signs in itertools.product((1.0, -1.0), repeat=3):
            v = tuple(float(s * p) for s, p in zip(signs, perm, strict=True))
            v = tuple(0.0 if x == 0.0 else x for x in v)
            if v not in out:
                out.append(v)
    return out


def _hexagonal_shell(z_bond: float, z_second: float) -> tuple[list, list]:
    """六方晶族的面内与面外近邻（单位 a，理想轴比）。"""
    r = 1.0 / np.sqrt(3.0)
    in_plane = [
        (np.cos(np.radians(60.0 * k)), np.sin(np.radians(60.0 * k)), 0.0)
        for k in range(6)
    ]
    triad = [
        (r * np.cos(np.radians(30.0 + 120.0 * m)), r * np.sin(np.radians(30.0 + 120.0 * m)))
        for m in range(3)
    ]
    above = [(x, y, z_second) for x, y in triad]
    below = [(x, y, -z_second) for x, y in triad]
    bonds_down = [(x, y, -z_bond) for x, y in triad]
    return in_plane + above + below, bonds_down


def _template_sc() -> np.ndarray:
    return np.array(_signed_permutations((1.0, 0.0, 0.0)))


def _template_fcc() -> np.ndarray:
    return 0.5 * np.array(_signed_permutations((1.0, 1.0, 0.0)))


def _template_bcc() -> np.ndarray:
    first = [
        (0.5 * sx, 0.5 * sy, 0.5 * sz)
        for sx, sy, sz in itertools.product((1.0, -1.0), repeat=3)
    ]
    return np.array(first + _signed_permutations((1.0, 0.0, 0.0)))


def _template_cubic_diamond() -> np.ndarray:
    # 偶宇称四面体：(1,1,1)、(1,-1,-1)、(-1,1,-1)、(-1,-1,1)
    first = 0.25 * np.array(
        [[1.0, 1.0, 1.0], [1.0, -1.0, -1.0], [-1.0, 1.0, -1.0], [-1.0, -1.0, 1.0]]
    )
    return np.vstack([first, _template_fcc()])


def _template_hcp() -> np.ndarray:
    c = IDEAL_CA_RATIO
    shell, _ = _hexagonal_shell(z_bond=0.0, z_second=0.5 * c)
    return np.array(shell)


def _template_hex_diamond() -> np.ndarray:
    c = IDEAL_CA_RATIO
    shell, bonds_down = _hexagonal_shell(z_bond=c / 8.0, z_second=0.5 * c)
    first = [(0.0, 0.0, 3.0 * c / 8.0)] + bonds_down
    return np.array(first + shell)


_TEMPLATES = {
    LatticeFamily.SC: _template_sc,
    LatticeFamily.FCC: _template_fcc,
    LatticeFamily.HCP: _template_hcp,
    LatticeFamily.BCC: _template_bcc,
    LatticeFamily.CUBIC_DIAMOND: _template_cubic_diamond,
    LatticeFamily.HEX_DIAMOND: _template_hex_diamond,
}


def rotation_angle(matrix) -> np.ndarray:
    r"""转动角 :math:`\arccos((\operatorname{tr}\mathbf{M}-1)/2)`

    Parameters
    ----------
    matrix : numpy.ndarray
        (3, 3) 或 (..., 3, 3) 的转动矩阵

    Returns
    -------
    numpy.ndarray
        转动角（弧度）
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    trace = np.trace(matrix, axis1=-2, axis2=-1)
    return np.arccos(np.clip(0.5 * (trace - 1.0), -1.0, 1.0))


def orthonormalize(matrix) -> np.ndarray:
    """把近似转动矩阵投影到最近的纯转动（极分解）

    Parameters
    ----------
    matrix : numpy.ndarray
        (3, 3) 或 (N, 3, 3) 矩阵

    Returns
    -------
    numpy.ndarray
        行列式为 +1 的正交矩阵
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    u, _, vt = np.linalg.svd(matrix)
    rot = u @ vt
    det = np.linalg.det(rot)
    flip = det < 0.0
    if np.any(flip):
        u = u.copy()
        u[..., :, 2] = np.where(flip[..., None], -u[..., :, 2], u[..., :, 2])
        rot = u @ vt
    return rot


def _point_group(family: LatticeFamily) -> np.ndarray:
    """完整点群（含非纯转动）。"""
    if family.is_hexagonal:
        proper = []
        flip = np.diag([1.0, -1.0, -1.0])
        for k in range(6):
            rz = Rotation.from_euler("z", 60.0 * k, degrees=True).as_matrix()
            proper.append(rz)
            proper.append(rz @ flip)
        proper = np.round(np.array(proper), 12)
    else:
        proper_and_improper = []
        for perm in itertools.permutations(range(3)):
            for signs in itertools.product((1.0, -1.0), repeat=3):
                m = np.zeros((3, 3))
                for row, col in enumerate(perm):
                    m[row, col] = signs[row]
                proper_and_improper.append(m)
        ops = np.array(proper_and_improper)
        proper = ops[np.linalg.det(ops) > 0.0]
    ops = np.concatenate([proper, -proper])
    return _canonical_order(ops)


def _canonical_order(ops: np.ndarray) -> np.ndarray:
    """按 (是否非纯转动, 转动角, 矩阵元) 排序，恒等操作位于首位。"""
    dets = np.linalg.det(ops)
    proper_part = ops * np.sign(dets)[:, None, None]
    angles = np.round(rotation_angle(proper_part), 9)
    keys = [
        (bool(d < 0.0), float(a), tuple(np.round(-m.ravel(), 9)))
        for d, a, m in zip(dets, angles, ops, strict=True)
    ]
    order = sorted(range(len(ops)), key=lambda k: keys[k])
    return ops[order]


@dataclass(frozen=True, eq=False)
class ReferenceLattice:
    """理想参考晶格：模板矢量与对称操作

    Attributes
    ----------
    family : LatticeFamily
        晶格族
    lattice_constant : float
        晶格常数（六方晶族为面内常数 a）
    ca_ratio : float
        实际使用的轴比；立方晶族为 1.0 且不参与缩放
    vectors : numpy.ndarray
        有序模板矢量 (M, 3)
    point_group : numpy.ndarray
        完整点群 (G, 3, 3)，含非纯转动
    rotations : numpy.ndarray
        纯转动子群 (K, 3, 3)，索引 0 为恒等
    product_table : numpy.ndarray
        ``product_table[a, b]`` 为 ``rotations[a] @ rotations[b]`` 的索引
    inverse_table : numpy.ndarray
        ``inverse_table[a]`` 为 ``rotations[a]`` 逆的索引
    """

    family: LatticeFamily
    lattice_constant: float
    ca_ratio: float
    vectors: np.ndarray
    point_group: np.ndarray
    rotations: np.ndarray
    product_table: np.ndarray
    inverse_table: np.ndarray

    @property
    def num_neighbors(self) -> int:
        """模板近邻数 M。"""
        return int(self.vectors.shape[0])

    @property
    def num_rotations(self) -> int:
        """纯转动子群的阶 K。"""
        return int(self.rotations.shape[0])

    @property
    def nearest_neighbor_distance(self) -> float:
        """模板中最短矢量的长度。"""
        return float(np.min(np.linalg.norm(self.vectors, axis=1)))

    def closest_rotation(self, delta) -> tuple[np.ndarray, np.ndarray]:
        """寻找与相对取向最接近的对称转动

        平局时取转动角最小者，再取索引最小者。

        Parameters
        ----------
        delta : numpy.ndarray
            相对取向 (3, 3) 或 (N, 3, 3)

        Returns
        -------
        index : numpy.ndarray
            对称转动索引，标量输入返回 0 维数组
        angle : numpy.ndarray
            残余转动角（弧度）
        """
        delta = np.asarray(delta, dtype=np.float64)
        # tr(S_k^T D) = sum_ab S_k[a,b] D[a,b]
        traces = np.einsum("kab,...ab->...k", self.rotations, delta)
        angles = np.arccos(np.clip(0.5 * (traces - 1.0), -1.0, 1.0))
        index = np.asarray(np.argmin(np.round(angles, 9), axis=-1))
        angle = np.take_along_axis(angles, index[..., None], axis=-1)[..., 0]
        return index, angle

    def misorientation(self, matrix) -> tuple[float, np.ndarray, int]:
        """对称约化后的取向差（最小转动角及其转轴）

        Parameters
        ----------
        matrix : numpy.ndarray
            两个晶格坐标系之间的相对转动 (3, 3)

        Returns
        -------
        angle : float
            最小转动角（弧度）
        axis : numpy.ndarray
            单位转轴；角度为零时返回 z 轴
        index : int
            达到最小角的对称转动索引 k，约化后的转动为 ``matrix @ rotations[k]``
        """
        matrix = np.asarray(matrix, dtype=np.float64)
        reduced = matrix @ self.rotations
        angles = np.round(rotation_angle(reduced), 9)
        index = int(np.argmin(angles))
        rotvec = Rotation.from_matrix(reduced[index]).as_rotvec()
        angle = float(np.linalg.norm(rotvec))
        axis = rotvec / angle if angle > 1e-12 else np.array([0.0, 0.0, 1.0])
        return angle, axis, index

    def symmetry_index(self, matrix, tol: float = 1e-6) -> int:
        """返回与给定矩阵相同的对称转动索引

        Raises
        ------
        ValueError
            如果矩阵不在纯转动子群中
        """
        index, angle = self.closest_rotation(matrix)
        if float(angle) > tol:
            raise ValueError("矩阵不属于该晶格的纯转动子群")
        return int(index)


def _build_tables(rotations: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    k = rotations.shape[0]
    flat = rotations.reshape(k, 9)
    products = np.einsum("aij,bjk->abik", rotations, rotations).reshape(k, k, 9)
    # 每个乘积与群元逐一比较，取最近者
    dist = np.linalg.norm(products[:, :, None, :] - flat[None, None, :, :], axis=-1)
    product_table = np.argmin(dist, axis=-1)
    if not np.all(np.min(dist, axis=-1) < 1e-8):
        raise RuntimeError("对称操作不构成闭合群")
    inverse_table = np.argmax(product_table == 0, axis=1)
    return product_table.astype(np.int64), inverse_table.astype(np.int64)


@lru_cache(maxsize=32)
def _cached_lattice(
    family: LatticeFamily, lattice_constant: float, ca_ratio: float | None
) -> ReferenceLattice:
    unit = _TEMPLATES[family]().astype(np.float64)
    if family.is_hexagonal:
        ratio = IDEAL_CA_RATIO if ca_ratio is None else float(ca_ratio)
        unit[:, 2] *= ratio / IDEAL_CA_RATIO
    else:
        ratio = 1.0
    vectors = unit * lattice_constant

    point_group = _point_group(family)
    rotations = point_group[np.linalg.det(point_group) > 0.0]
    product_table, inverse_table = _build_tables(rotations)

    for arr in (vectors, point_group, rotations, product_table, inverse_table):
        arr.setflags(write=False)

    logger.debug(
        f"Reference lattice {family.name}: {vectors.shape[0]} neighbors, "
        f"{rotations.shape[0]} rotations, a={lattice_constant}, c/a={ratio:.4f}"
    )
    return ReferenceLattice(
        family=family,
        lattice_constant=float(lattice_constant),
        ca_ratio=ratio,
        vectors=vectors,
        point_group=point_group,
        rotations=rotations,
        product_table=product_table,
        inverse_table=inverse_table,
    )


def build_reference_lattice(
    family, lattice_constant: float, ca_ratio: float | None = None
) -> ReferenceLattice:
    """构建（或从缓存取出）参考晶格

    Parameters
    ----------
    family : LatticeFamily | int | str
        晶格族
    lattice_constant : float
        晶格常数，必须为正
    ca_ratio : float | None, optional
        轴比 c/a，必须为正；仅对六方晶族有意义

    Returns
    -------
    ReferenceLattice
        只读的参考晶格

    Raises
    ------
    ConfigurationError
        未知晶格族或非正的晶格常数/轴比

    Examples
    --------
    >>> lattice = build_reference_lattice("bcc", 1.63)
    >>> lattice.num_neighbors, lattice.num_rotations
    (14, 24)
    """
    family = LatticeFamily.parse(family)
    try:
        lattice_constant = float(lattice_constant)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"晶格常数必须为数值，得到: {lattice_constant!r}") from e
    if not np.isfinite(lattice_constant) or lattice_constant <= 0.0:
        raise ConfigurationError(f"晶格常数必须为正数，得到: {lattice_constant}")
    if ca_ratio is not None:
        try:
            ca_ratio = float(ca_ratio)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"轴比必须为数值，得到: {ca_ratio!r}") from e
        if not np.isfinite(ca_ratio) or ca_ratio <= 0.0:
            raise ConfigurationError(f"轴比必须为正数，得到: {ca_ratio}")
        if not family.is_hexagonal:
            ca_ratio = None
    return _cached_lattice(family, lattice_constant, ca_ratio)
