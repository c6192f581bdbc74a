#!/usr/bin/env python3
r"""
结构识别数据与参考模板匹配器

:class:`StructureIdentification` 是结构识别步骤交给弹性应变引擎的数据约定：
每个原子的结构类型、局部取向矩阵，以及近邻对应表（近邻原子索引 → 模板槽位索引），
表中每一项可独立标记为无效 (``-1``)。

:func:`identify_structures` 是面向合成快照的参考实现：对每个原子，取最近的
:math:`2M` 个候选近邻，在种子取向的每个对称变体下，用最优指派
(:func:`scipy.optimize.linear_sum_assignment`) 把候选近邻分配到模板槽位，
保留代价最小的变体；种子取向下不能完整匹配的原子，改由其自身最近的两个
不共线候选矢量与模板矢量对配对，求出初始取向后重新指派。最后用 Kabsch 对齐细化取向：

.. math::
    \mathbf{R} = \arg\min_{\mathbf{R}\in SO(3)} \sum_k
    \left\| \mathbf{d}_k - \mathbf{R}\,\mathbf{t}_k \right\|^2

仅当全部槽位匹配且相对 RMSD 不超过 ``rmsd_cutoff`` 时，原子才被标记为该晶格族。

Notes
-----
候选近邻取自三个方向 :math:`\{-1, 0, 1\}` 的周期镜像（仅周期方向），
因此超胞每个周期方向的厚度应大于候选壳层半径。同一近邻原子只保留最近的镜像。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.optimize import linear_sum_assignment
from scipy.spatial import cKDTree
from scipy.spatial.transform import Rotation

from latticestrain.core.lattice import LatticeFamily, ReferenceLattice, rotation_angle
from latticestrain.core.structure import SimulationCell
from latticestrain.utils.exceptions import StructureError

logger = logging.getLogger(__name__)

# 近邻矢量对与模板矢量对的夹角容差
_PAIR_ANGLE_TOLERANCE = np.radians(15.0)
# 夹角在此范围之外的两个矢量视为共线
_COLLINEAR_ANGLE = np.radians(20.0)


def validate_positions(positions) -> np.ndarray:
    """校验原子坐标：非空、形状 (N, 3)、全部有限。"""
    if positions is None:
        raise StructureError("缺少原子坐标")
    positions = np.asarray(positions, dtype=np.float64)
    if positions.ndim != 2 or positions.shape[1] != 3:
        raise StructureError(f"原子坐标必须为 (N, 3)，当前形状: {positions.shape}")
    if positions.shape[0] == 0:
        raise StructureError("原子数为零")
    if not np.all(np.isfinite(positions)):
        raise StructureError("原子坐标包含无效值")
    return positions


@dataclass(frozen=True, eq=False)
class StructureIdentification:
    """结构识别结果

    Attributes
    ----------
    structure_types : numpy.ndarray
        结构类型 (N,)，取值为 :class:`LatticeFamily`，0 表示未识别
    orientations : numpy.ndarray
        局部取向矩阵 (N, 3, 3)，满足 :math:`\\mathbf{d}_k \\approx \\mathbf{R}\\,\\mathbf{t}_k`
    neighbors : numpy.ndarray
        近邻原子索引 (N, W)，``-1`` 表示无效项
    template_slots : numpy.ndarray
        对应的模板槽位索引 (N, W)，``-1`` 表示无效项
    """

    structure_types: np.ndarray
    orientations: np.ndarray
    neighbors: np.ndarray
    template_slots: np.ndarray

    def __post_init__(self) -> None:
        types = np.asarray(self.structure_types, dtype=np.int64)
        orientations = np.asarray(self.orientations, dtype=np.float64)
        neighbors = np.asarray(self.neighbors, dtype=np.int64)
        slots = np.asarray(self.template_slots, dtype=np.int64)

        if types.ndim != 1:
            raise StructureError(f"structure_types 必须为一维数组，当前形状: {types.shape}")
        n = types.shape[0]
        if orientations.shape != (n, 3, 3):
            raise StructureError(
                f"orientations 形状应为 ({n}, 3, 3)，当前: {orientations.shape}"
            )
        if neighbors.ndim != 2 or neighbors.shape[0] != n:
            raise StructureError(f"neighbors 形状应为 ({n}, W)，当前: {neighbors.shape}")
        if slots.shape != neighbors.shape:
            raise StructureError(
                f"template_slots 形状 {slots.shape} 与 neighbors {neighbors.shape} 不一致"
            )
        if np.any(neighbors >= n) or np.any(neighbors < -1):
            raise StructureError("neighbors 中存在越界的原子索引")
        if np.any(slots < -1):
            raise StructureError("template_slots 中存在非法的槽位索引")
        valid_types = {int(f) for f in LatticeFamily}
        if not set(np.unique(types).tolist()) <= valid_types:
            raise StructureError("structure_types 中存在未知的结构类型")

        for name, arr in (
            ("structure_types", types),
            ("orientations", orientations),
            ("neighbors", neighbors),
            ("template_slots", slots),
        ):
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @property
    def num_atoms(self) -> int:
        """原子数。"""
        return int(self.structure_types.shape[0])

    @property
    def width(self) -> int:
        """对应表每行的项数 W。"""
        return int(self.neighbors.shape[1])

    def valid_entries(self) -> np.ndarray:
        """有效对应项的布尔掩码 (N, W)，不含指向自身的项。"""
        rows = np.arange(self.num_atoms)[:, None]
        return (self.neighbors >= 0) & (self.template_slots >= 0) & (self.neighbors != rows)

    def check_compatible(self, num_atoms: int, lattice: ReferenceLattice) -> None:
        """检查与原子数、参考模板是否匹配

        Raises
        ------
        StructureError
            原子数不一致或槽位索引超出模板大小
        """
        if self.num_atoms != num_atoms:
            raise StructureError(
                f"识别结果包含 {self.num_atoms} 个原子，坐标为 {num_atoms} 个"
            )
        if np.any(self.template_slots >= lattice.num_neighbors):
            raise StructureError(
                f"template_slots 超出 {lattice.family.name} 模板大小 {lattice.num_neighbors}"
            )

    def to_dict(self) -> dict[str, np.ndarray]:
        """导出为数组字典，键名与 ``.npz`` 快照一致。"""
        return {
            "structure_types": np.array(self.structure_types),
            "orientations": np.array(self.orientations),
            "neighbors": np.array(self.neighbors),
            "template_slots": np.array(self.template_slots),
        }


def _periodic_shifts(cell: SimulationCell) -> np.ndarray:
    ranges = [(-1, 0, 1) if flag else (0,) for flag in cell.pbc]
    shifts = np.array(
        [(i, j, k) for i in ranges[0] for j in ranges[1] for k in ranges[2]],
        dtype=np.float64,
    )
    # 零平移排在首位，同距离时优先选原胞内的原子
    order = np.argsort(np.abs(shifts).sum(axis=1), kind="stable")
    return shifts[order] @ cell.cell_vectors


def _candidate_neighbors(positions, cell, count):
    """每个原子最近的 ``count`` 个候选近邻（去除自身，每个原子只保留最近镜像）"""
    n = positions.shape[0]
    offsets = _periodic_shifts(cell)
    images = (positions[None, :, :] + offsets[:, None, :]).reshape(-1, 3)
    k = min(images.shape[0], count * len(offsets) + 1)
    tree = cKDTree(images)
    _, idx = tree.query(positions, k=k)
    idx = np.atleast_2d(idx).reshape(n, -1)

    candidates = []
    for i in range(n):
        owner = idx[i] % n
        keep = owner != i
        owner = owner[keep]
        image = idx[i][keep]
        _, first = np.unique(owner, return_index=True)
        first = np.sort(first)[:count]
        vectors = images[image[first]] - positions[i]
        candidates.append((owner[first], vectors))
    return candidates


def _match_atom(vectors, lattice, variants, scale):
    """在全部对称变体下做最优指派，返回 (变体索引, 槽位→候选索引, 偏差)"""
    m = lattice.num_neighbors
    best = None
    for v, frame in enumerate(variants):
        slots = lattice.vectors @ frame.T
        cost = np.sum((vectors[:, None, :] - slots[None, :, :]) ** 2, axis=-1)
        rows, cols = linear_sum_assignment(cost)
        total = round(float(cost[rows, cols].sum()) / scale**2, 9)
        if best is None or total < best[0]:
            assigned = np.full(m, -1, dtype=np.int64)
            assigned[cols] = rows
            deviation = np.full(m, np.inf)
            deviation[cols] = np.sqrt(cost[rows, cols]) / np.linalg.norm(slots[cols], axis=1)
            best = (total, v, assigned, deviation)
            if total == 0.0:
                break
    return best[1], best[2], best[3]


def _angle(a, b) -> float:
    cos = np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b))
    return float(np.arccos(np.clip(cos, -1.0, 1.0)))


def _local_seeds(vectors, lattice, reference, max_deviation):
    """由原子自身近邻推断候选取向

    取最近的候选矢量 d1 与第一个与之不共线的候选矢量 d2，对长度与夹角都相符的
    每个模板矢量对 (t_p, t_q) 求 :math:`\\mathbf{R}` 使 ``d ≈ R t``。每个候选取向
    换成与 ``reference`` 最接近的对称等价表示，并去除重复项。

    Returns
    -------
    numpy.ndarray
        候选取向 (S, 3, 3)，可能为空
    """
    if len(vectors) < 2:
        return np.zeros((0, 3, 3))
    d1 = vectors[0]
    d2 = next(
        (
            v
            for v in vectors[1:]
            if _COLLINEAR_ANGLE < _angle(d1, v) < np.pi - _COLLINEAR_ANGLE
        ),
        None,
    )
    if d2 is None:
        return np.zeros((0, 3, 3))

    t = lattice.vectors
    lengths = np.linalg.norm(t, axis=1)
    target = _angle(d1, d2)
    first = np.nonzero(np.abs(lengths - np.linalg.norm(d1)) <= max_deviation * lengths)[0]
    second = np.nonzero(np.abs(lengths - np.linalg.norm(d2)) <= max_deviation * lengths)[0]

    seeds = []
    for p in first:
        for q in second:
            if p == q or abs(_angle(t[p], t[q]) - target) > _PAIR_ANGLE_TOLERANCE:
                continue
            rotation, _ = Rotation.align_vectors(np.array([d1, d2]), t[[p, q]])
            R = rotation.as_matrix()
            k, _ = lattice.closest_rotation(R.T @ reference)
            R = R @ lattice.rotations[int(k)]
            if all(rotation_angle(S.T @ R) > 1e-3 for S in seeds):
                seeds.append(R)
    return np.array(seeds).reshape(-1, 3, 3)


def identify_structures(
    positions,
    cell: SimulationCell,
    lattice: ReferenceLattice,
    seed_orientations=None,
    max_deviation: float = 0.3,
    rmsd_cutoff: float = 0.10,
) -> StructureIdentification:
    """参考模板匹配器

    Parameters
    ----------
    positions : array_like
        原子坐标 (N, 3)
    cell : SimulationCell
        模拟晶胞
    lattice : ReferenceLattice
        参考晶格
    seed_orientations : array_like, optional
        种子取向 (3, 3) 或 (P, 3, 3)，默认恒等。变体按 ``(种子, 对称转动)``
        顺序枚举，平局取索引最小者
    max_deviation : float, optional
        单个槽位允许的相对偏差 :math:`|\\mathbf{d}-\\mathbf{t}|/|\\mathbf{t}|`
    rmsd_cutoff : float, optional
        细化取向后的相对 RMSD 上限（以最近邻距离归一化）

    Returns
    -------
    StructureIdentification
        识别结果，对应表宽度等于模板大小，第 k 列对应槽位 k
    """
    positions = validate_positions(positions)
    if cell is None:
        raise StructureError("缺少模拟晶胞")
    n = positions.shape[0]
    m = lattice.num_neighbors

    if seed_orientations is None:
        seeds = np.eye(3)[None]
    else:
        seeds = np.asarray(seed_orientations, dtype=np.float64).reshape(-1, 3, 3)
    variants = (seeds[:, None, :, :] @ lattice.rotations[None, :, :, :]).reshape(-1, 3, 3)

    scale = lattice.nearest_neighbor_distance
    types = np.zeros(n, dtype=np.int64)
    orientations = np.tile(seeds[0], (n, 1, 1))
    neighbors = np.full((n, m), -1, dtype=np.int64)
    slots = np.full((n, m), -1, dtype=np.int64)

    for i, (owners, vectors) in enumerate(_candidate_neighbors(positions, cell, 2 * m)):
        if len(owners) == 0:
            continue
        v, assigned, deviation = _match_atom(vectors, lattice, variants, scale)
        frame = variants[v]
        matched = (assigned >= 0) & (deviation <= max_deviation)
        if not np.all(matched):
            local = _local_seeds(vectors, lattice, seeds[0], max_deviation)
            if len(local):
                lv, l_assigned, l_deviation = _match_atom(vectors, lattice, local, scale)
                l_matched = (l_assigned >= 0) & (l_deviation <= max_deviation)
                if np.all(l_matched):
                    frame, assigned, matched = local[lv], l_assigned, l_matched
        orientations[i] = frame
        neighbors[i, matched] = owners[assigned[matched]]
        slots[i, matched] = np.nonzero(matched)[0]
        if not np.all(matched):
            continue

        observed = vectors[assigned]
        rotation, _ = Rotation.align_vectors(observed, lattice.vectors)
        refined = rotation.as_matrix()
        residual = observed - lattice.vectors @ refined.T
        rmsd = np.sqrt(np.mean(np.sum(residual**2, axis=1))) / scale
        orientations[i] = refined
        if rmsd <= rmsd_cutoff:
            types[i] = int(lattice.family)

    labelled = int(np.count_nonzero(types))
    if labelled == 0:
        logger.warning(
            f"模板匹配未识别出任何 {lattice.family.name} 原子，请检查晶格族、晶格常数与晶胞"
        )
    else:
        logger.debug(f"模板匹配: {labelled}/{n} 个原子识别为 {lattice.family.name}")
    return StructureIdentification(
        structure_types=types,
        orientations=orientations,
        neighbors=neighbors,
        template_slots=slots,
    )
