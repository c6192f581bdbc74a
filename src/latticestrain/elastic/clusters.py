#!/usr/bin/env python3
r"""
团簇图构建模块

把结构识别给出的逐原子取向与近邻对应表，归并为取向一致的原子团簇，
并记录相邻团簇之间的取向转变（晶界取向差）。

算法
----
1. **键枚举**：原子 i 的对应表列出 j（有效槽位），且 j 的对应表列出 i，
   两者均为目标晶格族时，(i, j) 构成一条键 (``i < j``)。键按
   ``(i, 槽位)`` 升序处理。
2. **一致性检验**（分块并行）：键矢量先经最小镜像折叠，再检查

   .. math::
       \angle(\mathbf{d}, \mathbf{R}_i\mathbf{t}_{s_{ij}}) < \theta_b,\qquad
       \angle(-\mathbf{d}, \mathbf{R}_j\mathbf{t}_{s_{ji}}) < \theta_b,\qquad
       \min_k \angle(\mathbf{R}_i^{T}\mathbf{R}_j,\ \mathbf{S}_k) < \theta_o

3. **归并**（顺序执行）：带权并查集，每个原子记录把自身坐标系映射到父节点
   坐标系的对称转动索引，:math:`\mathbf{R}_x \approx \mathbf{R}_{p(x)}\mathbf{S}_{o(x)}`。
   集合的根总是其最小原子索引。同一集合内组合索引不一致的键闭合了矛盾回路，
   被标记为不一致键。
4. **定型**：至少两个原子的集合成为晶体团簇，其余原子成为 ``NONE`` 型单原子团簇；
   团簇编号按最小成员索引连续分配。团簇取向取根原子取向在对称等价类中
   最接近偏好取向者。
5. **转变**：未归并、两端属于不同晶体团簇的键记录

   .. math::
       \mathbf{M} = \mathbf{S}_{b_i}\mathbf{R}_i^{T}\mathbf{R}_j\mathbf{S}_{b_j}^{T}

   同一团簇对的首条键定义转变边；之后取向一致的键累加 ``bond_count``，
   不一致的键被标记。被标记的键同时从团簇、转变与应变拟合中排除。

Classes
-------
Cluster
    团簇
ClusterTransition
    团簇间取向转变
ClusterGraph
    冻结的团簇图
ClusterGraphBuilder
    团簇图构建器
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from latticestrain.core.lattice import (
    LatticeFamily,
    ReferenceLattice,
    orthonormalize,
    rotation_angle,
)
from latticestrain.core.structure import SimulationCell
from latticestrain.elastic.identification import StructureIdentification
from latticestrain.utils.exceptions import AnalysisCancelledError
from latticestrain.utils.utils import map_chunks

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Cluster:
    """原子团簇

    Attributes
    ----------
    id : int
        团簇编号
    structure_type : LatticeFamily
        结构类型；单原子团簇为 ``NONE``
    orientation : numpy.ndarray
        团簇晶格坐标系的取向矩阵 (3, 3)
    members : numpy.ndarray
        升序排列的成员原子索引
    symmetry_index : int
        为贴近偏好取向而选取的对称分支
    """

    id: int
    structure_type: LatticeFamily
    orientation: np.ndarray
    members: np.ndarray
    symmetry_index: int = 0

    @property
    def size(self) -> int:
        return int(self.members.shape[0])

    @property
    def is_crystalline(self) -> bool:
        return self.structure_type != LatticeFamily.NONE


@dataclass(frozen=True, eq=False)
class ClusterTransition:
    """两个晶体团簇之间的取向转变

    ``matrix`` 把团簇 B 的晶格坐标系映射到团簇 A 的晶格坐标系，
    ``misorientation`` 为对称约化后的最小转动角（弧度）。
    """

    cluster_a: int
    cluster_b: int
    matrix: np.ndarray
    bond_count: int
    misorientation: float
    axis: np.ndarray

    @property
    def misorientation_deg(self) -> float:
        return float(np.degrees(self.misorientation))


@dataclass(frozen=True, eq=False)
class ClusterGraph:
    """冻结的团簇图

    Attributes
    ----------
    clusters : tuple of Cluster
        全部团簇（含单原子团簇），按编号排列
    transitions : tuple of ClusterTransition
        团簇转变边，按 ``(cluster_a, cluster_b)`` 升序
    atom_clusters : numpy.ndarray
        每个原子所属团簇编号 (N,)
    atom_symmetry : numpy.ndarray
        每个原子的对称分支 (N,)，满足 :math:`\\mathbf{R}_i \\approx \\mathbf{O}_C\\mathbf{S}_{b_i}`
    excluded : numpy.ndarray
        因不一致键而从拟合中排除的对应项 (N, W)
    inconsistent_bonds : numpy.ndarray
        被标记的键 (B, 2)，每行 ``(i, j)`` 且 ``i < j``
    """

    clusters: tuple
    transitions: tuple
    atom_clusters: np.ndarray
    atom_symmetry: np.ndarray
    excluded: np.ndarray
    inconsistent_bonds: np.ndarray

    @property
    def num_clusters(self) -> int:
        """晶体团簇数（不含单原子团簇）。"""
        return sum(1 for c in self.clusters if c.is_crystalline)

    @property
    def num_singletons(self) -> int:
        return sum(1 for c in self.clusters if not c.is_crystalline)

    @property
    def num_transitions(self) -> int:
        return len(self.transitions)

    @property
    def num_inconsistent_bonds(self) -> int:
        return int(self.inconsistent_bonds.shape[0])

    @property
    def crystalline_clusters(self) -> list[Cluster]:
        return [c for c in self.clusters if c.is_crystalline]

    @property
    def cluster_orientations(self) -> np.ndarray:
        """全部团簇的取向 (C, 3, 3)。"""
        if not self.clusters:
            return np.zeros((0, 3, 3))
        return np.stack([c.orientation for c in self.clusters])

    @property
    def crystalline_mask(self) -> np.ndarray:
        """原子是否属于晶体团簇 (N,)。"""
        flags = np.array([c.is_crystalline for c in self.clusters], dtype=bool)
        return flags[self.atom_clusters]

    def transition(self, cluster_a: int, cluster_b: int) -> ClusterTransition | None:
        """查找两个团簇之间的转变边，方向无关。"""
        a, b = sorted((int(cluster_a), int(cluster_b)))
        for t in self.transitions:
            if t.cluster_a == a and t.cluster_b == b:
                return t
        return None


class _OrientationUnionFind:
    """带对称转动偏移的并查集

    ``find`` 返回 ``(root, op)``，满足 :math:`\\mathbf{R}_x \\approx \\mathbf{R}_{root}\\mathbf{S}_{op}`。
    不使用按秩合并，根总是集合内最小的原子索引。
    """

    MERGED = 0
    SAME = 1
    CONFLICT = 2

    def __init__(self, n: int, product_table: np.ndarray, inverse_table: np.ndarray):
        self.parent = list(range(n))
        self.offset = [0] * n
        self.product = product_table.tolist()
        self.inverse = inverse_table.tolist()

    def find(self, x: int) -> tuple[int, int]:
        path = []
        while self.parent[x] != x:
            path.append(x)
            x = self.parent[x]
        root = x
        acc = 0
        for node in reversed(path):
            acc = self.product[acc][self.offset[node]]
            self.offset[node] = acc
            self.parent[node] = root
        return root, (self.offset[path[0]] if path else 0)

    def union(self, i: int, j: int, s: int) -> int:
        """合并满足 :math:`\\mathbf{R}_j \\approx \\mathbf{R}_i\\mathbf{S}_s` 的两个原子"""
        ri, ti = self.find(i)
        rj, tj = self.find(j)
        rel = self.product[self.product[ti][s]][self.inverse[tj]]
        if ri == rj:
            return self.SAME if rel == 0 else self.CONFLICT
        if ri < rj:
            self.parent[rj] = ri
            self.offset[rj] = rel
        else:
            self.parent[ri] = rj
            self.offset[ri] = self.inverse[rel]
        return self.MERGED


def _vector_angle(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """逐行计算两组矢量的夹角（弧度），零长度矢量返回 π。"""
    na = np.linalg.norm(a, axis=-1)
    nb = np.linalg.norm(b, axis=-1)
    denom = na * nb
    cos = np.divide(
        np.sum(a * b, axis=-1), denom, out=np.full(denom.shape, -1.0), where=denom > 0.0
    )
    return np.arccos(np.clip(cos, -1.0, 1.0))


class ClusterGraphBuilder:
    """团簇图构建器

    Parameters
    ----------
    lattice : ReferenceLattice
        参考晶格（目标晶格族）
    orientation_tolerance : float, optional
        取向一致性角度容差（弧度），默认 10°
    bond_tolerance : float, optional
        键方向角度容差（弧度），默认 25°
    preferred_orientations : array_like, optional
        偏好取向 (3, 3) 或 (P, 3, 3)，默认恒等
    num_workers : int, optional
        一致性检验的线程数
    chunk_size : int, optional
        每个并行任务处理的键数
    cancel_event : threading.Event, optional
        取消标志

    Examples
    --------
    >>> builder = ClusterGraphBuilder(lattice)
    >>> graph = builder.build(positions, cell, identification)
    >>> graph.num_clusters
    1
    """

    CANCEL_CHECK_INTERVAL = 16384

    def __init__(
        self,
        lattice: ReferenceLattice,
        orientation_tolerance: float = np.radians(10.0),
        bond_tolerance: float = np.radians(25.0),
        preferred_orientations=None,
        num_workers: int = 1,
        chunk_size: int = 4096,
        cancel_event=None,
    ):
        self.lattice = lattice
        self.orientation_tolerance = float(orientation_tolerance)
        self.bond_tolerance = float(bond_tolerance)
        if preferred_orientations is None:
            preferred_orientations = np.eye(3)
        self.preferred_orientations = np.asarray(
            preferred_orientations, dtype=np.float64
        ).reshape(-1, 3, 3)
        self.num_workers = num_workers
        self.chunk_size = chunk_size
        self.cancel_event = cancel_event

    def _check_cancel(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise AnalysisCancelledError("分析已取消")

    # --------- 键枚举 ---------
    def enumerate_bonds(
        self, identification: StructureIdentification, crystalline: np.ndarray
    ) -> dict[str, np.ndarray]:
        """枚举双向有效且两端均为晶体原子的键

        Returns
        -------
        dict
            键数组 ``i, j, slot_ij, slot_ji, entry_ij, entry_ji``，按 ``(i, slot_ij, j)`` 排序
        """
        n = identification.num_atoms
        valid = identification.valid_entries()
        rows, cols = np.nonzero(valid)
        names = ("i", "j", "slot_ij", "slot_ji", "entry_ij", "entry_ji")
        if len(rows) == 0:
            return {k: np.zeros(0, dtype=np.int64) for k in names}
        nbrs = identification.neighbors[rows, cols]
        slots = identification.template_slots[rows, cols]

        # 每个有向对取槽位最小的首个对应项
        order = np.lexsort((cols, slots, rows))
        rows, cols, nbrs, slots = rows[order], cols[order], nbrs[order], slots[order]
        keys = rows * n + nbrs
        unique_keys, first = np.unique(keys, return_index=True)

        r, c, j, s = rows[first], cols[first], nbrs[first], slots[first]
        reverse_keys = j * n + r
        pos = np.minimum(np.searchsorted(unique_keys, reverse_keys), len(unique_keys) - 1)
        mutual = (r < j) & crystalline[r] & crystalline[j] & (unique_keys[pos] == reverse_keys)

        idx = np.nonzero(mutual)[0]
        back = first[pos[idx]]
        values = (r[idx], j[idx], s[idx], slots[back], c[idx], cols[back])
        bonds = dict(zip(names, values, strict=True))
        order = np.lexsort((bonds["j"], bonds["slot_ij"], bonds["i"]))
        return {k: v[order].astype(np.int64) for k, v in bonds.items()}

    # --------- 一致性检验 ---------
    def _evaluate_bonds(self, positions, cell, orientations, bonds):
        total = len(bonds["i"])
        vectors = self.lattice.vectors

        def _chunk(start, stop):
            i = bonds["i"][start:stop]
            j = bonds["j"][start:stop]
            d = cell.minimum_image(positions[j] - positions[i])
            ri = orientations[i]
            rj = orientations[j]
            ei = np.einsum("nab,nb->na", ri, vectors[bonds["slot_ij"][start:stop]])
            ej = np.einsum("nab,nb->na", rj, vectors[bonds["slot_ji"][start:stop]])
            geometric = (_vector_angle(d, ei) < self.bond_tolerance) & (
                _vector_angle(-d, ej) < self.bond_tolerance
            )
            delta = np.einsum("nba,nbc->nac", ri, rj)
            sym, residual = self.lattice.closest_rotation(delta)
            return geometric, sym, residual < self.orientation_tolerance

        parts = map_chunks(
            _chunk, total, self.chunk_size, self.num_workers, self.cancel_event
        )
        if not parts:
            empty = np.zeros(0, dtype=bool)
            return empty, np.zeros(0, dtype=np.int64), empty
        geometric = np.concatenate([p[0] for p in parts])
        sym = np.concatenate([np.atleast_1d(p[1]) for p in parts]).astype(np.int64)
        aligned = np.concatenate([p[2] for p in parts])
        return geometric, sym, aligned

    # --------- 定型 ---------
    def _choose_branches(self, bases: np.ndarray) -> np.ndarray:
        """为每个团簇选取最接近偏好取向的对称分支"""
        candidates = bases[:, None, :, :] @ self.lattice.rotations[None, :, :, :]
        traces = np.einsum("pab,ckab->ckp", self.preferred_orientations, candidates)
        angles = np.arccos(np.clip(0.5 * (traces - 1.0), -1.0, 1.0)).min(axis=-1)
        return np.argmin(np.round(angles, 9), axis=-1)

    def build(
        self, positions, cell: SimulationCell, identification: StructureIdentification
    ) -> ClusterGraph:
        """构建团簇图

        Parameters
        ----------
        positions : numpy.ndarray
            原子坐标 (N, 3)，只读
        cell : SimulationCell
            模拟晶胞，仅用于最小镜像折叠
        identification : StructureIdentification
            结构识别结果

        Returns
        -------
        ClusterGraph
            冻结的团簇图

        Raises
        ------
        AnalysisCancelledError
            取消标志被置位
        """
        lattice = self.lattice
        n = identification.num_atoms
        orientations = identification.orientations
        crystalline = identification.structure_types == int(lattice.family)

        bonds = self.enumerate_bonds(identification, crystalline)
        num_bonds = len(bonds["i"])
        logger.debug(f"枚举到 {num_bonds} 条候选键")
        geometric, sym, aligned = self._evaluate_bonds(
            positions, cell, orientations, bonds
        )
        consistent = geometric & aligned

        # 顺序归并
        uf = _OrientationUnionFind(n, lattice.product_table, lattice.inverse_table)
        merged = np.zeros(num_bonds, dtype=bool)
        flagged = []
        bi, bj = bonds["i"].tolist(), bonds["j"].tolist()
        for count, b in enumerate(np.nonzero(consistent)[0].tolist()):
            if count % self.CANCEL_CHECK_INTERVAL == 0:
                self._check_cancel()
            status = uf.union(bi[b], bj[b], int(sym[b]))
            if status == uf.CONFLICT:
                flagged.append(b)
                logger.debug(f"键 ({bi[b]}, {bj[b]}) 闭合了取向矛盾回路")
            else:
                merged[b] = True
        self._check_cancel()

        roots = np.empty(n, dtype=np.int64)
        ops = np.empty(n, dtype=np.int64)
        for x in range(n):
            roots[x], ops[x] = uf.find(x)

        unique_roots, atom_clusters = np.unique(roots, return_inverse=True)
        sizes = np.bincount(atom_clusters)
        is_crystal = (sizes >= 2) & crystalline[unique_roots]

        # 团簇取向与对称分支
        num_total = len(unique_roots)
        cluster_orient = np.tile(np.eye(3), (num_total, 1, 1))
        branch_of = np.zeros(num_total, dtype=np.int64)
        crystal_ids = np.nonzero(is_crystal)[0]
        if len(crystal_ids):
            bases = orthonormalize(orientations[unique_roots[crystal_ids]])
            choice = self._choose_branches(bases)
            cluster_orient[crystal_ids] = bases @ lattice.rotations[choice]
            branch_of[crystal_ids] = choice

        in_crystal = is_crystal[atom_clusters]
        atom_symmetry = np.zeros(n, dtype=np.int64)
        atom_symmetry[in_crystal] = lattice.inverse_table[branch_of[atom_clusters[in_crystal]]]
        atom_symmetry[in_crystal] = lattice.product_table[
            atom_symmetry[in_crystal], ops[in_crystal]
        ]

        members_sorted = np.argsort(atom_clusters, kind="stable")
        splits = np.cumsum(sizes)[:-1]
        clusters = tuple(
            Cluster(
                id=int(cid),
                structure_type=lattice.family if is_crystal[cid] else LatticeFamily.NONE,
                orientation=cluster_orient[cid],
                members=members,
                symmetry_index=int(branch_of[cid]),
            )
            for cid, members in enumerate(np.split(members_sorted, splits))
        )

        # 团簇转变
        transitions, more_flags = self._collect_transitions(
            bonds, geometric, merged, flagged, atom_clusters, is_crystal,
            atom_symmetry, orientations,
        )
        flagged = sorted(set(flagged) | set(more_flags))

        inconsistent = np.stack(
            [bonds["i"][flagged], bonds["j"][flagged]], axis=1
        ) if flagged else np.zeros((0, 2), dtype=np.int64)
        excluded = self._exclusion_mask(identification, inconsistent)

        graph = ClusterGraph(
            clusters=clusters,
            transitions=transitions,
            atom_clusters=atom_clusters.astype(np.int64),
            atom_symmetry=atom_symmetry,
            excluded=excluded,
            inconsistent_bonds=inconsistent.astype(np.int64),
        )
        for arr in (graph.atom_clusters, graph.atom_symmetry, graph.excluded):
            arr.setflags(write=False)
        logger.info(
            f"团簇图: {graph.num_clusters} 个晶体团簇, {graph.num_singletons} 个单原子团簇, "
            f"{graph.num_transitions} 条转变, {graph.num_inconsistent_bonds} 条不一致键"
        )
        return graph

    def _collect_transitions(
        self, bonds, geometric, merged, flagged, atom_clusters, is_crystal,
        atom_symmetry, orientations,
    ):
        lattice = self.lattice
        flagged = set(flagged)
        ca = atom_clusters[bonds["i"]]
        cb = atom_clusters[bonds["j"]]
        candidates = geometric & ~merged & is_crystal[ca] & is_crystal[cb]
        candidates &= ~np.isin(np.arange(len(merged)), list(flagged))

        edges: dict[tuple[int, int], list] = {}
        new_flags = []
        for count, b in enumerate(np.nonzero(candidates)[0].tolist()):
            if count % self.CANCEL_CHECK_INTERVAL == 0:
                self._check_cancel()
            i, j = int(bonds["i"][b]), int(bonds["j"][b])
            a, c = int(ca[b]), int(cb[b])
            if a == c:
                # 同一团簇内取向不符的键
                new_flags.append(b)
                logger.debug(f"键 ({i}, {j}) 与所在团簇的取向不一致")
                continue
            si = lattice.rotations[atom_symmetry[i]]
            sj = lattice.rotations[atom_symmetry[j]]
            matrix = orthonormalize(si @ orientations[i].T @ orientations[j] @ sj.T)
            if a > c:
                a, c = c, a
                matrix = matrix.T
            edge = edges.get((a, c))
            if edge is None:
                edges[(a, c)] = [matrix, 1]
            elif float(rotation_angle(edge[0].T @ matrix)) < self.orientation_tolerance:
                edge[1] += 1
            else:
                new_flags.append(b)
                logger.debug(f"键 ({i}, {j}) 与团簇 {a}-{c} 已有转变的取向不一致")

        transitions = []
        for (a, c), (matrix, count) in sorted(edges.items()):
            angle, axis, _ = lattice.misorientation(matrix)
            transitions.append(
                ClusterTransition(
                    cluster_a=a,
                    cluster_b=c,
                    matrix=matrix,
                    bond_count=count,
                    misorientation=angle,
                    axis=axis,
                )
            )
        return tuple(transitions), new_flags

    @staticmethod
    def _exclusion_mask(identification, inconsistent) -> np.ndarray:
        n = identification.num_atoms
        excluded = np.zeros(identification.neighbors.shape, dtype=bool)
        if len(inconsistent) == 0:
            return excluded
        i, j = inconsistent[:, 0], inconsistent[:, 1]
        keys = np.concatenate([i * n + j, j * n + i])
        rows = np.arange(n)[:, None]
        entry_keys = rows * n + identification.neighbors
        excluded = np.isin(entry_keys, keys) & identification.valid_entries()
        return excluded
