"""
pytest配置文件 - 提供全局fixtures和测试配置
"""

import numpy as np
import pytest

from latticestrain.core.crystalline_structures import CrystallineStructureBuilder
from latticestrain.core.lattice import build_reference_lattice
from latticestrain.elastic.identification import StructureIdentification

BCC_A = 1.63


def _lookup_identification(positions, cell, lattice, orientation=None, tol=1e-6):
    """按理想模板精确查找近邻，构造识别结果

    仅用于未形变的理想快照：槽位 k 对应位置 ``x_i + R t_k`` 处的原子，
    全部槽位都找到的原子标记为目标晶格族。
    """
    positions = np.asarray(positions, dtype=np.float64)
    n = len(positions)
    m = lattice.num_neighbors
    R = np.eye(3) if orientation is None else np.asarray(orientation, dtype=np.float64)
    expected = lattice.vectors @ R.T
    neighbors = np.full((n, m), -1, dtype=np.int64)
    slots = np.full((n, m), -1, dtype=np.int64)
    for i in range(n):
        d = cell.minimum_image(positions - positions[i])
        dist = np.linalg.norm(d[None, :, :] - expected[:, None, :], axis=-1)
        j = np.argmin(dist, axis=1)
        hit = dist[np.arange(m), j] < tol * lattice.lattice_constant
        neighbors[i, hit] = j[hit]
        slots[i, hit] = np.nonzero(hit)[0]
    types = np.where(np.all(slots >= 0, axis=1), int(lattice.family), 0)
    return StructureIdentification(
        structure_types=types,
        orientations=np.tile(R, (n, 1, 1)),
        neighbors=neighbors,
        template_slots=slots,
    )


def _slot_of(lattice, vector):
    return int(np.argmin(np.linalg.norm(lattice.vectors - np.asarray(vector), axis=1)))


def _rot_z(degrees):
    t = np.radians(degrees)
    c, s = np.cos(t), np.sin(t)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


@pytest.fixture
def lookup_identification():
    """精确模板查找函数 ``(positions, cell, lattice, orientation=None)``"""
    return _lookup_identification


@pytest.fixture
def slot_of():
    """返回与给定矢量最接近的模板槽位索引的函数"""
    return _slot_of


@pytest.fixture
def rot_z():
    """绕 z 轴转动矩阵（角度制）的函数"""
    return _rot_z


@pytest.fixture
def builder():
    """周期性晶体生成器"""
    return CrystallineStructureBuilder()


@pytest.fixture
def bcc_lattice():
    """BCC 参考晶格，a = 1.63"""
    return build_reference_lattice("bcc", BCC_A)


@pytest.fixture
def bcc_snapshot(builder):
    """4x4x4 周期性理想 BCC 快照 (128 个原子)"""
    return builder.create_bcc(BCC_A, (4, 4, 4))


@pytest.fixture
def bcc_identification(bcc_snapshot, bcc_lattice):
    """理想 BCC 快照的精确识别结果"""
    positions, cell = bcc_snapshot
    return _lookup_identification(positions, cell, bcc_lattice)


@pytest.fixture
def general_deformation():
    """一般（非对称）的小形变梯度：小转动乘以对称伸长"""
    stretch = np.identity(3) + np.array(
        [[0.010, 0.004, -0.003], [0.004, -0.006, 0.002], [-0.003, 0.002, 0.015]]
    )
    return _rot_z(4.0) @ stretch
