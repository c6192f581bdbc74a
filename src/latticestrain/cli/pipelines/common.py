"""CLI 场景通用工具

提供快照读取、合成快照构建与服务拼装等工具函数，供场景流水线复用
（synthetic/snapshot）。

Notes
-----
这些函数面向 CLI 级别的拼装逻辑，避免在核心库中引入场景耦合。
"""

from __future__ import annotations

import logging

import numpy as np

from ...core.config import ConfigManager, ElasticStrainConfig
from ...core.crystalline_structures import CrystallineStructureBuilder
from ...core.structure import SimulationCell
from ...elastic.deformation import Deformer
from ...elastic.identification import StructureIdentification
from ...elastic.service import ElasticStrainService
from ...utils.exceptions import StructureError

logger = logging.getLogger(__name__)

IDENTIFICATION_KEYS = ("structure_types", "orientations", "neighbors", "template_slots")


def load_snapshot(
    path: str,
) -> tuple[np.ndarray, SimulationCell, StructureIdentification | None]:
    """读取 ``.npz`` 快照

    必需数组 ``positions`` (N, 3) 与 ``cell`` (3, 3)；可选 ``pbc`` (3,)，
    以及全部四个识别数组（``structure_types``、``orientations``、
    ``neighbors``、``template_slots``）。

    Returns
    -------
    tuple
        ``(positions, cell, identification)``，缺少识别数组时 identification 为 ``None``

    Raises
    ------
    StructureError
        缺少必需数组或只给出部分识别数组
    """
    with np.load(path) as data:
        missing = [k for k in ("positions", "cell") if k not in data]
        if missing:
            raise StructureError(f"快照 {path} 缺少数组: {missing}")
        positions = np.array(data["positions"], dtype=np.float64)
        pbc = tuple(bool(x) for x in data["pbc"]) if "pbc" in data else (True, True, True)
        cell = SimulationCell(np.array(data["cell"], dtype=np.float64), pbc=pbc)
        present = [k for k in IDENTIFICATION_KEYS if k in data]
        identification = None
        if present:
            if len(present) != len(IDENTIFICATION_KEYS):
                raise StructureError(
                    f"识别数组不完整: 仅有 {present}，需要 {list(IDENTIFICATION_KEYS)}"
                )
            identification = StructureIdentification(
                **{k: np.array(data[k]) for k in IDENTIFICATION_KEYS}
            )
    logger.info(
        f"读取快照 {path}: {len(positions)} 个原子, pbc={cell.pbc}, "
        f"{'含' if identification is not None else '不含'}识别结果"
    )
    return positions, cell, identification


def save_snapshot(path: str, positions, cell: SimulationCell, identification=None) -> None:
    """把快照写为 ``.npz``，格式与 :func:`load_snapshot` 对应。"""
    arrays = {
        "positions": np.asarray(positions, dtype=np.float64),
        "cell": cell.cell_vectors,
        "pbc": np.array(cell.pbc, dtype=bool),
    }
    if identification is not None:
        arrays.update(identification.to_dict())
    np.savez(path, **arrays)


def deformation_from_config(cfg: ConfigManager) -> np.ndarray | None:
    """读取合成快照的均匀形变

    ``synthetic.deformation`` 为 3×3 形变梯度，或 ``synthetic.strain_voigt``
    为 6 分量 Voigt 小应变（剪切为工程剪应变）；两者都未给出时返回 ``None``。
    """
    matrix = cfg.get("synthetic.deformation", None)
    voigt = cfg.get("synthetic.strain_voigt", None)
    if matrix is not None and voigt is not None:
        raise ValueError("synthetic.deformation 与 synthetic.strain_voigt 只能给出一个")
    if matrix is not None:
        F = np.asarray(matrix, dtype=np.float64)
        if F.shape != (3, 3):
            raise ValueError(f"synthetic.deformation 必须是 3x3 矩阵，得到形状 {F.shape}")
        return F
    if voigt is not None:
        return Deformer.from_voigt(voigt)
    return None


def build_synthetic_snapshot(
    cfg: ConfigManager, strain_config: ElasticStrainConfig
) -> tuple[np.ndarray, SimulationCell]:
    """按配置构建合成快照：完美超胞、可选均匀形变与可选高斯噪声"""
    supercell = tuple(int(n) for n in cfg.get("synthetic.supercell", [4, 4, 4]))
    pbc = tuple(bool(x) for x in cfg.get("synthetic.pbc", [True, True, True]))
    builder = CrystallineStructureBuilder(pbc=pbc)
    positions, cell = builder.create_lattice(
        strain_config.lattice_family,
        strain_config.lattice_constant,
        supercell,
        ca_ratio=strain_config.ca_ratio,
    )

    F = deformation_from_config(cfg)
    if F is not None:
        positions, cell = Deformer.apply_deformation(positions, cell, F)
        logger.info(f"施加均匀形变 F = {np.round(F, 6).tolist()}")

    noise = float(cfg.get("synthetic.noise", 0.0))
    if noise > 0:
        # 使用全局种子，结果可复现
        positions = positions + np.random.normal(0.0, noise, positions.shape)
        logger.info(f"叠加高斯噪声: sigma = {noise}")
    logger.info(
        f"合成快照: {strain_config.lattice_family.name} {supercell}, {len(positions)} 个原子"
    )
    return positions, cell


def make_service(cfg: ConfigManager) -> ElasticStrainService:
    """由配置创建分析服务。"""
    strain_config = ElasticStrainConfig.from_config(cfg)
    preferred = cfg.get("preferred_orientations", None)
    return ElasticStrainService(strain_config, preferred_orientations=preferred)
