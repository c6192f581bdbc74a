#!/usr/bin/env python3
"""
弹性应变结果存储

逐原子数组写入 HDF5（gzip 压缩），汇总信息写入 JSON：

- ``<base>_elastic_strain.h5``：``atoms/`` 组保存团簇编号、对称分支、形变梯度、
  应变张量、体应变、有效掩码与拟合状态；``clusters/`` 组保存团簇取向与成员数；
  ``transitions/`` 组保存团簇转变
- ``<base>_elastic_strain.json``：:meth:`ElasticStrainResult.summary` 的内容

Author: Gilbert Young
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

import h5py
import numpy as np

logger = logging.getLogger(__name__)

RESULT_SUFFIX = "_elastic_strain"


class ElasticStrainWriter:
    """
    HDF5 结果写入器

    Parameters
    ----------
    filename : str
        输出文件名
    compression : str, optional
        压缩算法，默认 'gzip'
    compression_opts : int, optional
        压缩级别（gzip: 1-9）

    Examples
    --------
    >>> with ElasticStrainWriter('run_elastic_strain.h5') as writer:
    ...     writer.write(result)
    """

    def __init__(
        self,
        filename: str,
        compression: str | None = "gzip",
        compression_opts: int | None = 4,
    ):
        self.filename = Path(filename)
        self.compression = compression
        self.compression_opts = compression_opts
        self.file = None

    def open(self):
        """打开HDF5文件"""
        os.makedirs(self.filename.parent, exist_ok=True)
        self.file = h5py.File(self.filename, "w")
        logger.debug(f"打开HDF5文件: {self.filename}")

    def close(self):
        if self.file is not None:
            self.file.close()
            self.file = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _dataset(self, group, name: str, data: np.ndarray):
        data = np.asarray(data)
        if data.size == 0 or self.compression is None:
            return group.create_dataset(name, data=data)
        return group.create_dataset(
            name,
            data=data,
            compression=self.compression,
            compression_opts=self.compression_opts,
        )

    def write(self, result, metadata: dict[str, Any] | None = None) -> None:
        """写入一次分析结果

        Parameters
        ----------
        result : ElasticStrainResult
            分析结果
        metadata : dict, optional
            额外写入根组属性的元数据（标量或字符串）
        """
        if self.file is None:
            self.open()
        f = self.file
        f.attrs["lattice_family"] = result.lattice_family.name
        f.attrs["strain_frame"] = result.strain_frame.value
        f.attrs["num_atoms"] = result.num_atoms
        f.attrs["created"] = datetime.now().isoformat()
        for key, value in (metadata or {}).items():
            f.attrs[key] = value

        graph = result.graph
        atoms = f.create_group("atoms")
        self._dataset(atoms, "cluster_ids", graph.atom_clusters)
        self._dataset(atoms, "symmetry_branch", graph.atom_symmetry)
        self._dataset(atoms, "volumetric_strain", result.volumetric_strains)
        self._dataset(atoms, "valid", result.valid.astype(np.int8))
        self._dataset(atoms, "tensor_valid", result.tensor_valid.astype(np.int8))
        self._dataset(atoms, "fit_status", result.fit_status)
        if result.deformation_gradients is not None:
            self._dataset(atoms, "deformation_gradient", result.deformation_gradients)
        if result.strain_tensors is not None:
            self._dataset(atoms, "strain_tensor", result.strain_tensors)

        clusters = f.create_group("clusters")
        self._dataset(clusters, "orientation", graph.cluster_orientations)
        self._dataset(
            clusters, "size", np.array([c.size for c in graph.clusters], dtype=np.int64)
        )
        self._dataset(
            clusters,
            "structure_type",
            np.array([int(c.structure_type) for c in graph.clusters], dtype=np.int64),
        )

        transitions = f.create_group("transitions")
        pairs = np.array(
            [(t.cluster_a, t.cluster_b) for t in graph.transitions], dtype=np.int64
        ).reshape(-1, 2)
        self._dataset(transitions, "clusters", pairs)
        self._dataset(
            transitions,
            "bond_count",
            np.array([t.bond_count for t in graph.transitions], dtype=np.int64),
        )
        self._dataset(
            transitions,
            "misorientation",
            np.array([t.misorientation for t in graph.transitions], dtype=np.float64),
        )
        self._dataset(
            transitions,
            "matrix",
            np.array([t.matrix for t in graph.transitions], dtype=np.float64).reshape(
                -1, 3, 3
            ),
        )
        self._dataset(f, "inconsistent_bonds", graph.inconsistent_bonds)
        logger.debug(f"写入 {result.num_atoms} 个原子的结果到 {self.filename}")


def write_summary_json(summary: dict, filename: str) -> str:
    """把汇总字典写为 JSON 文件，返回路径"""
    path = Path(filename)
    os.makedirs(path.parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2, ensure_ascii=False)
    return str(path)


def save_results(result, output_base: str, metadata: dict | None = None) -> dict[str, str]:
    """
    保存分析结果的便捷函数

    Parameters
    ----------
    result : ElasticStrainResult
        分析结果
    output_base : str
        输出路径前缀，写入 ``<base>_elastic_strain.h5`` 与 ``<base>_elastic_strain.json``
    metadata : dict, optional
        额外元数据

    Returns
    -------
    dict
        ``{"h5": 路径, "json": 路径}``
    """
    h5_path = f"{output_base}{RESULT_SUFFIX}.h5"
    json_path = f"{output_base}{RESULT_SUFFIX}.json"
    with ElasticStrainWriter(h5_path) as writer:
        writer.write(result, metadata)
    write_summary_json(result.summary(), json_path)
    logger.info(f"结果已保存: {h5_path}, {json_path}")
    return {"h5": h5_path, "json": json_path}


def load_results(filename: str) -> dict[str, Any]:
    """
    读取 HDF5 结果文件

    Returns
    -------
    dict
        ``attrs`` 为根属性，其余键为 ``"组名/数据集名"`` 对应的数组
    """
    data: dict[str, Any] = {}
    with h5py.File(filename, "r") as f:
        data["attrs"] = {k: (v.decode() if isinstance(v, bytes) else v) for k, v in f.attrs.items()}

        def _collect(name, obj):
            if isinstance(obj, h5py.Dataset):
                data[name] = obj[()]

        f.visititems(_collect)
    return data
