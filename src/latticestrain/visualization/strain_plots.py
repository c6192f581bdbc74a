#!/usr/bin/env python3
"""
弹性应变结果绘图

- 体应变直方图（仅统计应变有效的原子）
- 拟合状态计数柱状图

使用Agg后端，只输出图片文件。

Created: 2025-09-18
"""

import logging
import os

import matplotlib

# 使用Agg后端，避免GUI问题
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)

_FALLBACK_FONTS = ["DejaVu Sans", "Arial", "Liberation Sans"]


def _apply_style():
    plt.rcParams["font.family"] = _FALLBACK_FONTS
    plt.rcParams["axes.unicode_minus"] = False
    plt.rcParams["savefig.dpi"] = 150
    plt.rcParams["savefig.bbox"] = "tight"


def plot_volumetric_strain_histogram(result, filename: str, bins: int = 50) -> str | None:
    """
    绘制体应变直方图

    Parameters
    ----------
    result : ElasticStrainResult
        分析结果
    filename : str
        输出 PNG 路径
    bins : int, optional
        直方图分箱数

    Returns
    -------
    str | None
        写入的文件路径；没有有效原子时返回 ``None``
    """
    values = np.asarray(result.volumetric_strains)[np.asarray(result.valid)]
    if values.size == 0:
        logger.warning("没有应变有效的原子，跳过体应变直方图")
        return None

    _apply_style()
    os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
    fig, ax = plt.subplots(figsize=(7, 5))
    span = float(np.ptp(values))
    center = float(np.mean(values))
    # 值几乎相同时给一个小区间，避免零宽分箱
    hist_range = (
        None if span > 1e-9 * max(1.0, abs(center)) else (center - 1e-6, center + 1e-6)
    )
    ax.hist(values, bins=bins, range=hist_range, color="#3b75af", edgecolor="black", alpha=0.8)
    ax.axvline(center, color="#c0392b", linestyle="--", label=f"mean = {center:.3e}")
    ax.set_xlabel("Volumetric strain (det F - 1)")
    ax.set_ylabel("Atom count")
    ax.set_title(
        f"{result.lattice_family.name}: {values.size}/{result.num_atoms} atoms, "
        f"{result.num_clusters} clusters"
    )
    ax.legend()
    ax.grid(True, alpha=0.3)
    fig.savefig(filename)
    plt.close(fig)
    logger.info(f"体应变直方图已保存: {filename}")
    return filename


def plot_fit_status(result, filename: str) -> str:
    """绘制各拟合状态的原子数柱状图，返回文件路径"""
    _apply_style()
    os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
    counts = result.status_counts()
    fig, ax = plt.subplots(figsize=(7, 4))
    ax.bar(list(counts), list(counts.values()), color="#5f9e6e", edgecolor="black")
    ax.set_ylabel("Atom count")
    ax.set_title("Deformation gradient fit status")
    ax.tick_params(axis="x", rotation=20)
    fig.savefig(filename)
    plt.close(fig)
    return filename
