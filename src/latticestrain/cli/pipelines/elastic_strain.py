"""弹性应变分析场景流水线"""

from __future__ import annotations

import json
import logging
import os

import yaml

from ...visualization.strain_plots import (
    plot_fit_status,
    plot_volumetric_strain_histogram,
)
from .common import build_synthetic_snapshot, load_snapshot, make_service, save_snapshot

logger = logging.getLogger(__name__)


def run_elastic_strain_pipeline(
    cfg, outdir: str, scenario: str, input_path: str | None = None
) -> dict:
    """运行一次弹性应变分析，并导出结果、有效配置与图

    Parameters
    ----------
    cfg : ConfigManager
        合并后的配置
    outdir : str
        输出目录
    scenario : str
        ``"synthetic"`` 或 ``"snapshot"``
    input_path : str, optional
        快照路径，覆盖 ``snapshot.path``

    Returns
    -------
    dict
        服务返回的结果信封
    """
    service = make_service(cfg)
    strain_config = service.config

    identification = None
    if scenario == "synthetic":
        positions, cell = build_synthetic_snapshot(cfg, strain_config)
        if bool(cfg.get("synthetic.save_snapshot", False)):
            save_snapshot(os.path.join(outdir, "snapshot.npz"), positions, cell)
    elif scenario == "snapshot":
        path = input_path or cfg.get("snapshot.path", None)
        if not path:
            raise ValueError("snapshot 场景需要 --input 或 snapshot.path")
        positions, cell, identification = load_snapshot(path)
    else:
        raise ValueError(f"未知场景类型 scenario: {scenario}")

    effective = {
        "scenario": scenario,
        "run": {"name": cfg.get("run.name", "run")},
        "rng": {"global_seed": cfg.get("rng.global_seed", 42)},
        "elastic_strain": strain_config.to_dict(),
    }
    try:
        with open(
            os.path.join(outdir, "effective_config.yaml"), "w", encoding="utf-8"
        ) as f:
            yaml.safe_dump(effective, f, allow_unicode=True, sort_keys=True)
    except OSError as e:
        logger.warning(f"有效配置写入失败: {e}")

    envelope = service.compute(
        positions,
        cell,
        identification=identification,
        output_base=os.path.join(outdir, str(cfg.get("run.name", "run"))),
    )
    with open(os.path.join(outdir, "envelope.json"), "w", encoding="utf-8") as f:
        json.dump(envelope, f, indent=2, ensure_ascii=False)

    result = service.last_result
    if result is not None and bool(cfg.get("plots.enabled", True)):
        plot_volumetric_strain_histogram(
            result,
            os.path.join(outdir, "volumetric_strain_hist.png"),
            bins=int(cfg.get("plots.bins", 50)),
        )
        plot_fit_status(result, os.path.join(outdir, "fit_status.png"))
    return envelope
