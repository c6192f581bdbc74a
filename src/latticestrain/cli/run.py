#!/usr/bin/env python3
"""YAML 场景入口（CLI）

使用示例::

    python -m latticestrain.cli.run -c config/default.yaml
    python -m latticestrain.cli.run -c my.yaml --input snapshot.npz

说明
----
- 本入口只负责 YAML 解析与场景调度；具体实现见 ``pipelines/*`` 模块。
- 退出码：0 表示成功，1 表示分析失败（结果信封 ``is_failed``）。
"""

from __future__ import annotations

import argparse
import logging

from latticestrain.core.config import ConfigManager
from latticestrain.utils.exceptions import LatticeStrainError
from latticestrain.utils.utils import setup_logging

from .pipelines.elastic_strain import run_elastic_strain_pipeline


def main(argv: list[str] | None = None) -> int:
    """解析 YAML 并调度对应场景。"""
    ap = argparse.ArgumentParser(description="LatticeStrain: YAML 驱动的弹性应变分析")
    ap.add_argument("-c", "--config", required=True, help="YAML配置文件路径")
    ap.add_argument("--input", default=None, help="输入快照 (.npz)，隐含 snapshot 场景")
    args = ap.parse_args(argv)

    cfg = ConfigManager(files=[args.config], use_defaults=True)
    seed = cfg.set_global_seed()

    name = cfg.get("run.name", "run")
    outdir = cfg.make_output_dir(name)
    setup_logging(outdir, level=logging.INFO)
    cfg.snapshot(outdir)
    log = logging.getLogger(__name__)
    log.info(f"随机数种子: {seed}")

    scenario = str(cfg.get("scenario", "synthetic")).lower()
    if args.input:
        scenario = "snapshot"
    log.info(f"场景: {scenario} | 配置来源: {cfg.sources}")

    if scenario not in ("synthetic", "snapshot"):
        raise ValueError(f"未知场景类型 scenario: {scenario}")
    try:
        envelope = run_elastic_strain_pipeline(cfg, outdir, scenario, args.input)
    except LatticeStrainError as e:
        log.error(f"配置或输入错误: {e}")
        return 1

    if envelope["is_failed"]:
        log.error(f"分析失败: {envelope['error']}")
        return 1

    summary = envelope["summary"]
    log.info(
        f"有效原子 {summary['num_fitted']}/{summary['num_atoms']}, "
        f"晶体团簇 {summary['num_clusters']}, 团簇转变 {summary['num_transitions']}, "
        f"总耗时 {envelope['timing']['total_ms']:.1f} ms"
    )
    log.info(f"完成。输出目录: {outdir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
