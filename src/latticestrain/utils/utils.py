# 文件名: utils.py
# 作者: Gilbert Young
# 修改日期: 2025-09-18
# 文件描述: 张量 Voigt 转换工具、日志配置与分块调度函数。

"""
工具模块

包含 TensorConverter 类用于张量与 Voigt 表示之间的转换（支持逐原子张量批量转换），
命令行与服务共用的日志配置函数 ``setup_logging``，
以及逐原子计算共用的分块线程池调度 ``map_chunks``。
"""

import concurrent.futures as _cf
import logging
import os

import numpy as np

from latticestrain.utils.exceptions import AnalysisCancelledError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s: %(message)s"


class TensorConverter:
    """张量转换工具类，支持应力和应变张量的 Voigt 与 3x3 矩阵表示之间的相互转换。

    输入既可以是单个 (3, 3) 张量，也可以是 (N, 3, 3) 的逐原子张量数组。
    """

    _VOIGT_INDEX = ((0, 0), (1, 1), (2, 2), (1, 2), (0, 2), (0, 1))

    @staticmethod
    def to_voigt(
        tensor: np.ndarray, tensor_type: str = "strain", tol: float = 1e-8
    ) -> np.ndarray:
        """
        将对称 3x3 张量转换为 Voigt 表示的 6 元素向量。

        Parameters
        ----------
        tensor : np.ndarray
            形状为 (3, 3) 或 (N, 3, 3) 的张量。
        tensor_type : str
            张量类型，必须是 'stress' 或 'strain'。应变的剪切分量乘以 2（工程剪应变）。
        tol : float, optional
            检查张量对称性的容差。非对称时记录警告并取对称部分。

        Returns
        -------
        np.ndarray
            形状为 (6,) 或 (N, 6) 的 Voigt 向量。
        """
        tensor = np.asarray(tensor, dtype=np.float64)
        if tensor.shape[-2:] != (3, 3):
            raise ValueError(f"输入张量必须是 3x3 矩阵，但得到形状 {tensor.shape}")
        if tensor_type not in {"stress", "strain"}:
            raise ValueError(
                f"无效的张量类型 '{tensor_type}'，必须是 'stress' 或 'strain'"
            )

        transposed = np.swapaxes(tensor, -1, -2)
        if not np.allclose(tensor, transposed, atol=tol):
            logger.warning("输入张量不对称。将使用其对称部分进行计算。")
            tensor = 0.5 * (tensor + transposed)

        factor = 2.0 if tensor_type == "strain" else 1.0
        voigt = np.stack(
            [tensor[..., i, j] for i, j in TensorConverter._VOIGT_INDEX], axis=-1
        )
        voigt[..., 3:] *= factor
        return voigt

    @staticmethod
    def from_voigt(voigt: np.ndarray, tensor_type: str = "strain") -> np.ndarray:
        """
        将 Voigt 表示的 6 元素向量转换为 3x3 的对称张量。

        Parameters
        ----------
        voigt : np.ndarray
            形状为 (6,) 或 (N, 6) 的 Voigt 向量。
        tensor_type : str
            张量类型，必须是 'stress' 或 'strain'。

        Returns
        -------
        np.ndarray
            形状为 (3, 3) 或 (N, 3, 3) 的对称张量。
        """
        voigt = np.asarray(voigt, dtype=np.float64)
        if voigt.shape[-1] != 6:
            raise ValueError(
                f"输入 Voigt 向量必须有 6 个元素，但得到 {voigt.shape[-1]} 个"
            )
        if tensor_type not in {"stress", "strain"}:
            raise ValueError(
                f"无效的张量类型 '{tensor_type}'，必须是 'stress' 或 'strain'"
            )

        factor = 0.5 if tensor_type == "strain" else 1.0
        tensor = np.zeros(voigt.shape[:-1] + (3, 3), dtype=np.float64)
        for k, (i, j) in enumerate(TensorConverter._VOIGT_INDEX):
            value = voigt[..., k] * (factor if k >= 3 else 1.0)
            tensor[..., i, j] = value
            tensor[..., j, i] = value
        return tensor


def setup_logging(output_dir: str | None = None, level: int = logging.INFO) -> None:
    """配置根日志记录器

    控制台 handler 若不存在则添加，存在则调到期望级别；提供输出目录时
    额外写入 ``run.log``（DEBUG 级别）。

    Parameters
    ----------
    output_dir : str | None, optional
        日志文件所在目录。
    level : int, optional
        控制台日志级别，默认 ``logging.INFO``。
    """
    root = logging.getLogger()
    root.setLevel(min(level, logging.DEBUG) if output_dir else level)
    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt="%H:%M:%S")

    has_stream = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root.handlers
    )
    if not has_stream:
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(fmt)
        root.addHandler(sh)
    else:
        for h in root.handlers:
            if isinstance(h, logging.StreamHandler) and not isinstance(
                h, logging.FileHandler
            ):
                h.setLevel(level)

    if output_dir:
        try:
            os.makedirs(output_dir, exist_ok=True)
            fh = logging.FileHandler(
                os.path.join(output_dir, "run.log"), mode="w", encoding="utf-8"
            )
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(fmt)
            root.addHandler(fh)
        except OSError:
            logger.warning("无法创建日志文件处理器，继续仅输出到控制台。")


def chunk_ranges(total: int, chunk_size: int) -> list[tuple[int, int]]:
    """把 ``[0, total)`` 切分为连续区间。"""
    return [(s, min(s + chunk_size, total)) for s in range(0, total, chunk_size)]


def map_chunks(func, total: int, chunk_size: int, num_workers: int = 1, cancel_event=None):
    """分块并行执行 ``func(start, stop)``，结果按区间顺序返回

    每个区间只写自己的输出切片，合并顺序与线程数无关。``cancel_event``
    被置位时在下一个区间开始前抛出 ``AnalysisCancelledError``。

    Parameters
    ----------
    func : callable
        ``func(start, stop)``，返回该区间的结果
    total : int
        元素总数
    chunk_size : int
        每个区间的元素数
    num_workers : int, optional
        线程数，1 表示在当前线程顺序执行
    cancel_event : threading.Event, optional
        取消标志

    Returns
    -------
    list
        各区间结果，按区间起点升序
    """

    def _run(start, stop):
        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelledError("分析已取消")
        return func(start, stop)

    ranges = chunk_ranges(total, chunk_size)
    if num_workers <= 1 or len(ranges) <= 1:
        return [_run(start, stop) for start, stop in ranges]

    results = [None] * len(ranges)
    with _cf.ThreadPoolExecutor(max_workers=num_workers) as executor:
        future_to_idx = {
            executor.submit(_run, start, stop): idx
            for idx, (start, stop) in enumerate(ranges)
        }
        for future in _cf.as_completed(future_to_idx):
            idx = future_to_idx[future]
            try:
                results[idx] = future.result()
            except AnalysisCancelledError:
                for pending in future_to_idx:
                    pending.cancel()
                raise
            logger.debug(f"Completed chunk {idx}: {ranges[idx]}")
    return results
