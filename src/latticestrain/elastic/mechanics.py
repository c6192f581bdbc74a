# 文件名: mechanics.py
# 作者: Gilbert Young
# 修改日期: 2025-09-18
# 文件描述: 由逐原子形变梯度推导 Green-Lagrange / Euler-Almansi 应变与体应变。

r"""
应变推导模块

给定形变梯度 :math:`\mathbf{F}`：

Green-Lagrange 应变（参考构型）
    .. math::
        \mathbf{E} = \tfrac{1}{2}\left(\mathbf{F}^{T}\mathbf{F} - \mathbf{I}\right)

Euler-Almansi 应变（当前构型，推前）
    .. math::
        \mathbf{e} = \mathbf{F}^{-T}\,\mathbf{E}\,\mathbf{F}^{-1}
        = \tfrac{1}{2}\left(\mathbf{I} - (\mathbf{F}\mathbf{F}^{T})^{-1}\right)

拉回
    .. math::
        \mathbf{E} = \mathbf{F}^{T}\,\mathbf{e}\,\mathbf{F}

体应变
    .. math::
        \varepsilon_V = \det\mathbf{F} - 1

Notes
-----
所有函数都是逐原子的纯变换，接受 (3, 3) 或 (N, 3, 3) 输入。
求逆失败（奇异或出现非有限值）的原子被标记为未定义，输出保持为零。
"""

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from latticestrain.utils.utils import TensorConverter

logger = logging.getLogger(__name__)


class StrainFrame(Enum):
    """应变张量所在的坐标系。"""

    REFERENCE = "reference"
    SPATIAL = "spatial"


def _safe_inverse(F: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """批量求逆，返回 (逆矩阵, 成功掩码)；失败项为零矩阵"""
    n = F.shape[0]
    inverse = np.zeros_like(F)
    finite = np.all(np.isfinite(F), axis=(1, 2))
    ok = np.zeros(n, dtype=bool)
    idx = np.nonzero(finite)[0]
    if len(idx) == 0:
        return inverse, ok
    try:
        inverse[idx] = np.linalg.inv(F[idx])
        ok[idx] = True
    except np.linalg.LinAlgError:
        for k in idx:
            try:
                inverse[k] = np.linalg.inv(F[k])
                ok[k] = True
            except np.linalg.LinAlgError:
                logger.debug(f"形变梯度 #{k} 不可逆")
    bad = ok & ~np.all(np.isfinite(inverse), axis=(1, 2))
    ok &= ~bad
    inverse[bad] = 0.0
    return inverse, ok


@dataclass(frozen=True, eq=False)
class StrainOutput:
    """应变推导结果

    Attributes
    ----------
    tensors : numpy.ndarray | None
        对称应变张量 (N, 3, 3)；关闭张量输出时为 ``None``
    frame : StrainFrame
        张量所在坐标系
    volumetric : numpy.ndarray
        体应变 (N,)，未定义原子为 0
    valid : numpy.ndarray
        形变梯度有效掩码 (N,)，体应变在这些原子上有定义
    tensor_valid : numpy.ndarray
        应变张量有效掩码 (N,)；推前求逆失败的原子为 False
    """

    tensors: np.ndarray | None
    frame: StrainFrame
    volumetric: np.ndarray
    valid: np.ndarray
    tensor_valid: np.ndarray

    def voigt(self) -> np.ndarray | None:
        """工程剪应变形式的 Voigt 向量 (N, 6)。"""
        if self.tensors is None:
            return None
        return TensorConverter.to_voigt(self.tensors, tensor_type="strain")


class StrainCalculator:
    """
    应变计算器类

    Parameters
    ----------
    push_forward : bool, optional
        为 True 时输出 Euler-Almansi 应变（当前构型），默认 False
    """

    def __init__(self, push_forward: bool = False):
        self.push_forward_output = bool(push_forward)

    @property
    def frame(self) -> StrainFrame:
        return StrainFrame.SPATIAL if self.push_forward_output else StrainFrame.REFERENCE

    @staticmethod
    def green_lagrange(F) -> np.ndarray:
        r"""Green-Lagrange 应变 :math:`\tfrac{1}{2}(\mathbf{F}^T\mathbf{F}-\mathbf{I})`"""
        F = np.asarray(F, dtype=np.float64)
        return 0.5 * (np.swapaxes(F, -1, -2) @ F - np.identity(3))

    @staticmethod
    def push_forward(E, F) -> tuple[np.ndarray, np.ndarray]:
        r"""把参考构型应变推前到当前构型 :math:`\mathbf{F}^{-T}\mathbf{E}\mathbf{F}^{-1}`

        Returns
        -------
        tuple
            ``(e, valid)``，求逆失败的原子 ``e`` 为零且 ``valid`` 为 False
        """
        E = np.asarray(E, dtype=np.float64)
        F = np.asarray(F, dtype=np.float64)
        single = F.ndim == 2
        E3, F3 = E.reshape(-1, 3, 3), F.reshape(-1, 3, 3)
        inverse, ok = _safe_inverse(F3)
        e = np.swapaxes(inverse, 1, 2) @ E3 @ inverse
        e[~ok] = 0.0
        return (e[0], ok[0]) if single else (e, ok)

    @staticmethod
    def pull_back(e, F) -> np.ndarray:
        r"""把当前构型应变拉回参考构型 :math:`\mathbf{F}^{T}\mathbf{e}\mathbf{F}`"""
        e = np.asarray(e, dtype=np.float64)
        F = np.asarray(F, dtype=np.float64)
        return np.swapaxes(F, -1, -2) @ e @ F

    @staticmethod
    def euler_almansi(F) -> tuple[np.ndarray, np.ndarray]:
        """Euler-Almansi 应变，等价于对 Green-Lagrange 应变推前。"""
        return StrainCalculator.push_forward(StrainCalculator.green_lagrange(F), F)

    @staticmethod
    def volumetric_strain(F) -> np.ndarray:
        r"""体应变 :math:`\det\mathbf{F} - 1`"""
        return np.linalg.det(np.asarray(F, dtype=np.float64)) - 1.0

    def compute(self, F, valid=None, materialize_tensors: bool = True) -> StrainOutput:
        """由逐原子形变梯度计算应变

        Parameters
        ----------
        F : numpy.ndarray
            形变梯度 (N, 3, 3)
        valid : numpy.ndarray, optional
            输入有效掩码 (N,)，默认全部有效
        materialize_tensors : bool, optional
            是否输出应变张量

        Returns
        -------
        StrainOutput
            应变张量、体应变与有效掩码
        """
        F = np.asarray(F, dtype=np.float64).reshape(-1, 3, 3)
        n = F.shape[0]
        valid = np.ones(n, dtype=bool) if valid is None else np.array(valid, dtype=bool)
        valid &= np.all(np.isfinite(F), axis=(1, 2))

        safe_F = np.where(valid[:, None, None], F, np.identity(3))
        E = self.green_lagrange(safe_F)
        tensor_valid = valid.copy()
        if self.push_forward_output:
            tensors, ok = self.push_forward(E, safe_F)
            tensor_valid &= ok
        else:
            tensors = E
        tensors = 0.5 * (tensors + np.swapaxes(tensors, 1, 2))
        tensors[~tensor_valid] = 0.0

        volumetric = np.zeros(n)
        if np.any(valid):
            volumetric[valid] = self.volumetric_strain(F[valid])

        if np.any(~tensor_valid):
            logger.debug(f"{int(np.count_nonzero(~tensor_valid))} 个原子的应变张量未定义")
        return StrainOutput(
            tensors=tensors if materialize_tensors else None,
            frame=self.frame,
            volumetric=volumetric,
            valid=valid,
            tensor_valid=tensor_valid,
        )

    def compute_strain(self, F):
        """
        计算单个形变梯度的应变张量并返回 Voigt 表示法

        Parameters
        ----------
        F : numpy.ndarray
            3x3 形变梯度

        Returns
        -------
        numpy.ndarray
            应变向量，形状为 (6,)，剪切分量为工程剪应变
        """
        output = self.compute(np.asarray(F, dtype=np.float64)[None])
        if not output.tensor_valid[0]:
            raise ValueError("形变梯度不可逆，无法推导应变")
        return output.voigt()[0]
