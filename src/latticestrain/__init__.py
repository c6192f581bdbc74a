"""
LatticeStrain - 原子尺度弹性应变分析

由原子快照与结构识别结果计算逐原子形变梯度、Green-Lagrange / Euler-Almansi
应变张量与体应变，并给出晶体团簇及团簇间的取向关系。
"""

__version__ = "1.0.0"
__author__ = "Gilbert"

from . import core, elastic, utils

__all__ = ["core", "elastic", "utils"]
