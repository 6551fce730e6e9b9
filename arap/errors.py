"""
ARAP 求解过程中的异常类型。

输入格式错误 (形状不符、索引越界、重复约束等) 直接以 ValueError /
IndexError / KeyError 抛出; 本模块只定义数值退化与线性求解失败两类。
"""

from __future__ import annotations


class ArapError(RuntimeError):
    """ARAP 求解失败的基类。"""


class DegenerateGeometryError(ArapError, ValueError):
    """
    退化几何:零长度边、三点共线的三角形, 或局部协方差矩阵含 NaN / Inf。

    同时继承 ValueError, 调用方可将其视为输入几何非法。
    """


class SolveError(ArapError):
    """Laplacian 分解失败、解含非有限值, 或不存在自由顶点。"""
