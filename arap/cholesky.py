"""
带约束 Laplacian 的稀疏直接求解器。
"""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from .errors import SolveError

_BACKENDS = ("auto", "cholmod", "superlu")


class CholeskyFactor:
    """
    分解一次、求解多次的稀疏线性求解器。

    "auto" 在 scikit-sparse 可导入时使用 CHOLMOD, 否则使用
    scipy.sparse.linalg.factorized (SuperLU)。"cholmod" 在缺少 scikit-sparse 时
    直接抛出 ImportError, "superlu" 始终使用 scipy。

    Parameters
    ----------
    backend : str, optional
        "auto" (默认)、"cholmod" 或 "superlu"。
    """

    def __init__(self, backend: str = "auto") -> None:
        if backend not in _BACKENDS:
            raise ValueError(f"未知的求解后端 {backend!r}, 可选: {_BACKENDS}")

        self._factor = None
        self._size: int = 0
        self._use_cholmod: bool = False

        if backend != "superlu":
            try:
                from sksparse.cholmod import CholmodError, cholesky  # type: ignore
                self._cholmod_fn = cholesky
                self._cholmod_error = CholmodError
                self._use_cholmod = True
            except ImportError:
                if backend == "cholmod":
                    raise

    @property
    def backend(self) -> str:
        """实际使用的后端:'cholmod' 或 'superlu'。"""
        return "cholmod" if self._use_cholmod else "superlu"

    @property
    def is_factorized(self) -> bool:
        return self._factor is not None

    def factorization(self, A: sp.spmatrix) -> None:
        """
        分解方阵 A 并缓存因子, 之前的因子被丢弃。

        Raises
        ------
        ValueError
            A 不是方阵。
        SolveError
            A 奇异或非正定。
        """
        if A.shape[0] != A.shape[1]:
            raise ValueError(f"矩阵 A 须为方阵, 实际 shape: {A.shape}")

        A_csc = sp.csc_matrix(A, dtype=np.float64)
        self._factor = None
        if self._use_cholmod:
            try:
                self._factor = self._cholmod_fn(A_csc)
            except self._cholmod_error as exc:
                raise SolveError(f"CHOLMOD 分解失败: {exc}") from exc
        else:
            try:
                self._factor = spla.factorized(A_csc)
            except RuntimeError as exc:
                raise SolveError(f"SuperLU 分解失败: {exc}") from exc
        self._size = A.shape[0]

    def solve(self, b: np.ndarray) -> np.ndarray:
        """
        用缓存的因子求解 A x = b, b 为 (M,) 或 (M, K)。

        Raises
        ------
        RuntimeError
            尚未调用 factorization()。
        ValueError
            b 的行数与 A 的阶数不一致。
        """
        if self._factor is None:
            raise RuntimeError("请先调用 factorization() 再调用 solve()。")

        b = np.asarray(b, dtype=np.float64)
        if b.shape[0] != self._size:
            raise ValueError(f"右端项行数 {b.shape[0]} 与矩阵阶数 {self._size} 不一致。")

        if self._use_cholmod:
            return self._factor.solve_A(b)
        if b.ndim == 1:
            return self._factor(b)
        # SuperLU 的求解函数只接受一维右端项
        return np.column_stack(
            [self._factor(np.ascontiguousarray(b[:, k])) for k in range(b.shape[1])]
        )
