"""
局部步 (Local Step):逐顶点求最优旋转 R_i ∈ SO(3)。

固定变形坐标 P', 顶点 i 的局部能量
    E_i(R_i) = Σ_{j∈N(i)} w_ij ‖(p'_i - p'_j) - R_i(p_i - p_j)‖²
的最小化问题由加权协方差矩阵的 SVD 闭式求解。
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np
import scipy.sparse as sp

from .errors import DegenerateGeometryError
from .operators import edge_weights


def estimate_rotation(
    rest:      np.ndarray,
    current:   np.ndarray,
    neighbors: Sequence[Sequence[int]],
    weights:   sp.spmatrix,
    index:     int,
) -> np.ndarray:
    """
    求顶点 index 处的最优旋转矩阵。

    以邻居顺序构建
        P_rest 的第 k 列 = p_i  - p_{j_k}     (静止坐标)
        P_cur  的第 k 列 = p'_i - p'_{j_k}    (当前坐标)
        D = diag(w_{i j_1}, ..., w_{i j_K})
    协方差 S = P_rest · D · P_curᵀ, SVD 分解 S = U Σ Vᵀ, 则

        R = V · diag(1, 1, det(V Uᵀ)) · Uᵀ

    对角修正项保证 det(R) = +1, 不会得到反射矩阵。

    Parameters
    ----------
    rest : np.ndarray, shape (N, 3)
        静止 (未变形) 坐标。
    current : np.ndarray, shape (N, 3)
        当前迭代的变形坐标。
    neighbors : Sequence[Sequence[int]]
        一环邻接表。
    weights : sp.spmatrix, shape (N, N)
        余切权重矩阵。
    index : int
        顶点索引。

    Returns
    -------
    R : np.ndarray, shape (3, 3)

    Raises
    ------
    ValueError
        顶点没有邻居。
    DegenerateGeometryError
        协方差含非有限值或 SVD 不收敛。
    """
    nb = np.asarray(neighbors[index], dtype=np.int64)
    if nb.size == 0:
        raise ValueError(f"顶点 {index} 没有邻居, 无法估计局部旋转。")

    P_rest = (rest[index] - rest[nb]).T          # (3, K)
    P_cur  = (current[index] - current[nb]).T    # (3, K)
    d      = edge_weights(weights, index, nb)    # (K,)

    S = (P_rest * d) @ P_cur.T                   # P_rest · D · P_curᵀ, (3, 3)
    if not np.all(np.isfinite(S)):
        raise DegenerateGeometryError(f"顶点 {index} 的协方差矩阵含 NaN / Inf。")

    try:
        U, _sigma, Vt = np.linalg.svd(S)
    except np.linalg.LinAlgError as exc:
        raise DegenerateGeometryError(f"顶点 {index} 的协方差 SVD 不收敛。") from exc

    V = Vt.T
    D = np.diag([1.0, 1.0, np.linalg.det(V @ U.T)])
    return V @ D @ U.T


def estimate_rotations(
    rest:      np.ndarray,
    current:   np.ndarray,
    neighbors: Sequence[Sequence[int]],
    weights:   sp.spmatrix,
) -> np.ndarray:
    """
    对全部顶点执行 estimate_rotation。

    各顶点相互独立, 只读取上一轮全局步的结果 current。

    Returns
    -------
    rotations : np.ndarray, shape (N, 3, 3)
    """
    n: int = rest.shape[0]
    W = sp.csr_matrix(weights)
    rotations: List[np.ndarray] = [
        estimate_rotation(rest, current, neighbors, W, i) for i in range(n)
    ]
    return np.stack(rotations) if rotations else np.zeros((0, 3, 3))
