"""
ARAP 所需的离散几何算子:一环邻接表、余切权重、带约束的 Laplacian。

符号约定
--------
    W[i, j] = w_ij = ½ (cot α_ij + cot β_ij)        (i, j 相邻, 否则为 0)

    L[i, i] =  Σ_{j∉C} w_ij      (i ∉ C)
    L[i, j] = -w_ij              (i, j ∉ C, i ≠ j)
    L[c, :] = L[:, c] = e_c      (c ∈ C, 约束顶点对应单位行 / 列)

即自由行为半正定余切 Laplacian, 约束行列为单位阵。
"""

from __future__ import annotations

from typing import Iterable, List

import numpy as np
import scipy.sparse as sp

from .errors import DegenerateGeometryError

#: 余切权重截断阈值, 小于该值的权重 (含钝角产生的负权重) 置为 0
WEIGHT_EPS: float = 1e-10

#: 退化三角形判据:边长或 |sin(角)| 小于该值
_DEGENERATE_TOL: float = 1e-12


def _check_faces(faces: np.ndarray, n: int) -> None:
    if faces.ndim != 2 or faces.shape[1] != 3:
        raise ValueError(f"faces 应为 shape (F, 3), 实际 shape: {faces.shape}")
    if faces.size and (faces.min() < 0 or faces.max() >= n):
        raise ValueError(f"面片索引超出合法范围 [0, {n - 1}]。")


# =============================================================================
# 一环邻接表
# =============================================================================

def build_neighbors(vertices: np.ndarray, faces: np.ndarray) -> List[List[int]]:
    """
    由面片索引构建顶点一环邻接表。

    对每个面片的每个局部槽位 k, 将槽位 (k+1) 与 (k+2) (模面片顶点数) 的顶点
    加入槽位 k 顶点的邻居集合。

    Parameters
    ----------
    vertices : array_like, shape (N, 3)
        顶点坐标, 仅用于确定 N。
    faces : array_like, shape (F, 3)
        面片顶点索引。

    Returns
    -------
    neighbors : List[List[int]]
        neighbors[i] 为顶点 i 的邻居索引 (去重、升序)。

    Raises
    ------
    ValueError
        面片索引越界。
    """
    n: int = len(vertices)
    faces = np.asarray(faces, dtype=np.int64)
    _check_faces(faces, n)

    arity: int = faces.shape[1]
    adj: List[set] = [set() for _ in range(n)]
    for face in faces:
        for k in range(arity):
            adj[int(face[k])].update(
                (int(face[(k + 1) % arity]), int(face[(k + 2) % arity]))
            )
    return [sorted(s) for s in adj]


# =============================================================================
# 余切权重
# =============================================================================

def compute_weights(
    vertices: np.ndarray,
    faces:    np.ndarray,
    eps:      float = WEIGHT_EPS,
) -> sp.csr_matrix:
    """
    计算每条边的余切权重矩阵 W。

    对逆时针三角形 (v0, v1, v2), 边向量 e1 = v1-v0, e2 = v2-v1, e3 = v0-v2:
        α_0 = arccos(  e1·(-e3) / (|e1||e3|) )     对边 (v1, v2)
        α_1 = arccos( (-e1)·e2  / (|e1||e2|) )     对边 (v2, v0)
        α_2 = arccos( (-e2)·e3  / (|e2||e3|) )     对边 (v0, v1)

    每个角的 cot 值对称地累加到其对边的 (i, j) 与 (j, i) 上, 全部三角形累加后
    整体乘以 ½。内部边恰好得到 ½ (cot α + cot β)。最后将小于 eps 的值置为 0。

    Parameters
    ----------
    vertices : array_like, shape (N, 3)
        顶点坐标。
    faces : array_like, shape (F, 3)
        三角面片索引。
    eps : float, optional
        截断阈值, 默认 1e-10。

    Returns
    -------
    W : sp.csr_matrix, shape (N, N)
        对称权重矩阵, 仅相邻顶点对可能非零, 对角为 0。

    Raises
    ------
    ValueError
        面片形状不符或索引越界。
    DegenerateGeometryError
        存在零长度边或三点共线的三角形 (内角无定义)。
    """
    V = np.asarray(vertices, dtype=np.float64)
    F = np.asarray(faces, dtype=np.int64)
    n: int = V.shape[0]
    _check_faces(F, n)

    if F.shape[0] == 0:
        return sp.csr_matrix((n, n), dtype=np.float64)

    i0, i1, i2 = F[:, 0], F[:, 1], F[:, 2]
    e1 = V[i1] - V[i0]
    e2 = V[i2] - V[i1]
    e3 = V[i0] - V[i2]

    l1 = np.linalg.norm(e1, axis=1)
    l2 = np.linalg.norm(e2, axis=1)
    l3 = np.linalg.norm(e3, axis=1)

    short = np.minimum(np.minimum(l1, l2), l3) < _DEGENERATE_TOL
    if np.any(short):
        bad = int(np.flatnonzero(short)[0])
        raise DegenerateGeometryError(f"面片 {bad} 含零长度边 {F[bad].tolist()}。")

    # |e1 x e3| / (|e1||e3|) 即 sin(α_0), 三个内角的正弦同时为零当且仅当共线
    sin0 = np.linalg.norm(np.cross(e1, e3), axis=1) / (l1 * l3)
    if np.any(sin0 < _DEGENERATE_TOL):
        bad = int(np.flatnonzero(sin0 < _DEGENERATE_TOL)[0])
        raise DegenerateGeometryError(f"面片 {bad} 的三个顶点共线 {F[bad].tolist()}。")

    a0 = np.arccos(np.einsum("ij,ij->i", e1, -e3) / (l1 * l3))
    a1 = np.arccos(np.einsum("ij,ij->i", -e1, e2) / (l1 * l2))
    a2 = np.arccos(np.einsum("ij,ij->i", -e2, e3) / (l2 * l3))

    cot0 = np.cos(a0) / np.sin(a0)
    cot1 = np.cos(a1) / np.sin(a1)
    cot2 = np.cos(a2) / np.sin(a2)

    rows = np.concatenate([i1, i2, i2, i0, i0, i1])
    cols = np.concatenate([i2, i1, i0, i2, i1, i0])
    data = np.concatenate([cot0, cot0, cot1, cot1, cot2, cot2])

    # coo -> csr 时重复项相加, 即两侧三角形的贡献求和
    W = sp.coo_matrix((data, (rows, cols)), shape=(n, n)).tocsr()
    W = 0.5 * W

    W.data[W.data < eps] = 0.0
    W.eliminate_zeros()
    return sp.csr_matrix(W)


def edge_weights(weights: sp.spmatrix, index: int, neighbors: Iterable[int]) -> np.ndarray:
    """按 neighbors 的顺序取出 w(index, j), shape (K,)。"""
    nb = np.asarray(list(neighbors), dtype=np.int64)
    if nb.size == 0:
        return np.zeros(0, dtype=np.float64)
    if sp.issparse(weights):
        return np.asarray(sp.csr_matrix(weights)[index, nb].todense()).ravel()
    return np.asarray(weights, dtype=np.float64)[index, nb]


# =============================================================================
# 带约束的 Laplacian
# =============================================================================

def assemble_laplacian(
    weights:             sp.spmatrix,
    constrained_indices: Iterable[int],
    regularization:      float = 0.0,
) -> sp.csr_matrix:
    """
    由权重矩阵与约束顶点集合组装线性系统矩阵 L。

    先将约束顶点所在行、列整体清零, 再对每个自由行取剩余行和作为对角元,
    约束行的对角元置 1。因此约束邻居的权重不会计入自由顶点的对角元。

    注意:自由顶点与约束顶点之间的耦合被完全去除, 自由子块的每个连通分量
    都以常向量为零空间。regularization > 0 时在自由对角元上加 λ 使其正定。

    Parameters
    ----------
    weights : sp.spmatrix or np.ndarray, shape (N, N)
        对称余切权重矩阵 (compute_weights 的输出)。
    constrained_indices : Iterable[int]
        约束顶点索引。
    regularization : float, optional
        Tikhonov 正则化系数 λ ≥ 0, 仅作用于自由行, 默认 0。

    Returns
    -------
    L : sp.csr_matrix, shape (N, N)
        对称矩阵, 约束行列为单位向量。

    Raises
    ------
    ValueError
        约束索引越界或 regularization < 0。
    """
    W = sp.csr_matrix(weights, dtype=np.float64, copy=True)
    n: int = W.shape[0]
    if W.shape != (n, n):
        raise ValueError(f"weights 须为方阵, 实际 shape: {W.shape}")
    if regularization < 0.0:
        raise ValueError(f"regularization 不能为负数: {regularization}")

    constrained = np.asarray(sorted({int(c) for c in constrained_indices}), dtype=np.int64)
    if constrained.size and (constrained[0] < 0 or constrained[-1] >= n):
        raise ValueError(f"约束顶点索引超出合法范围 [0, {n - 1}]。")

    is_constrained = np.zeros(n, dtype=bool)
    is_constrained[constrained] = True

    # 左右乘对角掩码 = 清零约束行与约束列
    keep = sp.diags((~is_constrained).astype(np.float64), format="csr")
    W = (keep @ W @ keep).tocsr()
    W = (W - sp.diags(W.diagonal(), format="csr")).tocsr()
    W.eliminate_zeros()

    row_sum = np.asarray(W.sum(axis=1)).ravel()
    diag = np.where(is_constrained, 1.0, row_sum + regularization)

    L = sp.diags(diag, format="csr") - W
    return sp.csr_matrix(L)
