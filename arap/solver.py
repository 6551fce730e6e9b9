"""
基于 ARAP (As-Rigid-As-Possible) 能量的曲面变形求解器。

算法参考
--------
Sorkine, O., & Alexa, M. (2007).
    As-rigid-as-possible surface modeling.
    Eurographics Symposium on Geometry Processing (SGP), pp. 109-116.

算法概述
--------
给定静止网格顶点坐标 P = {p_1, ..., p_N} 与一组控制点 (顶点索引 → 目标坐标),
求解变形后坐标 P', 使控制点精确落在目标位置, 其余顶点的一环邻域尽量保持刚性:

    E(P') = Σ_i Σ_{j∈N(i)} w_ij ‖(p'_i - p'_j) - R_i(p_i - p_j)‖²

迭代策略 (局部-全局交替优化, 固定次数, 无提前终止)
    局部步 (Local Step) :  固定 P', 对每个顶点用 SVD 求解最优 R_i
    全局步 (Global Step) :  固定 R_i, 求解带约束的稀疏线性方程组更新 P'

与教科书公式的差异
------------------
    * 自由顶点的右端项只累加非约束邻居的贡献, 约束邻居被整体排除;
      Laplacian 中约束列同样被清零, 两者保持一致。
    * 自由子系统因此以常向量为零空间, 平移由结束后的质心校正确定:
      自由顶点的质心被移回原网格 (全部顶点) 的质心。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from .cholesky import CholeskyFactor
from .errors import SolveError
from .mesh import ControlPoint, ControlPointSet, MeshData
from .operators import WEIGHT_EPS, assemble_laplacian, compute_weights, edge_weights
from .rotations import estimate_rotations

#: 控制点输入:ControlPointSet、{索引: 坐标} 字典, 或 ControlPoint / (索引, 坐标) 序列
ControlPoints = Union[
    ControlPointSet,
    Mapping[int, np.ndarray],
    Iterable[Union[ControlPoint, Tuple[int, np.ndarray]]],
]

StepCallback = Callable[[int, np.ndarray], None]


# =============================================================================
# 全局步:右端项与线性求解
# =============================================================================

def assemble_rhs(
    rest:        np.ndarray,
    rotations:   np.ndarray,
    neighbors:   Sequence[Sequence[int]],
    weights:     sp.spmatrix,
    constraints: Mapping[int, np.ndarray],
) -> np.ndarray:
    """
    构建线性方程组 L p' = b 的右端项。

        b_c = q_c                                               (c ∈ C)
        b_i = Σ_{j∈N(i), j∉C} (w_ij / 2) · (R_i + R_j) · (p_i - p_j)   (i ∉ C)

    Parameters
    ----------
    rest : np.ndarray, shape (N, 3)
        (已居中的) 静止坐标。
    rotations : np.ndarray, shape (N, 3, 3)
        局部步得到的旋转矩阵。
    neighbors : Sequence[Sequence[int]]
        一环邻接表。
    weights : sp.spmatrix, shape (N, N)
        余切权重矩阵。
    constraints : Mapping[int, np.ndarray]
        {约束顶点索引: 目标坐标 (3,)}, 坐标须与 rest 处于同一 (居中) 坐标系。

    Returns
    -------
    b : np.ndarray, shape (N, 3)
    """
    n: int = rest.shape[0]
    W = sp.csr_matrix(weights)
    b = np.zeros((n, 3), dtype=np.float64)

    for i in range(n):
        target = constraints.get(i)
        if target is not None:
            b[i] = target
            continue

        nb = np.asarray([j for j in neighbors[i] if j not in constraints], dtype=np.int64)
        if nb.size == 0:
            continue

        w     = edge_weights(W, i, nb)                 # (K,)
        e_ij  = rest[i] - rest[nb]                     # (K, 3)
        R_sum = rotations[i] + rotations[nb]           # (K, 3, 3)
        b[i]  = np.einsum("k,kab,kb->a", 0.5 * w, R_sum, e_ij)

    return b


def solve(
    system:          Union[sp.spmatrix, CholeskyFactor],
    rhs:             np.ndarray,
    cholesky_factor: Optional[CholeskyFactor] = None,
) -> np.ndarray:
    """
    求解 L X = B。

    Parameters
    ----------
    system : sp.spmatrix or CholeskyFactor
        带约束的 Laplacian, 或已完成分解的 CholeskyFactor (迭代中复用)。
    rhs : np.ndarray, shape (N, 3)
        右端项。
    cholesky_factor : CholeskyFactor, optional
        system 为矩阵时用于分解的求解器实例, 缺省时新建一个 (backend="auto")。

    Returns
    -------
    X : np.ndarray, shape (N, 3)

    Raises
    ------
    SolveError
        分解失败或解含 NaN / Inf。
    """
    if isinstance(system, CholeskyFactor):
        factor = system
    else:
        factor = cholesky_factor if cholesky_factor is not None else CholeskyFactor()
        factor.factorization(system)

    x = np.asarray(factor.solve(rhs), dtype=np.float64).reshape(np.shape(rhs))
    if not np.all(np.isfinite(x)):
        raise SolveError("线性求解结果含 NaN / Inf。")
    return x


# =============================================================================
# 求解上下文
# =============================================================================

@dataclass
class SolveContext:
    """
    单次变形调用的全部中间状态, 调用结束即丢弃。

    仅邻接表来自 MeshData 的缓存 (随拓扑复用), 其余均在 prepare() 中重新计算。
    """
    rest:      np.ndarray                 # (N, 3), 已减去 centroid
    centroid:  np.ndarray                 # (3,), 原网格全部顶点的质心
    neighbors: List[List[int]]
    weights:   sp.csr_matrix              # (N, N)
    targets:   Dict[int, np.ndarray]      # 约束目标, 已减去 centroid
    laplacian: sp.csr_matrix              # (N, N), 含正则化
    factor:    CholeskyFactor
    free_mask: np.ndarray                 # (N,) bool, 非约束顶点为 True

    @property
    def num_free(self) -> int:
        return int(np.count_nonzero(self.free_mask))


def normalize_control_points(control_points: ControlPoints, n: int) -> Dict[int, np.ndarray]:
    """
    将各种控制点输入统一为 {顶点索引: 目标坐标 (3,) float64} 字典。

    Raises
    ------
    ValueError
        索引越界、重复, 或坐标不是三维。
    """
    if isinstance(control_points, ControlPointSet):
        items = list(control_points.as_dict().items())
    elif isinstance(control_points, Mapping):
        items = list(control_points.items())
    else:
        items = []
        for cp in control_points:
            if isinstance(cp, ControlPoint):
                items.append((cp.index, cp.position))
            else:
                index, position = cp
                items.append((index, position))

    constraints: Dict[int, np.ndarray] = {}
    for index, position in items:
        index = int(index)
        if not (0 <= index < n):
            raise ValueError(f"约束顶点索引 {index} 超出合法范围 [0, {n - 1}]。")
        if index in constraints:
            raise ValueError(f"顶点 {index} 被重复约束。")
        target = np.array(position, dtype=np.float64)
        if target.shape != (3,):
            raise ValueError(f"顶点 {index} 的目标坐标应为 shape (3,), 实际 shape: {target.shape}")
        constraints[index] = target
    return constraints


# =============================================================================
# ARAP 求解器 (迭代控制)
# =============================================================================

class ArapSolver:
    """
    ARAP 曲面变形求解器。

    求解流程
    --------
    预计算 (prepare):
        1. 输入合法性检查
        2. 将静止网格与约束目标同时减去网格质心
        3. 计算余切权重, 组装带约束的 Laplacian L ((N, N)), 自由对角加 λ
        4. 对 L 进行分解 (整个调用只分解一次)

    迭代 (固定 iterations 次):
        局部步:   对每个顶点用 SVD 求最优旋转 R_i ∈ SO(3)
        全局步:   构建右端项 b, 求解 L p' = b

    结束:
        自由顶点减去自身质心、加回原网格质心; 约束顶点直接加回原网格质心。

    Parameters
    ----------
    iterations : int, optional
        局部-全局迭代次数, 默认 10, 不做收敛判定。
    regularization : float, optional
        Tikhonov 正则化系数 λ, 加在自由顶点的对角元上, 使自由子块严格正定。
        默认 1e-8。
    weight_eps : float, optional
        余切权重截断阈值, 默认 1e-10。
    cholesky_factor : CholeskyFactor, optional
        线性求解器实例, 由外部注入便于替换或扩展; 缺省时新建 CholeskyFactor()。
        该实例在每次 execute() 中被重新分解, 同一求解器不应被多个线程同时使用。
    verbose : bool, optional
        是否打印迭代进度日志, 默认 False。
    step_callback : Callable[[int, np.ndarray], None], optional
        每次迭代结束后的回调 f(iteration_index, positions),
        positions 为已做质心校正的 (N, 3) 坐标, 可用于实时预览。
    """

    def __init__(
        self,
        iterations:      int   = 10,
        regularization:  float = 1e-8,
        weight_eps:      float = WEIGHT_EPS,
        cholesky_factor: Optional[CholeskyFactor] = None,
        verbose:         bool  = False,
        step_callback:   Optional[StepCallback] = None,
    ) -> None:
        if int(iterations) < 1:
            raise ValueError(f"iterations 须为正整数, 实际: {iterations}")
        if regularization < 0.0:
            raise ValueError(f"regularization 不能为负数: {regularization}")

        self.iterations:      int            = int(iterations)
        self.regularization:  float          = float(regularization)
        self.weight_eps:      float          = float(weight_eps)
        self.cholesky_factor: CholeskyFactor = (
            cholesky_factor if cholesky_factor is not None else CholeskyFactor()
        )
        self.verbose:         bool           = verbose
        self.step_callback = step_callback

    def _log(self, msg: str) -> None:
        if self.verbose:
            print(f"[ARAP] {msg}")

    # =========================================================================
    # 预计算
    # =========================================================================

    def prepare(self, mesh: MeshData, control_points: ControlPoints) -> SolveContext:
        """
        检查输入并构建本次调用的 SolveContext。

        Raises
        ------
        ValueError
            约束非法, 或存在没有邻居的孤立顶点。
        DegenerateGeometryError
            网格含退化三角形。
        SolveError
            所有顶点均被约束, 或 Laplacian 分解失败。
        """
        n: int = mesh.num_vertices
        constraints = normalize_control_points(control_points, n)

        n_free = n - len(constraints)
        if n_free <= 0:
            raise SolveError("所有顶点均被约束, 不存在自由顶点, 无法进行质心校正。")

        neighbors = mesh.neighbors
        isolated = [i for i, nb in enumerate(neighbors) if not nb]
        if isolated:
            raise ValueError(f"顶点 {isolated[:10]} 不属于任何面片 (没有邻居)。")

        self._log(
            f"网格:{n} 顶点, {mesh.num_faces} 面片, "
            f"{len(constraints)} 处约束, {n_free} 个自由顶点"
        )

        centroid = mesh.centroid
        rest = mesh.vertices - centroid
        targets = {i: q - centroid for i, q in constraints.items()}

        self._log("计算余切权重...")
        weights = compute_weights(mesh.vertices, mesh.faces, eps=self.weight_eps)

        self._log("组装带约束的 Laplacian 矩阵...")
        laplacian = assemble_laplacian(weights, targets.keys(), self.regularization)

        factor = self.cholesky_factor
        self._log(
            f"矩阵分解 (后端: {factor.backend}, 正则化 λ={self.regularization:.2e}) ..."
        )
        factor.factorization(laplacian)

        free_mask = np.ones(n, dtype=bool)
        free_mask[list(targets)] = False

        return SolveContext(
            rest      = rest,
            centroid  = centroid,
            neighbors = neighbors,
            weights   = weights,
            targets   = targets,
            laplacian = laplacian,
            factor    = factor,
            free_mask = free_mask,
        )

    # =========================================================================
    # 局部步 / 全局步
    # =========================================================================

    def local_step(self, ctx: SolveContext, current: np.ndarray) -> np.ndarray:
        """局部步:返回 (N, 3, 3) 旋转矩阵。"""
        return estimate_rotations(ctx.rest, current, ctx.neighbors, ctx.weights)

    def global_step(self, ctx: SolveContext, rotations: np.ndarray) -> np.ndarray:
        """全局步:返回居中坐标系下的新坐标 (N, 3)。"""
        b = assemble_rhs(ctx.rest, rotations, ctx.neighbors, ctx.weights, ctx.targets)
        return solve(ctx.factor, b)

    @staticmethod
    def restore_centroid(ctx: SolveContext, positions: np.ndarray) -> np.ndarray:
        """
        质心校正:把居中坐标系下的解变换回原坐标系。

        自由顶点:减去自由顶点自身的质心, 再加回原网格质心;
        约束顶点:目标本身即绝对位置, 直接加回原网格质心。
        """
        free = ctx.free_mask
        out = positions.copy()
        out[free] += ctx.centroid - positions[free].mean(axis=0)
        out[~free] += ctx.centroid
        return out

    @staticmethod
    def _compute_max_displacement(p_old: np.ndarray, p_new: np.ndarray) -> float:
        """两次迭代间顶点位移 L2 范数的最大值, 仅用于日志。"""
        return float(np.max(np.linalg.norm(p_new - p_old, axis=1)))

    # =========================================================================
    # 主入口
    # =========================================================================

    def execute(self, mesh: MeshData, control_points: ControlPoints) -> np.ndarray:
        """
        执行完整的 ARAP 变形, 返回变形后的顶点坐标。

        Parameters
        ----------
        mesh : MeshData
            静止网格, 调用期间不被修改。
        control_points : ControlPoints
            控制点, 每个顶点索引至多出现一次。

        Returns
        -------
        positions : np.ndarray, shape (N, 3)
            约束顶点精确位于目标坐标。

        Raises
        ------
        ValueError, DegenerateGeometryError, SolveError
            见 prepare() / estimate_rotation() / solve()。
        """
        ctx = self.prepare(mesh, control_points)

        current = ctx.rest.copy()
        for iteration in range(self.iterations):
            rotations = self.local_step(ctx, current)
            p_new = self.global_step(ctx, rotations)

            if self.verbose:
                max_disp = self._compute_max_displacement(current, p_new)
                self._log(
                    f"迭代 {iteration + 1:3d}/{self.iterations}  最大位移: {max_disp:.6e}"
                )
            current = p_new

            if self.step_callback is not None:
                self.step_callback(iteration, self.restore_centroid(ctx, current))

        self._log("求解完成。")
        return self.restore_centroid(ctx, current)


# =============================================================================
# 便利函数
# =============================================================================

def create_solver(
    iterations:     int   = 10,
    regularization: float = 1e-8,
    weight_eps:     float = WEIGHT_EPS,
    backend:        str   = "auto",
    verbose:        bool  = False,
    step_callback:  Optional[StepCallback] = None,
) -> ArapSolver:
    """
    快速创建带默认 CholeskyFactor 的 ArapSolver 实例。

    backend 为 "auto" / "cholmod" / "superlu", 用于构建注入的 CholeskyFactor。

    Examples
    --------
    >>> import numpy as np
    >>> from arap import MeshData, create_solver
    >>>
    >>> mesh = MeshData(vertices, faces)          # (N, 3), (F, 3)
    >>> constraints = {0: [1.0, 0.0, 0.0], 5: [0.0, 1.0, 0.0]}
    >>> p_deformed = create_solver(verbose=True).execute(mesh, constraints)
    """
    chol = CholeskyFactor(backend)
    return ArapSolver(
        iterations      = iterations,
        regularization  = regularization,
        weight_eps      = weight_eps,
        cholesky_factor = chol,
        verbose         = verbose,
        step_callback   = step_callback,
    )


def deform(
    vertices:       np.ndarray,
    faces:          np.ndarray,
    control_points: ControlPoints,
    iterations:     int = 10,
    **kwargs,
) -> np.ndarray:
    """
    单次 ARAP 变形的入口:deform(vertices, faces, control_points) -> (N, 3)。

    其余关键字参数透传给 create_solver()。
    """
    solver = create_solver(iterations=iterations, **kwargs)
    return solver.execute(MeshData(vertices, faces), control_points)
