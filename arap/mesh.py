"""
三角网格与控制点 (约束) 数据结构。

本模块只负责数据的存储与合法性检查, 不包含任何求解逻辑。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional

import numpy as np

from .operators import build_neighbors


# =============================================================================
# 三角网格
# =============================================================================

class MeshData:
    """
    与渲染 / 交互层解耦的三角网格数据结构。

    Attributes
    ----------
    vertices : np.ndarray, shape (N, 3), dtype float64
        顶点坐标数组, N 为顶点数。
    faces : np.ndarray, shape (F, 3), dtype int32
        三角面片索引数组, 每行为一个三角形 (逆时针) 的三顶点索引。
    """

    def __init__(self, vertices: np.ndarray, faces: np.ndarray) -> None:
        """
        Parameters
        ----------
        vertices : array_like, shape (N, 3)
            顶点坐标, 将被转换为 float64 存储。
        faces : array_like, shape (F, 3)
            三角面片顶点索引, 将被转换为 int32 存储。

        Raises
        ------
        ValueError
            若 vertices 不为 (N, 3)、faces 不为 (F, 3), 或面片索引超出 [0, N-1]。
        """
        self.vertices: np.ndarray = np.asarray(vertices, dtype=np.float64)
        self.faces:    np.ndarray = np.asarray(faces,    dtype=np.int32)

        if self.vertices.ndim != 2 or self.vertices.shape[1] != 3:
            raise ValueError(
                f"vertices 应为 shape (N, 3), 实际 shape: {self.vertices.shape}"
            )
        if self.faces.ndim != 2 or self.faces.shape[1] != 3:
            raise ValueError(
                f"faces 应为 shape (F, 3), 实际 shape: {self.faces.shape}"
            )
        if self.faces.size and (
            self.faces.min() < 0 or self.faces.max() >= self.num_vertices
        ):
            raise ValueError(
                f"面片索引超出合法范围 [0, {self.num_vertices - 1}]。"
            )

        #: 一环邻接表缓存, 拓扑不变时只计算一次
        self._neighbors: Optional[List[List[int]]] = None

    @property
    def num_vertices(self) -> int:
        """顶点总数 N。"""
        return self.vertices.shape[0]

    @property
    def num_faces(self) -> int:
        """面片总数 F。"""
        return self.faces.shape[0]

    @property
    def neighbors(self) -> List[List[int]]:
        """顶点一环邻接表 (升序), 首次访问时构建并缓存。"""
        if self._neighbors is None:
            self._neighbors = build_neighbors(self.vertices, self.faces)
        return self._neighbors

    @property
    def centroid(self) -> np.ndarray:
        """全部顶点的质心, shape (3,)。"""
        return self.vertices.mean(axis=0)

    def vertices_at(self, indices: Iterable[int]) -> np.ndarray:
        """按索引取出顶点坐标, 返回 shape (K, 3)。"""
        idx = np.asarray(list(indices), dtype=np.int64)
        return self.vertices[idx].copy()

    def __repr__(self) -> str:
        return f"MeshData(vertices={self.num_vertices}, faces={self.num_faces})"


# =============================================================================
# 控制点
# =============================================================================

@dataclass
class ControlPoint:
    """被固定到目标位置的顶点:(顶点索引, 目标坐标)。"""
    index: int
    position: np.ndarray

    def __post_init__(self) -> None:
        self.index = int(self.index)
        # 保存副本, 外部数组 (含 mesh.vertices 的行) 之后的修改不会移动控制点
        self.position = np.array(self.position, dtype=np.float64).reshape(3)


class ControlPointSet:
    """
    某一网格上的控制点集合, 每个顶点索引至多出现一次。

    求解器只通过 lookup() / indices() / as_dict() 读取约束, 从不复制或修改本集合。

    Parameters
    ----------
    mesh : MeshData
        控制点所属网格, 用于索引检查与默认目标位置。
    """

    def __init__(self, mesh: MeshData) -> None:
        self.mesh = mesh
        self._points: Dict[int, ControlPoint] = {}

    def _check_index(self, index: int) -> int:
        index = int(index)
        if not (0 <= index < self.mesh.num_vertices):
            raise ValueError(
                f"顶点索引 {index} 超出合法范围 [0, {self.mesh.num_vertices - 1}]。"
            )
        return index

    def add(self, index: int, position: Optional[np.ndarray] = None) -> ControlPoint:
        """
        添加控制点。

        Parameters
        ----------
        index : int
            顶点索引。
        position : array_like (3,), optional
            目标坐标; 缺省时取该顶点当前的静止位置。

        Raises
        ------
        ValueError
            索引越界, 或该顶点已是控制点。
        """
        index = self._check_index(index)
        if index in self._points:
            raise ValueError(f"顶点 {index} 已是控制点。")
        if position is None:
            position = self.mesh.vertices[index]
        point = ControlPoint(index, position)
        self._points[index] = point
        return point

    def remove(self, index: int) -> None:
        """移除控制点, 不存在时抛出 KeyError。"""
        index = int(index)
        if index not in self._points:
            raise KeyError(f"顶点 {index} 不是控制点。")
        del self._points[index]

    def set_position(self, index: int, position: np.ndarray) -> None:
        """修改已有控制点的目标坐标。"""
        index = int(index)
        if index not in self._points:
            raise KeyError(f"顶点 {index} 不是控制点。")
        self._points[index] = ControlPoint(index, position)

    def clear(self) -> None:
        self._points.clear()

    def lookup(self, index: int) -> Optional[np.ndarray]:
        """若 index 为控制点, 返回其目标坐标 (副本); 否则返回 None。"""
        point = self._points.get(int(index))
        if point is None:
            return None
        return point.position.copy()

    def indices(self) -> np.ndarray:
        """控制点顶点索引, 升序, shape (C,)。"""
        return np.array(sorted(self._points), dtype=np.int64)

    def positions(self) -> np.ndarray:
        """目标坐标, 顺序与 indices() 一致, shape (C, 3)。"""
        return self._stack([self._points[i] for i in sorted(self._points)])

    def positions_by_selection(
        self,
        selection: Iterable[int],
        invert: bool = False,
    ) -> np.ndarray:
        """
        返回索引属于 (invert=True 时为不属于) selection 的控制点目标坐标。

        Returns
        -------
        positions : np.ndarray, shape (K, 3)
            按顶点索引升序排列。
        """
        selected = {int(i) for i in selection}
        points = [
            self._points[i] for i in sorted(self._points)
            if (i in selected) != invert
        ]
        return self._stack(points)

    def as_dict(self) -> Dict[int, np.ndarray]:
        """{顶点索引: 目标坐标} 字典 (坐标为副本)。"""
        return {i: p.position.copy() for i, p in self._points.items()}

    @staticmethod
    def _stack(points: List[ControlPoint]) -> np.ndarray:
        if not points:
            return np.zeros((0, 3), dtype=np.float64)
        return np.stack([p.position for p in points])

    def __contains__(self, index: object) -> bool:
        return index in self._points

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[ControlPoint]:
        for i in sorted(self._points):
            yield self._points[i]

    def __repr__(self) -> str:
        return f"ControlPointSet(mesh={self.mesh!r}, points={len(self)})"
