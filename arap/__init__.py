"""
ARAP (As-Rigid-As-Possible) 曲面变形。

    >>> from arap import deform
    >>> p_deformed = deform(vertices, faces, {0: [1.0, 0.0, 0.0]})
"""

from .cholesky import CholeskyFactor
from .errors import ArapError, DegenerateGeometryError, SolveError
from .mesh import ControlPoint, ControlPointSet, MeshData
from .operators import WEIGHT_EPS, assemble_laplacian, build_neighbors, compute_weights
from .rotations import estimate_rotation, estimate_rotations
from .solver import (
    ArapSolver,
    SolveContext,
    assemble_rhs,
    create_solver,
    deform,
    solve,
)

__all__ = [
    "ArapError",
    "ArapSolver",
    "CholeskyFactor",
    "ControlPoint",
    "ControlPointSet",
    "DegenerateGeometryError",
    "MeshData",
    "SolveContext",
    "SolveError",
    "WEIGHT_EPS",
    "assemble_laplacian",
    "assemble_rhs",
    "build_neighbors",
    "compute_weights",
    "create_solver",
    "deform",
    "estimate_rotation",
    "estimate_rotations",
    "solve",
]

__version__ = "0.1.0"
