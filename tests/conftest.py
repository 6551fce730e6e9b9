import numpy as np
import pytest


def grid_mesh(rows=3, cols=3):
    """Regular planar grid, vertex r*cols + c at (c, r, 0), quads split along (r,c)-(r+1,c+1)."""
    V = np.array([[c, r, 0.0] for r in range(rows) for c in range(cols)], dtype=np.float64)
    F = []
    for r in range(rows - 1):
        for c in range(cols - 1):
            a = r * cols + c
            b, d, e = a + 1, a + cols + 1, a + cols
            F.append([a, b, d])
            F.append([a, d, e])
    return V, np.array(F, dtype=np.int32)


def octahedron():
    V = np.array([
        [1.0, 0.0, 0.0], [-1.0, 0.0, 0.0],
        [0.0, 1.0, 0.0], [0.0, -1.0, 0.0],
        [0.0, 0.0, 1.0], [0.0, 0.0, -1.0],
    ])
    F = np.array([
        [0, 2, 4], [2, 1, 4], [1, 3, 4], [3, 0, 4],
        [2, 0, 5], [1, 2, 5], [3, 1, 5], [0, 3, 5],
    ], dtype=np.int32)
    return V, F


def random_rotation_matrix(rng):
    # Sample a random 3x3 orthonormal matrix via QR
    A = rng.normal(size=(3, 3))
    Q, _ = np.linalg.qr(A)
    # Ensure right-handed
    if np.linalg.det(Q) < 0:
        Q[:, -1] *= -1
    return Q


@pytest.fixture
def grid():
    return grid_mesh()


@pytest.fixture
def octa():
    return octahedron()


@pytest.fixture
def rng():
    return np.random.default_rng(0)
