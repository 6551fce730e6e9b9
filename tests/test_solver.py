import numpy as np
import pytest

from arap import (
    ArapSolver,
    CholeskyFactor,
    ControlPoint,
    ControlPointSet,
    DegenerateGeometryError,
    MeshData,
    SolveError,
    assemble_laplacian,
    assemble_rhs,
    build_neighbors,
    compute_weights,
    create_solver,
    deform,
    solve,
)

from conftest import random_rotation_matrix

CORNERS = [0, 2, 6, 8]
FREE = [1, 3, 4, 5, 7]


def corner_constraints(V, moved=8, offset=(1.0, 0.0, 0.0)):
    targets = {c: V[c].copy() for c in CORNERS}
    targets[moved] = V[moved] + np.asarray(offset)
    return targets


# -----------------------------------------------------------------------------
# global step
# -----------------------------------------------------------------------------

def test_rhs_matches_laplacian_for_identity_rotations(grid):
    V, F = grid
    nb = build_neighbors(V, F)
    W = compute_weights(V, F)
    targets = {c: V[c] for c in CORNERS}
    R = np.tile(np.eye(3), (len(V), 1, 1))

    b = assemble_rhs(V, R, nb, W, targets)
    L = assemble_laplacian(W, targets)
    np.testing.assert_allclose(L @ V, b, atol=1e-10)
    for c in CORNERS:
        np.testing.assert_array_equal(b[c], V[c])


def test_rhs_ignores_constrained_neighbors(grid):
    V, F = grid
    nb = build_neighbors(V, F)
    W = compute_weights(V, F)
    R = np.tile(np.eye(3), (len(V), 1, 1))
    b = assemble_rhs(V, R, nb, W, {c: V[c] for c in CORNERS})
    # vertex 5 only keeps its edge to the centre: w=1, p5 - p4 = (1, 0, 0)
    np.testing.assert_allclose(b[5], [1.0, 0.0, 0.0], atol=1e-10)


def test_solve_pins_constrained_rows(grid):
    V, F = grid
    nb = build_neighbors(V, F)
    W = compute_weights(V, F)
    targets = corner_constraints(V)
    R = np.tile(np.eye(3), (len(V), 1, 1))

    b = assemble_rhs(V, R, nb, W, targets)
    L = assemble_laplacian(W, targets, regularization=1e-8)
    x = solve(L, b)
    assert x.shape == (9, 3)
    for c, q in targets.items():
        np.testing.assert_allclose(x[c], q, atol=1e-12)


def test_solve_singular_system():
    import scipy.sparse as sp
    with pytest.raises(SolveError):
        solve(sp.csr_matrix((3, 3)), np.zeros((3, 3)))


# -----------------------------------------------------------------------------
# full deformation
# -----------------------------------------------------------------------------

def test_identity_case_grid(grid):
    V, F = grid
    out = deform(V, F, {c: V[c] for c in CORNERS})
    np.testing.assert_allclose(out, V, atol=1e-6)


def test_identity_case_octahedron(octa):
    V, F = octa
    out = deform(V, F, {4: V[4], 5: V[5]})
    np.testing.assert_allclose(out, V, atol=1e-6)


def test_moved_corner_grid(grid):
    V, F = grid
    targets = corner_constraints(V)
    out = deform(V, F, targets)

    assert out.shape == V.shape
    assert np.all(np.isfinite(out))
    for c, q in targets.items():
        np.testing.assert_allclose(out[c], q, atol=1e-9)

    displacement = np.linalg.norm(out[FREE] - V[FREE], axis=1)
    assert displacement.max() > 1e-3
    # free vertices keep the rest centroid
    np.testing.assert_allclose(out[FREE].mean(axis=0), V.mean(axis=0), atol=1e-9)


def test_constraint_satisfaction_octahedron(octa):
    V, F = octa
    targets = {4: V[4] + [0.2, 0.0, 0.3], 5: V[5] + [0.0, 0.0, -0.5]}
    out = deform(V, F, targets)
    for c, q in targets.items():
        np.testing.assert_allclose(out[c], q, atol=1e-9)


def test_rigid_motion_invariance(octa, rng):
    V, F = octa
    targets = {4: V[4], 5: V[5] + np.array([0.1, 0.2, -0.5])}
    out = deform(V, F, targets)

    Q = random_rotation_matrix(rng)
    t = np.array([1.5, -0.7, 3.0])
    V_moved = V @ Q.T + t
    targets_moved = {i: Q @ q + t for i, q in targets.items()}
    out_moved = deform(V_moved, F, targets_moved)

    np.testing.assert_allclose(out_moved, out @ Q.T + t, atol=1e-6)


def test_deterministic(octa):
    V, F = octa
    targets = {4: V[4], 5: V[5] + np.array([0.0, 0.3, -0.4])}
    np.testing.assert_array_equal(
        deform(V, F, targets, backend="superlu"),
        deform(V, F, targets, backend="superlu"),
    )


def test_iteration_count_and_callback(grid):
    V, F = grid
    seen = []

    def callback(iteration, positions):
        seen.append((iteration, positions.copy()))

    solver = create_solver(iterations=4, step_callback=callback)
    out = solver.execute(MeshData(V, F), corner_constraints(V))

    assert [i for i, _ in seen] == [0, 1, 2, 3]
    np.testing.assert_allclose(seen[-1][1], out, atol=1e-10)


def test_control_point_inputs_agree(grid):
    V, F = grid
    mesh = MeshData(V, F)
    targets = corner_constraints(V)

    cps = ControlPointSet(mesh)
    for c in CORNERS:
        cps.add(c)
    cps.set_position(8, targets[8])

    as_pairs = list(targets.items())
    as_points = [ControlPoint(i, q) for i, q in targets.items()]

    solver = create_solver()
    expected = solver.execute(mesh, targets)
    for cp in (cps, as_pairs, as_points):
        np.testing.assert_allclose(solver.execute(mesh, cp), expected, atol=1e-10)


def test_prepare_context(grid):
    V, F = grid
    ctx = ArapSolver().prepare(MeshData(V, F), corner_constraints(V))
    assert ctx.num_free == 5
    np.testing.assert_allclose(ctx.rest.mean(axis=0), 0.0, atol=1e-10)
    np.testing.assert_allclose(ctx.targets[8], V[8] + [1.0, 0.0, 0.0] - V.mean(axis=0), atol=1e-10)
    assert ctx.factor.is_factorized


def test_injected_cholesky_factor(grid):
    V, F = grid
    targets = corner_constraints(V)
    chol = CholeskyFactor("superlu")
    assert not chol.is_factorized

    solver = ArapSolver(cholesky_factor=chol)
    assert solver.cholesky_factor is chol
    out = solver.execute(MeshData(V, F), targets)

    assert chol.is_factorized
    assert chol.backend == "superlu"
    assert solver.prepare(MeshData(V, F), targets).factor is chol
    np.testing.assert_allclose(out, deform(V, F, targets), atol=1e-8)


def test_create_solver_builds_requested_backend():
    solver = create_solver(backend="superlu")
    assert isinstance(solver.cholesky_factor, CholeskyFactor)
    assert solver.cholesky_factor.backend == "superlu"


def test_verbose_output(grid, capsys):
    V, F = grid
    create_solver(iterations=2, verbose=True).execute(MeshData(V, F), corner_constraints(V))
    out = capsys.readouterr().out
    assert "[ARAP]" in out
    assert out.count("2/2") == 1


def test_silent_by_default(grid, capsys):
    V, F = grid
    deform(V, F, corner_constraints(V))
    assert capsys.readouterr().out == ""


# -----------------------------------------------------------------------------
# failures
# -----------------------------------------------------------------------------

def test_all_vertices_constrained(octa):
    V, F = octa
    with pytest.raises(SolveError):
        deform(V, F, {i: V[i] for i in range(len(V))})


def test_duplicate_control_point(grid):
    V, F = grid
    with pytest.raises(ValueError):
        deform(V, F, [(0, V[0]), (0, V[0] + 1.0)])


def test_control_point_out_of_range(grid):
    V, F = grid
    with pytest.raises(ValueError):
        deform(V, F, {9: [0.0, 0.0, 0.0]})


def test_isolated_vertex(grid):
    V, F = grid
    V = np.vstack([V, [5.0, 5.0, 0.0]])
    with pytest.raises(ValueError):
        deform(V, F, {0: V[0]})


def test_degenerate_geometry():
    V = np.array([
        [0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0], [1.0, 1.0, 0.0],
    ])
    F = np.array([[0, 1, 2], [0, 1, 3]])
    with pytest.raises(DegenerateGeometryError):
        deform(V, F, {3: V[3]})


@pytest.mark.parametrize("kwargs", [
    {"iterations": 0},
    {"regularization": -1e-3},
    {"backend": "eigen"},
])
def test_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        create_solver(**kwargs)
