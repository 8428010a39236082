"""
ARAP 메쉬 변형 테스트
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from patchsolver.models.parameters import SolverParameters
from patchsolver.models.results import SOLVE_SUCCESS, SOLVE_EMPTY_DOMAIN
from patchsolver.solvers.registry import PlanRegistry
from patchsolver.solvers.arap import (
    ARAPMeshSolver,
    adjacency_from_edges,
    edges_from_faces,
)
from patchsolver.core.optimization.row_system import allocate_rows
from patchsolver.core.optimization.arap_terms_numba import (
    rotation_and_derivatives,
    evaluate_arap_rows,
    apply_arap_step,
    wrap_angles,
    count_arap_rows,
    allocate_rotation_buffers,
)


TETRA = np.array([
    [0.0, 0.0, 0.0],
    [1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
])
TETRA_FACES = np.array([[0, 1, 2], [0, 1, 3], [0, 2, 3], [1, 2, 3]])


def arap_params(n_iter=2, **kwargs):
    defaults = dict(
        n_nonlinear_iterations=n_iter,
        n_linear_iterations=1,
        n_patch_iterations=60,
        weight_fitting=1.0,
        weight_regularizer=1.0,
    )
    defaults.update(kwargs)
    return SolverParameters(**defaults)


@pytest.fixture
def registry():
    return PlanRegistry()


# =============================================================================
#  Adjacency
# =============================================================================

def test_adjacency_from_edges():
    offset, idx = adjacency_from_edges(3, [[0, 1], [1, 2], [2, 1], [0, 0]])

    np.testing.assert_array_equal(offset, [0, 1, 3, 4])
    np.testing.assert_array_equal(idx, [1, 0, 2, 1])


def test_adjacency_out_of_range():
    with pytest.raises(ValueError):
        adjacency_from_edges(2, [[0, 2]])


def test_edges_from_faces():
    edges = edges_from_faces([[0, 1, 2], [0, 2, 3]])
    np.testing.assert_array_equal(edges, [[0, 1], [0, 2], [0, 3], [1, 2], [2, 3]])


# =============================================================================
#  Rotation / angle wrapping
# =============================================================================

def rotation(angles):
    R = np.zeros((3, 3))
    d = np.zeros((3, 3, 3))
    rotation_and_derivatives(angles[0], angles[1], angles[2], R, d[0], d[1], d[2])
    return R, d


def test_rotation_is_orthonormal():
    R, _ = rotation([0.3, -0.7, 1.1])
    np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-12)
    assert np.linalg.det(R) == pytest.approx(1.0)


def test_rotation_order_z_y_x():
    R, _ = rotation([0.0, 0.0, np.pi / 2])
    np.testing.assert_allclose(R @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], atol=1e-12)

    R, _ = rotation([np.pi / 2, 0.0, 0.0])
    np.testing.assert_allclose(R @ [0.0, 1.0, 0.0], [0.0, 0.0, 1.0], atol=1e-12)


def test_rotation_derivatives_match_finite_differences():
    angles = np.array([0.4, -0.2, 0.9])
    _, d = rotation(angles)
    eps = 1e-6
    for a in range(3):
        plus = angles.copy()
        minus = angles.copy()
        plus[a] += eps
        minus[a] -= eps
        fd = (rotation(plus)[0] - rotation(minus)[0]) / (2 * eps)
        np.testing.assert_allclose(d[a], fd, atol=1e-8)


def test_wrap_angles():
    wrapped = wrap_angles([np.pi, -np.pi, 1.5 * np.pi, 0.0, 2.0])
    np.testing.assert_allclose(wrapped, [np.pi, np.pi, -0.5 * np.pi, 0.0, 2.0])


def test_apply_step_wraps_only_angles():
    x = np.zeros(6)
    apply_arap_step(x, np.array([4.0, -4.0, 0.5, 3.5, -3.5, 0.1]))

    np.testing.assert_allclose(x[:3], [4.0, -4.0, 0.5])
    np.testing.assert_allclose(x[3:], [3.5 - 2 * np.pi, 2 * np.pi - 3.5, 0.1])


# =============================================================================
#  Residual kernel
# =============================================================================

def test_edge_row_layout_and_jacobian():
    offset, idx = adjacency_from_edges(4, edges_from_faces(TETRA_FACES))
    n_rows = count_arap_rows(4, len(idx))
    targets = np.full((4, 3), -np.inf)
    targets[0] = TETRA[0]

    rng = np.random.default_rng(0)
    x = np.zeros(24)
    x.reshape(4, 6)[:, :3] = TETRA + 0.1 * rng.normal(size=(4, 3))
    x.reshape(4, 6)[:, 3:] = 0.3 * rng.normal(size=(4, 3))

    def evaluate(z):
        rows = allocate_rows(n_rows)
        evaluate_arap_rows(z, TETRA, targets, offset, idx, 1.0, 0.5, 2.0,
                           rows.idx, rows.val, rows.f, rows.owner,
                           allocate_rotation_buffers(4))
        return rows

    rows = evaluate(x)
    assert rows.n_rows == 24 + 3 * 12
    # 제약 없는 정점의 fitting row는 비어 있다
    assert np.all(rows.idx[6:9] == -1)
    # 간선 row 소유자는 시작 정점
    np.testing.assert_array_equal(rows.owner[24:27], [0, 0, 0])

    J = rows.to_csr(24).toarray()
    eps = 1e-6
    J_fd = np.zeros_like(J)
    for j in range(24):
        plus = x.copy()
        minus = x.copy()
        plus[j] += eps
        minus[j] -= eps
        J_fd[:, j] = (evaluate(plus).f - evaluate(minus).f) / (2 * eps)

    np.testing.assert_allclose(J, J_fd, atol=1e-7)


# =============================================================================
#  Solver
# =============================================================================

def test_rigid_translation(registry):
    shift = np.array([0.5, -0.25, 1.0])
    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry) as solver:
        solver.set_constraints([0, 1, 2], TETRA[:3] + shift)
        result = solver.solve(arap_params())

    assert result.status == SOLVE_SUCCESS
    assert result.n_vertices == 4
    np.testing.assert_allclose(result.positions, TETRA + shift, atol=1e-5)
    np.testing.assert_allclose(result.angles, 0.0, atol=1e-5)
    assert result.final_cost < 1e-10


def test_rigid_rotation_recovers_angles(registry):
    angle = 0.3
    R, _ = rotation([0.0, 0.0, angle])
    rotated = TETRA @ R.T

    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry) as solver:
        solver.set_constraints([0, 1, 2], rotated[:3])
        result = solver.solve(arap_params(n_iter=8))

    np.testing.assert_allclose(result.positions, rotated, atol=1e-5)
    np.testing.assert_allclose(result.angles[:, 2], angle, atol=1e-4)


def test_constraint_targets_interpolate_from_rest(registry):
    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry) as solver:
        solver.set_constraints([1], [[3.0, 0.0, 0.0]])
        targets = solver.constraint_targets(0.5)

    np.testing.assert_allclose(targets[1], [2.0, 0.0, 0.0])
    assert np.all(np.isneginf(targets[[0, 2, 3]]))


def test_constraint_ramp(registry):
    shift = np.array([0.0, 0.0, 2.0])
    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry) as solver:
        solver.set_constraints([0, 1, 2], TETRA[:3] + shift)
        result = solver.solve_with_constraint_ramp(arap_params(), num_steps=4)

    assert len(result.step_costs) == 3
    assert result.iterations == 3 * 2
    assert len(result.cost_history) == 1 + 3 * 2
    np.testing.assert_allclose(result.positions, TETRA + shift, atol=1e-5)


def test_constraint_ramp_early_out(registry):
    shift = np.array([0.0, 0.0, 2.0])
    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry) as solver:
        solver.set_constraints([0, 1, 2], TETRA[:3] + shift)
        result = solver.solve_with_constraint_ramp(arap_params(), num_steps=5,
                                                   early_out=True)

    assert len(result.step_costs) == 1
    # 첫 단계 목표는 rest에서 1/4 이동
    np.testing.assert_allclose(result.positions, TETRA + 0.25 * shift, atol=1e-5)


def test_constraint_ramp_restarts_from_rest(registry):
    shift = np.array([1.0, 0.0, 0.0])
    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry) as solver:
        solver.set_constraints([0, 1, 2], TETRA[:3] + shift)
        first = solver.solve_with_constraint_ramp(arap_params(), num_steps=2)
        second = solver.solve_with_constraint_ramp(arap_params(), num_steps=2)

    np.testing.assert_array_equal(first.positions, second.positions)


def test_constraint_ramp_requires_two_steps(registry):
    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry) as solver:
        with pytest.raises(ValueError):
            solver.solve_with_constraint_ramp(arap_params(), num_steps=1)


def test_invalid_constraints(registry):
    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry) as solver:
        with pytest.raises(ValueError):
            solver.set_constraints([0, 1], [[0.0, 0.0, 0.0]])
        with pytest.raises(ValueError):
            solver.set_constraints([7], [[0.0, 0.0, 0.0]])
        with pytest.raises(ValueError):
            solver.solve(arap_params(), targets=np.zeros((3, 3)))


def test_invalid_adjacency(registry):
    with pytest.raises(ValueError):
        ARAPMeshSolver(TETRA, np.array([0, 1, 2]), np.array([1, 0]), registry=registry)
    assert len(registry) == 0


def test_empty_mesh(registry):
    with ARAPMeshSolver(np.zeros((0, 3)), np.array([0]), np.array([], dtype=np.int64),
                        registry=registry) as solver:
        result = solver.solve(arap_params())

    assert result.status == SOLVE_EMPTY_DOMAIN
    assert result.n_vertices == 0


def test_multi_block_layout(registry):
    """정점 블록 2개 (경계 교환) 로도 강체 이동 복원"""
    shift = np.array([0.2, 0.1, -0.3])
    with ARAPMeshSolver.from_faces(TETRA, TETRA_FACES, registry=registry,
                                   block_size=2) as solver:
        assert solver.layout.n_patches == 2
        solver.set_constraints([0, 1, 2, 3], TETRA + shift)
        result = solver.solve(arap_params(n_iter=4, n_linear_iterations=300,
                                          n_patch_iterations=30))

    np.testing.assert_allclose(result.positions, TETRA + shift, atol=1e-5)
