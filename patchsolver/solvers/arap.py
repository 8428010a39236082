"""
As-Rigid-As-Possible 메쉬 변형 솔버

unknown: 정점 위치 (V, 3) + 정점별 회전각 (V, 3)
에너지: 제약 정점 fitting + rest shape prior + 간선별 ARAP regularizer
(arap_terms_numba 참조)

패치 = 연속 정점 블록 (block_size개), 다른 블록에 이웃이 있는 정점이 경계.

Constraint ramp (solve_with_constraint_ramp):
    제약 목표를 rest 위치에서 최종 목표로 num_steps - 1 단계에 걸쳐 이동하며
    단계마다 Gauss-Newton을 수행한다. early_out이면 첫 단계 후 종료.
"""

import time
import logging
import numpy as np
from typing import Optional, Callable, Sequence

from .frontend import PatchSolverBase
from .registry import PlanRegistry
from ..core.patches import block_layout
from ..core.optimization.gauss_newton import NonlinearProblem
from ..core.optimization.row_system import allocate_rows
from ..core.optimization.grid_terms_numba import sqrt_weight
from ..core.optimization.arap_terms_numba import (
    UNKNOWNS_PER_VERTEX,
    evaluate_arap_rows,
    apply_arap_step,
    count_arap_rows,
    allocate_rotation_buffers,
)
from ..models.parameters import SolverParameters
from ..models.results import MeshSolveResult, SOLVE_EMPTY_DOMAIN

_logger = logging.getLogger(__name__)


class ARAPProblem(NonlinearProblem):
    name = 'arap'

    def __init__(self, x, layout, rows, rest, targets,
                 neighbour_offset, neighbour_idx):
        super().__init__(x, layout, rows)
        self.rest = rest
        self.targets = targets
        self.neighbour_offset = neighbour_offset
        self.neighbour_idx = neighbour_idx
        self._rot = allocate_rotation_buffers(len(rest), x.dtype)

    def evaluate(self, x, params: SolverParameters) -> int:
        evaluate_arap_rows(
            x, self.rest, self.targets, self.neighbour_offset, self.neighbour_idx,
            sqrt_weight(params.weight_fitting),
            sqrt_weight(params.weight_prior),
            sqrt_weight(params.weight_regularizer),
            self.rows.idx, self.rows.val, self.rows.f, self.rows.owner,
            self._rot,
        )
        return 0

    def apply_step(self, x, delta):
        apply_arap_step(x, delta)


def adjacency_from_edges(n_vertices: int, edges: np.ndarray):
    """
    무방향 간선 (E, 2) → 양방향 CSR (neighbour_offset, neighbour_idx)

    이웃은 정점 인덱스 오름차순, 중복 간선/자기 루프는 제거.
    """
    edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
    if len(edges) > 0 and (edges.min() < 0 or edges.max() >= n_vertices):
        raise ValueError("edge index out of range")
    edges = edges[edges[:, 0] != edges[:, 1]]
    directed = np.concatenate([edges, edges[:, ::-1]], axis=0)
    directed = np.unique(directed, axis=0)

    counts = np.bincount(directed[:, 0], minlength=n_vertices)
    offset = np.zeros(n_vertices + 1, dtype=np.int64)
    offset[1:] = np.cumsum(counts)
    return offset, directed[:, 1].astype(np.int64).copy()


def edges_from_faces(faces: np.ndarray) -> np.ndarray:
    """삼각형 (F, 3) → 무방향 간선 (E, 2)"""
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    edges = np.concatenate([faces[:, [0, 1]], faces[:, [1, 2]], faces[:, [2, 0]]])
    edges = np.sort(edges, axis=1)
    return np.unique(edges, axis=0)


class ARAPMeshSolver(PatchSolverBase):
    """
    ARAP 메쉬 변형

    Usage:
        solver = ARAPMeshSolver.from_faces(vertices, faces, registry=registry)
        solver.set_constraints([0, 5], [[0, 0, 1], [1, 0, 1]])
        result = solver.solve_with_constraint_ramp(params, num_steps=5)
        result.positions
    """

    problem_name = 'arap'

    def __init__(self, vertices: np.ndarray, neighbour_offset: np.ndarray,
                 neighbour_idx: np.ndarray,
                 registry: Optional[PlanRegistry] = None,
                 backend: str = 'native_block',
                 block_size: int = 64,
                 warmup: bool = False):
        vertices = np.asarray(vertices, dtype=np.float64)
        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise ValueError(f"vertices must be (V, 3), got {vertices.shape}")
        n_vertices = len(vertices)
        neighbour_offset = np.asarray(neighbour_offset, dtype=np.int64)
        neighbour_idx = np.asarray(neighbour_idx, dtype=np.int64)
        if neighbour_offset.shape != (n_vertices + 1,):
            raise ValueError(
                f"neighbour_offset must have {n_vertices + 1} entries, "
                f"got {neighbour_offset.shape}")
        if neighbour_offset[-1] != len(neighbour_idx):
            raise ValueError("neighbour_offset[-1] does not match neighbour_idx length")
        if len(neighbour_idx) > 0 and (neighbour_idx.min() < 0
                                       or neighbour_idx.max() >= n_vertices):
            raise ValueError("neighbour index out of range")

        self.rest = vertices.copy()
        self.neighbour_offset = neighbour_offset
        self.neighbour_idx = neighbour_idx
        self.block_size = block_size
        self.layout = block_layout(n_vertices, block_size, UNKNOWNS_PER_VERTEX,
                                   neighbour_offset, neighbour_idx)

        self.positions = self.rest.copy()
        self.angles = np.zeros_like(self.rest)
        self._constraint_idx = np.empty(0, dtype=np.int64)
        self._constraint_targets = np.empty((0, 3), dtype=np.float64)

        super().__init__(registry, backend, warmup)

    @classmethod
    def from_edges(cls, vertices, edges, **kwargs) -> 'ARAPMeshSolver':
        offset, idx = adjacency_from_edges(len(vertices), edges)
        return cls(vertices, offset, idx, **kwargs)

    @classmethod
    def from_faces(cls, vertices, faces, **kwargs) -> 'ARAPMeshSolver':
        return cls.from_edges(vertices, edges_from_faces(faces), **kwargs)

    @property
    def n_vertices(self) -> int:
        return len(self.rest)

    def reset(self):
        """위치 = rest, 회전각 = 0"""
        self.positions = self.rest.copy()
        self.angles = np.zeros_like(self.rest)

    def set_constraints(self, indices: Sequence[int], targets: np.ndarray):
        indices = np.asarray(indices, dtype=np.int64).ravel()
        targets = np.asarray(targets, dtype=np.float64).reshape(-1, 3)
        if len(indices) != len(targets):
            raise ValueError(
                f"{len(indices)} constraint indices but {len(targets)} targets")
        if len(indices) > 0 and (indices.min() < 0 or indices.max() >= self.n_vertices):
            raise ValueError("constraint index out of range")
        self._constraint_idx = indices
        self._constraint_targets = targets

    def constraint_targets(self, alpha: float = 1.0) -> np.ndarray:
        """
        (V, 3) 목표: 비제약 정점은 -inf, 제약 정점은 (1 - alpha) * rest + alpha * target
        """
        targets = np.full((self.n_vertices, 3), -np.inf)
        idx = self._constraint_idx
        targets[idx] = (1.0 - alpha) * self.rest[idx] + alpha * self._constraint_targets
        return targets

    def solve(self, params: SolverParameters, targets: Optional[np.ndarray] = None,
              callback: Optional[Callable[[int, np.ndarray], bool]] = None) -> MeshSolveResult:
        """
        현재 위치/회전각에서 Gauss-Newton (self.positions, self.angles 갱신)

        Args:
            targets: (V, 3) 제약 목표 (None이면 constraint_targets(1.0))
        """
        self._check_open()
        params.validate()
        if targets is None:
            targets = self.constraint_targets(1.0)
        targets = np.asarray(targets, dtype=np.float64)
        if targets.shape != (self.n_vertices, 3):
            raise ValueError(
                f"targets must be ({self.n_vertices}, 3), got {targets.shape}")

        start_time = time.time()
        if self.n_vertices == 0:
            return MeshSolveResult(status=SOLVE_EMPTY_DOMAIN, backend=self.backend,
                                   positions=self.positions.copy(),
                                   angles=self.angles.copy())

        dtype = params.dtype
        x = np.empty((self.n_vertices, UNKNOWNS_PER_VERTEX), dtype=dtype)
        x[:, :3] = self.positions
        x[:, 3:] = self.angles
        x = x.reshape(-1)

        n_rows = count_arap_rows(self.n_vertices, len(self.neighbour_idx))
        problem = ARAPProblem(
            x, self.layout, allocate_rows(n_rows, dtype),
            self.rest.astype(dtype), targets.astype(dtype),
            self.neighbour_offset, self.neighbour_idx,
        )

        base = self.solver.solve(problem, params, callback)

        state = problem.x.reshape(self.n_vertices, UNKNOWNS_PER_VERTEX).astype(np.float64)
        self.positions = state[:, :3].copy()
        self.angles = state[:, 3:].copy()

        return MeshSolveResult(
            status=base.status,
            backend=base.backend,
            iterations=base.iterations,
            n_unknowns=base.n_unknowns,
            n_patches=base.n_patches,
            cost_history=base.cost_history,
            n_degenerate=base.n_degenerate,
            processing_time=time.time() - start_time,
            positions=self.positions.copy(),
            angles=self.angles.copy(),
        )

    def solve_with_constraint_ramp(self, params: SolverParameters, num_steps: int = 2,
                                   early_out: bool = False) -> MeshSolveResult:
        """
        제약을 단계적으로 이동하며 반복 solve

        단계 i (1 <= i < num_steps): alpha = i / (num_steps - 1)
        """
        if num_steps < 2:
            raise ValueError(f"num_steps must be >= 2, got {num_steps}")

        start_time = time.time()
        self.reset()
        total = None
        step_costs = []

        for i in range(1, num_steps):
            alpha = i / (num_steps - 1)
            step = self.solve(params, self.constraint_targets(alpha))
            step_costs.append(step.final_cost)
            _logger.debug(f"ARAP ramp {i}/{num_steps - 1}: alpha={alpha:.3f}, "
                          f"cost={step.final_cost:.6e}")

            if total is None:
                total = step
            else:
                total.iterations += step.iterations
                total.cost_history.extend(step.cost_history[1:])
                total.n_degenerate = step.n_degenerate
                total.status = step.status
            if early_out:
                break

        total.step_costs = step_costs
        total.positions = self.positions.copy()
        total.angles = self.angles.copy()
        total.processing_time = time.time() - start_time

        _logger.info(f"ARAP 완료: {len(step_costs)}단계, {total.iterations}회, "
                     f"final cost={total.final_cost:.6e}")
        return total
