"""
비선형 Gauss-Newton 드라이버

상태 전이:
    Init → {EvaluateResiduals → LinearSolve → ApplyStep} x n_nonlinear_iterations → Done

    - 반복 k의 shading 가중치 = weight_shading_start + k * weight_shading_increment
    - 반복 k+1은 반복 k의 step이 완전히 적용된 상태를 본다
    - callback(k, x)가 True를 반환하면 완료된 외부 반복 직후 종료 (early-out).
      callback은 x를 수정하지 않는다
    - 반복 k의 적용 후 평가는 cost 기록에 쓰이고, 반복 k+1의 shading 가중치가
      같으면 k+1의 선형화로 재사용된다 (반복당 평가 1회)

문제(problem)는 NonlinearProblem 인터페이스를 구현한다:
    x            현재 unknown 벡터 (in-place 갱신)
    layout       PatchLayout
    rows         RowSystem
    evaluate(x, params) -> 퇴화 residual 수
    apply_step(x, delta)
"""

import time
import logging
from abc import ABC, abstractmethod

import numpy as np
from typing import Optional, Callable

from ...models.parameters import SolverParameters
from ...models.results import (
    SolveResult,
    SOLVE_SUCCESS,
    SOLVE_EMPTY_DOMAIN,
    SOLVE_EARLY_OUT,
    SOLVE_NO_ITERATIONS,
)
from .pcg_numba import (
    solve_patches,
    apply_step,
    allocate_patch_buffers,
    buffers_fit,
)

_logger = logging.getLogger(__name__)


class NonlinearProblem(ABC):
    """Gauss-Newton으로 풀 수 있는 최소제곱 문제의 공통 인터페이스"""

    name = 'problem'

    def __init__(self, x, layout, rows):
        self.x = x
        self.layout = layout
        self.rows = rows

    @property
    def n_unknowns(self) -> int:
        return len(self.x)

    @property
    def dtype(self):
        return self.x.dtype

    @abstractmethod
    def evaluate(self, x, params: SolverParameters) -> int:
        """x에서 rows를 채우고 퇴화 residual 수를 반환"""

    def apply_step(self, x, delta):
        apply_step(x, delta)

    def cost(self, x, params: SolverParameters) -> float:
        self.evaluate(x, params)
        return self.rows.cost()


class BlockLinearSolver:
    """
    패치 PCG 선형 solver

    작업 버퍼는 인스턴스가 소유하고, layout이 커질 때만 재할당.
    """

    def __init__(self, layout=None):
        self.layout = layout
        self._buffers = None

    def buffers_for(self, layout, dtype):
        if not buffers_fit(self._buffers, layout.n_patches, layout.capacity,
                           layout.n_unknowns, dtype):
            self._buffers = allocate_patch_buffers(
                layout.n_patches, layout.capacity, layout.n_unknowns, dtype)
        return self._buffers

    def solve(self, problem: NonlinearProblem, params: SolverParameters):
        layout = self.layout if self.layout is not None else problem.layout
        buffers = self.buffers_for(layout, problem.dtype)
        return solve_patches(problem.rows, layout,
                             params.n_linear_iterations,
                             params.n_patch_iterations,
                             buffers)

    def release(self):
        self._buffers = None


def run_gauss_newton(problem: NonlinearProblem,
                     params: SolverParameters,
                     linear_solver: BlockLinearSolver,
                     callback: Optional[Callable[[int, np.ndarray], bool]] = None,
                     backend: str = 'native_block') -> SolveResult:
    """
    Gauss-Newton 외부 루프

    Args:
        problem: 문제 인스턴스 (problem.x가 in-place 갱신됨)
        params: 반복 횟수 / 가중치
        linear_solver: BlockLinearSolver
        callback: callback(iteration, x) -> True이면 조기 종료
        backend: 결과에 기록할 backend 이름

    Returns:
        SolveResult: cost_history[0]은 반복 전 비용,
                      cost_history[k+1]은 반복 k 적용 후 비용 (반복 k의 가중치)
    """
    start_time = time.time()
    params.validate()

    n = problem.n_unknowns
    layout = linear_solver.layout if linear_solver.layout is not None else problem.layout
    result = SolveResult(
        backend=backend,
        n_unknowns=n,
        n_patches=layout.n_patches,
    )

    if n == 0:
        result.status = SOLVE_EMPTY_DOMAIN
        result.processing_time = time.time() - start_time
        _logger.info(f"[{problem.name}] 활성 unknown 없음: solve 생략")
        return result

    x = problem.x
    n_iter = int(params.n_nonlinear_iterations)

    if n_iter == 0:
        result.n_degenerate = problem.evaluate(x, params.at_iteration(0))
        result.cost_history.append(problem.rows.cost())
        result.status = SOLVE_NO_ITERATIONS
        result.processing_time = time.time() - start_time
        return result

    status = SOLVE_SUCCESS
    # rows가 현재 x에서 평가된 shading 가중치 (None: 미평가)
    evaluated_weight = None

    for k in range(n_iter):
        iter_params = params.at_iteration(k)

        if evaluated_weight != iter_params.weight_shading:
            result.n_degenerate = problem.evaluate(x, iter_params)
        n_degenerate = result.n_degenerate
        cost = problem.rows.cost()
        if k == 0:
            result.cost_history.append(cost)

        delta = linear_solver.solve(problem, iter_params)
        problem.apply_step(x, delta)
        result.iterations = k + 1

        # 적용 후 비용 (같은 가중치 기준). 다음 반복의 가중치가 같으면
        # 이 평가를 그대로 선형화에 쓴다.
        result.n_degenerate = problem.evaluate(x, iter_params)
        evaluated_weight = iter_params.weight_shading
        cost_after = problem.rows.cost()
        result.cost_history.append(cost_after)

        _logger.debug(f"[{problem.name}] iter {k}: w_shading="
                      f"{iter_params.weight_shading:.4g}, cost {cost:.6e} → "
                      f"{cost_after:.6e}, degenerate={n_degenerate}")

        if callback is not None and callback(k, x):
            if k < n_iter - 1:
                status = SOLVE_EARLY_OUT
            break

    result.status = status
    result.processing_time = time.time() - start_time

    _logger.info(f"[{problem.name}] GN 완료 ({backend}): {result.iterations}회, "
                 f"cost {result.initial_cost:.6e} → {result.final_cost:.6e}, "
                 f"{result.processing_time:.3f}s")
    return result
