"""
Backend 구현

    native_block   패치 분할 Gauss-Newton + 블록 PCG (기본값)
    compiled_plan  전체 도메인을 패치 1개로 보는 Gauss-Newton + PCG
    library_nlls   scipy.optimize.least_squares (trf + lsmr, sparse Jacobian)
"""

import time
import logging
import numpy as np
from scipy.optimize import least_squares

from .base import Solver
from ..core.patches import single_patch_layout
from ..core.optimization.gauss_newton import BlockLinearSolver, run_gauss_newton
from ..models.results import (
    SolveResult,
    SOLVE_SUCCESS,
    SOLVE_EMPTY_DOMAIN,
    SOLVE_NO_ITERATIONS,
)

_logger = logging.getLogger(__name__)


class NativeBlockSolver(Solver):
    """문제의 패치 레이아웃 그대로 블록 PCG"""

    name = 'native_block'

    def __init__(self, definition=None):
        super().__init__(definition)
        self._linear = BlockLinearSolver()

    def solve(self, problem, params, callback=None):
        return run_gauss_newton(problem, params, self._linear, callback,
                                backend=self.name)

    def close(self):
        self._linear.release()
        super().close()


class CompiledPlanSolver(Solver):
    """
    전체 도메인 단일 패치 plan

    plan 레이아웃과 버퍼는 unknown 수가 바뀔 때만 다시 만든다.
    """

    name = 'compiled_plan'

    def __init__(self, definition=None):
        super().__init__(definition)
        self._linear = BlockLinearSolver(single_patch_layout(0))

    def solve(self, problem, params, callback=None):
        if self._linear.layout.n_unknowns != problem.n_unknowns:
            self._linear.layout = single_patch_layout(problem.n_unknowns)
        return run_gauss_newton(problem, params, self._linear, callback,
                                backend=self.name)

    def close(self):
        self._linear.release()
        super().close()


class LibraryNLLSSolver(Solver):
    """
    scipy.optimize.least_squares 기준 backend

    shading 가중치는 스케줄의 최종값으로 고정하고,
    함수 평가 횟수는 10 * n_nonlinear_iterations로 제한한다.
    """

    name = 'library_nlls'
    MAX_NFEV_PER_ITERATION = 10

    def solve(self, problem, params, callback=None):
        start_time = time.time()
        params.validate()

        n = problem.n_unknowns
        result = SolveResult(backend=self.name, n_unknowns=n, n_patches=1)
        if n == 0:
            result.status = SOLVE_EMPTY_DOMAIN
            return result

        final_params = params.at_iteration(max(params.n_nonlinear_iterations - 1, 0))
        dtype = problem.dtype

        result.n_degenerate = problem.evaluate(problem.x, final_params)
        result.cost_history.append(problem.rows.cost())

        if params.n_nonlinear_iterations == 0:
            result.status = SOLVE_NO_ITERATIONS
            result.processing_time = time.time() - start_time
            return result

        if callback is not None:
            _logger.debug("library_nlls: early-out callback은 사용되지 않음")

        def residuals(z):
            problem.evaluate(z.astype(dtype), final_params)
            return problem.rows.f.astype(np.float64)

        def jacobian(z):
            problem.evaluate(z.astype(dtype), final_params)
            return problem.rows.to_csr(n)

        x0 = problem.x.astype(np.float64)
        solution = least_squares(
            residuals, x0, jac=jacobian,
            method='trf', tr_solver='lsmr',
            max_nfev=self.MAX_NFEV_PER_ITERATION * params.n_nonlinear_iterations,
        )

        problem.apply_step(problem.x, (solution.x - x0).astype(dtype))

        result.n_degenerate = problem.evaluate(problem.x, final_params)
        result.cost_history.append(problem.rows.cost())
        result.iterations = int(solution.nfev)
        result.status = SOLVE_SUCCESS
        result.processing_time = time.time() - start_time

        _logger.info(f"[{problem.name}] least_squares 완료: nfev={solution.nfev}, "
                     f"cost {result.initial_cost:.6e} → {result.final_cost:.6e}, "
                     f"{result.processing_time:.3f}s ({solution.message})")
        return result


BACKENDS = {
    NativeBlockSolver.name: NativeBlockSolver,
    CompiledPlanSolver.name: CompiledPlanSolver,
    LibraryNLLSSolver.name: LibraryNLLSSolver,
}


def create_solver(backend: str, definition=None) -> Solver:
    if backend not in BACKENDS:
        raise ValueError(
            f"unknown backend '{backend}', expected one of {sorted(BACKENDS)}")
    return BACKENDS[backend](definition)
