"""
Gauss-Newton 드라이버 테스트
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from patchsolver.models.parameters import SolverParameters
from patchsolver.models.results import (
    SOLVE_SUCCESS,
    SOLVE_EMPTY_DOMAIN,
    SOLVE_EARLY_OUT,
    SOLVE_NO_ITERATIONS,
)
from patchsolver.core.patches import single_patch_layout
from patchsolver.core.optimization.row_system import allocate_rows
from patchsolver.core.optimization.gauss_newton import (
    NonlinearProblem,
    BlockLinearSolver,
    run_gauss_newton,
)


class RecordingProblem(NonlinearProblem):
    """x_i -> target_i, 가중치 = weight_fitting, 평가마다 shading 가중치 기록"""

    name = 'recording'

    def __init__(self, x, target):
        n = len(x)
        super().__init__(x, single_patch_layout(n), allocate_rows(n, x.dtype))
        self.target = target
        self.seen_weights = []

    def evaluate(self, x, params):
        self.seen_weights.append(params.weight_shading)
        sw = np.sqrt(params.weight_fitting)
        for i in range(len(x)):
            self.rows.idx[i, 0] = i
            self.rows.val[i, 0] = sw
            self.rows.f[i] = sw * (x[i] - self.target[i])
        return 0


class SquareProblem(NonlinearProblem):
    """x^2 = 4 (비선형, 해 x = 2)"""

    name = 'square'

    def __init__(self, x0):
        x = np.array([x0])
        super().__init__(x, single_patch_layout(1), allocate_rows(1))

    def evaluate(self, x, params):
        self.rows.idx[0, 0] = 0
        self.rows.val[0, 0] = 2.0 * x[0]
        self.rows.f[0] = x[0] * x[0] - 4.0
        return 0


def make_params(**kwargs):
    defaults = dict(n_nonlinear_iterations=3, n_linear_iterations=1,
                    n_patch_iterations=5, weight_fitting=1.0)
    defaults.update(kwargs)
    return SolverParameters(**defaults)


def test_shading_schedule_per_iteration():
    problem = RecordingProblem(np.zeros(3), np.ones(3))
    params = make_params(n_nonlinear_iterations=4,
                         weight_shading_start=0.5,
                         weight_shading_increment=0.25)

    run_gauss_newton(problem, params, BlockLinearSolver())

    # 가중치가 바뀌는 반복은 (적용 전, 적용 후) 2회 평가
    expected = [0.5, 0.5, 0.75, 0.75, 1.0, 1.0, 1.25, 1.25]
    np.testing.assert_allclose(problem.seen_weights, expected)


def test_constant_shading_weight_reuses_post_step_evaluation():
    problem = RecordingProblem(np.zeros(3), np.array([1.0, 2.0, 3.0]))
    params = make_params(n_nonlinear_iterations=4,
                         weight_shading_start=0.5,
                         weight_shading_increment=0.0)

    result = run_gauss_newton(problem, params, BlockLinearSolver())

    # 첫 선형화 1회 + 반복마다 적용 후 1회
    assert problem.seen_weights == [0.5] * 5
    assert len(result.cost_history) == 5
    np.testing.assert_allclose(problem.x, [1.0, 2.0, 3.0], atol=1e-12)


def test_reused_evaluation_keeps_newton_sequence():
    problem = SquareProblem(3.0)
    result = run_gauss_newton(problem, make_params(n_nonlinear_iterations=3),
                              BlockLinearSolver())

    x = 3.0
    expected = [(x * x - 4.0) ** 2]
    for _ in range(3):
        x = x - (x * x - 4.0) / (2.0 * x)
        expected.append((x * x - 4.0) ** 2)
    np.testing.assert_allclose(result.cost_history, expected, rtol=1e-10, atol=1e-24)
    assert problem.x[0] == pytest.approx(x)


def test_problem_interface_requires_evaluate():
    with pytest.raises(TypeError):
        NonlinearProblem(np.zeros(1), single_patch_layout(1), allocate_rows(1))


def test_linear_problem_converges_in_one_iteration():
    problem = RecordingProblem(np.zeros(3), np.array([1.0, -2.0, 3.0]))
    result = run_gauss_newton(problem, make_params(), BlockLinearSolver())

    assert result.status == SOLVE_SUCCESS
    assert result.iterations == 3
    assert len(result.cost_history) == 4
    assert result.initial_cost == pytest.approx(14.0)
    np.testing.assert_allclose(problem.x, [1.0, -2.0, 3.0], atol=1e-12)
    assert result.final_cost == pytest.approx(0.0, abs=1e-20)


def test_nonlinear_cost_decreases():
    problem = SquareProblem(3.0)
    result = run_gauss_newton(problem, make_params(n_nonlinear_iterations=6),
                              BlockLinearSolver())

    assert problem.x[0] == pytest.approx(2.0, rel=1e-8)
    assert all(b <= a for a, b in zip(result.cost_history, result.cost_history[1:]))


def test_iteration_sees_previous_step():
    problem = SquareProblem(3.0)
    run_gauss_newton(problem, make_params(n_nonlinear_iterations=1), BlockLinearSolver())
    # Newton: x1 = x0 - (x0^2 - 4) / (2 x0)
    assert problem.x[0] == pytest.approx(3.0 - 5.0 / 6.0)

    run_gauss_newton(problem, make_params(n_nonlinear_iterations=1), BlockLinearSolver())
    x1 = 3.0 - 5.0 / 6.0
    assert problem.x[0] == pytest.approx(x1 - (x1 * x1 - 4.0) / (2.0 * x1))


def test_callback_early_out():
    problem = SquareProblem(3.0)
    calls = []

    def callback(k, x):
        calls.append((k, float(x[0])))
        return k == 1

    result = run_gauss_newton(problem, make_params(n_nonlinear_iterations=5),
                              BlockLinearSolver(), callback)

    assert result.status == SOLVE_EARLY_OUT
    assert result.stopped_early
    assert result.iterations == 2
    assert len(result.cost_history) == 3
    assert [k for k, _ in calls] == [0, 1]


def test_callback_on_last_iteration_is_success():
    problem = SquareProblem(3.0)
    result = run_gauss_newton(problem, make_params(n_nonlinear_iterations=2),
                              BlockLinearSolver(), lambda k, x: k == 1)

    assert result.status == SOLVE_SUCCESS
    assert result.iterations == 2


def test_zero_iterations():
    problem = SquareProblem(3.0)
    result = run_gauss_newton(problem, make_params(n_nonlinear_iterations=0),
                              BlockLinearSolver())

    assert result.status == SOLVE_NO_ITERATIONS
    assert result.iterations == 0
    assert result.cost_history == [pytest.approx(25.0)]
    assert problem.x[0] == 3.0


def test_empty_problem():
    problem = RecordingProblem(np.zeros(0), np.zeros(0))
    result = run_gauss_newton(problem, make_params(), BlockLinearSolver())

    assert result.status == SOLVE_EMPTY_DOMAIN
    assert result.cost_history == []
    assert problem.seen_weights == []


def test_invalid_parameters_raise():
    problem = SquareProblem(3.0)
    with pytest.raises(ValueError):
        run_gauss_newton(problem, make_params(n_linear_iterations=-1),
                         BlockLinearSolver())
    with pytest.raises(ValueError):
        run_gauss_newton(problem, make_params(precision='half'),
                         BlockLinearSolver())


def test_linear_solver_reuses_buffers():
    linear = BlockLinearSolver()
    problem = RecordingProblem(np.zeros(3), np.ones(3))
    run_gauss_newton(problem, make_params(), linear)
    buffers = linear._buffers

    other = RecordingProblem(np.zeros(2), np.ones(2))
    run_gauss_newton(other, make_params(), linear)
    assert linear._buffers is buffers

    linear.release()
    assert linear._buffers is None
