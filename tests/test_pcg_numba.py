"""
블록 패치 PCG 테스트
"""

import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))

from patchsolver.core.patches import grid_layout, single_patch_layout
from patchsolver.core.optimization.row_system import allocate_rows
from patchsolver.core.optimization.grid_terms_numba import evaluate_smoothing_rows
from patchsolver.core.optimization.pcg_numba import (
    solve_patches,
    allocate_patch_buffers,
    buffers_fit,
    apply_step,
)


def make_random_rows(n_unknowns=6, n_extra=10, seed=0, dtype=np.float64):
    """단위 row (정칙성 보장) + 무작위 결합 row"""
    rng = np.random.default_rng(seed)
    rows = allocate_rows(n_unknowns + n_extra, dtype)
    for i in range(n_unknowns):
        rows.idx[i, 0] = i
        rows.val[i, 0] = 1.0
        rows.f[i] = rng.normal()
    for k in range(n_unknowns, n_unknowns + n_extra):
        cols = rng.choice(n_unknowns, size=3, replace=False)
        rows.idx[k, :3] = cols
        rows.val[k, :3] = rng.normal(size=3)
        rows.f[k] = rng.normal()
    return rows


def make_smoothing_rows(w=8, h=8, seed=1):
    rng = np.random.default_rng(seed)
    n = w * h
    pixel_of = np.arange(n, dtype=np.int64)
    valid = np.ones(n, dtype=np.uint8)
    x = rng.normal(size=n)
    target = rng.normal(size=n)
    rows = allocate_rows(2 * n)
    evaluate_smoothing_rows(x, pixel_of, pixel_of, valid, target, w, h,
                            1.0, 0.3, 0.3, rows.idx, rows.val, rows.f, rows.owner)
    return rows


def direct_step(rows, n):
    JTJ, JTF = rows.normal_equations(n)
    return np.linalg.solve(JTJ.toarray(), -JTF)


def test_zero_patch_iterations_is_noop():
    rows = make_random_rows()
    layout = single_patch_layout(6)
    buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, 6)

    delta = solve_patches(rows, layout, 3, 0, buffers)

    np.testing.assert_array_equal(delta, np.zeros(6))


def test_zero_patch_iterations_on_grid_patches():
    rows = make_smoothing_rows()
    layout = grid_layout(8, 8, 4)
    buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, 64)

    delta = solve_patches(rows, layout, 5, 0, buffers)

    assert np.all(delta == 0.0)


def test_single_patch_matches_direct_solve():
    rows = make_random_rows()
    layout = single_patch_layout(6)
    buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, 6)

    delta = solve_patches(rows, layout, 1, 30, buffers)

    np.testing.assert_allclose(delta, direct_step(rows, 6), atol=1e-8)


def test_multi_patch_passes_converge_to_direct_solve():
    """색 sweep을 반복하면 전역 해로 수렴"""
    rows = make_smoothing_rows()
    layout = grid_layout(8, 8, 4, halo=2)
    buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, 64)

    delta = solve_patches(rows, layout, 60, 20, buffers)

    np.testing.assert_allclose(delta, direct_step(rows, 64), atol=1e-6)


def test_single_pass_is_block_local():
    """sweep 1회로는 패치 간 결합이 다 풀리지 않아 전역 해와 다르다"""
    rows = make_smoothing_rows()
    layout = grid_layout(8, 8, 4, halo=2)
    buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, 64)

    one_pass = solve_patches(rows, layout, 1, 50, buffers).copy()

    assert not np.allclose(one_pass, direct_step(rows, 64), atol=1e-6)


def test_float32_buffers():
    rows = make_random_rows(dtype=np.float32)
    layout = single_patch_layout(6)
    buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, 6, np.float32)

    delta = solve_patches(rows, layout, 2, 20, buffers)

    assert delta.dtype == np.float32
    np.testing.assert_allclose(delta, direct_step(rows, 6), atol=1e-3)


def test_buffers_fit():
    buffers = allocate_patch_buffers(4, 16, 50)
    assert buffers_fit(buffers, 4, 16, 50, np.float64)
    assert buffers_fit(buffers, 2, 8, 10, np.float64)
    assert not buffers_fit(buffers, 5, 16, 50, np.float64)
    assert not buffers_fit(buffers, 4, 16, 50, np.float32)
    assert not buffers_fit(None, 1, 1, 1, np.float64)


def test_apply_step():
    x = np.array([1.0, 2.0, 3.0])
    apply_step(x, np.array([0.5, -2.0, 0.0]))
    np.testing.assert_array_equal(x, [1.5, 0.0, 3.0])


def linear_cost(rows, delta):
    """||f + J delta||^2"""
    fr = rows.f + rows.to_csr(len(delta)) @ delta
    return float(fr @ fr)


def test_colored_sweeps_never_increase_linear_cost():
    """패치 갱신이 이웃을 고정한 채 선형 모델을 줄이므로 sweep마다 단조 감소"""
    rows = make_smoothing_rows(w=12, h=12, seed=3)
    layout = grid_layout(12, 12, 4, halo=2)
    buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, 144)

    costs = [linear_cost(rows, np.zeros(144))]
    for n_sweeps in range(1, 8):
        delta = solve_patches(rows, layout, n_sweeps, 40, buffers)
        costs.append(linear_cost(rows, delta))

    for before, after in zip(costs[:-1], costs[1:]):
        assert after <= before * (1.0 + 1e-9) + 1e-12
    assert costs[-1] < costs[0]


def test_colored_sweep_with_small_patches_converges():
    """halo보다 작은 패치(1x1)도 색 sweep으로 전역 해에 수렴"""
    rows = make_smoothing_rows(w=6, h=6, seed=4)
    layout = grid_layout(6, 6, 1, halo=2)
    buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, 36)

    assert layout.n_colors == 9
    delta = solve_patches(rows, layout, 400, 2, buffers)

    np.testing.assert_allclose(delta, direct_step(rows, 36), atol=1e-5)
