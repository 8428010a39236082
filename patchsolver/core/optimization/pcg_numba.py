"""
Numba 블록 패치 PCG

선형화된 시스템 min ||f + J delta||^2 을 패치 단위 multiplicative
block Gauss-Seidel로 푼다. 패치는 색별로 갱신한다 (PatchLayout.patch_color).

한 색 pass (patch_pcg_pass, prange over 그 색의 패치):
    1. 패치 P의 row에 대해 현재 delta에서의 선형 residual
           fr = f + J delta   (P의 unknown은 delta_own, 다른 패치는 delta_shared)
    2. 로컬 rhs b = -J_P^T fr, Jacobi 전처리 M = 1/diag(J_P^T J_P)
       (diag <= DIAG_EPS인 슬롯은 M = 0)
    3. 정확히 n_iterations회 PCG (분모 0이면 alpha/beta = 0)
    4. delta_own[P] += 로컬 증분

색 pass마다 exchange_boundary가 경계 unknown의 delta를 delta_shared로 복사.
다음 색의 패치는 갱신된 이웃 값을 읽는다. 같은 색 패치는 row를 공유하지
않으므로 한 row가 한 pass에서 두 번 보정되지 않는다.

작업 버퍼는 (n_patches, capacity) 2D 배열, 패치 id 행을 각 worker가 독점.
"""

import numpy as np
from numba import jit, prange


DIAG_EPS = 1e-12


# =============================================================================
#  1. 패치 PCG pass
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def patch_pcg_pass(rows_idx, rows_val, rows_f,
                   elem_patch, elem_offset, patch_elem_ptr, patch_elems,
                   patch_row_ptr, patch_rows, patch_ids, n_iterations,
                   delta_own, delta_shared,
                   buf_b, buf_pre, buf_x, buf_r, buf_z, buf_p, buf_ap):
    """
    patch_ids의 패치에 대해 로컬 PCG 1 pass

    Args:
        rows_idx, rows_val, rows_f: RowSystem 버퍼
        elem_patch, elem_offset: unknown별 패치 id / 로컬 슬롯
        patch_elem_ptr, patch_elems: 패치별 unknown (CSR)
        patch_row_ptr, patch_rows: 패치별 row (CSR)
        patch_ids: 이번 pass에서 갱신할 패치 (row를 공유하지 않는 한 색)
        n_iterations: 패치 내부 PCG 반복 수 (고정)
        delta_own: (N,) 각 패치가 자기 unknown만 갱신
        delta_shared: (N,) 이웃 패치 값 (읽기 전용)
        buf_*: (n_patches, capacity) 작업 버퍼
    """
    width = rows_idx.shape[1]

    for t_pid in prange(len(patch_ids)):
        pid = patch_ids[t_pid]
        e0 = patch_elem_ptr[pid]
        e1 = patch_elem_ptr[pid + 1]
        if e1 == e0:
            continue

        b = buf_b[pid]
        pre = buf_pre[pid]
        xl = buf_x[pid]
        r = buf_r[pid]
        z = buf_z[pid]
        p = buf_p[pid]
        ap = buf_ap[pid]

        for e in range(e0, e1):
            s = elem_offset[patch_elems[e]]
            b[s] = 0.0
            pre[s] = 0.0
            xl[s] = 0.0

        r0 = patch_row_ptr[pid]
        r1 = patch_row_ptr[pid + 1]

        # rhs / 대각
        for t in range(r0, r1):
            k = patch_rows[t]
            fr = rows_f[k]
            for m in range(width):
                c = rows_idx[k, m]
                if c < 0:
                    continue
                if elem_patch[c] == pid:
                    fr += rows_val[k, m] * delta_own[c]
                else:
                    fr += rows_val[k, m] * delta_shared[c]
            for m in range(width):
                c = rows_idx[k, m]
                if c >= 0 and elem_patch[c] == pid:
                    s = elem_offset[c]
                    b[s] -= rows_val[k, m] * fr
                    pre[s] += rows_val[k, m] * rows_val[k, m]

        rz = 0.0
        for e in range(e0, e1):
            s = elem_offset[patch_elems[e]]
            if pre[s] > DIAG_EPS:
                pre[s] = 1.0 / pre[s]
            else:
                pre[s] = 0.0
            r[s] = b[s]
            z[s] = pre[s] * r[s]
            p[s] = z[s]
            rz += r[s] * z[s]

        for it in range(n_iterations):
            for e in range(e0, e1):
                ap[elem_offset[patch_elems[e]]] = 0.0

            # ap = J_P^T J_P p
            for t in range(r0, r1):
                k = patch_rows[t]
                q = 0.0
                for m in range(width):
                    c = rows_idx[k, m]
                    if c >= 0 and elem_patch[c] == pid:
                        q += rows_val[k, m] * p[elem_offset[c]]
                if q == 0.0:
                    continue
                for m in range(width):
                    c = rows_idx[k, m]
                    if c >= 0 and elem_patch[c] == pid:
                        ap[elem_offset[c]] += rows_val[k, m] * q

            pap = 0.0
            for e in range(e0, e1):
                s = elem_offset[patch_elems[e]]
                pap += p[s] * ap[s]
            alpha = rz / pap if pap != 0.0 else 0.0

            rz_new = 0.0
            for e in range(e0, e1):
                s = elem_offset[patch_elems[e]]
                xl[s] += alpha * p[s]
                r[s] -= alpha * ap[s]
                z[s] = pre[s] * r[s]
                rz_new += r[s] * z[s]

            beta = rz_new / rz if rz != 0.0 else 0.0
            for e in range(e0, e1):
                s = elem_offset[patch_elems[e]]
                p[s] = z[s] + beta * p[s]
            rz = rz_new

        for e in range(e0, e1):
            c = patch_elems[e]
            delta_own[c] += xl[elem_offset[c]]


# =============================================================================
#  2. 경계 교환 / step 적용
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def exchange_boundary(boundary_elems, delta_own, delta_shared):
    for t in prange(len(boundary_elems)):
        e = boundary_elems[t]
        delta_shared[e] = delta_own[e]


@jit(nopython=True, parallel=True, cache=True)
def apply_step(x, delta):
    """x <- x + delta"""
    for i in prange(len(x)):
        x[i] += delta[i]


# =============================================================================
#  3. 버퍼 할당 헬퍼 (Python: prange 전에 1회 호출)
# =============================================================================

def allocate_patch_buffers(n_patches, capacity, n_unknowns, dtype=np.float64):
    """
    패치 PCG 작업 버퍼 할당

    Returns:
        dict: 'b', 'pre', 'x', 'r', 'z', 'p', 'ap': (n_patches, capacity)
               'delta_own', 'delta_shared': (n_unknowns,)
    """
    shape = (max(n_patches, 1), max(capacity, 1))
    buffers = {name: np.zeros(shape, dtype=dtype)
               for name in ('b', 'pre', 'x', 'r', 'z', 'p', 'ap')}
    buffers['delta_own'] = np.zeros(max(n_unknowns, 1), dtype=dtype)
    buffers['delta_shared'] = np.zeros(max(n_unknowns, 1), dtype=dtype)
    return buffers


def buffers_fit(buffers, n_patches, capacity, n_unknowns, dtype) -> bool:
    """기존 버퍼를 재사용할 수 있는지"""
    if buffers is None:
        return False
    b = buffers['b']
    return (b.dtype == dtype
            and b.shape[0] >= n_patches
            and b.shape[1] >= capacity
            and len(buffers['delta_own']) >= n_unknowns)


def solve_patches(rows, layout, n_linear_iterations, n_patch_iterations, buffers):
    """
    블록 PCG 선형 solve

    n_linear_iterations회 sweep. sweep 하나는 색마다
    (그 색 패치 pass → 경계 교환).

    같은 색의 패치는 병렬로, 색 사이는 순차로 갱신하므로
    각 패치 갱신은 이웃을 고정한 채 전역 이차 모델을 줄인다.

    Args:
        rows: RowSystem (현재 선형화)
        layout: PatchLayout
        buffers: allocate_patch_buffers() 결과

    Returns:
        delta: (N,) view of buffers['delta_own']
    """
    n = layout.n_unknowns
    delta_own = buffers['delta_own'][:n]
    delta_shared = buffers['delta_shared'][:n]
    delta_own[:] = 0.0
    delta_shared[:] = 0.0

    if n == 0 or n_linear_iterations == 0 or n_patch_iterations == 0:
        return delta_own

    row_ptr, patch_rows = layout.rows_by_patch(rows.idx)
    boundary = layout.boundary_elems
    colors = [layout.patches_of_color(c) for c in range(layout.n_colors)]

    for _ in range(n_linear_iterations):
        for patch_ids in colors:
            if len(patch_ids) == 0:
                continue
            patch_pcg_pass(rows.idx, rows.val, rows.f,
                           layout.elem_patch, layout.elem_offset,
                           layout.patch_elem_ptr, layout.patch_elems,
                           row_ptr, patch_rows, patch_ids, n_patch_iterations,
                           delta_own, delta_shared,
                           buffers['b'], buffers['pre'], buffers['x'],
                           buffers['r'], buffers['z'], buffers['p'], buffers['ap'])
            if len(boundary) > 0:
                exchange_boundary(boundary, delta_own, delta_shared)

    return delta_own


# =============================================================================
#  4. JIT 워밍업
# =============================================================================

def warmup_pcg():
    """1D 체인 4 unknown, 2 패치로 컴파일"""
    from ..patches import block_layout
    from .row_system import allocate_rows

    n = 4
    offset = np.array([0, 1, 3, 5, 6], dtype=np.int64)
    nbr = np.array([1, 0, 2, 1, 3, 2], dtype=np.int64)
    layout = block_layout(n, 2, 1, offset, nbr)
    for dtype in (np.float32, np.float64):
        rows = allocate_rows(n, dtype)
        for i in range(n):
            rows.idx[i, 0] = i
            rows.val[i, 0] = 1.0
            rows.f[i] = 1.0
        buffers = allocate_patch_buffers(layout.n_patches, layout.capacity, n, dtype)
        delta = solve_patches(rows, layout, 2, 2, buffers)
        apply_step(np.zeros(n, dtype=dtype), delta)
