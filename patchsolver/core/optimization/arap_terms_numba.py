"""
Numba As-Rigid-As-Possible 메쉬 에너지 항

정점당 6개 스칼라 unknown:  x[6v + 0..2] = 위치 p_v,  x[6v + 3..5] = 회전각 a_v
회전 R(a) = Rz(a_z) Ry(a_y) Rx(a_x)

Row 배치 (V 정점, D 방향 간선):
    [6v + 0..2]          fitting  sw_fit   * (p_v - t_v)      t_v가 유한한 정점만
    [6v + 3..5]          prior    sw_prior * (p_v - u_v)      (u: rest shape)
    [6V + 3e + 0..2]     edge e = (i, j):
                         sw_reg * ((p_i - p_j) - R(a_i) (u_i - u_j))

간선 row 하나는 p_i[c], p_j[c], a_i(3) 의 5개 열을 가진다.
"""

import numpy as np
from numba import jit, prange

from .grid_terms_numba import write_zero_row, write_unary_row


UNKNOWNS_PER_VERTEX = 6


# =============================================================================
#  1. 회전 행렬 및 각도 미분
# =============================================================================

@jit(nopython=True, cache=True)
def rotation_and_derivatives(ax, ay, az, R, dRx, dRy, dRz):
    """
    R = Rz(az) Ry(ay) Rx(ax) 와 각 각도에 대한 편미분 (모두 3x3 출력 버퍼)
    """
    ca = np.cos(ax)
    sa = np.sin(ax)
    cb = np.cos(ay)
    sb = np.sin(ay)
    cg = np.cos(az)
    sg = np.sin(az)

    R[0, 0] = cg * cb
    R[0, 1] = cg * sb * sa - sg * ca
    R[0, 2] = cg * sb * ca + sg * sa
    R[1, 0] = sg * cb
    R[1, 1] = sg * sb * sa + cg * ca
    R[1, 2] = sg * sb * ca - cg * sa
    R[2, 0] = -sb
    R[2, 1] = cb * sa
    R[2, 2] = cb * ca

    # d/d ax
    dRx[0, 0] = 0.0
    dRx[0, 1] = cg * sb * ca + sg * sa
    dRx[0, 2] = -cg * sb * sa + sg * ca
    dRx[1, 0] = 0.0
    dRx[1, 1] = sg * sb * ca - cg * sa
    dRx[1, 2] = -sg * sb * sa - cg * ca
    dRx[2, 0] = 0.0
    dRx[2, 1] = cb * ca
    dRx[2, 2] = -cb * sa

    # d/d ay
    dRy[0, 0] = -cg * sb
    dRy[0, 1] = cg * cb * sa
    dRy[0, 2] = cg * cb * ca
    dRy[1, 0] = -sg * sb
    dRy[1, 1] = sg * cb * sa
    dRy[1, 2] = sg * cb * ca
    dRy[2, 0] = -cb
    dRy[2, 1] = -sb * sa
    dRy[2, 2] = -sb * ca

    # d/d az
    dRz[0, 0] = -sg * cb
    dRz[0, 1] = -sg * sb * sa - cg * ca
    dRz[0, 2] = -sg * sb * ca + cg * sa
    dRz[1, 0] = cg * cb
    dRz[1, 1] = cg * sb * sa - sg * ca
    dRz[1, 2] = cg * sb * ca + sg * sa
    dRz[2, 0] = 0.0
    dRz[2, 1] = 0.0
    dRz[2, 2] = 0.0


# =============================================================================
#  2. 전체 평가 커널
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def evaluate_arap_rows(x, rest, targets, neighbour_offset, neighbour_idx,
                       sw_fit, sw_prior, sw_reg,
                       idx, val, f, owner, buf_rot):
    """
    ARAP residual/Jacobian 평가 (정점당 1 worker)

    Args:
        x: (6V,) 현재 unknown
        rest: (V, 3) rest shape
        targets: (V, 3) 제약 위치 (비유한 = 제약 없음)
        neighbour_offset: (V+1,) CSR 오프셋
        neighbour_idx: (D,) 이웃 정점
        idx, val, f, owner: RowSystem 버퍼 (6V + 3D rows)
        buf_rot: (V, 4, 3, 3) 정점별 R, dR/dax, dR/day, dR/daz 작업 버퍼
    """
    n_vertices = rest.shape[0]
    edge_base = UNKNOWNS_PER_VERTEX * n_vertices

    for v in prange(n_vertices):
        base = UNKNOWNS_PER_VERTEX * v

        constrained = (np.isfinite(targets[v, 0]) and np.isfinite(targets[v, 1])
                       and np.isfinite(targets[v, 2]))
        for c in range(3):
            owner[base + c] = v
            owner[base + 3 + c] = v
            if sw_fit > 0.0 and constrained:
                write_unary_row(base + c, base + c, sw_fit, x[base + c],
                                targets[v, c], idx, val, f)
            else:
                write_zero_row(base + c, idx, val, f)
            if sw_prior > 0.0:
                write_unary_row(base + 3 + c, base + c, sw_prior, x[base + c],
                                rest[v, c], idx, val, f)
            else:
                write_zero_row(base + 3 + c, idx, val, f)

        R = buf_rot[v, 0]
        dRx = buf_rot[v, 1]
        dRy = buf_rot[v, 2]
        dRz = buf_rot[v, 3]
        rotation_and_derivatives(x[base + 3], x[base + 4], x[base + 5],
                                 R, dRx, dRy, dRz)

        for e in range(neighbour_offset[v], neighbour_offset[v + 1]):
            j = neighbour_idx[e]
            jbase = UNKNOWNS_PER_VERTEX * j
            ex = rest[v, 0] - rest[j, 0]
            ey = rest[v, 1] - rest[j, 1]
            ez = rest[v, 2] - rest[j, 2]

            for c in range(3):
                k = edge_base + 3 * e + c
                owner[k] = v
                write_zero_row(k, idx, val, f)
                if sw_reg <= 0.0:
                    continue

                rot = R[c, 0] * ex + R[c, 1] * ey + R[c, 2] * ez
                f[k] = sw_reg * ((x[base + c] - x[jbase + c]) - rot)

                idx[k, 0] = base + c
                val[k, 0] = sw_reg
                idx[k, 1] = jbase + c
                val[k, 1] = -sw_reg
                idx[k, 2] = base + 3
                val[k, 2] = -sw_reg * (dRx[c, 0] * ex + dRx[c, 1] * ey + dRx[c, 2] * ez)
                idx[k, 3] = base + 4
                val[k, 3] = -sw_reg * (dRy[c, 0] * ex + dRy[c, 1] * ey + dRy[c, 2] * ez)
                idx[k, 4] = base + 5
                val[k, 4] = -sw_reg * (dRz[c, 0] * ex + dRz[c, 1] * ey + dRz[c, 2] * ez)


@jit(nopython=True, parallel=True, cache=True)
def apply_arap_step(x, delta):
    """위치는 더하고, 회전각은 더한 뒤 (-pi, pi]로 wrap"""
    n_vertices = len(x) // UNKNOWNS_PER_VERTEX
    two_pi = 2.0 * np.pi
    for v in prange(n_vertices):
        base = UNKNOWNS_PER_VERTEX * v
        for c in range(3):
            x[base + c] += delta[base + c]
        for c in range(3, 6):
            a = x[base + c] + delta[base + c]
            x[base + c] = np.pi - np.mod(np.pi - a, two_pi)


def wrap_angles(angles: np.ndarray) -> np.ndarray:
    """각도를 (-pi, pi]로"""
    angles = np.asarray(angles, dtype=np.float64)
    return np.pi - np.mod(np.pi - angles, 2.0 * np.pi)


def count_arap_rows(n_vertices: int, n_directed_edges: int) -> int:
    return UNKNOWNS_PER_VERTEX * n_vertices + 3 * n_directed_edges


def allocate_rotation_buffers(n_vertices: int, dtype=np.float64) -> np.ndarray:
    """prange용 정점별 회전 작업 버퍼"""
    return np.zeros((max(n_vertices, 1), 4, 3, 3), dtype=dtype)


# =============================================================================
#  3. JIT 워밍업
# =============================================================================

def warmup_arap_terms():
    """삼각형 1개로 커널 컴파일"""
    rest = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    offset = np.array([0, 2, 4, 6], dtype=np.int64)
    nbr = np.array([1, 2, 0, 2, 0, 1], dtype=np.int64)
    targets = np.full((3, 3), np.nan)
    targets[0] = rest[0]
    n_rows = count_arap_rows(3, 6)
    for dtype in (np.float32, np.float64):
        x = np.zeros(18, dtype=dtype)
        x.reshape(3, 6)[:, :3] = rest
        idx = np.full((n_rows, 5), -1, dtype=np.int64)
        val = np.zeros((n_rows, 5), dtype=dtype)
        f = np.zeros(n_rows, dtype=dtype)
        owner = np.zeros(n_rows, dtype=np.int64)
        buf = allocate_rotation_buffers(3, dtype)
        evaluate_arap_rows(x, rest.astype(dtype), targets.astype(dtype),
                           offset, nbr, 1.0, 0.1, 0.5,
                           idx, val, f, owner, buf)
        apply_arap_step(x, np.zeros_like(x))
