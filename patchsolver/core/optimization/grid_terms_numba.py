"""
Numba 픽셀 그리드 에너지 항

이미지 그리드 위의 fitting / prior / regularizer row 생성.
SFS 커널(sfs_terms_numba)과 Laplacian smoothing 커널이 공유한다.

인덱스 규약:
    pixel_of[k]   : compact unknown k → dense 픽셀 p (= y * width + x)
    compact_of[p] : dense 픽셀 → compact unknown (-1: unknown 아님)
    valid[p]      : 픽셀이 에너지에 참여하는지 (0/1)

remap 없이 dense 모드로 풀 때는 compact_of가 항등 매핑이지만
valid == 0인 픽셀의 unknown은 절대 읽지 않는다.

가중치 인자(sw_*)는 모두 sqrt(weight). 0 이하이면 해당 항 비활성.
"""

import numpy as np
from numba import jit, prange


# =============================================================================
#  1. Row 작성 헬퍼
# =============================================================================

@jit(nopython=True, cache=True)
def write_zero_row(k, idx, val, f):
    f[k] = 0.0
    for m in range(idx.shape[1]):
        idx[k, m] = -1
        val[k, m] = 0.0


@jit(nopython=True, cache=True)
def write_unary_row(k, col, sw, value, reference, idx, val, f):
    """sw * (value - reference), d/dx_col = sw"""
    write_zero_row(k, idx, val, f)
    idx[k, 0] = col
    val[k, 0] = sw
    f[k] = sw * (value - reference)


@jit(nopython=True, cache=True)
def write_regularizer_row(k, p, col, width, height, x, compact_of, valid,
                          sw_reg, sw_bound, idx, val, f):
    """
    Laplacian regularizer: x_p - mean(유효 4-이웃)

    4-이웃이 모두 유효하면 sw_reg, 이미지/마스크 경계면 sw_bound.
    유효 이웃이 없으면 row 없음.

    Returns:
        True이면 row 작성됨
    """
    write_zero_row(k, idx, val, f)

    r = p // width
    c = p - r * width

    cnt = 0
    s = 0.0
    for t in range(4):
        if t == 0:
            rr = r - 1
            cc = c
        elif t == 1:
            rr = r + 1
            cc = c
        elif t == 2:
            rr = r
            cc = c - 1
        else:
            rr = r
            cc = c + 1
        if rr < 0 or rr >= height or cc < 0 or cc >= width:
            continue
        q = rr * width + cc
        if valid[q] == 0:
            continue
        qc = compact_of[q]
        if qc < 0:
            continue
        cnt += 1
        idx[k, cnt] = qc
        s += x[qc]

    w = sw_reg if cnt == 4 else sw_bound
    if cnt == 0 or w <= 0.0:
        write_zero_row(k, idx, val, f)
        return False

    idx[k, 0] = col
    val[k, 0] = w
    inv = 1.0 / cnt
    for m in range(1, cnt + 1):
        val[k, m] = -w * inv
    f[k] = w * (x[col] - s * inv)
    return True


# =============================================================================
#  2. Laplacian smoothing (이미지 warping)
# =============================================================================

ROWS_PER_PIXEL_SMOOTHING = 2


@jit(nopython=True, parallel=True, cache=True)
def evaluate_smoothing_rows(x, pixel_of, compact_of, valid, target,
                            width, height, sw_fit, sw_reg, sw_bound,
                            idx, val, f, owner):
    """
    픽셀당 2 row: [0] fitting (target 유한), [1] regularizer

    Args:
        x: (N,) 현재 unknown
        target: (H*W,) 목표 이미지 (nan/inf는 제약 없음)
        idx, val, f, owner: RowSystem 버퍼 (2N rows)
    """
    for k in prange(len(pixel_of)):
        p = pixel_of[k]
        base = k * ROWS_PER_PIXEL_SMOOTHING
        owner[base] = p
        owner[base + 1] = p

        if valid[p] == 0:
            write_zero_row(base, idx, val, f)
            write_zero_row(base + 1, idx, val, f)
            continue

        t = target[p]
        if sw_fit > 0.0 and np.isfinite(t):
            write_unary_row(base, k, sw_fit, x[k], t, idx, val, f)
        else:
            write_zero_row(base, idx, val, f)

        write_regularizer_row(base + 1, p, k, width, height, x, compact_of,
                              valid, sw_reg, sw_bound, idx, val, f)


def sqrt_weight(weight: float) -> float:
    """비양수 가중치는 0 (항 비활성)"""
    return float(np.sqrt(weight)) if weight > 0.0 else 0.0


# =============================================================================
#  3. JIT 워밍업
# =============================================================================

def warmup_grid_terms():
    """작은 4x4 그리드로 커널 컴파일"""
    w, h = 4, 4
    n = w * h
    for dtype in (np.float32, np.float64):
        x = np.ones(n, dtype=dtype)
        pixel_of = np.arange(n, dtype=np.int64)
        valid = np.ones(n, dtype=np.uint8)
        target = np.zeros(n, dtype=dtype)
        idx = np.full((2 * n, 5), -1, dtype=np.int64)
        val = np.zeros((2 * n, 5), dtype=dtype)
        f = np.zeros(2 * n, dtype=dtype)
        owner = np.zeros(2 * n, dtype=np.int64)
        evaluate_smoothing_rows(x, pixel_of, pixel_of, valid, target,
                                w, h, 1.0, 0.5, 0.5, idx, val, f, owner)
