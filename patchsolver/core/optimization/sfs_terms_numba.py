"""
Numba Shape-from-Shading 에너지 항

픽셀당 5 row (compact unknown k의 row = 5k .. 5k+4):
    [0] fitting      sw_fit   * (x_p - targetDepth_p)       targetDepth 유한 & > 0
    [1] prior        sw_prior * (x_p - x_p^rest)
    [2] regularizer  x_p - mean(유효 4-이웃)                 (grid_terms_numba)
    [3] shading 가로 sw_shading * ((B(p) - B(p+x)) - (I(p) - I(p+x)))   edge_h[p]
    [4] shading 세로 sw_shading * ((B(p) - B(p+y)) - (I(p) - I(p+y)))   edge_v[p]

Shading 모델:
    B(q) = albedo(q) * SH9(n(q))
    SH9(n) = L0 + L1 ny + L2 nz + L3 nx + L4 nx ny + L5 ny nz
             + L6 (2nz^2 - nx^2 - ny^2) + L7 nz nx + L8 (nx^2 - ny^2)
    n(q): 역투영 점 P(q), P(q+x), P(q+y)의 차분 외적 → 정규화, 카메라 방향

이웃 깊이 조회:
    활성 이웃   → 현재 unknown (Jacobian 열 있음)
    비활성 이웃 → deltaTransform으로 warp된 이전 프레임 깊이 (상수)
    둘 다 없음  → shading row 제거

shading Jacobian은 5개 깊이에 대한 중심 차분 (float64).
법선 퇴화(길이 0, 깊이 <= 0)는 row를 0으로 두고 degenerate 카운트.
"""

import numpy as np
from numba import jit, prange

from .grid_terms_numba import (
    write_zero_row,
    write_unary_row,
    write_regularizer_row,
)


ROWS_PER_PIXEL_SFS = 5

NORMAL_EPS = 1e-12
FD_STEP = 1e-5

# 조회 결과 열 코드
LOOKUP_CONSTANT = -1
LOOKUP_MISSING = -2


# =============================================================================
#  1. 카메라 / 조명
# =============================================================================

@jit(nopython=True, cache=True)
def back_project(px, py, depth, fx, fy, ux, uy):
    """픽셀 (px, py) + 깊이 → 카메라 좌표"""
    return (px - ux) * depth / fx, (py - uy) * depth / fy, depth


@jit(nopython=True, cache=True)
def eval_sh9(nx, ny, nz, lighting):
    return (lighting[0]
            + lighting[1] * ny
            + lighting[2] * nz
            + lighting[3] * nx
            + lighting[4] * nx * ny
            + lighting[5] * ny * nz
            + lighting[6] * (2.0 * nz * nz - nx * nx - ny * ny)
            + lighting[7] * nz * nx
            + lighting[8] * (nx * nx - ny * ny))


@jit(nopython=True, cache=True)
def compute_normal(px, py, d0, d_right, d_down, fx, fy, ux, uy, orient):
    """
    (px, py) 픽셀의 단위 법선

    orient: 정면 평면의 법선이 카메라(-z)를 향하도록 하는 부호

    Returns:
        (nx, ny, nz, ok)
    """
    if d0 <= 0.0 or d_right <= 0.0 or d_down <= 0.0:
        return 0.0, 0.0, 0.0, False

    x0, y0, z0 = back_project(px, py, d0, fx, fy, ux, uy)
    x1, y1, z1 = back_project(px + 1.0, py, d_right, fx, fy, ux, uy)
    x2, y2, z2 = back_project(px, py + 1.0, d_down, fx, fy, ux, uy)

    ax = x1 - x0
    ay = y1 - y0
    az = z1 - z0
    bx = x2 - x0
    by = y2 - y0
    bz = z2 - z0

    nx = orient * (ay * bz - az * by)
    ny = orient * (az * bx - ax * bz)
    nz = orient * (ax * by - ay * bx)

    length = np.sqrt(nx * nx + ny * ny + nz * nz)
    if not (length > NORMAL_EPS):
        return 0.0, 0.0, 0.0, False
    return nx / length, ny / length, nz / length, True


@jit(nopython=True, cache=True)
def shade(px, py, d0, d_right, d_down, albedo, lighting, fx, fy, ux, uy, orient):
    """B = albedo * SH9(n)"""
    nx, ny, nz, ok = compute_normal(px, py, d0, d_right, d_down,
                                    fx, fy, ux, uy, orient)
    if not ok:
        return 0.0, False
    return albedo * eval_sh9(nx, ny, nz, lighting), True


def normal_orientation(fx: float, fy: float) -> float:
    return -1.0 if fx * fy > 0.0 else 1.0


# =============================================================================
#  2. 깊이 조회
# =============================================================================

@jit(nopython=True, cache=True)
def lookup_depth(q, x, compact_of, valid, prev_warped):
    """
    Returns:
        (depth, column): column >= 0: unknown, -1: 상수, -2: 없음
    """
    if valid[q] != 0:
        qc = compact_of[q]
        if qc >= 0:
            return np.float64(x[qc]), qc
    d = np.float64(prev_warped[q])
    if np.isfinite(d) and d > 0.0:
        return d, LOOKUP_CONSTANT
    return 0.0, LOOKUP_MISSING


# =============================================================================
#  3. Shading 쌍 residual
# =============================================================================
#  깊이 슬롯 (p = (r, c)):
#      가로: s0=(r,c) s1=(r,c+1) s2=(r+1,c) s3=(r,c+2)   s4=(r+1,c+1)
#      세로: s0=(r,c) s1=(r,c+1) s2=(r+1,c) s3=(r+2,c)   s4=(r+1,c+1)
#  B(p) = shade(s0, s1, s2)
#  B(q) = shade(s1, s3, s4)  (가로)   shade(s2, s4, s3)  (세로)

@jit(nopython=True, cache=True)
def _pair_value(horizontal, r, c, d0, d1, d2, d3, d4,
                albedo_p, albedo_q, lighting, fx, fy, ux, uy, orient):
    bp, ok_p = shade(float(c), float(r), d0, d1, d2, albedo_p, lighting,
                     fx, fy, ux, uy, orient)
    if horizontal:
        bq, ok_q = shade(float(c + 1), float(r), d1, d3, d4, albedo_q, lighting,
                         fx, fy, ux, uy, orient)
    else:
        bq, ok_q = shade(float(c), float(r + 1), d2, d4, d3, albedo_q, lighting,
                         fx, fy, ux, uy, orient)
    return bp - bq, ok_p and ok_q


@jit(nopython=True, cache=True)
def _pair_value_perturbed(slot, step, horizontal, r, c, d0, d1, d2, d3, d4,
                          albedo_p, albedo_q, lighting, fx, fy, ux, uy, orient):
    if slot == 0:
        d0 = d0 + step
    elif slot == 1:
        d1 = d1 + step
    elif slot == 2:
        d2 = d2 + step
    elif slot == 3:
        d3 = d3 + step
    else:
        d4 = d4 + step
    return _pair_value(horizontal, r, c, d0, d1, d2, d3, d4,
                       albedo_p, albedo_q, lighting, fx, fy, ux, uy, orient)


@jit(nopython=True, cache=True)
def write_shading_row(k, horizontal, p, r, c, width, height,
                      x, compact_of, valid, prev_warped,
                      target_intensity, albedo, lighting,
                      fx, fy, ux, uy, orient, sw_shading,
                      idx, val, f):
    """
    Returns:
        0: row 작성, 1: 조건 미충족으로 제거, 2: 수치 퇴화로 0 처리
    """
    write_zero_row(k, idx, val, f)

    if horizontal:
        if c + 2 >= width or r + 1 >= height:
            return 1
        q = p + 1
        q3 = p + 2
    else:
        if r + 2 >= height or c + 1 >= width:
            return 1
        q = p + width
        q3 = p + 2 * width

    ip = target_intensity[p]
    iq = target_intensity[q]
    if not (np.isfinite(ip) and np.isfinite(iq)):
        return 1

    d0, c0 = lookup_depth(p, x, compact_of, valid, prev_warped)
    d1, c1 = lookup_depth(p + 1, x, compact_of, valid, prev_warped)
    d2, c2 = lookup_depth(p + width, x, compact_of, valid, prev_warped)
    d3, c3 = lookup_depth(q3, x, compact_of, valid, prev_warped)
    d4, c4 = lookup_depth(p + width + 1, x, compact_of, valid, prev_warped)
    if (c0 == LOOKUP_MISSING or c1 == LOOKUP_MISSING or c2 == LOOKUP_MISSING
            or c3 == LOOKUP_MISSING or c4 == LOOKUP_MISSING):
        return 1

    albedo_p = albedo[p]
    albedo_q = albedo[q]

    value, ok = _pair_value(horizontal, r, c, d0, d1, d2, d3, d4,
                            albedo_p, albedo_q, lighting, fx, fy, ux, uy, orient)
    if not ok:
        return 2

    n_entries = 0
    for slot in range(5):
        if slot == 0:
            col = c0
            d = d0
        elif slot == 1:
            col = c1
            d = d1
        elif slot == 2:
            col = c2
            d = d2
        elif slot == 3:
            col = c3
            d = d3
        else:
            col = c4
            d = d4
        if col < 0:
            continue

        h = FD_STEP * max(abs(d), 1.0)
        vp, okp = _pair_value_perturbed(slot, h, horizontal, r, c,
                                        d0, d1, d2, d3, d4,
                                        albedo_p, albedo_q, lighting,
                                        fx, fy, ux, uy, orient)
        vm, okm = _pair_value_perturbed(slot, -h, horizontal, r, c,
                                        d0, d1, d2, d3, d4,
                                        albedo_p, albedo_q, lighting,
                                        fx, fy, ux, uy, orient)
        if not (okp and okm):
            write_zero_row(k, idx, val, f)
            return 2

        idx[k, n_entries] = col
        val[k, n_entries] = sw_shading * (vp - vm) / (2.0 * h)
        n_entries += 1

    f[k] = sw_shading * (value - (ip - iq))
    return 0


# =============================================================================
#  4. 전체 평가 커널 (prange: 원소당 1 worker, 자기 row만 기록)
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def evaluate_sfs_rows(x, x_rest, pixel_of, compact_of, valid,
                      target_depth, target_intensity, albedo, prev_warped,
                      edge_h, edge_v, width, height,
                      fx, fy, ux, uy, orient, lighting,
                      sw_fit, sw_prior, sw_reg, sw_bound, sw_shading,
                      idx, val, f, owner, degenerate):
    """
    SFS residual/Jacobian 평가

    Args:
        x, x_rest: (N,) 현재 / solve 진입 시점 깊이 (compact)
        pixel_of, compact_of, valid: 인덱스 매핑 (grid_terms_numba 참조)
        target_depth, target_intensity, albedo, prev_warped: (H*W,)
        edge_h, edge_v: (H*W,) uint8: 가로/세로 쌍 유효
        orient: normal_orientation(fx, fy)
        lighting: (9,) SH 계수
        sw_*: sqrt 가중치
        idx, val, f, owner: RowSystem 버퍼 (5N rows)
        degenerate: (N,) 출력: 원소별 퇴화 shading row 수
    """
    for k in prange(len(pixel_of)):
        p = pixel_of[k]
        base = k * ROWS_PER_PIXEL_SFS
        degenerate[k] = 0
        for j in range(ROWS_PER_PIXEL_SFS):
            owner[base + j] = p

        if valid[p] == 0:
            for j in range(ROWS_PER_PIXEL_SFS):
                write_zero_row(base + j, idx, val, f)
            continue

        r = p // width
        c = p - r * width

        # [0] fitting
        t = target_depth[p]
        if sw_fit > 0.0 and np.isfinite(t) and t > 0.0:
            write_unary_row(base, k, sw_fit, x[k], t, idx, val, f)
        else:
            write_zero_row(base, idx, val, f)

        # [1] prior
        if sw_prior > 0.0:
            write_unary_row(base + 1, k, sw_prior, x[k], x_rest[k], idx, val, f)
        else:
            write_zero_row(base + 1, idx, val, f)

        # [2] regularizer
        write_regularizer_row(base + 2, p, k, width, height, x, compact_of,
                              valid, sw_reg, sw_bound, idx, val, f)

        # [3], [4] shading
        if sw_shading > 0.0 and edge_h[p] != 0:
            code = write_shading_row(base + 3, True, p, r, c, width, height,
                                     x, compact_of, valid, prev_warped,
                                     target_intensity, albedo, lighting,
                                     fx, fy, ux, uy, orient, sw_shading,
                                     idx, val, f)
            if code == 2:
                degenerate[k] += 1
        else:
            write_zero_row(base + 3, idx, val, f)

        if sw_shading > 0.0 and edge_v[p] != 0:
            code = write_shading_row(base + 4, False, p, r, c, width, height,
                                     x, compact_of, valid, prev_warped,
                                     target_intensity, albedo, lighting,
                                     fx, fy, ux, uy, orient, sw_shading,
                                     idx, val, f)
            if code == 2:
                degenerate[k] += 1
        else:
            write_zero_row(base + 4, idx, val, f)


# =============================================================================
#  5. 이전 프레임 warp (deltaTransform)
# =============================================================================

@jit(nopython=True, cache=True)
def _splat_previous_depth(prev_depth, transform, fx, fy, ux, uy, out):
    h = prev_depth.shape[0]
    w = prev_depth.shape[1]
    for y in range(h):
        for x in range(w):
            out[y, x] = np.inf

    # 순차 z-buffer (여러 점이 같은 픽셀로 갈 수 있음)
    for y in range(h):
        for x in range(w):
            d = np.float64(prev_depth[y, x])
            if not (np.isfinite(d) and d > 0.0):
                continue
            X, Y, Z = back_project(float(x), float(y), d, fx, fy, ux, uy)
            tx = transform[0, 0] * X + transform[0, 1] * Y + transform[0, 2] * Z + transform[0, 3]
            ty = transform[1, 0] * X + transform[1, 1] * Y + transform[1, 2] * Z + transform[1, 3]
            tz = transform[2, 0] * X + transform[2, 1] * Y + transform[2, 2] * Z + transform[2, 3]
            if not (tz > 0.0):
                continue
            u = int(np.floor(tx * fx / tz + ux + 0.5))
            v = int(np.floor(ty * fy / tz + uy + 0.5))
            if u < 0 or u >= w or v < 0 or v >= h:
                continue
            if tz < out[v, u]:
                out[v, u] = tz

    for y in range(h):
        for x in range(w):
            if out[y, x] == np.inf:
                out[y, x] = 0.0


def warp_previous_depth(prev_depth: np.ndarray, delta_transform: np.ndarray,
                        fx: float, fy: float, ux: float, uy: float,
                        dtype=np.float64) -> np.ndarray:
    """
    이전 프레임 깊이를 현재 프레임으로 warp

    역투영 → 4x4 rigid transform → 재투영, 충돌 시 가까운 깊이 유지.
    대응 없는 픽셀은 0 (무효).

    Returns:
        (H, W) dtype
    """
    prev = np.ascontiguousarray(prev_depth, dtype=np.float64)
    transform = np.ascontiguousarray(delta_transform, dtype=np.float64)
    out = np.empty(prev.shape, dtype=np.float64)
    _splat_previous_depth(prev, transform, float(fx), float(fy),
                          float(ux), float(uy), out)
    return out.astype(dtype)


# =============================================================================
#  6. JIT 워밍업
# =============================================================================

def warmup_sfs_terms():
    """작은 5x5 평면으로 커널 컴파일"""
    w, h = 5, 5
    n = w * h
    prev = np.full((h, w), 2.0)
    for dtype in (np.float32, np.float64):
        warped = warp_previous_depth(prev, np.eye(4), 4.0, -4.0, 2.0, 2.0, dtype)
        x = np.full(n, 2.0, dtype=dtype)
        pixel_of = np.arange(n, dtype=np.int64)
        valid = np.ones(n, dtype=np.uint8)
        ones = np.ones(n, dtype=dtype)
        edge = np.ones(n, dtype=np.uint8)
        lighting = np.linspace(0.1, 0.9, 9).astype(dtype)
        idx = np.full((5 * n, 5), -1, dtype=np.int64)
        val = np.zeros((5 * n, 5), dtype=dtype)
        f = np.zeros(5 * n, dtype=dtype)
        owner = np.zeros(5 * n, dtype=np.int64)
        degenerate = np.zeros(n, dtype=np.int64)
        evaluate_sfs_rows(x, x.copy(), pixel_of, pixel_of, valid,
                          x.copy(), ones, ones, warped.ravel(),
                          edge, edge, w, h,
                          4.0, -4.0, 2.0, 2.0, 1.0, lighting,
                          1.0, 0.5, 0.5, 0.5, 1.0,
                          idx, val, f, owner, degenerate)
