"""
유효 마스크 및 Remapping 모듈

깊이/유효 마스크로부터 "활성" unknown 집합을 결정하고,
masked prefix-sum으로 활성 원소만의 연속 인덱스 공간(remap table)을 만든다.

처리 순서 (MaskRemapper.update):
    clear_decision_buffers   (이전 호출 상태 완전 초기화)
    compute_decision_array   (패치 단위 prange: 원소별 0/1)
    exclusive_prefix_sum     (블록 scan: 블록 합 → 블록 오프셋 → 적용)
    compute_remap_array      (remap[prefix[i]] = i)

불변식:
    len(remap) == prefix[-1] + decision[-1] == sum(decision)
    remap은 strictly increasing
"""

import logging
import numpy as np
import cv2
from dataclasses import dataclass
from typing import Tuple, Optional
from numba import jit, prange

_logger = logging.getLogger(__name__)

SCAN_BLOCK_SIZE = 1024


# =============================================================================
#  1. Decision array
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def clear_decision_buffers(decision, prefix, remap):
    """세 버퍼를 모두 초기화 (remap은 -1)"""
    n = len(decision)
    for i in prange(n):
        decision[i] = 0
        prefix[i] = 0
        remap[i] = -1


@jit(nopython=True, parallel=True, cache=True)
def compute_decision_array(mask, patch_size, decision):
    """
    원소별 활성 판정: 패치 타일 단위 병렬

    mask[y, x]가 유한하고 0보다 크면 1, 아니면 0.
    마지막 행/열의 부분 패치는 이미지 경계에서 잘린다.

    Args:
        mask: (H, W) float 마스크
        patch_size: 패치 한 변 크기
        decision: 출력 (H*W,) int64
    """
    h = mask.shape[0]
    w = mask.shape[1]
    n_px = (w + patch_size - 1) // patch_size
    n_py = (h + patch_size - 1) // patch_size

    for pid in prange(n_px * n_py):
        y0 = (pid // n_px) * patch_size
        x0 = (pid % n_px) * patch_size
        y1 = min(y0 + patch_size, h)
        x1 = min(x0 + patch_size, w)
        for y in range(y0, y1):
            for x in range(x0, x1):
                v = mask[y, x]
                if np.isfinite(v) and v > 0.0:
                    decision[y * w + x] = 1
                else:
                    decision[y * w + x] = 0


# =============================================================================
#  2. Exclusive prefix sum (2단계 블록 scan)
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def _block_sums(values, block_size, sums):
    n = len(values)
    n_blocks = len(sums)
    for b in prange(n_blocks):
        s = 0
        end = min((b + 1) * block_size, n)
        for i in range(b * block_size, end):
            s += values[i]
        sums[b] = s


@jit(nopython=True, parallel=True, cache=True)
def _block_scan_apply(values, block_size, offsets, prefix):
    n = len(values)
    n_blocks = len(offsets)
    for b in prange(n_blocks):
        running = offsets[b]
        end = min((b + 1) * block_size, n)
        for i in range(b * block_size, end):
            prefix[i] = running
            running += values[i]


def exclusive_prefix_sum(values: np.ndarray,
                         prefix: Optional[np.ndarray] = None,
                         block_size: int = SCAN_BLOCK_SIZE) -> Tuple[np.ndarray, int]:
    """
    Exclusive prefix sum

    Args:
        values: (n,) 정수 배열 (decision)
        prefix: 출력 버퍼 (None이면 새로 할당)
        block_size: 블록 크기

    Returns:
        (prefix, total): total은 전체 합 (활성 원소 수)
    """
    n = len(values)
    if prefix is None:
        prefix = np.zeros(n, dtype=np.int64)
    if n == 0:
        return prefix, 0

    n_blocks = (n + block_size - 1) // block_size
    sums = np.empty(n_blocks, dtype=np.int64)
    _block_sums(values, block_size, sums)

    offsets = np.zeros(n_blocks, dtype=np.int64)
    offsets[1:] = np.cumsum(sums)[:-1]
    _block_scan_apply(values, block_size, offsets, prefix)

    total = int(offsets[-1] + sums[-1])
    return prefix, total


# =============================================================================
#  3. Remap array
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def compute_remap_array(decision, prefix, remap):
    """remap[prefix[i]] = i  (decision[i] == 1인 원소만)"""
    n = len(decision)
    for i in prange(n):
        if decision[i] == 1:
            remap[prefix[i]] = i


@jit(nopython=True, parallel=True, cache=True)
def _inverse_remap(indices, compact_of):
    for i in prange(len(compact_of)):
        compact_of[i] = -1
    for k in prange(len(indices)):
        compact_of[indices[k]] = k


def inverse_remap(indices: np.ndarray, n_dense: int) -> np.ndarray:
    """
    dense 인덱스 → compact 인덱스 역매핑 (비활성은 -1)
    """
    compact_of = np.empty(n_dense, dtype=np.int64)
    _inverse_remap(np.asarray(indices, dtype=np.int64), compact_of)
    return compact_of


@dataclass
class RemapTable:
    """
    Remapping 결과

    indices, prefix, decision은 MaskRemapper 내부 버퍼의 view이며
    다음 update() 호출 시 덮어써진다.
    """
    indices: np.ndarray
    prefix: np.ndarray
    decision: np.ndarray
    width: int
    height: int

    @property
    def n_elements(self) -> int:
        return len(self.indices)

    @property
    def n_dense(self) -> int:
        return self.width * self.height

    @property
    def is_empty(self) -> bool:
        return self.n_elements == 0

    def compact_of(self) -> np.ndarray:
        return inverse_remap(self.indices, self.n_dense)


class MaskRemapper:
    """
    마스크 → 활성 원소 remap table

    버퍼는 width*height 크기로 1회 할당하고 update()마다 재사용.

    Usage:
        remapper = MaskRemapper(640, 480, patch_size=16)
        table = remapper.update(depth_mask)
        table.n_elements
    """

    def __init__(self, width: int, height: int, patch_size: int = 16):
        if width <= 0 or height <= 0:
            raise ValueError(f"invalid domain size {width}x{height}")
        if patch_size <= 0:
            raise ValueError(f"patch_size must be positive, got {patch_size}")

        self.width = width
        self.height = height
        self.patch_size = patch_size

        n = width * height
        self._decision = np.zeros(n, dtype=np.int64)
        self._prefix = np.zeros(n, dtype=np.int64)
        self._remap = np.full(n, -1, dtype=np.int64)

    def update(self, mask: np.ndarray) -> RemapTable:
        """
        마스크로부터 remap table 재계산

        Raises:
            ValueError: 마스크 크기 불일치
            RuntimeError: prefix-sum이 dense 크기를 넘는 등 내부 불변식 위반
        """
        mask = np.asarray(mask)
        if mask.shape != (self.height, self.width):
            raise ValueError(
                f"mask shape {mask.shape} does not match "
                f"({self.height}, {self.width})")
        if not np.issubdtype(mask.dtype, np.floating):
            mask = mask.astype(np.float32)

        n = self.width * self.height

        clear_decision_buffers(self._decision, self._prefix, self._remap)
        compute_decision_array(mask, self.patch_size, self._decision)
        _, total = exclusive_prefix_sum(self._decision, self._prefix)

        if total < 0 or total > n:
            raise RuntimeError(
                f"remap overflow: {total} active elements for dense size {n}")

        compute_remap_array(self._decision, self._prefix, self._remap)

        indices = self._remap[:total]
        if total > 1 and not np.all(np.diff(indices) > 0):
            raise RuntimeError("remap table is not strictly increasing")
        if total > 0 and indices[0] < 0:
            raise RuntimeError("remap table has unfilled entries")

        _logger.debug(f"remap: {total}/{n} 활성 원소 "
                      f"({total / n * 100:.1f}%)")

        return RemapTable(
            indices=indices,
            prefix=self._prefix,
            decision=self._decision,
            width=self.width,
            height=self.height,
        )


# =============================================================================
#  4. 마스크 생성 헬퍼
# =============================================================================

def create_depth_mask(depth: np.ndarray,
                      min_depth: float = 0.0,
                      max_depth: float = np.inf,
                      morph_size: int = 0) -> np.ndarray:
    """
    깊이 맵에서 유효 마스크 생성

    유한하고 (min_depth, max_depth] 범위인 픽셀을 1, 그 외 0.

    Parameters
    ----------
    morph_size : int
        0보다 크면 모폴로지 open으로 고립된 유효 픽셀 제거.

    Returns
    -------
    (H, W) float32 마스크
    """
    depth = np.asarray(depth, dtype=np.float64)
    with np.errstate(invalid='ignore'):
        valid = np.isfinite(depth) & (depth > min_depth) & (depth <= max_depth)
    mask = valid.astype(np.uint8) * 255

    if morph_size > 0:
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE,
                                           (morph_size, morph_size))
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)

    return (mask > 0).astype(np.float32)


def create_edge_mask(depth: np.ndarray,
                     max_depth_jump: float = np.inf,
                     mask: Optional[np.ndarray] = None) -> np.ndarray:
    """
    가로/세로 이웃 쌍 유효 마스크 생성

    [0, y, x] = 1 : (y, x)와 (y, x+1) 모두 유효이고 깊이 차이 <= max_depth_jump
    [1, y, x] = 1 : (y, x)와 (y+1, x) 모두 유효이고 깊이 차이 <= max_depth_jump

    Returns
    -------
    (2, H, W) uint8
    """
    depth = np.asarray(depth, dtype=np.float64)
    if mask is None:
        mask = create_depth_mask(depth)
    valid = np.asarray(mask) > 0

    h, w = depth.shape
    edge = np.zeros((2, h, w), dtype=np.uint8)

    with np.errstate(invalid='ignore'):
        row_ok = (valid[:, :-1] & valid[:, 1:]
                  & (np.abs(depth[:, 1:] - depth[:, :-1]) <= max_depth_jump))
        col_ok = (valid[:-1, :] & valid[1:, :]
                  & (np.abs(depth[1:, :] - depth[:-1, :]) <= max_depth_jump))

    edge[0, :, :-1] = row_ok
    edge[1, :-1, :] = col_ok
    return edge


def get_mask_statistics(mask: np.ndarray) -> dict:
    """마스크 통계 정보"""
    mask = np.asarray(mask)
    total = mask.size
    with np.errstate(invalid='ignore'):
        active = int(np.count_nonzero(np.isfinite(mask) & (mask > 0)))
    return {
        'total_elements': total,
        'active_elements': active,
        'inactive_elements': total - active,
        'coverage_ratio': active / total if total > 0 else 0
    }
