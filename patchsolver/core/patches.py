"""
패치 분할 모듈

unknown 인덱스(dense 또는 remap된 compact 인덱스)를
(patch_id, offset_within_patch, is_boundary)로 매핑한다.

세 가지 레이아웃:
    - grid_layout:   이미지 픽셀: patch_size x patch_size 타일 (row-major 번호)
    - block_layout:  메쉬 정점: 연속 정점 블록, 정점당 dims개 스칼라 unknown
    - single_patch_layout: 전체 도메인 = 패치 1개 (whole-domain PCG)

분할은 인덱스와 패치 크기만의 순수 함수 (순서 무작위성 없음).

패치 색칠: 같은 색 패치끼리는 residual row를 공유하지 않는다.
색 단위로 순차 갱신하면 (multiplicative block Gauss-Seidel)
같은 row를 두 패치가 동시에 보정하지 않는다.
"""

import numpy as np
from dataclasses import dataclass
from typing import Tuple, Optional
from numba import jit, prange


# =============================================================================
#  1. 단일 인덱스 분할 (순수 함수)
# =============================================================================

def partition_index(index: int, width: int, height: int, patch_size: int,
                    remap: Optional[np.ndarray] = None,
                    halo: int = 1) -> Tuple[int, int, bool]:
    """
    선형 인덱스 → (patch_id, offset, is_boundary)

    Args:
        index: dense 픽셀 인덱스, 또는 remap이 주어지면 compact 인덱스
        width, height: 이미지 크기
        patch_size: 타일 한 변 크기
        remap: compact → dense 매핑 (None이면 index가 dense)
        halo: 경계 판정 거리 (스텐실 도달 거리)

    Returns:
        (patch_id, offset, is_boundary)
        is_boundary: halo 거리 내에 다른 타일의 (이미지 안) 픽셀이 있으면 True
    """
    if remap is not None:
        if index < 0 or index >= len(remap):
            raise IndexError(f"compact index {index} out of range {len(remap)}")
        index = int(remap[index])
    if index < 0 or index >= width * height:
        raise IndexError(f"index {index} out of range {width * height}")

    return _partition_pixel(index, width, height, patch_size, halo)


@jit(nopython=True, cache=True)
def _partition_pixel(pixel, width, height, patch_size, halo):
    r = pixel // width
    c = pixel - r * width
    n_px = (width + patch_size - 1) // patch_size

    tr = r // patch_size
    tc = c // patch_size
    patch_id = tr * n_px + tc
    offset = (r - tr * patch_size) * patch_size + (c - tc * patch_size)

    boundary = False
    if max(r - halo, 0) < tr * patch_size:
        boundary = True
    elif min(r + halo, height - 1) >= (tr + 1) * patch_size:
        boundary = True
    elif max(c - halo, 0) < tc * patch_size:
        boundary = True
    elif min(c + halo, width - 1) >= (tc + 1) * patch_size:
        boundary = True

    return patch_id, offset, boundary


@jit(nopython=True, parallel=True, cache=True)
def _grid_partition(pixels, width, height, patch_size, halo,
                    elem_patch, elem_offset, elem_boundary):
    for k in prange(len(pixels)):
        pid, off, bnd = _partition_pixel(pixels[k], width, height,
                                         patch_size, halo)
        elem_patch[k] = pid
        elem_offset[k] = off
        elem_boundary[k] = bnd


# =============================================================================
#  2. 패치 → 원소 / 패치 → residual row (CSR)
# =============================================================================

@jit(nopython=True, cache=True)
def _group_by_patch(elem_patch, n_patches, ptr, elems):
    counts = np.zeros(n_patches, dtype=np.int64)
    for k in range(len(elem_patch)):
        counts[elem_patch[k]] += 1
    ptr[0] = 0
    for p in range(n_patches):
        ptr[p + 1] = ptr[p] + counts[p]
    fill = ptr[:-1].copy()
    for k in range(len(elem_patch)):
        p = elem_patch[k]
        elems[fill[p]] = k
        fill[p] += 1


@jit(nopython=True, cache=True)
def _rows_by_patch(rows_idx, elem_patch, n_patches):
    """
    residual row를 그 열이 속한 모든 패치에 등록

    한 row가 같은 패치의 열을 여러 개 가져도 1회만 등록.
    """
    n_rows = rows_idx.shape[0]
    width = rows_idx.shape[1]
    counts = np.zeros(n_patches, dtype=np.int64)
    seen = np.empty(width, dtype=np.int64)

    for k in range(n_rows):
        n_seen = 0
        for m in range(width):
            col = rows_idx[k, m]
            if col < 0:
                continue
            p = elem_patch[col]
            dup = False
            for s in range(n_seen):
                if seen[s] == p:
                    dup = True
                    break
            if not dup:
                seen[n_seen] = p
                n_seen += 1
                counts[p] += 1

    ptr = np.zeros(n_patches + 1, dtype=np.int64)
    for p in range(n_patches):
        ptr[p + 1] = ptr[p] + counts[p]
    rows = np.empty(ptr[n_patches], dtype=np.int64)
    fill = ptr[:-1].copy()

    for k in range(n_rows):
        n_seen = 0
        for m in range(width):
            col = rows_idx[k, m]
            if col < 0:
                continue
            p = elem_patch[col]
            dup = False
            for s in range(n_seen):
                if seen[s] == p:
                    dup = True
                    break
            if not dup:
                seen[n_seen] = p
                n_seen += 1
                rows[fill[p]] = k
                fill[p] += 1

    return ptr, rows


@dataclass
class PatchLayout:
    """
    unknown → 패치 분할 결과

    elem_*: unknown(compact 스칼라 인덱스)별 배열
    patch_elem_ptr / patch_elems: 패치별 unknown 목록 (CSR)
    capacity: 패치당 로컬 슬롯 수 (offset < capacity)
    patch_color: 패치별 색 (같은 색끼리 row 공유 없음)
    color_ptr / color_patches: 색별 패치 목록 (CSR)
    """
    n_unknowns: int
    n_patches: int
    capacity: int
    elem_patch: np.ndarray
    elem_offset: np.ndarray
    elem_boundary: np.ndarray
    patch_elem_ptr: np.ndarray
    patch_elems: np.ndarray
    patch_color: np.ndarray
    color_ptr: np.ndarray
    color_patches: np.ndarray
    kind: str = 'grid'

    @property
    def boundary_elems(self) -> np.ndarray:
        return np.flatnonzero(self.elem_boundary).astype(np.int64)

    @property
    def n_boundary(self) -> int:
        return int(np.count_nonzero(self.elem_boundary))

    @property
    def n_colors(self) -> int:
        return len(self.color_ptr) - 1

    def patches_of_color(self, color: int) -> np.ndarray:
        return self.color_patches[self.color_ptr[color]:self.color_ptr[color + 1]]

    def patch_of(self, unknown: int) -> Tuple[int, int, bool]:
        return (int(self.elem_patch[unknown]), int(self.elem_offset[unknown]),
                bool(self.elem_boundary[unknown]))

    def rows_by_patch(self, rows_idx: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """residual row 목록의 패치별 CSR (row_ptr, rows)"""
        if self.n_unknowns == 0:
            return np.zeros(self.n_patches + 1, dtype=np.int64), np.empty(0, dtype=np.int64)
        return _rows_by_patch(rows_idx, self.elem_patch, self.n_patches)


def _group_by_color(patch_color):
    """색별 패치 CSR (색 안에서는 패치 id 오름차순)"""
    patch_color = np.asarray(patch_color, dtype=np.int64)
    n_colors = int(patch_color.max()) + 1 if len(patch_color) > 0 else 0
    counts = np.bincount(patch_color, minlength=n_colors)
    ptr = np.zeros(n_colors + 1, dtype=np.int64)
    ptr[1:] = np.cumsum(counts)
    order = np.argsort(patch_color, kind='stable').astype(np.int64)
    return ptr, order


def _greedy_block_colors(n_blocks, block_a, block_b):
    """
    블록 인접 그래프의 greedy 색칠

    block_a[i] - block_b[i]: 메쉬 edge가 가로지르는 블록 쌍
    """
    adjacency = [set() for _ in range(n_blocks)]
    for a, b in zip(block_a.tolist(), block_b.tolist()):
        if a != b:
            adjacency[a].add(b)
            adjacency[b].add(a)

    colors = np.full(n_blocks, -1, dtype=np.int64)
    for blk in range(n_blocks):
        used = {int(colors[nb]) for nb in adjacency[blk] if colors[nb] >= 0}
        color = 0
        while color in used:
            color += 1
        colors[blk] = color
    return colors


def _finish_layout(n_unknowns, n_patches, capacity,
                   elem_patch, elem_offset, elem_boundary, patch_color,
                   kind) -> PatchLayout:
    ptr = np.zeros(n_patches + 1, dtype=np.int64)
    elems = np.empty(n_unknowns, dtype=np.int64)
    if n_unknowns > 0:
        _group_by_patch(elem_patch, n_patches, ptr, elems)
    color_ptr, color_patches = _group_by_color(patch_color)
    return PatchLayout(
        n_unknowns=n_unknowns,
        n_patches=n_patches,
        capacity=capacity,
        elem_patch=elem_patch,
        elem_offset=elem_offset,
        elem_boundary=elem_boundary,
        patch_elem_ptr=ptr,
        patch_elems=elems,
        patch_color=np.asarray(patch_color, dtype=np.int64),
        color_ptr=color_ptr,
        color_patches=color_patches,
        kind=kind,
    )


# =============================================================================
#  3. 레이아웃 생성
# =============================================================================

def grid_layout(width: int, height: int, patch_size: int,
                active_index: Optional[np.ndarray] = None,
                halo: int = 1) -> PatchLayout:
    """
    이미지 타일 레이아웃

    Args:
        width, height: 이미지 크기
        patch_size: 타일 한 변
        active_index: compact → dense 픽셀 (None이면 전체 픽셀)
        halo: 경계 판정 거리
    """
    if patch_size <= 0:
        raise ValueError(f"patch_size must be positive, got {patch_size}")
    if active_index is None:
        active_index = np.arange(width * height, dtype=np.int64)
    pixels = np.asarray(active_index, dtype=np.int64)
    n = len(pixels)

    n_px = (width + patch_size - 1) // patch_size
    n_py = (height + patch_size - 1) // patch_size

    # 같은 색 타일 사이에 halo보다 넓은 간격이 생기도록 stride x stride 색칠
    stride = -(-max(halo, 0) // patch_size) + 1
    tile = np.arange(n_px * n_py, dtype=np.int64)
    patch_color = (tile // n_px % stride) * stride + (tile % n_px % stride)

    elem_patch = np.empty(n, dtype=np.int64)
    elem_offset = np.empty(n, dtype=np.int64)
    elem_boundary = np.empty(n, dtype=np.bool_)
    if n > 0:
        _grid_partition(pixels, width, height, patch_size, halo,
                        elem_patch, elem_offset, elem_boundary)

    return _finish_layout(n, n_px * n_py, patch_size * patch_size,
                          elem_patch, elem_offset, elem_boundary, patch_color,
                          'grid')


def block_layout(n_vertices: int, block_size: int, dims: int,
                 neighbour_offset: np.ndarray,
                 neighbour_idx: np.ndarray) -> PatchLayout:
    """
    메쉬 정점 블록 레이아웃

    스칼라 unknown u = v * dims + c  (v: 정점, c: 성분)
    경계: 다른 블록에 메쉬 이웃이 있는 정점의 모든 성분
    """
    if block_size <= 0:
        raise ValueError(f"block_size must be positive, got {block_size}")
    n_blocks = max((n_vertices + block_size - 1) // block_size, 1)

    vertex = np.arange(n_vertices, dtype=np.int64)
    vertex_block = vertex // block_size

    vertex_boundary = np.zeros(n_vertices, dtype=np.bool_)
    src = np.repeat(vertex, np.diff(neighbour_offset))
    cross = vertex_block[src] != vertex_block[np.asarray(neighbour_idx, dtype=np.int64)]
    vertex_boundary[src[cross]] = True

    # 이웃 블록끼리 다른 색
    cross_src = vertex_block[src[cross]]
    cross_dst = vertex_block[np.asarray(neighbour_idx, dtype=np.int64)[cross]]
    patch_color = _greedy_block_colors(n_blocks, cross_src, cross_dst)

    n = n_vertices * dims
    comp = np.tile(np.arange(dims, dtype=np.int64), n_vertices)
    elem_vertex = np.repeat(vertex, dims)

    elem_patch = vertex_block[elem_vertex]
    elem_offset = (elem_vertex - elem_patch * block_size) * dims + comp
    elem_boundary = vertex_boundary[elem_vertex]

    return _finish_layout(n, n_blocks, block_size * dims,
                          elem_patch.astype(np.int64), elem_offset.astype(np.int64),
                          elem_boundary, patch_color, 'block')


def single_patch_layout(n_unknowns: int) -> PatchLayout:
    """전체 도메인을 패치 1개로 (whole-domain solve)"""
    return _finish_layout(
        n_unknowns, 1, max(n_unknowns, 1),
        np.zeros(n_unknowns, dtype=np.int64),
        np.arange(n_unknowns, dtype=np.int64),
        np.zeros(n_unknowns, dtype=np.bool_),
        np.zeros(1, dtype=np.int64),
        'single')
