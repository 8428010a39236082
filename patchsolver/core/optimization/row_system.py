"""
Residual row 저장소

모든 에너지 항(fitting, prior, regularizer, shading, ARAP edge)은
"row" 단위로 저장된다. row 하나 = residual 값 f 하나 + 최대 K개의
(column, Jacobian 값) 쌍.

    idx   : (R, K) int64  : compact unknown 인덱스, -1은 미사용/상수 입력
    val   : (R, K) float  : df/dx_col (sqrt 가중치 적용 완료)
    f     : (R,)   float  : residual (sqrt 가중치 적용 완료)
    owner : (R,)   int64  : snapshot용 소유 원소 (dense 픽셀/정점 인덱스)

cost = sum(f^2), JTF = J^T f, JTJ 대각 = sum(val^2).
누적(scatter)은 race를 피하기 위해 순차 루프.
"""

import numpy as np
from dataclasses import dataclass
from numba import jit, prange
from scipy import sparse


ROW_WIDTH = 5


# =============================================================================
#  1. 누적 커널
# =============================================================================

@jit(nopython=True, cache=True)
def accumulate_jtf(idx, val, f, out):
    """out = J^T f"""
    for i in range(len(out)):
        out[i] = 0.0
    for k in range(idx.shape[0]):
        fk = f[k]
        if fk == 0.0:
            continue
        for m in range(idx.shape[1]):
            c = idx[k, m]
            if c >= 0:
                out[c] += val[k, m] * fk


@jit(nopython=True, cache=True)
def accumulate_diag(idx, val, out):
    """out = diag(J^T J)"""
    for i in range(len(out)):
        out[i] = 0.0
    for k in range(idx.shape[0]):
        for m in range(idx.shape[1]):
            c = idx[k, m]
            if c >= 0:
                out[c] += val[k, m] * val[k, m]


@jit(nopython=True, cache=True)
def accumulate_owner_cost(owner, f, out):
    """원소별 cost 합 (owner < 0인 row는 제외)"""
    for i in range(len(out)):
        out[i] = 0.0
    for k in range(len(f)):
        o = owner[k]
        if o >= 0:
            out[o] += f[k] * f[k]


@jit(nopython=True, parallel=True, cache=True)
def total_cost(f):
    s = 0.0
    for k in prange(len(f)):
        s += np.float64(f[k]) * np.float64(f[k])
    return s


@jit(nopython=True, parallel=True, cache=True)
def clear_rows(idx, val, f):
    for k in prange(idx.shape[0]):
        f[k] = 0.0
        for m in range(idx.shape[1]):
            idx[k, m] = -1
            val[k, m] = 0.0


# =============================================================================
#  2. RowSystem
# =============================================================================

@dataclass
class RowSystem:
    """residual row 버퍼 (문제 인스턴스가 1회 할당, 평가마다 덮어씀)"""
    idx: np.ndarray
    val: np.ndarray
    f: np.ndarray
    owner: np.ndarray

    @property
    def n_rows(self) -> int:
        return self.f.shape[0]

    @property
    def dtype(self):
        return self.f.dtype

    def clear(self):
        if self.n_rows > 0:
            clear_rows(self.idx, self.val, self.f)

    def cost(self) -> float:
        if self.n_rows == 0:
            return 0.0
        return float(total_cost(self.f))

    def jtf(self, n_unknowns: int) -> np.ndarray:
        out = np.zeros(n_unknowns, dtype=np.float64)
        if self.n_rows > 0 and n_unknowns > 0:
            accumulate_jtf(self.idx, self.val, self.f, out)
        return out

    def jtj_diagonal(self, n_unknowns: int) -> np.ndarray:
        out = np.zeros(n_unknowns, dtype=np.float64)
        if self.n_rows > 0 and n_unknowns > 0:
            accumulate_diag(self.idx, self.val, out)
        return out

    def cost_per_owner(self, n_owners: int) -> np.ndarray:
        out = np.zeros(n_owners, dtype=np.float64)
        if self.n_rows > 0 and n_owners > 0:
            accumulate_owner_cost(self.owner, self.f, out)
        return out

    def to_csr(self, n_unknowns: int) -> sparse.csr_matrix:
        """Jacobian J (R x n_unknowns): 중복 (row, col)은 합산"""
        used = self.idx >= 0
        rows = np.nonzero(used)[0]
        cols = self.idx[used]
        vals = self.val[used].astype(np.float64)
        return sparse.csr_matrix((vals, (rows, cols)),
                                 shape=(self.n_rows, n_unknowns))

    def normal_equations(self, n_unknowns: int):
        """(J^T J, J^T f): 검증/기준해용"""
        J = self.to_csr(n_unknowns)
        f = self.f.astype(np.float64)
        return (J.T @ J).tocsr(), J.T @ f


def allocate_rows(n_rows: int, dtype=np.float64, width: int = ROW_WIDTH) -> RowSystem:
    return RowSystem(
        idx=np.full((n_rows, width), -1, dtype=np.int64),
        val=np.zeros((n_rows, width), dtype=dtype),
        f=np.zeros(n_rows, dtype=dtype),
        owner=np.full(n_rows, -1, dtype=np.int64),
    )
