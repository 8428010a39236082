"""
Plan registry

(problem, backend) 쌍마다 컴파일된 커널 집합(ProblemDefinition)을 하나만 두고
reference counting으로 공유한다. 전역 싱글톤 대신 registry를 각 솔버
생성자에 명시적으로 넘긴다.

    registry = PlanRegistry()
    a = PatchSolverSFS(640, 480, calib, registry=registry)
    b = PatchSolverSFS(640, 480, calib, registry=registry)   # 같은 definition 공유
    a.close(); b.close()                                      # refcount 0 → 제거
"""

import time
import threading
from typing import Dict, Tuple

from .backends import BACKENDS, create_solver
from ..utils.logger import logger
from ..core.optimization.pcg_numba import warmup_pcg
from ..core.optimization.grid_terms_numba import warmup_grid_terms
from ..core.optimization.sfs_terms_numba import warmup_sfs_terms
from ..core.optimization.arap_terms_numba import warmup_arap_terms


# 문제별 평가 커널 워밍업
PROBLEM_KERNELS = {
    'sfs': (warmup_grid_terms, warmup_sfs_terms),
    'smoothing': (warmup_grid_terms,),
    'arap': (warmup_arap_terms,),
}

# 블록 PCG를 쓰는 backend
PCG_BACKENDS = ('native_block', 'compiled_plan')


class ProblemDefinition:
    """
    한 문제 정의의 한 backend용 컴파일 결과

    compile()은 JIT 워밍업을 1회만 수행한다. plan()은 인스턴스 전용
    작업 버퍼를 가진 Solver를 새로 만든다.
    """

    def __init__(self, problem: str, backend: str):
        if problem not in PROBLEM_KERNELS:
            raise ValueError(
                f"unknown problem '{problem}', expected one of {sorted(PROBLEM_KERNELS)}")
        if backend not in BACKENDS:
            raise ValueError(
                f"unknown backend '{backend}', expected one of {sorted(BACKENDS)}")
        self.problem = problem
        self.backend = backend
        self.compiled = False
        self.compile_time = 0.0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.problem, self.backend)

    def compile(self):
        if self.compiled:
            return self
        start = time.time()
        for warmup in PROBLEM_KERNELS[self.problem]:
            warmup()
        if self.backend in PCG_BACKENDS:
            warmup_pcg()
        self.compile_time = time.time() - start
        self.compiled = True
        logger.info(f"{self.problem}/{self.backend} 커널 컴파일: "
                     f"{self.compile_time:.2f}s")
        return self

    def plan(self):
        return create_solver(self.backend, self)

    def __repr__(self):
        return (f"ProblemDefinition(problem={self.problem!r}, "
                f"backend={self.backend!r}, compiled={self.compiled})")


class PlanRegistry:
    """(problem, backend) → ProblemDefinition, reference counted"""

    def __init__(self):
        self._definitions: Dict[Tuple[str, str], ProblemDefinition] = {}
        self._refcounts: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def acquire(self, problem: str, backend: str) -> ProblemDefinition:
        key = (problem, backend)
        with self._lock:
            definition = self._definitions.get(key)
            if definition is None:
                definition = ProblemDefinition(problem, backend)
                self._definitions[key] = definition
                self._refcounts[key] = 0
            self._refcounts[key] += 1
            return definition

    def release(self, problem: str, backend: str) -> bool:
        """
        Returns:
            True이면 refcount가 0이 되어 definition 제거됨
        """
        key = (problem, backend)
        with self._lock:
            if key not in self._refcounts:
                raise KeyError(f"{key} is not registered")
            self._refcounts[key] -= 1
            if self._refcounts[key] > 0:
                return False
            del self._refcounts[key]
            del self._definitions[key]
            return True

    def refcount(self, problem: str, backend: str) -> int:
        return self._refcounts.get((problem, backend), 0)

    def __contains__(self, key) -> bool:
        return key in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
