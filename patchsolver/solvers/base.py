"""
Solver capability

backend 구현체의 공통 인터페이스. backend 선택은 이름 → 클래스 표
(backends.BACKENDS)로 하고, 문제 코드에 분기를 두지 않는다.

Solver 인스턴스 = 하나의 plan: 자신의 작업 버퍼를 소유하며
다른 인스턴스와 공유하지 않는다.
"""

from abc import ABC, abstractmethod
from typing import Optional, Callable

import numpy as np

from ..models.parameters import SolverParameters
from ..models.results import SolveResult


class Solver(ABC):
    """비선형 최소제곱 backend"""

    name = 'solver'

    def __init__(self, definition=None):
        self.definition = definition
        self.closed = False

    @abstractmethod
    def solve(self, problem, params: SolverParameters,
              callback: Optional[Callable[[int, np.ndarray], bool]] = None) -> SolveResult:
        """
        problem.x를 in-place 갱신

        Args:
            problem: NonlinearProblem
            params: 반복 횟수 / 가중치
            callback: callback(iteration, x) -> True이면 조기 종료
        """

    def close(self):
        """작업 버퍼 해제"""
        self.closed = True

    def __repr__(self):
        problem = self.definition.problem if self.definition is not None else None
        return f"{type(self).__name__}(problem={problem!r})"
