"""
솔버 결과 데이터 클래스
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Optional, Dict, List


# 종료 상태 코드 상수
SOLVE_SUCCESS = 0
SOLVE_EMPTY_DOMAIN = 1
SOLVE_EARLY_OUT = 2
SOLVE_NO_ITERATIONS = 3

STATUS_NAMES = {
    SOLVE_SUCCESS: 'success',
    SOLVE_EMPTY_DOMAIN: 'empty_domain',
    SOLVE_EARLY_OUT: 'early_out',
    SOLVE_NO_ITERATIONS: 'no_iterations',
}


@dataclass
class SolveResult:
    """비선형 solve 결과 (unknown field는 in-place 갱신됨)"""

    status: int = SOLVE_SUCCESS
    backend: str = 'native_block'

    # 반복 정보
    iterations: int = 0
    n_unknowns: int = 0
    n_patches: int = 0

    # 비용 이력 (반복 전 비용 포함, 길이 = iterations + 1)
    cost_history: List[float] = field(default_factory=list)

    # 수치적 퇴화로 0 처리된 residual 수 (마지막 평가 기준)
    n_degenerate: int = 0

    processing_time: float = 0.0

    @property
    def status_name(self) -> str:
        return STATUS_NAMES.get(self.status, 'unknown')

    @property
    def initial_cost(self) -> float:
        if not self.cost_history:
            return 0.0
        return self.cost_history[0]

    @property
    def final_cost(self) -> float:
        if not self.cost_history:
            return 0.0
        return self.cost_history[-1]

    @property
    def cost_reduction(self) -> float:
        """초기 대비 비용 감소율 (0~1)"""
        if self.initial_cost <= 0.0:
            return 0.0
        return 1.0 - self.final_cost / self.initial_cost

    @property
    def stopped_early(self) -> bool:
        return self.status == SOLVE_EARLY_OUT


@dataclass
class MeshSolveResult(SolveResult):
    """메쉬 변형 결과: 정점 위치와 회전각"""

    positions: Optional[np.ndarray] = None
    angles: Optional[np.ndarray] = None

    # constraint ramp 단계별 결과
    step_costs: List[float] = field(default_factory=list)

    @property
    def n_vertices(self) -> int:
        if self.positions is None:
            return 0
        return len(self.positions)

    @property
    def summary(self) -> Dict[str, float]:
        return {
            'iterations': self.iterations,
            'initial_cost': self.initial_cost,
            'final_cost': self.final_cost,
            'steps': len(self.step_costs),
        }
