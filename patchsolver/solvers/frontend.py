"""
솔버 front-end 공통 기반

registry에서 definition을 얻고, plan(인스턴스 전용 Solver)을 만들고,
close() 또는 context 종료 시 반납한다.
"""

from typing import Optional

from .registry import PlanRegistry
from ..utils.logger import logger


class PatchSolverBase:
    """PatchSolverSFS / PatchSolverWarping / ARAPMeshSolver 공통"""

    problem_name = ''

    def __init__(self, registry: Optional[PlanRegistry] = None,
                 backend: str = 'native_block', warmup: bool = False):
        self.registry = registry if registry is not None else PlanRegistry()
        self.backend = backend
        self.definition = self.registry.acquire(self.problem_name, backend)
        try:
            if warmup:
                self.definition.compile()
            self.solver = self.definition.plan()
        except Exception:
            self.registry.release(self.problem_name, backend)
            raise
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self):
        if self._closed:
            raise RuntimeError(f"{type(self).__name__} is closed")

    def close(self):
        if self._closed:
            return
        self.solver.close()
        self.registry.release(self.problem_name, self.backend)
        self._closed = True
        logger.debug(f"{type(self).__name__} closed ({self.backend})")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
