"""솔버 데이터 모델"""

from .parameters import (
    SolverParameters,
    CalibrationParams,
    SFSInput,
    PARAMETER_FIELD_ORDER,
    PRECISION_DTYPES,
    pack_solver_parameters,
    unpack_solver_parameters,
)
from .results import (
    SolveResult,
    MeshSolveResult,
    SOLVE_SUCCESS,
    SOLVE_EMPTY_DOMAIN,
    SOLVE_EARLY_OUT,
    SOLVE_NO_ITERATIONS,
    STATUS_NAMES,
)
from .settings import SettingsManager

__all__ = [
    'SolverParameters',
    'CalibrationParams',
    'SFSInput',
    'PARAMETER_FIELD_ORDER',
    'PRECISION_DTYPES',
    'pack_solver_parameters',
    'unpack_solver_parameters',
    'SolveResult',
    'MeshSolveResult',
    'SOLVE_SUCCESS',
    'SOLVE_EMPTY_DOMAIN',
    'SOLVE_EARLY_OUT',
    'SOLVE_NO_ITERATIONS',
    'STATUS_NAMES',
    'SettingsManager',
]
