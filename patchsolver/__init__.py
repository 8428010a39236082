"""패치 기반 비선형 최소제곱 솔버 패키지"""

from .models import (
    SolverParameters,
    CalibrationParams,
    SFSInput,
    SolveResult,
    MeshSolveResult,
    SettingsManager,
    pack_solver_parameters,
    unpack_solver_parameters,
)
from .core import (
    MaskRemapper,
    create_depth_mask,
    create_edge_mask,
    get_mask_statistics,
    partition_index,
    InMemorySink,
    ImageDumpSink,
    load_opt_image,
)
from .solvers import (
    PlanRegistry,
    PatchSolverSFS,
    PatchSolverWarping,
    ARAPMeshSolver,
    BACKENDS,
    solve_sfs,
    smooth_image,
)

__version__ = "1.0.0"

__all__ = [
    # Models
    'SolverParameters',
    'CalibrationParams',
    'SFSInput',
    'SolveResult',
    'MeshSolveResult',
    'SettingsManager',
    'pack_solver_parameters',
    'unpack_solver_parameters',

    # Core
    'MaskRemapper',
    'create_depth_mask',
    'create_edge_mask',
    'get_mask_statistics',
    'partition_index',
    'InMemorySink',
    'ImageDumpSink',
    'load_opt_image',

    # Solvers
    'PlanRegistry',
    'PatchSolverSFS',
    'PatchSolverWarping',
    'ARAPMeshSolver',
    'BACKENDS',
    'solve_sfs',
    'smooth_image',
]
