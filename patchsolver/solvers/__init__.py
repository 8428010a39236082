"""솔버 front-end 및 backend"""

from .base import Solver
from .backends import (
    NativeBlockSolver,
    CompiledPlanSolver,
    LibraryNLLSSolver,
    BACKENDS,
    create_solver,
)
from .registry import ProblemDefinition, PlanRegistry
from .frontend import PatchSolverBase
from .sfs import PatchSolverSFS, SFSProblem, solve_sfs
from .warping import PatchSolverWarping, SmoothingProblem, smooth_image
from .arap import ARAPMeshSolver, ARAPProblem, adjacency_from_edges, edges_from_faces

__all__ = [
    'Solver',
    'NativeBlockSolver',
    'CompiledPlanSolver',
    'LibraryNLLSSolver',
    'BACKENDS',
    'create_solver',
    'ProblemDefinition',
    'PlanRegistry',
    'PatchSolverBase',
    'PatchSolverSFS',
    'SFSProblem',
    'solve_sfs',
    'PatchSolverWarping',
    'SmoothingProblem',
    'smooth_image',
    'ARAPMeshSolver',
    'ARAPProblem',
    'adjacency_from_edges',
    'edges_from_faces',
]
