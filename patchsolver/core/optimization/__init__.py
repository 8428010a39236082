# patchsolver/core/optimization/__init__.py

from .row_system import RowSystem, allocate_rows, ROW_WIDTH
from .gauss_newton import NonlinearProblem, BlockLinearSolver, run_gauss_newton
from .pcg_numba import solve_patches, allocate_patch_buffers, warmup_pcg
from .grid_terms_numba import warmup_grid_terms, sqrt_weight
from .sfs_terms_numba import warp_previous_depth, warmup_sfs_terms
from .arap_terms_numba import wrap_angles, warmup_arap_terms

__all__ = [
    'RowSystem',
    'allocate_rows',
    'ROW_WIDTH',
    'NonlinearProblem',
    'BlockLinearSolver',
    'run_gauss_newton',
    'solve_patches',
    'allocate_patch_buffers',
    'sqrt_weight',
    'warp_previous_depth',
    'wrap_angles',
    # Numba 워밍업
    'warmup_pcg',
    'warmup_grid_terms',
    'warmup_sfs_terms',
    'warmup_arap_terms',
]
