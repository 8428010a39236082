"""패치 기반 비선형 최소제곱 핵심 모듈"""

from .masking import (
    MaskRemapper,
    RemapTable,
    exclusive_prefix_sum,
    inverse_remap,
    create_depth_mask,
    create_edge_mask,
    get_mask_statistics,
)
from .patches import (
    PatchLayout,
    partition_index,
    grid_layout,
    block_layout,
    single_patch_layout,
)
from .diagnostics import (
    DiagnosticsSink,
    InMemorySink,
    ImageDumpSink,
    save_opt_image,
    load_opt_image,
    compute_snapshots,
)

__all__ = [
    'MaskRemapper',
    'RemapTable',
    'exclusive_prefix_sum',
    'inverse_remap',
    'create_depth_mask',
    'create_edge_mask',
    'get_mask_statistics',
    'PatchLayout',
    'partition_index',
    'grid_layout',
    'block_layout',
    'single_patch_layout',
    'DiagnosticsSink',
    'InMemorySink',
    'ImageDumpSink',
    'save_opt_image',
    'load_opt_image',
    'compute_snapshots',
]
