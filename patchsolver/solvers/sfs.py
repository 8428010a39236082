"""
Shape-from-Shading 패치 솔버

깊이 맵을 목표 깊이, 목표 intensity, SH 조명으로 정제한다.

처리 흐름 (PatchSolverSFS.solve):
    1. 입력 검증 (크기, dtype, 파라미터): 커널 실행 전 1회
    2. 유효 마스크 → remap table (use_remapping=True) 또는 dense 인덱스
    3. 이전 프레임 깊이를 deltaTransform으로 warp
    4. 패치 레이아웃 (16x16 타일, shading 스텐실 도달 거리 2)
    5. (선택) 진입 시점 cost/JTF/Pre/JTJ 스냅샷 → diagnostics sink
    6. backend Gauss-Newton
    7. 활성 픽셀만 출력 버퍼에 기록
"""

import time
import logging
import numpy as np
from typing import Optional, Union, Callable

from .frontend import PatchSolverBase
from .registry import PlanRegistry
from ..core.masking import MaskRemapper
from ..core.patches import grid_layout
from ..core.diagnostics import DiagnosticsSink, compute_snapshots, emit_snapshots
from ..core.optimization.gauss_newton import NonlinearProblem
from ..core.optimization.row_system import allocate_rows
from ..core.optimization.grid_terms_numba import sqrt_weight
from ..core.optimization.sfs_terms_numba import (
    ROWS_PER_PIXEL_SFS,
    evaluate_sfs_rows,
    warp_previous_depth,
    normal_orientation,
)
from ..models.parameters import SolverParameters, CalibrationParams, SFSInput
from ..models.results import SolveResult, SOLVE_EMPTY_DOMAIN

_logger = logging.getLogger(__name__)

SFS_HALO = 2


class SFSProblem(NonlinearProblem):
    """SFS 에너지 (compact unknown = 활성 픽셀 깊이)"""

    name = 'sfs'

    def __init__(self, x, layout, rows, pixel_of, compact_of, valid,
                 target_depth, target_intensity, albedo, prev_warped,
                 edge_h, edge_v, width, height,
                 calibration: CalibrationParams, lighting):
        super().__init__(x, layout, rows)
        self.x_rest = x.copy()
        self.pixel_of = pixel_of
        self.compact_of = compact_of
        self.valid = valid
        self.target_depth = target_depth
        self.target_intensity = target_intensity
        self.albedo = albedo
        self.prev_warped = prev_warped
        self.edge_h = edge_h
        self.edge_v = edge_v
        self.width = width
        self.height = height
        self.calibration = calibration
        self.orient = normal_orientation(calibration.fx, calibration.fy)
        self.lighting = np.ascontiguousarray(lighting, dtype=np.float64).reshape(9)
        self._degenerate = np.zeros(len(x), dtype=np.int64)

    def evaluate(self, x, params: SolverParameters) -> int:
        c = self.calibration
        evaluate_sfs_rows(
            x, self.x_rest, self.pixel_of, self.compact_of, self.valid,
            self.target_depth, self.target_intensity, self.albedo, self.prev_warped,
            self.edge_h, self.edge_v, self.width, self.height,
            c.fx, c.fy, c.ux, c.uy, self.orient, self.lighting,
            sqrt_weight(params.weight_fitting),
            sqrt_weight(params.weight_prior),
            sqrt_weight(params.weight_regularizer),
            sqrt_weight(params.weight_boundary),
            sqrt_weight(params.weight_shading),
            self.rows.idx, self.rows.val, self.rows.f, self.rows.owner,
            self._degenerate,
        )
        return int(self._degenerate.sum())


def active_pixels(mask: np.ndarray) -> np.ndarray:
    """유한하고 0보다 큰 마스크 값 → uint8 (H*W,)"""
    mask = np.asarray(mask, dtype=np.float64).ravel()
    with np.errstate(invalid='ignore'):
        return (np.isfinite(mask) & (mask > 0)).astype(np.uint8)


class PatchSolverSFS(PatchSolverBase):
    """
    Shape-from-Shading 깊이 정제 솔버

    Usage:
        with PatchSolverSFS(640, 480, calib, registry=registry) as solver:
            result = solver.solve(inputs, params, depth)   # depth in-place 갱신
    """

    problem_name = 'sfs'

    def __init__(self, width: int, height: int,
                 calibration: Union[CalibrationParams, np.ndarray],
                 registry: Optional[PlanRegistry] = None,
                 backend: str = 'native_block',
                 patch_size: int = 16,
                 diagnostics: Optional[DiagnosticsSink] = None,
                 warmup: bool = False):
        if width <= 0 or height <= 0:
            raise ValueError(f"invalid image size {width}x{height}")
        if not isinstance(calibration, CalibrationParams):
            calibration = CalibrationParams.from_intrinsics(calibration)

        self.width = width
        self.height = height
        self.patch_size = patch_size
        self.calibration = calibration
        self.diagnostics = diagnostics
        self.remapper = MaskRemapper(width, height, patch_size)
        super().__init__(registry, backend, warmup)

    def _check_inputs(self, inputs: SFSInput, params: SolverParameters,
                      output_depth: np.ndarray):
        params.validate()
        inputs.validate(self.width, self.height)
        if not isinstance(output_depth, np.ndarray):
            raise ValueError("output_depth must be a numpy array")
        if output_depth.shape != (self.height, self.width):
            raise ValueError(
                f"output_depth shape {output_depth.shape} does not match "
                f"({self.height}, {self.width})")
        if output_depth.dtype != params.dtype:
            raise ValueError(
                f"output_depth dtype {output_depth.dtype} does not match "
                f"precision '{params.precision}' ({np.dtype(params.dtype)})")

    def solve(self, inputs: SFSInput, params: SolverParameters,
              output_depth: np.ndarray, use_remapping: bool = True,
              callback: Optional[Callable[[int, np.ndarray], bool]] = None) -> SolveResult:
        """
        깊이 맵 정제 (output_depth in-place)

        Args:
            inputs: 입력 버퍼 묶음
            params: 반복 횟수 / 가중치 / precision
            output_depth: (H, W) 초기 깊이, 결과가 덮어써짐 (활성 픽셀만)
            use_remapping: True이면 활성 픽셀만 unknown으로 압축
            callback: callback(iteration, x) -> True이면 조기 종료

        Raises:
            ValueError: 크기/dtype/파라미터 전제조건 위반
        """
        self._check_open()
        self._check_inputs(inputs, params, output_depth)

        start_time = time.time()
        w, h = self.width, self.height
        n_dense = w * h
        dtype = params.dtype

        if use_remapping:
            table = self.remapper.update(inputs.depth_mask)
            pixel_of = table.indices.copy()
            compact_of = table.compact_of()
            valid = (compact_of >= 0).astype(np.uint8)
            n_active = table.n_elements
        else:
            pixel_of = np.arange(n_dense, dtype=np.int64)
            compact_of = pixel_of
            valid = active_pixels(inputs.depth_mask)
            n_active = int(valid.sum())

        _logger.info(f"SFS solve: {w}x{h}, 활성 {n_active}/{n_dense}, "
                     f"backend={self.backend}, precision={params.precision}, "
                     f"remap={use_remapping}")

        if n_active == 0:
            return SolveResult(status=SOLVE_EMPTY_DOMAIN, backend=self.backend,
                               processing_time=time.time() - start_time)

        x = output_depth.reshape(-1)[pixel_of].astype(dtype)
        layout = grid_layout(w, h, self.patch_size, pixel_of, halo=SFS_HALO)
        rows = allocate_rows(ROWS_PER_PIXEL_SFS * len(pixel_of), dtype)

        c = self.calibration
        delta_transform = inputs.delta_transform
        if delta_transform is None:
            delta_transform = np.eye(4)
        prev_warped = warp_previous_depth(inputs.prev_depth, delta_transform,
                                          c.fx, c.fy, c.ux, c.uy, dtype).ravel()

        if inputs.edge_mask is None:
            edge_h = np.ones(n_dense, dtype=np.uint8)
            edge_v = np.ones(n_dense, dtype=np.uint8)
        else:
            edge = np.asarray(inputs.edge_mask)
            edge_h = (edge[0] != 0).astype(np.uint8).ravel()
            edge_v = (edge[1] != 0).astype(np.uint8).ravel()

        if inputs.albedo is None:
            albedo = np.ones(n_dense, dtype=dtype)
        else:
            albedo = np.asarray(inputs.albedo, dtype=dtype).ravel()

        problem = SFSProblem(
            x, layout, rows, pixel_of, compact_of, valid,
            np.asarray(inputs.target_depth, dtype=dtype).ravel(),
            np.asarray(inputs.target_intensity, dtype=dtype).ravel(),
            albedo, prev_warped, edge_h, edge_v, w, h,
            self.calibration, inputs.lighting,
        )

        if self.diagnostics is not None:
            problem.evaluate(problem.x, params.at_iteration(0))
            snapshots = compute_snapshots(rows, problem.n_unknowns, pixel_of, w, h)
            emit_snapshots(self.diagnostics, snapshots, w, h)

        result = self.solver.solve(problem, params, callback)

        active = valid[pixel_of] != 0
        r, col = np.divmod(pixel_of[active], w)
        output_depth[r, col] = problem.x[active]

        result.processing_time = time.time() - start_time
        return result


def solve_sfs(target_depth, target_intensity, prev_depth, depth_mask, lighting,
              output_depth, calibration, params: Optional[SolverParameters] = None,
              delta_transform=None, albedo=None, edge_mask=None,
              use_remapping: bool = True, backend: str = 'native_block',
              patch_size: int = 16, registry: Optional[PlanRegistry] = None,
              diagnostics: Optional[DiagnosticsSink] = None) -> SolveResult:
    """PatchSolverSFS 1회용 wrapper"""
    if params is None:
        params = SolverParameters(precision='float' if output_depth.dtype == np.float32 else 'double')
    height, width = np.shape(output_depth)
    inputs = SFSInput(
        target_depth=target_depth,
        target_intensity=target_intensity,
        prev_depth=prev_depth,
        depth_mask=depth_mask,
        lighting=lighting,
        delta_transform=delta_transform,
        albedo=albedo,
        edge_mask=edge_mask,
    )
    with PatchSolverSFS(width, height, calibration, registry=registry,
                        backend=backend, patch_size=patch_size,
                        diagnostics=diagnostics) as solver:
        return solver.solve(inputs, params, output_depth, use_remapping)
