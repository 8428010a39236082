"""
Laplacian smoothing / 이미지 warping 패치 솔버

에너지 (픽셀 p마다):
    weight_fitting     * (x_p - target_p)^2                target 유한한 픽셀만
    weight_regularizer * (x_p - mean(4-이웃))^2            내부
    weight_boundary    * (x_p - mean(유효 이웃))^2          이미지/마스크 경계
                         (weight_boundary <= 0이면 weight_regularizer 사용)
"""

import time
import logging
import numpy as np
from dataclasses import replace
from typing import Optional, Callable

from .frontend import PatchSolverBase
from .registry import PlanRegistry
from .sfs import active_pixels
from ..core.masking import MaskRemapper
from ..core.patches import grid_layout
from ..core.optimization.gauss_newton import NonlinearProblem
from ..core.optimization.row_system import allocate_rows
from ..core.optimization.grid_terms_numba import (
    ROWS_PER_PIXEL_SMOOTHING,
    evaluate_smoothing_rows,
    sqrt_weight,
)
from ..models.parameters import SolverParameters
from ..models.results import SolveResult, SOLVE_EMPTY_DOMAIN

_logger = logging.getLogger(__name__)

# Laplacian row가 닿는 unknown 간 최대 거리
SMOOTHING_HALO = 2


class SmoothingProblem(NonlinearProblem):
    name = 'smoothing'

    def __init__(self, x, layout, rows, pixel_of, compact_of, valid, target,
                 width, height):
        super().__init__(x, layout, rows)
        self.pixel_of = pixel_of
        self.compact_of = compact_of
        self.valid = valid
        self.target = target
        self.width = width
        self.height = height

    def evaluate(self, x, params: SolverParameters) -> int:
        boundary = params.weight_boundary
        if boundary <= 0.0:
            boundary = params.weight_regularizer
        evaluate_smoothing_rows(
            x, self.pixel_of, self.compact_of, self.valid, self.target,
            self.width, self.height,
            sqrt_weight(params.weight_fitting),
            sqrt_weight(params.weight_regularizer),
            sqrt_weight(boundary),
            self.rows.idx, self.rows.val, self.rows.f, self.rows.owner,
        )
        return 0


class PatchSolverWarping(PatchSolverBase):
    """
    이미지 Laplacian smoothing 솔버

    Usage:
        solver = PatchSolverWarping(256, 256)
        solver.solve(image, target, params)    # image in-place 갱신
        solver.close()
    """

    problem_name = 'smoothing'

    def __init__(self, width: int, height: int,
                 registry: Optional[PlanRegistry] = None,
                 backend: str = 'native_block',
                 patch_size: int = 16,
                 warmup: bool = False):
        if width <= 0 or height <= 0:
            raise ValueError(f"invalid image size {width}x{height}")
        self.width = width
        self.height = height
        self.patch_size = patch_size
        self.remapper = MaskRemapper(width, height, patch_size)
        super().__init__(registry, backend, warmup)

    def solve(self, image: np.ndarray, target: np.ndarray,
              params: SolverParameters, mask: Optional[np.ndarray] = None,
              use_remapping: bool = False,
              callback: Optional[Callable[[int, np.ndarray], bool]] = None) -> SolveResult:
        """
        Args:
            image: (H, W) 초기값, 결과로 덮어써짐 (활성 픽셀만)
            target: (H, W) 목표 이미지 (nan = 제약 없음)
            params: weight_fitting, weight_regularizer, weight_boundary, 반복 횟수
            mask: (H, W) 유효 마스크 (None이면 전체)
            use_remapping: True이면 활성 픽셀만 unknown으로 압축
        """
        self._check_open()
        params.validate()
        shape = (self.height, self.width)
        for name, buf in (('image', image), ('target', target)):
            if np.shape(buf) != shape:
                raise ValueError(f"{name} shape {np.shape(buf)} does not match {shape}")
        if mask is not None and np.shape(mask) != shape:
            raise ValueError(f"mask shape {np.shape(mask)} does not match {shape}")
        if image.dtype != params.dtype:
            raise ValueError(
                f"image dtype {image.dtype} does not match precision '{params.precision}'")

        start_time = time.time()
        w, h = self.width, self.height
        n_dense = w * h
        dtype = params.dtype
        if mask is None:
            mask = np.ones(shape, dtype=np.float32)

        if use_remapping:
            table = self.remapper.update(mask)
            pixel_of = table.indices.copy()
            compact_of = table.compact_of()
            valid = (compact_of >= 0).astype(np.uint8)
        else:
            pixel_of = np.arange(n_dense, dtype=np.int64)
            compact_of = pixel_of
            valid = active_pixels(mask)

        if not np.any(valid):
            return SolveResult(status=SOLVE_EMPTY_DOMAIN, backend=self.backend,
                               processing_time=time.time() - start_time)

        x = image.reshape(-1)[pixel_of].astype(dtype)
        problem = SmoothingProblem(
            x,
            grid_layout(w, h, self.patch_size, pixel_of, halo=SMOOTHING_HALO),
            allocate_rows(ROWS_PER_PIXEL_SMOOTHING * len(pixel_of), dtype),
            pixel_of, compact_of, valid,
            np.asarray(target, dtype=dtype).ravel(), w, h,
        )

        result = self.solver.solve(problem, params, callback)

        active = valid[pixel_of] != 0
        r, c = np.divmod(pixel_of[active], w)
        image[r, c] = problem.x[active]

        result.processing_time = time.time() - start_time
        return result


def smooth_image(image: np.ndarray, weight_fitting: float = 1.0,
                 weight_regularizer: float = 1.0,
                 n_nonlinear_iterations: int = 1, n_linear_iterations: int = 8,
                 n_patch_iterations: int = 16, patch_size: int = 16) -> np.ndarray:
    """image를 target으로 하는 Laplacian smoothing 결과 (사본)"""
    image = np.asarray(image, dtype=np.float64)
    params = replace(SolverParameters(),
                     n_nonlinear_iterations=n_nonlinear_iterations,
                     n_linear_iterations=n_linear_iterations,
                     n_patch_iterations=n_patch_iterations,
                     weight_fitting=weight_fitting,
                     weight_regularizer=weight_regularizer)
    out = image.copy()
    height, width = image.shape
    with PatchSolverWarping(width, height, patch_size=patch_size) as solver:
        solver.solve(out, image, params)
    return out
