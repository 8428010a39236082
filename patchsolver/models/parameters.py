"""
솔버 파라미터 데이터 클래스

비선형 반복마다 고정되는 설정값(반복 횟수, 에너지 가중치)과
카메라 내부 파라미터, 커널 전달용 평탄화(flat) 직렬화 순서를 정의한다.

직렬화 순서 (PARAMETER_FIELD_ORDER):
    weight_fitting, weight_regularizer, weight_prior,
    weight_shading, weight_shading_start, weight_shading_increment,
    weight_boundary,
    fx, fy, ux, uy,
    delta_transform (16, row-major),
    lighting (9),
    n_nonlinear_iterations, n_linear_iterations, n_patch_iterations
"""

import numpy as np
from dataclasses import dataclass, replace, fields
from typing import Optional, Tuple


PRECISION_DTYPES = {
    'float': np.float32,
    'double': np.float64,
}

NUM_LIGHTING_COEFFS = 9

PARAMETER_FIELD_ORDER = (
    ('weight_fitting', 1),
    ('weight_regularizer', 1),
    ('weight_prior', 1),
    ('weight_shading', 1),
    ('weight_shading_start', 1),
    ('weight_shading_increment', 1),
    ('weight_boundary', 1),
    ('fx', 1),
    ('fy', 1),
    ('ux', 1),
    ('uy', 1),
    ('delta_transform', 16),
    ('lighting', NUM_LIGHTING_COEFFS),
    ('n_nonlinear_iterations', 1),
    ('n_linear_iterations', 1),
    ('n_patch_iterations', 1),
)

FLAT_PARAMETER_SIZE = sum(n for _, n in PARAMETER_FIELD_ORDER)


@dataclass(frozen=True)
class CalibrationParams:
    """카메라 내부 파라미터 (solve 동안 상수)"""
    fx: float
    fy: float
    ux: float
    uy: float

    @classmethod
    def from_intrinsics(cls, intrinsics: np.ndarray) -> 'CalibrationParams':
        """
        4x4 intrinsics 행렬에서 생성

        fy는 부호 반전 (이미지 y축 아래 방향), 주점은 4번째 열에서 읽는다.
        """
        K = np.asarray(intrinsics, dtype=np.float64)
        if K.shape != (4, 4):
            raise ValueError(f"intrinsics must be 4x4, got {K.shape}")
        return cls(fx=float(K[0, 0]), fy=float(-K[1, 1]),
                   ux=float(K[0, 3]), uy=float(K[1, 3]))


@dataclass(frozen=True)
class SolverParameters:
    """
    반복 횟수 및 에너지 가중치

    weight_shading은 "현재" shading 가중치. 비선형 반복 k에서의 값은
    shading_weight_at(k) = weight_shading_start + k * weight_shading_increment
    """
    n_nonlinear_iterations: int = 3
    n_linear_iterations: int = 4
    n_patch_iterations: int = 16

    weight_fitting: float = 1.0
    weight_regularizer: float = 0.0
    weight_prior: float = 0.0
    weight_shading: float = 0.0
    weight_shading_start: float = 0.0
    weight_shading_increment: float = 0.0
    weight_boundary: float = 0.0

    precision: str = 'double'

    def shading_weight_at(self, iteration: int) -> float:
        """incremental relaxation 스케줄"""
        return self.weight_shading_start + self.weight_shading_increment * iteration

    def at_iteration(self, iteration: int) -> 'SolverParameters':
        """비선형 반복 k에 대한 파라미터 사본 (weight_shading 갱신)"""
        return replace(self, weight_shading=self.shading_weight_at(iteration))

    @property
    def final_shading_weight(self) -> float:
        return self.shading_weight_at(max(self.n_nonlinear_iterations - 1, 0))

    @property
    def dtype(self):
        return PRECISION_DTYPES[self.precision]

    def validate(self) -> None:
        """전제조건 검사: solve 진입 시 1회"""
        if self.precision not in PRECISION_DTYPES:
            raise ValueError(
                f"precision must be 'float' or 'double', got '{self.precision}'")
        for name in ('n_nonlinear_iterations', 'n_linear_iterations',
                     'n_patch_iterations'):
            value = getattr(self, name)
            if int(value) != value or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value}")
        for f in fields(self):
            if f.name.startswith('weight_'):
                value = getattr(self, f.name)
                if not np.isfinite(value):
                    raise ValueError(f"{f.name} must be finite, got {value}")


def pack_solver_parameters(params: SolverParameters,
                           calib: CalibrationParams,
                           delta_transform: Optional[np.ndarray] = None,
                           lighting: Optional[np.ndarray] = None) -> np.ndarray:
    """
    PARAMETER_FIELD_ORDER 순서의 평탄 float64 배열 생성

    컴파일된 커널/외부 솔버에 파라미터를 한 버퍼로 넘길 때 사용.
    """
    if delta_transform is None:
        delta_transform = np.eye(4)
    if lighting is None:
        lighting = np.zeros(NUM_LIGHTING_COEFFS)

    values = {
        'fx': calib.fx, 'fy': calib.fy, 'ux': calib.ux, 'uy': calib.uy,
        'delta_transform': np.asarray(delta_transform, dtype=np.float64).reshape(16),
        'lighting': np.asarray(lighting, dtype=np.float64).reshape(NUM_LIGHTING_COEFFS),
    }

    flat = np.empty(FLAT_PARAMETER_SIZE, dtype=np.float64)
    offset = 0
    for name, count in PARAMETER_FIELD_ORDER:
        value = values[name] if name in values else getattr(params, name)
        flat[offset:offset + count] = value
        offset += count
    return flat


def unpack_solver_parameters(
    flat: np.ndarray, precision: str = 'double'
) -> Tuple[SolverParameters, CalibrationParams, np.ndarray, np.ndarray]:
    """pack_solver_parameters의 역변환"""
    flat = np.asarray(flat, dtype=np.float64)
    if flat.shape != (FLAT_PARAMETER_SIZE,):
        raise ValueError(
            f"flat parameter record must have {FLAT_PARAMETER_SIZE} entries, "
            f"got {flat.shape}")

    values = {}
    offset = 0
    for name, count in PARAMETER_FIELD_ORDER:
        chunk = flat[offset:offset + count]
        values[name] = chunk.copy() if count > 1 else float(chunk[0])
        offset += count

    calib = CalibrationParams(fx=values.pop('fx'), fy=values.pop('fy'),
                              ux=values.pop('ux'), uy=values.pop('uy'))
    delta_transform = values.pop('delta_transform').reshape(4, 4)
    lighting = values.pop('lighting')
    for name in ('n_nonlinear_iterations', 'n_linear_iterations',
                 'n_patch_iterations'):
        values[name] = int(values[name])

    return SolverParameters(precision=precision, **values), calib, delta_transform, lighting


@dataclass
class SFSInput:
    """
    Shape-from-shading 입력 버퍼 묶음 (호출자 소유, solve 동안 읽기 전용)

    모든 2D 버퍼는 (height, width).
    edge_mask: (2, height, width) uint8: [0] 가로 쌍(p, p+1열) 유효,
               [1] 세로 쌍(p, p+1행) 유효. None이면 전부 유효.
    """
    target_depth: np.ndarray
    target_intensity: np.ndarray
    prev_depth: np.ndarray
    depth_mask: np.ndarray
    lighting: np.ndarray
    delta_transform: np.ndarray = None
    albedo: Optional[np.ndarray] = None
    edge_mask: Optional[np.ndarray] = None

    def validate(self, width: int, height: int) -> None:
        """크기 불일치 / 누락 버퍼 검사"""
        shape = (height, width)
        for name in ('target_depth', 'target_intensity', 'prev_depth', 'depth_mask'):
            buf = getattr(self, name)
            if buf is None:
                raise ValueError(f"{name} is required")
            if np.shape(buf) != shape:
                raise ValueError(
                    f"{name} shape {np.shape(buf)} does not match solver size {shape}")

        if self.albedo is not None and np.shape(self.albedo) != shape:
            raise ValueError(
                f"albedo shape {np.shape(self.albedo)} does not match solver size {shape}")

        if self.edge_mask is not None and np.shape(self.edge_mask) != (2,) + shape:
            raise ValueError(
                f"edge_mask shape {np.shape(self.edge_mask)} must be {(2,) + shape}")

        if self.lighting is None or np.size(self.lighting) != NUM_LIGHTING_COEFFS:
            raise ValueError(
                f"lighting must have {NUM_LIGHTING_COEFFS} coefficients")

        if self.delta_transform is not None and np.shape(self.delta_transform) != (4, 4):
            raise ValueError(
                f"delta_transform must be 4x4, got {np.shape(self.delta_transform)}")
