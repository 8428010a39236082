"""
진단 스냅샷 모듈

solve 진입 시점의 cost / JTF / Pre / JTJ 를 원소별 dense 버퍼로 계산해
외부 sink로 넘긴다. 관찰 전용: 솔버 상태는 읽기만 한다.

Sink 인터페이스:
    record(label, data, width, height)

.imagedump 형식 (little-endian):
    int32 width, int32 height, int32 channels, float32 data[width*height*channels]
"""

import logging
from abc import ABC, abstractmethod

import numpy as np
import cv2
from pathlib import Path
from typing import Dict, Optional, Union

from .optimization.pcg_numba import DIAG_EPS

_logger = logging.getLogger(__name__)

SNAPSHOT_LABELS = ('cost', 'JTF', 'Pre', 'JTJ')


# =============================================================================
#  1. Sink
# =============================================================================

class DiagnosticsSink(ABC):
    """스냅샷 수신자 기본 클래스"""

    @abstractmethod
    def record(self, label: str, data: np.ndarray, width: int, height: int):
        """label의 (height, width) 스냅샷 1개 수신"""


class InMemorySink(DiagnosticsSink):
    """스냅샷을 사본으로 보관 (테스트/노트북용)"""

    def __init__(self):
        self.snapshots: Dict[str, np.ndarray] = {}
        self.labels = []

    def record(self, label, data, width, height):
        snapshot = np.array(data, dtype=np.float32)
        if snapshot.size == width * height:
            snapshot = snapshot.reshape(height, width)
        self.snapshots[label] = snapshot
        self.labels.append(label)

    def __getitem__(self, label):
        return self.snapshots[label]

    def __contains__(self, label):
        return label in self.snapshots


class ImageDumpSink(DiagnosticsSink):
    """
    .imagedump 파일 + PNG 미리보기 저장

    파일명: {output_dir}/{label}{suffix}.imagedump
    """

    def __init__(self, output_dir: Union[str, Path] = "dumps",
                 suffix: str = "", write_preview: bool = True):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.suffix = suffix
        self.write_preview = write_preview
        self.written = []

    def record(self, label, data, width, height):
        path = self.output_dir / f"{label}{self.suffix}.imagedump"
        save_opt_image(path, data, width, height)
        self.written.append(path)

        if self.write_preview:
            preview = _to_preview(np.asarray(data, dtype=np.float64).reshape(height, width, -1)[..., 0])
            cv2.imwrite(str(path.with_suffix('.png')), preview)

        _logger.debug(f"스냅샷 저장: {path}")


def _to_preview(image: np.ndarray) -> np.ndarray:
    """유한값 범위를 0~255로 정규화"""
    finite = np.isfinite(image)
    out = np.zeros(image.shape, dtype=np.uint8)
    if not np.any(finite):
        return out
    values = np.where(finite, image, 0.0).astype(np.float32)
    norm = cv2.normalize(values, None, 0, 255, cv2.NORM_MINMAX)
    out[finite] = norm[finite].astype(np.uint8)
    return out


# =============================================================================
#  2. .imagedump 입출력
# =============================================================================

def save_opt_image(path: Union[str, Path], data: np.ndarray,
                   width: int, height: int) -> Path:
    data = np.asarray(data, dtype=np.float32)
    if data.size % (width * height) != 0:
        raise ValueError(
            f"data size {data.size} is not a multiple of {width}x{height}")
    channels = data.size // (width * height)

    path = Path(path)
    with open(path, 'wb') as f:
        np.array([width, height, channels], dtype='<i4').tofile(f)
        data.astype('<f4').ravel().tofile(f)
    return path


def load_opt_image(path: Union[str, Path]) -> np.ndarray:
    """
    Returns:
        (H, W) 또는 (H, W, C) float32
    """
    with open(path, 'rb') as f:
        header = np.fromfile(f, dtype='<i4', count=3)
        if len(header) != 3:
            raise ValueError(f"{path}: truncated header")
        width, height, channels = (int(v) for v in header)
        data = np.fromfile(f, dtype='<f4', count=width * height * channels)
    if data.size != width * height * channels:
        raise ValueError(
            f"{path}: expected {width * height * channels} values, got {data.size}")
    if channels == 1:
        return data.reshape(height, width)
    return data.reshape(height, width, channels)


# =============================================================================
#  3. 스냅샷 계산
# =============================================================================

def compute_snapshots(rows, n_unknowns: int, pixel_of: np.ndarray,
                      width: int, height: int) -> Dict[str, np.ndarray]:
    """
    현재 RowSystem에서 원소별 cost / JTF / Pre / JTJ 대각

    Args:
        rows: 평가가 끝난 RowSystem (owner = dense 픽셀)
        pixel_of: compact unknown → dense 픽셀

    Returns:
        {label: (H, W) float32}
    """
    n_dense = width * height

    cost = rows.cost_per_owner(n_dense)
    jtf = rows.jtf(n_unknowns)
    diag = rows.jtj_diagonal(n_unknowns)
    pre = np.where(diag > DIAG_EPS, 1.0 / np.maximum(diag, DIAG_EPS), 0.0)

    snapshots = {'cost': cost.reshape(height, width).astype(np.float32)}
    for label, values in (('JTF', jtf), ('Pre', pre), ('JTJ', diag)):
        dense = np.zeros(n_dense, dtype=np.float32)
        dense[pixel_of] = values
        snapshots[label] = dense.reshape(height, width)
    return snapshots


def emit_snapshots(sink: Optional[DiagnosticsSink],
                   snapshots: Dict[str, np.ndarray], width: int, height: int):
    if sink is None:
        return
    for label in SNAPSHOT_LABELS:
        sink.record(label, snapshots[label], width, height)
