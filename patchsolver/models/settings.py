"""설정 저장/불러오기 관리"""

import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union

from .parameters import SolverParameters
from ..utils.logger import configure_logging

_logger = logging.getLogger(__name__)


class SettingsManager:
    """솔버 설정 관리 (JSON)"""

    DEFAULT_SETTINGS = {
        # 반복 횟수
        'n_nonlinear_iterations': 3,
        'n_linear_iterations': 4,
        'n_patch_iterations': 16,

        # 에너지 가중치
        'weight_fitting': 1.0,
        'weight_regularizer': 0.5,
        'weight_prior': 0.0,
        'weight_shading_start': 0.0,
        'weight_shading_increment': 0.0,
        'weight_boundary': 0.5,

        # 실행 옵션
        'patch_size': 16,
        'backend': 'native_block',
        'precision': 'double',
        'use_remapping': True,

        # 로깅
        'log_level': 'INFO',
        'log_to_file': False,
        'log_dir': 'logs',
    }

    SOLVER_KEYS = ('n_nonlinear_iterations', 'n_linear_iterations',
                   'n_patch_iterations', 'weight_fitting', 'weight_regularizer',
                   'weight_prior', 'weight_shading_start',
                   'weight_shading_increment', 'weight_boundary', 'precision')

    def __init__(self, config_dir: Optional[Union[str, Path]] = None):
        # 기본: 사용자 홈 디렉토리
        if config_dir is None:
            config_dir = Path.home() / '.patchsolver'
        config_dir = Path(config_dir)
        config_dir.mkdir(parents=True, exist_ok=True)
        self.config_path = config_dir / 'settings.json'

        self.settings = self.DEFAULT_SETTINGS.copy()
        self.load()

    def load(self):
        """설정 파일 로드"""
        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    saved = json.load(f)
                    self.settings.update(saved)
                _logger.info(f"설정 로드: {self.config_path}")
        except (OSError, json.JSONDecodeError) as e:
            _logger.warning(f"설정 로드 실패: {e}")

    def save(self):
        """설정 파일 저장"""
        try:
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.settings, f, indent=2, ensure_ascii=False)
            _logger.info(f"설정 저장: {self.config_path}")
        except OSError as e:
            _logger.warning(f"설정 저장 실패: {e}")

    def get(self, key: str, default=None):
        """설정값 가져오기"""
        return self.settings.get(key, default)

    def set(self, key: str, value):
        """설정값 설정"""
        self.settings[key] = value

    def update(self, params: Dict[str, Any]):
        """여러 설정값 업데이트"""
        self.settings.update(params)

    def get_solver_params(self) -> SolverParameters:
        """SolverParameters로 변환 (시작 시점 shading 가중치 적용)"""
        kwargs = {k: self.settings.get(k, self.DEFAULT_SETTINGS[k])
                  for k in self.SOLVER_KEYS}
        kwargs['weight_shading'] = kwargs['weight_shading_start']
        params = SolverParameters(**kwargs)
        params.validate()
        return params

    def apply_logging(self) -> logging.Logger:
        """log_level / log_to_file / log_dir 설정을 패키지 로거에 적용"""
        return configure_logging(
            level=self.settings.get('log_level', self.DEFAULT_SETTINGS['log_level']),
            log_to_file=bool(self.settings.get('log_to_file', False)),
            log_dir=self.settings.get('log_dir', self.DEFAULT_SETTINGS['log_dir']),
        )
