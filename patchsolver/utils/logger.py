"""로깅 설정 모듈"""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Union


LOG_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}

_FORMATTER = logging.Formatter(
    '[%(asctime)s] %(levelname)s - %(name)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


def _file_handler(log_dir: Union[str, Path]) -> logging.FileHandler:
    """log_dir/patchsolver_YYYYMMDD.log"""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(
        log_dir / f"patchsolver_{datetime.now():%Y%m%d}.log",
        encoding='utf-8'
    )
    handler.setFormatter(_FORMATTER)
    return handler


def setup_logger(name: str = "patchsolver",
                 level: int = logging.INFO,
                 log_file: bool = False,
                 log_dir: Union[str, Path] = "logs") -> logging.Logger:
    """
    로거 설정

    Args:
        name: 로거 이름
        level: 로깅 레벨
        log_file: 파일 출력 여부 (log_dir/patchsolver_YYYYMMDD.log)
        log_dir: 로그 파일 디렉토리
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)

    if log_file:
        logger.addHandler(_file_handler(log_dir))

    return logger


def configure_logging(level: str = 'INFO',
                      log_to_file: bool = False,
                      log_dir: Union[str, Path] = "logs",
                      name: str = "patchsolver") -> logging.Logger:
    """
    이미 만들어진 패키지 로거의 레벨 / 파일 출력 변경

    SettingsManager.apply_logging()이 'log_level', 'log_to_file', 'log_dir'
    설정값으로 호출한다. 파일 핸들러는 최대 1개.

    Raises:
        ValueError: 알 수 없는 레벨 이름
    """
    key = str(level).upper()
    if key not in LOG_LEVELS:
        raise ValueError(f"log level must be one of {sorted(LOG_LEVELS)}, got {level!r}")

    logger = setup_logger(name)
    logger.setLevel(LOG_LEVELS[key])

    file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
    if log_to_file and not file_handlers:
        logger.addHandler(_file_handler(log_dir))
    elif not log_to_file:
        for handler in file_handlers:
            handler.close()
            logger.removeHandler(handler)

    return logger


# 패키지 로거 (하위 모듈은 logging.getLogger(__name__)로 전파)
logger = setup_logger()
