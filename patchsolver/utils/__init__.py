from .logger import setup_logger, configure_logging, logger

__all__ = ['setup_logger', 'configure_logging', 'logger']
