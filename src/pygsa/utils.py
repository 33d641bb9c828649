"""Utility functions for the gene set analysis engine."""

import logging
from pathlib import Path
from typing import Optional, Union

PACKAGE_LOGGER = 'pygsa'
LOG_FILE_NAME = 'pipeline.log'


def _is_own_handler(handler: logging.Handler) -> bool:
    return getattr(handler, '_pygsa_handler', False)


def setup_logging(log_dir: Optional[Union[str, Path]] = None, level=logging.INFO) -> logging.Logger:
    """Set up logging for the package logger.

    Handlers from an earlier call are closed and replaced, so repeated calls
    leave one console handler and at most one pipeline.log handler.

    Args:
        log_dir: Directory to store the pipeline.log file, None for console only
        level: Logging level

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    for handler in [h for h in logger.handlers if _is_own_handler(h)]:
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    console_handler._pygsa_handler = True
    logger.addHandler(console_handler)

    if log_dir:
        log_dir = ensure_dir(Path(log_dir))
        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, mode='w')
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        file_handler._pygsa_handler = True
        logger.addHandler(file_handler)
        logger.info("Logging initialized")

    return logger


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
