"""Loguru configuration shared by the API process and the worker CLI.

Console output always; rotating files only when LOG_DIR is configured:
    - {service}.log        all records at LOG_LEVEL (50 MB, kept 7 days)
    - {service}-error.log  ERROR and above (10 MB, kept 30 days)
"""

import sys
from pathlib import Path

from loguru import logger

from src.core.config import Settings

_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"


def setup_logging(settings: Settings) -> None:
    """Replace loguru's default sink with the service sinks."""
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>",
        level=settings.LOG_LEVEL,
        colorize=True,
    )

    if not settings.LOG_DIR:
        return

    logs_dir = Path(settings.LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        logs_dir / f"{settings.SERVICE_NAME}-error.log",
        format=_FILE_FORMAT,
        level="ERROR",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
    )
    logger.add(
        logs_dir / f"{settings.SERVICE_NAME}.log",
        format=_FILE_FORMAT,
        level=settings.LOG_LEVEL,
        rotation="50 MB",
        retention="7 days",
        compression="zip",
    )
