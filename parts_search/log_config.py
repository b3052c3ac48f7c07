"""
Logging setup with Loguru
"""

import sys
from typing import Optional

from loguru import logger

from .config import settings


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure the logging sink.

    Development gets a coloured human-readable format; anything else gets a
    plain line format, or JSON records when ``log_format == "json"``.
    """
    level = (level or settings.log_level).upper()
    fmt = fmt or settings.log_format

    # Drop the default stderr handler
    logger.remove()

    if fmt == "json":
        logger.add(sys.stdout, level=level, serialize=True)
    elif settings.is_development:
        logger.add(
            sys.stdout,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            level=level,
            colorize=True,
        )
    else:
        logger.add(
            sys.stdout,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level=level,
        )

    logger.debug(f"Logging configured - level: {level}")
