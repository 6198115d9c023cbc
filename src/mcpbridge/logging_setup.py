"""
Logging configuration (loguru sinks for the CLI).
"""

import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger


def setup_logging(debug: bool = False, log_dir: Optional[Union[str, Path]] = None, level: str = "INFO") -> None:
    """Configure a stderr sink and, with log_dir, a rotating file sink."""
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level="DEBUG" if debug else level,
        colorize=True,
    )

    if log_dir:
        log_path = Path(log_dir).expanduser()
        log_path.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path / "mcpbridge.log",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
        )
