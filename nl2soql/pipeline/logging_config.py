"""
Logging setup shared by every pipeline module.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from .config import DEFAULT_LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once for CLI or service entry points."""
    logging.basicConfig(
        level=getattr(logging, (level or DEFAULT_LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if level:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


__all__ = ["setup_logging", "get_logger", "LOG_FORMAT"]
