"""Logging configuration for OfflAIne Core."""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

from offlaine.config import LOG_FILE, LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: Union[int, str] = LOG_LEVEL,
    log_file: Optional[str] = LOG_FILE,
) -> logging.Logger:
    """
    Configure and return the package logger.

    Handlers are attached once; later calls only adjust the level. Records
    stop at this logger so a root configuration from the host process does
    not print them twice.

    Args:
        level: Level name or number, e.g. "DEBUG"
        log_file: Optional path that receives the same records as stdout
    """
    logger = logging.getLogger("offlaine")
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    logger.propagate = False

    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if log_file:
            path = Path(log_file).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


logger = setup_logging()
