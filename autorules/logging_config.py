"""
Logging for the rules engine: one file per module per day, plus stdout.

    from autorules.logging_config import setup_logging
    logger = setup_logging(__name__)

Levels used across the package:
    DEBUG    quiet skips (entitlement), settings cache fills
    INFO     cycle start/end, per-rule outcome
    WARNING  kill switch and throttle skips, guardrail drops and bid clamps,
             failed fact reads
    ERROR    persistence failures, per-rule errors, fatal warehouse problems

Files land in {AUTORULES_LOG_DIR}/{module}_{YYYY-MM-DD}.log, e.g.
logs/engine_2026-10-17.log.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from .settings import get_settings

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _log_file(log_dir: str, module_name: str) -> Path:
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    short_name = module_name.rsplit(".", 1)[-1]
    return directory / f"{short_name}_{datetime.now():%Y-%m-%d}.log"


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    module_name: str,
    log_level: Optional[str] = None,
    log_dir: Optional[str] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Return the logger for `module_name`, attaching handlers on first use.

    log_level and log_dir fall back to AUTORULES_LOG_LEVEL / AUTORULES_LOG_DIR.
    Calling it again for the same module returns the already configured logger.
    """
    settings = get_settings()
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)

    logger = logging.getLogger(module_name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    log_file = _log_file(log_dir or settings.log_dir, module_name)
    logger.addHandler(_handler(logging.FileHandler(log_file, encoding="utf-8"), level))
    if console_output:
        logger.addHandler(_handler(logging.StreamHandler(sys.stdout), level))

    return logger
