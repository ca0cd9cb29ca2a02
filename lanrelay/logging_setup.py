"""Log sink setup for the lanrelay process.

Every module logs through ``from loguru import logger``; this only decides
where those records go.  Safe to call more than once.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from loguru import logger

from lanrelay.config.schema import LoggingConfig

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {message}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"


def setup_logging(
    cfg: LoggingConfig | None = None,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Replace loguru's default sink with the configured ones.

    ``override_level`` / ``override_file`` come from the command line and win
    over the config; an empty ``override_file`` disables file logging.
    """
    cfg = cfg or LoggingConfig()
    level = (override_level or cfg.level or "INFO").upper()
    log_file = cfg.file if override_file is None else override_file

    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    if log_file and log_file.strip():
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            level=level,
            format=FILE_FORMAT,
            rotation=cfg.rotation,
            encoding="utf-8",
            enqueue=True,
        )

    # websockets logs each handshake failure through stdlib logging
    logging.getLogger("websockets").setLevel(logging.WARNING)
