from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ephemera.core.config.settings import LoggingSettings

from .json_formatter import RunJsonFormatter

ROOT_LOGGER = "ephemera"
STREAM_HANDLER = "ephemera.stream"
FILE_HANDLER = "ephemera.file"
LOG_FILE = "ephemera.log"

# SDK and transport loggers that log every request at INFO.
CHATTY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic")


def _level(name: str) -> int:
    level = getattr(logging, name.strip().upper(), None)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: LoggingSettings | None = None) -> logging.Logger:
    """Send the ``ephemera`` logger tree to stderr as JSON lines.

    With ``to_file`` a rotating file handler is added as well. Handlers are
    found again by name, so calling this twice only updates levels.
    """
    settings = settings or LoggingSettings()
    level = _level(settings.level)
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.propagate = False

    installed = {handler.name for handler in logger.handlers}
    formatter = RunJsonFormatter()
    if STREAM_HANDLER not in installed:
        # stdout belongs to the host process.
        stream = logging.StreamHandler(sys.stderr)
        stream.set_name(STREAM_HANDLER)
        stream.setFormatter(formatter)
        logger.addHandler(stream)

    if settings.to_file and FILE_HANDLER not in installed:
        log_dir = Path(settings.log_dir) if settings.log_dir else Path.cwd() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_dir / LOG_FILE,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        rotating.set_name(FILE_HANDLER)
        rotating.setFormatter(formatter)
        logger.addHandler(rotating)

    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return logger
