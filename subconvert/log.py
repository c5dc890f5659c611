"""Logger setup for the subconvert process."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from .config import LoggingConfig

LOGGER_NAME = "subconvert"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for production log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(cfg: LoggingConfig) -> logging.Logger:
    """Install stdout (and optional rotating file) handlers on the subconvert logger.

    Safe to call again after a config change; old handlers are closed and replaced.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    level = _LEVELS.get((cfg.level or "info").lower(), logging.INFO)
    formatter: logging.Formatter = JsonFormatter() if cfg.production else logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    if cfg.file:
        log_dir = os.path.dirname(cfg.file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.file,
            maxBytes=max(cfg.max_size, 1) * 1024 * 1024,
            backupCount=max(cfg.max_backups, 0),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.setLevel(level)
    logger.propagate = False
    return logger


def flush_logging() -> None:
    for handler in logging.getLogger(LOGGER_NAME).handlers:
        handler.flush()
