"""Logging setup for loreforge: console, rotating file and job context."""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping

LOGGER_NAME = "loreforge"
LOG_FILENAME = "loreforge.log"

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(job_tag)s%(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s %(job_tag)s%(message)s"

# Third-party loggers that log every request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore")


class JobContextFilter(logging.Filter):
    """Expose ``job_tag`` ("[<job_id>] " or "") to every formatter."""

    def filter(self, record: logging.LogRecord) -> bool:
        job_id = getattr(record, "job_id", None)
        record.job_tag = f"[{job_id}] " if job_id else ""
        return True


class ColorFormatter(logging.Formatter):
    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str, *, use_color: bool, stream=None) -> None:
        super().__init__(fmt)
        stream = stream or sys.stderr
        self.use_color = use_color and hasattr(stream, "isatty") and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_color else None
        return f"{color}{message}{self.RESET}" if color else message


class JsonFormatter(logging.Formatter):
    """One JSON object per line; carries ``job_id`` when the record has one."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        job_id = getattr(record, "job_id", None)
        if job_id:
            payload["job_id"] = job_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def job_extra(job_id: str) -> dict:
    """``extra=`` mapping that tags a log record with its job id."""

    return {"job_id": job_id}


def _console_handler(level: int, use_color: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(JobContextFilter())
    handler.setFormatter(ColorFormatter(CONSOLE_FORMAT, use_color=use_color, stream=sys.stderr))
    return handler


def _file_handler(directory: Path, level: int, *, json_logs: bool, max_bytes: int, backups: int) -> logging.Handler:
    directory.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        directory / LOG_FILENAME,
        maxBytes=max_bytes,
        backupCount=backups,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.addFilter(JobContextFilter())
    handler.setFormatter(JsonFormatter() if json_logs else logging.Formatter(FILE_FORMAT))
    return handler


def configure_logging(config: Mapping[str, object]) -> logging.Logger:
    """Build the ``loreforge`` logger from the ``logging`` config section.

    Recognised keys: ``console_level``, ``file_level``, ``json_logs``,
    ``color``, ``log_dir``, ``max_bytes`` and ``backup_count``. Calling it
    again replaces the handlers installed by a previous call.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(_console_handler(_coerce_level(config.get("console_level")), bool(config.get("color", True))))

    log_dir = config.get("log_dir")
    if log_dir:
        logger.addHandler(
            _file_handler(
                Path(str(log_dir)),
                _coerce_level(config.get("file_level"), logging.DEBUG),
                json_logs=bool(config.get("json_logs")),
                max_bytes=int(config.get("max_bytes") or 10 * 1024 * 1024),
                backups=int(config.get("backup_count") or 5),
            )
        )

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger


def _coerce_level(level: object, default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        value = logging.getLevelName(level.strip().upper())
        if isinstance(value, int):
            return value
    return default


__all__ = ["LOGGER_NAME", "ColorFormatter", "JsonFormatter", "JobContextFilter", "configure_logging", "job_extra"]
