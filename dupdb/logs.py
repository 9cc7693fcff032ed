"""Structured NDJSON and plain text logging for the duplicate index."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER_NAME = "dupdb"
DEFAULT_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
GENERAL_LOG_FILENAME = "dupdb.log"
GENERAL_TEXT_LOG_FILENAME = "dupdb.txt"
API_LOG_FILENAME = "dupdb.api.log"
API_TEXT_LOG_FILENAME = "dupdb.api.txt"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5
API_LOG_BACKUP_COUNT = 3


def iso_utc(timestamp: float) -> str:
    """Return ISO-8601 UTC timestamp with Z suffix."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class NDJSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "log_payload", {}).copy()
        payload.setdefault("timestamp", iso_utc(record.created))
        payload.setdefault("level", record.levelname)

        message = record.getMessage()
        if not payload.get("message"):
            payload["message"] = message

        payload.setdefault("event", getattr(record, "event", message))
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainTextFormatter(logging.Formatter):
    """Render log records as human-readable text."""

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "log_payload", {}).copy()
        timestamp = iso_utc(record.created)
        level = record.levelname
        message = record.getMessage()
        event = payload.get("event") or getattr(record, "event", message)
        human_message = payload.get("message") or message
        extras = {k: v for k, v in payload.items() if k not in {"event", "message"}}
        extra_str = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        base = f"{timestamp} [{level}] {event}: {human_message}"
        return f"{base} | {extra_str}" if extra_str else base


class _ComponentFilter(logging.Filter):
    def __init__(self, *, component: str) -> None:
        super().__init__()
        self._component = component

    def filter(self, record: logging.LogRecord) -> bool:
        payload = getattr(record, "log_payload", {})
        return payload.get("component") == self._component


def _resolve_log_dir(log_dir: Optional[Path]) -> Path:
    candidate = Path(log_dir).expanduser() if log_dir else DEFAULT_LOG_DIR
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        candidate = DEFAULT_LOG_DIR
        candidate.mkdir(parents=True, exist_ok=True)
    return candidate


def _rotating(path: Path, backups: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=LOG_MAX_BYTES,
        backupCount=backups,
        encoding="utf-8",
        delay=True,
    )
    handler.setFormatter(formatter)
    return handler


def setup_logger(log_dir: Optional[Path] = None, *, to_files: bool = True) -> logging.Logger:
    """Return the ``dupdb`` logger, attaching handlers on first use.

    Records go to stderr as NDJSON and, when ``to_files`` is set, to rotating
    NDJSON and text files. Records whose payload carries ``component="api"``
    are also copied to the API log files.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(NDJSONFormatter())
    logger.addHandler(stream_handler)

    if not to_files:
        return logger

    directory = _resolve_log_dir(log_dir)
    logger.addHandler(_rotating(directory / GENERAL_LOG_FILENAME, LOG_BACKUP_COUNT, NDJSONFormatter()))
    logger.addHandler(
        _rotating(directory / GENERAL_TEXT_LOG_FILENAME, LOG_BACKUP_COUNT, PlainTextFormatter())
    )

    api_file_handler = _rotating(directory / API_LOG_FILENAME, API_LOG_BACKUP_COUNT, NDJSONFormatter())
    api_file_handler.addFilter(_ComponentFilter(component="api"))
    logger.addHandler(api_file_handler)

    api_text_handler = _rotating(
        directory / API_TEXT_LOG_FILENAME, API_LOG_BACKUP_COUNT, PlainTextFormatter()
    )
    api_text_handler.addFilter(_ComponentFilter(component="api"))
    logger.addHandler(api_text_handler)

    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    **fields: Any,
) -> None:
    payload: Dict[str, Any] = {"event": event, "message": message}
    if context:
        payload.update(context)
    payload.update(fields)
    logger.log(level, message, extra={"log_payload": payload})
