"""
VoiceCoach - Unified logging
============================
Single logging configuration shared by the voice runtime, the conversation
layer and the API (uvicorn/FastAPI loggers propagate into it).

- Text output by default, JSON (python-json-logger) with LOG_FORMAT=json
- Console handler always, rotating file handler when LOG_DIR is set
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from pythonjsonlogger.json import JsonFormatter as _JsonFormatterBase


LOG_FILE_NAME = "voicecoach.log"
SERVICE_NAME = os.getenv("SERVICE_NAME", "voicecoach")
LOG_PREFIX = "[VoiceCoach]"
DEFAULT_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024)))
DEFAULT_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))

_CONTEXT_KEYS = ("session_id", "client_id", "operation", "log_context")


class UnifiedFormatter(logging.Formatter):
    """Readable formatter for local environments."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname.upper()
        message = record.getMessage()

        context_parts: list[str] = []
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                context_parts.append(f"{key}={value}")

        context_segment = (" | " + " ".join(context_parts)) if context_parts else ""
        line = f"[{timestamp}] {LOG_PREFIX} [{level}] [{record.name}] {message}{context_segment}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(_JsonFormatterBase):
    """JSON formatter compatible with Elastic and Loki."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:  # type: ignore[override]
        super().add_fields(log_record, record, message_dict)

        if "timestamp" not in log_record:
            log_record["timestamp"] = datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds")
        log_record.setdefault("service", SERVICE_NAME)
        log_record.setdefault("logger", record.name)
        log_record.setdefault("level", record.levelname.upper())

        # Structured payloads are logged as dicts: keep them queryable
        message = log_record.get("message")
        if isinstance(message, (dict, list)):
            log_record["message"] = json.dumps(message, ensure_ascii=False, default=str)

        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None and key not in log_record:
                log_record[key] = value


_logging_configured = False


def _build_log_file_path(log_dir: str) -> Path:
    base_path = Path(log_dir)
    base_path.mkdir(parents=True, exist_ok=True)
    return base_path / LOG_FILE_NAME


def setup_unified_logging(
    level: str | None = None,
    log_format: str | None = None,
    log_dir: str | None = None,
) -> None:
    global _logging_configured

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    fmt = (log_format or os.getenv("LOG_FORMAT", "text")).lower()
    directory = log_dir if log_dir is not None else os.getenv("LOG_DIR")

    formatter: logging.Formatter = JsonFormatter(fmt="%(message)s") if fmt == "json" else UnifiedFormatter()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_name)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if directory:
        file_handler = logging.handlers.RotatingFileHandler(
            _build_log_file_path(directory),
            maxBytes=DEFAULT_MAX_BYTES,
            backupCount=DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").propagate = True
    logging.getLogger("uvicorn.access").propagate = True
    logging.getLogger("uvicorn.error").propagate = True
    logging.getLogger("fastapi").propagate = True
    # The OpenAI client logs every HTTP request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _logging_configured = True


def ensure_logging_configured() -> None:
    if not _logging_configured:
        setup_unified_logging()


def get_logger(name: str) -> logging.Logger:
    ensure_logging_configured()
    return logging.getLogger(name)
