# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Structured Logging — JSON format with trace and tenant context.

The job server additionally keeps a durable, append-only text log with
ISO-8601 timestamps (see setup_job_log).
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, TextIO, Union

_CONTEXT_KEYS = ("trace_id", "tenant_id", "resource", "phase", "build_id")


class StructuredFormatter(logging.Formatter):
    """JSON log formatter with trace/tenant/resource context."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        # Attach context if available
        for key in _CONTEXT_KEYS:
            val = getattr(record, key, None)
            if val:
                log_entry[key] = val

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False)


class IsoLineFormatter(logging.Formatter):
    """`[2026-01-01T10:00:00.000Z] message` lines for the job log file."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"
        return f"[{stamp}] {record.getMessage()}"


def setup_logging(level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """Configure structured JSON logging for the platform."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)


def setup_job_log(
    path: Union[str, Path],
    logger_name: str = "epi.jobs",
) -> Optional[logging.Handler]:
    """
    Attach an append-only file handler to the job logger.

    Returns the handler, or None if the file could not be opened (the server
    keeps running with stdout logging only).
    """
    log_path = Path(path)
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    for existing in logger.handlers:
        if isinstance(existing, logging.FileHandler) and Path(existing.baseFilename) == log_path.resolve():
            return existing

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    except OSError as e:
        logger.error("Cannot open job log %s: %s", log_path, e)
        return None

    handler.setFormatter(IsoLineFormatter())
    logger.addHandler(handler)
    return handler
