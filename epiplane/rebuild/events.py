# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Build Events — Self-describing progress records.

Every phase transition of a rebuild produces one JSON object with at least
`type` and `phase`, so a caller can follow progress without scraping prose.
Failure-type events go to stderr, everything else to stdout.

Event types:
  error, build_start, env_loaded, build_executing, api_error,
  build_success, build_failed, process_error
"""

from __future__ import annotations

import enum
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, TextIO


class BuildPhase(str, enum.Enum):
    VALIDATING = "validating"
    ENV_LOADING = "env_loading"
    CONFIGURING = "configuring"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# --- Event types ---
ERROR = "error"
BUILD_START = "build_start"
ENV_LOADED = "env_loaded"
BUILD_EXECUTING = "build_executing"
API_ERROR = "api_error"
BUILD_SUCCESS = "build_success"
BUILD_FAILED = "build_failed"
PROCESS_ERROR = "process_error"

STDERR_EVENTS = frozenset({ERROR, API_ERROR, BUILD_FAILED, PROCESS_ERROR})

# Substrings in build output that hint at an unreachable content API
CONNECTIVITY_MARKERS = ("ECONNREFUSED", "ETIMEDOUT", "fetch failed")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_event(event_type: str, phase: BuildPhase, **fields: Any) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": event_type, "phase": phase.value}
    event.update(fields)
    event.setdefault("timestamp", utc_timestamp())
    return event


def is_connectivity_error(line: str) -> bool:
    return any(marker in line for marker in CONNECTIVITY_MARKERS)


class EventSink(Protocol):
    def event(self, record: Dict[str, Any]) -> None: ...

    def output(self, stream: str, line: str) -> None: ...


class StreamSink:
    """Writes events as JSON lines and passes build output through."""

    def __init__(self, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None) -> None:
        self._stdout = stdout
        self._stderr = stderr

    @property
    def stdout(self) -> TextIO:
        return self._stdout or sys.stdout

    @property
    def stderr(self) -> TextIO:
        return self._stderr or sys.stderr

    def event(self, record: Dict[str, Any]) -> None:
        target = self.stderr if record.get("type") in STDERR_EVENTS else self.stdout
        print(json.dumps(record, ensure_ascii=False), file=target, flush=True)

    def output(self, stream: str, line: str) -> None:
        print(line, file=self.stderr if stream == "stderr" else self.stdout, flush=True)


class CollectingSink:
    """Keeps events and output in memory (job server, tests)."""

    def __init__(self, forward: Optional[EventSink] = None) -> None:
        self.events: List[Dict[str, Any]] = []
        self.stdout_lines: List[str] = []
        self.stderr_lines: List[str] = []
        self._forward = forward

    def event(self, record: Dict[str, Any]) -> None:
        self.events.append(record)
        line = json.dumps(record, ensure_ascii=False)
        if record.get("type") in STDERR_EVENTS:
            self.stderr_lines.append(line)
        else:
            self.stdout_lines.append(line)
        if self._forward is not None:
            self._forward.event(record)

    def output(self, stream: str, line: str) -> None:
        (self.stderr_lines if stream == "stderr" else self.stdout_lines).append(line)
        if self._forward is not None:
            self._forward.output(stream, line)

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]

    def first(self, event_type: str) -> Optional[Dict[str, Any]]:
        for e in self.events:
            if e["type"] == event_type:
                return e
        return None

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_lines)
