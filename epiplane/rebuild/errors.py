# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Rebuild Errors — Each carries the process exit code the CLI reports.
"""

from __future__ import annotations

import enum
from typing import Optional


class ExitCode(enum.IntEnum):
    SUCCESS = 0
    BUILD_ERROR = 1
    API_ERROR = 2  # reserved: resource data could not be fetched
    INVALID = 3


class RebuildError(Exception):
    exit_code: ExitCode = ExitCode.BUILD_ERROR

    def __init__(self, message: str, journal_code: Optional[str] = None):
        self.message = message
        self.journal_code = journal_code
        super().__init__(message)


class ArgumentError(RebuildError):
    """Missing or invalid CLI / request fields. Never retried."""

    exit_code = ExitCode.INVALID


class ConfigurationError(RebuildError):
    """Missing journal file or malformed environment."""

    exit_code = ExitCode.INVALID
