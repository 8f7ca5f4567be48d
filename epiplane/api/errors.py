# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
API Error Handling — Unified error structure.

Every gateway error renders as {"error": <message>, "code": <CODE>,
"trace_id": ...}. Authorization failures deliberately share one message
per status so the response does not reveal which check failed.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class APIError(Exception):
    """Base API error with structured response."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        trace_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.trace_id = trace_id or str(uuid.uuid4())
        self.headers = headers or {}
        super().__init__(message)


class InvalidRequestError(APIError):
    def __init__(self, message: str, trace_id: str = None):
        super().__init__(
            code="INVALID_REQUEST",
            message=message,
            status_code=400,
            trace_id=trace_id,
        )


class AuthorizationError(APIError):
    def __init__(self, status_code: int = 401, trace_id: str = None):
        super().__init__(
            code="FORBIDDEN" if status_code == 403 else "UNAUTHORIZED",
            message="Forbidden" if status_code == 403 else "Unauthorized",
            status_code=status_code,
            trace_id=trace_id,
        )


class RateLimitedError(APIError):
    def __init__(self, retry_after: Optional[int] = None, trace_id: str = None):
        super().__init__(
            code="RATE_LIMITED",
            message="Too many requests",
            status_code=429,
            trace_id=trace_id,
            headers={"Retry-After": str(retry_after)} if retry_after else None,
        )


class DomainNotAllowedError(APIError):
    def __init__(self, trace_id: str = None):
        super().__init__(
            code="DOMAIN_NOT_ALLOWED",
            message="Domain not allowed",
            status_code=403,
            trace_id=trace_id,
        )


class UpstreamError(APIError):
    def __init__(self, status_code: int, message: str, trace_id: str = None):
        super().__init__(
            code="UPSTREAM_ERROR",
            message=message,
            status_code=status_code,
            trace_id=trace_id,
        )


class UpstreamTimeoutError(APIError):
    def __init__(self, trace_id: str = None):
        super().__init__(
            code="UPSTREAM_TIMEOUT",
            message="Request timeout",
            status_code=504,
            trace_id=trace_id,
        )


class BadGatewayError(APIError):
    def __init__(self, message: str = "Failed to proxy request", trace_id: str = None):
        super().__init__(
            code="BAD_GATEWAY",
            message=message,
            status_code=502,
            trace_id=trace_id,
        )


class RevalidationError(APIError):
    def __init__(self, message: str = "Error revalidating", trace_id: str = None):
        super().__init__(
            code="REVALIDATION_FAILED",
            message=message,
            status_code=500,
            trace_id=trace_id,
        )


# ── Job server ──────────────────────────────────────────────


class UnknownJournalError(APIError):
    def __init__(self, journal_code: str, available=(), trace_id: str = None):
        super().__init__(
            code="UNKNOWN_JOURNAL",
            message=f"Invalid journal code: {journal_code}",
            status_code=404,
            details={"availableJournals": sorted(available)} if available else None,
            trace_id=trace_id,
        )


class QueueFullError(APIError):
    def __init__(self, message: str, queue_limit: int, trace_id: str = None):
        super().__init__(
            code="QUEUE_FULL",
            message=message,
            status_code=503,
            details={"queueLimit": queue_limit},
            trace_id=trace_id,
        )


class BuildNotFoundError(APIError):
    def __init__(self, build_id: str, trace_id: str = None):
        super().__init__(
            code="BUILD_NOT_FOUND",
            message=f"Build not found: {build_id}",
            status_code=404,
            trace_id=trace_id,
        )


class BuildFailedError(APIError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, trace_id: str = None):
        super().__init__(
            code="BUILD_FAILED",
            message=message,
            status_code=500,
            details=details,
            trace_id=trace_id,
        )


class DeployFailedError(APIError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, trace_id: str = None):
        super().__init__(
            code="DEPLOY_FAILED",
            message=message,
            status_code=500,
            details=details,
            trace_id=trace_id,
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Global exception handler for APIError."""
    content: Dict[str, Any] = {
        "error": exc.message,
        "code": exc.code,
        "trace_id": getattr(request.state, "trace_id", None) or exc.trace_id,
    }
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=exc.headers or None,
    )
