# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
API Middleware — Trace ID propagation and tenant routing.

TenantRoutingMiddleware rewrites every page request to its internal
canonical path (/sites/{journal}/{lang}/...). The rewrite is internal: the
URL the client sees is unchanged and the query string is kept as is.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from epiplane.core.config import settings
from epiplane.core.registry import TenantRegistry, get_tenant_registry
from epiplane.core.metrics import platform_metrics
from epiplane.routing.resolver import ResolverConfig, resolve

logger = logging.getLogger("epi.api")
routing_logger = logging.getLogger("epi.routing")

# Never routed: API routes, framework assets, static folders, internal paths
EXCLUDED_PREFIXES: Tuple[str, ...] = (
    "/api",
    "/_next/static",
    "/_next/image",
    "/favicon.ico",
    "/icons",
    "/logos",
    "/locales",
    "/fonts",
    "/health",
    "/sites",
    "/docs",
    "/redoc",
    "/openapi.json",
)

# Set on the ASGI scope of requests this middleware rewrote; /sites refuses others
REWRITTEN_SCOPE_KEY = "epi.rewritten"


class TraceMiddleware(BaseHTTPMiddleware):
    """
    Generates or propagates X-Trace-Id header for every request.
    Also logs request duration.
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-Id", str(uuid.uuid4()))
        request.state.trace_id = trace_id

        start = time.time()
        response: Response = await call_next(request)
        elapsed = (time.time() - start) * 1000

        response.headers["X-Trace-Id"] = trace_id
        logger.info(
            "[api] %s %s → %d (%.0fms) trace=%s",
            request.method, request.url.path,
            response.status_code, elapsed, trace_id,
            extra={"trace_id": trace_id},
        )
        return response


def _is_excluded(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in EXCLUDED_PREFIXES)


def default_resolver_config() -> ResolverConfig:
    return ResolverConfig(
        production_domain=settings.PRODUCTION_DOMAIN,
        fallback_tenant=settings.DEFAULT_JOURNAL,
        default_language=settings.DEFAULT_LANGUAGE,
        accepted_languages=tuple(settings.accepted_languages),
    )


class TenantRoutingMiddleware(BaseHTTPMiddleware):
    """
    Maps each page request to its journal and language and rewrites it.

    Unknown journals fall back to the default journal unless `strict` is set,
    in which case the request is answered with 404.
    """

    def __init__(
        self,
        app,
        config: Optional[ResolverConfig] = None,
        registry_factory: Callable[[], TenantRegistry] = get_tenant_registry,
        strict: Optional[bool] = None,
    ) -> None:
        super().__init__(app)
        self._config = config
        self._registry_factory = registry_factory
        self._strict = strict

    @property
    def config(self) -> ResolverConfig:
        return self._config or default_resolver_config()

    @property
    def strict(self) -> bool:
        return settings.STRICT_TENANT_ROUTING if self._strict is None else self._strict

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if _is_excluded(path):
            return await call_next(request)

        resolution = resolve(
            request.url.hostname or request.headers.get("host", ""),
            path,
            self.config,
            self._registry_factory(),
        )
        if resolution is None:
            return await call_next(request)

        tenant = resolution.tenant
        trace_id = getattr(request.state, "trace_id", None)

        if tenant.fallback and self.strict:
            routing_logger.warning(
                "Unknown journal for host %s", tenant.hostname,
                extra={"trace_id": trace_id},
            )
            platform_metrics.inc("routing_unknown_tenant")
            return JSONResponse(
                status_code=404,
                content={"error": "Unknown journal", "code": "UNKNOWN_JOURNAL"},
            )

        internal_path = resolution.internal_path
        routing_logger.info(
            "route %s -> %s", path, internal_path,
            extra={"tenant_id": tenant.tenant_id, "trace_id": trace_id},
        )
        if tenant.fallback:
            platform_metrics.inc("routing_fallback")

        request.state.tenant = tenant
        # Request shares the scope dict with the downstream app
        request.scope["path"] = internal_path
        request.scope["raw_path"] = internal_path.encode("utf-8")
        request.scope[REWRITTEN_SCOPE_KEY] = True
        return await call_next(request)
