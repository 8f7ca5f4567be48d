# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Epiplane Front Application.

Tenant routing middleware in front of the pre-generated site, plus the
revalidation and proxy gateways.

Run: uvicorn epiplane.main:app --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from epiplane import __version__
from epiplane.api.api_proxy import router as api_proxy_router
from epiplane.api.errors import APIError, api_error_handler
from epiplane.api.middleware import TenantRoutingMiddleware, TraceMiddleware
from epiplane.api.observability import router as observability_router
from epiplane.api.pdf_proxy import router as pdf_proxy_router
from epiplane.api.revalidate import router as revalidate_router
from epiplane.api.sites import router as sites_router
from epiplane.core.config import settings
from epiplane.core.logging import setup_logging
from epiplane.core.registry import get_tenant_registry
from epiplane.kernel.redis_client import close_redis_pool

logger = logging.getLogger("epi.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup/shutdown of shared resources."""
    setup_logging(settings.LOG_LEVEL)
    registry = get_tenant_registry()
    logger.info(
        "[Epiplane] Front ready (journals=%d, default=%s, strict=%s)",
        len(registry), settings.DEFAULT_JOURNAL, settings.STRICT_TENANT_ROUTING,
    )
    yield
    await close_redis_pool()
    logger.info("[Epiplane] Shutdown complete")


app = FastAPI(
    title="Epiplane",
    description="Multi-tenant journal front: routing, revalidation and proxies",
    version=__version__,
    lifespan=lifespan,
)

# ── Middleware ───────────────────────────────────────────────
# Added last = outermost: trace first, then tenant routing
app.add_middleware(TenantRoutingMiddleware)
app.add_middleware(TraceMiddleware)

# ── Error Handlers ──────────────────────────────────────────
app.add_exception_handler(APIError, api_error_handler)

# ── Routes ──────────────────────────────────────────────────
app.include_router(revalidate_router, prefix="/api")
app.include_router(pdf_proxy_router, prefix="/api")
app.include_router(api_proxy_router, prefix="/api")
app.include_router(observability_router)
app.include_router(sites_router)
