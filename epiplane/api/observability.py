# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Observability API — Health check and metrics snapshot for the front app.
"""

from __future__ import annotations

from fastapi import APIRouter

from epiplane import __version__
from epiplane.core.metrics import platform_metrics
from epiplane.core.registry import get_tenant_registry

router = APIRouter(tags=["observability"])


@router.get("/health")
async def health_check():
    return {
        "status": "ok",
        "version": __version__,
        "journals": len(get_tenant_registry()),
    }


@router.get("/api/metrics")
async def get_metrics():
    """Return current control-plane metrics."""
    return platform_metrics.snapshot()
