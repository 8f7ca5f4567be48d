# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
API Proxy — Relays browser calls to the journal's own backend API.

GET|POST /api/proxy/{path}?rvcode=<journal>

The journal comes from `rvcode`, then `code`, then the X-Journal-Code
header, then the default journal. Query parameters are forwarded as they
are (the backend API reads `rvcode` itself).
"""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from epiplane.api.deps import get_tenant_configs
from epiplane.api.errors import BadGatewayError
from epiplane.core.config import settings
from epiplane.core.metrics import platform_metrics
from epiplane.core.registry import TenantConfigStore

logger = logging.getLogger("epi.api.proxy")

router = APIRouter(tags=["proxy"])

DEFAULT_ACCEPT = "application/ld+json"
DEFAULT_CONTENT_TYPE = "application/json"
PROXY_TIMEOUT = 30.0


def resolve_journal(request: Request) -> str:
    params = request.query_params
    return (
        params.get("rvcode")
        or params.get("code")
        or request.headers.get("x-journal-code")
        or settings.DEFAULT_JOURNAL
    )


def create_api_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=PROXY_TIMEOUT)


async def _forward(request: Request, path: str, configs: TenantConfigStore) -> Response:
    journal = resolve_journal(request)
    target = f"{configs.api_root(journal)}/{path.lstrip('/')}"

    headers = {
        "Accept": request.headers.get("accept") or DEFAULT_ACCEPT,
        "Content-Type": request.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
    }
    body = await request.body() if request.method == "POST" else None

    try:
        async with create_api_client() as client:
            upstream = await client.request(
                request.method,
                target,
                params=list(request.query_params.multi_items()),
                headers=headers,
                content=body,
            )
    except httpx.HTTPError as e:
        logger.error("Error proxying %s to %s: %s", request.method, target, e,
                     extra={"tenant_id": journal})
        platform_metrics.inc("api_proxy_errors", journal=journal)
        raise BadGatewayError()

    platform_metrics.inc("api_proxy_requests", journal=journal)
    out_headers = {
        "Content-Type": upstream.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
    }
    if request.method == "GET":
        out_headers["Cache-Control"] = upstream.headers.get("cache-control") or "no-cache"
    return Response(content=upstream.content, status_code=upstream.status_code, headers=out_headers)


@router.get("/proxy/{path:path}")
async def proxy_get(request: Request, path: str, configs: TenantConfigStore = Depends(get_tenant_configs)):
    return await _forward(request, path, configs)


@router.post("/proxy/{path:path}")
async def proxy_post(request: Request, path: str, configs: TenantConfigStore = Depends(get_tenant_configs)):
    return await _forward(request, path, configs)
