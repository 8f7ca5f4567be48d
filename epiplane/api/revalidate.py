# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Revalidation API — On-demand cache invalidation by tag or path.

POST /api/revalidate
  Header: x-episciences-token: <secret>
  Body:   {"tag": "articles"} or {"path": "/en/articles/123"},
          optionally "journalId" to use that journal's own secret.

Authorization runs before the body is checked for a tag or path, so an
unauthenticated caller learns nothing beyond the status code.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from redis.exceptions import RedisError

from epiplane.api.deps import get_cache_invalidator, get_client_ip, get_tenant_configs
from epiplane.api.errors import AuthorizationError, InvalidRequestError, RevalidationError
from epiplane.auth.chain import RevalidationRequest, build_revalidation_chain
from epiplane.cache.invalidator import GLOBAL_SCOPE, PAGE_TAGS, CacheInvalidator
from epiplane.core.config import settings
from epiplane.core.metrics import platform_metrics
from epiplane.core.registry import TenantConfigStore, is_valid_journal_code

logger = logging.getLogger("epi.api.revalidate")

router = APIRouter(tags=["revalidate"])

TENANT_SECRET_KEY = "REVALIDATION_SECRET"


async def _read_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def _str_field(body: Dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = body.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@router.post("/revalidate")
async def revalidate(
    request: Request,
    configs: TenantConfigStore = Depends(get_tenant_configs),
    invalidator: CacheInvalidator = Depends(get_cache_invalidator),
):
    """Authorize, then invalidate by tag (preferred) or path."""
    body = await _read_body(request)
    tenant_id = _str_field(body, "journalId", "tenantId")

    rreq = RevalidationRequest(
        token=request.headers.get(settings.REVALIDATION_TOKEN_HEADER),
        client_ip=get_client_ip(request),
        tag=_str_field(body, "tag"),
        path=_str_field(body, "path"),
        tenant_id=tenant_id,
    )

    chain = build_revalidation_chain(
        allowed_ips=settings.allowed_ips,
        tenant_secret_lookup=lambda code: configs.load(code).get(TENANT_SECRET_KEY),
        global_secret=settings.REVALIDATION_SECRET,
    )
    decision = chain.authorize(rreq)
    if not decision.allowed:
        platform_metrics.inc("revalidations_rejected")
        raise AuthorizationError(decision.status_code)

    if tenant_id is not None and not is_valid_journal_code(tenant_id):
        raise InvalidRequestError("Invalid journalId")

    if not rreq.tag and not rreq.path:
        raise InvalidRequestError("Missing tag or path parameter")

    try:
        if rreq.tag:
            await invalidator.revalidate_tag(rreq.tag, journal=tenant_id)
        else:
            await invalidator.revalidate_path(rreq.path, journal=tenant_id)
    except RedisError as e:
        logger.error("Revalidation failed: %s", e, extra={"tenant_id": tenant_id or GLOBAL_SCOPE})
        raise RevalidationError() from e

    platform_metrics.inc("revalidations", journal=tenant_id or GLOBAL_SCOPE)
    logger.info(
        "Revalidated %s %r via %s", "tag" if rreq.tag else "path", rreq.tag or rreq.path,
        decision.authorizer, extra={"tenant_id": tenant_id or GLOBAL_SCOPE},
    )

    result: Dict[str, Any] = {
        "revalidated": True,
        "now": int(time.time() * 1000),
        "journalId": tenant_id or GLOBAL_SCOPE,
    }
    if rreq.tag:
        result["tag"] = rreq.tag
    else:
        result["path"] = rreq.path
    return result


@router.get("/revalidate")
async def revalidate_info():
    """Static capability description (no state, no authorization)."""
    return {
        "message": "Revalidation API is running",
        "usage": (
            f"POST with header {settings.REVALIDATION_TOKEN_HEADER} and body "
            "{ tag } or { path }, optionally { journalId }"
        ),
        "availableTags": PAGE_TAGS,
    }
