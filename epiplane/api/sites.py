# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Site Pages — Serves the pre-generated artifact for a rewritten request.

TenantRoutingMiddleware turns /fr/articles/12 on epijinfo.episciences.org
into /sites/epijinfo/fr/articles/12; this route maps that to
{SITE_DIST_DIR}/epijinfo/fr/articles/12(/index.html|.html).

HTML pages go through the Redis page cache so a revalidation by tag or path
makes the next request read the artifact again. Requests that did not come
through the rewrite are refused.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse, HTMLResponse
from redis.exceptions import RedisError

from epiplane.api.deps import get_cache_invalidator
from epiplane.api.errors import APIError
from epiplane.api.middleware import REWRITTEN_SCOPE_KEY
from epiplane.cache.invalidator import CacheInvalidator, page_tags
from epiplane.core.config import settings
from epiplane.core.metrics import platform_metrics
from epiplane.core.registry import is_valid_journal_code

logger = logging.getLogger("epi.api.sites")

router = APIRouter(tags=["sites"])

CACHE_STATUS_HEADER = "X-Epi-Cache"


class PageNotFoundError(APIError):
    def __init__(self, path: str):
        super().__init__(
            code="PAGE_NOT_FOUND",
            message=f"Page not found: {path}",
            status_code=404,
        )


def find_artifact(root: Path, journal: str, lang: str, path: str) -> Optional[Path]:
    """Locate the built file for a page, refusing anything outside `root`."""
    base = (root / journal / lang).resolve()
    target = (base / path.strip("/")).resolve()
    if base != target and base not in target.parents:
        return None

    candidates = [target / "index.html", target.with_name(target.name + ".html"), target]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def cache_path(lang: str, path: str) -> str:
    """Public path a page is cached (and revalidated) under: /fr/articles/12."""
    rest = path.strip("/")
    return f"/{lang}/{rest}" if rest else f"/{lang}"


@router.get("/sites/{journal_id}/{lang}")
@router.get("/sites/{journal_id}/{lang}/{path:path}")
async def site_page(
    request: Request,
    journal_id: str,
    lang: str,
    path: str = "",
    invalidator: CacheInvalidator = Depends(get_cache_invalidator),
):
    if not request.scope.get(REWRITTEN_SCOPE_KEY):
        raise PageNotFoundError(request.url.path)
    if not is_valid_journal_code(journal_id) or lang not in settings.accepted_languages + [settings.DEFAULT_LANGUAGE]:
        raise PageNotFoundError(f"/{path}")

    root = Path(settings.PROJECT_ROOT) / settings.SITE_DIST_DIR
    artifact = find_artifact(root, journal_id, lang, path)
    if artifact is None:
        raise PageNotFoundError(f"/{path}")
    if artifact.suffix != ".html":
        return FileResponse(artifact)

    page_path = cache_path(lang, path)
    try:
        cached = await invalidator.get_page(journal_id, page_path)
    except RedisError as e:
        logger.warning("Page cache unavailable: %s", e, extra={"tenant_id": journal_id})
        return FileResponse(artifact)
    if cached is not None:
        platform_metrics.inc("page_cache_hits", journal=journal_id)
        return HTMLResponse(cached, headers={CACHE_STATUS_HEADER: "HIT"})

    body = artifact.read_text(encoding="utf-8")
    try:
        await invalidator.register_page(
            journal_id, page_path, body,
            tags=page_tags(page_path),
            ttl=settings.PAGE_CACHE_TTL or None,
        )
    except RedisError as e:
        logger.warning("Could not cache %s: %s", page_path, e, extra={"tenant_id": journal_id})
    platform_metrics.inc("page_cache_misses", journal=journal_id)
    return HTMLResponse(body, headers={CACHE_STATUS_HEADER: "MISS"})
