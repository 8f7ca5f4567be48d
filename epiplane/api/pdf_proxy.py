# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
PDF Proxy — Streams externally hosted documents through the site.

GET /api/pdf-proxy?url=<pdf url>&disposition=inline|attachment&filename=<name>

Only hosts on the allow-list (and their subdomains) are fetched; each client
IP gets 30 requests per one-minute window. The body is streamed through
without buffering; only Content-Type and Content-Disposition are forced.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional, Union

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from epiplane.api.deps import get_client_ip
from epiplane.api.errors import (
    DomainNotAllowedError,
    InvalidRequestError,
    RateLimitedError,
    UpstreamError,
    UpstreamTimeoutError,
)
from epiplane.core.config import settings
from epiplane.core.metrics import platform_metrics
from epiplane.core.registry import DomainAllowlist
from epiplane.kernel.redis_client import get_redis_pool
from epiplane.resilience.ratelimit import InMemoryRateLimiter, RedisRateLimiter

logger = logging.getLogger("epi.api.pdf_proxy")

router = APIRouter(tags=["proxy"])

USER_AGENT = "Episciences-PDF-Proxy/1.0"
RATE_LIMIT_SCOPE = "pdf-proxy"

_FILENAME_UNSAFE = re.compile(r"[^\w\s.-]")

_memory_limiter: Optional[InMemoryRateLimiter] = None

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
}


def sanitize_filename(filename: str) -> str:
    """Replace anything outside [\\w\\s.-] (slashes included) with `_`."""
    return _FILENAME_UNSAFE.sub("_", filename)


def content_disposition(disposition: str, filename: Optional[str]) -> str:
    if disposition == "attachment" and filename:
        return f'attachment; filename="{sanitize_filename(filename)}"'
    return disposition


def get_allowlist() -> DomainAllowlist:
    return DomainAllowlist(settings.allowed_pdf_domains)


async def get_rate_limiter() -> Union[InMemoryRateLimiter, RedisRateLimiter]:
    global _memory_limiter
    if settings.RATE_LIMIT_BACKEND == "redis":
        return RedisRateLimiter(
            await get_redis_pool(),
            scope=RATE_LIMIT_SCOPE,
            limit=settings.PDF_PROXY_RATE_LIMIT,
            window_seconds=settings.PDF_PROXY_WINDOW_SECONDS,
        )
    if _memory_limiter is None:
        _memory_limiter = InMemoryRateLimiter(
            limit=settings.PDF_PROXY_RATE_LIMIT,
            window_seconds=settings.PDF_PROXY_WINDOW_SECONDS,
        )
    return _memory_limiter


def create_upstream_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.PDF_PROXY_TIMEOUT),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )


@router.get("/pdf-proxy")
async def pdf_proxy(
    request: Request,
    url: Optional[str] = None,
    disposition: str = "inline",
    filename: Optional[str] = None,
    limiter=Depends(get_rate_limiter),
    allowlist: DomainAllowlist = Depends(get_allowlist),
):
    """Relay an allow-listed PDF with a controlled Content-Disposition."""
    ip = get_client_ip(request)
    decision = await limiter.hit(ip)
    if not decision.allowed:
        logger.warning("Rate limit exceeded for IP: %s", ip)
        platform_metrics.inc("pdf_proxy_rate_limited")
        raise RateLimitedError(decision.retry_after)

    if not url:
        raise InvalidRequestError("Missing URL parameter")
    if disposition not in ("inline", "attachment"):
        raise InvalidRequestError("Invalid disposition parameter (must be inline or attachment)")
    if not allowlist.allows_url(url):
        logger.warning("Blocked non-whitelisted domain: %s", url)
        platform_metrics.inc("pdf_proxy_blocked")
        raise DomainNotAllowedError()

    client = create_upstream_client()
    try:
        upstream = await asyncio.wait_for(
            client.send(client.build_request("GET", url), stream=True),
            timeout=settings.PDF_PROXY_TIMEOUT,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        await client.aclose()
        logger.error("Request timeout for: %s", url)
        raise UpstreamTimeoutError()
    except httpx.HTTPError as e:
        await client.aclose()
        logger.error("Upstream error for %s: %s", url, e)
        raise UpstreamError(500, "Internal server error")

    if not allowlist.allows_host(upstream.url.host):
        await upstream.aclose()
        await client.aclose()
        logger.warning("Blocked redirect to non-whitelisted domain: %s", upstream.url)
        raise DomainNotAllowedError()

    if upstream.is_error:
        reason = upstream.reason_phrase
        await upstream.aclose()
        await client.aclose()
        logger.error("Failed to fetch PDF: %s (%s)", reason, url)
        raise UpstreamError(upstream.status_code, f"Failed to fetch PDF: {reason}")

    headers = {
        "Content-Type": "application/pdf",
        "Content-Disposition": content_disposition(disposition, filename),
        "Cache-Control": "public, max-age=604800, immutable",
        **CORS_HEADERS,
    }
    for name in ("Content-Length", "Content-Encoding"):
        value = upstream.headers.get(name)
        if value:
            headers[name] = value

    async def _close() -> None:
        await upstream.aclose()
        await client.aclose()

    platform_metrics.inc("pdf_proxy_served")
    logger.info("Successfully proxied PDF from: %s", upstream.url.host)
    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=200,
        headers=headers,
        media_type="application/pdf",
        background=BackgroundTask(_close),
    )


@router.options("/pdf-proxy")
async def pdf_proxy_preflight():
    return Response(
        status_code=200,
        headers={**CORS_HEADERS, "Access-Control-Allow-Headers": "Content-Type"},
    )
