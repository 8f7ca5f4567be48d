# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.
"""Unit tests for tenant routing and trace middleware."""

import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from epiplane.api.middleware import REWRITTEN_SCOPE_KEY, TenantRoutingMiddleware, TraceMiddleware
from epiplane.core.metrics import platform_metrics
from epiplane.core.registry import TenantRegistry
from epiplane.routing.resolver import ResolverConfig

CONFIG = ResolverConfig(
    production_domain="episciences.org",
    fallback_tenant="epijinfo",
    default_language="en",
    accepted_languages=("en", "fr"),
)


def _make_app(strict: bool = False) -> FastAPI:
    app = FastAPI()

    @app.get("/sites/{rest:path}")
    async def site(request: Request, rest: str):
        tenant = request.state.tenant
        return {
            "path": request.url.path,
            "tenant": tenant.tenant_id,
            "lang": tenant.language,
            "query": dict(request.query_params),
            "marked": request.scope.get(REWRITTEN_SCOPE_KEY, False),
        }

    @app.get("/api/ping")
    async def ping(request: Request):
        return {"path": request.url.path}

    @app.get("/{rest:path}")
    async def untouched(request: Request, rest: str):
        return {"path": request.url.path, "rewritten": False}

    app.add_middleware(
        TenantRoutingMiddleware,
        config=CONFIG,
        registry_factory=lambda: TenantRegistry(["epijinfo", "dmtcs"]),
        strict=strict,
    )
    app.add_middleware(TraceMiddleware)
    return app


class TestTenantRouting:
    @pytest.mark.asyncio
    async def test_rewrites_production_host(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://epijinfo.episciences.org") as c:
            resp = await c.get("/fr/articles/12")
            assert resp.status_code == 200
            data = resp.json()
            assert data["path"] == "/sites/epijinfo/fr/articles/12"
            assert data["marked"] is True
            assert data["tenant"] == "epijinfo"
            assert data["lang"] == "fr"

    @pytest.mark.asyncio
    async def test_localhost_uses_default_language(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://localhost:3000") as c:
            resp = await c.get("/about")
            assert resp.json()["path"] == "/sites/epijinfo/en/about"

    @pytest.mark.asyncio
    async def test_query_string_is_kept(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://dmtcs.episciences.org") as c:
            resp = await c.get("/search", params={"q": "graphs"})
            data = resp.json()
            assert data["path"] == "/sites/dmtcs/en/search"
            assert data["query"] == {"q": "graphs"}

    @pytest.mark.asyncio
    async def test_api_routes_are_not_rewritten(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://dmtcs.episciences.org") as c:
            resp = await c.get("/api/ping")
            assert resp.json() == {"path": "/api/ping"}

    @pytest.mark.asyncio
    async def test_static_assets_are_not_rewritten(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://dmtcs.episciences.org") as c:
            resp = await c.get("/img/cover.png")
            assert resp.json() == {"path": "/img/cover.png", "rewritten": False}

    @pytest.mark.asyncio
    async def test_unknown_tenant_falls_back(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://nosuch.episciences.org") as c:
            resp = await c.get("/about")
            assert resp.json()["path"] == "/sites/epijinfo/en/about"
        assert platform_metrics.get_counter("routing_fallback") == 1

    @pytest.mark.asyncio
    async def test_unknown_tenant_strict_is_404(self):
        transport = ASGITransport(app=_make_app(strict=True))
        async with AsyncClient(transport=transport, base_url="http://nosuch.episciences.org") as c:
            resp = await c.get("/about")
            assert resp.status_code == 404
            assert resp.json()["code"] == "UNKNOWN_JOURNAL"
        assert platform_metrics.get_counter("routing_unknown_tenant") == 1

    @pytest.mark.asyncio
    async def test_strict_still_serves_known_tenant(self):
        transport = ASGITransport(app=_make_app(strict=True))
        async with AsyncClient(transport=transport, base_url="http://dmtcs.episciences.org") as c:
            resp = await c.get("/fr")
            assert resp.json()["path"] == "/sites/dmtcs/fr"


class TestTraceMiddleware:
    @pytest.mark.asyncio
    async def test_trace_id_generated(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://localhost") as c:
            resp = await c.get("/api/ping")
            assert resp.headers.get("X-Trace-Id")

    @pytest.mark.asyncio
    async def test_trace_id_propagated(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://localhost") as c:
            resp = await c.get("/api/ping", headers={"X-Trace-Id": "trace-123"})
            assert resp.headers["X-Trace-Id"] == "trace-123"
