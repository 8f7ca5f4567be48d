# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Rebuild Job Server — HTTP front of the rebuild executor.

  POST /rebuild-article   synchronous article rebuild (+ optional deploy)
  POST /rebuild           asynchronous rebuild of any resource kind
  GET  /rebuild/{id}      build progress
  GET  /status            queue and counters
  GET  /health            liveness

Run: epiplane-jobs   (or uvicorn epiplane.rebuild.server:app --port 3001)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from epiplane import __version__
from epiplane.api.errors import (
    APIError,
    BuildFailedError,
    BuildNotFoundError,
    DeployFailedError,
    InvalidRequestError,
    QueueFullError,
    UnknownJournalError,
    api_error_handler,
)
from epiplane.api.middleware import TraceMiddleware
from epiplane.core.config import settings
from epiplane.core.logging import setup_job_log, setup_logging
from epiplane.core.registry import TenantRegistry, get_tenant_registry
from epiplane.rebuild.errors import ArgumentError
from epiplane.rebuild.manager import BuildManager, BuildStatus, estimate_wait
from epiplane.rebuild.resource import ResourceDescriptor, ResourceKind

logger = logging.getLogger("epi.jobs")

router = APIRouter(tags=["rebuild"])


# ── Request Models ──────────────────────────────────────────

class RebuildArticleRequest(BaseModel):
    articleId: Optional[Union[int, str]] = None
    journalCode: Optional[str] = None


class RebuildRequest(BaseModel):
    journalCode: Optional[str] = None
    resourceType: Optional[str] = None
    resourceId: Optional[Union[int, str]] = None
    pageName: Optional[str] = None
    deploy: bool = False


# ── Dependencies ────────────────────────────────────────────

def get_build_manager(request: Request) -> BuildManager:
    manager = getattr(request.app.state, "build_manager", None)
    if manager is None:
        manager = BuildManager()
        request.app.state.build_manager = manager
    return manager


def get_registry() -> TenantRegistry:
    return get_tenant_registry()


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# ── Endpoints ───────────────────────────────────────────────

@router.post("/rebuild-article")
async def rebuild_article(
    req: RebuildArticleRequest,
    manager: BuildManager = Depends(get_build_manager),
):
    """Rebuild one article and wait for the result."""
    article_id = _str_or_none(req.articleId)
    if article_id is None:
        raise InvalidRequestError("Missing required parameter: articleId")

    journal = _str_or_none(req.journalCode) or settings.DEFAULT_JOURNAL
    try:
        descriptor = ResourceDescriptor.parse(journal, ResourceKind.ARTICLE.value, article_id)
    except ArgumentError as e:
        raise InvalidRequestError(e.message)

    logger.info("Rebuild requested for article %s (%s)", article_id, journal)
    result = manager.submit(descriptor, deploy=True)
    if result.status is BuildStatus.REJECTED:
        raise QueueFullError(result.record.error, manager.max_queue_per_journal)

    record = await manager.wait(result.record)
    if record.status is not BuildStatus.COMPLETED:
        raise BuildFailedError(
            f"Rebuild failed for article {article_id}: {record.error}",
            details={"buildId": record.build_id, "logs": record.logs[-20:]},
        )
    if record.deploy_error:
        raise DeployFailedError(
            f"Article {article_id} was rebuilt but deployment failed: {record.deploy_error}",
            details={"buildId": record.build_id, "outputPath": record.output_path},
        )

    return {
        "message": f"Article {article_id} rebuilt successfully",
        "logs": "\n".join(record.output),
    }


@router.post("/rebuild")
async def rebuild(
    req: RebuildRequest,
    manager: BuildManager = Depends(get_build_manager),
    registry: TenantRegistry = Depends(get_registry),
):
    """Start or queue a rebuild; progress is tracked at /rebuild/{buildId}."""
    if not _str_or_none(req.journalCode):
        raise InvalidRequestError("Missing required parameter: journalCode")
    if not _str_or_none(req.resourceType):
        raise InvalidRequestError("Missing required parameter: resourceType")

    try:
        descriptor = ResourceDescriptor.parse(
            _str_or_none(req.journalCode),
            _str_or_none(req.resourceType),
            _str_or_none(req.resourceId),
            _str_or_none(req.pageName),
        )
    except ArgumentError as e:
        raise InvalidRequestError(e.message)

    if not registry.is_known(descriptor.tenant_id):
        raise UnknownJournalError(descriptor.tenant_id, registry.codes)

    result = manager.submit(descriptor, deploy=req.deploy)
    record = result.record
    if result.status is BuildStatus.REJECTED:
        raise QueueFullError(record.error, manager.max_queue_per_journal)

    data: Dict[str, Any] = {
        **record.summary(),
        "deploy": record.deploy,
        "queuePosition": result.queue_position,
        "estimatedWaitTime": estimate_wait(result.queue_position),
        "trackingUrl": f"/rebuild/{record.build_id}",
    }
    if result.status is BuildStatus.PROCESSING:
        data["outputPath"] = descriptor.output_path()
        message = f"Build started for {descriptor.kind.value} {descriptor.id or descriptor.page_name or 'full rebuild'}"
    else:
        message = f"Build queued (position {result.queue_position + 1})"

    status = manager.status()
    body = {
        "status": result.status.value,
        "statusCode": result.status_code,
        "message": message,
        "data": data,
        "queue": {
            "thisJournal": {
                "active": 1 if manager.is_building(descriptor.tenant_id) else 0,
                "queued": manager.queue_length(descriptor.tenant_id),
            },
            "global": {
                "activeBuilds": status["builds"]["active"],
                "queuedBuilds": status["builds"]["queued"],
            },
        },
    }
    return JSONResponse(status_code=result.status_code, content=body)


@router.get("/rebuild/{build_id}")
async def get_build(build_id: str, manager: BuildManager = Depends(get_build_manager)):
    record = manager.get(build_id)
    if record is None:
        raise BuildNotFoundError(build_id)
    return record.to_dict()


@router.get("/status")
async def get_status(manager: BuildManager = Depends(get_build_manager)):
    return {"status": "ok", **manager.status()}


@router.get("/health")
async def health(manager: BuildManager = Depends(get_build_manager)):
    return {"status": "ok", "uptime": manager.uptime()}


# ── Application ─────────────────────────────────────────────

async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies answer 400 like every other invalid request."""
    return await api_error_handler(
        request,
        APIError(code="INVALID_REQUEST", message="Invalid request body", status_code=400),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    setup_job_log(settings.job_log_path)
    manager = app.state.build_manager = getattr(app.state, "build_manager", None) or BuildManager()
    logger.info("=" * 70)
    logger.info("Rebuild job server initializing")
    logger.info("Port: %d", settings.WEBHOOK_PORT)
    logger.info("Deploy command: %s", manager.deploy_command or "Not configured")
    logger.info("Max queue per journal: %d", manager.max_queue_per_journal)
    logger.info("Valid journals: %d loaded", len(get_tenant_registry()))
    logger.info("=" * 70)
    yield
    await manager.shutdown()
    logger.info("Rebuild job server stopped")


def create_app(manager: Optional[BuildManager] = None) -> FastAPI:
    app = FastAPI(
        title="Epiplane Rebuild Jobs",
        description="On-demand targeted rebuilds of journal sites",
        version=__version__,
        lifespan=lifespan,
    )
    if manager is not None:
        app.state.build_manager = manager
    app.add_middleware(TraceMiddleware)
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


def main() -> None:
    uvicorn.run(app, host=settings.WEBHOOK_HOST, port=settings.WEBHOOK_PORT)


if __name__ == "__main__":
    main()
