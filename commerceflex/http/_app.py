"""
FastAPI application: the webhook endpoint and migration control.

    POST /webhooks                          X-Tenant-Id or ?tenant=
    POST /migrations/{tenant}/start         202
    POST /migrations/{tenant}/pause|resume|abort
    GET  /migrations/{tenant}               progress
    GET  /migrations/{tenant}/report        verification report

A request that failed internally never gets a 2xx.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Any

import fastapi
from fastapi.responses import JSONResponse
from kungfu import Result, Ok, Error
from pydantic import BaseModel

from commerceflex.http._schemas import (
    ErrorOut,
    ProgressOut,
    ReportOut,
    WebhookOut,
    status_for,
)
from commerceflex.migration import MigrationController
from commerceflex.model import CommerceError
from commerceflex.registry import ProviderRegistry
from commerceflex.webhooks import WebhookNormalizer

logger = logging.getLogger(__name__)


def respond[T](
    result: Result[T, CommerceError],
    out: Callable[[T], BaseModel],
    *,
    status_code: int = 200,
) -> JSONResponse:
    match result:
        case Ok(value):
            return JSONResponse(out(value).model_dump(mode="json"), status_code=status_code)
        case Error(e):
            return JSONResponse(
                {"error": ErrorOut.from_domain(e).model_dump(mode="json")},
                status_code=status_for(e),
            )


def create_app(
    registry: ProviderRegistry,
    normalizer: WebhookNormalizer,
    migrations: MigrationController,
) -> fastapi.FastAPI:
    """
    Example:
        app = create_app(registry, normalizer, MigrationController(registry))
        uvicorn.run(app)
    """

    @asynccontextmanager
    async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
        yield
        await migrations.shutdown()
        await registry.shutdown()

    app = fastapi.FastAPI(title="commerceflex", lifespan=lifespan)

    @app.exception_handler(CommerceError)
    async def commerce_error(request: fastapi.Request, exc: CommerceError) -> JSONResponse:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            {"error": ErrorOut.from_domain(exc).model_dump(mode="json")},
            status_code=status_for(exc),
        )

    # ─── webhooks ─────────────────────────────────────────────────────────────

    @app.post("/webhooks", response_model=WebhookOut)
    async def receive_webhook(
        request: fastapi.Request,
        tenant: str | None = None,
        x_tenant_id: Annotated[str | None, fastapi.Header()] = None,
    ) -> Any:
        tenant_id = x_tenant_id or tenant
        if not tenant_id:
            return JSONResponse(
                {"error": {"kind": "validation", "message": "Missing tenant"}}, status_code=400
            )
        body = await request.body()
        result = await normalizer.handle(tenant_id, dict(request.headers), body)
        match result:
            case Ok(_):
                status_code = 200
            case Error(e):
                status_code = status_for(e)
        return JSONResponse(
            WebhookOut.from_domain(result).model_dump(mode="json"), status_code=status_code
        )

    # ─── migrations ───────────────────────────────────────────────────────────

    @app.post("/migrations/{tenant}/start", status_code=202, response_model=ProgressOut)
    async def start_migration(tenant: str) -> Any:
        return respond(await migrations.start(tenant), ProgressOut.from_domain, status_code=202)

    @app.post("/migrations/{tenant}/pause", response_model=ProgressOut)
    async def pause_migration(tenant: str) -> Any:
        return respond(await migrations.pause(tenant), ProgressOut.from_domain)

    @app.post("/migrations/{tenant}/resume", response_model=ProgressOut)
    async def resume_migration(tenant: str) -> Any:
        return respond(await migrations.resume(tenant), ProgressOut.from_domain)

    @app.post("/migrations/{tenant}/abort", response_model=ProgressOut)
    async def abort_migration(tenant: str) -> Any:
        return respond(await migrations.abort(tenant), ProgressOut.from_domain)

    @app.get("/migrations/{tenant}", response_model=ProgressOut)
    async def migration_progress(tenant: str) -> Any:
        return respond(migrations.progress(tenant), ProgressOut.from_domain)

    @app.get("/migrations/{tenant}/report", response_model=ReportOut)
    async def migration_report(tenant: str) -> Any:
        return respond(migrations.report(tenant), ReportOut.from_domain)

    return app


__all__ = ("create_app", "respond")
