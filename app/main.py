import asyncio
from contextlib import suppress
from datetime import datetime, timezone
from functools import partial
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.db import ConnectionManager
from app.errors import ApiError, error_response, webhook_error_response
from app.logging_utils import setup_json_logging
from app.realtime import RealtimeHub
from app.routers import (
    admin,
    employee_shifts,
    notifications,
    realtime,
    shift_authorizations,
    shift_exchanges,
    webhooks,
)
from app.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from app.services.shift_exchanges import reconcile_exchange_swaps
from app.services.sync_jobs import run_sync_jobs_for_all_tenants
from app.services.tenant_migrations import TenantMigrator
from app.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level, service=settings.app_name)
logger = logging.getLogger("app.request")
sync_worker_logger = logging.getLogger("app.sync_worker")

WEBHOOK_PATH_PREFIX = "/api/webhooks/"

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# Pools are created lazily, so building the manager does not touch the network.
app.state.connection_manager = ConnectionManager.from_settings(settings)
app.state.realtime_hub = RealtimeHub()


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = "system"
    request.state.actor_id = "system"

    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        state = request.state
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                "actor": state.actor,
                "actor_id": state.actor_id,
                "company_id": getattr(state, "company_id", None),
            },
        )


HTTP_ERROR_CODES = {401: "INVALID_TOKEN", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}


def _render_error(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    # ERP webhook callers expect {"success": false, "error": "..."} on every failure.
    if request.url.path.startswith(WEBHOOK_PATH_PREFIX):
        return webhook_error_response(status_code=status_code, message=message)
    return error_response(request, status_code=status_code, code=code, message=message)


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return _render_error(request, status_code=exc.status_code, code=exc.code, message=exc.message)


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _render_error(
        request,
        status_code=exc.status_code,
        code=HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Unknown webhook kinds fail path validation and are reported as a bad request.
    status_code = 400 if request.url.path.startswith(WEBHOOK_PATH_PREFIX) else 422
    return _render_error(request, status_code=status_code, code="VALIDATION_ERROR", message=str(exc.errors()))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "method": request.method,
            "path": request.url.path,
        },
    )
    return _render_error(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")


app.include_router(webhooks.router)
app.include_router(employee_shifts.router)
app.include_router(shift_authorizations.router)
app.include_router(shift_exchanges.router)
app.include_router(notifications.router)
app.include_router(admin.router)
app.include_router(realtime.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def run_sync_tick(manager: ConnectionManager, hub: RealtimeHub | None) -> dict[str, Any]:
    with manager.master_session() as master_db:
        jobs = run_sync_jobs_for_all_tenants(manager, master_db, hub=hub)
        swaps = reconcile_exchange_swaps(manager, master_db, hub=hub)
    return {"jobs": jobs, "swaps": swaps}


async def _sync_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(5, int(settings.sync_worker_interval_seconds))
    manager: ConnectionManager = app.state.connection_manager
    hub: RealtimeHub = app.state.realtime_hub
    while not stop_event.is_set():
        try:
            summary = await asyncio.to_thread(run_sync_tick, manager, hub)
        except Exception:
            sync_worker_logger.exception("sync_worker_tick_failed")
        else:
            if summary["jobs"]["processed"] or summary["swaps"]["checked"] or summary["jobs"]["failed_tenants"]:
                sync_worker_logger.info("sync_worker_tick", extra=summary)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    manager: ConnectionManager = app.state.connection_manager
    result = await asyncio.to_thread(
        partial(verify_runtime_schema, manager.get_master(), tenant_migrator=TenantMigrator())
    )
    app.state.schema_guard_result = result
    if result.ok:
        sync_worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    sync_worker_logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_sync_worker() -> None:
    if not settings.sync_worker_enabled:
        return
    if getattr(app.state, "sync_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_sync_worker_loop(stop_event))
    app.state.sync_worker_stop_event = stop_event
    app.state.sync_worker_task = task
    sync_worker_logger.info(
        "sync_worker_started",
        extra={"interval_seconds": max(5, int(settings.sync_worker_interval_seconds))},
    )


@app.on_event("shutdown")
async def stop_sync_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "sync_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "sync_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.sync_worker_stop_event = None
    app.state.sync_worker_task = None
    manager: ConnectionManager = app.state.connection_manager
    await asyncio.to_thread(manager.destroy_all)


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    manager: ConnectionManager = app.state.connection_manager
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "tenant_pools": len(manager.tenant_keys()),
        "sync_worker_running": getattr(app.state, "sync_worker_task", None) is not None,
    }
