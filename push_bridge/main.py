import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from push_bridge.db import engine
from push_bridge.errors import ApiError, error_response
from push_bridge.logging_utils import setup_json_logging
from push_bridge.routers import host_events, subscriptions
from push_bridge.services.dispatcher import get_job_backlog, send_pending_notifications
from push_bridge.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from push_bridge.settings import get_cors_origins, get_settings, is_gateway_configured

setup_json_logging()
logger = logging.getLogger("push_bridge.request")
worker_logger = logging.getLogger("push_bridge.notification_worker")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "anonymous")
    request.state.actor_id = getattr(request.state, "actor_id", None)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
                "subscription_id": getattr(request.state, "subscription_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(subscriptions.router)
app.include_router(host_events.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _notification_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(1, int(settings.notification_worker_interval_seconds))
    while not stop_event.is_set():
        try:
            processed_jobs = await asyncio.to_thread(send_pending_notifications, 100)
        except Exception:
            worker_logger.exception("notification_worker_tick_failed")
        else:
            if processed_jobs:
                worker_logger.info(
                    "notification_worker_tick",
                    extra={"processed_jobs": len(processed_jobs)},
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        worker_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    worker_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_notification_worker() -> None:
    if not settings.notification_worker_enabled:
        return
    if getattr(app.state, "notification_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_notification_worker_loop(stop_event))
    app.state.notification_worker_stop_event = stop_event
    app.state.notification_worker_task = task
    if not is_gateway_configured():
        worker_logger.warning("sns_platform_applications_not_configured")
    worker_logger.info(
        "notification_worker_started",
        extra={"interval_seconds": max(1, int(settings.notification_worker_interval_seconds))},
    )


@app.on_event("shutdown")
async def stop_notification_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "notification_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "notification_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.notification_worker_stop_event = None
    app.state.notification_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    try:
        job_backlog: dict[str, int] | None = get_job_backlog()
    except Exception:
        logger.exception("health_job_backlog_failed")
        job_backlog = None
    return {
        "status": "ok",
        "push_enabled": settings.push_enabled,
        "gateway_configured": is_gateway_configured(),
        "schema_guard": schema_guard_result.to_dict(),
        "job_backlog": job_backlog,
    }
