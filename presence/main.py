import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from presence.db import SessionLocal, engine
from presence.errors import ApiError, error_response
from presence.logging_utils import setup_json_logging
from presence.routers import admin, attendance
from presence.schemas import HealthResponse
from presence.services.auto_checkout import (
    PendingAutoCheckout,
    list_pending_auto_checkouts,
    run_sweep_once_async,
)
from presence.services.location_cache import WorkLocationCache
from presence.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from presence.settings import get_cors_origins, get_settings

logger = logging.getLogger("presence.request")
worker_logger = logging.getLogger("presence.auto_checkout_worker")
settings = get_settings()
setup_json_logging(settings.log_level, service=settings.app_name)

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.work_location_cache = WorkLocationCache(settings.work_location_cache_ttl_seconds)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")

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
                "actor": getattr(request.state, "actor", "system"),
                "employee_id": getattr(request.state, "employee_id", None),
                "record_id": getattr(request.state, "record_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        retryable=exc.retryable,
    )


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
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


@app.exception_handler(SQLAlchemyError)
async def handle_storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception(
        "storage_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=503,
        code="STORAGE_UNAVAILABLE",
        message="Attendance storage is temporarily unavailable. Please retry.",
        retryable=True,
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


app.include_router(attendance.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def _list_pending_auto_checkouts(now_utc: datetime) -> list[PendingAutoCheckout]:
    with SessionLocal() as db:
        return list_pending_auto_checkouts(db, now_utc=now_utc)


async def _auto_checkout_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(15, int(settings.auto_checkout_interval_seconds))
    warned_record_ids: set[int] = set()
    while not stop_event.is_set():
        try:
            now_utc = datetime.now(timezone.utc)
            report = await run_sweep_once_async(
                now_utc,
                record_timeout_seconds=settings.auto_checkout_record_timeout_seconds,
            )
            pending = await asyncio.to_thread(_list_pending_auto_checkouts, now_utc)
        except Exception:
            worker_logger.exception("auto_checkout_worker_tick_failed")
        else:
            for item in pending:
                if item.record_id in warned_record_ids:
                    continue
                warned_record_ids.add(item.record_id)
                worker_logger.warning(
                    "auto_checkout_pending",
                    extra={
                        "record_id": item.record_id,
                        "employee_id": item.employee_id,
                        "scheduled_checkout_utc": item.scheduled_checkout_utc.isoformat(),
                        "reason": item.reason,
                    },
                )
            warned_record_ids.difference_update(report.closed_record_ids)

            if report.records_closed or report.failures:
                worker_logger.info(
                    "auto_checkout_worker_tick",
                    extra={
                        "closed_records": report.records_closed,
                        "failed_records": len(report.failures),
                        "skipped_records": report.skipped,
                    },
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
        worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    worker_logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_auto_checkout_worker() -> None:
    if not settings.auto_checkout_worker_enabled:
        return
    if getattr(app.state, "auto_checkout_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_auto_checkout_worker_loop(stop_event))
    app.state.auto_checkout_worker_stop_event = stop_event
    app.state.auto_checkout_worker_task = task
    worker_logger.info(
        "auto_checkout_worker_started",
        extra={"interval_seconds": max(15, int(settings.auto_checkout_interval_seconds))},
    )


@app.on_event("shutdown")
async def stop_auto_checkout_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "auto_checkout_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "auto_checkout_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.auto_checkout_worker_stop_event = None
    app.state.auto_checkout_worker_task = None


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    task = getattr(app.state, "auto_checkout_worker_task", None)
    return HealthResponse(
        status="ok",
        schema_guard=schema_guard_result.to_dict(),
        auto_checkout_worker_running=task is not None and not task.done(),
    )
