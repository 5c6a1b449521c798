import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tracker.db import engine
from tracker.errors import ApiError, error_response
from tracker.logging_utils import setup_json_logging
from tracker.routers import email_admin
from tracker.services.email_scheduler import EmailScheduler, start_email_scheduler, stop_email_scheduler
from tracker.services.mail_transport import build_email_transport
from tracker.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from tracker.settings import get_cors_origins, get_settings

setup_json_logging()
logger = logging.getLogger("tracker.request")
scheduler_logger = logging.getLogger("tracker.email_scheduler")
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
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

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
                "actor_id": getattr(request.state, "actor_id", "system"),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
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
    errors = jsonable_encoder(exc.errors(), custom_encoder={ValueError: str})
    first_message = str(errors[0].get("msg")) if errors else "Request validation failed."
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=first_message.removeprefix("Value error, "),
        details={"errors": errors},
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


app.include_router(email_admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        scheduler_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    scheduler_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_auto_email_scheduler() -> None:
    if not settings.email_scheduler_enabled:
        scheduler_logger.info("email_scheduler_disabled")
        return

    transport = build_email_transport()
    if not transport.configured:
        scheduler_logger.warning("email_transport_not_configured", extra=transport.config_status())
    app.state.email_scheduler = await start_email_scheduler(
        getattr(app.state, "email_scheduler", None),
        transport=transport,
    )


@app.on_event("shutdown")
async def stop_auto_email_scheduler() -> None:
    scheduler: EmailScheduler | None = getattr(app.state, "email_scheduler", None)
    await stop_email_scheduler(scheduler)
    app.state.email_scheduler = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    scheduler: EmailScheduler | None = getattr(app.state, "email_scheduler", None)
    scheduler_status = (
        jsonable_encoder(scheduler.status())
        if scheduler is not None
        else {"running": False, "enabled": settings.email_scheduler_enabled}
    )
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "email_scheduler": scheduler_status,
        "email_transport": build_email_transport().config_status(),
    }
