"""FastAPI application for the task marketplace core.

This is the web service entry point. It wires the routers, renders every
error as the same JSON envelope, and leaves event delivery and settlement
reconciliation to the worker process (app.worker).

Error envelope:
    {"status": "error", "reason": "<snake_case>", ...detail}
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

import app.database as database
from app.exceptions import InvalidStateTransitionError, ServiceError
from app.routes import admin, orders, tasks, webhooks
from app.services.idempotency import render_json
from app.utils.logging import configure_logging

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown.

    Startup:
    - Configure structured logging
    - Warn when DATABASE_URL is missing (every data route will fail)

    Shutdown:
    - Dispose the engine's connection pool
    """
    configure_logging()
    if database.engine is None:
        log.warning(
            "database_not_configured",
            message="DATABASE_URL not set, data endpoints will return 500",
        )
    else:
        log.info("api_started")

    yield  # Application runs here

    if database.engine is not None:
        await database.engine.dispose()
        log.info("database_engine_disposed")


def _error_response(
    request: Request,
    status_code: int,
    body: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> Response:
    merged = dict(getattr(request.state, "rate_limit_headers", None) or {})
    merged.update(headers or {})
    return Response(
        content=render_json(body),
        status_code=status_code,
        media_type="application/json",
        headers=merged,
    )


async def handle_service_error(request: Request, exc: ServiceError) -> Response:
    if exc.status_code >= 500:
        log.error(
            "request_failed",
            path=request.url.path,
            reason=exc.reason,
            status_code=exc.status_code,
            error=str(exc),
        )
    return _error_response(request, exc.status_code, exc.to_body(), exc.headers)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> Response:
    errors = [
        {key: value for key, value in error.items() if key in ("loc", "msg", "type")}
        for error in exc.errors()
    ]
    return _error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        {"status": "error", "reason": "invalid_request", "errors": errors},
    )


async def handle_invalid_transition(
    request: Request, exc: InvalidStateTransitionError
) -> Response:
    log.error("invalid_state_transition", path=request.url.path, error=str(exc))
    return _error_response(
        request,
        status.HTTP_409_CONFLICT,
        {"status": "error", "reason": "invalid_transition"},
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> Response:
    log.exception(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"status": "error", "reason": "internal_error", "message": "Internal server error"},
    )


# Create FastAPI app with lifespan
app = FastAPI(
    title="ToolCall Core",
    description=(
        "Task marketplace core: task lifecycle, quotas, payment orders and signed webhooks"
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(ServiceError, handle_service_error)
app.add_exception_handler(RequestValidationError, handle_validation_error)
app.add_exception_handler(InvalidStateTransitionError, handle_invalid_transition)
app.add_exception_handler(Exception, handle_unexpected_error)

app.include_router(tasks.router)
app.include_router(orders.router)
app.include_router(webhooks.router)
app.include_router(webhooks.provider_router)
app.include_router(admin.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Health check endpoint for deployment validation.

    Returns:
        JSONResponse: Status and whether a database is configured
    """
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "toolcall-core",
            "database_configured": database.engine is not None,
        }
    )


@app.get("/", status_code=status.HTTP_200_OK)
async def root() -> JSONResponse:
    """Root endpoint with API information.

    Returns:
        JSONResponse: API metadata
    """
    return JSONResponse(
        content={
            "service": "ToolCall Core",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/health",
        }
    )


if __name__ == "__main__":
    import uvicorn

    # For local development
    # Binding to 0.0.0.0 is intentional for container compatibility
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
