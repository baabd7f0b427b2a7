"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from benefit_grant.api.routes import router
from benefit_grant.config import settings
from benefit_grant.db.migration_runner import run_migrations
from benefit_grant.db.session import close_engine, get_session_factory
from benefit_grant.observability import get_logger, metrics, setup_logging, setup_tracing
from benefit_grant.observability.tracing import instrument_fastapi
from benefit_grant.services.catalog import get_catalog
from benefit_grant.services.grant_engine import GrantEngine
from benefit_grant.services.ledger import SqlEntitlementLedger
from benefit_grant.services.receipt_hook import HttpReceiptHook

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_grant_engine() -> GrantEngine:
    """Wire the grant engine from settings."""
    receipt_hook = (
        HttpReceiptHook(
            base_url=settings.receipt_service_url,
            timeout=settings.receipt_timeout_seconds,
        )
        if settings.receipts_enabled
        else None
    )
    return GrantEngine(
        ledger=SqlEntitlementLedger(get_session_factory()),
        receipt_hook=receipt_hook,
        catalog=get_catalog(),
        lock_wait_timeout=settings.lock_wait_timeout_seconds,
        cache_ttl_seconds=settings.idempotency_cache_ttl_seconds,
        cache_sweep_interval=settings.cache_sweep_interval_seconds,
        courtesy_credits=settings.courtesy_credits,
        unrecognized_amount_policy=settings.unrecognized_amount_policy,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        receipts_enabled=settings.receipts_enabled,
    )

    if settings.run_migrations_on_startup:
        run_migrations()

    engine = build_grant_engine()
    await engine.start()
    app.state.grant_engine = engine

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await engine.close()
    app.state.grant_engine = None
    await close_engine()
    logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may hold non-serializable objects (e.g. the ValueError from a validator)
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    logger.info("request_started", method=method, path=endpoint, request_id=request_id)
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )
        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "benefit_grant.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
