"""
StampLedger API - FastAPI application.

Wires the routes, startup migrations, request logging and metrics, and the
last-resort mapping of ledger errors to HTTP status codes.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.concurrency import run_in_threadpool

from stampledger.api.routes import router
from stampledger.config import settings
from stampledger.db.migration_runner import run_migrations
from stampledger.db.session import close_engines
from stampledger.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ExternalServiceError,
    InsufficientBalanceError,
    LedgerError,
    NotFoundError,
    RegistrationStateError,
    ValidationError,
)
from stampledger.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from stampledger.observability.tracing import instrument_fastapi

setup_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Most specific first; anything else is a 500 with a generic message
ERROR_STATUS: tuple[tuple[type[LedgerError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (InsufficientBalanceError, status.HTTP_402_PAYMENT_REQUIRED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (RegistrationStateError, status.HTTP_409_CONFLICT),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Apply pending migrations on startup; close engines on shutdown."""
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        authorities=settings.authority_urls,
        max_submission_attempts=settings.max_submission_attempts,
    )
    if not settings.api_key:
        logger.warning("api_key_not_configured", effect="all_api_requests_rejected")
    if not settings.webhook_secret:
        logger.warning("webhook_secret_not_configured", effect="all_webhooks_rejected")

    if settings.run_migrations_on_startup:
        await run_in_threadpool(run_migrations)

    yield

    logger.info("application_shutting_down")
    await close_engines()


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)

setup_tracing()
instrument_fastapi(app)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """422 with a JSON-safe error list (ctx may hold exception instances)."""
    errors = []
    for error in exc.errors():
        item = {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        if "ctx" in error:
            item["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(item)

    logger.warning("validation_error", path=request.url.path, method=request.method, errors=errors)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": errors}
    )


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Map a ledger error no route translated. Outbound and database details stay in the log."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if isinstance(exc, ExternalServiceError):
        detail = "Upstream service unavailable"
    elif status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        detail = "Internal server error"
    else:
        detail = str(exc)

    metrics.record_error(type(exc).__name__, "unhandled_ledger_error")
    logger.error(
        "ledger_error_unhandled",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.middleware("http")
async def request_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time, count and log every request under a request id."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    method = request.method
    path = request.url.path
    start = time.perf_counter()
    metrics.http_requests_in_progress.labels(method=method).inc()

    with log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start
            metrics.record_http_request(path, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(method=method).dec()

        duration = time.perf_counter() - start
        # Route template, so registration ids and user ids don't become label values
        route = request.scope.get("route")
        metrics.record_http_request(
            getattr(route, "path", path), method, response.status_code, duration
        )
        logger.info(
            "request_completed",
            method=method,
            path=path,
            status_code=response.status_code,
            duration_seconds=duration,
        )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus text exposition; 404 when metrics are disabled."""
    if not settings.metrics_enabled:
        return Response(status_code=status.HTTP_404_NOT_FOUND)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stampledger.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
