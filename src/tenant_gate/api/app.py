"""FastAPI application factory with lifespan management."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import REGISTRY, CollectorRegistry
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenant_gate.api.metrics import RequestMetricsRecorder
from tenant_gate.api.metrics import router as metrics_router
from tenant_gate.api.pipeline import Pipeline, TenantPipelineMiddleware
from tenant_gate.api.routes.users import router as users_router
from tenant_gate.api.schemas import error_response, success_response
from tenant_gate.auth.rate_limiter import FixedWindowRateLimiter
from tenant_gate.auth.tokens import TokenVerifier
from tenant_gate.config import CounterBackend, Settings, get_settings
from tenant_gate.errors import HandlerError
from tenant_gate.logging_config import configure_logging
from tenant_gate.storage.counter_store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
)
from tenant_gate.storage.database import engine

logger = structlog.get_logger()

CLEANUP_INTERVAL_SECONDS = 300


async def _cleanup_loop(store: InMemoryCounterStore) -> None:
    """Periodic cleanup of expired in-memory rate limit windows."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
        try:
            cleaned = await asyncio.to_thread(store.cleanup)
            if cleaned:
                logger.debug("rate_limiter_cleanup", keys_removed=cleaned)
        except Exception:
            logger.exception("rate_limiter_cleanup_error")


def build_counter_store(settings: Settings) -> CounterStore:
    if settings.counter_backend == CounterBackend.MEMORY:
        return InMemoryCounterStore()
    return RedisCounterStore.from_url(settings.redis_url)


async def health() -> JSONResponse:
    """Liveness check; no auth, no rate limiting."""
    return success_response(message="API is running")


async def handler_error_handler(request: Request, exc: HandlerError) -> JSONResponse:
    """Business handler failures after admission."""
    return error_response(HandlerError.http_status, str(exc) or "Handler error")


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies are client errors (400), not 422."""
    logger.info("invalid_request_body", path=request.url.path)
    return error_response(400, "Invalid request body")


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Render HTTPException in the standard envelope."""
    return error_response(exc.status_code, str(exc.detail), headers=exc.headers)


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Catch-all handler for unhandled exceptions."""
    logger.error("unhandled_exception", exc_info=exc, path=request.url.path)
    return error_response(500, "Internal server error")


def create_app(
    settings: Settings | None = None,
    *,
    counter_store: CounterStore | None = None,
    registry: CollectorRegistry | None = None,
) -> FastAPI:
    """Wire settings, counter store, limiter, verifier and metrics into an app.

    Args:
        settings: Defaults to the cached environment settings.
        counter_store: Overrides the store selected by ``counter_backend``.
        registry: Prometheus registry; defaults to the process registry.
            Pass a fresh ``CollectorRegistry`` when building several apps
            in one process.
    """
    settings = settings or get_settings()
    store = (
        counter_store if counter_store is not None else build_counter_store(settings)
    )
    registry = registry if registry is not None else REGISTRY

    verifier = TokenVerifier(
        settings.jwt_secret.get_secret_value(),
        algorithm=settings.jwt_algorithm,
        leeway_seconds=settings.jwt_leeway_seconds,
    )
    limiter = FixedWindowRateLimiter(
        store,
        limit=settings.rate_limit_threshold,
        window_seconds=settings.rate_limit_window_seconds,
        timeout=settings.counter_store_timeout,
        fail_open=settings.rate_limit_fail_open,
    )
    pipeline = Pipeline.standard(
        metrics=RequestMetricsRecorder(registry),
        verifier=verifier,
        limiter=limiter,
        protected_prefix=settings.protected_path_prefix,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        """Manage application startup and shutdown.

        Startup:
            - Configure logging.
            - Start cleanup task for the in-memory counter store.
        Shutdown:
            - Cancel cleanup task.
            - Close the counter store and dispose the database engine.
        """
        configure_logging(
            environment=str(settings.environment),
            log_level=settings.log_level,
        )
        cleanup_task = None
        if isinstance(store, InMemoryCounterStore):
            cleanup_task = asyncio.create_task(_cleanup_loop(store))

        logger.info(
            "app_started",
            environment=str(settings.environment),
            counter_backend=type(store).__name__,
            rate_limit=settings.rate_limit_threshold,
            window_seconds=settings.rate_limit_window_seconds,
            fail_open=settings.rate_limit_fail_open,
        )
        yield

        if cleanup_task is not None:
            cleanup_task.cancel()
        await store.close()
        await engine.dispose()
        logger.info("app_stopped")

    app = FastAPI(
        title="Tenant Gate",
        description="Multi-tenant API with per-tenant rate limiting",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.is_dev,
    )
    app.state.settings = settings
    app.state.counter_store = store
    app.state.rate_limiter = limiter
    app.state.pipeline = pipeline
    app.state.metrics_registry = registry

    app.add_middleware(TenantPipelineMiddleware, pipeline=pipeline)

    app.add_exception_handler(HandlerError, handler_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_api_route("/health", health, methods=["GET"])
    app.include_router(metrics_router)
    app.include_router(users_router, prefix="/api")
    return app


app = create_app()
