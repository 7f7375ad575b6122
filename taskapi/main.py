"""
Task API - Main Application
===========================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import newrelic.agent
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskapi.api.v1 import tasks
from taskapi.config import Settings, get_settings
from taskapi.core.errors import setup_exception_handlers
from taskapi.core.rate_limit import (
    InMemoryCounterStore,
    RateLimiter,
    RateLimitMiddleware,
    RedisCounterStore,
)
from taskapi.db.session import close_db, init_db
from taskapi.dependencies import get_task_repository
from taskapi.services.cache import CacheClient, close_redis, create_cache, init_redis
from taskapi.services.error_log import ErrorLogger, create_error_logger
from taskapi.services.task_repository import InMemoryTaskRepository

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that enriches every New Relic transaction with
    custom attributes for filtering and alerting.

    Raw ASGI keeps the handler in the same task, so New Relic's
    contextvars-based spans for Redis and the database stay attached.

    Captures: response status, latency, HTTP method, route pattern and
    client IP.
    """

    def __init__(self, app, environment: str = "development"):
        self.app = app
        self.environment = environment

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # default until we capture the real one

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                # Route pattern (e.g. "/api/v1/tasks/{task_id}") for grouping
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                client = scope.get("client")
                client_ip = client[0] if client else "unknown"

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("http.client_ip", client_ip),
                    ("environment", self.environment),
                ])


def configure_logging(settings: Settings) -> None:
    """Root logger defaults to WARNING; raise it for the app."""
    logging.basicConfig(
        level=logging.DEBUG if settings.is_development else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of:
    - Database connection
    - Redis connection
    - Cache, error logger and rate limiter (unless supplied to create_app)
    """
    settings: Settings = app.state.settings
    logger.info("Starting Task API (%s mode)", settings.GOAPP_MODE)

    if not settings.is_testing:
        try:
            await init_db(settings)
        except Exception as e:
            # Keep serving health checks without a database
            logger.error("Database connection failed: %s", e)

    redis_client = None
    needs_redis = (
        app.state.cache is None
        or app.state.error_logger is None
        or (app.state.rate_limiter is None and settings.RATE_LIMIT_ENABLED)
    )
    if needs_redis and not settings.is_testing:
        try:
            redis_client = await init_redis(settings)
        except Exception as e:
            logger.error("Redis connection failed: %s", e)

    if app.state.cache is None:
        app.state.cache = create_cache(settings, redis_client)
    if app.state.error_logger is None:
        kind = settings.ERROR_LOGGER
        if kind == "redis" and redis_client is None:
            logger.warning("Redis unavailable, error log falls back to memory")
            kind = "memory"
        app.state.error_logger = create_error_logger(kind, redis_client)
    if app.state.rate_limiter is None and settings.RATE_LIMIT_ENABLED:
        store = (
            RedisCounterStore(redis_client, settings.CACHE_OPERATION_TIMEOUT)
            if redis_client is not None
            else InMemoryCounterStore()
        )
        app.state.rate_limiter = RateLimiter.from_settings(settings, store)

    yield

    # Shutdown
    logger.info("Shutting down Task API")
    await app.state.error_logger.close()
    await app.state.cache.close()
    await close_db()
    await close_redis()


def create_app(
    settings: Optional[Settings] = None,
    *,
    cache: Optional[CacheClient] = None,
    error_logger: Optional[ErrorLogger] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators passed in are used as-is; the rest are created on
    startup from *settings*. In ``testing`` mode tasks are kept in memory.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Task API",
        description="""
## Task management API

### Pagination
- Cursor: `GET /api/v1/tasks?cursor=&limit=&order=`
- Page: `GET /api/v1/tasks/page?page=&limit=&order=`

### Caching
Reads return `ETag`; send it back in `If-None-Match` to get `304 Not Modified`.

### Rate Limits (per client IP, per minute)
- Read endpoints: 100 requests/minute
- Write endpoints: 50 requests/minute
- Prefetch reads: 200 requests/minute
        """,
        version=VERSION,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
        responses={
            400: {"description": "Validation error"},
            404: {"description": "Resource not found"},
            429: {"description": "Rate limit exceeded"},
            500: {"description": "Internal server error"},
            503: {"description": "Dependency unavailable"},
        },
    )

    app.state.settings = settings
    app.state.cache = cache
    app.state.error_logger = error_logger
    app.state.rate_limiter = rate_limiter

    if settings.is_testing:
        repository = InMemoryTaskRepository()
        app.dependency_overrides[get_task_repository] = lambda: repository

    # Per-client rate limiting (reads app.state.rate_limiter per request)
    app.add_middleware(RateLimitMiddleware, fail_open=settings.RATE_LIMIT_FAIL_OPEN)

    # Configure CORS (outside the limiter so 429s still carry CORS headers)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.frontend_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "Last-Modified", "Retry-After", "X-RateLimit-Limit"],
    )

    # New Relic transaction enrichment (adds custom attrs to every transaction)
    app.add_middleware(NewRelicTransactionMiddleware, environment=settings.GOAPP_MODE)

    # Setup exception handlers
    setup_exception_handlers(app)

    # =========================================================================
    # Health Check Endpoints
    # =========================================================================

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Returns the current status of the API.
        """
        return {
            "status": "healthy",
            "version": VERSION,
            "environment": settings.GOAPP_MODE,
        }

    @app.get("/", tags=["Health"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "name": "Task API",
            "version": VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
        }

    # =========================================================================
    # API Routes
    # =========================================================================

    app.include_router(tasks.router, prefix="/api/v1/tasks", tags=["Tasks"])

    return app


def main() -> None:
    """Run the API with uvicorn on ``GOAPP_PORT``."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.GOAPP_PORT)


if __name__ == "__main__":
    main()
