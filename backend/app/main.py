"""Portfolio Backend - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import api_router
from app.api.health import router as health_router
from app.core import (
    CounterStore,
    MemoryCounterStore,
    RedisCounterStore,
    settings,
    setup_logging,
)
from app.core.config import Settings
from app.core.counter_store import memory_sweep_loop
from app.core.logging import get_logger
from app.middleware import SecurityHeadersMiddleware
from app.services.audit import AuditService
from app.services.block_store import BlockStore
from app.services.rate_limiter import RateLimitConfig, SlidingWindowLimiter
from app.services.token import TokenService

logger = get_logger("main")


def create_counter_store(config: Settings) -> CounterStore:
    """Redis when configured, otherwise the single-process memory store."""
    if config.redis_url:
        logger.info("Using Redis counter store")
        return RedisCounterStore.from_url(config.redis_url, config.redis_socket_timeout)
    logger.warning("REDIS_URL not set, using in-memory counter store")
    return MemoryCounterStore()


def init_security_services(app: FastAPI, store: CounterStore, config: Settings) -> None:
    """Build the shared security services and attach them to ``app.state``."""
    rate_config = RateLimitConfig.from_settings(config)
    blocks = BlockStore(store, rate_config.block_duration_seconds)

    app.state.counter_store = store
    app.state.block_store = blocks
    app.state.rate_limiter = SlidingWindowLimiter(store, blocks, rate_config)
    app.state.token_service = TokenService(
        secret=config.jwt_secret_key,
        ttl_seconds=config.jwt_expire_seconds,
        algorithm=config.jwt_algorithm,
    )
    app.state.audit_service = AuditService()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    # Check security configuration
    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    store = create_counter_store(settings)
    init_security_services(app, store, settings)

    sweep_task = None
    if isinstance(store, MemoryCounterStore):
        sweep_task = asyncio.create_task(memory_sweep_loop(store))

    yield

    # Shutdown
    logger.info("Shutting down...")
    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    await app.state.audit_service.drain()
    await store.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Portfolio CMS backend",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    # Security headers middleware
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.session_cookie_secure)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on all responses, including 401 and 429.
    # Credentials are allowed because the session travels in a cookie.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-Request-ID",
        ],
        expose_headers=["Retry-After"],
    )

    # Include routers
    app.include_router(health_router)  # Health at root level
    app.include_router(api_router)  # API at /api/v1

    return app


# Application instance
app = create_app()
