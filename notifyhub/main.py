"""
NotifyHub - multi-channel notification gateway

FastAPI application entry point.
"""
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from arq import create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI

from notifyhub.components import build_components, create_redis
from notifyhub.config import Settings, load_settings
from notifyhub.database import create_engine, create_session_factory
from notifyhub.logging_config import configure_logging, get_logger
from notifyhub.sentry_config import configure_sentry
from notifyhub.middleware.logging import LoggingMiddleware
from notifyhub.routes.metrics import router as metrics_router
from notifyhub.routes.messages import router as messages_router
from notifyhub.routes.providers import router as providers_router

logger = get_logger(component="api")


def create_app(settings: Optional[Settings] = None, components: Optional[dict] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Settings to use; loaded from the environment if omitted
        components: Prebuilt component graph (tests); when omitted the
            lifespan opens Redis, the database, the arq pool and an httpx
            client and builds it
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if components is not None:
            app.state.components = components
            yield
            return

        redis_client = create_redis(settings)
        engine = create_engine(settings)
        http_client = httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
        pool = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))

        app.state.components = build_components(
            settings,
            redis_client,
            create_session_factory(engine),
            http_client,
            pool=pool,
        )
        logger.info("api_started", environment=settings.ENVIRONMENT)
        try:
            yield
        finally:
            await app.state.components["adapters"].close()
            await http_client.aclose()
            await pool.aclose()
            await redis_client.aclose()
            await engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Multi-channel notification gateway with provider failover",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)
    app.include_router(messages_router)
    app.include_router(providers_router)

    @app.get("/")
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Liveness check."""
        return {"status": "healthy"}

    return app


def create_default_app() -> FastAPI:
    """Entry point for `uvicorn notifyhub.main:create_default_app --factory`."""
    settings = load_settings()
    configure_logging(settings.LOG_LEVEL)
    configure_sentry(settings)
    return create_app(settings)
