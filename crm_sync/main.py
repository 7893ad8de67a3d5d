"""Main FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging

from crm_sync.core.config import get_settings
from crm_sync.core.database import database
from crm_sync.api import health, integrations
from crm_sync.services import ServiceContainer, build_services
from crm_sync.utils.logging import setup_logging
from crm_sync.utils.rate_limiter import RateLimiter

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()

    # Startup
    logger.info("Starting up CRM sync service...")
    owns_database = app.state.services is None
    if owns_database:
        await database.connect()
        await database.ensure_indexes()
        rate_limiter = RateLimiter.from_url(settings.redis_url) if settings.rate_limit_enabled else None
        app.state.services = build_services(database, settings, rate_limiter=rate_limiter)

    logger.info(f"Service: {settings.service_name}")
    logger.info(f"Environment: {settings.environment}")

    yield

    # Shutdown
    logger.info("Shutting down CRM sync service...")
    await app.state.services.orchestrator.shutdown()
    if owns_database:
        if app.state.services.rate_limiter:
            await app.state.services.rate_limiter.redis_client.aclose()
        await database.disconnect()


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the application; tests pass a prebuilt service graph."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync Service",
        description="Pushes technician check-ins to field service CRMs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(
        integrations.router,
        prefix="/api/v1/integrations",
        tags=["integrations"]
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "crm_sync.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
