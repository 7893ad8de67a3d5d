"""Health check endpoints."""

from fastapi import APIRouter, Depends
from datetime import datetime

from crm_sync.core.config import get_settings
from crm_sync.api.dependencies import get_services
from crm_sync.services import ServiceContainer

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/health/detailed")
async def detailed_health_check(services: ServiceContainer = Depends(get_services)):
    """Detailed health check with database and Redis connectivity."""
    settings = get_settings()
    health_status = {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {
            "database": {"status": "unknown"},
            "redis": {"status": "unknown"},
        },
        "active_syncs": len(services.orchestrator.active_runs()),
    }

    # Check MongoDB
    try:
        if services.db.db is not None:
            await services.db.db.command("ping")
            health_status["checks"]["database"]["status"] = "healthy"
        else:
            health_status["checks"]["database"]["status"] = "disconnected"
            health_status["status"] = "degraded"
    except Exception as e:
        health_status["checks"]["database"]["status"] = "unhealthy"
        health_status["checks"]["database"]["error"] = str(e)
        health_status["status"] = "unhealthy"

    # Check Redis
    if services.rate_limiter is None:
        health_status["checks"]["redis"]["status"] = "disabled"
    else:
        try:
            await services.rate_limiter.redis_client.ping()
            health_status["checks"]["redis"]["status"] = "healthy"
        except Exception as e:
            health_status["checks"]["redis"]["status"] = "unhealthy"
            health_status["checks"]["redis"]["error"] = str(e)
            health_status["status"] = "degraded"

    return health_status
