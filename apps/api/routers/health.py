"""
Health check endpoints.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Request
import redis.asyncio as redis

from config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Storage-only mode is healthy; a configured but unreachable database is degraded.
    """
    store = getattr(request.app.state, "store", None)
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "environment": settings.ENVIRONMENT,
        "features": settings.feature_flags,
        "database": "not_configured",
        "redis": "unknown",
        "storage": {"bucket": store.bucket_name if store is not None else settings.GCS_BUCKET_NAME},
    }

    repository = getattr(request.app.state, "repository", None)
    if repository is not None:
        try:
            await repository.ping()
            health_status["database"] = "connected"
        except Exception as e:
            health_status["database"] = f"down: {str(e)}"
            health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"

    processor = getattr(request.app.state, "processor", None)
    if processor is not None:
        health_status["processing"] = {"running": processor.running, "pending": processor.pending}

    return health_status


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
