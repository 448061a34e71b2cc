"""
Health check endpoints for monitoring and orchestration.
Provides liveness, readiness, and startup probes.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from cass_operator.config.redis import RedisConnection
from cass_operator.config.settings import settings

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    Returns current status and version.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.
    Indicates whether the application should be restarted.
    """
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.
    Checks Redis connectivity and that the reconciliation worker is running.
    """
    redis_healthy = await RedisConnection.ping()
    worker = getattr(request.app.state, "worker", None)
    worker_running = worker is not None and worker.running

    if not redis_healthy or not worker_running:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "redis": "healthy" if redis_healthy else "unhealthy",
                "worker": "running" if worker_running else "stopped",
                "timestamp": _now(),
            },
        )

    return {
        "status": "ready",
        "redis": "healthy",
        "worker": "running",
        "timestamp": _now(),
    }


@router.get("/startup")
async def startup(request: Request):
    """
    Kubernetes startup probe.
    Succeeds once the lifespan handler has built the reconciliation worker.
    """
    if getattr(request.app.state, "worker", None) is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "starting", "timestamp": _now()},
        )
    return {"status": "started", "timestamp": _now()}
