"""
Operator process: reconciliation worker plus a small HTTP surface.

The worker runs as a background task of the FastAPI lifespan. HTTP serves
health probes for the operator's own pod, Prometheus metrics and read-only
datacenter status.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from cass_operator.api.v1 import datacenters, health
from cass_operator.config.logging import configure_logging, get_logger
from cass_operator.config.redis import RedisConnection
from cass_operator.config.settings import settings
from cass_operator.exceptions import OperatorError

configure_logging()
logger = get_logger(__name__)

if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )

# Kubelet and Prometheus hit these every few seconds
QUIET_PATHS = frozenset({"/health/live", "/health/ready", "/health/startup", "/metrics"})

SHUTDOWN_TIMEOUT_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Connect to Kubernetes and Redis, then run the reconciliation worker until
    shutdown. Replicas may run side by side: every pass holds its datacenter lock.
    """
    from cass_operator.services.kubernetes_service import KubernetesService
    from cass_operator.workers.reconciliation_worker import build_worker

    logger.info("operator_starting", version=settings.app_version, namespace=settings.watch_namespace)

    kubernetes = KubernetesService()
    try:
        await kubernetes.initialize()
        await RedisConnection.connect()
    except Exception as e:
        logger.error("operator_startup_failed", error=str(e))
        await kubernetes.close()
        raise

    worker = build_worker(kubernetes, await RedisConnection.get_client())
    app.state.repository = worker.repository
    app.state.worker = worker
    worker_task = asyncio.create_task(worker.start())
    logger.info("operator_started")

    yield

    logger.info("operator_shutting_down")
    await worker.stop()
    try:
        await asyncio.wait_for(worker_task, timeout=SHUTDOWN_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("worker_shutdown_timeout", timeout_seconds=SHUTDOWN_TIMEOUT_SECONDS)

    await kubernetes.close()
    await RedisConnection.close()
    logger.info("operator_shutdown_complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Reconciliation operator for Cassandra and DSE datacenters",
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
    openapi_url="/openapi.json" if not settings.is_production else None,
    lifespan=lifespan,
)


def _error_response(
    status_code: int, message: str, details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "details": details or {}, "status_code": status_code}},
    )


@app.exception_handler(OperatorError)
async def operator_exception_handler(request: Request, exc: OperatorError) -> JSONResponse:
    """Map operator exceptions to their HTTP status."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "operator_exception",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=exc.message,
        status_code=exc.status_code,
    )
    return _error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
    details = {} if settings.is_production else {"error": str(exc)}
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", details)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    if request.url.path not in QUIET_PATHS:
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
    return response


if settings.prometheus_enabled:
    Instrumentator(excluded_handlers=["/metrics", "/health/.*"]).instrument(app).expose(
        app, endpoint="/metrics"
    )

app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(datacenters.router, prefix="/api/v1/datacenters", tags=["Datacenters"])


@app.get("/", include_in_schema=False)
async def root():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "namespace": settings.watch_namespace,
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cass_operator.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
