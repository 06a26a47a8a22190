"""
Store Provisioning Platform — API

Main entrypoint. Sets up FastAPI with:
  - CORS for dashboard access
  - Rate limiting (slowapi)
  - Domain error → HTTP status mapping
  - Prometheus metrics (/metrics)
  - Health check (/health) with database and Redis status
  - Store routes (/api/stores)
  - Startup reconciliation sweep of stores left PROVISIONING
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import redis.asyncio as redis
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import settings
from .db import Database
from .errors import (
    AuthorizationError,
    ClusterError,
    ConflictError,
    NotFoundError,
    QuotaExceeded,
    StorePlatformError,
    ValidationError,
)
from .metrics import update_status_gauge
from .models import StoreStatus
from .routers.stores import limiter, router as stores_router
from .services.audit_service import AuditService
from .services.helm_service import HelmInstaller
from .services.kubernetes_service import KubernetesClusterClient
from .services.provisioning_adapter import ProvisioningAdapter
from .services.reconciliation_service import ReconciliationService
from .services.repository import SqlAuditRepository, SqlStoreRepository
from .services.store_service import StoreService
from .services.task_runner import ProvisioningTaskRunner

VERSION = "3.0.0"

# --- Logging ---
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("store-platform")

ERROR_STATUS = {
    ValidationError: 400,
    QuotaExceeded: 429,
    ConflictError: 409,
    AuthorizationError: 403,
    NotFoundError: 404,
    ClusterError: 502,
}


async def _connect_redis():
    """Returns a connected client, or None if Redis is disabled or unreachable."""
    if not settings.REDIS_URL:
        return None
    client = redis.Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_TIMEOUT,
        socket_connect_timeout=settings.REDIS_TIMEOUT,
    )
    try:
        await client.ping()
    except Exception as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        await client.aclose()
        return None
    logger.info(f"Redis connected: {settings.REDIS_URL}")
    return client


# --- Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Store Platform API starting...")
    db = Database(settings.DATABASE_URL)
    await db.init()
    redis_client = await _connect_redis()

    stores = SqlStoreRepository(db)
    audit = AuditService(SqlAuditRepository(db), redis_client, publish_timeout=settings.REDIS_TIMEOUT)
    adapter = ProvisioningAdapter(
        settings, KubernetesClusterClient(settings), HelmInstaller(settings)
    )
    runner = ProvisioningTaskRunner(settings.MAX_PARALLEL_PROVISIONS)
    store_service = StoreService(settings, stores, audit, adapter, runner)
    reconciler = ReconciliationService(
        settings, stores, adapter, audit, on_still_provisioning=store_service.resume
    )

    app.state.db = db
    app.state.redis = redis_client
    app.state.runner = runner
    app.state.store_service = store_service

    runner.submit("reconcile", reconciler.reconcile_provisioning_stores)

    yield

    logger.info("Store Platform API shutting down...")
    await runner.shutdown()
    if redis_client is not None:
        await redis_client.aclose()
    await db.dispose()


# --- FastAPI app ---
app = FastAPI(
    title="Store Provisioning Platform API",
    description="Control plane for Kubernetes-native multi-tenant store provisioning",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Include stores router ---
app.include_router(stores_router, prefix="/api")


# --- Domain errors ---
@app.exception_handler(StorePlatformError)
async def platform_error_handler(request: Request, exc: StorePlatformError):
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, QuotaExceeded):
        content.update(current=exc.current, max=exc.max)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are a 400 like any other validation failure."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg', 'invalid')}")
    return JSONResponse(
        status_code=400,
        content={"detail": "; ".join(problems) or "Invalid request", "code": ValidationError.code},
    )


# --- Health check ---
@app.get("/health")
async def health(request: Request):
    """Health check with database and Redis connectivity status."""
    db = getattr(request.app.state, "db", None)
    db_ok = await db.ping() if db is not None else False

    redis_status = "disabled"
    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is not None:
        try:
            await redis_client.ping()
            redis_status = "connected"
        except Exception:
            redis_status = "disconnected"

    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "database": "connected" if db_ok else "disconnected",
        "redis": redis_status,
        "version": VERSION,
    }


# --- Prometheus metrics endpoint ---
@app.get("/metrics", response_class=PlainTextResponse)
async def metrics(request: Request):
    """Expose Prometheus metrics."""
    store_service = getattr(request.app.state, "store_service", None)
    if store_service is not None:
        try:
            counts = {s.value: await store_service.stores.count(status=s) for s in StoreStatus}
            update_status_gauge(counts)
        except Exception as e:
            logger.warning(f"Could not refresh store gauges: {e}")
    return PlainTextResponse(
        content=generate_latest().decode("utf-8"),
        media_type=CONTENT_TYPE_LATEST,
    )


# --- Global exception handler ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": "INTERNAL_ERROR"},
    )


# --- Entry point ---
if __name__ == "__main__":
    uvicorn.run(
        "store_platform.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=False,
    )
