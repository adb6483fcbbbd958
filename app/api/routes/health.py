"""
Health Check Routes

Endpoints for health, liveness, and readiness probes.
"""

from typing import Dict, Any
from datetime import datetime, timezone

from fastapi import APIRouter
from sqlalchemy import text

from app.api.deps import DbSession, IdempotencyStoreDep, RedisClient
from app.config import settings

router = APIRouter()

# Never a valid client key (version nibble 0), so the probe cannot hit a record
_PROBE_KEY = "00000000-0000-0000-0000-000000000000"


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint.
    Returns application status and version.
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/ready")
async def readiness_check(
    db: DbSession,
    redis_client: RedisClient,
    idempotency_store: IdempotencyStoreDep,
) -> Dict[str, Any]:
    """
    Readiness probe - checks all dependencies are available.
    Used by Kubernetes to determine if the pod can receive traffic.
    """
    checks: Dict[str, Dict[str, Any]] = {}
    overall_status = "ready"

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = {"status": "ok"}
    except Exception as e:
        checks["database"] = {"status": "error", "error": str(e)}
        overall_status = "not_ready"

    # Check Redis
    try:
        await redis_client.ping()
        checks["redis"] = {"status": "ok"}
    except Exception as e:
        checks["redis"] = {"status": "error", "error": str(e)}
        overall_status = "not_ready"

    # The guard fails open, so an unavailable store only degrades readiness
    try:
        await idempotency_store.find_recent(_PROBE_KEY, datetime.now(timezone.utc))
        checks["idempotency_store"] = {
            "status": "ok",
            "backend": settings.idempotency_backend,
        }
    except Exception as e:
        checks["idempotency_store"] = {"status": "degraded", "error": str(e)}

    return {
        "status": overall_status,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """
    Liveness probe - basic check that the service is running.
    Used by Kubernetes to determine if the pod should be restarted.
    """
    return {"status": "alive"}
