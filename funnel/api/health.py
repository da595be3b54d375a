"""
Probes for the orchestrator.

/health answers whenever the process is up. /health/ready also checks
Postgres and Redis and reports the last heartbeat of each in-process worker.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.database import get_db
from funnel.utils.redis_client import HEARTBEAT_KEY_PREFIX, get_redis

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
WORKER_NAMES = ("task_processor", "followup_scheduler")


@router.get("/health")
async def health_check():
    """Liveness."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - database and Redis must answer. Worker heartbeats are
    reported but do not affect readiness.
    """
    checks = {"database": False, "redis": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    workers = {}
    try:
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        for name in WORKER_NAMES:
            heartbeat = await redis.get(f"{HEARTBEAT_KEY_PREFIX}{name}")
            workers[name] = {"healthy": heartbeat is not None, "last_heartbeat": heartbeat}
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "workers": workers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
