"""
Health check endpoints.

- GET /health       - liveness, always 200 while the app runs
- GET /health/ready - database and Redis reachable
- GET /health/deep  - readiness plus round scheduler heartbeat, overdue rounds
                      and provider configuration
"""
import logging
from datetime import datetime, timedelta, timezone
from fastapi import APIRouter, Depends
from sqlalchemy import and_, func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.config import get_settings
from stylelab.database import get_db
from stylelab.models.optimization_round import OptimizationRound
from stylelab.services.round_state import RoundStatus
from stylelab.workers.round_scheduler import HEARTBEAT_KEY

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"

# A round is overdue once it has sat due for this many scan intervals
OVERDUE_SCAN_INTERVALS = 3


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now_iso(), "version": VERSION}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": _now_iso(),
    }


@router.get("/health/deep")
async def deep_health_check(db: AsyncSession = Depends(get_db)):
    """
    Unhealthy when the database or Redis is down; degraded when the scheduler
    looks stalled, rounds are overdue, or no provider is configured.
    """
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "round_scheduler": await _check_scheduler(),
        "round_backlog": await _check_round_backlog(db),
        "providers": _check_providers(),
    }

    if not (checks["database"]["healthy"] and checks["redis"]["healthy"]):
        status = "unhealthy"
    elif all(c["healthy"] for c in checks.values()):
        status = "healthy"
    else:
        status = "degraded"

    return {"status": status, "checks": checks, "timestamp": _now_iso(), "version": VERSION}


async def _check_database(db: AsyncSession) -> dict:
    try:
        await db.execute(text("SELECT 1"))
        return {"healthy": True}
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    try:
        from stylelab.utils.redis import get_redis
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_scheduler() -> dict:
    if not get_settings().round_scheduler_enabled:
        return {"healthy": True, "enabled": False}
    try:
        from stylelab.utils.redis import get_redis
        redis = await get_redis()
        heartbeat = await redis.get(HEARTBEAT_KEY)
        return {"healthy": heartbeat is not None, "last_heartbeat": heartbeat}
    except Exception as e:
        return {"healthy": False, "error": str(e)}


async def _check_round_backlog(db: AsyncSession) -> dict:
    """Rounds that stayed due well past the scan interval mean the scheduler is behind or stuck."""
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(
        seconds=settings.round_scan_interval_seconds * OVERDUE_SCAN_INTERVALS
    )
    try:
        result = await db.execute(
            select(func.count(OptimizationRound.id)).where(
                or_(
                    and_(
                        OptimizationRound.status == RoundStatus.PENDING.value,
                        OptimizationRound.start_date <= cutoff,
                    ),
                    and_(
                        OptimizationRound.status == RoundStatus.WAITING_FOR_METRICS.value,
                        OptimizationRound.metrics_analysis_time <= cutoff,
                    ),
                )
            )
        )
        overdue = result.scalar() or 0
        return {"healthy": overdue == 0, "overdue_rounds": overdue}
    except Exception as e:
        logger.error("Round backlog check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


def _check_providers() -> dict:
    settings = get_settings()
    ai = [name for name, key in (("anthropic", settings.anthropic_api_key), ("openai", settings.openai_api_key)) if key]
    sendgrid = bool(settings.sendgrid_api_key)
    return {"healthy": bool(ai) and sendgrid, "ai": ai, "sendgrid": sendgrid}
