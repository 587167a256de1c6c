"""
Round scheduler - advances optimization rounds whose time has come.
Runs every round_scan_interval_seconds (default 60).

Due items:
- PENDING rounds with start_date <= now                    -> start_round()
- WAITING_FOR_METRICS rounds with metrics_analysis_time <= now -> analyze_round()

Each due round runs as its own coroutine (bounded by round_scan_concurrency)
with its own error boundary, so one bad round never stalls the scan.

Stale claims:
- IN_PROGRESS or ANALYZING rounds not updated for stale_round_timeout_minutes
  -> FAILED, then the process is re-evaluated
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, and_, or_

from stylelab.config import get_settings
from stylelab.database import async_session_factory
from stylelab.models.optimization_round import OptimizationRound
from stylelab.services.completion import check_process_completion
from stylelab.services.round_processing import process_due_round
from stylelab.services.round_state import RoundStatus, fail_round
from stylelab.utils.locks import LOCK_TTL_SECONDS, LockTimeoutError, round_lock

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "stylelab:worker_health:round_scheduler"
STARTUP_DELAY_SECONDS = 5
MAX_ROUNDS_PER_SCAN = 200
MAX_STALE_ROUNDS_PER_SWEEP = 50
STALE_STATUSES = (RoundStatus.IN_PROGRESS.value, RoundStatus.ANALYZING.value)


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from stylelab.utils.redis import get_redis
        redis = await get_redis()
        await redis.set(
            HEARTBEAT_KEY,
            datetime.now(timezone.utc).isoformat(),
            ex=max(300, get_settings().round_scan_interval_seconds * 5),
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def find_due_rounds(db, now: datetime) -> list[tuple]:
    """(round_id, status) for every round that should advance now, oldest first."""
    result = await db.execute(
        select(OptimizationRound.id, OptimizationRound.status)
        .where(
            or_(
                and_(
                    OptimizationRound.status == RoundStatus.PENDING.value,
                    OptimizationRound.start_date <= now,
                ),
                and_(
                    OptimizationRound.status == RoundStatus.WAITING_FOR_METRICS.value,
                    OptimizationRound.metrics_analysis_time <= now,
                ),
            )
        )
        .order_by(OptimizationRound.round_number, OptimizationRound.start_date)
        .limit(MAX_ROUNDS_PER_SCAN)
    )
    return [(row[0], row[1]) for row in result.all()]


async def find_stale_rounds(db, cutoff: datetime) -> list[tuple]:
    """(round_id, process_id, status) for claimed rounds last touched before cutoff."""
    result = await db.execute(
        select(OptimizationRound.id, OptimizationRound.process_id, OptimizationRound.status)
        .where(
            and_(
                OptimizationRound.status.in_(STALE_STATUSES),
                OptimizationRound.updated_at < cutoff,
            )
        )
        .order_by(OptimizationRound.updated_at)
        .limit(MAX_STALE_ROUNDS_PER_SWEEP)
    )
    return [(row[0], row[1], row[2]) for row in result.all()]


def _stale_timeout() -> timedelta:
    # At least twice the round lock TTL
    minutes = get_settings().stale_round_timeout_minutes
    return max(timedelta(minutes=minutes), timedelta(seconds=LOCK_TTL_SECONDS * 2))


async def sweep_stale_rounds() -> int:
    """
    Fail rounds whose worker died after claiming them, then settle their processes.
    Rounds whose lock is still held are left alone.

    Returns:
        Number of rounds failed.
    """
    timeout = _stale_timeout()
    swept = 0
    async with async_session_factory() as db:
        stale = await find_stale_rounds(db, datetime.now(timezone.utc) - timeout)
        settle = []
        for round_id, process_id, status in stale:
            try:
                async with round_lock(round_id, wait=0):
                    minutes = int(timeout.total_seconds() // 60)
                    if await fail_round(db, round_id, f"Stalled in {status} for over {minutes} minutes"):
                        await db.commit()
                        swept += 1
                        settle.append(process_id)
                        logger.warning(
                            "Round %s stalled in %s, marked failed", str(round_id)[:8], status,
                            extra={"process_id": str(process_id), "round_id": str(round_id)},
                        )
            except LockTimeoutError:
                logger.info("Round %s still locked, not sweeping", str(round_id)[:8])

        for process_id in dict.fromkeys(settle):
            try:
                await check_process_completion(db, process_id)
            except Exception as e:
                await db.rollback()
                logger.error("Settling process %s failed: %s", str(process_id)[:8], str(e))

    return swept


async def scan_due_rounds() -> dict:
    """
    One scan: advance every due round concurrently.

    Returns:
        {"due": int, "advanced": int}
    """
    settings = get_settings()
    async with async_session_factory() as db:
        due = await find_due_rounds(db, datetime.now(timezone.utc))

    if not due:
        return {"due": 0, "advanced": 0}

    semaphore = asyncio.Semaphore(max(1, settings.round_scan_concurrency))

    async def _advance(round_id, status) -> bool:
        async with semaphore:
            return await process_due_round(round_id, status)

    results = await asyncio.gather(
        *[_advance(round_id, status) for round_id, status in due],
        return_exceptions=True,
    )
    advanced = 0
    for (round_id, _), outcome in zip(due, results):
        if isinstance(outcome, Exception):
            logger.error("Round %s advance crashed: %s", str(round_id)[:8], str(outcome))
        elif outcome:
            advanced += 1

    logger.info("Round scan: %d due, %d advanced", len(due), advanced)
    return {"due": len(due), "advanced": advanced}


async def run_round_scheduler():
    """Main loop - scan for due rounds every interval."""
    settings = get_settings()
    interval = settings.round_scan_interval_seconds
    logger.info("Round scheduler started (poll every %ds)", interval)

    await asyncio.sleep(STARTUP_DELAY_SECONDS)

    while True:
        try:
            swept = await sweep_stale_rounds()
            if swept:
                logger.info("Stale round sweep failed %d rounds", swept)
        except Exception as e:
            logger.error("Stale round sweep error: %s", str(e))

        try:
            await scan_due_rounds()
        except Exception as e:
            logger.error("Round scheduler error: %s", str(e))

        await _heartbeat()
        await asyncio.sleep(interval)
