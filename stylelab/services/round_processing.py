"""
Round processing - the two advances a round makes on its own schedule.

start_round():    PENDING -> IN_PROGRESS -> (segment, send) -> WAITING_FOR_METRICS
analyze_round():  WAITING_FOR_METRICS -> ANALYZING -> (metrics, bandit) -> COMPLETED

process_due_round() is the error boundary used by the scheduler and by the
round-1 kick-off: it takes the round lock, runs the advance, and on any error
marks the round FAILED and re-evaluates the process.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.database import async_session_factory
from stylelab.errors import NotFoundError
from stylelab.models.optimization_process import OptimizationProcess
from stylelab.models.optimization_round import OptimizationRound
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.schemas.optimization import OptimizationConfig
from stylelab.services.bandit import StyleBanditModel, load_model, train_model
from stylelab.services.completion import check_process_completion
from stylelab.services.round_analysis import analyze_round_performance, update_segment_metrics
from stylelab.services.round_state import (
    RoundStatus,
    claim_round,
    fail_round,
    is_terminal,
    transition_round,
)
from stylelab.services.segmentation import segment_subscribers
from stylelab.services.send_pipeline import send_round_messages
from stylelab.utils.locks import LockTimeoutError, round_lock
from stylelab.utils.logging import bind_log_context, generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)


async def _load_round(db: AsyncSession, round_id: uuid.UUID) -> OptimizationRound:
    round_ = await db.get(OptimizationRound, round_id, populate_existing=True)
    if round_ is None:
        raise NotFoundError(f"Round {round_id} not found")
    bind_log_context(process_id=round_.process_id, round_id=round_.id)
    return round_


async def _load_config(db: AsyncSession, process_id: uuid.UUID) -> OptimizationConfig:
    process = await db.get(OptimizationProcess, process_id)
    if process is None:
        raise NotFoundError(f"Process {process_id} not found")
    return OptimizationConfig(**process.configuration)


async def _load_trained_model(db: AsyncSession, round_: OptimizationRound) -> StyleBanditModel:
    """Persisted posterior, rebuilt from history when later rounds find it empty."""
    model = await load_model(db, round_.process_id)
    if not model.is_trained and round_.round_number > 1:
        model, consistency = await train_model(db, round_.process_id)
        logger.info(
            "Rebuilt style model for round %s (consistency=%.3f)",
            str(round_.id)[:8], consistency,
        )
    return model


async def previous_round_settled(db: AsyncSession, round_: OptimizationRound) -> bool:
    """Rounds run in order: round N starts only once round N-1 is terminal."""
    if round_.round_number <= 1:
        return True
    result = await db.execute(
        select(OptimizationRound.status).where(
            and_(
                OptimizationRound.process_id == round_.process_id,
                OptimizationRound.round_number == round_.round_number - 1,
            )
        )
    )
    previous_status = result.scalar_one_or_none()
    return previous_status is None or is_terminal(previous_status)


async def start_round(db: AsyncSession, round_id: uuid.UUID) -> bool:
    """
    Segment and send a due round, then park it until its metrics are due.
    Returns False when the round was not started (not yet its turn, or claimed elsewhere).
    """
    round_ = await _load_round(db, round_id)
    if not await previous_round_settled(db, round_):
        logger.debug("Round %s waiting for previous round", str(round_id)[:8])
        return False

    if not await claim_round(db, round_id, RoundStatus.PENDING, RoundStatus.IN_PROGRESS):
        await db.rollback()
        return False
    await db.commit()
    round_ = await _load_round(db, round_id)

    log_extra = {"process_id": str(round_.process_id), "round_id": str(round_id)}
    logger.info(
        "Starting round #%d (%s) with %d subscribers",
        round_.round_number, str(round_id)[:8], len(round_.subscriber_ids or []),
        extra=log_extra,
    )

    config = await _load_config(db, round_.process_id)
    model = await _load_trained_model(db, round_)

    await segment_subscribers(
        db,
        list(round_.subscriber_ids or []),
        round_,
        config.segmentation,
        model,
    )
    await db.commit()

    await send_round_messages(db, round_, config)

    wait_minutes = config.wait_time_for_metrics_minutes
    transition_round(round_, RoundStatus.WAITING_FOR_METRICS)
    round_.metrics_analysis_time = datetime.now(timezone.utc) + timedelta(minutes=wait_minutes)
    await db.commit()

    logger.info(
        "Round %s waiting %d minutes for metrics", str(round_id)[:8], wait_minutes,
        extra=log_extra,
    )
    return True


async def analyze_round(db: AsyncSession, round_id: uuid.UUID) -> bool:
    """
    Collect segment metrics, analyze and complete a round whose metrics are due,
    then check whether the process is done.
    """
    if not await claim_round(db, round_id, RoundStatus.WAITING_FOR_METRICS, RoundStatus.ANALYZING):
        await db.rollback()
        return False
    await db.commit()
    round_ = await _load_round(db, round_id)

    result = await db.execute(
        select(SubscriberSegment).where(
            and_(
                SubscriberSegment.round_id == round_id,
                SubscriberSegment.status == "processed",
            )
        )
    )
    for segment in result.scalars().all():
        await update_segment_metrics(db, segment)

    model = await _load_trained_model(db, round_)
    await analyze_round_performance(db, round_, model)
    await db.commit()

    await check_process_completion(db, round_.process_id)
    return True


async def process_due_round(round_id: uuid.UUID, status: str) -> bool:
    """
    Advance one due round in its own session. Never raises.
    Returns True if the round advanced.
    """
    set_correlation_id(generate_correlation_id())
    bind_log_context(round_id=round_id)
    try:
        async with round_lock(round_id):
            async with async_session_factory() as db:
                try:
                    if status == RoundStatus.PENDING.value:
                        return await start_round(db, round_id)
                    if status == RoundStatus.WAITING_FOR_METRICS.value:
                        return await analyze_round(db, round_id)
                    logger.warning("Round %s is not due in status %s", str(round_id)[:8], status)
                    return False
                except Exception as e:
                    await db.rollback()
                    logger.error(
                        "Round %s failed: %s", str(round_id)[:8], str(e),
                        exc_info=True,
                        extra={"round_id": str(round_id)},
                    )
                    await _fail_and_settle(db, round_id, str(e) or type(e).__name__)
                    return False
    except LockTimeoutError:
        logger.info("Round %s locked elsewhere, retrying next scan", str(round_id)[:8])
        return False
    except Exception as e:
        logger.error("Round %s processing error: %s", str(round_id)[:8], str(e))
        return False


async def _fail_and_settle(db: AsyncSession, round_id: uuid.UUID, error: str) -> None:
    if await fail_round(db, round_id, error):
        await db.commit()
    result = await db.execute(
        select(OptimizationRound.process_id).where(OptimizationRound.id == round_id)
    )
    process_id = result.scalar_one_or_none()
    if process_id is not None:
        await check_process_completion(db, process_id)
