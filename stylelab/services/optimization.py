"""
Process controller - validates and creates optimization processes, and
reads their status back.

start_optimization_process() is the only writer of new processes and rounds.
It commits in its own session before kicking off round 1 in the background,
so the background task never races the request's transaction. If the task
dies with the process, the round scheduler picks round 1 up on its next scan.
"""
import asyncio
import logging
import math
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.config import get_settings
from stylelab.database import async_session_factory
from stylelab.errors import NotFoundError, ValidationError
from stylelab.models.optimization_process import OptimizationProcess
from stylelab.models.optimization_round import OptimizationRound
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.schemas.optimization import OptimizationConfig
from stylelab.services.round_state import RoundStatus
from stylelab.services.segmentation import control_group_size
from stylelab.services.subscriber_directory import find_active_by_list

logger = logging.getLogger(__name__)

# Keeps kick-off tasks referenced until they finish
_background_tasks: set[asyncio.Task] = set()


def _parse_id(process_id) -> uuid.UUID:
    try:
        return uuid.UUID(str(process_id))
    except ValueError:
        raise NotFoundError(f"Process {process_id} not found")


def plan_round_sizes(total: int, rounds: int) -> list[int]:
    """Equal split; the last round takes the remainder."""
    per_round = total // rounds
    sizes = [per_round] * rounds
    sizes[-1] += total - per_round * rounds
    return sizes


def validate_pool(active_count: int, config: OptimizationConfig) -> tuple[int, int]:
    """
    Check the subscriber pool supports the requested experiment.

    Returns:
        (used, per_round)

    Raises:
        ValidationError: pool too small overall, per round, or per segment.
    """
    settings = get_settings()
    used = math.floor(active_count * config.selection_percentage)
    if used < settings.min_total_subscribers:
        raise ValidationError(
            f"Not enough subscribers: {used} selected, at least "
            f"{settings.min_total_subscribers} required"
        )

    per_round = math.floor(used / config.number_of_rounds)
    if per_round < settings.min_subscribers_per_round:
        raise ValidationError(
            f"Not enough subscribers per round: {per_round} with "
            f"{config.number_of_rounds} rounds, at least {settings.min_subscribers_per_round} required"
        )

    # The control group comes out of the round before the regular split
    control = control_group_size(per_round, config.segmentation)
    per_segment = math.floor((per_round - control) / config.segmentation.number_of_segments)
    if per_segment < settings.min_subscribers_per_segment:
        raise ValidationError(
            f"Not enough subscribers per segment: {per_segment} with "
            f"{config.segmentation.number_of_segments} segments and a control group of {control}, at least "
            f"{settings.min_subscribers_per_segment} required"
        )
    return used, per_round


def _spawn_round(round_id: uuid.UUID) -> None:
    from stylelab.services.round_processing import process_due_round

    task = asyncio.create_task(process_due_round(round_id, RoundStatus.PENDING.value))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def start_optimization_process(
    config: Union[OptimizationConfig, dict],
    kick_off: bool = True,
) -> str:
    """
    Validate, persist the process with all of its rounds, and start round 1.

    Returns:
        The new process id.

    Raises:
        ValidationError: invalid configuration or too few subscribers.
            Nothing is persisted in that case.
    """
    if not isinstance(config, OptimizationConfig):
        try:
            config = OptimizationConfig(**config)
        except Exception as e:
            raise ValidationError(f"Invalid optimization config: {e}") from e

    async with async_session_factory() as db:
        active = await find_active_by_list(db, config.subscriber_list_id)
        used, per_round = validate_pool(len(active), config)

        selected = random.sample(active, used)

        process = OptimizationProcess(
            user_id=config.user_id,
            status="processing",
            configuration=config.model_dump(mode="json"),
        )
        db.add(process)
        await db.flush()

        now = datetime.now(timezone.utc)
        rounds: list[OptimizationRound] = []
        index = 0
        for i, size in enumerate(plan_round_sizes(used, config.number_of_rounds)):
            round_ = OptimizationRound(
                process_id=process.id,
                round_number=i + 1,
                status=RoundStatus.PENDING.value,
                start_date=now + timedelta(minutes=i * config.round_interval_minutes),
                subscriber_ids=selected[index:index + size],
                offer_ids=list(config.offer_ids),
            )
            index += size
            db.add(round_)
            rounds.append(round_)
        await db.commit()

        process_id = process.id
        first_round_id = rounds[0].id

    logger.info(
        "Optimization process %s created: %d subscribers, %d rounds of ~%d",
        str(process_id)[:8], used, config.number_of_rounds, per_round,
        extra={"process_id": str(process_id)},
    )

    if kick_off:
        _spawn_round(first_round_id)

    return str(process_id)


async def get_process_status(db: AsyncSession, process_id) -> dict:
    """
    Returns:
        {"status", "completed_rounds", "total_rounds", "best_parameters"}
    """
    process = await db.get(OptimizationProcess, _parse_id(process_id))
    if process is None:
        raise NotFoundError(f"Process {process_id} not found")

    result = await db.execute(
        select(OptimizationRound.status).where(OptimizationRound.process_id == process.id)
    )
    statuses = [row[0] for row in result.all()]

    return {
        "status": process.status,
        "completed_rounds": sum(1 for s in statuses if s == RoundStatus.COMPLETED.value),
        "total_rounds": len(statuses),
        "best_parameters": (process.result or {}).get("best_parameters"),
    }


def _metrics(row) -> dict:
    """Metric columns shared by rounds and segments; rates derived from totals."""
    sent = row.total_sent or 0
    clicks = row.total_clicks or 0
    conversions = row.total_conversions or 0
    return {
        "total_sent": sent,
        "total_opens": row.total_opens or 0,
        "total_clicks": clicks,
        "total_conversions": conversions,
        "total_revenue": row.total_revenue or 0.0,
        "click_rate": clicks / sent if sent else 0.0,
        "conversion_rate": conversions / clicks if clicks else 0.0,
    }


async def get_process_tree(db: AsyncSession, process_id) -> dict:
    """Process with every round and every round's segments."""
    process = await db.get(OptimizationProcess, _parse_id(process_id))
    if process is None:
        raise NotFoundError(f"Process {process_id} not found")

    rounds_result = await db.execute(
        select(OptimizationRound)
        .where(OptimizationRound.process_id == process.id)
        .order_by(OptimizationRound.round_number)
    )
    rounds = rounds_result.scalars().all()

    segments_result = await db.execute(
        select(SubscriberSegment)
        .where(SubscriberSegment.process_id == process.id)
        .order_by(SubscriberSegment.segment_number)
    )
    segments_by_round: dict[uuid.UUID, list[SubscriberSegment]] = {}
    for segment in segments_result.scalars().all():
        segments_by_round.setdefault(segment.round_id, []).append(segment)

    return {
        "id": str(process.id),
        "status": process.status,
        "configuration": process.configuration,
        "result": process.result,
        "error": process.error,
        "created_at": process.created_at,
        "rounds": [
            {
                "id": str(r.id),
                "round_number": r.round_number,
                "status": r.status,
                "start_date": r.start_date,
                "metrics_analysis_time": r.metrics_analysis_time,
                "end_date": r.end_date,
                "subscriber_count": len(r.subscriber_ids or []),
                "best_performing_parameters": r.best_performing_parameters,
                "model_performance": r.model_performance,
                "metrics": _metrics(r),
                "error": r.error,
                "segments": [
                    {
                        "id": str(s.id),
                        "segment_number": s.segment_number,
                        "status": s.status,
                        "subscriber_count": len(s.subscriber_ids or []),
                        "assigned_parameters": s.assigned_parameters,
                        "is_control_group": s.is_control_group,
                        "is_exploration_group": s.is_exploration_group,
                        "metrics": _metrics(s),
                        "error": s.error,
                    }
                    for s in segments_by_round.get(r.id, [])
                ],
            }
            for r in rounds
        ],
    }
