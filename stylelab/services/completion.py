"""
Completion evaluator - finalizes a process once every round is terminal.

The process winner is the completed round with the highest best-combination
conversion rate. Failed rounds are ignored; a process with no completed
round fails. Finalization runs once, claimed through the `notified` flag.
"""
import logging
import uuid

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.errors import NotFoundError
from stylelab.models.optimization_process import OptimizationProcess
from stylelab.models.optimization_round import OptimizationRound
from stylelab.models.style_email import StyleEmail
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.services.notifications import notify_completion, notify_failure
from stylelab.services.round_state import RoundStatus, is_terminal

logger = logging.getLogger(__name__)

TOP_EMAILS = 3


def select_best_round(rounds: list[OptimizationRound]):
    """Completed round with the highest conversion rate; earliest wins ties."""
    completed = [
        r for r in sorted(rounds, key=lambda r: r.round_number)
        if r.status == RoundStatus.COMPLETED.value and r.best_performing_parameters
    ]
    if not completed:
        return None
    return max(
        completed,
        key=lambda r: float(r.best_performing_parameters.get("conversion_rate", 0.0)),
    )


async def best_performing_emails(db: AsyncSession, process_id: uuid.UUID) -> dict:
    """Top segments of the process by conversion rate and by click rate, with a sample subject."""
    result = await db.execute(
        select(SubscriberSegment, OptimizationRound.round_number)
        .join(OptimizationRound, OptimizationRound.id == SubscriberSegment.round_id)
        .where(
            and_(
                SubscriberSegment.process_id == process_id,
                SubscriberSegment.status == "processed",
                OptimizationRound.status == RoundStatus.COMPLETED.value,
            )
        )
    )
    rows = result.all()

    async def _entry(segment: SubscriberSegment, round_number: int) -> dict:
        subject_result = await db.execute(
            select(StyleEmail.subject)
            .where(StyleEmail.segment_id == segment.id)
            .limit(1)
        )
        return {
            "segment_id": str(segment.id),
            "round_number": round_number,
            "style": segment.assigned_parameters,
            "subject": subject_result.scalar_one_or_none(),
            "total_sent": segment.total_sent or 0,
            "click_rate": segment.click_rate or 0.0,
            "conversion_rate": segment.conversion_rate or 0.0,
        }

    by_conversion = sorted(rows, key=lambda row: row[0].conversion_rate or 0.0, reverse=True)[:TOP_EMAILS]
    by_click = sorted(rows, key=lambda row: row[0].click_rate or 0.0, reverse=True)[:TOP_EMAILS]
    return {
        "by_conversion_rate": [await _entry(s, n) for s, n in by_conversion],
        "by_click_rate": [await _entry(s, n) for s, n in by_click],
    }


async def _claim_finalization(db: AsyncSession, process_id: uuid.UUID) -> bool:
    result = await db.execute(
        update(OptimizationProcess)
        .where(
            and_(
                OptimizationProcess.id == process_id,
                OptimizationProcess.notified.is_(False),
            )
        )
        .values(notified=True)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def check_process_completion(db: AsyncSession, process_id: uuid.UUID) -> bool:
    """
    Finalize the process if every round is terminal.

    Returns:
        False while any round is still active, True once the process is finalized
        (including when an earlier call already did it).
    """
    process = await db.get(OptimizationProcess, process_id)
    if process is None:
        raise NotFoundError(f"Process {process_id} not found")

    result = await db.execute(
        select(OptimizationRound)
        .where(OptimizationRound.process_id == process_id)
        .order_by(OptimizationRound.round_number)
        .execution_options(populate_existing=True)
    )
    rounds = result.scalars().all()

    if any(not is_terminal(r.status) for r in rounds):
        return False

    if not await _claim_finalization(db, process_id):
        return True

    completed = [r for r in rounds if r.status == RoundStatus.COMPLETED.value]
    best_round = select_best_round(rounds)
    outcome = {
        "total_rounds": len(rounds),
        "completed_rounds": len(completed),
        "best_round_number": best_round.round_number if best_round else None,
        "best_parameters": best_round.best_performing_parameters if best_round else None,
    }

    user_email = (process.configuration or {}).get("user_email")

    if best_round is None:
        reason = "All rounds failed"
        last_error = next((r.error for r in reversed(rounds) if r.error), None)
        if last_error:
            reason = f"{reason}: {last_error[:200]}"
        process.status = "failed"
        process.error = reason
        process.result = outcome
        process.notified = True
        await db.commit()
        logger.warning(
            "Process %s failed: %s", str(process_id)[:8], reason,
            extra={"process_id": str(process_id)},
        )
        if user_email:
            await notify_failure(user_email, str(process_id), reason)
        return True

    outcome["best_performing_emails"] = await best_performing_emails(db, process_id)
    process.status = "completed"
    process.result = outcome
    process.notified = True
    await db.commit()

    best = outcome["best_parameters"]
    logger.info(
        "Process %s completed: %d/%d rounds, best round #%d (conversion=%.4f)",
        str(process_id)[:8], len(completed), len(rounds),
        best_round.round_number, float(best.get("conversion_rate", 0.0)),
        extra={"process_id": str(process_id)},
    )
    if user_email:
        await notify_completion(user_email, str(process_id), outcome)
    return True
