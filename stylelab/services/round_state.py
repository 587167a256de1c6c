"""
Round state machine.

PENDING -> IN_PROGRESS -> WAITING_FOR_METRICS -> ANALYZING -> COMPLETED
Any non-terminal state may drop to FAILED. COMPLETED and FAILED are terminal.

transition_round() mutates an in-session row; claim_round() is the
cross-worker guard - an atomic conditional UPDATE so two scanners can never
advance the same round twice.
"""
import logging
import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.errors import InvalidTransitionError
from stylelab.models.optimization_round import OptimizationRound

logger = logging.getLogger(__name__)


class RoundStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_METRICS = "waiting_for_metrics"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RoundStatus.COMPLETED.value, RoundStatus.FAILED.value})

VALID_TRANSITIONS = {
    RoundStatus.PENDING.value: [RoundStatus.IN_PROGRESS.value, RoundStatus.FAILED.value],
    RoundStatus.IN_PROGRESS.value: [RoundStatus.WAITING_FOR_METRICS.value, RoundStatus.FAILED.value],
    RoundStatus.WAITING_FOR_METRICS.value: [RoundStatus.ANALYZING.value, RoundStatus.FAILED.value],
    RoundStatus.ANALYZING.value: [RoundStatus.COMPLETED.value, RoundStatus.FAILED.value],
    RoundStatus.COMPLETED.value: [],  # Terminal
    RoundStatus.FAILED.value: [],  # Terminal
}


def _value(status) -> str:
    return status.value if isinstance(status, RoundStatus) else str(status)


def is_terminal(status) -> bool:
    return _value(status) in TERMINAL_STATUSES


def can_transition(current, target) -> bool:
    return _value(target) in VALID_TRANSITIONS.get(_value(current), [])


def transition_round(round_: OptimizationRound, target) -> None:
    """Move a loaded round to `target` or raise InvalidTransitionError."""
    current = _value(round_.status)
    target_value = _value(target)
    if not can_transition(current, target_value):
        raise InvalidTransitionError(current, target_value)
    round_.status = target_value
    logger.debug(
        "Round %s: %s -> %s",
        str(round_.id)[:8], current, target_value,
    )


async def claim_round(
    db: AsyncSession,
    round_id: uuid.UUID,
    expected,
    target,
    values: Optional[dict] = None,
) -> bool:
    """
    Atomically move a round from `expected` to `target`.
    Returns False if the round was no longer in `expected` (someone else got it).
    Caller commits.
    """
    expected_value = _value(expected)
    target_value = _value(target)
    if not can_transition(expected_value, target_value):
        raise InvalidTransitionError(expected_value, target_value)

    result = await db.execute(
        update(OptimizationRound)
        .where(
            and_(
                OptimizationRound.id == round_id,
                OptimizationRound.status == expected_value,
            )
        )
        .values(status=target_value, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    claimed = (result.rowcount or 0) == 1
    if not claimed:
        logger.info(
            "Round %s not in %s, skipping claim to %s",
            str(round_id)[:8], expected_value, target_value,
        )
    return claimed


async def fail_round(
    db: AsyncSession,
    round_id: uuid.UUID,
    error: str,
) -> bool:
    """
    Move any non-terminal round to FAILED, keeping its partial data.
    Returns False if the round was already terminal. Caller commits.
    """
    result = await db.execute(
        update(OptimizationRound)
        .where(
            and_(
                OptimizationRound.id == round_id,
                OptimizationRound.status.notin_(list(TERMINAL_STATUSES)),
            )
        )
        .values(status=RoundStatus.FAILED.value, error=error[:2000])
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
