"""
Tests for the round state machine.
"""
import pytest

from stylelab.errors import InvalidTransitionError, SchedulingError
from stylelab.services.round_state import (
    VALID_TRANSITIONS,
    RoundStatus,
    can_transition,
    claim_round,
    fail_round,
    is_terminal,
    transition_round,
)
from tests.factories import add_process, add_round

FORWARD_PATH = [
    RoundStatus.PENDING,
    RoundStatus.IN_PROGRESS,
    RoundStatus.WAITING_FOR_METRICS,
    RoundStatus.ANALYZING,
    RoundStatus.COMPLETED,
]


class TestTransitions:
    def test_forward_path_is_valid(self):
        for current, target in zip(FORWARD_PATH, FORWARD_PATH[1:]):
            assert can_transition(current, target)

    def test_states_cannot_be_skipped(self):
        for i, current in enumerate(FORWARD_PATH):
            for target in FORWARD_PATH[i + 2:]:
                assert not can_transition(current, target)

    def test_no_backward_transitions(self):
        for i, current in enumerate(FORWARD_PATH):
            for target in FORWARD_PATH[:i]:
                assert not can_transition(current, target)

    def test_any_active_state_may_fail(self):
        for status in FORWARD_PATH[:-1]:
            assert can_transition(status, RoundStatus.FAILED)

    def test_terminal_states(self):
        assert is_terminal("completed")
        assert is_terminal(RoundStatus.FAILED)
        assert not is_terminal("waiting_for_metrics")
        assert VALID_TRANSITIONS["completed"] == []
        assert VALID_TRANSITIONS["failed"] == []

    @pytest.mark.asyncio
    async def test_transition_round_mutates_status(self, db):
        process = await add_process(db)
        round_ = await add_round(db, process)
        transition_round(round_, RoundStatus.IN_PROGRESS)
        assert round_.status == "in_progress"

    @pytest.mark.asyncio
    async def test_invalid_transition_raises_scheduling_error(self, db):
        process = await add_process(db)
        round_ = await add_round(db, process)
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition_round(round_, RoundStatus.ANALYZING)
        assert isinstance(exc_info.value, SchedulingError)
        assert round_.status == "pending"


class TestClaimRound:
    @pytest.mark.asyncio
    async def test_claim_succeeds_once(self, db):
        process = await add_process(db)
        round_ = await add_round(db, process)
        await db.commit()

        first = await claim_round(db, round_.id, RoundStatus.PENDING, RoundStatus.IN_PROGRESS)
        await db.commit()
        second = await claim_round(db, round_.id, RoundStatus.PENDING, RoundStatus.IN_PROGRESS)

        assert first is True
        assert second is False
        await db.refresh(round_)
        assert round_.status == "in_progress"

    @pytest.mark.asyncio
    async def test_claim_rejects_invalid_pair(self, db):
        process = await add_process(db)
        round_ = await add_round(db, process)
        with pytest.raises(InvalidTransitionError):
            await claim_round(db, round_.id, RoundStatus.PENDING, RoundStatus.COMPLETED)


class TestFailRound:
    @pytest.mark.asyncio
    async def test_fails_active_round_and_keeps_error(self, db):
        process = await add_process(db)
        round_ = await add_round(db, process, status="waiting_for_metrics")
        await db.commit()

        assert await fail_round(db, round_.id, "boom") is True
        await db.commit()
        await db.refresh(round_)
        assert round_.status == "failed"
        assert round_.error == "boom"

    @pytest.mark.asyncio
    async def test_terminal_round_untouched(self, db):
        process = await add_process(db)
        round_ = await add_round(db, process, status="completed")
        await db.commit()

        assert await fail_round(db, round_.id, "late error") is False
        await db.refresh(round_)
        assert round_.status == "completed"
        assert round_.error is None
