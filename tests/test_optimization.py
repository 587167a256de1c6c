"""
Tests for stylelab/services/optimization.py - pool validation, process
creation and the status/tree read side.
"""
import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import select

from stylelab.errors import NotFoundError, ValidationError
from stylelab.models.optimization_process import OptimizationProcess
from stylelab.models.optimization_round import OptimizationRound
from stylelab.schemas.optimization import OptimizationConfig
from stylelab.services.optimization import (
    get_process_status,
    get_process_tree,
    plan_round_sizes,
    start_optimization_process,
    validate_pool,
)
from tests.factories import add_process, add_round, add_segment, add_subscribers


STYLE = {
    "copywriting_style": "AIDA",
    "writing_style": "narrative",
    "tone": "casual",
    "personality": "caring",
}


class TestPlanRoundSizes:
    def test_even_split(self):
        assert plan_round_sizes(30, 3) == [10, 10, 10]

    def test_last_round_takes_remainder(self):
        assert plan_round_sizes(32, 3) == [10, 10, 12]

    def test_single_round(self):
        assert plan_round_sizes(17, 1) == [17]


class TestValidatePool:
    def test_valid_pool(self, base_config):
        config = OptimizationConfig(**base_config)
        assert validate_pool(20, config) == (20, 10)

    def test_selection_percentage_floors(self, base_config):
        base_config["selection_percentage"] = 0.5
        config = OptimizationConfig(**base_config)
        assert validate_pool(41, config) == (20, 10)

    def test_too_few_overall(self, base_config):
        config = OptimizationConfig(**base_config)
        with pytest.raises(ValidationError, match="Not enough subscribers:"):
            validate_pool(9, config)

    def test_too_few_per_round(self, base_config):
        base_config["number_of_rounds"] = 5
        config = OptimizationConfig(**base_config)
        with pytest.raises(ValidationError, match="per round"):
            validate_pool(20, config)

    def test_too_few_per_segment(self, base_config):
        base_config["segmentation"]["number_of_segments"] = 3
        config = OptimizationConfig(**base_config)
        with pytest.raises(ValidationError, match="per segment"):
            validate_pool(20, config)

    def test_control_group_counts_against_segment_minimum(self, base_config):
        base_config["number_of_rounds"] = 1
        base_config["segmentation"].update(
            number_of_segments=4, include_control_group=True, control_group_size=2,
        )
        config = OptimizationConfig(**base_config)
        with pytest.raises(ValidationError, match="control group of 2"):
            validate_pool(20, config)

    def test_control_group_leaves_enough_per_segment(self, base_config):
        base_config["number_of_rounds"] = 1
        base_config["segmentation"].update(
            number_of_segments=4, include_control_group=True, control_group_size=2,
        )
        config = OptimizationConfig(**base_config)
        assert validate_pool(22, config) == (22, 22)


class TestStartOptimizationProcess:
    @pytest.mark.asyncio
    async def test_creates_process_and_rounds(self, db, session_ctx, base_config):
        subscribers = await add_subscribers(db, 21)
        await add_subscribers(db, 5, list_id="other_list")
        base_config["round_interval_minutes"] = 60

        with patch("stylelab.services.optimization.async_session_factory", side_effect=session_ctx):
            process_id = await start_optimization_process(base_config, kick_off=False)

        process = await db.get(OptimizationProcess, uuid.UUID(process_id))
        assert process.status == "processing"
        assert process.configuration["subscriber_list_id"] == "list_1"
        assert process.notified is False

        rounds = (await db.execute(
            select(OptimizationRound)
            .where(OptimizationRound.process_id == process.id)
            .order_by(OptimizationRound.round_number)
        )).scalars().all()
        assert [r.round_number for r in rounds] == [1, 2]
        assert all(r.status == "pending" for r in rounds)
        assert [len(r.subscriber_ids) for r in rounds] == [10, 11]
        assert set(rounds[0].subscriber_ids).isdisjoint(rounds[1].subscriber_ids)
        assert set(rounds[0].subscriber_ids) | set(rounds[1].subscriber_ids) <= set(subscribers)
        assert rounds[0].offer_ids == ["offer_1"]
        gap = rounds[1].start_date - rounds[0].start_date
        assert gap.total_seconds() == pytest.approx(3600, abs=1)

    @pytest.mark.asyncio
    async def test_kick_off_spawns_round_one(self, db, session_ctx, base_config):
        await add_subscribers(db, 20)

        with (
            patch("stylelab.services.optimization.async_session_factory", side_effect=session_ctx),
            patch("stylelab.services.optimization._spawn_round") as spawn,
        ):
            process_id = await start_optimization_process(base_config)

        first = (await db.execute(
            select(OptimizationRound).where(
                OptimizationRound.process_id == uuid.UUID(process_id),
                OptimizationRound.round_number == 1,
            )
        )).scalar_one()
        spawn.assert_called_once_with(first.id)

    @pytest.mark.asyncio
    async def test_small_pool_persists_nothing(self, db, session_ctx, base_config):
        await add_subscribers(db, 8)

        with patch("stylelab.services.optimization.async_session_factory", side_effect=session_ctx):
            with pytest.raises(ValidationError):
                await start_optimization_process(base_config, kick_off=False)

        assert (await db.execute(select(OptimizationProcess))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_inactive_subscribers_are_not_counted(self, db, session_ctx, base_config):
        await add_subscribers(db, 8)
        await add_subscribers(db, 20, status="unsubscribed")

        with patch("stylelab.services.optimization.async_session_factory", side_effect=session_ctx):
            with pytest.raises(ValidationError):
                await start_optimization_process(base_config, kick_off=False)

    @pytest.mark.asyncio
    async def test_invalid_config_raises_validation_error(self):
        with pytest.raises(ValidationError, match="Invalid optimization config"):
            await start_optimization_process({"user_id": "u1"}, kick_off=False)


class TestProcessStatus:
    @pytest.mark.asyncio
    async def test_counts_completed_rounds(self, db):
        process = await add_process(db, result={"best_parameters": {**STYLE, "conversion_rate": 0.2}})
        await add_round(db, process, 1, status="completed")
        await add_round(db, process, 2, status="in_progress")
        await db.commit()

        status = await get_process_status(db, str(process.id))

        assert status["status"] == "processing"
        assert status["completed_rounds"] == 1
        assert status["total_rounds"] == 2
        assert status["best_parameters"]["tone"] == "casual"

    @pytest.mark.asyncio
    async def test_unknown_process(self, db):
        with pytest.raises(NotFoundError):
            await get_process_status(db, str(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_malformed_id(self, db):
        with pytest.raises(NotFoundError):
            await get_process_status(db, "not-a-uuid")


class TestProcessTree:
    @pytest.mark.asyncio
    async def test_nests_segments_under_rounds(self, db):
        process = await add_process(db)
        round_1 = await add_round(db, process, 1, status="completed", subscriber_ids=["a", "b"])
        await add_round(db, process, 2)
        await add_segment(db, round_1, STYLE, 1, total_sent=10, total_clicks=4, total_conversions=1)
        await add_segment(db, round_1, STYLE, 2, status="failed", error="SendGrid down")
        await db.commit()

        tree = await get_process_tree(db, process.id)

        assert tree["id"] == str(process.id)
        assert [r["round_number"] for r in tree["rounds"]] == [1, 2]
        first = tree["rounds"][0]
        assert first["subscriber_count"] == 2
        assert [s["segment_number"] for s in first["segments"]] == [1, 2]
        metrics = first["segments"][0]["metrics"]
        assert metrics["click_rate"] == pytest.approx(0.4)
        assert metrics["conversion_rate"] == pytest.approx(0.25)
        assert first["segments"][1]["error"] == "SendGrid down"
        assert tree["rounds"][1]["segments"] == []

    @pytest.mark.asyncio
    async def test_unknown_process(self, db):
        with pytest.raises(NotFoundError):
            await get_process_tree(db, uuid.uuid4())
