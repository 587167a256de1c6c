"""
Tests for round processing: start (segment + send), analyze, and the per-round error boundary.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from stylelab.models.style_email import StyleEmail
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.services.round_processing import (
    analyze_round,
    previous_round_settled,
    process_due_round,
    start_round,
)
from tests.factories import add_process, add_round, add_subscribers


async def _setup_round(db, base_config, subscriber_count=10, **round_overrides):
    subscribers = await add_subscribers(db, subscriber_count)
    process = await add_process(db, config=base_config)
    values = {"subscriber_ids": subscribers, "offer_ids": ["offer_1"]}
    values.update(round_overrides)
    round_ = await add_round(db, process, 1, **values)
    await db.commit()
    return process, round_


async def _segments(db, round_id):
    result = await db.execute(
        select(SubscriberSegment)
        .where(SubscriberSegment.round_id == round_id)
        .order_by(SubscriberSegment.segment_number)
    )
    return result.scalars().all()


class TestStartRound:
    @pytest.mark.asyncio
    async def test_segments_sends_and_waits_for_metrics(self, db, base_config, mock_ai, mock_send, no_batch_delay):
        process, round_ = await _setup_round(db, base_config)

        assert await start_round(db, round_.id) is True

        await db.refresh(round_)
        assert round_.status == "waiting_for_metrics"
        assert round_.metrics_analysis_time is not None
        segments = await _segments(db, round_.id)
        assert len(segments) == 2
        assert all(s.status == "processed" for s in segments)
        assert [s.total_sent for s in segments] == [5, 5]
        assert mock_ai.await_count == 2
        assert mock_send.await_count == 10

        emails = (await db.execute(select(StyleEmail))).scalars().all()
        assert len(emails) == 10
        assert {e.offer_id for e in emails} == {"offer_1"}
        assert all(e.ai_provider == "anthropic" for e in emails)
        assert all(e.message_id == "msg_test_123" for e in emails)
        assert "Focus Planner" in emails[0].generated_prompt

    @pytest.mark.asyncio
    async def test_generation_failure_is_confined_to_segment(self, db, base_config, mock_ai, mock_send, no_batch_delay):
        good = dict(mock_ai.return_value)
        mock_ai.side_effect = [
            {**good, "content": "", "provider": "none", "error": "No AI provider available"},
            good,
        ]
        process, round_ = await _setup_round(db, base_config)

        assert await start_round(db, round_.id) is True

        await db.refresh(round_)
        assert round_.status == "waiting_for_metrics"
        statuses = [s.status for s in await _segments(db, round_.id)]
        assert sorted(statuses) == ["failed", "processed"]
        assert mock_send.await_count == 5

    @pytest.mark.asyncio
    async def test_every_send_failing_marks_segment_failed(self, db, base_config, mock_ai, mock_send, no_batch_delay):
        from stylelab.errors import ProviderError
        mock_send.side_effect = ProviderError("SendGrid down", provider="sendgrid")
        process, round_ = await _setup_round(db, base_config)

        await start_round(db, round_.id)

        segments = await _segments(db, round_.id)
        assert all(s.status == "failed" for s in segments)
        assert "SendGrid down" in segments[0].error

    @pytest.mark.asyncio
    async def test_claimed_round_is_not_started_twice(self, db, base_config, mock_ai, mock_send, no_batch_delay):
        process, round_ = await _setup_round(db, base_config, status="in_progress")

        assert await start_round(db, round_.id) is False
        mock_ai.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_waits_for_previous_round(self, db, base_config):
        process = await add_process(db, config=base_config)
        await add_round(db, process, 1, status="waiting_for_metrics")
        round_2 = await add_round(db, process, 2)

        assert await previous_round_settled(db, round_2) is False
        assert await start_round(db, round_2.id) is False
        assert round_2.status == "pending"


class TestAnalyzeRound:
    @pytest.mark.asyncio
    async def test_analyzes_and_completes_process(self, db, base_config, mock_ai, mock_send, no_batch_delay, mock_notifications):
        base_config["number_of_rounds"] = 1
        process, round_ = await _setup_round(db, base_config)
        await start_round(db, round_.id)

        # Two clicks and one conversion in the first segment
        first = (await _segments(db, round_.id))[0]
        emails = (await db.execute(
            select(StyleEmail).where(StyleEmail.segment_id == first.id)
        )).scalars().all()
        now = datetime.now(timezone.utc)
        for email in emails[:2]:
            email.opened_at = now
            email.clicked_at = now
        emails[0].converted_at = now
        await db.commit()

        assert await analyze_round(db, round_.id) is True

        await db.refresh(round_)
        await db.refresh(process)
        assert round_.status == "completed"
        assert round_.total_sent == 10
        assert round_.total_clicks == 2
        assert round_.best_performing_parameters["conversion_rate"] == pytest.approx(0.5)
        assert round_.best_performing_parameters["copywriting_style"] == first.assigned_parameters["copywriting_style"]
        assert process.status == "completed"
        mock_notifications["completion"].assert_awaited_once()

    @pytest.mark.asyncio
    async def test_not_due_round_is_skipped(self, db, base_config):
        process, round_ = await _setup_round(db, base_config)
        assert await analyze_round(db, round_.id) is False


class TestProcessDueRound:
    @pytest.mark.asyncio
    async def test_error_marks_round_failed_and_settles_process(
        self, db, base_config, session_ctx, mock_redis, mock_notifications,
    ):
        base_config["number_of_rounds"] = 1
        process, round_ = await _setup_round(db, base_config, subscriber_ids=[])

        with patch("stylelab.services.round_processing.async_session_factory", side_effect=session_ctx):
            advanced = await process_due_round(round_.id, "pending")

        assert advanced is False
        await db.refresh(round_)
        await db.refresh(process)
        assert round_.status == "failed"
        assert "No subscribers" in round_.error
        assert process.status == "failed"
        mock_notifications["failure"].assert_awaited_once()

    @pytest.mark.asyncio
    async def test_locked_round_is_skipped(self, db, base_config, session_ctx, mock_redis):
        mock_redis.set = AsyncMock(return_value=None)
        process, round_ = await _setup_round(db, base_config)

        with (
            patch("stylelab.services.round_processing.async_session_factory", side_effect=session_ctx),
            patch("stylelab.services.round_processing.start_round", new_callable=AsyncMock) as start,
        ):
            advanced = await process_due_round(round_.id, "pending")

        assert advanced is False
        start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dispatches_by_status(self, db, base_config, session_ctx, mock_redis):
        process, round_ = await _setup_round(db, base_config)

        with (
            patch("stylelab.services.round_processing.async_session_factory", side_effect=session_ctx),
            patch("stylelab.services.round_processing.analyze_round", new_callable=AsyncMock, return_value=True) as analyze,
        ):
            advanced = await process_due_round(round_.id, "waiting_for_metrics")

        assert advanced is True
        analyze.assert_awaited_once()
        mock_redis.eval.assert_awaited_once()
