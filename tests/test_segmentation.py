"""
Tests for the segmentation engine.
Covers: partitioning, control groups, initial and optimized combinations, persistence.
"""
import random

import pytest
from sqlalchemy import select

from stylelab.errors import ValidationError
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.schemas.optimization import SegmentationConfig
from stylelab.schemas.style import StyleCombination, balanced_style
from stylelab.services.bandit import StyleBanditModel
from stylelab.services.segmentation import (
    control_group_size,
    generate_initial_combinations,
    generate_optimized_combinations,
    partition,
    perturb,
    segment_subscribers,
)
from tests.factories import add_process, add_round


def _ids(n):
    return [f"sub_{i}" for i in range(n)]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestPartition:
    def test_even_split(self):
        parts = partition(_ids(20), 4)
        assert [len(p) for p in parts] == [5, 5, 5, 5]

    def test_remainder_goes_to_first_partitions(self):
        parts = partition(_ids(22), 4)
        assert [len(p) for p in parts] == [6, 6, 5, 5]

    def test_more_parts_than_items_leaves_empties(self):
        parts = partition(_ids(2), 4)
        assert [len(p) for p in parts] == [1, 1, 0, 0]


class TestControlGroupSize:
    def test_capped_at_ten_percent(self):
        config = SegmentationConfig(include_control_group=True, control_group_size=50)
        assert control_group_size(100, config) == 10

    def test_uses_requested_size_when_smaller(self):
        config = SegmentationConfig(include_control_group=True, control_group_size=3)
        assert control_group_size(100, config) == 3

    def test_disabled(self):
        config = SegmentationConfig(include_control_group=False, control_group_size=3)
        assert control_group_size(100, config) == 0

    def test_tiny_pool_yields_zero(self):
        config = SegmentationConfig(include_control_group=True, control_group_size=3)
        assert control_group_size(9, config) == 0


class TestInitialCombinations:
    def test_strided_dimensions(self):
        combos = generate_initial_combinations(4)
        assert [c.copywriting_style.value for c in combos] == ["AIDA", "PAS", "BAB", "PPP"]
        assert [c.writing_style.value for c in combos] == [
            "descriptive", "persuasive", "conversational", "descriptive",
        ]
        assert [c.tone.value for c in combos] == ["professional", "urgent", "casual", "enthusiastic"]
        assert [c.personality.value for c in combos] == [
            "confident", "innovative", "caring", "humorous",
        ]

    def test_first_six_are_distinct_combinations(self):
        combos = generate_initial_combinations(6)
        assert len({c.style_key() for c in combos}) == 6


class TestOptimizedCombinations:
    def test_falls_back_to_initial_without_previous_best(self):
        combos = generate_optimized_combinations([], 4, 0.2, StyleBanditModel())
        assert combos == generate_initial_combinations(4)

    def test_counts_split_between_exploitation_and_exploration(self):
        best = balanced_style()
        model = StyleBanditModel(rng=random.Random(3))
        model.add_observation(best, 0.5, 200)

        combos = generate_optimized_combinations([best], 5, 0.4, model, random.Random(3))

        assert len(combos) == 5
        # floor(5 * 0.6) = 3 exploitation slots, led by the proven winner
        assert combos[0] == best

    def test_perturbations_differ_in_one_dimension(self):
        best = balanced_style()
        for variant in perturb(best):
            differing = sum(
                getattr(variant, field) != getattr(best, field)
                for field in ("copywriting_style", "writing_style", "tone", "personality")
            )
            assert differing == 1
        assert len(perturb(best)) == 5 + 5 + 6 + 6


# ---------------------------------------------------------------------------
# segment_subscribers
# ---------------------------------------------------------------------------

class TestSegmentSubscribers:
    @pytest.mark.asyncio
    async def test_twenty_subscribers_four_segments(self, db):
        process = await add_process(db)
        round_ = await add_round(db, process, subscriber_ids=_ids(20))
        config = SegmentationConfig(number_of_segments=4, exploration_rate=0.2)

        segment_ids = await segment_subscribers(
            db, _ids(20), round_, config, StyleBanditModel(), random.Random(11),
        )

        result = await db.execute(
            select(SubscriberSegment).order_by(SubscriberSegment.segment_number)
        )
        segments = result.scalars().all()
        assert len(segment_ids) == 4
        assert [len(s.subscriber_ids) for s in segments] == [5, 5, 5, 5]
        styles = {StyleCombination(**s.assigned_parameters).copywriting_style for s in segments}
        assert len(styles) == 4
        assert all(s.status == "pending" for s in segments)
        assert round_.status == "in_progress"

    @pytest.mark.asyncio
    async def test_segments_are_disjoint_and_cover_pool(self, db):
        process = await add_process(db)
        pool = _ids(53)
        round_ = await add_round(db, process, subscriber_ids=pool)
        config = SegmentationConfig(
            number_of_segments=5, include_control_group=True, control_group_size=4,
        )

        await segment_subscribers(db, pool, round_, config, StyleBanditModel(), random.Random(5))

        result = await db.execute(select(SubscriberSegment))
        segments = result.scalars().all()
        members = [m for s in segments for m in s.subscriber_ids]
        assert sorted(members) == sorted(pool)
        assert len(members) == len(set(members))

    @pytest.mark.asyncio
    async def test_control_group_gets_balanced_style(self, db):
        process = await add_process(db)
        pool = _ids(100)
        round_ = await add_round(db, process, subscriber_ids=pool)
        config = SegmentationConfig(
            number_of_segments=3, include_control_group=True, control_group_size=20,
        )

        await segment_subscribers(db, pool, round_, config, StyleBanditModel())

        result = await db.execute(
            select(SubscriberSegment).where(SubscriberSegment.is_control_group.is_(True))
        )
        control = result.scalar_one()
        assert control.segment_number == 0
        assert len(control.subscriber_ids) == 10
        assert StyleCombination(**control.assigned_parameters) == balanced_style()

    @pytest.mark.asyncio
    async def test_exploration_flags_follow_rate(self, db):
        process = await add_process(db)
        pool = _ids(50)
        round_ = await add_round(db, process, subscriber_ids=pool)
        config = SegmentationConfig(number_of_segments=5, exploration_rate=0.4)

        await segment_subscribers(db, pool, round_, config, StyleBanditModel())

        result = await db.execute(
            select(SubscriberSegment).order_by(SubscriberSegment.segment_number)
        )
        flags = [s.is_exploration_group for s in result.scalars().all()]
        assert flags == [False, False, False, True, True]

    @pytest.mark.asyncio
    async def test_later_round_exploits_previous_best(self, db):
        process = await add_process(db)
        best = StyleCombination(
            copywriting_style="QUEST", writing_style="narrative", tone="casual", personality="analytical",
        )
        params = best.to_dict()
        params.update({"conversion_rate": 0.4, "click_rate": 0.2})
        await add_round(db, process, round_number=1, status="completed", best_performing_parameters=params)
        pool = _ids(30)
        round_2 = await add_round(db, process, round_number=2, subscriber_ids=pool)

        model = StyleBanditModel(rng=random.Random(2))
        model.add_observation(best, 0.4, 500)
        config = SegmentationConfig(number_of_segments=3, exploration_rate=0.0)

        await segment_subscribers(db, pool, round_2, config, model, random.Random(2))

        result = await db.execute(
            select(SubscriberSegment)
            .where(SubscriberSegment.round_id == round_2.id)
            .order_by(SubscriberSegment.segment_number)
        )
        first = result.scalars().first()
        assert StyleCombination(**first.assigned_parameters) == best

    @pytest.mark.asyncio
    async def test_empty_pool_raises(self, db):
        process = await add_process(db)
        round_ = await add_round(db, process)
        with pytest.raises(ValidationError):
            await segment_subscribers(db, [], round_, SegmentationConfig(), StyleBanditModel())
