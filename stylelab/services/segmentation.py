"""
Segmentation engine - splits a round's subscribers into segments and assigns
each segment a style combination.

Round 1 (cold start): strided combinations for broad coverage.
Round > 1: exploitation slots go to previous winners and their one-parameter
neighbours ranked by Thompson draws; exploration slots get fresh strided
combinations.
"""
import logging
import math
import random
import uuid
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.errors import ValidationError
from stylelab.models.optimization_round import OptimizationRound
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.schemas.optimization import SegmentationConfig
from stylelab.schemas.style import (
    COPYWRITING_STYLES,
    PERSONALITIES,
    TONES,
    WRITING_STYLES,
    StyleCombination,
    balanced_style,
)
from stylelab.services.bandit import StyleBanditModel
from stylelab.services.round_state import RoundStatus, transition_round

logger = logging.getLogger(__name__)

MAX_CONTROL_GROUP_FRACTION = 0.1
RANDOM_CANDIDATES = 20


def shuffle_subscribers(subscriber_ids: list[str], rng: Optional[random.Random] = None) -> list[str]:
    """Fisher-Yates shuffle on a copy."""
    shuffled = list(subscriber_ids)
    (rng or random).shuffle(shuffled)
    return shuffled


def control_group_size(pool_size: int, config: SegmentationConfig) -> int:
    if not config.include_control_group or config.control_group_size <= 0:
        return 0
    return min(config.control_group_size, math.floor(pool_size * MAX_CONTROL_GROUP_FRACTION))


def partition(items: list[str], parts: int) -> list[list[str]]:
    """Near-equal split; the first len(items) % parts partitions get one extra."""
    base, remainder = divmod(len(items), parts)
    partitions = []
    index = 0
    for i in range(parts):
        size = base + (1 if i < remainder else 0)
        partitions.append(items[index:index + size])
        index += size
    return partitions


def generate_initial_combinations(count: int, offset: int = 0) -> list[StyleCombination]:
    """
    Diverse combinations by striding each dimension at a different rate:
    copywriting i, writing 2i, tone 3i, personality 5i.
    """
    combinations = []
    for n in range(count):
        i = n + offset
        combinations.append(StyleCombination(
            copywriting_style=COPYWRITING_STYLES[i % len(COPYWRITING_STYLES)],
            writing_style=WRITING_STYLES[(i * 2) % len(WRITING_STYLES)],
            tone=TONES[(i * 3) % len(TONES)],
            personality=PERSONALITIES[(i * 5) % len(PERSONALITIES)],
        ))
    return combinations


def perturb(style: StyleCombination) -> list[StyleCombination]:
    """Every combination that differs from `style` in exactly one dimension."""
    variants = []
    for value in COPYWRITING_STYLES:
        if value != style.copywriting_style:
            variants.append(style.model_copy(update={"copywriting_style": value}))
    for value in WRITING_STYLES:
        if value != style.writing_style:
            variants.append(style.model_copy(update={"writing_style": value}))
    for value in TONES:
        if value != style.tone:
            variants.append(style.model_copy(update={"tone": value}))
    for value in PERSONALITIES:
        if value != style.personality:
            variants.append(style.model_copy(update={"personality": value}))
    return variants


def random_combination(rng: Optional[random.Random] = None) -> StyleCombination:
    rng = rng or random
    return StyleCombination(
        copywriting_style=rng.choice(COPYWRITING_STYLES),
        writing_style=rng.choice(WRITING_STYLES),
        tone=rng.choice(TONES),
        personality=rng.choice(PERSONALITIES),
    )


def generate_optimized_combinations(
    previous_best: list[StyleCombination],
    count: int,
    exploration_rate: float,
    model: StyleBanditModel,
    rng: Optional[random.Random] = None,
) -> list[StyleCombination]:
    """
    Exploitation: previous winners + single-parameter neighbours + random
    candidates, ranked by Thompson draws.
    Exploration: strided combinations from a random offset.
    """
    rng = rng or random
    if not previous_best:
        return generate_initial_combinations(count)

    exploitation_count = math.floor(count * (1 - exploration_rate))
    exploration_count = count - exploitation_count

    candidates: dict[str, StyleCombination] = {}
    for best in previous_best:
        candidates.setdefault(best.style_key(), best)
        for variant in perturb(best):
            candidates.setdefault(variant.style_key(), variant)
    for _ in range(RANDOM_CANDIDATES):
        candidate = random_combination(rng)
        candidates.setdefault(candidate.style_key(), candidate)

    ranked = model.rank(candidates.values())
    logger.debug(
        "Ranked %d candidate combinations (top=%s %.4f)",
        len(ranked), ranked[0][0].label() if ranked else "-", ranked[0][1] if ranked else 0.0,
    )

    combinations: list[StyleCombination] = []
    for i in range(exploitation_count):
        if i < len(ranked):
            combinations.append(ranked[i][0])
        else:
            combinations.append(previous_best[i % len(previous_best)])

    offset = rng.randrange(len(COPYWRITING_STYLES) * len(TONES))
    combinations.extend(generate_initial_combinations(exploration_count, offset=offset))
    return combinations


async def previous_best_combinations(
    db: AsyncSession,
    process_id: uuid.UUID,
    round_number: int,
) -> list[StyleCombination]:
    """Best combinations of earlier completed rounds, most recent first."""
    result = await db.execute(
        select(OptimizationRound)
        .where(
            and_(
                OptimizationRound.process_id == process_id,
                OptimizationRound.round_number < round_number,
            )
        )
        .order_by(OptimizationRound.round_number.desc())
    )
    best = []
    for previous in result.scalars().all():
        params = previous.best_performing_parameters
        if not params:
            continue
        best.append(StyleCombination(
            copywriting_style=params["copywriting_style"],
            writing_style=params["writing_style"],
            tone=params["tone"],
            personality=params["personality"],
        ))
    return best


async def segment_subscribers(
    db: AsyncSession,
    subscriber_ids: list[str],
    round_: OptimizationRound,
    config: SegmentationConfig,
    model: StyleBanditModel,
    rng: Optional[random.Random] = None,
) -> list[uuid.UUID]:
    """
    Build and persist segments for a round.

    Returns:
        Segment ids, control group first when present.
    """
    if not subscriber_ids:
        raise ValidationError("No subscribers provided for segmentation")

    shuffled = shuffle_subscribers(subscriber_ids, rng)

    if round_.round_number == 1:
        combinations = generate_initial_combinations(config.number_of_segments)
    else:
        previous_best = await previous_best_combinations(
            db, round_.process_id, round_.round_number,
        )
        combinations = generate_optimized_combinations(
            previous_best,
            config.number_of_segments,
            config.exploration_rate,
            model,
            rng,
        )

    segments: list[SubscriberSegment] = []

    control_size = control_group_size(len(shuffled), config)
    if control_size > 0:
        segments.append(SubscriberSegment(
            round_id=round_.id,
            process_id=round_.process_id,
            segment_number=0,
            subscriber_ids=shuffled[:control_size],
            assigned_parameters=balanced_style().to_dict(),
            is_control_group=True,
            is_exploration_group=False,
            status="pending",
        ))

    exploration_threshold = config.number_of_segments * (1 - config.exploration_rate)
    for i, members in enumerate(partition(shuffled[control_size:], config.number_of_segments)):
        if not members:
            continue
        segments.append(SubscriberSegment(
            round_id=round_.id,
            process_id=round_.process_id,
            segment_number=i + 1,
            subscriber_ids=members,
            assigned_parameters=combinations[i % len(combinations)].to_dict(),
            is_control_group=False,
            is_exploration_group=i >= exploration_threshold,
            status="pending",
        ))

    for segment in segments:
        db.add(segment)
    await db.flush()

    if round_.status == RoundStatus.PENDING.value:
        transition_round(round_, RoundStatus.IN_PROGRESS)

    logger.info(
        "Segmented round %s: %d subscribers -> %d segments (control=%d, combos=%d)",
        str(round_.id)[:8], len(shuffled), len(segments), control_size, len(combinations),
    )
    return [segment.id for segment in segments]
