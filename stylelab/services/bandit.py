"""
Style bandit - Beta-Bernoulli posterior per style combination (arm).

Each arm tracks click->conversion outcomes as alpha (successes) and beta
(failures) on top of a 5% prior (alpha0=1, beta0=19). Means and credible
intervals are read straight off the posterior; Thompson sampling uses a
normal approximation of the Beta for ranking arms under uncertainty.

Persistence: one style_stats row per (process, arm). load_model()/save_model()
move the posterior in and out of the database; train_model() rebuilds it from
the full round history when the persisted rows are missing or stale.
"""
import logging
import math
import random
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select, and_, delete
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.errors import ValidationError
from stylelab.models.optimization_round import OptimizationRound
from stylelab.models.style_stat import StyleStat
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.schemas.style import StyleCombination

logger = logging.getLogger(__name__)

DEFAULT_PRIOR_ALPHA = 1.0
DEFAULT_PRIOR_BETA = 19.0

# Extra spread for arms with no observations so unseen combos still get explored
UNSEEN_JITTER = 0.02

CREDIBLE_Z = 1.96


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class BayesianStat:
    alpha: float
    beta: float
    total_trials: int = 0

    @property
    def mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    @property
    def variance(self) -> float:
        total = self.alpha + self.beta
        return (self.alpha * self.beta) / (total * total * (total + 1.0))

    @property
    def std(self) -> float:
        return math.sqrt(self.variance)


class StyleBanditModel:
    """
    In-memory posterior over style combinations.
    Never raises for unseen arms - they answer with the prior.
    """

    def __init__(
        self,
        prior_alpha: float = DEFAULT_PRIOR_ALPHA,
        prior_beta: float = DEFAULT_PRIOR_BETA,
        rng: Optional[random.Random] = None,
    ) -> None:
        if prior_alpha <= 0 or prior_beta <= 0:
            raise ValidationError("Bandit priors must be positive")
        self.prior_alpha = prior_alpha
        self.prior_beta = prior_beta
        self.arms: dict[str, BayesianStat] = {}
        self._rng = rng or random.Random()

    @property
    def prior(self) -> BayesianStat:
        return BayesianStat(alpha=self.prior_alpha, beta=self.prior_beta)

    @property
    def prior_mean(self) -> float:
        return self.prior.mean

    @property
    def is_trained(self) -> bool:
        return bool(self.arms)

    def get_stat(self, style: StyleCombination) -> Optional[BayesianStat]:
        return self.arms.get(style.style_key())

    def add_observation(
        self,
        style: StyleCombination,
        conversion_rate: float,
        trials: int,
    ) -> BayesianStat:
        """
        Conjugate update: rate x trials conversions out of `trials` clicks.
        """
        if trials <= 0:
            raise ValidationError(f"trials must be > 0, got {trials}")
        if not 0.0 <= conversion_rate <= 1.0:
            raise ValidationError(f"conversion_rate must be within [0, 1], got {conversion_rate}")

        key = style.style_key()
        stat = self.arms.get(key)
        if stat is None:
            stat = BayesianStat(alpha=self.prior_alpha, beta=self.prior_beta)
            self.arms[key] = stat

        successes = conversion_rate * trials
        failures = trials - successes
        stat.alpha += successes
        stat.beta += failures
        stat.total_trials += trials
        return stat

    def mean_conversion_rate(self, style: StyleCombination) -> float:
        stat = self.get_stat(style)
        if stat is None:
            return self.prior_mean
        return stat.mean

    def credible_interval(
        self,
        style: StyleCombination,
        z: float = CREDIBLE_Z,
    ) -> tuple[float, float]:
        """
        Normal approximation to the Beta posterior, clamped to [0, 1].
        Near-prior arms come back wide; treat those as uninformative.
        """
        stat = self.get_stat(style) or self.prior
        half_width = z * stat.std
        return _clamp(stat.mean - half_width), _clamp(stat.mean + half_width)

    def thompson_sample(self, style: StyleCombination) -> float:
        stat = self.get_stat(style)
        if stat is None:
            prior = self.prior
            return _clamp(self._rng.gauss(prior.mean, prior.std + UNSEEN_JITTER))
        return _clamp(self._rng.gauss(stat.mean, stat.std))

    def rank(self, styles: Iterable[StyleCombination]) -> list[tuple[StyleCombination, float]]:
        """Order arms by one Thompson draw each, best first."""
        scored = [(style, self.thompson_sample(style)) for style in styles]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored

    def reset(self) -> None:
        self.arms = {}

    def __len__(self) -> int:
        return len(self.arms)


def _new_model() -> StyleBanditModel:
    from stylelab.config import get_settings
    settings = get_settings()
    return StyleBanditModel(
        prior_alpha=settings.bandit_prior_alpha,
        prior_beta=settings.bandit_prior_beta,
    )


async def load_model(db: AsyncSession, process_id: uuid.UUID) -> StyleBanditModel:
    """Load the persisted posterior for a process (empty model if none yet)."""
    model = _new_model()
    result = await db.execute(
        select(StyleStat).where(StyleStat.process_id == process_id)
    )
    for row in result.scalars().all():
        model.arms[row.style_key] = BayesianStat(
            alpha=row.alpha,
            beta=row.beta,
            total_trials=row.total_trials or 0,
        )
    return model


async def save_model(
    db: AsyncSession,
    process_id: uuid.UUID,
    model: StyleBanditModel,
) -> None:
    """Upsert every arm of the model. Caller commits."""
    result = await db.execute(
        select(StyleStat).where(StyleStat.process_id == process_id)
    )
    existing = {row.style_key: row for row in result.scalars().all()}

    for key, stat in model.arms.items():
        row = existing.get(key)
        if row is None:
            db.add(StyleStat(
                process_id=process_id,
                style_key=key,
                alpha=stat.alpha,
                beta=stat.beta,
                total_trials=stat.total_trials,
            ))
        else:
            row.alpha = stat.alpha
            row.beta = stat.beta
            row.total_trials = stat.total_trials

    await db.flush()


async def train_model(
    db: AsyncSession,
    process_id: uuid.UUID,
    model: Optional[StyleBanditModel] = None,
) -> tuple[StyleBanditModel, float]:
    """
    Rebuild the posterior from every processed segment of the process's
    completed rounds, then persist it.

    Returns:
        (model, consistency) where consistency in [0, 1] is a crude accuracy
        estimate: 1 - 10 x mean per-arm variance of segment conversion rates.
        0.0 when there is no history to train on.
    """
    model = model or _new_model()

    rounds_result = await db.execute(
        select(OptimizationRound.id).where(
            and_(
                OptimizationRound.process_id == process_id,
                OptimizationRound.status == "completed",
            )
        )
    )
    round_ids = [row[0] for row in rounds_result.all()]
    if not round_ids:
        logger.info("No completed rounds to train on for process %s", str(process_id)[:8])
        return model, 0.0

    segments_result = await db.execute(
        select(SubscriberSegment).where(
            and_(
                SubscriberSegment.round_id.in_(round_ids),
                SubscriberSegment.status == "processed",
            )
        )
    )
    segments = segments_result.scalars().all()

    model.reset()
    samples: dict[str, list[float]] = {}
    for segment in segments:
        if not segment.total_clicks:
            continue
        rate = segment.total_conversions / segment.total_clicks
        style = StyleCombination(**segment.assigned_parameters)
        model.add_observation(style, min(rate, 1.0), segment.total_clicks)
        samples.setdefault(style.style_key(), []).append(rate)

    await db.execute(delete(StyleStat).where(StyleStat.process_id == process_id))
    await save_model(db, process_id, model)

    variances = []
    for rates in samples.values():
        if len(rates) > 1:
            mean = sum(rates) / len(rates)
            variances.append(sum((r - mean) ** 2 for r in rates) / (len(rates) - 1))

    if not samples:
        consistency = 0.0
    elif not variances:
        consistency = 0.5
    else:
        consistency = _clamp(1.0 - (sum(variances) / len(variances)) * 10)

    logger.info(
        "Trained style model for process %s: %d arms from %d segments (consistency=%.3f)",
        str(process_id)[:8], len(model), len(segments), consistency,
    )
    return model, consistency
