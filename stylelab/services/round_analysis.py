"""
Round analyzer - turns a round's tracked deliveries into a winner.

1. update_segment_metrics() counts a segment's style_emails (sent/opens/clicks/
   conversions/revenue) and derives its rates.
2. aggregate_style_performance() groups processed segments by style combination.
3. analyze_round_performance() picks the best combination, records how well the
   bandit predicted it, feeds the observations into the bandit and completes
   the round.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.models.optimization_round import OptimizationRound
from stylelab.models.style_email import StyleEmail
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.schemas.style import StyleCombination, balanced_style
from stylelab.services.bandit import StyleBanditModel, save_model
from stylelab.services.round_state import RoundStatus, transition_round

logger = logging.getLogger(__name__)

METRIC_FIELDS = ("total_sent", "total_opens", "total_clicks", "total_conversions", "total_revenue")


def _rate(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


async def update_segment_metrics(db: AsyncSession, segment: SubscriberSegment) -> SubscriberSegment:
    """Recount a segment's metrics from its delivered messages. Caller commits."""
    result = await db.execute(
        select(
            func.count(StyleEmail.sent_at).label("sent"),
            func.count(StyleEmail.opened_at).label("opened"),
            func.count(StyleEmail.clicked_at).label("clicked"),
            func.count(StyleEmail.converted_at).label("converted"),
            func.coalesce(func.sum(StyleEmail.revenue), 0.0).label("revenue"),
        ).where(StyleEmail.segment_id == segment.id)
    )
    row = result.one()

    segment.total_sent = row.sent or 0
    segment.total_opens = row.opened or 0
    segment.total_clicks = row.clicked or 0
    segment.total_conversions = row.converted or 0
    segment.total_revenue = float(row.revenue or 0.0)
    segment.click_rate = _rate(segment.total_clicks, segment.total_sent)
    segment.conversion_rate = _rate(segment.total_conversions, segment.total_clicks)
    await db.flush()
    return segment


def aggregate_style_performance(segments: list[SubscriberSegment]) -> list[dict]:
    """
    Group processed segments by style combination.

    Returns:
        [{"style", "total_sent", "total_opens", "total_clicks", "total_conversions",
          "total_revenue", "open_rate", "click_rate", "conversion_rate",
          "revenue_per_email", "segment_count"}], unsorted.
    """
    groups: dict[str, dict] = {}
    for segment in segments:
        if segment.status != "processed":
            continue
        style = StyleCombination(**segment.assigned_parameters)
        group = groups.get(style.style_key())
        if group is None:
            group = {"style": style, "segment_count": 0}
            for field in METRIC_FIELDS:
                group[field] = 0
            groups[style.style_key()] = group
        group["segment_count"] += 1
        for field in METRIC_FIELDS:
            group[field] += getattr(segment, field) or 0

    for group in groups.values():
        sent = group["total_sent"]
        group["open_rate"] = _rate(group["total_opens"], sent)
        group["click_rate"] = _rate(group["total_clicks"], sent)
        group["conversion_rate"] = _rate(group["total_conversions"], group["total_clicks"])
        group["revenue_per_email"] = _rate(group["total_revenue"], sent)

    return list(groups.values())


def _best_parameters(group: dict) -> dict:
    params = group["style"].to_dict()
    params["conversion_rate"] = group["conversion_rate"]
    params["click_rate"] = group["click_rate"]
    return params


def _empty_result() -> dict:
    params = balanced_style().to_dict()
    params["conversion_rate"] = 0.0
    params["click_rate"] = 0.0
    metrics = {field: 0 for field in METRIC_FIELDS}
    metrics["total_revenue"] = 0.0
    return {"best_parameters": params, "metrics": metrics}


def evaluate_predictions(groups: list[dict], model: StyleBanditModel) -> dict:
    """
    Compare the model's pre-update means with what the round actually produced.
    `groups` must already be sorted best first.
    """
    predictions = [(g, model.mean_conversion_rate(g["style"])) for g in groups]
    predicted_top = max(predictions, key=lambda item: item[1])[0]
    mae = sum(abs(pred - g["conversion_rate"]) for g, pred in predictions) / len(predictions)
    return {
        "predicted_top": predicted_top["style"].to_dict(),
        "actual_top": groups[0]["style"].to_dict(),
        "predicted_top_matches": predicted_top["style"] == groups[0]["style"],
        "mean_absolute_error": mae,
        "model_accuracy": max(0.0, 1.0 - mae * 10),
    }


async def analyze_round_performance(
    db: AsyncSession,
    round_: OptimizationRound,
    model: StyleBanditModel,
) -> dict:
    """
    Pick the round's winner, update the bandit, and complete the round.
    Expects segment metrics to be current and the round in ANALYZING. Caller commits.

    Returns:
        {"best_parameters": {...style, conversion_rate, click_rate}, "metrics": {...totals}}
    """
    result = await db.execute(
        select(SubscriberSegment).where(SubscriberSegment.round_id == round_.id)
    )
    segments = result.scalars().all()

    groups = aggregate_style_performance(segments)
    groups.sort(key=lambda g: (g["conversion_rate"], g["click_rate"]), reverse=True)

    if not groups:
        logger.warning(
            "Round %s has no processed segments, using default combination",
            str(round_.id)[:8],
            extra={"round_id": str(round_.id), "process_id": str(round_.process_id)},
        )
        analysis = _empty_result()
    else:
        if round_.round_number > 1 and model.is_trained:
            round_.model_performance = evaluate_predictions(groups, model)
            logger.info(
                "Round %s model check: MAE=%.4f accuracy=%.3f",
                str(round_.id)[:8],
                round_.model_performance["mean_absolute_error"],
                round_.model_performance["model_accuracy"],
            )

        for group in groups:
            if group["total_clicks"] > 0:
                model.add_observation(
                    group["style"],
                    min(group["conversion_rate"], 1.0),
                    group["total_clicks"],
                )
        await save_model(db, round_.process_id, model)

        metrics = {field: 0 for field in METRIC_FIELDS}
        for group in groups:
            for field in METRIC_FIELDS:
                metrics[field] += group[field]
        analysis = {"best_parameters": _best_parameters(groups[0]), "metrics": metrics}

    for field in METRIC_FIELDS:
        setattr(round_, field, analysis["metrics"][field])
    round_.best_performing_parameters = analysis["best_parameters"]
    round_.end_date = datetime.now(timezone.utc)
    transition_round(round_, RoundStatus.COMPLETED)
    await db.flush()

    best = analysis["best_parameters"]
    logger.info(
        "Round %s completed: best=%s/%s/%s/%s conversion=%.4f click=%.4f",
        str(round_.id)[:8],
        best["copywriting_style"], best["writing_style"], best["tone"], best["personality"],
        best["conversion_rate"], best["click_rate"],
        extra={"round_id": str(round_.id), "process_id": str(round_.process_id)},
    )
    return analysis
