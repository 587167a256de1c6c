"""
Send pipeline - one generated message per segment, delivered in batches.

Segments are processed one at a time and each has its own error boundary:
a segment whose message cannot be generated, or whose every send fails, is
marked failed and left out of analysis. The rest of the round carries on.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.config import get_settings
from stylelab.errors import ProviderError
from stylelab.models.optimization_round import OptimizationRound
from stylelab.models.style_email import StyleEmail
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.schemas.optimization import OptimizationConfig
from stylelab.schemas.style import StyleCombination
from stylelab.services.email_sender import Sender, send_email
from stylelab.services.message_generation import GeneratedMessage, generate_message
from stylelab.services.subscriber_directory import SubscriberRecord, find_by_ids

logger = logging.getLogger(__name__)


def _chunks(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


async def send_segment_batch(
    campaign_id: str,
    subscribers: list[SubscriberRecord],
    message: GeneratedMessage,
    sender: Sender,
) -> list[tuple[SubscriberRecord, Optional[dict], Optional[Exception]]]:
    """Send to a batch concurrently. Returns (subscriber, result, error) per recipient."""
    results = await asyncio.gather(
        *[
            send_email(campaign_id, subscriber, message.subject, message.body, sender)
            for subscriber in subscribers
        ],
        return_exceptions=True,
    )
    outcomes = []
    for subscriber, result in zip(subscribers, results):
        if isinstance(result, Exception):
            outcomes.append((subscriber, None, result))
        else:
            outcomes.append((subscriber, result, None))
    return outcomes


async def process_segment(
    db: AsyncSession,
    segment: SubscriberSegment,
    round_: OptimizationRound,
    config: OptimizationConfig,
) -> str:
    """
    Generate and send the segment's message, recording one style_emails row per delivery.
    Returns the segment's final status. Caller commits.
    """
    settings = get_settings()
    log_extra = {
        "process_id": str(round_.process_id),
        "round_id": str(round_.id),
        "segment_id": str(segment.id),
    }

    subscribers = await find_by_ids(db, segment.subscriber_ids or [])
    if not subscribers:
        segment.status = "skipped"
        segment.error = "No deliverable subscribers"
        logger.info("Segment %s skipped: no deliverable subscribers", str(segment.id)[:8], extra=log_extra)
        return segment.status

    style = StyleCombination(**segment.assigned_parameters)
    offer_id = (round_.offer_ids or [None])[0]
    offer = config.offer_for(offer_id)

    message = await generate_message(offer, style, config.audience_description)
    log_extra["provider"] = message.provider_used
    log_extra["style_key"] = style.style_key()

    sender = Sender(name=config.sender_name, email=config.sender_email)
    campaign_id = str(segment.id)
    sent = 0
    last_error: Optional[Exception] = None

    batches = _chunks(subscribers, max(1, settings.send_batch_size))
    for index, batch in enumerate(batches):
        outcomes = await send_segment_batch(campaign_id, batch, message, sender)
        now = datetime.now(timezone.utc)
        for subscriber, result, error in outcomes:
            if error is not None:
                last_error = error
                logger.warning(
                    "Send failed for subscriber %s in segment %s: %s",
                    subscriber.id[:8], str(segment.id)[:8], str(error),
                    extra=log_extra,
                )
                continue
            db.add(StyleEmail(
                segment_id=segment.id,
                round_id=round_.id,
                subscriber_id=subscriber.id,
                campaign_id=campaign_id,
                offer_id=offer.id,
                subject=message.subject,
                body=message.body,
                generated_prompt=message.generated_prompt,
                ai_provider=message.provider_used,
                style=style.to_dict(),
                message_id=(result or {}).get("message_id") or None,
                sent_at=now,
            ))
            sent += 1
        await db.flush()

        if index < len(batches) - 1 and settings.send_batch_delay_seconds > 0:
            await asyncio.sleep(settings.send_batch_delay_seconds)

    segment.total_sent = sent
    if sent == 0:
        raise ProviderError(
            f"Every send failed: {last_error}" if last_error else "Nothing sent",
            provider="sendgrid",
        )

    segment.status = "processed"
    logger.info(
        "Segment %s sent %d/%d (%s)",
        str(segment.id)[:8], sent, len(subscribers), style.label(),
        extra=log_extra,
    )
    return segment.status


async def send_round_messages(
    db: AsyncSession,
    round_: OptimizationRound,
    config: OptimizationConfig,
) -> dict:
    """
    Run every pending segment of a round through generation and delivery.

    Returns:
        {"processed": int, "failed": int, "skipped": int}
    """
    result = await db.execute(
        select(SubscriberSegment)
        .where(
            and_(
                SubscriberSegment.round_id == round_.id,
                SubscriberSegment.status == "pending",
            )
        )
        .order_by(SubscriberSegment.segment_number)
    )
    segments = result.scalars().all()

    summary = {"processed": 0, "failed": 0, "skipped": 0}
    for segment in segments:
        segment_id: uuid.UUID = segment.id
        try:
            status = await process_segment(db, segment, round_, config)
        except Exception as e:
            segment.status = "failed"
            segment.error = str(e)[:2000]
            status = "failed"
            logger.error(
                "Segment %s failed: %s", str(segment_id)[:8], str(e),
                extra={
                    "process_id": str(round_.process_id),
                    "round_id": str(round_.id),
                    "segment_id": str(segment_id),
                    "provider": getattr(e, "provider", None),
                },
            )
        summary[status] += 1
        await db.commit()

    logger.info(
        "Round %s sending done: processed=%d failed=%d skipped=%d",
        str(round_.id)[:8], summary["processed"], summary["failed"], summary["skipped"],
    )
    return summary
