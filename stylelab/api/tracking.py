"""
Tracking endpoint - records opens, clicks and conversions against delivered messages.
Events are idempotent: the first timestamp wins. A click implies an open and a
conversion implies a click, so funnel counts never invert.
"""
import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.database import get_db
from stylelab.models.style_email import StyleEmail
from stylelab.schemas.api_responses import TrackingEventRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/tracking", tags=["tracking"])

EVENT_TYPES = ("opened", "clicked", "converted")


def apply_event(email: StyleEmail, event_type: str, revenue=None) -> None:
    now = datetime.now(timezone.utc)
    if email.opened_at is None:
        email.opened_at = now
    if event_type in ("clicked", "converted") and email.clicked_at is None:
        email.clicked_at = now
    if event_type == "converted":
        if email.converted_at is None:
            email.converted_at = now
        if revenue:
            email.revenue = (email.revenue or 0.0) + float(revenue)


@router.post("/events")
async def record_event(
    payload: TrackingEventRequest,
    db: AsyncSession = Depends(get_db),
):
    if payload.event_type not in EVENT_TYPES:
        raise HTTPException(status_code=422, detail=f"Unknown event_type: {payload.event_type}")

    try:
        email_id = uuid.UUID(payload.email_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Email not found")

    email = await db.get(StyleEmail, email_id)
    if email is None:
        raise HTTPException(status_code=404, detail="Email not found")

    apply_event(email, payload.event_type, payload.revenue)
    await db.flush()

    logger.info(
        "Tracking event %s for email %s", payload.event_type, str(email_id)[:8],
        extra={"segment_id": str(email.segment_id)},
    )
    return {"status": "recorded", "email_id": str(email_id), "event_type": payload.event_type}
