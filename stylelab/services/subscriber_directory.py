"""
Subscriber directory - read-only view over the subscribers table.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.models.subscriber import Subscriber


@dataclass
class SubscriberRecord:
    id: str
    email: str
    first_name: Optional[str] = None
    engagement_score: float = 0.0


def _to_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def find_active_by_list(db: AsyncSession, list_id: str) -> list[str]:
    """Ids of all active subscribers on a list."""
    result = await db.execute(
        select(Subscriber.id).where(
            and_(
                Subscriber.list_id == list_id,
                Subscriber.status == "active",
            )
        )
    )
    return [str(row[0]) for row in result.all()]


async def find_by_ids(db: AsyncSession, ids: list[str]) -> list[SubscriberRecord]:
    """Subscribers for the given ids. Unknown or malformed ids are skipped."""
    uuids = [u for u in (_to_uuid(i) for i in ids) if u is not None]
    if not uuids:
        return []
    result = await db.execute(select(Subscriber).where(Subscriber.id.in_(uuids)))
    return [
        SubscriberRecord(
            id=str(s.id),
            email=s.email,
            first_name=s.first_name,
            engagement_score=s.engagement_score or 0.0,
        )
        for s in result.scalars().all()
    ]
