"""
StyleEmail model - one delivered message per subscriber per segment.
Tracking events fill opened_at/clicked_at/converted_at; segment metrics are counted from here.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, Float, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from stylelab.database import Base


class StyleEmail(Base):
    __tablename__ = "style_emails"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    segment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("subscriber_segments.id", ondelete="CASCADE"),
        nullable=False,
    )
    round_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    offer_id: Mapped[Optional[str]] = mapped_column(String(64))

    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    generated_prompt: Mapped[Optional[str]] = mapped_column(Text)
    ai_provider: Mapped[Optional[str]] = mapped_column(String(30))
    style: Mapped[dict] = mapped_column(JSONB, nullable=False)

    message_id: Mapped[Optional[str]] = mapped_column(String(255))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    revenue: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_style_emails_segment", "segment_id"),
        Index("ix_style_emails_round", "round_id"),
        Index("ix_style_emails_message_id", "message_id"),
    )

    def __repr__(self) -> str:
        return f"<StyleEmail {str(self.id)[:8]} segment={str(self.segment_id)[:8]}>"
