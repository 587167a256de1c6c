"""
SubscriberSegment model - a slice of a round's subscribers sharing one style combination.
Segment 0 is the control group; regular segments start at 1.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, Integer, Float, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from stylelab.database import Base


class SubscriberSegment(Base):
    __tablename__ = "subscriber_segments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    round_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("optimization_rounds.id", ondelete="CASCADE"),
        nullable=False,
    )
    process_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    segment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    subscriber_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    assigned_parameters: Mapped[dict] = mapped_column(JSONB, nullable=False)
    is_control_group: Mapped[bool] = mapped_column(Boolean, default=False)
    is_exploration_group: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, processed, skipped, failed

    total_sent: Mapped[int] = mapped_column(Integer, default=0)
    total_opens: Mapped[int] = mapped_column(Integer, default=0)
    total_clicks: Mapped[int] = mapped_column(Integer, default=0)
    total_conversions: Mapped[int] = mapped_column(Integer, default=0)
    total_revenue: Mapped[float] = mapped_column(Float, default=0.0)
    click_rate: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_rate: Mapped[float] = mapped_column(Float, default=0.0)

    error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_subscriber_segments_round", "round_id"),
        Index("ix_subscriber_segments_process", "process_id"),
        Index("ix_subscriber_segments_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<SubscriberSegment #{self.segment_number} ({self.status}) n={len(self.subscriber_ids or [])}>"
