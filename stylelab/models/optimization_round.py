"""
OptimizationRound model - one experiment round inside a process.
Status follows the round state machine in services/round_state.py.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Text, Integer, Float, DateTime, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from stylelab.database import Base


class OptimizationRound(Base):
    __tablename__ = "optimization_rounds"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    process_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("optimization_processes.id", ondelete="CASCADE"),
        nullable=False,
    )
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), default="pending", nullable=False
    )  # pending, in_progress, waiting_for_metrics, analyzing, completed, failed

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metrics_analysis_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    subscriber_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    offer_ids: Mapped[list] = mapped_column(JSONB, default=list)

    # Style combination + conversion_rate + click_rate of the round winner
    best_performing_parameters: Mapped[Optional[dict]] = mapped_column(JSONB)
    # Predicted vs actual top style, prediction error (diagnostic only)
    model_performance: Mapped[Optional[dict]] = mapped_column(JSONB)

    total_sent: Mapped[int] = mapped_column(Integer, default=0)
    total_opens: Mapped[int] = mapped_column(Integer, default=0)
    total_clicks: Mapped[int] = mapped_column(Integer, default=0)
    total_conversions: Mapped[int] = mapped_column(Integer, default=0)
    total_revenue: Mapped[float] = mapped_column(Float, default=0.0)

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
        UniqueConstraint("process_id", "round_number", name="uq_optimization_rounds_process_number"),
        Index("ix_optimization_rounds_process", "process_id"),
        Index("ix_optimization_rounds_status_start", "status", "start_date"),
        Index("ix_optimization_rounds_status_analysis", "status", "metrics_analysis_time"),
    )

    def __repr__(self) -> str:
        return f"<OptimizationRound #{self.round_number} ({self.status})>"
