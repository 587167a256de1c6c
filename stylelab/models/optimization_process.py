"""
OptimizationProcess model - one row per optimization request.
One-Writer: process controller creates it, completion evaluator finalizes it.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from stylelab.database import Base


class OptimizationProcess(Base):
    __tablename__ = "optimization_processes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, processing, completed, failed

    # Validated OptimizationConfig, needed to resume rounds after a restart
    configuration: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    # {best_parameters, best_performing_emails, total_rounds, completed_rounds, best_round_number}
    result: Mapped[Optional[dict]] = mapped_column(JSONB)
    error: Mapped[Optional[str]] = mapped_column(Text)
    notified: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_optimization_processes_user", "user_id"),
        Index("ix_optimization_processes_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<OptimizationProcess {str(self.id)[:8]} ({self.status})>"
