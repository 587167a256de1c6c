"""
StyleStat model - persisted Beta posterior per (process, style combination).
One-Writer: services/bandit.py save_model().
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Float, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from stylelab.database import Base


class StyleStat(Base):
    __tablename__ = "style_stats"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    process_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("optimization_processes.id", ondelete="CASCADE"),
        nullable=False,
    )
    style_key: Mapped[str] = mapped_column(String(120), nullable=False)
    alpha: Mapped[float] = mapped_column(Float, nullable=False)
    beta: Mapped[float] = mapped_column(Float, nullable=False)
    total_trials: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("process_id", "style_key", name="uq_style_stats_process_key"),
    )

    def __repr__(self) -> str:
        return f"<StyleStat {self.style_key} a={self.alpha:.1f} b={self.beta:.1f}>"
