"""Initial schema - all tables for StyleLab.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Subscribers
    op.create_table(
        "subscribers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("list_id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100)),
        sa.Column("status", sa.String(20), default="active"),
        sa.Column("engagement_score", sa.Float, default=0.0),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscribers_list_status", "subscribers", ["list_id", "status"])

    # Optimization processes
    op.create_table(
        "optimization_processes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("configuration", postgresql.JSONB, nullable=False),
        sa.Column("result", postgresql.JSONB),
        sa.Column("error", sa.Text),
        sa.Column("notified", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_optimization_processes_user", "optimization_processes", ["user_id"])
    op.create_index("ix_optimization_processes_status", "optimization_processes", ["status"])

    # Optimization rounds
    op.create_table(
        "optimization_rounds",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "process_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("optimization_processes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("round_number", sa.Integer, nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metrics_analysis_time", sa.DateTime(timezone=True)),
        sa.Column("end_date", sa.DateTime(timezone=True)),
        sa.Column("subscriber_ids", postgresql.JSONB, nullable=False),
        sa.Column("offer_ids", postgresql.JSONB),
        sa.Column("best_performing_parameters", postgresql.JSONB),
        sa.Column("model_performance", postgresql.JSONB),
        sa.Column("total_sent", sa.Integer, server_default="0"),
        sa.Column("total_opens", sa.Integer, server_default="0"),
        sa.Column("total_clicks", sa.Integer, server_default="0"),
        sa.Column("total_conversions", sa.Integer, server_default="0"),
        sa.Column("total_revenue", sa.Float, server_default="0"),
        sa.Column("error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("process_id", "round_number", name="uq_optimization_rounds_process_number"),
    )
    op.create_index("ix_optimization_rounds_process", "optimization_rounds", ["process_id"])
    op.create_index("ix_optimization_rounds_status_start", "optimization_rounds", ["status", "start_date"])
    op.create_index(
        "ix_optimization_rounds_status_analysis", "optimization_rounds",
        ["status", "metrics_analysis_time"],
    )

    # Subscriber segments
    op.create_table(
        "subscriber_segments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "round_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("optimization_rounds.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("process_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("segment_number", sa.Integer, nullable=False),
        sa.Column("subscriber_ids", postgresql.JSONB, nullable=False),
        sa.Column("assigned_parameters", postgresql.JSONB, nullable=False),
        sa.Column("is_control_group", sa.Boolean, server_default=sa.false()),
        sa.Column("is_exploration_group", sa.Boolean, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("total_sent", sa.Integer, server_default="0"),
        sa.Column("total_opens", sa.Integer, server_default="0"),
        sa.Column("total_clicks", sa.Integer, server_default="0"),
        sa.Column("total_conversions", sa.Integer, server_default="0"),
        sa.Column("total_revenue", sa.Float, server_default="0"),
        sa.Column("click_rate", sa.Float, server_default="0"),
        sa.Column("conversion_rate", sa.Float, server_default="0"),
        sa.Column("error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriber_segments_round", "subscriber_segments", ["round_id"])
    op.create_index("ix_subscriber_segments_process", "subscriber_segments", ["process_id"])
    op.create_index("ix_subscriber_segments_status", "subscriber_segments", ["status"])

    # Delivered messages
    op.create_table(
        "style_emails",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "segment_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscriber_segments.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("round_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscriber_id", sa.String(64), nullable=False),
        sa.Column("campaign_id", sa.String(64), nullable=False),
        sa.Column("offer_id", sa.String(64)),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("generated_prompt", sa.Text),
        sa.Column("ai_provider", sa.String(30)),
        sa.Column("style", postgresql.JSONB, nullable=False),
        sa.Column("message_id", sa.String(255)),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("opened_at", sa.DateTime(timezone=True)),
        sa.Column("clicked_at", sa.DateTime(timezone=True)),
        sa.Column("converted_at", sa.DateTime(timezone=True)),
        sa.Column("revenue", sa.Float, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_style_emails_segment", "style_emails", ["segment_id"])
    op.create_index("ix_style_emails_round", "style_emails", ["round_id"])
    op.create_index("ix_style_emails_message_id", "style_emails", ["message_id"])

    # Bandit posterior per style combination
    op.create_table(
        "style_stats",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "process_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("optimization_processes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("style_key", sa.String(120), nullable=False),
        sa.Column("alpha", sa.Float, nullable=False),
        sa.Column("beta", sa.Float, nullable=False),
        sa.Column("total_trials", sa.Integer, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("process_id", "style_key", name="uq_style_stats_process_key"),
    )


def downgrade() -> None:
    op.drop_table("style_stats")
    op.drop_table("style_emails")
    op.drop_table("subscriber_segments")
    op.drop_table("optimization_rounds")
    op.drop_table("optimization_processes")
    op.drop_table("subscribers")
