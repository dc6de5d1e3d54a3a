"""Create durable analysis job queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "analysis_queue",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("session_file", sa.String(), nullable=False),
        sa.Column("segment_start", sa.String(), nullable=True),
        sa.Column("segment_end", sa.String(), nullable=True),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("target_node_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_node_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_analysis_queue_claim",
        "analysis_queue",
        ["status", "priority", "queued_at"],
        unique=False,
    )
    op.create_index(
        "idx_analysis_queue_session",
        "analysis_queue",
        ["session_file", "status"],
        unique=False,
    )
    op.create_index(
        "idx_analysis_queue_target_node",
        "analysis_queue",
        ["target_node_id", "type", "status"],
        unique=False,
    )
    op.create_index(
        "idx_analysis_queue_lease",
        "analysis_queue",
        ["status", "locked_until"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_analysis_queue_lease", table_name="analysis_queue")
    op.drop_index("idx_analysis_queue_target_node", table_name="analysis_queue")
    op.drop_index("idx_analysis_queue_session", table_name="analysis_queue")
    op.drop_index("idx_analysis_queue_claim", table_name="analysis_queue")
    op.drop_table("analysis_queue")
