"""Add node index and prompt version registry."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "nodes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_file", sa.String(), nullable=False),
        sa.Column("segment_start", sa.String(), nullable=True),
        sa.Column("segment_end", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("project", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("analyzer_version", sa.String(), nullable=True),
        sa.Column("analyzed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("analysis_duration_ms", sa.Integer(), nullable=True),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_nodes_session_file", "nodes", ["session_file"], unique=False)
    op.create_index("idx_nodes_analyzed_at", "nodes", ["analyzed_at"], unique=False)
    op.create_index("idx_nodes_analyzer_version", "nodes", ["analyzer_version"], unique=False)

    op.create_table(
        "prompt_versions",
        sa.Column("version", sa.String(), nullable=False),
        sa.Column("content_hash", sa.String(), nullable=False),
        sa.Column("prompt_path", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("version"),
        sa.UniqueConstraint("content_hash", name="uq_prompt_versions_content_hash"),
    )


def downgrade() -> None:
    op.drop_table("prompt_versions")
    op.drop_index("idx_nodes_analyzer_version", table_name="nodes")
    op.drop_index("idx_nodes_analyzed_at", table_name="nodes")
    op.drop_index("idx_nodes_session_file", table_name="nodes")
    op.drop_table("nodes")
