"""SQLModel ORM tables for queue and node index storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class AnalysisJobRow(SQLModel, table=True):
    __tablename__ = "analysis_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_analysis_queue_claim", "status", "priority", "queued_at"),
        Index("idx_analysis_queue_session", "session_file", "status"),
        Index("idx_analysis_queue_target_node", "target_node_id", "type", "status"),
        Index("idx_analysis_queue_lease", "status", "locked_until"),
    )

    id: str = Field(primary_key=True)
    job_type: str = Field(sa_column=Column("type", String, nullable=False))
    priority: int = Field(default=100)
    session_file: str
    segment_start: str | None = None
    segment_end: str | None = None
    context: str | None = Field(default=None, sa_column=Column(Text))
    target_node_id: str | None = None
    status: str = Field(default="pending")
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_node_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    worker_id: str | None = None
    locked_until: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class NodeRow(SQLModel, table=True):
    __tablename__ = "nodes"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_nodes_session_file", "session_file"),
        Index("idx_nodes_analyzed_at", "analyzed_at"),
        Index("idx_nodes_analyzer_version", "analyzer_version"),
    )

    id: str = Field(primary_key=True)
    session_file: str
    segment_start: str | None = None
    segment_end: str | None = None
    node_type: str = Field(sa_column=Column("type", String, nullable=False))
    project: str
    summary: str = Field(sa_column=Column(Text, nullable=False))
    outcome: str
    analyzer_version: str | None = None
    analyzed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    analysis_duration_ms: int | None = None
    payload: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PromptVersionRow(SQLModel, table=True):
    __tablename__ = "prompt_versions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("content_hash", name="uq_prompt_versions_content_hash"),
    )

    version: str = Field(primary_key=True)
    content_hash: str
    prompt_path: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
