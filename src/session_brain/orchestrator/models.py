"""Domain models for the analysis job queue and scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


class JobType(str, Enum):
    """Kinds of queued analysis work."""

    INITIAL = "initial"
    REANALYSIS = "reanalysis"
    CONNECTION_DISCOVERY = "connection_discovery"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(IntEnum):
    """Priority bands; lower values are served first."""

    USER_TRIGGERED = 10
    FORK = 50
    INITIAL = 100
    REANALYSIS = 200
    CONNECTION_DISCOVERY = 300


class ScheduledJobType(str, Enum):
    """Cron trigger kinds owned by the scheduler."""

    REANALYSIS = "reanalysis"
    CONNECTION_DISCOVERY = "connection_discovery"
    PATTERN_AGGREGATION = "pattern_aggregation"
    CLUSTERING = "clustering"
    EMBEDDING_BACKFILL = "embedding_backfill"


@dataclass(slots=True)
class InitialContext:
    """Context for first-time analysis of a session segment."""

    boundary_type: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReanalysisContext:
    """Context for re-running analysis of an existing node."""

    existing_node_id: str
    reason: str = "prompt_update"
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ConnectionDiscoveryContext:
    """Context for edge discovery around an analyzed node."""

    node_id: str | None
    find_connections: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


JobContext = InitialContext | ReanalysisContext | ConnectionDiscoveryContext


def context_to_dict(context: JobContext) -> dict[str, Any]:
    """Serialize context into its wire keys (camelCase, as agents see them)."""

    payload: dict[str, Any] = dict(context.extra)
    if isinstance(context, ReanalysisContext):
        payload["existingNodeId"] = context.existing_node_id
        payload["reason"] = context.reason
    elif isinstance(context, ConnectionDiscoveryContext):
        if context.node_id is not None:
            payload["nodeId"] = context.node_id
        payload["findConnections"] = context.find_connections
    elif context.boundary_type is not None:
        payload["boundaryType"] = context.boundary_type
    return payload


def context_from_dict(job_type: JobType, payload: dict[str, Any] | None) -> JobContext:
    """Rebuild the typed context variant for a job type."""

    data = dict(payload or {})
    if job_type == JobType.REANALYSIS:
        return ReanalysisContext(
            existing_node_id=str(data.pop("existingNodeId", "")),
            reason=str(data.pop("reason", "prompt_update")),
            extra=data,
        )
    if job_type == JobType.CONNECTION_DISCOVERY:
        node_id = data.pop("nodeId", None)
        return ConnectionDiscoveryContext(
            node_id=str(node_id) if node_id is not None else None,
            find_connections=bool(data.pop("findConnections", True)),
            extra=data,
        )
    boundary_type = data.pop("boundaryType", None)
    return InitialContext(
        boundary_type=str(boundary_type) if boundary_type is not None else None,
        extra=data,
    )


def default_context(job_type: JobType) -> JobContext:
    if job_type == JobType.REANALYSIS:
        raise ValueError("Reanalysis jobs require an explicit ReanalysisContext.")
    if job_type == JobType.CONNECTION_DISCOVERY:
        return ConnectionDiscoveryContext(node_id=None)
    return InitialContext()


def target_node_id(context: JobContext) -> str | None:
    """Node a job operates on, if any."""

    if isinstance(context, ReanalysisContext):
        return context.existing_node_id or None
    if isinstance(context, ConnectionDiscoveryContext):
        return context.node_id
    return None


@dataclass(slots=True)
class JobInput:
    """Input payload for enqueuing an analysis job."""

    job_type: JobType
    session_file: str
    priority: int | None = None
    segment_start: str | None = None
    segment_end: str | None = None
    context: JobContext | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class AnalysisJob:
    """Readable job view for workers, scheduler and CLI."""

    id: str
    job_type: JobType
    priority: int
    session_file: str
    segment_start: str | None
    segment_end: str | None
    context: JobContext
    status: JobStatus
    queued_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    result_node_id: str | None
    error: str | None
    retry_count: int
    max_retries: int
    worker_id: str | None
    locked_until: datetime | None


@dataclass(slots=True)
class QueueStats:
    """Aggregate job counts for observability."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    avg_duration_minutes: float | None = None

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed


@dataclass(slots=True)
class DailyStats:
    """Completed/failed counts for the current UTC day."""

    completed_today: int = 0
    failed_today: int = 0


@dataclass(slots=True)
class QueueStatusSummary:
    stats: QueueStats
    pending_jobs: list[AnalysisJob]
    running_jobs: list[AnalysisJob]
    recent_failed: list[AnalysisJob]


@dataclass(slots=True)
class ScheduledJobResult:
    """Outcome of one scheduler trigger execution."""

    type: ScheduledJobType
    started_at: datetime
    completed_at: datetime
    items_queued: int | None = None
    items_processed: int | None = None
    error: str | None = None
