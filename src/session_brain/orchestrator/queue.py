"""Durable lease-based priority queue for analysis jobs."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, literal_column
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from session_brain.orchestrator.models import (
    AnalysisJob,
    DailyStats,
    JobInput,
    JobPriority,
    JobStatus,
    JobType,
    QueueStats,
    QueueStatusSummary,
    context_from_dict,
    context_to_dict,
    default_context,
    target_node_id,
)
from session_brain.orchestrator.retry_policy import DEFAULT_RETRY_POLICY
from session_brain.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from session_brain.storage.database import Database
from session_brain.storage.sqlmodel_models import AnalysisJobRow

logger = logging.getLogger(__name__)

# Insertion order; breaks ties between jobs queued in the same instant.
_INSERTION_ORDER = literal_column(f"{AnalysisJobRow.__tablename__}.rowid")

DEFAULT_LEASE_MINUTES = 35


class QueueOperationError(RuntimeError):
    """Operator mutation refused because of job state."""


class QueueManager:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        database: Database,
        *,
        lease_minutes: float = DEFAULT_LEASE_MINUTES,
        default_max_retries: int = DEFAULT_RETRY_POLICY.max_retries,
    ) -> None:
        if lease_minutes <= 0:
            raise ValueError("Lease duration must be > 0 minutes.")
        self.database = database
        self.engine = database.engine
        self.lease = timedelta(minutes=lease_minutes)
        self.default_max_retries = default_max_retries

    def enqueue(self, payload: JobInput) -> str:
        """Insert a pending job and return its id."""

        with Session(self.engine) as session:
            row = self._build_row(payload, now=utc_now())
            session.add(row)
            session.commit()
            job_id = row.id
        logger.debug(
            "Enqueued %s job %s for %s (priority=%s)",
            payload.job_type.value,
            job_id,
            payload.session_file,
            row.priority,
        )
        return job_id

    def enqueue_many(self, payloads: Iterable[JobInput]) -> list[str]:
        """Insert several pending jobs in one transaction."""

        now = utc_now()
        with Session(self.engine) as session:
            rows = [self._build_row(payload, now=now) for payload in payloads]
            session.add_all(rows)
            session.commit()
            return [row.id for row in rows]

    def dequeue(self, worker_id: str) -> AnalysisJob | None:
        """Atomically claim the next eligible pending job."""

        now = utc_now()
        candidate = (
            select(AnalysisJobRow.id)
            .where(
                col(AnalysisJobRow.status) == JobStatus.PENDING.value,
                col(AnalysisJobRow.queued_at) <= to_db_datetime(now),
            )
            .order_by(
                col(AnalysisJobRow.priority).asc(),
                col(AnalysisJobRow.queued_at).asc(),
                _INSERTION_ORDER.asc(),
            )
            .limit(1)
            .scalar_subquery()
        )
        with Session(self.engine) as session:
            claimed_id = session.exec(
                sa_update(AnalysisJobRow)
                .where(
                    col(AnalysisJobRow.id) == candidate,
                    col(AnalysisJobRow.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    worker_id=worker_id,
                    started_at=to_db_datetime(now),
                    locked_until=to_db_datetime(now + self.lease),
                )
                .returning(col(AnalysisJobRow.id))
                .execution_options(synchronize_session=False),
            ).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None
            session.commit()
            row = session.get(AnalysisJobRow, claimed_id)
            if row is None:  # pragma: no cover - row cannot vanish inside the claim
                return None
            return _to_job(row)

    def complete(self, job_id: str, result_node_id: str) -> bool:
        """Mark a running job as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJobRow)
                .where(
                    col(AnalysisJobRow.id) == job_id,
                    col(AnalysisJobRow.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=to_db_datetime(now),
                    result_node_id=result_node_id,
                    worker_id=None,
                    locked_until=None,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail(
        self,
        job_id: str,
        error: str,
        *,
        retryable: bool,
        next_run_at: datetime | None = None,
    ) -> bool:
        """Reschedule a running job for retry or mark it terminally failed."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisJobRow).where(
                    AnalysisJobRow.id == job_id,
                    AnalysisJobRow.status == JobStatus.RUNNING.value,
                ),
            ).one_or_none()
            if row is None:
                return False

            if retryable and row.retry_count < row.max_retries:
                values: dict[str, object] = {
                    "status": JobStatus.PENDING.value,
                    "retry_count": row.retry_count + 1,
                    "queued_at": to_db_datetime(next_run_at or now),
                    "error": error,
                    "started_at": None,
                    "worker_id": None,
                    "locked_until": None,
                }
            else:
                values = {
                    "status": JobStatus.FAILED.value,
                    "error": error,
                    "completed_at": to_db_datetime(now),
                    "worker_id": None,
                    "locked_until": None,
                }
            result = session.exec(
                sa_update(AnalysisJobRow)
                .where(
                    col(AnalysisJobRow.id) == job_id,
                    col(AnalysisJobRow.status) == JobStatus.RUNNING.value,
                    col(AnalysisJobRow.retry_count) == row.retry_count,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release_stale(self) -> int:
        """Return running jobs with an expired lease to pending."""

        now = utc_now()
        return self._release_running(
            col(AnalysisJobRow.locked_until) < to_db_datetime(now),
        )

    def release_all_running(self) -> int:
        """Return every running job to pending; only valid at process start."""

        return self._release_running()

    def has_existing_job(
        self,
        session_file: str,
        segment_start: str | None = None,
        segment_end: str | None = None,
    ) -> bool:
        """Whether a pending/running job already targets this session (segment)."""

        statement = select(AnalysisJobRow.id).where(
            AnalysisJobRow.session_file == session_file,
            col(AnalysisJobRow.status).in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
        )
        if segment_start is not None or segment_end is not None:
            statement = statement.where(
                _nullable_equals(col(AnalysisJobRow.segment_start), segment_start),
                _nullable_equals(col(AnalysisJobRow.segment_end), segment_end),
            )
        with Session(self.engine) as session:
            return session.exec(statement.limit(1)).first() is not None

    def get_job(self, job_id: str) -> AnalysisJob | None:
        with Session(self.engine) as session:
            row = session.get(AnalysisJobRow, job_id)
            return _to_job(row) if row is not None else None

    def get_pending_jobs(self, limit: int = 100) -> list[AnalysisJob]:
        """Pending jobs in claim order."""

        return self._list(
            select(AnalysisJobRow)
            .where(AnalysisJobRow.status == JobStatus.PENDING.value)
            .order_by(
                col(AnalysisJobRow.priority).asc(),
                col(AnalysisJobRow.queued_at).asc(),
                _INSERTION_ORDER.asc(),
            )
            .limit(limit),
        )

    def get_running_jobs(self) -> list[AnalysisJob]:
        return self._list(
            select(AnalysisJobRow)
            .where(AnalysisJobRow.status == JobStatus.RUNNING.value)
            .order_by(col(AnalysisJobRow.started_at).asc()),
        )

    def get_failed_jobs(self, limit: int = 50) -> list[AnalysisJob]:
        """Most recent terminal failures first."""

        return self._list(
            select(AnalysisJobRow)
            .where(AnalysisJobRow.status == JobStatus.FAILED.value)
            .order_by(col(AnalysisJobRow.completed_at).desc())
            .limit(limit),
        )

    def get_jobs_for_session(self, session_file: str) -> list[AnalysisJob]:
        return self._list(
            select(AnalysisJobRow)
            .where(AnalysisJobRow.session_file == session_file)
            .order_by(col(AnalysisJobRow.queued_at).desc()),
        )

    def get_stats(self) -> QueueStats:
        """Counts per status and average duration of completed jobs."""

        stats = QueueStats()
        duration_days = func.julianday(col(AnalysisJobRow.completed_at)) - func.julianday(
            col(AnalysisJobRow.started_at),
        )
        with Session(self.engine) as session:
            counts = session.exec(
                select(AnalysisJobRow.status, func.count()).group_by(AnalysisJobRow.status),
            ).all()
            avg_days = session.exec(
                select(func.avg(duration_days)).where(
                    AnalysisJobRow.status == JobStatus.COMPLETED.value,
                    col(AnalysisJobRow.started_at).is_not(None),
                    col(AnalysisJobRow.completed_at).is_not(None),
                ),
            ).one()
        for status, count in counts:
            if status == JobStatus.PENDING.value:
                stats.pending = int(count)
            elif status == JobStatus.RUNNING.value:
                stats.running = int(count)
            elif status == JobStatus.COMPLETED.value:
                stats.completed = int(count)
            elif status == JobStatus.FAILED.value:
                stats.failed = int(count)
        if avg_days is not None:
            stats.avg_duration_minutes = round(float(avg_days) * 24 * 60, 2)
        return stats

    def get_daily_stats(self, *, now: datetime | None = None) -> DailyStats:
        """Completed/failed counts since UTC midnight."""

        current = to_utc_aware_datetime(now or utc_now())
        day_start = current.replace(hour=0, minute=0, second=0, microsecond=0)
        with Session(self.engine) as session:
            counts = session.exec(
                select(AnalysisJobRow.status, func.count())
                .where(
                    col(AnalysisJobRow.status).in_(
                        [JobStatus.COMPLETED.value, JobStatus.FAILED.value],
                    ),
                    col(AnalysisJobRow.completed_at) >= to_db_datetime(day_start),
                )
                .group_by(AnalysisJobRow.status),
            ).all()
        daily = DailyStats()
        for status, count in counts:
            if status == JobStatus.COMPLETED.value:
                daily.completed_today = int(count)
            else:
                daily.failed_today = int(count)
        return daily

    def get_queue_status_summary(self) -> QueueStatusSummary:
        return QueueStatusSummary(
            stats=self.get_stats(),
            pending_jobs=self.get_pending_jobs(limit=10),
            running_jobs=self.get_running_jobs(),
            recent_failed=self.get_failed_jobs(limit=5),
        )

    def retry_job(self, job_id: str) -> None:
        """Manual operator retry for a failed job; resets the retry budget."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJobRow)
                .where(
                    col(AnalysisJobRow.id) == job_id,
                    col(AnalysisJobRow.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    retry_count=0,
                    error=None,
                    queued_at=to_db_datetime(now),
                    started_at=None,
                    completed_at=None,
                    worker_id=None,
                    locked_until=None,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise QueueOperationError(self._refusal(session, job_id, "retried", "failed"))
            session.commit()

    def cancel_job(self, job_id: str) -> None:
        """Delete a pending job."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(AnalysisJobRow).where(
                    col(AnalysisJobRow.id) == job_id,
                    col(AnalysisJobRow.status) == JobStatus.PENDING.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise QueueOperationError(self._refusal(session, job_id, "canceled", "pending"))
            session.commit()

    def cancel_jobs_for_session(self, session_file: str) -> int:
        """Delete all pending jobs of one session file."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(AnalysisJobRow).where(
                    col(AnalysisJobRow.session_file) == session_file,
                    col(AnalysisJobRow.status) == JobStatus.PENDING.value,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def clear_old_completed(self, days: int = 7) -> int:
        """Delete completed jobs finished more than ``days`` ago."""

        cutoff = utc_now() - timedelta(days=days)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(AnalysisJobRow).where(
                    col(AnalysisJobRow.status) == JobStatus.COMPLETED.value,
                    col(AnalysisJobRow.completed_at) < to_db_datetime(cutoff),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def clear_all(self) -> int:
        with Session(self.engine) as session:
            result = session.exec(sa_delete(AnalysisJobRow))
            session.commit()
            return int(result.rowcount or 0)

    def _build_row(self, payload: JobInput, *, now: datetime) -> AnalysisJobRow:
        priority = payload.priority if payload.priority is not None else JobPriority.INITIAL
        max_retries = (
            payload.max_retries if payload.max_retries is not None else self.default_max_retries
        )
        if priority < 0:
            raise ValueError(f"Job priority must be >= 0, got {priority}.")
        if max_retries < 0:
            raise ValueError(f"Job max_retries must be >= 0, got {max_retries}.")
        context = payload.context or default_context(payload.job_type)
        context_payload = context_to_dict(context)
        return AnalysisJobRow(
            id=uuid4().hex[:16],
            job_type=payload.job_type.value,
            priority=int(priority),
            session_file=payload.session_file,
            segment_start=payload.segment_start,
            segment_end=payload.segment_end,
            context=json.dumps(context_payload, ensure_ascii=False) if context_payload else None,
            target_node_id=target_node_id(context),
            status=JobStatus.PENDING.value,
            queued_at=to_db_datetime(now),
            retry_count=0,
            max_retries=max_retries,
        )

    def _release_running(self, *conditions: object) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJobRow)
                .where(col(AnalysisJobRow.status) == JobStatus.RUNNING.value, *conditions)
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    worker_id=None,
                    locked_until=None,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _list(self, statement) -> list[AnalysisJob]:
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_job(row) for row in rows]

    @staticmethod
    def _refusal(session: Session, job_id: str, action: str, required: str) -> str:
        row = session.get(AnalysisJobRow, job_id)
        if row is None:
            return f"Job not found: {job_id}"
        return f"Only {required} jobs can be {action}, got status={row.status} (job_id={job_id})."


def _nullable_equals(column, value: str | None):
    if value is None:
        return column.is_(None)
    return column == value


def _to_job(row: AnalysisJobRow) -> AnalysisJob:
    job_type = JobType(row.job_type)
    context_payload = json.loads(row.context) if row.context else None
    return AnalysisJob(
        id=row.id,
        job_type=job_type,
        priority=row.priority,
        session_file=row.session_file,
        segment_start=row.segment_start,
        segment_end=row.segment_end,
        context=context_from_dict(job_type, context_payload),
        status=JobStatus(row.status),
        queued_at=to_utc_aware_datetime(row.queued_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        result_node_id=row.result_node_id,
        error=row.error,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        worker_id=row.worker_id,
        locked_until=optional_utc(row.locked_until),
    )
