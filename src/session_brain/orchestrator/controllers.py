"""Controllers for analysis queue, scheduler, worker and daemon CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from session_brain.config import Settings
from session_brain.orchestrator.daemon import AnalysisDaemon, build_retry_policy
from session_brain.orchestrator.invoker import AgentInvoker
from session_brain.orchestrator.models import AnalysisJob, JobStatus, ScheduledJobType
from session_brain.orchestrator.queue import QueueManager
from session_brain.orchestrator.retry_policy import parse_error_record
from session_brain.orchestrator.scheduler import Scheduler
from session_brain.orchestrator.services import AnalysisService, EnqueueSession
from session_brain.orchestrator.worker import AnalysisWorker
from session_brain.storage.database import Database
from session_brain.storage.nodes import NodeRepository

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for user-triggered session analysis."""

    db_path: Path | None
    session_file: Path
    priority: int


@dataclass(slots=True)
class QueueStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueJobCommand:
    """CLI input for inspect/retry/cancel of one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class QueueClearCommand:
    db_path: Path | None
    completed_older_than_days: int | None
    clear_all: bool


@dataclass(slots=True)
class SchedulerStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class SchedulerTriggerCommand:
    db_path: Path | None
    job_type: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for foreground worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class DaemonRunCommand:
    db_path: Path | None


class AnalysisCliController:
    """Coordinates queue, scheduler, worker and daemon CLI operations."""

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            service = AnalysisService(queue=_queue(database, settings))
            job = service.enqueue_session(
                EnqueueSession(session_file=command.session_file, priority=command.priority),
            )
        return [
            f"Job enqueued: job_id={job.id} type={job.job_type.value} "
            f"priority={job.priority} status={job.status.value}",
            f"Session: {job.session_file}",
        ]

    def status(self, command: QueueStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            queue = _queue(database, settings)
            summary = queue.get_queue_status_summary()
            daily = queue.get_daily_stats()

        stats = summary.stats
        average = (
            f"{stats.avg_duration_minutes:.1f}m" if stats.avg_duration_minutes is not None else "-"
        )
        lines = [
            f"Queue: pending={stats.pending} running={stats.running} "
            f"completed={stats.completed} failed={stats.failed} total={stats.total}",
            f"Average duration: {average}",
            f"Today: completed={daily.completed_today} failed={daily.failed_today}",
        ]
        for title, jobs in (
            ("Running", summary.running_jobs),
            ("Pending", summary.pending_jobs),
            ("Recent failures", summary.recent_failed),
        ):
            if jobs:
                lines.append(f"{title}:")
                lines.extend(_job_line(job) for job in jobs)
        return lines

    def list_jobs(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status.strip().lower()) if command.status else None
        with _database(settings) as database:
            queue = _queue(database, settings)
            jobs: list[AnalysisJob] = []
            if status in (None, JobStatus.RUNNING):
                jobs.extend(queue.get_running_jobs())
            if status in (None, JobStatus.PENDING):
                jobs.extend(queue.get_pending_jobs(limit=command.limit))
            if status in (None, JobStatus.FAILED):
                jobs.extend(queue.get_failed_jobs(limit=command.limit))
            if status == JobStatus.COMPLETED:
                raise ValueError("Completed jobs are not listed; use `queue inspect`.")

        jobs = jobs[: command.limit]
        return [f"Jobs: {len(jobs)}", *(_job_line(job) for job in jobs)]

    def inspect(self, command: QueueJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            job = _queue(database, settings).get_job(command.job_id)
        if job is None:
            return [f"Job not found: {command.job_id}"]

        lines = [
            f"Job: {job.id}",
            f"Type: {job.job_type.value}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Session: {job.session_file}",
            f"Segment: {job.segment_start or '-'} .. {job.segment_end or '-'}",
            f"Retries: {job.retry_count}/{job.max_retries}",
            f"Queued at: {job.queued_at.isoformat()}",
            f"Started at: {_iso(job.started_at)}",
            f"Completed at: {_iso(job.completed_at)}",
            f"Worker: {job.worker_id or '-'}",
            f"Lease until: {_iso(job.locked_until)}",
            f"Result node: {job.result_node_id or '-'}",
        ]
        record = parse_error_record(job.error)
        if record is None:
            lines.append("Error: -")
        else:
            lines.append(f"Error: {record.get('message', '-')}")
            if "category" in record:
                lines.append(
                    f"Error category: {record['category']} ({record.get('reason', '-')})",
                )
        return lines

    def retry(self, command: QueueJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            _queue(database, settings).retry_job(command.job_id)
        return [f"Job re-queued: {command.job_id}"]

    def cancel(self, command: QueueJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            _queue(database, settings).cancel_job(command.job_id)
        return [f"Job canceled: {command.job_id}"]

    def clear(self, command: QueueClearCommand) -> list[str]:
        if command.clear_all == (command.completed_older_than_days is not None):
            raise ValueError("Pass exactly one of --completed-older-than-days or --all.")
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            queue = _queue(database, settings)
            if command.clear_all:
                removed = queue.clear_all()
            else:
                removed = queue.clear_old_completed(days=command.completed_older_than_days or 0)
        return [f"Jobs removed: {removed}"]

    def scheduler_status(self, command: SchedulerStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            status = _scheduler(database, settings).status()

        lines = [f"Scheduler running: {'yes' if status.running else 'no'}"]
        for job in status.jobs:
            next_run = job.next_run.isoformat() if job.next_run else "-"
            lines.append(
                f"  {job.type.value}: schedule={job.schedule or '-'} next_run={next_run}",
            )
        lines.extend(f"Warning: {warning}" for warning in settings.schedule_warnings())
        return lines

    def scheduler_trigger(self, command: SchedulerTriggerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        job_type = ScheduledJobType(command.job_type.strip().lower())
        with _database(settings) as database:
            if job_type == ScheduledJobType.REANALYSIS:
                _register_prompt_version(database, settings)
            result = _scheduler(database, settings).trigger(job_type)

        if result.error is not None:
            raise RuntimeError(f"Scheduled job {job_type.value} failed: {result.error}")
        duration = (result.completed_at - result.started_at).total_seconds()
        return [
            f"Triggered {job_type.value}: "
            f"queued={_count(result.items_queued)} processed={_count(result.items_processed)} "
            f"duration={duration:.1f}s",
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            worker = AnalysisWorker(
                worker_id=f"{settings.worker.worker_id_prefix}-cli",
                invoker=AgentInvoker.from_settings(settings.agent),
                retry_policy=build_retry_policy(settings.queue),
                poll_interval_seconds=settings.worker.poll_interval_seconds,
            )
            worker.initialize(database, queue=_queue(database, settings))
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"idle_polls={summary.idle_polls}",
        ]

    def run_daemon(self, command: DaemonRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
        with _database(settings) as database:
            daemon = AnalysisDaemon(settings=settings, database=database)
            daemon.run_forever()
            stats = daemon.queue.get_stats()
        return [
            "Daemon stopped: "
            f"pending={stats.pending} running={stats.running} "
            f"completed={stats.completed} failed={stats.failed}",
        ]


def _job_line(job: AnalysisJob) -> str:
    return (
        f"  {job.id} type={job.job_type.value} status={job.status.value} "
        f"priority={job.priority} retries={job.retry_count}/{job.max_retries} "
        f"session={job.session_file}"
    )


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _count(value: int | None) -> str:
    return str(value) if value is not None else "-"


def _queue(database: Database, settings: Settings) -> QueueManager:
    return QueueManager(
        database,
        lease_minutes=settings.queue.lease_minutes,
        default_max_retries=settings.queue.max_retries,
    )


def _scheduler(database: Database, settings: Settings) -> Scheduler:
    return Scheduler(
        queue=_queue(database, settings),
        nodes=NodeRepository(database),
        settings=settings.scheduler,
        embedding=settings.embedding,
        naming_provider=settings.agent.provider,
        naming_model=settings.agent.model,
    )


def _register_prompt_version(database: Database, settings: Settings) -> None:
    invoker = AgentInvoker.from_settings(settings.agent)
    fingerprint = invoker.prompt_fingerprint()
    if fingerprint is not None:
        NodeRepository(database).register_prompt_version(
            fingerprint[1],
            prompt_path=invoker.prompt_file,
        )


@contextmanager
def _database(settings: Settings) -> Iterator[Database]:
    database = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    database.init_schema()
    try:
        yield database
    finally:
        database.close()
