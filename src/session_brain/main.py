"""CLI entrypoint for session-brain."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from session_brain import __version__
from session_brain.orchestrator.controllers import (
    AnalysisCliController,
    DaemonRunCommand,
    QueueClearCommand,
    QueueEnqueueCommand,
    QueueJobCommand,
    QueueListCommand,
    QueueStatusCommand,
    SchedulerStatusCommand,
    SchedulerTriggerCommand,
    WorkerRunCommand,
)
from session_brain.orchestrator.models import JobPriority, JobStatus, ScheduledJobType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AnalysisCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="session-brain")
def session_brain() -> None:
    """Session analysis daemon and queue tools."""


@session_brain.group()
def queue() -> None:
    """Analysis queue commands."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=int(JobPriority.USER_TRIGGERED),
    show_default=True,
    help="Queue priority, lower runs first.",
)
@click.argument("session_file", type=click.Path(path_type=Path))
def queue_enqueue(db_path: Path | None, priority: int, session_file: Path) -> None:
    """Queue a `.jsonl` session file for analysis."""

    _run(
        CONTROLLER.enqueue,
        QueueEnqueueCommand(db_path=db_path, session_file=session_file, priority=priority),
    )


@queue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_status(db_path: Path | None) -> None:
    """Show queue counts, running jobs and recent failures."""

    _run(CONTROLLER.status, QueueStatusCommand(db_path=db_path))


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(
        [JobStatus.PENDING.value, JobStatus.RUNNING.value, JobStatus.FAILED.value],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def queue_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List queued, running and failed jobs."""

    _run(CONTROLLER.list_jobs, QueueListCommand(db_path=db_path, status=status, limit=limit))


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def queue_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job."""

    _run(CONTROLLER.inspect, QueueJobCommand(db_path=db_path, job_id=job_id))


@queue.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def queue_retry(db_path: Path | None, job_id: str) -> None:
    """Manually re-queue a failed job with a fresh retry budget."""

    _run(CONTROLLER.retry, QueueJobCommand(db_path=db_path, job_id=job_id))


@queue.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def queue_cancel(db_path: Path | None, job_id: str) -> None:
    """Remove a pending job from the queue."""

    _run(CONTROLLER.cancel, QueueJobCommand(db_path=db_path, job_id=job_id))


@queue.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--completed-older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Delete completed jobs finished more than N days ago.",
)
@click.option("--all", "clear_all", is_flag=True, default=False, help="Delete every job.")
def queue_clear(
    db_path: Path | None,
    completed_older_than_days: int | None,
    clear_all: bool,
) -> None:
    """Delete old completed jobs, or everything with `--all`."""

    _run(
        CONTROLLER.clear,
        QueueClearCommand(
            db_path=db_path,
            completed_older_than_days=completed_older_than_days,
            clear_all=clear_all,
        ),
    )


@session_brain.group()
def scheduler() -> None:
    """Scheduled maintenance commands."""


@scheduler.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def scheduler_status(db_path: Path | None) -> None:
    """Show configured schedules and next run times."""

    _run(CONTROLLER.scheduler_status, SchedulerStatusCommand(db_path=db_path))


@scheduler.command("trigger")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument(
    "job_type",
    type=click.Choice([job_type.value for job_type in ScheduledJobType], case_sensitive=False),
)
def scheduler_trigger(db_path: Path | None, job_type: str) -> None:
    """Run one scheduled job now."""

    _run(
        CONTROLLER.scheduler_trigger,
        SchedulerTriggerCommand(db_path=db_path, job_type=job_type),
    )


@session_brain.group()
def worker() -> None:
    """Foreground worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Process one job or loop until the queue is idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
def worker_run(db_path: Path | None, once: bool, max_jobs: int | None) -> None:
    """Run an analysis worker in the foreground."""

    _run(
        CONTROLLER.run_worker,
        WorkerRunCommand(db_path=db_path, once=once, max_jobs=max_jobs),
    )


@session_brain.group()
def daemon() -> None:
    """Analysis daemon commands."""


@daemon.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def daemon_run(db_path: Path | None) -> None:
    """Run workers, lease maintenance and the scheduler until interrupted."""

    _run(CONTROLLER.run_daemon, DaemonRunCommand(db_path=db_path))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    session_brain()
