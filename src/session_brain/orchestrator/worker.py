"""Queue worker that runs the analysis agent for claimed jobs."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import NamedTuple

from session_brain.orchestrator.collaborators import ConnectionDiscoverer, NodeWriter
from session_brain.orchestrator.invoker import AgentInvoker
from session_brain.orchestrator.models import (
    AnalysisJob,
    ConnectionDiscoveryContext,
    JobType,
)
from session_brain.orchestrator.queue import QueueManager
from session_brain.orchestrator.retry_policy import (
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    classify_and_decide,
)
from session_brain.storage.common import utc_now
from session_brain.storage.database import Database
from session_brain.storage.nodes import NodeRepository

logger = logging.getLogger(__name__)

_ERROR_BACKOFF_SECONDS = 5.0


class WorkerNotInitializedError(RuntimeError):
    """Raised when a worker is used before ``initialize``."""


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool


@dataclass(slots=True)
class JobProcessingResult:
    """Outcome of processing one claimed job."""

    success: bool
    job: AnalysisJob
    node_id: str | None = None
    error: str | None = None
    will_retry: bool = False
    duration_ms: int = 0


@dataclass(slots=True)
class WorkerStatus:
    id: str
    running: bool
    current_job: AnalysisJob | None
    jobs_processed: int
    jobs_succeeded: int
    jobs_failed: int
    started_at: datetime | None


@dataclass(slots=True)
class WorkerCallbacks:
    """Lifecycle hooks; exceptions raised by a hook are logged and ignored."""

    on_job_started: Callable[[AnalysisJob], None] | None = None
    on_node_created: Callable[[AnalysisJob, str], None] | None = None
    on_job_failed: Callable[[AnalysisJob, str], None] | None = None


@dataclass(slots=True)
class _Counters:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    started_at: datetime | None = None
    current_job: AnalysisJob | None = field(default=None)


class AnalysisWorker:
    """Claims jobs one at a time, runs them and records the outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker_id: str,
        invoker: AgentInvoker,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        poll_interval_seconds: float = 5.0,
        node_writer: NodeWriter | None = None,
        connection_discoverer: ConnectionDiscoverer | None = None,
        callbacks: WorkerCallbacks | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.invoker = invoker
        self.retry_policy = retry_policy
        self.poll_interval_seconds = poll_interval_seconds
        self.node_writer = node_writer
        self.connection_discoverer = connection_discoverer
        self.callbacks = callbacks or WorkerCallbacks()
        self.queue: QueueManager | None = None
        self._nodes: NodeRepository | None = None
        self._counters = _Counters()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._environment_warned = False
        self._prompt_hash: str | None = None
        self._prompt_version: str | None = None

    def initialize(self, database: Database, *, queue: QueueManager | None = None) -> None:
        """Bind the worker to a database; ``queue`` may be shared between workers."""

        self.queue = queue or QueueManager(
            database,
            default_max_retries=self.retry_policy.max_retries,
        )
        self._nodes = NodeRepository(database)
        if self.node_writer is None:
            self.node_writer = self._nodes

    @property
    def is_initialized(self) -> bool:
        return self.queue is not None and self._nodes is not None

    def status(self) -> WorkerStatus:
        counters = self._counters
        return WorkerStatus(
            id=self.worker_id,
            running=self._thread is not None and self._thread.is_alive(),
            current_job=counters.current_job,
            jobs_processed=counters.processed,
            jobs_succeeded=counters.succeeded,
            jobs_failed=counters.failed,
            started_at=counters.started_at,
        )

    def start(self) -> None:
        """Poll the queue from a background thread until ``stop``."""

        self._require_initialized()
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._counters.started_at = utc_now()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name=f"analysis-{self.worker_id}",
        )
        self._thread.start()
        logger.info("Worker %s started", self.worker_id)

    def stop(self, *, timeout: float | None = 30.0) -> None:
        """Stop polling; a job in progress is allowed to finish."""

        self._stop_event.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning(
                "Worker %s still busy after %ss, leaving it to exit",
                self.worker_id,
                timeout,
            )
        else:
            logger.info("Worker %s stopped", self.worker_id)
        self._thread = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        queue = self._require_initialized()
        summary = WorkerRunSummary()
        if self._stop_event.is_set() or not self._environment_ready():
            summary.idle_polls = 1
            return summary

        job = queue.dequeue(self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        result = self.process_job(job)
        summary.processed = 1
        if result.success:
            summary.succeeded = 1
        elif result.will_retry:
            summary.retried = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run in the foreground until the queue is idle or ``max_jobs`` reached."""

        self._require_initialized()
        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        self._counters.started_at = self._counters.started_at or utc_now()
        with self._signal_handlers():
            while not self._stop_event.is_set():
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break
                summary = self.run_once()
                aggregate.add(summary)
                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def process_job(self, job: AnalysisJob) -> JobProcessingResult:
        """Execute a claimed job and route the outcome through the queue."""

        queue = self._require_initialized()
        started = time.monotonic()
        self._counters.current_job = job
        self._emit("on_job_started", job)
        logger.info(
            "Worker %s processing %s job %s (%s)",
            self.worker_id,
            job.job_type.value,
            job.id,
            job.session_file,
        )
        try:
            try:
                node_id, error = self._execute(job)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Job %s raised while executing", job.id)
                node_id, error = None, str(exc) or type(exc).__name__

            duration_ms = int((time.monotonic() - started) * 1000)
            self._counters.processed += 1
            if error is None and node_id is not None:
                self._finish_success(queue=queue, job=job, node_id=node_id)
                return JobProcessingResult(
                    success=True,
                    job=job,
                    node_id=node_id,
                    duration_ms=duration_ms,
                )

            message = error or "Analysis produced no node"
            outcome = self._handle_retry_or_fail(queue=queue, job=job, error=message)
            return JobProcessingResult(
                success=False,
                job=job,
                error=message,
                will_retry=outcome.retried,
                duration_ms=duration_ms,
            )
        finally:
            self._counters.current_job = None

    def _execute(self, job: AnalysisJob) -> tuple[str | None, str | None]:
        if job.job_type == JobType.CONNECTION_DISCOVERY:
            return self._discover_connections(job)

        # Version of the prompt the agent is about to run with.
        analyzer_version = self._current_analyzer_version()
        result = self.invoker.invoke(job)
        if not result.success or result.node_data is None:
            return None, result.error or "Agent returned no node data"
        if self.node_writer is None:  # pragma: no cover - set by initialize
            raise WorkerNotInitializedError("Worker has no node writer.")
        node_id = self.node_writer.create_node(
            job,
            result.node_data,
            analyzer_version=analyzer_version,
            analysis_duration_ms=result.duration_ms,
        )
        return node_id, None

    def _discover_connections(self, job: AnalysisJob) -> tuple[str | None, str | None]:
        if self.connection_discoverer is None:
            return None, "No connection discoverer configured for connection_discovery jobs"
        context = job.context
        node_id = context.node_id if isinstance(context, ConnectionDiscoveryContext) else None
        if not node_id:
            return None, "Missing nodeId in connection_discovery job context"
        edges = self.connection_discoverer.discover(node_id)
        logger.info("Connection discovery for node %s created %d edges", node_id, edges)
        return node_id, None

    def _finish_success(self, *, queue: QueueManager, job: AnalysisJob, node_id: str) -> None:
        if not queue.complete(job.id, node_id):
            logger.warning(
                "Job %s finished but was no longer running (lease lost); result node %s kept",
                job.id,
                node_id,
            )
        self._counters.succeeded += 1
        logger.info("Job %s completed with node %s", job.id, node_id)
        if job.job_type != JobType.CONNECTION_DISCOVERY:
            self._emit("on_node_created", job, node_id)

    def _handle_retry_or_fail(
        self,
        *,
        queue: QueueManager,
        job: AnalysisJob,
        error: str,
    ) -> RetryOutcome:
        decision = classify_and_decide(error, job, self.retry_policy)
        next_run_at = (
            utc_now() + timedelta(minutes=decision.delay_minutes) if decision.should_retry else None
        )
        recorded = queue.fail(
            job.id,
            decision.error_record.to_json(),
            retryable=decision.should_retry,
            next_run_at=next_run_at,
        )
        if not recorded:
            logger.warning("Job %s failed but was no longer running: %s", job.id, error)
        self._counters.failed += 1

        if decision.should_retry:
            logger.warning(
                "Job %s failed (%s), retry %d/%d in %d min: %s",
                job.id,
                decision.category.value,
                job.retry_count + 1,
                job.max_retries,
                decision.delay_minutes,
                error,
            )
            return RetryOutcome(retried=True, failed=False)

        logger.error(
            "Job %s failed permanently (%s: %s): %s",
            job.id,
            decision.category.value,
            decision.reason,
            error,
        )
        self._emit("on_job_failed", job, error)
        return RetryOutcome(retried=False, failed=True)

    def _current_analyzer_version(self) -> str | None:
        fingerprint = self.invoker.prompt_fingerprint()
        if fingerprint is None or self._nodes is None:
            return None
        content_hash, text = fingerprint
        if content_hash != self._prompt_hash:
            self._prompt_version = self._nodes.register_prompt_version(
                text,
                prompt_path=self.invoker.prompt_file,
            )
            self._prompt_hash = content_hash
        return self._prompt_version

    def _environment_ready(self) -> bool:
        issues = self.invoker.environment_issues()
        if not issues:
            if self._environment_warned:
                logger.info("Worker %s environment is ready, resuming", self.worker_id)
            self._environment_warned = False
            return True
        if not self._environment_warned:
            logger.warning(
                "Worker %s idle until the environment is fixed: %s",
                self.worker_id,
                "; ".join(issues),
            )
            self._environment_warned = True
        return False

    def _emit(self, hook_name: str, *args: object) -> None:
        hook = getattr(self.callbacks, hook_name)
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Worker callback %s failed", hook_name)

    def _require_initialized(self) -> QueueManager:
        if self.queue is None or self._nodes is None:
            raise WorkerNotInitializedError(
                f"Worker {self.worker_id} is not initialized; call initialize(database) first.",
            )
        return self.queue

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                summary = self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s poll failed", self.worker_id)
                self._stop_event.wait(timeout=_ERROR_BACKOFF_SECONDS)
                continue
            if summary.processed == 0:
                self._stop_event.wait(timeout=self.poll_interval_seconds)

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(timeout=max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Worker %s received %s, finishing current job", self.worker_id, name)
            self._stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
