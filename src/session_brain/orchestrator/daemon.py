"""Process assembly: worker pool, lease maintenance and scheduler."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from session_brain.config import QueueSettings, Settings
from session_brain.orchestrator.collaborators import ConnectionDiscoverer, NodeWriter
from session_brain.orchestrator.invoker import AgentInvoker
from session_brain.orchestrator.models import QueueStats
from session_brain.orchestrator.queue import QueueManager
from session_brain.orchestrator.retry_policy import RetryPolicy
from session_brain.orchestrator.scheduler import Scheduler, SchedulerCollaborators, SchedulerStatus
from session_brain.orchestrator.services import AnalysisService, SessionIdle
from session_brain.orchestrator.worker import AnalysisWorker, WorkerCallbacks, WorkerStatus
from session_brain.storage.database import Database
from session_brain.storage.nodes import NodeRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DaemonStatus:
    running: bool
    workers: list[WorkerStatus]
    scheduler: SchedulerStatus
    queue: QueueStats


def build_retry_policy(settings: QueueSettings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.max_retries,
        base_delay_seconds=settings.retry_base_seconds,
        max_delay_seconds=settings.retry_max_seconds,
        backoff_multiplier=settings.retry_backoff_multiplier,
    )


class AnalysisDaemon:
    """Runs N analysis workers, the stale-lease sweep and the cron scheduler."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        database: Database,
        invoker: AgentInvoker | None = None,
        node_writer: NodeWriter | None = None,
        connection_discoverer: ConnectionDiscoverer | None = None,
        collaborators: SchedulerCollaborators | None = None,
        callbacks: WorkerCallbacks | None = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.invoker = invoker or AgentInvoker.from_settings(settings.agent)
        self.retry_policy = build_retry_policy(settings.queue)
        self.queue = QueueManager(
            database,
            lease_minutes=settings.queue.lease_minutes,
            default_max_retries=settings.queue.max_retries,
        )
        self.nodes = NodeRepository(database)
        self.service = AnalysisService(queue=self.queue)
        self.scheduler = Scheduler(
            queue=self.queue,
            nodes=self.nodes,
            settings=settings.scheduler,
            embedding=settings.embedding,
            naming_provider=settings.agent.provider,
            naming_model=settings.agent.model,
            collaborators=collaborators,
        )
        self.workers = [
            AnalysisWorker(
                worker_id=f"{settings.worker.worker_id_prefix}-{index}",
                invoker=self.invoker,
                retry_policy=self.retry_policy,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                node_writer=node_writer,
                connection_discoverer=connection_discoverer,
                callbacks=callbacks,
            )
            for index in range(settings.worker.parallel_workers)
        ]
        self._stop_event = threading.Event()
        self._maintenance_thread: threading.Thread | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Recover leases, register the prompt and start all background threads."""

        if self._running:
            return
        self.settings.validate_for_daemon()
        for warning in self.settings.schedule_warnings():
            logger.warning(warning)

        released = self.queue.release_all_running()
        if released:
            logger.info("Released %d jobs left running by a previous process", released)
        self._register_prompt_version()

        self._stop_event.clear()
        for worker in self.workers:
            worker.initialize(self.database, queue=self.queue)
            worker.start()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop,
            daemon=True,
            name="queue-maintenance",
        )
        self._maintenance_thread.start()
        self.scheduler.start()
        self._running = True
        logger.info(
            "Analysis daemon started with %d workers (lease %s min, timeout %s min)",
            len(self.workers),
            self.settings.queue.lease_minutes,
            self.settings.agent.timeout_minutes,
        )

    def stop(self) -> None:
        """Stop the scheduler, maintenance and workers; running jobs finish first."""

        self._stop_event.set()
        self.scheduler.stop()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout=15)
            self._maintenance_thread = None
        for worker in self.workers:
            worker.stop(timeout=self.settings.agent.timeout_minutes * 60)
        self._running = False
        logger.info("Analysis daemon stopped")

    def run_forever(self) -> None:
        """Foreground mode for ``daemon run``: block until SIGINT/SIGTERM."""

        self.start()
        try:
            with self._signal_handlers():
                while not self._stop_event.wait(timeout=1.0):
                    pass
        finally:
            self.stop()

    def request_stop(self) -> None:
        self._stop_event.set()

    def handle_session_idle(self, event: SessionIdle) -> str | None:
        return self.service.handle_session_idle(event)

    def sweep_stale_leases(self) -> int:
        released = self.queue.release_stale()
        if released:
            logger.warning("Released %d jobs with expired leases", released)
        return released

    def status(self) -> DaemonStatus:
        return DaemonStatus(
            running=self._running,
            workers=[worker.status() for worker in self.workers],
            scheduler=self.scheduler.status(),
            queue=self.queue.get_stats(),
        )

    def _register_prompt_version(self) -> None:
        fingerprint = self.invoker.prompt_fingerprint()
        if fingerprint is None:
            logger.warning("Prompt file not found: %s", self.invoker.prompt_file)
            return
        _, text = fingerprint
        version = self.nodes.register_prompt_version(text, prompt_path=self.invoker.prompt_file)
        logger.info("Current analyzer prompt version: %s", version)

    def _maintenance_loop(self) -> None:
        interval = self.settings.queue.stale_sweep_interval_minutes * 60
        while not self._stop_event.wait(timeout=interval):
            try:
                self.sweep_stale_leases()
            except Exception:
                logger.exception("Stale lease sweep error")

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Daemon received signal %s, shutting down", signum)
            self._stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
