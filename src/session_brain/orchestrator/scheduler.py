"""Cron-driven maintenance triggers.

Reanalysis and connection discovery enqueue jobs for the workers; pattern
aggregation, clustering and embedding backfill call their collaborators
directly inside the tick. Cron and manual triggers share one implementation
per job type, so ``scheduler trigger`` from the CLI behaves exactly like a
scheduled run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple

from croniter import croniter

from session_brain.config import EmbeddingSettings, SchedulerSettings
from session_brain.orchestrator.collaborators import (
    ClusteringEngine,
    EmbeddingBackfiller,
    InsightAggregator,
    PatternAggregator,
)
from session_brain.orchestrator.models import (
    ConnectionDiscoveryContext,
    JobInput,
    JobPriority,
    JobType,
    ReanalysisContext,
    ScheduledJobResult,
    ScheduledJobType,
)
from session_brain.orchestrator.queue import QueueManager
from session_brain.storage.common import utc_now
from session_brain.storage.nodes import NodeRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerCollaborators:
    """Optional subsystems used by the direct-execution triggers."""

    pattern_aggregator: PatternAggregator | None = None
    insight_aggregator: InsightAggregator | None = None
    clustering_engine: ClusteringEngine | None = None
    embedding_backfiller: EmbeddingBackfiller | None = None


@dataclass(slots=True)
class ScheduledJobStatus:
    type: ScheduledJobType
    schedule: str
    active: bool
    next_run: datetime | None
    last_run: datetime | None
    last_result: ScheduledJobResult | None


@dataclass(slots=True)
class SchedulerStatus:
    running: bool
    jobs: list[ScheduledJobStatus]


class _Counts(NamedTuple):
    items_queued: int | None = None
    items_processed: int | None = None


class Scheduler:
    """Runs one cron thread per configured trigger and keeps the latest results."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: QueueManager,
        nodes: NodeRepository,
        settings: SchedulerSettings,
        embedding: EmbeddingSettings,
        naming_provider: str,
        naming_model: str,
        collaborators: SchedulerCollaborators | None = None,
    ) -> None:
        self.queue = queue
        self.nodes = nodes
        self.settings = settings
        self.embedding = embedding
        self.naming_provider = naming_provider
        self.naming_model = naming_model
        self.collaborators = collaborators or SchedulerCollaborators()
        self._stop_event = threading.Event()
        self._threads: dict[ScheduledJobType, threading.Thread] = {}
        self._last_results: dict[ScheduledJobType, ScheduledJobResult] = {}
        self._lock = threading.Lock()
        self._running = False
        self._actions: dict[ScheduledJobType, Callable[[], _Counts]] = {
            ScheduledJobType.REANALYSIS: self._enqueue_reanalysis,
            ScheduledJobType.CONNECTION_DISCOVERY: self._enqueue_connection_discovery,
            ScheduledJobType.PATTERN_AGGREGATION: self._aggregate_patterns,
            ScheduledJobType.CLUSTERING: self._run_clustering,
            ScheduledJobType.EMBEDDING_BACKFILL: self._backfill_embeddings,
        }

    @property
    def running(self) -> bool:
        return self._running

    def schedule_for(self, job_type: ScheduledJobType) -> str:
        return {
            ScheduledJobType.REANALYSIS: self.settings.reanalysis_schedule,
            ScheduledJobType.CONNECTION_DISCOVERY: self.settings.connection_discovery_schedule,
            ScheduledJobType.PATTERN_AGGREGATION: self.settings.pattern_aggregation_schedule,
            ScheduledJobType.CLUSTERING: self.settings.clustering_schedule,
            ScheduledJobType.EMBEDDING_BACKFILL: self.settings.embedding_backfill_schedule,
        }[job_type]

    def start(self) -> None:
        """Start a cron thread for every valid schedule; invalid ones are skipped."""

        if self._running:
            return
        self._stop_event.clear()
        for job_type in ScheduledJobType:
            expression = self.schedule_for(job_type).strip()
            if not expression:
                logger.info("Scheduled %s disabled (no schedule)", job_type.value)
                continue
            if not is_valid_cron_expression(expression):
                logger.error(
                    "Invalid cron expression %r for %s; job not scheduled",
                    expression,
                    job_type.value,
                )
                continue
            thread = threading.Thread(
                target=self._cron_loop,
                args=(job_type, expression),
                daemon=True,
                name=f"scheduler-{job_type.value}",
            )
            with self._lock:
                self._threads[job_type] = thread
            thread.start()
            logger.info("Scheduled %s with %r", job_type.value, expression)
        self._running = True

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._lock:
            threads = list(self._threads.values())
            self._threads.clear()
        for thread in threads:
            thread.join(timeout=timeout)
        self._running = False

    def status(self) -> SchedulerStatus:
        with self._lock:
            last_results = dict(self._last_results)
            active = set(self._threads)
        jobs: list[ScheduledJobStatus] = []
        for job_type in ScheduledJobType:
            expression = self.schedule_for(job_type).strip()
            valid = is_valid_cron_expression(expression)
            last_result = last_results.get(job_type)
            jobs.append(
                ScheduledJobStatus(
                    type=job_type,
                    schedule=expression,
                    active=job_type in active,
                    next_run=get_next_run_times(expression, 1)[0] if valid else None,
                    last_run=last_result.started_at if last_result else None,
                    last_result=last_result,
                ),
            )
        return SchedulerStatus(running=self._running, jobs=jobs)

    def trigger(self, job_type: ScheduledJobType) -> ScheduledJobResult:
        """Run one trigger now and record its result."""

        started_at = utc_now()
        logger.info("Running scheduled job %s", job_type.value)
        try:
            counts = self._actions[job_type]()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Scheduled job %s failed", job_type.value)
            result = ScheduledJobResult(
                type=job_type,
                started_at=started_at,
                completed_at=utc_now(),
                error=str(exc) or type(exc).__name__,
            )
        else:
            result = ScheduledJobResult(
                type=job_type,
                started_at=started_at,
                completed_at=utc_now(),
                items_queued=counts.items_queued,
                items_processed=counts.items_processed,
            )
            logger.info(
                "Scheduled job %s finished: queued=%s processed=%s",
                job_type.value,
                result.items_queued,
                result.items_processed,
            )
        with self._lock:
            self._last_results[job_type] = result
        return result

    def trigger_reanalysis(self) -> ScheduledJobResult:
        return self.trigger(ScheduledJobType.REANALYSIS)

    def trigger_connection_discovery(self) -> ScheduledJobResult:
        return self.trigger(ScheduledJobType.CONNECTION_DISCOVERY)

    def trigger_pattern_aggregation(self) -> ScheduledJobResult:
        return self.trigger(ScheduledJobType.PATTERN_AGGREGATION)

    def trigger_clustering(self) -> ScheduledJobResult:
        return self.trigger(ScheduledJobType.CLUSTERING)

    def trigger_embedding_backfill(self) -> ScheduledJobResult:
        return self.trigger(ScheduledJobType.EMBEDDING_BACKFILL)

    def _cron_loop(self, job_type: ScheduledJobType, expression: str) -> None:
        while not self._stop_event.is_set():
            next_run = get_next_run_times(expression, 1)[0]
            delay = (next_run - datetime.now().astimezone()).total_seconds()
            if self._stop_event.wait(timeout=max(0.0, delay)):
                return
            try:
                self.trigger(job_type)
            except Exception:
                logger.exception("Scheduler thread for %s error", job_type.value)

    def _enqueue_reanalysis(self) -> _Counts:
        current_version = self.nodes.latest_prompt_version()
        if current_version is None:
            logger.info("No prompt version registered yet, nothing to reanalyze")
            return _Counts(items_queued=0)
        candidates = self.nodes.list_reanalysis_candidates(
            current_version=current_version,
            limit=self.settings.reanalysis_limit,
        )
        job_ids = self.queue.enqueue_many(
            JobInput(
                job_type=JobType.REANALYSIS,
                session_file=node.session_file,
                priority=JobPriority.REANALYSIS,
                segment_start=node.segment_start,
                segment_end=node.segment_end,
                context=ReanalysisContext(existing_node_id=node.id, reason="prompt_update"),
            )
            for node in candidates
        )
        return _Counts(items_queued=len(job_ids))

    def _enqueue_connection_discovery(self) -> _Counts:
        candidates = self.nodes.list_connection_candidates(
            lookback_days=self.settings.connection_discovery_lookback_days,
            cooldown_hours=self.settings.connection_discovery_cooldown_hours,
            limit=self.settings.connection_discovery_limit,
        )
        job_ids = self.queue.enqueue_many(
            JobInput(
                job_type=JobType.CONNECTION_DISCOVERY,
                session_file=node.session_file,
                priority=JobPriority.CONNECTION_DISCOVERY,
                segment_start=node.segment_start,
                segment_end=node.segment_end,
                context=ConnectionDiscoveryContext(node_id=node.id, find_connections=True),
            )
            for node in candidates
        )
        return _Counts(items_queued=len(job_ids))

    def _aggregate_patterns(self) -> _Counts:
        patterns = self.collaborators.pattern_aggregator
        insights = self.collaborators.insight_aggregator
        if patterns is None and insights is None:
            logger.warning("Pattern aggregation skipped: no aggregators configured")
            return _Counts(items_processed=0)
        processed = 0
        if patterns is not None:
            processed += patterns.aggregate_failure_patterns()
            processed += patterns.aggregate_model_stats()
            processed += patterns.aggregate_lessons()
        if insights is not None:
            processed += insights.aggregate_all()
        return _Counts(items_processed=processed)

    def _run_clustering(self) -> _Counts:
        engine = self.collaborators.clustering_engine
        if engine is None:
            logger.warning("Clustering skipped: no clustering engine configured")
            return _Counts(items_processed=0)
        if self.embedding.credentials_missing:
            logger.warning(
                "Clustering skipped: embedding provider %s requires an API key",
                self.embedding.provider,
            )
            return _Counts(items_processed=0)

        run = engine.run()
        processed = run.clusters
        if self.settings.cluster_naming_enabled and run.clusters > 0:
            naming = engine.analyze_clusters(
                provider=self.naming_provider,
                model=self.naming_model,
            )
            if naming.failed:
                logger.warning("Cluster naming failed for %d clusters", naming.failed)
            processed += naming.succeeded
        return _Counts(items_processed=processed)

    def _backfill_embeddings(self) -> _Counts:
        backfiller = self.collaborators.embedding_backfiller
        if backfiller is None:
            logger.warning("Embedding backfill skipped: no backfiller configured")
            return _Counts(items_processed=0)
        if self.embedding.credentials_missing:
            logger.warning(
                "Embedding backfill skipped: embedding provider %s requires an API key",
                self.embedding.provider,
            )
            return _Counts(items_processed=0)

        result = backfiller.backfill(
            limit=self.settings.backfill_limit,
            batch_size=self.settings.backfill_batch_size,
        )
        if result.failure_count:
            logger.warning("Embedding backfill failed for %d nodes", result.failure_count)
        return _Counts(items_processed=result.success_count)


def is_valid_cron_expression(expression: str) -> bool:
    return bool(expression.strip()) and croniter.is_valid(expression.strip())


def get_next_run_times(
    expression: str,
    count: int = 5,
    *,
    start: datetime | None = None,
) -> list[datetime]:
    """Next ``count`` fire times in local time."""

    if not is_valid_cron_expression(expression):
        raise ValueError(f"Invalid cron expression: {expression!r}")
    iterator = croniter(expression.strip(), start or datetime.now().astimezone())
    return [iterator.get_next(datetime) for _ in range(count)]
