from __future__ import annotations

import threading
from datetime import datetime

import allure
import pytest

from session_brain.config import EmbeddingSettings, SchedulerSettings
from session_brain.orchestrator.collaborators import (
    BackfillResult,
    ClusteringRun,
    ClusterNamingRun,
)
from session_brain.orchestrator.models import (
    ConnectionDiscoveryContext,
    JobPriority,
    JobType,
    ReanalysisContext,
    ScheduledJobType,
)
from session_brain.orchestrator.queue import QueueManager
from session_brain.orchestrator.scheduler import (
    Scheduler,
    SchedulerCollaborators,
    get_next_run_times,
    is_valid_cron_expression,
)
from session_brain.storage.database import Database
from session_brain.storage.nodes import NodeRepository

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Cron Triggers"),
]


class _Patterns:
    def aggregate_failure_patterns(self) -> int:
        return 3

    def aggregate_model_stats(self) -> int:
        return 2

    def aggregate_lessons(self) -> int:
        return 1


class _Insights:
    def aggregate_all(self) -> int:
        return 4


class _Clustering:
    def __init__(self) -> None:
        self.naming_calls: list[tuple[str, str]] = []
        self.runs = 0

    def run(self) -> ClusteringRun:
        self.runs += 1
        return ClusteringRun(clusters=5)

    def analyze_clusters(self, *, provider: str, model: str) -> ClusterNamingRun:
        self.naming_calls.append((provider, model))
        return ClusterNamingRun(succeeded=4, failed=1)


class _Backfiller:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int]] = []

    def backfill(self, *, limit: int, batch_size: int) -> BackfillResult:
        self.calls.append((limit, batch_size))
        return BackfillResult(success_count=7, failure_count=1)


class _ExplodingPatterns(_Patterns):
    def aggregate_lessons(self) -> int:
        raise RuntimeError("lessons table missing")


def _scheduler(
    database: Database,
    *,
    settings: SchedulerSettings | None = None,
    embedding: EmbeddingSettings | None = None,
    collaborators: SchedulerCollaborators | None = None,
) -> Scheduler:
    return Scheduler(
        queue=QueueManager(database),
        nodes=NodeRepository(database),
        settings=settings or SchedulerSettings(),
        embedding=embedding or EmbeddingSettings(provider="openrouter", api_key="sk-test"),
        naming_provider="zai",
        naming_model="glm-4.7",
        collaborators=collaborators,
    )


def test_invalid_cron_does_not_block_other_jobs(database: Database) -> None:
    scheduler = _scheduler(
        database,
        settings=SchedulerSettings(
            reanalysis_schedule="every night please",
            connection_discovery_schedule="*/5 * * * *",
            pattern_aggregation_schedule="",
            clustering_schedule="0 4 * * *",
            embedding_backfill_schedule="",
        ),
    )

    scheduler.start()
    try:
        status = scheduler.status()
    finally:
        scheduler.stop()

    assert status.running is True
    by_type = {job.type: job for job in status.jobs}
    assert by_type[ScheduledJobType.REANALYSIS].active is False
    assert by_type[ScheduledJobType.REANALYSIS].next_run is None
    assert by_type[ScheduledJobType.CONNECTION_DISCOVERY].active is True
    assert by_type[ScheduledJobType.CONNECTION_DISCOVERY].next_run is not None
    assert by_type[ScheduledJobType.CLUSTERING].active is True
    assert by_type[ScheduledJobType.PATTERN_AGGREGATION].active is False
    assert scheduler.running is False


def test_status_is_safe_to_poll_while_starting_and_stopping(database: Database) -> None:
    scheduler = _scheduler(
        database,
        settings=SchedulerSettings(
            reanalysis_schedule="0 2 * * *",
            connection_discovery_schedule="0 3 * * *",
            pattern_aggregation_schedule="0 4 * * *",
            clustering_schedule="",
            embedding_backfill_schedule="",
        ),
    )
    done = threading.Event()
    errors: list[BaseException] = []

    def _poll_status() -> None:
        while not done.is_set():
            try:
                scheduler.status()
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)
                return

    reader = threading.Thread(target=_poll_status)
    reader.start()
    try:
        for _ in range(20):
            scheduler.start()
            scheduler.stop()
    finally:
        done.set()
        reader.join(timeout=10)

    assert errors == []
    assert not any(job.active for job in scheduler.status().jobs)


def test_reanalysis_without_prompt_version_queues_nothing(database: Database, seed_node) -> None:
    seed_node("/s/a.jsonl")

    result = _scheduler(database).trigger_reanalysis()

    assert result.error is None
    assert result.items_queued == 0


def test_reanalysis_enqueues_stale_nodes_once(database: Database, seed_node) -> None:
    current = NodeRepository(database).register_prompt_version("current prompt")
    stale = seed_node("/s/stale.jsonl", analyzer_version="v0-outdated")
    seed_node("/s/fresh.jsonl", analyzer_version=current)
    scheduler = _scheduler(database)

    first = scheduler.trigger_reanalysis()
    second = scheduler.trigger_reanalysis()

    assert first.items_queued == 1
    assert second.items_queued == 0
    [job] = QueueManager(database).get_pending_jobs()
    assert job.job_type == JobType.REANALYSIS
    assert job.priority == JobPriority.REANALYSIS
    assert job.session_file == "/s/stale.jsonl"
    assert job.context == ReanalysisContext(existing_node_id=stale, reason="prompt_update")


def test_connection_discovery_respects_limit_and_dedup(database: Database, seed_node) -> None:
    for index in range(3):
        seed_node(f"/s/{index}.jsonl")
    scheduler = _scheduler(database, settings=SchedulerSettings(connection_discovery_limit=2))

    first = scheduler.trigger_connection_discovery()
    second = scheduler.trigger_connection_discovery()
    third = scheduler.trigger_connection_discovery()

    assert (first.items_queued, second.items_queued, third.items_queued) == (2, 1, 0)
    pending = QueueManager(database).get_pending_jobs()
    assert len(pending) == 3
    assert {job.priority for job in pending} == {JobPriority.CONNECTION_DISCOVERY}
    assert all(isinstance(job.context, ConnectionDiscoveryContext) for job in pending)


def test_pattern_aggregation_sums_collaborators(database: Database) -> None:
    scheduler = _scheduler(
        database,
        collaborators=SchedulerCollaborators(
            pattern_aggregator=_Patterns(),
            insight_aggregator=_Insights(),
        ),
    )

    result = scheduler.trigger_pattern_aggregation()

    assert result.items_processed == 10
    assert result.items_queued is None
    assert QueueManager(database).get_stats().total == 0


def test_direct_triggers_without_collaborators_degrade(database: Database) -> None:
    scheduler = _scheduler(database)

    for result in (
        scheduler.trigger_pattern_aggregation(),
        scheduler.trigger_clustering(),
        scheduler.trigger_embedding_backfill(),
    ):
        assert result.error is None
        assert result.items_processed == 0


def test_clustering_runs_and_names_clusters(database: Database) -> None:
    engine = _Clustering()
    scheduler = _scheduler(database, collaborators=SchedulerCollaborators(clustering_engine=engine))

    result = scheduler.trigger_clustering()

    assert result.items_processed == 9
    assert engine.naming_calls == [("zai", "glm-4.7")]


def test_clustering_naming_can_be_disabled(database: Database) -> None:
    engine = _Clustering()
    scheduler = _scheduler(
        database,
        settings=SchedulerSettings(cluster_naming_enabled=False),
        collaborators=SchedulerCollaborators(clustering_engine=engine),
    )

    assert scheduler.trigger_clustering().items_processed == 5
    assert engine.naming_calls == []


def test_missing_embedding_credentials_skip_clustering_and_backfill(database: Database) -> None:
    engine = _Clustering()
    backfiller = _Backfiller()
    scheduler = _scheduler(
        database,
        embedding=EmbeddingSettings(provider="openai", api_key=None),
        collaborators=SchedulerCollaborators(
            clustering_engine=engine,
            embedding_backfiller=backfiller,
        ),
    )

    clustering = scheduler.trigger_clustering()
    backfill = scheduler.trigger_embedding_backfill()

    assert (clustering.items_processed, clustering.error) == (0, None)
    assert (backfill.items_processed, backfill.error) == (0, None)
    assert engine.runs == 0
    assert backfiller.calls == []


def test_local_embedding_provider_needs_no_key(database: Database) -> None:
    backfiller = _Backfiller()
    scheduler = _scheduler(
        database,
        settings=SchedulerSettings(backfill_limit=50, backfill_batch_size=5),
        embedding=EmbeddingSettings(provider="ollama", api_key=None),
        collaborators=SchedulerCollaborators(embedding_backfiller=backfiller),
    )

    result = scheduler.trigger_embedding_backfill()

    assert result.items_processed == 7
    assert backfiller.calls == [(50, 5)]


def test_trigger_failure_is_recorded_in_status(database: Database) -> None:
    scheduler = _scheduler(
        database,
        collaborators=SchedulerCollaborators(pattern_aggregator=_ExplodingPatterns()),
    )

    result = scheduler.trigger_pattern_aggregation()

    assert result.error == "lessons table missing"
    by_type = {job.type: job for job in scheduler.status().jobs}
    pattern_status = by_type[ScheduledJobType.PATTERN_AGGREGATION]
    assert pattern_status.last_result == result
    assert pattern_status.last_run == result.started_at
    assert by_type[ScheduledJobType.CLUSTERING].last_result is None


def test_cron_helpers() -> None:
    start = datetime(2026, 10, 17, 1, 30).astimezone()

    runs = get_next_run_times("0 2 * * *", 3, start=start)

    assert [run.hour for run in runs] == [2, 2, 2]
    assert [run.day for run in runs] == [17, 18, 19]
    assert is_valid_cron_expression("*/15 * * * *") is True
    assert is_valid_cron_expression("") is False
    assert is_valid_cron_expression("61 * * * *") is False
    with pytest.raises(ValueError, match="Invalid cron expression"):
        get_next_run_times("not cron")
