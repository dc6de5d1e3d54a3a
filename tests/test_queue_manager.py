from __future__ import annotations

import queue
import threading
import time
from datetime import timedelta

import allure
import pytest

from session_brain.orchestrator.models import (
    ConnectionDiscoveryContext,
    InitialContext,
    JobInput,
    JobPriority,
    JobStatus,
    JobType,
    ReanalysisContext,
)
from session_brain.orchestrator.queue import QueueManager, QueueOperationError
from session_brain.storage.common import utc_now
from session_brain.storage.database import Database

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Leases & Ordering"),
]


def _initial(session_file: str = "/sessions/a.jsonl", **kwargs) -> JobInput:
    return JobInput(job_type=JobType.INITIAL, session_file=session_file, **kwargs)


def test_enqueue_defaults_to_initial_priority_and_policy_retries(
    queue_manager: QueueManager,
) -> None:
    job_id = queue_manager.enqueue(_initial())

    job = queue_manager.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.priority == JobPriority.INITIAL
    assert job.max_retries == 3
    assert job.retry_count == 0
    assert job.worker_id is None
    assert job.locked_until is None
    assert isinstance(job.context, InitialContext)


def test_enqueue_rejects_negative_priority_and_retries(queue_manager: QueueManager) -> None:
    with pytest.raises(ValueError, match="priority"):
        queue_manager.enqueue(_initial(priority=-1))
    with pytest.raises(ValueError, match="max_retries"):
        queue_manager.enqueue(_initial(max_retries=-1))
    assert queue_manager.get_stats().total == 0


def test_context_round_trips_with_wire_keys(queue_manager: QueueManager) -> None:
    reanalysis_id = queue_manager.enqueue(
        JobInput(
            job_type=JobType.REANALYSIS,
            session_file="/sessions/a.jsonl",
            priority=JobPriority.REANALYSIS,
            context=ReanalysisContext(existing_node_id="node-1", extra={"note": "x"}),
        ),
    )
    discovery_id = queue_manager.enqueue(
        JobInput(
            job_type=JobType.CONNECTION_DISCOVERY,
            session_file="/sessions/a.jsonl",
            context=ConnectionDiscoveryContext(node_id="node-2"),
        ),
    )

    reanalysis = queue_manager.get_job(reanalysis_id)
    discovery = queue_manager.get_job(discovery_id)
    assert reanalysis is not None and discovery is not None
    assert reanalysis.context == ReanalysisContext(
        existing_node_id="node-1",
        reason="prompt_update",
        extra={"note": "x"},
    )
    assert discovery.context == ConnectionDiscoveryContext(node_id="node-2", find_connections=True)


def test_reanalysis_requires_explicit_context(queue_manager: QueueManager) -> None:
    with pytest.raises(ValueError, match="ReanalysisContext"):
        queue_manager.enqueue(JobInput(job_type=JobType.REANALYSIS, session_file="/s.jsonl"))


def test_dequeue_orders_by_priority_then_queue_time(queue_manager: QueueManager) -> None:
    low = queue_manager.enqueue(_initial("/s/low.jsonl", priority=300))
    high = queue_manager.enqueue(_initial("/s/high.jsonl", priority=100))
    middle = queue_manager.enqueue(_initial("/s/middle.jsonl", priority=200))
    high_later = queue_manager.enqueue(_initial("/s/high-later.jsonl", priority=100))

    claimed = [queue_manager.dequeue("worker-1") for _ in range(4)]

    assert [job.id for job in claimed if job is not None] == [high, high_later, middle, low]
    assert queue_manager.dequeue("worker-1") is None


def test_jobs_queued_in_the_same_instant_keep_insertion_order(
    queue_manager: QueueManager,
    monkeypatch,
) -> None:
    frozen = utc_now() - timedelta(seconds=1)
    monkeypatch.setattr("session_brain.orchestrator.queue.utc_now", lambda: frozen)
    single = [queue_manager.enqueue(_initial(f"/s/single-{index}.jsonl")) for index in range(5)]
    batch = queue_manager.enqueue_many(_initial(f"/s/batch-{index}.jsonl") for index in range(5))
    expected = single + batch

    assert [job.id for job in queue_manager.get_pending_jobs()] == expected
    claimed = [queue_manager.dequeue("worker-1") for _ in expected]
    assert [job.id for job in claimed if job is not None] == expected


def test_dequeue_sets_lease_and_worker(database: Database) -> None:
    manager = QueueManager(database, lease_minutes=35)
    job_id = manager.enqueue(_initial())

    before = utc_now()
    job = manager.dequeue("worker-7")

    assert job is not None
    assert job.id == job_id
    assert job.status == JobStatus.RUNNING
    assert job.worker_id == "worker-7"
    assert job.started_at is not None
    assert job.locked_until is not None
    assert job.locked_until - before >= timedelta(minutes=34)


def test_concurrent_dequeue_never_claims_a_job_twice(database: Database) -> None:
    job_ids = {
        QueueManager(database).enqueue(_initial(f"/s/{index}.jsonl")) for index in range(20)
    }
    start_event = threading.Event()
    results: queue.Queue[tuple[str, str]] = queue.Queue()

    def _claim_all(worker_id: str) -> None:
        manager = QueueManager(database)
        start_event.wait(timeout=5)
        while True:
            job = manager.dequeue(worker_id)
            if job is None:
                return
            results.put((worker_id, job.id))

    threads = [
        threading.Thread(target=_claim_all, args=(f"worker-{index}",)) for index in range(4)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=30)

    claimed: list[str] = []
    while not results.empty():
        claimed.append(results.get()[1])
    assert len(claimed) == len(set(claimed))
    assert set(claimed) == job_ids


def test_complete_only_applies_to_running_jobs(queue_manager: QueueManager) -> None:
    job_id = queue_manager.enqueue(_initial())
    assert queue_manager.complete(job_id, "node-1") is False

    queue_manager.dequeue("worker-1")
    assert queue_manager.complete(job_id, "node-1") is True
    assert queue_manager.complete(job_id, "node-2") is False

    job = queue_manager.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.result_node_id == "node-1"
    assert job.completed_at is not None
    assert job.locked_until is None
    assert job.worker_id is None


def test_retryable_failure_requeues_with_delay(queue_manager: QueueManager) -> None:
    job_id = queue_manager.enqueue(_initial())
    queue_manager.dequeue("worker-1")

    assert queue_manager.fail(
        job_id,
        "rate limit",
        retryable=True,
        next_run_at=utc_now() + timedelta(minutes=5),
    )

    job = queue_manager.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    assert job.error == "rate limit"
    assert job.locked_until is None
    assert queue_manager.dequeue("worker-1") is None


def test_retryable_failure_without_delay_is_claimable_again(queue_manager: QueueManager) -> None:
    job_id = queue_manager.enqueue(_initial())
    queue_manager.dequeue("worker-1")
    queue_manager.fail(job_id, "connection reset", retryable=True)

    job = queue_manager.dequeue("worker-2")
    assert job is not None
    assert job.id == job_id
    assert job.retry_count == 1


def test_retry_budget_exhaustion_marks_failed(queue_manager: QueueManager) -> None:
    job_id = queue_manager.enqueue(_initial(max_retries=1))
    queue_manager.dequeue("worker-1")
    queue_manager.fail(job_id, "timeout", retryable=True)
    queue_manager.dequeue("worker-1")
    queue_manager.fail(job_id, "timeout", retryable=True)

    job = queue_manager.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 1
    assert job.completed_at is not None


def test_non_retryable_failure_is_terminal_and_fail_needs_running(
    queue_manager: QueueManager,
) -> None:
    job_id = queue_manager.enqueue(_initial())
    assert queue_manager.fail(job_id, "ENOENT", retryable=False) is False

    queue_manager.dequeue("worker-1")
    assert queue_manager.fail(job_id, "ENOENT", retryable=False) is True

    job = queue_manager.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 0


def test_release_stale_recovers_expired_lease_without_counting_retry(database: Database) -> None:
    manager = QueueManager(database, lease_minutes=0.0005)
    job_id = manager.enqueue(_initial())
    manager.dequeue("worker-1")
    time.sleep(0.1)

    assert manager.release_stale() == 1

    job = manager.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 0
    assert job.worker_id is None
    assert job.started_at is None
    reclaimed = manager.dequeue("worker-2")
    assert reclaimed is not None
    assert reclaimed.id == job_id


def test_release_stale_keeps_live_leases(queue_manager: QueueManager) -> None:
    queue_manager.enqueue(_initial())
    queue_manager.dequeue("worker-1")

    assert queue_manager.release_stale() == 0
    assert queue_manager.get_stats().running == 1


def test_release_all_running_ignores_lease_expiry(queue_manager: QueueManager) -> None:
    for index in range(3):
        queue_manager.enqueue(_initial(f"/s/{index}.jsonl"))
    queue_manager.dequeue("worker-1")
    queue_manager.dequeue("worker-2")

    assert queue_manager.release_all_running() == 2

    stats = queue_manager.get_stats()
    assert stats.running == 0
    assert stats.pending == 3


def test_has_existing_job_tracks_active_jobs_only(queue_manager: QueueManager) -> None:
    session = "/sessions/dedup.jsonl"
    assert queue_manager.has_existing_job(session) is False

    job_id = queue_manager.enqueue(_initial(session, segment_start="e-1", segment_end="e-9"))
    assert queue_manager.has_existing_job(session) is True
    assert queue_manager.has_existing_job(session, "e-1", "e-9") is True
    assert queue_manager.has_existing_job(session, "e-10", "e-20") is False

    queue_manager.dequeue("worker-1")
    assert queue_manager.has_existing_job(session) is True

    queue_manager.complete(job_id, "node-1")
    assert queue_manager.has_existing_job(session) is False


def test_stats_and_daily_stats(queue_manager: QueueManager) -> None:
    done = queue_manager.enqueue(_initial("/s/done.jsonl"))
    broken = queue_manager.enqueue(_initial("/s/broken.jsonl"))
    queue_manager.enqueue(_initial("/s/waiting.jsonl"))
    queue_manager.dequeue("worker-1")
    queue_manager.complete(done, "node-1")
    queue_manager.dequeue("worker-1")
    queue_manager.fail(broken, "ENOENT", retryable=False)

    stats = queue_manager.get_stats()
    assert (stats.pending, stats.running, stats.completed, stats.failed) == (1, 0, 1, 1)
    assert stats.total == 3
    assert stats.avg_duration_minutes is not None
    assert stats.avg_duration_minutes >= 0

    daily = queue_manager.get_daily_stats()
    assert daily.completed_today == 1
    assert daily.failed_today == 1
    tomorrow = queue_manager.get_daily_stats(now=utc_now() + timedelta(days=1))
    assert tomorrow.completed_today == 0

    summary = queue_manager.get_queue_status_summary()
    assert [job.session_file for job in summary.pending_jobs] == ["/s/waiting.jsonl"]
    assert [job.id for job in summary.recent_failed] == [broken]
    assert summary.running_jobs == []


def test_manual_retry_resets_budget(queue_manager: QueueManager) -> None:
    job_id = queue_manager.enqueue(_initial(max_retries=0))
    queue_manager.dequeue("worker-1")
    queue_manager.fail(job_id, "timeout", retryable=True)

    queue_manager.retry_job(job_id)

    job = queue_manager.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 0
    assert job.error is None
    assert job.completed_at is None


def test_manual_retry_and_cancel_refuse_wrong_state(queue_manager: QueueManager) -> None:
    job_id = queue_manager.enqueue(_initial())

    with pytest.raises(QueueOperationError, match="Only failed jobs can be retried"):
        queue_manager.retry_job(job_id)
    with pytest.raises(QueueOperationError, match="Job not found"):
        queue_manager.cancel_job("missing")

    queue_manager.dequeue("worker-1")
    with pytest.raises(QueueOperationError, match="status=running"):
        queue_manager.cancel_job(job_id)


def test_cancel_and_clear(queue_manager: QueueManager) -> None:
    first = queue_manager.enqueue(_initial("/s/a.jsonl"))
    queue_manager.enqueue(_initial("/s/b.jsonl"))
    queue_manager.enqueue(_initial("/s/b.jsonl", segment_start="e-2"))
    done = queue_manager.enqueue(_initial("/s/c.jsonl", priority=0))
    queue_manager.dequeue("worker-1")
    queue_manager.complete(done, "node-1")

    queue_manager.cancel_job(first)
    assert queue_manager.get_job(first) is None
    assert queue_manager.cancel_jobs_for_session("/s/b.jsonl") == 2

    assert queue_manager.clear_old_completed(days=7) == 0
    assert queue_manager.clear_old_completed(days=0) == 1
    assert queue_manager.get_stats().total == 0

    queue_manager.enqueue(_initial("/s/d.jsonl"))
    assert queue_manager.clear_all() == 1


def test_jobs_for_session_and_pending_listing(queue_manager: QueueManager) -> None:
    queue_manager.enqueue(_initial("/s/a.jsonl", priority=200))
    queue_manager.enqueue(_initial("/s/a.jsonl", segment_start="e-5", priority=100))
    queue_manager.enqueue(_initial("/s/b.jsonl"))

    assert len(queue_manager.get_jobs_for_session("/s/a.jsonl")) == 2
    pending = queue_manager.get_pending_jobs(limit=2)
    assert [job.priority for job in pending] == [100, 100]
