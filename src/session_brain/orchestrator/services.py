"""Use-case services that put session analysis work on the queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from session_brain.orchestrator.models import (
    AnalysisJob,
    InitialContext,
    JobInput,
    JobPriority,
    JobType,
)
from session_brain.orchestrator.queue import QueueManager

logger = logging.getLogger(__name__)

SESSION_FILE_SUFFIX = ".jsonl"


@dataclass(slots=True)
class EnqueueSession:
    """Operator request to analyze one session file now."""

    session_file: Path
    priority: int = JobPriority.USER_TRIGGERED


@dataclass(slots=True)
class SessionIdle:
    """Notification that a session went quiet and its segment can be analyzed."""

    session_file: str
    segment_start: str | None = None
    segment_end: str | None = None
    boundary_type: str | None = None


class AnalysisService:
    """Validates and deduplicates analysis requests before enqueueing."""

    def __init__(self, *, queue: QueueManager) -> None:
        self.queue = queue

    def enqueue_session(self, command: EnqueueSession) -> AnalysisJob:
        """Queue a user-triggered analysis; raises ValueError on bad input."""

        session_file = command.session_file.expanduser().resolve()
        if not session_file.is_file():
            raise ValueError(f"Session file not found: {session_file}")
        if session_file.suffix != SESSION_FILE_SUFFIX:
            raise ValueError(f"Not a session file (expected {SESSION_FILE_SUFFIX}): {session_file}")
        if self.queue.has_existing_job(str(session_file)):
            raise ValueError("Session is already queued for analysis")

        job_id = self.queue.enqueue(
            JobInput(
                job_type=JobType.INITIAL,
                session_file=str(session_file),
                priority=command.priority,
                context=InitialContext(extra={"userTriggered": True}),
            ),
        )
        job = self.queue.get_job(job_id)
        if job is None:  # pragma: no cover - row was inserted above
            raise RuntimeError(f"Enqueued job disappeared: {job_id}")
        logger.info("Queued %s for analysis as job %s", session_file, job_id)
        return job

    def handle_session_idle(self, event: SessionIdle) -> str | None:
        """Queue initial analysis for an idle segment unless one is already pending."""

        if self.queue.has_existing_job(
            event.session_file,
            event.segment_start,
            event.segment_end,
        ):
            logger.debug("Skipping idle session %s: already queued", event.session_file)
            return None
        job_id = self.queue.enqueue(
            JobInput(
                job_type=JobType.INITIAL,
                session_file=event.session_file,
                priority=JobPriority.INITIAL,
                segment_start=event.segment_start,
                segment_end=event.segment_end,
                context=InitialContext(
                    boundary_type=event.boundary_type,
                    extra={"triggeredBy": "idle"},
                ),
            ),
        )
        logger.info("Queued idle session %s as job %s", event.session_file, job_id)
        return job_id
