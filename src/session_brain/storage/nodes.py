"""Minimal node index: analysis results and the prompt versions that produced them."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from session_brain.orchestrator.models import (
    AnalysisJob,
    JobStatus,
    JobType,
    ReanalysisContext,
)
from session_brain.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from session_brain.storage.database import Database
from session_brain.storage.sqlmodel_models import AnalysisJobRow, NodeRow, PromptVersionRow

_ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


@dataclass(slots=True)
class NodeTarget:
    """Node selected by a scheduler trigger."""

    id: str
    session_file: str
    segment_start: str | None
    segment_end: str | None


@dataclass(slots=True)
class NodeView:
    id: str
    session_file: str
    segment_start: str | None
    segment_end: str | None
    node_type: str
    project: str
    summary: str
    outcome: str
    analyzer_version: str | None
    analyzed_at: datetime
    analysis_duration_ms: int | None
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime | None


class NodeRepository:
    """Upserts agent output into ``nodes`` and answers trigger eligibility queries."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.engine = database.engine

    def create_node(
        self,
        job: AnalysisJob,
        node_data: dict[str, Any],
        *,
        analyzer_version: str | None,
        analysis_duration_ms: int,
    ) -> str:
        """Insert or overwrite the node a job describes and return its id.

        Reanalysis overwrites the existing node; other jobs key the node on
        session file and segment, so re-running a job replaces its own result.
        """

        node_id = _node_id_for_job(job)
        now = utc_now()
        classification = node_data["classification"]
        content = node_data["content"]
        with Session(self.engine) as session:
            row = session.get(NodeRow, node_id)
            if row is None:
                row = NodeRow(
                    id=node_id,
                    session_file=job.session_file,
                    node_type=str(classification["type"]),
                    project=str(classification["project"]),
                    summary=str(content["summary"]),
                    outcome=str(content["outcome"]),
                    analyzed_at=to_db_datetime(now),
                    payload="{}",
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
            row.segment_start = job.segment_start
            row.segment_end = job.segment_end
            row.node_type = str(classification["type"])
            row.project = str(classification["project"])
            row.summary = str(content["summary"])
            row.outcome = str(content["outcome"])
            row.analyzer_version = analyzer_version
            row.analyzed_at = to_db_datetime(now)
            row.analysis_duration_ms = analysis_duration_ms
            row.payload = json.dumps(node_data, ensure_ascii=False, sort_keys=True)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
        return node_id

    def get_node(self, node_id: str) -> NodeView | None:
        with Session(self.engine) as session:
            row = session.get(NodeRow, node_id)
            return _to_node_view(row) if row is not None else None

    def count_nodes(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(NodeRow)).one())

    def register_prompt_version(self, prompt_text: str, *, prompt_path: Path | None = None) -> str:
        """Return the version for this prompt text, registering it when new.

        Concurrent callers with the same text all get the one stored version.
        """

        content_hash = hashlib.sha256(prompt_text.encode("utf-8")).hexdigest()
        with Session(self.engine) as session:
            existing = self._prompt_version_for_hash(session, content_hash)
            if existing is not None:
                return existing
            count = session.exec(select(func.count()).select_from(PromptVersionRow)).one()
            session.exec(
                sqlite_insert(PromptVersionRow)
                .values(
                    version=f"v{int(count) + 1}-{content_hash[:8]}",
                    content_hash=content_hash,
                    prompt_path=str(prompt_path) if prompt_path is not None else None,
                    created_at=to_db_datetime(utc_now()),
                )
                .on_conflict_do_nothing(),
            )
            session.commit()
            stored = self._prompt_version_for_hash(session, content_hash)
        if stored is None:  # pragma: no cover - the insert or a concurrent one stored it
            raise RuntimeError(f"Prompt version for {content_hash[:8]} was not stored")
        return stored

    @staticmethod
    def _prompt_version_for_hash(session: Session, content_hash: str) -> str | None:
        return session.exec(
            select(PromptVersionRow.version).where(PromptVersionRow.content_hash == content_hash),
        ).one_or_none()

    def latest_prompt_version(self) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(PromptVersionRow)
                .order_by(
                    col(PromptVersionRow.created_at).desc(),
                    col(PromptVersionRow.version).desc(),
                )
                .limit(1),
            ).first()
            return row.version if row is not None else None

    def list_reanalysis_candidates(self, *, current_version: str, limit: int) -> list[NodeTarget]:
        """Nodes from an older prompt that no active reanalysis job targets, newest first."""

        active_job = (
            select(AnalysisJobRow.id)
            .where(
                col(AnalysisJobRow.job_type) == JobType.REANALYSIS.value,
                col(AnalysisJobRow.status).in_(_ACTIVE_STATUSES),
                col(AnalysisJobRow.target_node_id) == col(NodeRow.id),
            )
            .exists()
        )
        statement = (
            select(NodeRow)
            .where(
                or_(
                    col(NodeRow.analyzer_version).is_(None),
                    col(NodeRow.analyzer_version) != current_version,
                ),
                ~active_job,
            )
            .order_by(col(NodeRow.analyzed_at).desc())
            .limit(limit)
        )
        return self._targets(statement)

    def list_connection_candidates(
        self,
        *,
        lookback_days: int,
        cooldown_hours: int,
        limit: int,
        now: datetime | None = None,
    ) -> list[NodeTarget]:
        """Recently analyzed nodes without an active or cooled-down discovery job."""

        current = now or utc_now()
        analyzed_after = to_db_datetime(current - timedelta(days=lookback_days))
        cooldown_after = to_db_datetime(current - timedelta(hours=cooldown_hours))
        blocking_job = (
            select(AnalysisJobRow.id)
            .where(
                col(AnalysisJobRow.job_type) == JobType.CONNECTION_DISCOVERY.value,
                col(AnalysisJobRow.target_node_id) == col(NodeRow.id),
                or_(
                    col(AnalysisJobRow.status).in_(_ACTIVE_STATUSES),
                    and_(
                        col(AnalysisJobRow.status) == JobStatus.COMPLETED.value,
                        col(AnalysisJobRow.completed_at) > cooldown_after,
                    ),
                ),
            )
            .exists()
        )
        statement = (
            select(NodeRow)
            .where(col(NodeRow.analyzed_at) > analyzed_after, ~blocking_job)
            .order_by(col(NodeRow.analyzed_at).desc())
            .limit(limit)
        )
        return self._targets(statement)

    def _targets(self, statement) -> list[NodeTarget]:
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            NodeTarget(
                id=row.id,
                session_file=row.session_file,
                segment_start=row.segment_start,
                segment_end=row.segment_end,
            )
            for row in rows
        ]


def _node_id_for_job(job: AnalysisJob) -> str:
    if isinstance(job.context, ReanalysisContext) and job.context.existing_node_id:
        return job.context.existing_node_id
    key = "\x1f".join((job.session_file, job.segment_start or "", job.segment_end or ""))
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def _to_node_view(row: NodeRow) -> NodeView:
    return NodeView(
        id=row.id,
        session_file=row.session_file,
        segment_start=row.segment_start,
        segment_end=row.segment_end,
        node_type=row.node_type,
        project=row.project,
        summary=row.summary,
        outcome=row.outcome,
        analyzer_version=row.analyzer_version,
        analyzed_at=to_utc_aware_datetime(row.analyzed_at),
        analysis_duration_ms=row.analysis_duration_ms,
        payload=json.loads(row.payload),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=optional_utc(row.updated_at),
    )
