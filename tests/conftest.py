"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from session_brain.config import Settings
from session_brain.orchestrator.invoker import AgentInvoker
from session_brain.orchestrator.models import JobInput, JobType
from session_brain.orchestrator.queue import QueueManager
from session_brain.storage.database import Database
from session_brain.storage.nodes import NodeRepository

ECHO_AGENT_COMMAND = f"{sys.executable} -m session_brain.orchestrator.echo_agent"


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[Database]:
    database = Database.open(tmp_path / "brain.db")
    try:
        yield database
    finally:
        database.close()


@pytest.fixture()
def queue_manager(database: Database) -> QueueManager:
    return QueueManager(database)


@pytest.fixture()
def prompt_file(tmp_path: Path) -> Path:
    path = tmp_path / "prompts" / "session-analyzer.md"
    path.parent.mkdir(parents=True)
    path.write_text("You analyze pi coding sessions.\n", encoding="utf-8")
    return path


@pytest.fixture()
def session_file(tmp_path: Path) -> Path:
    path = tmp_path / "sessions" / "2026-10-17_session.jsonl"
    path.parent.mkdir(parents=True)
    path.write_text(
        "\n".join(
            json.dumps(entry)
            for entry in (
                {"type": "session", "id": "s-1", "cwd": "/work/project"},
                {"type": "message", "id": "e-1", "role": "user", "text": "fix the tests"},
                {"type": "message", "id": "e-2", "role": "assistant", "text": "done"},
            )
        )
        + "\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture()
def echo_invoker(tmp_path: Path, prompt_file: Path) -> AgentInvoker:
    return AgentInvoker(
        command=ECHO_AGENT_COMMAND,
        provider="zai",
        model="glm-4.7",
        prompt_file=prompt_file,
        timeout_minutes=1,
        skills_dir=tmp_path / "skills",
        terminate_grace_seconds=2,
    )


@pytest.fixture()
def echo_agent(monkeypatch, tmp_path: Path, prompt_file: Path) -> None:
    """Monkeypatch Settings.from_env to run the local echo agent."""
    original_from_env = Settings.from_env

    def _patched_from_env(db_path=None):
        settings = original_from_env(db_path=db_path)
        agent = replace(
            settings.agent,
            command=ECHO_AGENT_COMMAND,
            prompt_file=prompt_file,
            skills_dir=tmp_path / "skills",
        )
        return replace(settings, agent=agent)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))


NODE_DATA = {
    "classification": {"type": "coding", "project": "brain"},
    "content": {"summary": "Refactored the queue", "outcome": "success"},
    "lessons": {},
    "observations": {},
    "semantic": {},
    "daemonMeta": {},
}


@pytest.fixture()
def seed_node(database: Database):
    """Store a node through a completed initial job and return its id."""

    def _seed(
        session_file: str,
        *,
        analyzer_version: str | None = "v1-aaaaaaaa",
        segment_start: str | None = None,
    ) -> str:
        queue_manager = QueueManager(database)
        queue_manager.enqueue(
            JobInput(
                job_type=JobType.INITIAL,
                session_file=session_file,
                segment_start=segment_start,
                priority=0,
            ),
        )
        job = queue_manager.dequeue("seed")
        assert job is not None
        node_id = NodeRepository(database).create_node(
            job,
            NODE_DATA,
            analyzer_version=analyzer_version,
            analysis_duration_ms=1200,
        )
        queue_manager.complete(job.id, node_id)
        return node_id

    return _seed
