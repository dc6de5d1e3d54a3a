from __future__ import annotations

from pathlib import Path

import allure
import pytest

from session_brain.config import (
    AgentSettings,
    EmbeddingSettings,
    QueueSettings,
    SchedulerSettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Daemon Runtime"),
    allure.feature("Configuration"),
]


def test_defaults_keep_lease_longer_than_timeout() -> None:
    settings = Settings()

    assert settings.queue.lease_minutes > settings.agent.timeout_minutes
    assert settings.scheduler.embedding_backfill_schedule == ""
    settings.validate_for_daemon()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SESSION_BRAIN_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("SESSION_BRAIN_LOG_LEVEL", "debug")
    monkeypatch.setenv("SESSION_BRAIN_PARALLEL_WORKERS", "3")
    monkeypatch.setenv("SESSION_BRAIN_AGENT_COMMAND", "pi --verbose")
    monkeypatch.setenv("SESSION_BRAIN_ANALYSIS_TIMEOUT_MINUTES", "10")
    monkeypatch.setenv("SESSION_BRAIN_LEASE_MINUTES", "12.5")
    monkeypatch.setenv("SESSION_BRAIN_REANALYSIS_SCHEDULE", "")
    monkeypatch.setenv("SESSION_BRAIN_CLUSTER_NAMING_ENABLED", "off")
    monkeypatch.setenv("SESSION_BRAIN_EMBEDDING_PROVIDER", "OpenAI")
    monkeypatch.setenv("SESSION_BRAIN_EMBEDDING_API_KEY", "   ")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.log_level == "DEBUG"
    assert settings.worker.parallel_workers == 3
    assert settings.agent.command == "pi --verbose"
    assert settings.agent.timeout_minutes == 10
    assert settings.queue.lease_minutes == 12.5
    assert settings.scheduler.reanalysis_schedule == ""
    assert settings.scheduler.cluster_naming_enabled is False
    assert settings.embedding.provider == "openai"
    assert settings.embedding.api_key is None
    assert settings.embedding.credentials_missing is True


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SESSION_BRAIN_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("SESSION_BRAIN_CLUSTER_NAMING_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (
            Settings(
                queue=QueueSettings(lease_minutes=30),
                agent=AgentSettings(timeout_minutes=30),
            ),
            "SESSION_BRAIN_LEASE_MINUTES must be greater than",
        ),
        (Settings(worker=WorkerSettings(parallel_workers=0)), "SESSION_BRAIN_PARALLEL_WORKERS"),
        (Settings(worker=WorkerSettings(poll_interval_seconds=0)), "SESSION_BRAIN_POLL_INTERVAL"),
        (Settings(queue=QueueSettings(max_retries=-1)), "SESSION_BRAIN_MAX_RETRIES"),
        (Settings(queue=QueueSettings(retry_base_seconds=0)), "Retry delays"),
        (
            Settings(scheduler=SchedulerSettings(backfill_batch_size=0)),
            "SESSION_BRAIN_BACKFILL_BATCH_SIZE",
        ),
    ],
)
def test_validate_for_daemon_rejects_unsafe_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_daemon()


def test_schedule_warnings_name_invalid_expressions() -> None:
    settings = Settings(
        scheduler=SchedulerSettings(
            reanalysis_schedule="nightly",
            clustering_schedule="0 4 * * *",
            embedding_backfill_schedule="",
        ),
    )

    assert settings.schedule_warnings() == [
        "Invalid reanalysis schedule 'nightly'; trigger disabled.",
    ]


@pytest.mark.parametrize(
    ("provider", "api_key", "missing"),
    [
        ("openrouter", None, True),
        ("openai", "sk-1", False),
        ("ollama", None, False),
    ],
)
def test_embedding_credentials(provider: str, api_key: str | None, missing: bool) -> None:
    assert EmbeddingSettings(provider=provider, api_key=api_key).credentials_missing is missing
