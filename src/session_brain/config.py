"""Runtime configuration for the analysis daemon."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from croniter import croniter

_HOME = Path.home()
DEFAULT_DB_PATH = _HOME / ".pi-brain" / "data" / "brain.db"
DEFAULT_PROMPT_FILE = _HOME / ".pi-brain" / "prompts" / "session-analyzer.md"
DEFAULT_SKILLS_DIR = _HOME / "skills"
CREDENTIALED_EMBEDDING_PROVIDERS = frozenset({"openai", "openrouter"})


@dataclass(slots=True)
class QueueSettings:
    """Lease and retry policy for the job queue."""

    lease_minutes: float = 35.0
    stale_sweep_interval_minutes: float = 15.0
    max_retries: int = 3
    retry_base_seconds: int = 60
    retry_max_seconds: int = 3600
    retry_backoff_multiplier: float = 2.0


@dataclass(slots=True)
class AgentSettings:
    """External agent executable invocation."""

    command: str = "pi"
    provider: str = "zai"
    model: str = "glm-4.7"
    prompt_file: Path = DEFAULT_PROMPT_FILE
    timeout_minutes: float = 30.0
    skills_dir: Path = DEFAULT_SKILLS_DIR
    rlm_size_threshold_bytes: int = 500 * 1024
    terminate_grace_seconds: float = 10.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool settings."""

    parallel_workers: int = 1
    poll_interval_seconds: float = 5.0
    worker_id_prefix: str = "worker"


@dataclass(slots=True)
class SchedulerSettings:
    """Cron schedules and batch limits; an empty schedule disables the trigger."""

    reanalysis_schedule: str = "0 2 * * *"
    connection_discovery_schedule: str = "0 3 * * *"
    pattern_aggregation_schedule: str = "0 3 * * *"
    clustering_schedule: str = "0 4 * * *"
    embedding_backfill_schedule: str = ""
    reanalysis_limit: int = 100
    connection_discovery_limit: int = 100
    connection_discovery_lookback_days: int = 7
    connection_discovery_cooldown_hours: int = 24
    backfill_limit: int = 100
    backfill_batch_size: int = 10
    cluster_naming_enabled: bool = True


@dataclass(slots=True)
class EmbeddingSettings:
    """Embedding provider used by clustering and backfill collaborators."""

    provider: str = "openrouter"
    model: str = "qwen/qwen3-embedding-8b"
    api_key: str | None = None
    base_url: str | None = None

    @property
    def credentials_missing(self) -> bool:
        return self.provider in CREDENTIALED_EMBEDDING_PROVIDERS and not self.api_key


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = DEFAULT_DB_PATH
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a local install."""

        return cls(
            db_path=db_path
            or Path(os.getenv("SESSION_BRAIN_DB_PATH", str(DEFAULT_DB_PATH))).expanduser(),
            sqlite_busy_timeout_ms=int(os.getenv("SESSION_BRAIN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("SESSION_BRAIN_LOG_LEVEL", "INFO").upper(),
            queue=QueueSettings(
                lease_minutes=float(os.getenv("SESSION_BRAIN_LEASE_MINUTES", "35")),
                stale_sweep_interval_minutes=float(
                    os.getenv("SESSION_BRAIN_STALE_SWEEP_INTERVAL_MINUTES", "15"),
                ),
                max_retries=int(os.getenv("SESSION_BRAIN_MAX_RETRIES", "3")),
                retry_base_seconds=int(os.getenv("SESSION_BRAIN_RETRY_BASE_SECONDS", "60")),
                retry_max_seconds=int(os.getenv("SESSION_BRAIN_RETRY_MAX_SECONDS", "3600")),
                retry_backoff_multiplier=float(
                    os.getenv("SESSION_BRAIN_RETRY_BACKOFF_MULTIPLIER", "2.0"),
                ),
            ),
            agent=AgentSettings(
                command=os.getenv("SESSION_BRAIN_AGENT_COMMAND", "pi"),
                provider=os.getenv("SESSION_BRAIN_AGENT_PROVIDER", "zai"),
                model=os.getenv("SESSION_BRAIN_AGENT_MODEL", "glm-4.7"),
                prompt_file=Path(
                    os.getenv("SESSION_BRAIN_PROMPT_FILE", str(DEFAULT_PROMPT_FILE)),
                ).expanduser(),
                timeout_minutes=float(os.getenv("SESSION_BRAIN_ANALYSIS_TIMEOUT_MINUTES", "30")),
                skills_dir=Path(
                    os.getenv("SESSION_BRAIN_SKILLS_DIR", str(DEFAULT_SKILLS_DIR)),
                ).expanduser(),
                rlm_size_threshold_bytes=int(
                    os.getenv("SESSION_BRAIN_RLM_SIZE_THRESHOLD_BYTES", str(500 * 1024)),
                ),
                terminate_grace_seconds=float(
                    os.getenv("SESSION_BRAIN_TERMINATE_GRACE_SECONDS", "10"),
                ),
            ),
            worker=WorkerSettings(
                parallel_workers=int(os.getenv("SESSION_BRAIN_PARALLEL_WORKERS", "1")),
                poll_interval_seconds=float(
                    os.getenv("SESSION_BRAIN_POLL_INTERVAL_SECONDS", "5"),
                ),
                worker_id_prefix=os.getenv("SESSION_BRAIN_WORKER_ID_PREFIX", "worker"),
            ),
            scheduler=SchedulerSettings(
                reanalysis_schedule=os.getenv("SESSION_BRAIN_REANALYSIS_SCHEDULE", "0 2 * * *"),
                connection_discovery_schedule=os.getenv(
                    "SESSION_BRAIN_CONNECTION_DISCOVERY_SCHEDULE",
                    "0 3 * * *",
                ),
                pattern_aggregation_schedule=os.getenv(
                    "SESSION_BRAIN_PATTERN_AGGREGATION_SCHEDULE",
                    "0 3 * * *",
                ),
                clustering_schedule=os.getenv("SESSION_BRAIN_CLUSTERING_SCHEDULE", "0 4 * * *"),
                embedding_backfill_schedule=os.getenv(
                    "SESSION_BRAIN_EMBEDDING_BACKFILL_SCHEDULE",
                    "",
                ),
                reanalysis_limit=int(os.getenv("SESSION_BRAIN_REANALYSIS_LIMIT", "100")),
                connection_discovery_limit=int(
                    os.getenv("SESSION_BRAIN_CONNECTION_DISCOVERY_LIMIT", "100"),
                ),
                connection_discovery_lookback_days=int(
                    os.getenv("SESSION_BRAIN_CONNECTION_DISCOVERY_LOOKBACK_DAYS", "7"),
                ),
                connection_discovery_cooldown_hours=int(
                    os.getenv("SESSION_BRAIN_CONNECTION_DISCOVERY_COOLDOWN_HOURS", "24"),
                ),
                backfill_limit=int(os.getenv("SESSION_BRAIN_BACKFILL_LIMIT", "100")),
                backfill_batch_size=int(os.getenv("SESSION_BRAIN_BACKFILL_BATCH_SIZE", "10")),
                cluster_naming_enabled=_env_bool(
                    "SESSION_BRAIN_CLUSTER_NAMING_ENABLED",
                    default=True,
                ),
            ),
            embedding=EmbeddingSettings(
                provider=os.getenv("SESSION_BRAIN_EMBEDDING_PROVIDER", "openrouter").lower(),
                model=os.getenv("SESSION_BRAIN_EMBEDDING_MODEL", "qwen/qwen3-embedding-8b"),
                api_key=_env_optional("SESSION_BRAIN_EMBEDDING_API_KEY"),
                base_url=_env_optional("SESSION_BRAIN_EMBEDDING_BASE_URL"),
            ),
        )

    def validate_for_daemon(self) -> None:
        """Validate settings required to run workers and the scheduler."""

        if self.worker.parallel_workers < 1:
            raise ValueError("SESSION_BRAIN_PARALLEL_WORKERS must be >= 1.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("SESSION_BRAIN_POLL_INTERVAL_SECONDS must be > 0.")
        if self.agent.timeout_minutes <= 0:
            raise ValueError("SESSION_BRAIN_ANALYSIS_TIMEOUT_MINUTES must be > 0.")
        if self.queue.lease_minutes <= self.agent.timeout_minutes:
            raise ValueError(
                "SESSION_BRAIN_LEASE_MINUTES must be greater than "
                "SESSION_BRAIN_ANALYSIS_TIMEOUT_MINUTES, otherwise a slow but healthy "
                "analysis can be reclaimed by the stale sweep.",
            )
        if self.queue.stale_sweep_interval_minutes <= 0:
            raise ValueError("SESSION_BRAIN_STALE_SWEEP_INTERVAL_MINUTES must be > 0.")
        if self.queue.max_retries < 0:
            raise ValueError("SESSION_BRAIN_MAX_RETRIES must be >= 0.")
        if self.queue.retry_base_seconds <= 0 or self.queue.retry_max_seconds <= 0:
            raise ValueError("Retry delays must be > 0 seconds.")
        for name, value in (
            ("SESSION_BRAIN_REANALYSIS_LIMIT", self.scheduler.reanalysis_limit),
            ("SESSION_BRAIN_CONNECTION_DISCOVERY_LIMIT", self.scheduler.connection_discovery_limit),
            ("SESSION_BRAIN_BACKFILL_LIMIT", self.scheduler.backfill_limit),
            ("SESSION_BRAIN_BACKFILL_BATCH_SIZE", self.scheduler.backfill_batch_size),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")

    def schedule_warnings(self) -> list[str]:
        """Human-readable problems with configured cron expressions."""

        warnings: list[str] = []
        for name, expression in (
            ("reanalysis", self.scheduler.reanalysis_schedule),
            ("connection_discovery", self.scheduler.connection_discovery_schedule),
            ("pattern_aggregation", self.scheduler.pattern_aggregation_schedule),
            ("clustering", self.scheduler.clustering_schedule),
            ("embedding_backfill", self.scheduler.embedding_backfill_schedule),
        ):
            if expression and not croniter.is_valid(expression):
                warnings.append(f"Invalid {name} schedule {expression!r}; trigger disabled.")
        return warnings


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
