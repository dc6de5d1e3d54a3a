"""Deterministic error classification and retry backoff for analysis jobs."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from session_brain.orchestrator.models import AnalysisJob
from session_brain.storage.common import utc_now


class ErrorCategory(str, Enum):
    """Retryability of a job failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


_MISSING_INPUT_PATTERNS: tuple[str, ...] = (
    "enoent",
    "file not found",
    "no such file",
    "prompt file not found",
    "session file not found",
    "failed to spawn",
    "missing required skills",
)
_MALFORMED_SESSION_PATTERNS: tuple[str, ...] = (
    "invalid session header",
    "malformed session",
    "invalid jsonl",
    "empty session",
    "no entries",
)
_OUTPUT_PROTOCOL_PATTERNS: tuple[str, ...] = (
    "schema validation",
    "invalid node output",
    "no agent_end event",
    "no assistant message",
    "could not extract valid json",
    "missing nodeid",
)
_UNSUPPORTED_JOB_PATTERNS: tuple[str, ...] = ("no connection discoverer configured",)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "etimedout",
    "timed out",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "429",
    "too many requests",
    "overloaded",
    "capacity",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "econnrefused",
    "connection refused",
    "econnreset",
    "connection reset",
    "enetunreach",
    "network unreachable",
)
_SERVER_ERROR_PATTERNS: tuple[str, ...] = (
    "503",
    "service unavailable",
    "500",
    "internal server error",
    "502",
    "bad gateway",
)
_RESOURCE_PATTERNS: tuple[str, ...] = (
    "sqlite_busy",
    "database is locked",
    "enospc",
    "no space left",
    "disk full",
)

_PERMANENT_RULES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("missing_input", "Required file or executable is missing", _MISSING_INPUT_PATTERNS),
    ("malformed_session", "Session file is malformed", _MALFORMED_SESSION_PATTERNS),
    ("output_protocol", "Agent output is invalid", _OUTPUT_PROTOCOL_PATTERNS),
    ("unsupported_job", "No handler is configured for the job type", _UNSUPPORTED_JOB_PATTERNS),
)
_TRANSIENT_RULES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("timeout", "Operation timed out", _TIMEOUT_PATTERNS),
    ("rate_limit", "Provider is rate limited or overloaded", _RATE_LIMIT_PATTERNS),
    ("network", "Network connection failed", _NETWORK_PATTERNS),
    ("server_error", "Provider returned a server error", _SERVER_ERROR_PATTERNS),
    ("resource", "Local resource temporarily unavailable", _RESOURCE_PATTERNS),
)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Retry budget and exponential backoff parameters."""

    max_retries: int = 3
    base_delay_seconds: int = 60
    max_delay_seconds: int = 3600
    backoff_multiplier: float = 2.0


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(slots=True)
class ErrorClassification:
    """Normalized classification result."""

    category: ErrorCategory
    reason: str
    matched_rule: str
    matched_pattern: str | None


@dataclass(slots=True)
class ErrorRecord:
    """Durable error record stored in the job row."""

    message: str
    timestamp: datetime
    category: ErrorCategory
    reason: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "message": self.message,
                "timestamp": self.timestamp.isoformat(),
                "category": self.category.value,
                "reason": self.reason,
            },
            ensure_ascii=False,
        )


@dataclass(slots=True)
class RetryDecision:
    """What the worker should do with a failed job."""

    should_retry: bool
    delay_minutes: int
    category: ErrorCategory
    reason: str
    error_record: ErrorRecord


def classify_error(message: str) -> ErrorClassification:
    """Classify an error message; unknown messages count as transient."""

    haystack = message.lower()
    for rule, reason, patterns in _PERMANENT_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(
                category=ErrorCategory.PERMANENT,
                reason=reason,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    for rule, reason, patterns in _TRANSIENT_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(
                category=ErrorCategory.TRANSIENT,
                reason=reason,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return ErrorClassification(
        category=ErrorCategory.TRANSIENT,
        reason="Unknown error",
        matched_rule="default_transient",
        matched_pattern=None,
    )


def calculate_retry_delay_seconds(
    retry_count: int,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> float:
    """Backoff for a 0-indexed retry count, capped at the policy maximum."""

    delay = policy.base_delay_seconds * (policy.backoff_multiplier ** max(retry_count, 0))
    return float(min(delay, policy.max_delay_seconds))


def calculate_retry_delay_minutes(
    retry_count: int,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> int:
    return math.ceil(calculate_retry_delay_seconds(retry_count, policy) / 60)


def classify_and_decide(
    error: str | BaseException,
    job: AnalysisJob | None = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    now: datetime | None = None,
) -> RetryDecision:
    """Classify a failure and decide whether the job gets another attempt.

    The retry budget is the job's own ``max_retries`` when a job is given,
    otherwise the policy's. No I/O happens here.
    """

    message = error if isinstance(error, str) else str(error) or type(error).__name__
    classification = classify_error(message)
    retry_count = job.retry_count if job is not None else 0
    max_retries = job.max_retries if job is not None else policy.max_retries
    should_retry = (
        classification.category == ErrorCategory.TRANSIENT and retry_count < max_retries
    )
    return RetryDecision(
        should_retry=should_retry,
        delay_minutes=calculate_retry_delay_minutes(retry_count, policy) if should_retry else 0,
        category=classification.category,
        reason=classification.reason,
        error_record=ErrorRecord(
            message=message,
            timestamp=now or utc_now(),
            category=classification.category,
            reason=classification.reason,
        ),
    )


def parse_error_record(raw: str | None) -> dict[str, str] | None:
    """Decode a stored error; plain text from older rows is wrapped as-is."""

    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"message": raw}
    if not isinstance(parsed, dict):
        return {"message": raw}
    return {str(key): str(value) for key, value in parsed.items()}


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
