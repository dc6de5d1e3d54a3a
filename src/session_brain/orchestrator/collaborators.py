"""Interfaces of subsystems the daemon calls but does not implement."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from session_brain.orchestrator.models import AnalysisJob


class NodeWriter(Protocol):
    """Persists a parsed agent result as a node."""

    def create_node(
        self,
        job: AnalysisJob,
        node_data: dict[str, Any],
        *,
        analyzer_version: str | None,
        analysis_duration_ms: int,
    ) -> str:
        """Store the node and return its id."""


class ConnectionDiscoverer(Protocol):
    """Finds graph edges around an analyzed node."""

    def discover(self, node_id: str) -> int:
        """Return the number of edges created."""


class PatternAggregator(Protocol):
    def aggregate_failure_patterns(self) -> int: ...

    def aggregate_model_stats(self) -> int: ...

    def aggregate_lessons(self) -> int: ...


class InsightAggregator(Protocol):
    def aggregate_all(self) -> int: ...


@dataclass(slots=True)
class ClusteringRun:
    clusters: int


@dataclass(slots=True)
class ClusterNamingRun:
    succeeded: int
    failed: int


class ClusteringEngine(Protocol):
    """Embedding-based facet discovery."""

    def run(self) -> ClusteringRun: ...

    def analyze_clusters(self, *, provider: str, model: str) -> ClusterNamingRun:
        """Name pending clusters with an LLM."""


@dataclass(slots=True)
class BackfillResult:
    success_count: int
    failure_count: int


class EmbeddingBackfiller(Protocol):
    def backfill(self, *, limit: int, batch_size: int) -> BackfillResult: ...
