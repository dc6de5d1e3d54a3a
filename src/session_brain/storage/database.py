"""SQLite database handle shared by queue and node repositories."""

from __future__ import annotations

from pathlib import Path

from session_brain.storage.alembic_runner import upgrade_head
from session_brain.storage.common import build_sqlite_engine


class Database:
    """Owns the SQLAlchemy engine for one SQLite file."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    @classmethod
    def open(cls, db_path: Path, *, busy_timeout_ms: int = 5_000) -> Database:
        """Create the handle and migrate the schema."""

        database = cls(db_path, busy_timeout_ms=busy_timeout_ms)
        database.init_schema()
        return database
