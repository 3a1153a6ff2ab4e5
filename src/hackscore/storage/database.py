"""Shared database handle for queue, job and result stores."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from hackscore.storage.alembic_runner import upgrade_head
from hackscore.storage.common import build_sqlite_engine, utc_now

Clock = Callable[[], datetime]


class Database:
    """SQLite engine plus the clock every store reads time from."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        clock: Clock = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self.clock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()
