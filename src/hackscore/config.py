"""Runtime configuration for queue, executor and worker."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from hackscore.orchestrator.backend.cli_backend import DEFAULT_COMMAND_TEMPLATE

DEFAULT_QUEUE_NAME = "repo_analysis_queue"


@dataclass(slots=True)
class QueueSettings:
    """Queue leasing settings."""

    queue_name: str = DEFAULT_QUEUE_NAME
    visibility_timeout_seconds: int = 3_600
    inter_message_delay_seconds: float = 2.0


@dataclass(slots=True)
class ExecutorSettings:
    """Analysis engine settings."""

    kind: str = "cli"
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    http_url: str | None = None
    http_auth_token: str | None = None
    max_turns: int = 50
    timeout_seconds: int = 3_300
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class WorkerSettings:
    """Dispatch loop settings."""

    worker_id: str = field(default_factory=lambda: f"worker-{os.getpid()}")
    trigger_on_enqueue: bool = True
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".hackscore.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("HACKSCORE_DB_PATH", ".hackscore.db")),
            queue=QueueSettings(
                queue_name=os.getenv("HACKSCORE_QUEUE_NAME", DEFAULT_QUEUE_NAME),
                visibility_timeout_seconds=int(
                    os.getenv("HACKSCORE_VISIBILITY_TIMEOUT_SECONDS", "3600"),
                ),
                inter_message_delay_seconds=float(
                    os.getenv("HACKSCORE_INTER_MESSAGE_DELAY_SECONDS", "2.0"),
                ),
            ),
            executor=ExecutorSettings(
                kind=os.getenv("HACKSCORE_EXECUTOR", "cli").strip().lower(),
                command_template=os.getenv(
                    "HACKSCORE_EXECUTOR_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                http_url=os.getenv("HACKSCORE_EXECUTOR_URL") or None,
                http_auth_token=os.getenv("HACKSCORE_EXECUTOR_AUTH_TOKEN") or None,
                max_turns=int(os.getenv("HACKSCORE_MAX_TURNS", "50")),
                timeout_seconds=int(os.getenv("HACKSCORE_ANALYSIS_TIMEOUT_SECONDS", "3300")),
                graceful_shutdown_seconds=float(
                    os.getenv("HACKSCORE_GRACEFUL_SHUTDOWN_SECONDS", "5.0"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("HACKSCORE_WORKER_ID", f"worker-{os.getpid()}"),
                trigger_on_enqueue=_env_bool("HACKSCORE_TRIGGER_ON_ENQUEUE", default=True),
                sqlite_busy_timeout_ms=int(os.getenv("HACKSCORE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent timeouts or executor setup."""

        if self.executor.timeout_seconds <= 0:
            raise ValueError("HACKSCORE_ANALYSIS_TIMEOUT_SECONDS must be > 0.")
        if self.executor.max_turns <= 0:
            raise ValueError("HACKSCORE_MAX_TURNS must be > 0.")
        if self.queue.visibility_timeout_seconds <= self.executor.timeout_seconds:
            raise ValueError(
                "HACKSCORE_VISIBILITY_TIMEOUT_SECONDS must exceed "
                "HACKSCORE_ANALYSIS_TIMEOUT_SECONDS so a lease outlives the analysis.",
            )
        if self.queue.inter_message_delay_seconds < 0:
            raise ValueError("HACKSCORE_INTER_MESSAGE_DELAY_SECONDS must be >= 0.")
        if self.executor.kind not in {"cli", "http"}:
            raise ValueError(
                f"Unsupported HACKSCORE_EXECUTOR value: {self.executor.kind!r}. "
                "Expected 'cli' or 'http'.",
            )
        if self.executor.kind == "http" and not self.executor.http_url:
            raise ValueError("HACKSCORE_EXECUTOR_URL is required for the http executor.")
        if self.worker.sqlite_busy_timeout_ms <= 0:
            raise ValueError("HACKSCORE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


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
