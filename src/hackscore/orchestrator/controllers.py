"""Controllers for batch, worker, queue and secret CLI commands."""

from __future__ import annotations

import json
import subprocess
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from hackscore.config import Settings
from hackscore.orchestrator.backend import CliTaskExecutor, HttpTaskExecutor, TaskExecutor
from hackscore.orchestrator.errors import JobNotFoundError
from hackscore.orchestrator.models import DEFAULT_RUBRIC, DrainSummary, Rubric
from hackscore.orchestrator.queue import MessageQueue
from hackscore.orchestrator.secrets import SecretStore
from hackscore.orchestrator.services import BatchService, CreateBatch, Trigger
from hackscore.orchestrator.worker import DispatchWorker
from hackscore.storage.database import Database


@dataclass(slots=True)
class BatchCreateCommand:
    """CLI input for batch creation."""

    db_path: Path | None
    owner_id: str
    name: str
    repositories: tuple[str, ...]
    rubric_path: Path | None = None
    trigger: bool | None = None


@dataclass(slots=True)
class BatchListCommand:
    db_path: Path | None
    owner_id: str


@dataclass(slots=True)
class BatchShowCommand:
    db_path: Path | None
    owner_id: str
    batch_id: str


@dataclass(slots=True)
class RepositoryCommand:
    """CLI input for add/retry/remove of one repository."""

    db_path: Path | None
    owner_id: str
    batch_id: str
    repository: str


@dataclass(slots=True)
class WorkerPollCommand:
    """CLI input for one drain cycle."""

    db_path: Path | None
    max_messages: int | None = None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for periodic draining."""

    db_path: Path | None
    interval_seconds: float
    max_cycles: int | None = None


@dataclass(slots=True)
class WorkerProcessCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueArchivedCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class SecretSetCommand:
    db_path: Path | None
    owner_id: str
    secret_type: str
    value: str


class OrchestratorCliController:
    """Coordinates batch, worker and queue CLI operations."""

    def create_batch(self, command: BatchCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        rubric = _load_rubric(command.rubric_path)
        with _database(settings) as db:
            batch = _service(settings, db, trigger_enabled=command.trigger).create_batch(
                CreateBatch(
                    owner_id=command.owner_id,
                    name=command.name,
                    repositories=command.repositories,
                    rubric=rubric,
                ),
            )
        return [
            f"Batch created: batch_id={batch.batch_id} name={batch.name} "
            f"repositories={batch.total_repositories} status={batch.status.value}",
        ]

    def list_batches(self, command: BatchListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            batches = _service(settings, db, trigger_enabled=False).list_batches(
                owner_id=command.owner_id,
            )
        if not batches:
            return ["No batches found."]
        return [
            f"{batch.batch_id} | {batch.name} | {batch.status.value} | "
            f"{batch.completed_repositories}/{batch.total_repositories} | "
            f"avg={_fmt_score(batch.average_score)}"
            for batch in batches
        ]

    def show_batch(self, command: BatchShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            detail = _service(settings, db, trigger_enabled=False).get_batch(
                owner_id=command.owner_id,
                batch_id=command.batch_id,
            )
        batch = detail.batch
        lines = [
            f"Batch: {batch.batch_id} ({batch.name})",
            f"Status: {batch.status.value}",
            f"Completed: {batch.completed_repositories}/{batch.total_repositories}",
            f"Average score: {_fmt_score(batch.average_score)} / {batch.rubric.max_total:g}",
            "Jobs:",
        ]
        for job in detail.jobs:
            flags = [
                name
                for name, enabled in (("retry", job.is_retry), ("added", job.is_addition))
                if enabled
            ]
            suffix = f" [{', '.join(flags)}]" if flags else ""
            lines.append(f"- {job.repository} | {job.job_id} | {job.status.value}{suffix}")
            if job.error:
                lines.append(f"  error: {job.error}")
        lines.append("Results:")
        for result in detail.results:
            lines.append(f"- {result.repository}: {result.total_score:g}")
            for item in result.items:
                lines.append(f"  {item.id} ({item.label}): {item.score:g}")
        return lines

    def add_repository(self, command: RepositoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            job = _service(settings, db).add_repository(
                owner_id=command.owner_id,
                batch_id=command.batch_id,
                repository=command.repository,
            )
        return [f"Repository added: {job.repository} job_id={job.job_id}"]

    def retry_repository(self, command: RepositoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            job = _service(settings, db).retry_repository(
                owner_id=command.owner_id,
                batch_id=command.batch_id,
                repository=command.repository,
            )
        return [f"Repository retry queued: {job.repository} job_id={job.job_id}"]

    def remove_repository(self, command: RepositoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            batch = _service(settings, db, trigger_enabled=False).remove_repository(
                owner_id=command.owner_id,
                batch_id=command.batch_id,
                repository=command.repository,
            )
        return [
            f"Repository removed: {command.repository}",
            f"Batch {batch.batch_id}: {batch.completed_repositories}/"
            f"{batch.total_repositories} status={batch.status.value}",
        ]

    def delete_batch(self, command: BatchShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            archived = _service(settings, db, trigger_enabled=False).delete_batch(
                owner_id=command.owner_id,
                batch_id=command.batch_id,
            )
        return [f"Batch deleted: {command.batch_id} (archived {archived} queued messages)"]

    def poll(self, command: WorkerPollCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _database(settings) as db:
            summary = _worker(settings, db).drain(max_messages=command.max_messages)
        return _summary_lines(summary)

    def run(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _database(settings) as db:
            summary = _worker(settings, db).run_loop(
                interval_seconds=command.interval_seconds,
                max_cycles=command.max_cycles,
            )
        return [f"Polling cycles: {summary.cycles}", *_summary_lines(summary)]

    def process_job(self, command: WorkerProcessCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _database(settings) as db:
            worker = _worker(settings, db)
            job = worker.jobs.get(command.job_id)
            if job is None:
                raise JobNotFoundError(command.job_id)
            outcome = worker.process_one(job.payload)
        status = outcome.status.value if outcome.status is not None else "unknown"
        lines = [f"Job {outcome.job_id} ({outcome.repository}): {status}"]
        if outcome.total_score is not None:
            lines.append(f"Total score: {outcome.total_score:g}")
        if outcome.error:
            lines.append(f"Error: {outcome.error}")
        return lines

    def queue_stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            metrics = MessageQueue(db).metrics(settings.queue.queue_name)
        return [
            f"Queue: {metrics.queue_name}",
            f"Length: {metrics.queue_length} "
            f"(visible={metrics.visible_count} leased={metrics.leased_count})",
            f"Archived: {metrics.archived_count}",
            f"Oldest message age: {_fmt_age(metrics.oldest_message_age_seconds)}",
            f"Newest message age: {_fmt_age(metrics.newest_message_age_seconds)}",
        ]

    def queue_archived(self, command: QueueArchivedCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            messages = MessageQueue(db).list_archived(
                settings.queue.queue_name,
                limit=command.limit,
            )
        if not messages:
            return ["No archived messages."]
        lines = []
        for message in messages:
            payload = message.payload if isinstance(message.payload, dict) else {}
            archived_at = message.archived_at.isoformat() if message.archived_at else "-"
            lines.append(
                f"{message.msg_id} | {archived_at} | reads={message.read_count} | "
                f"job={payload.get('job_id', '-')} | {payload.get('repository', '-')}",
            )
        return lines

    def set_secret(self, command: SecretSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as db:
            SecretStore(db).put_secret(command.owner_id, command.secret_type, command.value)
        return [f"Secret saved: {command.secret_type} for {command.owner_id}"]


def build_executor(settings: Settings) -> TaskExecutor:
    """Executor selected by ``HACKSCORE_EXECUTOR``."""

    if settings.executor.kind == "http":
        if not settings.executor.http_url:
            raise ValueError("HACKSCORE_EXECUTOR_URL is required for the http executor.")
        return HttpTaskExecutor(
            base_url=settings.executor.http_url,
            auth_token=settings.executor.http_auth_token,
        )
    return CliTaskExecutor(
        command_template=settings.executor.command_template,
        graceful_shutdown_seconds=settings.executor.graceful_shutdown_seconds,
    )


def _worker(settings: Settings, db: Database) -> DispatchWorker:
    return DispatchWorker(
        db=db,
        executor=build_executor(settings),
        queue_name=settings.queue.queue_name,
        visibility_timeout_seconds=settings.queue.visibility_timeout_seconds,
        analysis_timeout_seconds=settings.executor.timeout_seconds,
        max_turns=settings.executor.max_turns,
        inter_message_delay_seconds=settings.queue.inter_message_delay_seconds,
        worker_id=settings.worker.worker_id,
    )


def _service(
    settings: Settings,
    db: Database,
    *,
    trigger_enabled: bool | None = None,
) -> BatchService:
    if trigger_enabled is None:
        trigger_enabled = settings.worker.trigger_on_enqueue
    return BatchService(
        db=db,
        queue_name=settings.queue.queue_name,
        trigger=_detached_poll_trigger(settings.db_path) if trigger_enabled else None,
    )


def _detached_poll_trigger(db_path: Path) -> Trigger:
    def _trigger() -> None:
        subprocess.Popen(  # noqa: S603
            [sys.executable, "-m", "hackscore.main", "worker", "poll", "--db-path", str(db_path)],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

    return _trigger


def _load_rubric(path: Path | None) -> Rubric:
    if path is None:
        return DEFAULT_RUBRIC
    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Rubric file is not valid JSON: {error}") from error
    return Rubric.from_dict(raw)


def _summary_lines(summary: DrainSummary) -> list[str]:
    lines = [
        "Worker summary: "
        f"processed={summary.processed_count} has_errors={summary.has_errors} "
        f"stop_reason={summary.stop_reason}",
    ]
    for processed in summary.processed:
        outcome = "ok" if processed.success else "failed"
        resolution = "resolved" if processed.resolved else "unresolved"
        lines.append(
            f"- message {processed.message_id} job={processed.job_id or '-'} "
            f"{outcome} {resolution}",
        )
    if summary.last_error:
        lines.append(f"Last error: {summary.last_error}")
    return lines


def _fmt_score(value: float | None) -> str:
    return "-" if value is None else f"{value:.2f}"


def _fmt_age(seconds: float | None) -> str:
    return "-" if seconds is None else f"{seconds:.0f}s"


@contextmanager
def _database(settings: Settings) -> Iterator[Database]:
    db = Database(
        settings.db_path,
        busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
    )
    db.init_schema()
    try:
        yield db
    finally:
        db.close()
