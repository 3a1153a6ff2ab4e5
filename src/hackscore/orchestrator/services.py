"""Use-case services for batch creation, retry, addition and removal."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from hackscore.orchestrator.aggregator import BatchAggregator
from hackscore.orchestrator.errors import (
    BatchNotFoundError,
    RepositoryConflictError,
    RepositoryNotFoundError,
)
from hackscore.orchestrator.models import (
    DEFAULT_RUBRIC,
    BatchView,
    JobPayload,
    JobStatus,
    JobView,
    ResultView,
    Rubric,
)
from hackscore.orchestrator.queue import MessageQueue
from hackscore.orchestrator.repository import BatchRepository, JobRepository
from hackscore.orchestrator.results import ResultRepository
from hackscore.storage.database import Database

logger = logging.getLogger(__name__)

Trigger = Callable[[], None]


@dataclass(slots=True)
class CreateBatch:
    """High-level command to create a batch and enqueue its repositories."""

    owner_id: str
    name: str
    repositories: tuple[str, ...]
    rubric: Rubric = DEFAULT_RUBRIC


@dataclass(slots=True)
class BatchDetail:
    """Batch with its jobs and saved results."""

    batch: BatchView
    jobs: list[JobView]
    results: list[ResultView]


class BatchService:
    """Coordinates job rows, queue messages and batch rollups.

    Every operation is scoped to ``owner_id``; a batch owned by someone else
    is reported exactly like a missing one.
    """

    def __init__(
        self,
        *,
        db: Database,
        queue_name: str,
        trigger: Trigger | None = None,
    ) -> None:
        self.queue_name = queue_name
        self.trigger = trigger
        self.queue = MessageQueue(db)
        self.batches = BatchRepository(db)
        self.jobs = JobRepository(db)
        self.results = ResultRepository(db)
        self.aggregator = BatchAggregator(db)

    def create_batch(self, command: CreateBatch) -> BatchView:
        """Insert one job and one message per repository, then trigger a drain."""

        repositories = _normalize_repositories(command.repositories)
        if not repositories:
            raise ValueError("At least one repository is required.")
        if not command.name.strip():
            raise ValueError("Batch name must not be empty.")

        batch = self.batches.create(
            owner_id=command.owner_id,
            name=command.name.strip(),
            rubric=command.rubric,
        )
        for repository in repositories:
            self._enqueue(
                JobPayload(
                    job_id=str(uuid4()),
                    repository=repository,
                    owner_id=command.owner_id,
                    rubric=command.rubric,
                    parent_batch_id=batch.batch_id,
                ),
            )
        recomputed = self.aggregator.recompute(batch.batch_id)
        logger.info(
            "Created batch %s (%s) with %s repositories",
            batch.batch_id,
            batch.name,
            len(repositories),
        )
        self._fire_trigger()
        return recomputed or batch

    def add_repository(self, *, owner_id: str, batch_id: str, repository: str) -> JobView:
        """Add a repository that is not yet part of the batch."""

        batch = self._require_batch(owner_id=owner_id, batch_id=batch_id)
        repository = _require_repository(repository)
        if self.jobs.list_for_repository(batch_id, repository):
            raise RepositoryConflictError(
                f"Repository already exists in this batch: {repository}",
            )
        job = self._enqueue(
            JobPayload(
                job_id=str(uuid4()),
                repository=repository,
                owner_id=owner_id,
                rubric=batch.rubric,
                parent_batch_id=batch_id,
                is_addition=True,
            ),
        )
        self.aggregator.recompute(batch_id)
        self._fire_trigger()
        return job

    def retry_repository(self, *, owner_id: str, batch_id: str, repository: str) -> JobView:
        """Queue a fresh job for a repository; earlier jobs stay untouched."""

        batch = self._require_batch(owner_id=owner_id, batch_id=batch_id)
        existing = self.jobs.list_for_repository(batch_id, repository)
        if not existing:
            raise RepositoryNotFoundError(repository, batch_id)
        if any(job.status in {JobStatus.PENDING, JobStatus.PROCESSING} for job in existing):
            raise RepositoryConflictError(
                f"Repository {repository} already has a queued or running job.",
            )

        self.results.delete_for_repository(batch_id=batch_id, repository=repository)
        job = self._enqueue(
            JobPayload(
                job_id=str(uuid4()),
                repository=repository,
                owner_id=owner_id,
                rubric=batch.rubric,
                parent_batch_id=batch_id,
                is_retry=True,
            ),
        )
        self.aggregator.recompute(batch_id)
        logger.info("Retrying %s in batch %s as job %s", repository, batch_id, job.job_id)
        self._fire_trigger()
        return job

    def remove_repository(self, *, owner_id: str, batch_id: str, repository: str) -> BatchView:
        """Delete a repository's jobs and results; in-flight work is not cancelled."""

        self._require_batch(owner_id=owner_id, batch_id=batch_id)
        self.results.delete_for_repository(batch_id=batch_id, repository=repository)
        if self.jobs.delete_for_repository(batch_id, repository) == 0:
            raise RepositoryNotFoundError(repository, batch_id)
        recomputed = self.aggregator.recompute(batch_id)
        if recomputed is None:
            raise BatchNotFoundError(batch_id)
        logger.info("Removed %s from batch %s", repository, batch_id)
        return recomputed

    def delete_batch(self, *, owner_id: str, batch_id: str) -> int:
        """Delete a batch and archive its still-queued messages.

        Returns the number of archived messages. Leased messages are left to
        the worker holding them, and anything missed is archived by a worker
        as an orphan.
        """

        self._require_batch(owner_id=owner_id, batch_id=batch_id)
        if not self.batches.delete(batch_id):
            raise BatchNotFoundError(batch_id)

        archived = 0
        now = self.queue.db.now()
        try:
            for message in self.queue.list_messages(self.queue_name):
                if message.read_count > 0 and message.visible_at > now:
                    # leased; the worker holding it resolves it
                    continue
                payload = message.payload
                if isinstance(payload, dict) and payload.get("parent_batch_id") == batch_id:
                    if self.queue.archive(self.queue_name, message.msg_id):
                        archived += 1
        except SQLAlchemyError as error:
            logger.warning("Could not archive queued messages of batch %s: %s", batch_id, error)
        return archived

    def get_batch(self, *, owner_id: str, batch_id: str) -> BatchDetail:
        batch = self._require_batch(owner_id=owner_id, batch_id=batch_id)
        return BatchDetail(
            batch=batch,
            jobs=self.jobs.list_for_batch(batch_id),
            results=self.results.list_for_batch(batch_id),
        )

    def list_batches(self, *, owner_id: str) -> list[BatchView]:
        return self.batches.list_for_owner(owner_id)

    def _enqueue(self, payload: JobPayload) -> JobView:
        job = self.jobs.create(payload)
        msg_id = self.queue.send(self.queue_name, payload.to_message())
        logger.debug("Queued job %s as message %s", job.job_id, msg_id)
        return job

    def _require_batch(self, *, owner_id: str, batch_id: str) -> BatchView:
        batch = self.batches.get(batch_id, owner_id=owner_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    def _fire_trigger(self) -> None:
        if self.trigger is None:
            return
        try:
            self.trigger()
        except Exception as error:  # noqa: BLE001
            logger.warning("Worker trigger failed; queued jobs wait for the next poll: %s", error)


def _require_repository(value: str) -> str:
    repository = value.strip()
    if not repository:
        raise ValueError("Repository must not be empty.")
    return repository


def _normalize_repositories(values: tuple[str, ...]) -> list[str]:
    seen: set[str] = set()
    repositories: list[str] = []
    for value in values:
        repository = _require_repository(value)
        if repository in seen:
            continue
        seen.add(repository)
        repositories.append(repository)
    return repositories
