"""Job and batch record stores."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from hackscore.orchestrator.errors import (
    BatchNameConflictError,
    BatchNotFoundError,
    InvalidTransitionError,
)
from hackscore.orchestrator.models import (
    BatchStatus,
    BatchView,
    FailureClass,
    JobPayload,
    JobStatus,
    JobView,
    Rubric,
)
from hackscore.storage.common import (
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from hackscore.storage.database import Database
from hackscore.storage.sqlmodel_models import Batch, Job

logger = logging.getLogger(__name__)


class JobRepository:
    """Job rows with forward-only status transitions.

    Transition methods are conditional updates: they return ``False`` instead
    of raising when the job is gone or not in an allowed source state.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, payload: JobPayload) -> JobView:
        """Insert a new ``pending`` job."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            row = _new_job_row(payload, now=now)
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                if payload.parent_batch_id is not None and not _batch_exists(
                    session,
                    payload.parent_batch_id,
                ):
                    raise BatchNotFoundError(payload.parent_batch_id) from error
                raise
            session.refresh(row)
            return _to_job_view(row)

    def ensure_exists(self, payload: JobPayload) -> bool:
        """Insert the job unless a row with its id exists. True when inserted."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            if session.get(Job, payload.job_id) is not None:
                return False
            session.add(_new_job_row(payload, now=now))
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                if session.get(Job, payload.job_id) is not None:
                    return False
                if payload.parent_batch_id is not None:
                    raise BatchNotFoundError(payload.parent_batch_id) from error
                raise
            return True

    def get(self, job_id: str) -> JobView | None:
        with Session(self.db.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def list_for_batch(self, batch_id: str) -> list[JobView]:
        with Session(self.db.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.batch_id == batch_id)
                .order_by(col(Job.created_at).asc(), col(Job.job_id).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_for_repository(self, batch_id: str, repository: str) -> list[JobView]:
        with Session(self.db.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.batch_id == batch_id, Job.repository == repository)
                .order_by(col(Job.created_at).asc(), col(Job.job_id).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def delete_for_repository(self, batch_id: str, repository: str) -> int:
        """Delete every job of a repository in a batch; results cascade."""

        with Session(self.db.engine) as session:
            result = session.exec(
                sa_delete(Job).where(
                    col(Job.batch_id) == batch_id,
                    col(Job.repository) == repository,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def mark_processing(self, job_id: str) -> bool:
        """Move a job to ``processing``; a redelivered job may re-enter it."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    started_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete(self, job_id: str, *, result: dict[str, Any]) -> bool:
        """Mark a processing job as completed."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            outcome = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_json=dump_json(result),
                    error=None,
                    failure_class=None,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail(
        self,
        job_id: str,
        *,
        error: str,
        failure_class: FailureClass,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Mark a processing job as failed, storing the error verbatim."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            outcome = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    result_json=dump_json(result) if result is not None else None,
                    error=error,
                    failure_class=failure_class.value,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        failure_class: FailureClass = FailureClass.UNEXPECTED,
    ) -> bool:
        """Apply one forward transition by target status."""

        if status is JobStatus.PROCESSING:
            return self.mark_processing(job_id)
        if status is JobStatus.COMPLETED:
            return self.complete(job_id, result=result or {})
        if status is JobStatus.FAILED:
            return self.fail(
                job_id,
                error=error or "Job failed",
                failure_class=failure_class,
                result=result,
            )
        raise InvalidTransitionError(f"Jobs cannot move back to {status.value}: {job_id}")


class BatchRepository:
    """Batch rows; rollup columns are written only by the aggregator."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, *, owner_id: str, name: str, rubric: Rubric) -> BatchView:
        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            row = Batch(
                batch_id=str(uuid4()),
                owner_id=owner_id,
                name=name,
                status=BatchStatus.PENDING.value,
                total_repositories=0,
                completed_repositories=0,
                average_score=None,
                rubric_json=dump_json(rubric.to_dict()),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise BatchNameConflictError(name) from error
            session.refresh(row)
            return _to_batch_view(row)

    def get(self, batch_id: str, *, owner_id: str | None = None) -> BatchView | None:
        """Fetch a batch, optionally only when ``owner_id`` owns it."""

        with Session(self.db.engine) as session:
            row = session.get(Batch, batch_id)
            if row is None or (owner_id is not None and row.owner_id != owner_id):
                return None
            return _to_batch_view(row)

    def list_for_owner(self, owner_id: str) -> list[BatchView]:
        with Session(self.db.engine) as session:
            rows = session.exec(
                select(Batch)
                .where(Batch.owner_id == owner_id)
                .order_by(col(Batch.created_at).desc(), col(Batch.name).asc()),
            ).all()
            return [_to_batch_view(row) for row in rows]

    def delete(self, batch_id: str) -> bool:
        """Delete a batch; jobs and results cascade."""

        with Session(self.db.engine) as session:
            result = session.exec(sa_delete(Batch).where(col(Batch.batch_id) == batch_id))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            logger.info("Deleted batch %s", batch_id)
            return True


def _new_job_row(payload: JobPayload, *, now: datetime) -> Job:
    return Job(
        job_id=payload.job_id,
        batch_id=payload.parent_batch_id,
        owner_id=payload.owner_id,
        repository=payload.repository,
        status=JobStatus.PENDING.value,
        payload_json=dump_json(payload.to_message()),
        is_retry=payload.is_retry,
        is_addition=payload.is_addition,
        created_at=now,
        updated_at=now,
    )


def _batch_exists(session: Session, batch_id: str) -> bool:
    return session.get(Batch, batch_id) is not None


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        batch_id=row.batch_id,
        owner_id=row.owner_id,
        repository=row.repository,
        status=JobStatus(row.status),
        payload=JobPayload.from_message(load_json(row.payload_json)),
        result=load_json(row.result_json),
        error=row.error,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        is_retry=row.is_retry,
        is_addition=row.is_addition,
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_batch_view(row: Batch) -> BatchView:
    return BatchView(
        batch_id=row.batch_id,
        owner_id=row.owner_id,
        name=row.name,
        status=BatchStatus(row.status),
        total_repositories=row.total_repositories,
        completed_repositories=row.completed_repositories,
        average_score=row.average_score,
        rubric=Rubric.from_dict(load_json(row.rubric_json)),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
