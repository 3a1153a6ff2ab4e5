"""Batch rollup recomputation."""

from __future__ import annotations

import logging

from sqlalchemy import distinct, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from hackscore.orchestrator.models import BatchStatus, BatchView, JobStatus
from hackscore.orchestrator.repository import BatchRepository
from hackscore.storage.common import to_db_datetime
from hackscore.storage.database import Database
from hackscore.storage.sqlmodel_models import Batch, EvaluationResult, Job

logger = logging.getLogger(__name__)


def derive_batch_status(*, total: int, completed: int, has_failed_job: bool) -> BatchStatus:
    """Status rule applied on every recompute, in priority order."""

    if completed == 0:
        return BatchStatus.FAILED if has_failed_job else BatchStatus.PENDING
    if completed < total:
        return BatchStatus.ANALYZING
    return BatchStatus.COMPLETED


class BatchAggregator:
    """Recompute batch counters, average score and status from child rows.

    Recomputation reads the children and overwrites the rollup columns, so
    redundant or concurrent calls converge on the same values.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self._batches = BatchRepository(db)

    def recompute(self, batch_id: str) -> BatchView | None:
        """Refresh one batch. Returns ``None`` when the batch does not exist."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            total = session.exec(
                select(func.count(distinct(Job.repository))).where(Job.batch_id == batch_id),
            ).one()
            completed, average = session.exec(
                select(
                    func.count(distinct(EvaluationResult.repository)),
                    func.avg(EvaluationResult.total_score),
                ).where(EvaluationResult.batch_id == batch_id),
            ).one()
            failed_jobs = session.exec(
                select(func.count(col(Job.job_id))).where(
                    Job.batch_id == batch_id,
                    Job.status == JobStatus.FAILED.value,
                ),
            ).one()

            status = derive_batch_status(
                total=int(total or 0),
                completed=int(completed or 0),
                has_failed_job=bool(failed_jobs),
            )
            outcome = session.exec(
                sa_update(Batch)
                .where(col(Batch.batch_id) == batch_id)
                .values(
                    total_repositories=int(total or 0),
                    completed_repositories=int(completed or 0),
                    average_score=float(average) if average is not None else None,
                    status=status.value,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                logger.debug("Skipped recompute for missing batch %s", batch_id)
                return None
            session.commit()

        logger.info(
            "Batch %s: %s/%s repositories completed, status=%s",
            batch_id,
            completed,
            total,
            status.value,
        )
        return self._batches.get(batch_id)
