"""Idempotent persistence of evaluation results."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from hackscore.orchestrator.errors import JobNotFoundError
from hackscore.orchestrator.models import EvaluationDocument, EvaluationItem, ResultView
from hackscore.storage.common import dump_json, load_json, to_db_datetime, to_utc_aware_datetime
from hackscore.storage.database import Database
from hackscore.storage.sqlmodel_models import EvaluationItem as EvaluationItemRow
from hackscore.storage.sqlmodel_models import EvaluationResult, Job

logger = logging.getLogger(__name__)


class ResultRepository:
    """Summary and per-criterion rows keyed for upsert.

    A summary is unique per ``(job_id, repository)`` and a criterion row per
    ``(result_id, criterion_id)``; saving the same job twice leaves one summary
    holding the latest values.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def save(
        self,
        *,
        job_id: str,
        owner_id: str,
        repository: str,
        document: EvaluationDocument,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Upsert a job's evaluation and return the summary row id."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            values = {
                "batch_id": job.batch_id,
                "owner_id": owner_id,
                "total_score": document.total_score,
                "overall_comment": document.overall_comment,
                "detail_json": dump_json(document.to_dict()),
                "metadata_json": dump_json(metadata or {}),
                "updated_at": now,
            }
            try:
                session.exec(
                    sqlite_insert(EvaluationResult)
                    .values(job_id=job_id, repository=repository, created_at=now, **values)
                    .on_conflict_do_update(
                        index_elements=["job_id", "repository"],
                        set_=values,
                    ),
                )
                result_id = session.exec(
                    select(EvaluationResult.result_id).where(
                        EvaluationResult.job_id == job_id,
                        EvaluationResult.repository == repository,
                    ),
                ).one()
                assert result_id is not None
                self._upsert_items(session, result_id=result_id, items=document.items)
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise JobNotFoundError(job_id) from error

        logger.info(
            "Saved evaluation for %s (job %s): total_score=%s",
            repository,
            job_id,
            document.total_score,
        )
        return result_id

    def _upsert_items(
        self,
        session: Session,
        *,
        result_id: int,
        items: list[EvaluationItem],
    ) -> None:
        for position, item in enumerate(items):
            values = {
                "position": position,
                "label": item.label,
                "score": item.score,
                "positives": item.positives,
                "negatives": item.negatives,
            }
            session.exec(
                sqlite_insert(EvaluationItemRow)
                .values(result_id=result_id, criterion_id=item.id, **values)
                .on_conflict_do_update(
                    index_elements=["result_id", "criterion_id"],
                    set_=values,
                ),
            )
        session.exec(
            sa_delete(EvaluationItemRow).where(
                col(EvaluationItemRow.result_id) == result_id,
                col(EvaluationItemRow.criterion_id).not_in([item.id for item in items]),
            ),
        )

    def get(self, *, job_id: str, repository: str) -> ResultView | None:
        with Session(self.db.engine) as session:
            row = session.exec(
                select(EvaluationResult).where(
                    EvaluationResult.job_id == job_id,
                    EvaluationResult.repository == repository,
                ),
            ).one_or_none()
            if row is None:
                return None
            return _to_result_view(session, row)

    def list_for_batch(self, batch_id: str) -> list[ResultView]:
        with Session(self.db.engine) as session:
            rows = session.exec(
                select(EvaluationResult)
                .where(EvaluationResult.batch_id == batch_id)
                .order_by(col(EvaluationResult.repository).asc()),
            ).all()
            return [_to_result_view(session, row) for row in rows]

    def delete_for_repository(self, *, batch_id: str, repository: str) -> int:
        """Delete result rows of a repository in a batch; criterion rows cascade."""

        with Session(self.db.engine) as session:
            outcome = session.exec(
                sa_delete(EvaluationResult).where(
                    col(EvaluationResult.batch_id) == batch_id,
                    col(EvaluationResult.repository) == repository,
                ),
            )
            session.commit()
            return int(outcome.rowcount or 0)


def _to_result_view(session: Session, row: EvaluationResult) -> ResultView:
    item_rows = session.exec(
        select(EvaluationItemRow)
        .where(EvaluationItemRow.result_id == row.result_id)
        .order_by(col(EvaluationItemRow.position).asc()),
    ).all()
    return ResultView(
        result_id=row.result_id,  # type: ignore[arg-type]
        job_id=row.job_id,
        batch_id=row.batch_id,
        owner_id=row.owner_id,
        repository=row.repository,
        total_score=row.total_score,
        overall_comment=row.overall_comment,
        detail=load_json(row.detail_json) or {},
        metadata=load_json(row.metadata_json) or {},
        items=[
            EvaluationItem(
                id=item.criterion_id,
                label=item.label,
                score=item.score,
                positives=item.positives,
                negatives=item.negatives,
            )
            for item in item_rows
        ],
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
