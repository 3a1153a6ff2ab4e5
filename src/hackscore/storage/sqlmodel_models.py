"""SQLModel ORM tables for queue, job, result and batch storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class QueueMessage(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_messages_lease", "queue_name", "visible_at", "msg_id"),
        {"sqlite_autoincrement": True},
    )

    msg_id: int | None = Field(default=None, primary_key=True)
    queue_name: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    visible_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    read_count: int = Field(default=0)


class ArchivedMessage(SQLModel, table=True):
    __tablename__ = "queue_archive"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_archive_queue_time", "queue_name", "archived_at"),)

    msg_id: int = Field(primary_key=True)
    queue_name: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    visible_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    read_count: int = Field(default=0)
    archived_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Batch(SQLModel, table=True):
    __tablename__ = "batches"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_batches_owner_name"),)

    batch_id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    name: str
    status: str = Field(index=True)
    total_repositories: int = Field(default=0)
    completed_repositories: int = Field(default=0)
    average_score: float | None = None
    rubric_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_batch_repository", "batch_id", "repository"),)

    job_id: str = Field(primary_key=True)
    batch_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("batches.batch_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    owner_id: str = Field(index=True)
    repository: str
    status: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    is_retry: bool = Field(default=False)
    is_addition: bool = Field(default=False)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EvaluationResult(SQLModel, table=True):
    __tablename__ = "evaluation_results"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "repository", name="uq_evaluation_results_job_repository"),
    )

    result_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    batch_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("batches.batch_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    owner_id: str = Field(index=True)
    repository: str
    total_score: float
    overall_comment: str | None = Field(default=None, sa_column=Column(Text))
    detail_json: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EvaluationItem(SQLModel, table=True):
    __tablename__ = "evaluation_items"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("result_id", "criterion_id", name="uq_evaluation_items_result_criterion"),
    )

    item_id: int | None = Field(default=None, primary_key=True)
    result_id: int = Field(
        sa_column=Column(
            ForeignKey("evaluation_results.result_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    criterion_id: str
    position: int = Field(default=0)
    label: str
    score: float
    positives: str = Field(default="", sa_column=Column(Text, nullable=False))
    negatives: str = Field(default="", sa_column=Column(Text, nullable=False))


class UserSecret(SQLModel, table=True):
    __tablename__ = "user_secrets"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("owner_id", "secret_type", name="pk_user_secrets"),)

    owner_id: str
    secret_type: str
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
