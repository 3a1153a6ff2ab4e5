"""Initial queue, job, batch and evaluation result schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_messages",
        sa.Column("msg_id", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("visible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("msg_id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_queue_messages_queue_name", "queue_messages", ["queue_name"])
    op.create_index(
        "idx_queue_messages_lease",
        "queue_messages",
        ["queue_name", "visible_at", "msg_id"],
    )

    op.create_table(
        "queue_archive",
        sa.Column("msg_id", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("visible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("msg_id"),
    )
    op.create_index(
        "idx_queue_archive_queue_time",
        "queue_archive",
        ["queue_name", "archived_at"],
    )

    op.create_table(
        "batches",
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column(
            "total_repositories",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "completed_repositories",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("average_score", sa.Float(), nullable=True),
        sa.Column("rubric_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("batch_id"),
        sa.UniqueConstraint("owner_id", "name", name="uq_batches_owner_name"),
    )
    op.create_index("ix_batches_owner_id", "batches", ["owner_id"])
    op.create_index("ix_batches_status", "batches", ["status"])

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("repository", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("is_retry", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_addition", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.batch_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_jobs_batch_id", "jobs", ["batch_id"])
    op.create_index("ix_jobs_owner_id", "jobs", ["owner_id"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_failure_class", "jobs", ["failure_class"])
    op.create_index("idx_jobs_batch_repository", "jobs", ["batch_id", "repository"])

    op.create_table(
        "evaluation_results",
        sa.Column("result_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("repository", sa.String(), nullable=False),
        sa.Column("total_score", sa.Float(), nullable=False),
        sa.Column("overall_comment", sa.Text(), nullable=True),
        sa.Column("detail_json", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.batch_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("result_id"),
        sa.UniqueConstraint(
            "job_id",
            "repository",
            name="uq_evaluation_results_job_repository",
        ),
    )
    op.create_index("ix_evaluation_results_job_id", "evaluation_results", ["job_id"])
    op.create_index("ix_evaluation_results_batch_id", "evaluation_results", ["batch_id"])
    op.create_index("ix_evaluation_results_owner_id", "evaluation_results", ["owner_id"])

    op.create_table(
        "evaluation_items",
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("result_id", sa.Integer(), nullable=False),
        sa.Column("criterion_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("positives", sa.Text(), nullable=False, server_default=""),
        sa.Column("negatives", sa.Text(), nullable=False, server_default=""),
        sa.ForeignKeyConstraint(
            ["result_id"],
            ["evaluation_results.result_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("item_id"),
        sa.UniqueConstraint(
            "result_id",
            "criterion_id",
            name="uq_evaluation_items_result_criterion",
        ),
    )
    op.create_index("ix_evaluation_items_result_id", "evaluation_items", ["result_id"])

    op.create_table(
        "user_secrets",
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("secret_type", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id", "secret_type", name="pk_user_secrets"),
    )


def downgrade() -> None:
    op.drop_table("user_secrets")
    op.drop_index("ix_evaluation_items_result_id", table_name="evaluation_items")
    op.drop_table("evaluation_items")
    op.drop_index("ix_evaluation_results_owner_id", table_name="evaluation_results")
    op.drop_index("ix_evaluation_results_batch_id", table_name="evaluation_results")
    op.drop_index("ix_evaluation_results_job_id", table_name="evaluation_results")
    op.drop_table("evaluation_results")
    op.drop_index("idx_jobs_batch_repository", table_name="jobs")
    op.drop_index("ix_jobs_failure_class", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_owner_id", table_name="jobs")
    op.drop_index("ix_jobs_batch_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_batches_status", table_name="batches")
    op.drop_index("ix_batches_owner_id", table_name="batches")
    op.drop_table("batches")
    op.drop_index("idx_queue_archive_queue_time", table_name="queue_archive")
    op.drop_table("queue_archive")
    op.drop_index("idx_queue_messages_lease", table_name="queue_messages")
    op.drop_index("ix_queue_messages_queue_name", table_name="queue_messages")
    op.drop_table("queue_messages")
