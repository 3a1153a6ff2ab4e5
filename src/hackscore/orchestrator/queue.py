"""Durable message queue with visibility-timeout leasing backed by SQLite."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from hackscore.orchestrator.models import QueueMessageView, QueueMetrics
from hackscore.storage.common import dump_json, load_json, to_db_datetime, to_utc_aware_datetime
from hackscore.storage.database import Database
from hackscore.storage.sqlmodel_models import ArchivedMessage, QueueMessage

logger = logging.getLogger(__name__)


class MessageQueue:
    """Send, lease, delete and archive messages of named queues.

    A lease is not a commit: a leased message that is neither deleted nor
    archived becomes visible again once its visibility timeout passes, so
    consumers must make their side effects idempotent.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def send(self, queue_name: str, payload: Any, *, delay_seconds: float = 0) -> int:
        """Enqueue one message and return its id."""

        now = self.db.now()
        with Session(self.db.engine) as session:
            row = QueueMessage(
                queue_name=queue_name,
                payload_json=dump_json(payload),
                enqueued_at=to_db_datetime(now),
                visible_at=to_db_datetime(now + timedelta(seconds=max(0.0, delay_seconds))),
                read_count=0,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            assert row.msg_id is not None
            logger.debug("Sent message %s to queue %s", row.msg_id, queue_name)
            return row.msg_id

    def lease_read(
        self,
        queue_name: str,
        *,
        visibility_timeout_seconds: float,
        max_count: int = 1,
    ) -> list[QueueMessageView]:
        """Atomically claim up to ``max_count`` visible messages, oldest first.

        Each claimed message has its ``read_count`` incremented and becomes
        invisible to other readers for ``visibility_timeout_seconds``.
        Returns an empty list when nothing is eligible.
        """

        if visibility_timeout_seconds <= 0:
            raise ValueError("visibility_timeout_seconds must be > 0.")
        if max_count < 1:
            return []
        claimed: list[QueueMessageView] = []
        while len(claimed) < max_count:
            now = to_db_datetime(self.db.now())
            lease_until = now + timedelta(seconds=visibility_timeout_seconds)
            with Session(self.db.engine) as session:
                candidates = session.exec(
                    select(QueueMessage)
                    .where(
                        QueueMessage.queue_name == queue_name,
                        QueueMessage.visible_at <= now,
                        col(QueueMessage.msg_id).not_in([message.msg_id for message in claimed]),
                    )
                    .order_by(col(QueueMessage.msg_id).asc())
                    .limit(max_count - len(claimed)),
                ).all()
                if not candidates:
                    break

                round_claims: list[QueueMessageView] = []
                for candidate in candidates:
                    result = session.exec(
                        sa_update(QueueMessage)
                        .where(
                            col(QueueMessage.msg_id) == candidate.msg_id,
                            col(QueueMessage.read_count) == candidate.read_count,
                            col(QueueMessage.visible_at) <= now,
                        )
                        .values(
                            read_count=candidate.read_count + 1,
                            visible_at=lease_until,
                        ),
                    )
                    if result.rowcount != 1:
                        continue
                    round_claims.append(
                        QueueMessageView(
                            msg_id=candidate.msg_id,  # type: ignore[arg-type]
                            queue_name=candidate.queue_name,
                            payload=load_json(candidate.payload_json),
                            enqueued_at=to_utc_aware_datetime(candidate.enqueued_at),
                            visible_at=to_utc_aware_datetime(lease_until),
                            read_count=candidate.read_count + 1,
                        ),
                    )
                session.commit()
            claimed.extend(round_claims)
        return claimed

    def delete(self, queue_name: str, msg_id: int) -> bool:
        """Remove a message permanently. False when it is already gone."""

        with Session(self.db.engine) as session:
            result = session.exec(
                sa_delete(QueueMessage).where(
                    col(QueueMessage.msg_id) == msg_id,
                    col(QueueMessage.queue_name) == queue_name,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def archive(self, queue_name: str, msg_id: int) -> bool:
        """Move a message to the archive table. False when it is already gone."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            row = session.exec(
                select(QueueMessage).where(
                    QueueMessage.msg_id == msg_id,
                    QueueMessage.queue_name == queue_name,
                ),
            ).one_or_none()
            if row is None:
                return False
            archived = ArchivedMessage(
                msg_id=msg_id,
                queue_name=row.queue_name,
                payload_json=row.payload_json,
                enqueued_at=row.enqueued_at,
                visible_at=row.visible_at,
                read_count=row.read_count,
                archived_at=now,
            )
            result = session.exec(
                sa_delete(QueueMessage).where(col(QueueMessage.msg_id) == msg_id),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.add(archived)
            session.commit()
            return True

    def list_messages(self, queue_name: str, *, limit: int | None = None) -> list[QueueMessageView]:
        """Live messages of a queue, leased or not, oldest first."""

        with Session(self.db.engine) as session:
            statement = (
                select(QueueMessage)
                .where(QueueMessage.queue_name == queue_name)
                .order_by(col(QueueMessage.msg_id).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            return [_to_message_view(row) for row in session.exec(statement).all()]

    def list_archived(self, queue_name: str, *, limit: int = 50) -> list[QueueMessageView]:
        """Most recently archived messages first."""

        with Session(self.db.engine) as session:
            rows = session.exec(
                select(ArchivedMessage)
                .where(ArchivedMessage.queue_name == queue_name)
                .order_by(
                    col(ArchivedMessage.archived_at).desc(),
                    col(ArchivedMessage.msg_id).desc(),
                )
                .limit(limit),
            ).all()
            return [
                QueueMessageView(
                    msg_id=row.msg_id,
                    queue_name=row.queue_name,
                    payload=load_json(row.payload_json),
                    enqueued_at=to_utc_aware_datetime(row.enqueued_at),
                    visible_at=to_utc_aware_datetime(row.visible_at),
                    read_count=row.read_count,
                    archived_at=to_utc_aware_datetime(row.archived_at),
                )
                for row in rows
            ]

    def metrics(self, queue_name: str) -> QueueMetrics:
        """Length, lease split, archive size and message ages of one queue."""

        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            queue_length, oldest, newest = session.exec(
                select(
                    func.count(col(QueueMessage.msg_id)),
                    func.min(QueueMessage.enqueued_at),
                    func.max(QueueMessage.enqueued_at),
                ).where(QueueMessage.queue_name == queue_name),
            ).one()
            visible_count = session.exec(
                select(func.count(col(QueueMessage.msg_id))).where(
                    QueueMessage.queue_name == queue_name,
                    QueueMessage.visible_at <= now,
                ),
            ).one()
            archived_count = session.exec(
                select(func.count(col(ArchivedMessage.msg_id))).where(
                    ArchivedMessage.queue_name == queue_name,
                ),
            ).one()
        return QueueMetrics(
            queue_name=queue_name,
            queue_length=int(queue_length or 0),
            visible_count=int(visible_count or 0),
            leased_count=int(queue_length or 0) - int(visible_count or 0),
            archived_count=int(archived_count or 0),
            oldest_message_age_seconds=(
                (now - oldest).total_seconds() if oldest is not None else None
            ),
            newest_message_age_seconds=(
                (now - newest).total_seconds() if newest is not None else None
            ),
        )


def _to_message_view(row: QueueMessage) -> QueueMessageView:
    return QueueMessageView(
        msg_id=row.msg_id,  # type: ignore[arg-type]
        queue_name=row.queue_name,
        payload=load_json(row.payload_json),
        enqueued_at=to_utc_aware_datetime(row.enqueued_at),
        visible_at=to_utc_aware_datetime(row.visible_at),
        read_count=row.read_count,
    )
