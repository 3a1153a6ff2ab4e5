"""Per-owner credential store consulted before each evaluation."""

from __future__ import annotations

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session

from hackscore.storage.common import to_db_datetime
from hackscore.storage.database import Database
from hackscore.storage.sqlmodel_models import UserSecret


class SecretStore:
    """Plain get/put of owner secrets; encryption at rest is out of scope."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_secret(self, owner_id: str, secret_type: str) -> str | None:
        with Session(self.db.engine) as session:
            row = session.get(UserSecret, (owner_id, secret_type))
            if row is None or not row.value:
                return None
            return row.value

    def put_secret(self, owner_id: str, secret_type: str, value: str) -> None:
        now = to_db_datetime(self.db.now())
        with Session(self.db.engine) as session:
            session.exec(
                sqlite_insert(UserSecret)
                .values(owner_id=owner_id, secret_type=secret_type, value=value, updated_at=now)
                .on_conflict_do_update(
                    index_elements=["owner_id", "secret_type"],
                    set_={"value": value, "updated_at": now},
                ),
            )
            session.commit()
