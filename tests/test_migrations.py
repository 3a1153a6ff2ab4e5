from pathlib import Path

import allure
import pytest
from sqlalchemy import inspect

import hackscore
from hackscore.storage.alembic_runner import MIGRATIONS_DIR, current_revision
from hackscore.storage.database import Database

pytestmark = [
    allure.epic("Evaluation Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db = Database(tmp_path / "nested" / "migrations.db")
    db.init_schema()

    assert current_revision(db.db_path) == "20261019_0001"
    tables = set(inspect(db.engine).get_table_names())
    assert {
        "queue_messages",
        "queue_archive",
        "batches",
        "jobs",
        "evaluation_results",
        "evaluation_items",
        "user_secrets",
    } <= tables

    unique_constraints = inspect(db.engine).get_unique_constraints("evaluation_results")
    assert any(
        sorted(constraint["column_names"]) == ["job_id", "repository"]
        for constraint in unique_constraints
    )
    db.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db = Database(tmp_path / "migrations.db")
    db.init_schema()
    db.init_schema()

    assert current_revision(db.db_path) == "20261019_0001"
    db.close()


def test_migrations_ship_inside_the_package(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    package_dir = Path(hackscore.__file__).resolve().parent
    assert MIGRATIONS_DIR.is_relative_to(package_dir)
    assert (MIGRATIONS_DIR / "env.py").is_file()
    assert (MIGRATIONS_DIR / "script.py.mako").is_file()

    monkeypatch.chdir(tmp_path)
    db = Database(Path("relative.db"))
    db.init_schema()

    assert current_revision(db.db_path) == "20261019_0001"
    db.close()
