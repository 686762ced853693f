from pathlib import Path

import allure
from sqlalchemy import inspect, text

from people_lookup.storage.alembic_runner import upgrade_head
from people_lookup.storage.common import build_sqlite_engine

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    upgrade_head(db_path)
    upgrade_head(db_path)

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=1000)
    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
            journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar()
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()

    assert version == "20261017_0001"
    assert str(journal_mode).lower() == "wal"
    assert {
        "credit_accounts",
        "credit_ledger_entries",
        "search_tasks",
        "search_results",
        "detail_cache",
        "system_configs",
    } <= tables
