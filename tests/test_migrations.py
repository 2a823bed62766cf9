from pathlib import Path

import allure
from sqlalchemy import inspect, text

from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.storage.common import build_sqlite_engine

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = OrchestratorRepository(db_path)
    repository.init_schema()
    repository.init_schema()
    repository.close()

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=1_000)
    try:
        with engine.connect() as connection:
            version = connection.execute(
                text("SELECT version_num FROM alembic_version"),
            ).scalar_one()
            journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
        inspector = inspect(engine)
        tables = sorted(name for name in inspector.get_table_names() if name != "alembic_version")
        agent_columns = {column["name"] for column in inspector.get_columns("agents")}
    finally:
        engine.dispose()

    assert version == "20261003_0003"
    assert str(journal_mode).lower() == "wal"
    assert tables == [
        "agents",
        "audit_events",
        "checkpoints",
        "cost_entries",
        "escalations",
        "failure_analyses",
        "task_revisions",
        "tasks",
        "teams",
        "tool_execution_records",
    ]
    assert "skill_outcomes_json" in agent_columns
