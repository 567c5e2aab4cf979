from pathlib import Path

import allure
from sqlalchemy import text

from agent_pipeline.orchestrator.repository import WorkflowStateStore

pytestmark = [
    allure.epic("Durable State"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('workflow_states', 'workflow_step_results')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()

    assert version == "20261017_0001"
    assert tables == ["workflow_states", "workflow_step_results"]
    assert str(journal_mode).lower() == "wal"
    store.close()
