from __future__ import annotations

import asyncio
from pathlib import Path

from alembic import command
from alembic.config import Config
import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine

from tenantflow.domain.models import Base
from tenantflow.persistence import db


MIGRATIONS_DIR = Path(db.__file__).resolve().parent / "alembic"


def _config(url: str) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", url)
    return config


async def _schema(url: str) -> dict[str, dict[str, set[str]]]:
    engine = create_async_engine(url)

    def _read(sync_conn) -> dict[str, dict[str, set[str]]]:
        inspector = inspect(sync_conn)
        return {
            table: {
                "columns": {column["name"] for column in inspector.get_columns(table)},
                "indexes": {index["name"] for index in inspector.get_indexes(table)},
                "uniques": {constraint["name"] for constraint in inspector.get_unique_constraints(table)},
            }
            for table in inspector.get_table_names()
            if table != "alembic_version"
        }

    try:
        async with engine.connect() as conn:
            return await conn.run_sync(_read)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_migrations_build_the_orm_schema(tmp_path: Path) -> None:
    url = f"sqlite+aiosqlite:///{tmp_path / 'migrated.db'}"
    config = _config(url)
    # env.py drives its own event loop, so run it off this one.
    await asyncio.to_thread(command.upgrade, config, "head")

    migrated = await _schema(url)
    assert set(migrated) == set(Base.metadata.tables)
    for name, table in Base.metadata.tables.items():
        assert migrated[name]["columns"] == {column.name for column in table.columns}, name
        assert {index.name for index in table.indexes} <= migrated[name]["indexes"], name
    assert "uq_workflow_instances_active_entity" in migrated["workflow_instances"]["uniques"]
    assert "delegator_role" in migrated["approval_delegations"]["columns"]

    await asyncio.to_thread(command.downgrade, config, "base")
    assert await _schema(url) == {}
