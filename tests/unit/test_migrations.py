"""The Alembic revision creates the same tables as the SQLModel metadata."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

import tenantaccess.models.database  # noqa: F401  registers table metadata

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.engine import Connection

migration = importlib.import_module(
    "tenantaccess.storage.migrations.versions.a1b2c3d4e5f6_create_access_schema"
)


def _run(conn: Connection, step: Callable[[], None]) -> list[str]:
    with Operations.context(MigrationContext.configure(conn)):
        step()
    return sorted(sa.inspect(conn).get_table_names())


@pytest.mark.unit
class TestInitialRevision:
    async def test_upgrade_matches_models_and_downgrade_drops_all(self) -> None:
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        try:
            async with engine.begin() as conn:
                created = await conn.run_sync(_run, migration.upgrade)
                assert created == sorted(SQLModel.metadata.tables)

                dropped = await conn.run_sync(_run, migration.downgrade)
                assert dropped == []
        finally:
            await engine.dispose()

    def test_is_root_revision(self) -> None:
        assert migration.down_revision is None
        assert migration.revision == "a1b2c3d4e5f6"
