"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

import tenantaccess.models.database  # noqa: F401  registers table metadata
from tenantaccess.audit.logger import InMemoryAuditSink
from tenantaccess.engine import AccessEngine
from tenantaccess.models.domain import Tenant, Tool
from tenantaccess.storage.repositories.db_directory import DatabaseDirectoryRepository
from tenantaccess.storage.repositories.directory import InMemoryDirectoryRepository
from tenantaccess.storage.repositories.grants import (
    DatabaseGrantRepository,
    InMemoryGrantRepository,
)
from tenantaccess.storage.repositories.tools import DatabaseToolCatalog, InMemoryToolCatalog
from tenantaccess.types import ToolStatus, UserRole

ROOT = "root"
ALICE = "alice"  # admin of tenant A
BOB = "bob"  # plain user of tenants A and B, active A
CAROL = "carol"  # plain user of tenant C only
DAVE = "dave"  # admin of tenant C


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(params=["memory", "database"])
async def access(request: pytest.FixtureRequest, async_engine, clock: FrozenClock) -> AccessEngine:
    """An AccessEngine on each backend, seeded with a small directory and catalog.

    Tenants A and B form group "acme"; C stands alone. Tools are ordered
    crm, wiki, reports, legacy; "legacy" is inactive.
    """
    if request.param == "memory":
        engine = AccessEngine.create(
            InMemoryDirectoryRepository(),
            InMemoryGrantRepository(),
            InMemoryToolCatalog(),
            InMemoryAuditSink(),
            clock=clock,
        )
    else:
        engine = AccessEngine.create(
            DatabaseDirectoryRepository(async_engine),
            DatabaseGrantRepository(async_engine),
            DatabaseToolCatalog(async_engine),
            InMemoryAuditSink(),
            clock=clock,
        )

    await engine.bootstrap_super_admin(ROOT, "root@example.com")
    await engine.groups.create_group("acme", "Acme Holdings", ROOT)
    await engine.directory.create_tenant(Tenant(id="A", name="Alpha", group_id="acme"))
    await engine.directory.create_tenant(Tenant(id="B", name="Beta", group_id="acme"))
    await engine.directory.create_tenant(Tenant(id="C", name="Gamma"))

    await engine.tools.add_tool(Tool(id="crm", name="CRM", display_order=1))
    await engine.tools.add_tool(Tool(id="wiki", name="Wiki", display_order=2))
    await engine.tools.add_tool(Tool(id="reports", name="Reports", display_order=3))
    await engine.tools.add_tool(
        Tool(id="legacy", name="Legacy", status=ToolStatus.INACTIVE, display_order=4)
    )

    await engine.memberships.register_user(ALICE, "alice@example.com", UserRole.ADMIN, ["A"], ROOT)
    await engine.memberships.register_user(BOB, "bob@example.com", UserRole.USER, ["A", "B"], ROOT)
    await engine.memberships.register_user(CAROL, "carol@example.com", UserRole.USER, ["C"], ROOT)
    await engine.memberships.register_user(DAVE, "dave@example.com", UserRole.ADMIN, ["C"], ROOT)

    engine.audit.events.clear()
    return engine
