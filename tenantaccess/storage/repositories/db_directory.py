"""Database-backed directory repository using SQLModel + AsyncSession."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, delete, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantaccess.exceptions import ConcurrentModificationError, NotFound, StorageError
from tenantaccess.models.database import (
    TenantGroupRow,
    TenantMembershipRow,
    TenantRow,
    UserRow,
    _utc_now,
)
from tenantaccess.models.domain import Group, Tenant, User
from tenantaccess.storage.repositories.directory import DirectoryRepository
from tenantaccess.types import UserRole
from tenantaccess.utils.clock import to_naive_utc

if TYPE_CHECKING:
    from collections.abc import Collection, Sequence

    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


def _to_user(row: UserRow, tenants: list[str]) -> User:
    return User(
        id=row.id,
        email=row.email,
        role=UserRole(row.role),
        tenants=tenants,
        active_tenant=row.active_tenant,
        version=row.version,
    )


def _to_tenant(row: TenantRow) -> Tenant:
    return Tenant(id=row.id, name=row.name, group_id=row.group_id)


def _to_group(row: TenantGroupRow) -> Group:
    return Group(
        group_id=row.group_id,
        name=row.name,
        description=row.description,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_by=row.updated_by,
        updated_at=row.updated_at,
        deleted_by=row.deleted_by,
        deleted_at=row.deleted_at,
    )


class DatabaseDirectoryRepository(DirectoryRepository):
    """PostgreSQL-backed directory store.

    Membership edges live in ``tenant_memberships``; their autoincrement id
    is the insertion order exposed as ``User.tenants``. ``users.version``
    is the compare-and-swap token for membership writes.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def _memberships_for(
        self, session: AsyncSession, user_ids: Sequence[str]
    ) -> dict[str, list[str]]:
        if not user_ids:
            return {}
        stmt = (
            select(TenantMembershipRow)
            .where(col(TenantMembershipRow.user_id).in_(user_ids))
            .order_by(col(TenantMembershipRow.id))
        )
        result = await session.execute(stmt)
        memberships: dict[str, list[str]] = defaultdict(list)
        for edge in result.scalars().all():
            memberships[edge.user_id].append(edge.tenant_id)
        return memberships

    async def _hydrate(self, session: AsyncSession, rows: Sequence[UserRow]) -> list[User]:
        memberships = await self._memberships_for(session, [r.id for r in rows])
        return [_to_user(r, memberships.get(r.id, [])) for r in rows]

    async def create_user(self, user: User) -> User:
        async with AsyncSession(self._engine) as session:
            session.add(
                UserRow(
                    id=user.id,
                    email=user.email,
                    role=str(user.role),
                    active_tenant=user.active_tenant,
                    version=user.version,
                )
            )
            try:
                await session.flush()  # user row must exist before its membership edges
                for tenant_id in dict.fromkeys(user.tenants):
                    session.add(TenantMembershipRow(user_id=user.id, tenant_id=tenant_id))
                await session.commit()
            except IntegrityError as exc:
                raise StorageError(f"User already exists: {user.id}") from exc
        logger.info("user_created", user_id=user.id, role=str(user.role))
        return user.model_copy(update={"tenants": list(dict.fromkeys(user.tenants))})

    async def get_user(self, user_id: str) -> User | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(UserRow, user_id)
            if row is None:
                return None
            return (await self._hydrate(session, [row]))[0]

    async def list_users(self) -> list[User]:
        async with AsyncSession(self._engine) as session:
            result = await session.execute(select(UserRow).order_by(col(UserRow.created_at)))
            return await self._hydrate(session, result.scalars().all())

    async def list_users_in_tenants(self, tenant_ids: Collection[str]) -> list[User]:
        if not tenant_ids:
            return []
        async with AsyncSession(self._engine) as session:
            member_ids = (
                select(TenantMembershipRow.user_id)
                .where(col(TenantMembershipRow.tenant_id).in_(list(tenant_ids)))
                .distinct()
            )
            stmt = (
                select(UserRow)
                .where(col(UserRow.id).in_(member_ids))
                .order_by(col(UserRow.created_at))
            )
            result = await session.execute(stmt)
            return await self._hydrate(session, result.scalars().all())

    async def save_memberships(
        self,
        user_id: str,
        tenants: list[str],
        active_tenant: str | None,
        expected_version: int,
        role: UserRole | None = None,
    ) -> User:
        wanted = list(dict.fromkeys(tenants))
        values: dict[str, object] = {
            "active_tenant": active_tenant,
            "version": expected_version + 1,
            "updated_at": _utc_now(),
        }
        if role is not None:
            values["role"] = str(role)
        async with AsyncSession(self._engine) as session:
            stmt = (
                update(UserRow)
                .where(col(UserRow.id) == user_id, col(UserRow.version) == expected_version)
                .values(**values)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                exists = await session.get(UserRow, user_id)
                await session.rollback()
                if exists is None:
                    raise NotFound("user", user_id)
                raise ConcurrentModificationError(
                    f"User {user_id} changed concurrently (expected version {expected_version})"
                )

            edges_result = await session.execute(
                select(TenantMembershipRow).where(col(TenantMembershipRow.user_id) == user_id)
            )
            existing = list(edges_result.scalars().all())
            present = {edge.tenant_id for edge in existing}
            for edge in existing:
                if edge.tenant_id not in wanted:
                    await session.delete(edge)
            for tenant_id in wanted:
                if tenant_id not in present:
                    session.add(TenantMembershipRow(user_id=user_id, tenant_id=tenant_id))
            try:
                await session.commit()
            except IntegrityError as exc:
                raise ConcurrentModificationError(
                    f"Membership edges for {user_id} changed concurrently"
                ) from exc

        user = await self.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        return user

    async def delete_user(self, user_id: str) -> bool:
        async with AsyncSession(self._engine) as session:
            row = await session.get(UserRow, user_id)
            if row is None:
                return False
            await session.execute(
                delete(TenantMembershipRow).where(col(TenantMembershipRow.user_id) == user_id)
            )
            await session.delete(row)
            await session.commit()
        logger.info("user_deleted", user_id=user_id)
        return True

    async def create_tenant(self, tenant: Tenant) -> Tenant:
        async with AsyncSession(self._engine) as session:
            session.add(TenantRow(id=tenant.id, name=tenant.name, group_id=tenant.group_id))
            try:
                await session.commit()
            except IntegrityError as exc:
                raise StorageError(f"Tenant already exists: {tenant.id}") from exc
        logger.info("tenant_created", tenant_id=tenant.id, group_id=tenant.group_id)
        return tenant

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(TenantRow, tenant_id)
            return _to_tenant(row) if row else None

    async def list_tenants(self) -> list[Tenant]:
        async with AsyncSession(self._engine) as session:
            result = await session.execute(select(TenantRow).order_by(col(TenantRow.created_at)))
            return [_to_tenant(r) for r in result.scalars().all()]

    async def list_tenants_in_group(self, group_id: str) -> list[Tenant]:
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(TenantRow)
                .where(col(TenantRow.group_id) == group_id)
                .order_by(col(TenantRow.created_at))
            )
            result = await session.execute(stmt)
            return [_to_tenant(r) for r in result.scalars().all()]

    async def set_tenant_group(self, tenant_id: str, group_id: str | None) -> Tenant:
        async with AsyncSession(self._engine) as session:
            row = await session.get(TenantRow, tenant_id)
            if row is None:
                raise NotFound("tenant", tenant_id)
            row.group_id = group_id or None
            row.updated_at = _utc_now()
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _to_tenant(row)

    async def create_group(self, group: Group) -> Group:
        async with AsyncSession(self._engine) as session:
            session.add(
                TenantGroupRow(
                    group_id=group.group_id,
                    name=group.name,
                    description=group.description,
                    created_by=group.created_by,
                    created_at=to_naive_utc(group.created_at),
                )
            )
            try:
                await session.commit()
            except IntegrityError as exc:
                raise StorageError(f"Group already exists: {group.group_id}") from exc
        return group

    async def get_group(self, group_id: str) -> Group | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(TenantGroupRow, group_id)
            return _to_group(row) if row else None

    async def save_group(self, group: Group) -> Group:
        async with AsyncSession(self._engine) as session:
            row = await session.get(TenantGroupRow, group.group_id)
            if row is None:
                raise NotFound("group", group.group_id)
            row.name = group.name
            row.description = group.description
            row.updated_by = group.updated_by
            row.updated_at = to_naive_utc(group.updated_at)
            row.deleted_by = group.deleted_by
            row.deleted_at = to_naive_utc(group.deleted_at)
            session.add(row)
            await session.commit()
        return group
