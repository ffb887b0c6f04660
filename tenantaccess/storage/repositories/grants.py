"""Company-scoped grants and user-scoped overrides.

Pure data: no policy lives here. User grants are only ever deactivated,
never deleted, because an inactive record is an explicit revocation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantaccess.exceptions import ConcurrentModificationError
from tenantaccess.models.database import CompanyGrantRow, UserGrantRow
from tenantaccess.models.domain import CompanyGrant, UserGrant
from tenantaccess.types import AccessLevel
from tenantaccess.utils.clock import from_naive_utc, to_naive_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


class GrantRepository(ABC):
    """Storage for CompanyGrant and UserGrant records."""

    @abstractmethod
    async def get_company_grant(self, tenant_id: str, tool_id: str) -> CompanyGrant | None:
        """Return the (tenant, tool) record in any state."""

    @abstractmethod
    async def list_company_grants(
        self, tenant_id: str, active_only: bool = True
    ) -> list[CompanyGrant]:
        """Return the tenant's grants."""

    @abstractmethod
    async def upsert_company_grant(self, grant: CompanyGrant) -> CompanyGrant:
        """Insert the grant or overwrite the existing (tenant, tool) record."""

    @abstractmethod
    async def deactivate_company_grant(self, tenant_id: str, tool_id: str) -> bool:
        """Mark the (tenant, tool) grant inactive. Returns False if none was active."""

    @abstractmethod
    async def get_user_grant(self, user_id: str, tool_id: str) -> UserGrant | None:
        """Return the (user, tool) record in any state."""

    @abstractmethod
    async def list_user_grants(self, user_id: str) -> list[UserGrant]:
        """Return every record for the user, active and revoked."""

    @abstractmethod
    async def list_tool_user_grants(
        self, tool_id: str, active_only: bool = True
    ) -> list[UserGrant]:
        """Return user-level records for one tool."""

    @abstractmethod
    async def upsert_user_grant(self, grant: UserGrant) -> UserGrant:
        """Insert the record or overwrite the existing (user, tool) record."""


class InMemoryGrantRepository(GrantRepository):
    """In-memory grant store for dev/testing without a database.

    Grants go in and come out as copies, like rows read from a database.
    """

    def __init__(self) -> None:
        self._company: dict[tuple[str, str], CompanyGrant] = {}
        self._user: dict[tuple[str, str], UserGrant] = {}

    async def get_company_grant(self, tenant_id: str, tool_id: str) -> CompanyGrant | None:
        grant = self._company.get((tenant_id, tool_id))
        return grant.model_copy() if grant is not None else None

    async def list_company_grants(
        self, tenant_id: str, active_only: bool = True
    ) -> list[CompanyGrant]:
        return [
            g.model_copy()
            for (tid, _), g in self._company.items()
            if tid == tenant_id and (g.is_active or not active_only)
        ]

    async def upsert_company_grant(self, grant: CompanyGrant) -> CompanyGrant:
        self._company[(grant.tenant_id, grant.tool_id)] = grant.model_copy()
        return grant.model_copy()

    async def deactivate_company_grant(self, tenant_id: str, tool_id: str) -> bool:
        grant = self._company.get((tenant_id, tool_id))
        if grant is None or not grant.is_active:
            return False
        self._company[(tenant_id, tool_id)] = grant.model_copy(update={"is_active": False})
        return True

    async def get_user_grant(self, user_id: str, tool_id: str) -> UserGrant | None:
        grant = self._user.get((user_id, tool_id))
        return grant.model_copy() if grant is not None else None

    async def list_user_grants(self, user_id: str) -> list[UserGrant]:
        return [g.model_copy() for (uid, _), g in self._user.items() if uid == user_id]

    async def list_tool_user_grants(
        self, tool_id: str, active_only: bool = True
    ) -> list[UserGrant]:
        return [
            g.model_copy()
            for (_, tid), g in self._user.items()
            if tid == tool_id and (g.is_active or not active_only)
        ]

    async def upsert_user_grant(self, grant: UserGrant) -> UserGrant:
        self._user[(grant.user_id, grant.tool_id)] = grant.model_copy()
        return grant.model_copy()


def _to_company_grant(row: CompanyGrantRow) -> CompanyGrant:
    return CompanyGrant(
        tenant_id=row.tenant_id,
        tool_id=row.tool_id,
        access_level=AccessLevel(row.access_level),
        is_active=row.is_active,
        granted_by=row.granted_by,
        granted_at=from_naive_utc(row.granted_at),
    )


def _to_user_grant(row: UserGrantRow) -> UserGrant:
    return UserGrant(
        user_id=row.user_id,
        tool_id=row.tool_id,
        access_level=AccessLevel(row.access_level),
        is_active=row.is_active,
        expires_at=from_naive_utc(row.expires_at),
        granted_by=row.granted_by,
        granted_at=from_naive_utc(row.granted_at),
    )


class DatabaseGrantRepository(GrantRepository):
    """Grant store backed by ``company_grants`` and ``user_grants``.

    Both tables carry a unique constraint on their (subject, tool) pair, so
    an upsert racing another upsert fails instead of duplicating the record.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def _company_row(
        self, session: AsyncSession, tenant_id: str, tool_id: str
    ) -> CompanyGrantRow | None:
        stmt = select(CompanyGrantRow).where(
            col(CompanyGrantRow.tenant_id) == tenant_id,
            col(CompanyGrantRow.tool_id) == tool_id,
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _user_row(
        self, session: AsyncSession, user_id: str, tool_id: str
    ) -> UserGrantRow | None:
        stmt = select(UserGrantRow).where(
            col(UserGrantRow.user_id) == user_id,
            col(UserGrantRow.tool_id) == tool_id,
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def get_company_grant(self, tenant_id: str, tool_id: str) -> CompanyGrant | None:
        async with AsyncSession(self._engine) as session:
            row = await self._company_row(session, tenant_id, tool_id)
            return _to_company_grant(row) if row else None

    async def list_company_grants(
        self, tenant_id: str, active_only: bool = True
    ) -> list[CompanyGrant]:
        async with AsyncSession(self._engine) as session:
            stmt = select(CompanyGrantRow).where(col(CompanyGrantRow.tenant_id) == tenant_id)
            if active_only:
                stmt = stmt.where(col(CompanyGrantRow.is_active).is_(True))
            result = await session.execute(stmt)
            return [_to_company_grant(r) for r in result.scalars().all()]

    async def upsert_company_grant(self, grant: CompanyGrant) -> CompanyGrant:
        async with AsyncSession(self._engine) as session:
            row = await self._company_row(session, grant.tenant_id, grant.tool_id)
            if row is None:
                row = CompanyGrantRow(tenant_id=grant.tenant_id, tool_id=grant.tool_id)
            row.access_level = str(grant.access_level)
            row.is_active = grant.is_active
            row.granted_by = grant.granted_by
            row.granted_at = to_naive_utc(grant.granted_at)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                raise ConcurrentModificationError(
                    f"Company grant {grant.tenant_id}/{grant.tool_id} written concurrently"
                ) from exc
        logger.debug("company_grant_saved", tenant_id=grant.tenant_id, tool_id=grant.tool_id)
        return grant

    async def deactivate_company_grant(self, tenant_id: str, tool_id: str) -> bool:
        async with AsyncSession(self._engine) as session:
            row = await self._company_row(session, tenant_id, tool_id)
            if row is None or not row.is_active:
                return False
            row.is_active = False
            session.add(row)
            await session.commit()
            return True

    async def get_user_grant(self, user_id: str, tool_id: str) -> UserGrant | None:
        async with AsyncSession(self._engine) as session:
            row = await self._user_row(session, user_id, tool_id)
            return _to_user_grant(row) if row else None

    async def list_user_grants(self, user_id: str) -> list[UserGrant]:
        async with AsyncSession(self._engine) as session:
            stmt = select(UserGrantRow).where(col(UserGrantRow.user_id) == user_id)
            result = await session.execute(stmt)
            return [_to_user_grant(r) for r in result.scalars().all()]

    async def list_tool_user_grants(
        self, tool_id: str, active_only: bool = True
    ) -> list[UserGrant]:
        async with AsyncSession(self._engine) as session:
            stmt = select(UserGrantRow).where(col(UserGrantRow.tool_id) == tool_id)
            if active_only:
                stmt = stmt.where(col(UserGrantRow.is_active).is_(True))
            result = await session.execute(stmt)
            return [_to_user_grant(r) for r in result.scalars().all()]

    async def upsert_user_grant(self, grant: UserGrant) -> UserGrant:
        async with AsyncSession(self._engine) as session:
            row = await self._user_row(session, grant.user_id, grant.tool_id)
            if row is None:
                row = UserGrantRow(user_id=grant.user_id, tool_id=grant.tool_id)
            row.access_level = str(grant.access_level)
            row.is_active = grant.is_active
            row.expires_at = to_naive_utc(grant.expires_at)
            row.granted_by = grant.granted_by
            row.granted_at = to_naive_utc(grant.granted_at)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                raise ConcurrentModificationError(
                    f"User grant {grant.user_id}/{grant.tool_id} written concurrently"
                ) from exc
        logger.debug("user_grant_saved", user_id=grant.user_id, tool_id=grant.tool_id)
        return grant
