"""In-process entry point: wires repositories, the audit sink and the services.

The host application holds one ``AccessEngine`` and calls it per request;
every operation takes the acting identities explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from tenantaccess.access.grants import GrantStore
from tenantaccess.access.resolver import AccessResolver
from tenantaccess.audit.logger import InMemoryAuditSink, NullAuditSink
from tenantaccess.config.logging import setup_logging
from tenantaccess.config.settings import get_settings
from tenantaccess.membership.groups import GroupRegistry
from tenantaccess.membership.integrity import MembershipIntegrity
from tenantaccess.membership.manager import MembershipManager
from tenantaccess.models.domain import User
from tenantaccess.storage.repositories.directory import InMemoryDirectoryRepository
from tenantaccess.storage.repositories.grants import InMemoryGrantRepository
from tenantaccess.storage.repositories.tools import InMemoryToolCatalog
from tenantaccess.types import UserRole
from tenantaccess.utils.clock import utc_now
from tenantaccess.utils.locks import KeyedLocks

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncEngine

    from tenantaccess.audit.logger import AuditSink
    from tenantaccess.config.settings import Settings
    from tenantaccess.models.domain import (
        AccessDecision,
        CompanyGrant,
        Group,
        MembershipIssue,
        MembershipMatrix,
        Tenant,
        UserGrant,
    )
    from tenantaccess.storage.repositories.directory import DirectoryRepository
    from tenantaccess.storage.repositories.grants import GrantRepository
    from tenantaccess.storage.repositories.tools import ToolCatalog
    from tenantaccess.types import AccessLevel

logger = structlog.get_logger(__name__)


@dataclass
class AccessEngine:
    """Facade over the resolver, grant store and membership services."""

    directory: DirectoryRepository
    grant_repo: GrantRepository
    tools: ToolCatalog
    audit: AuditSink
    resolver: AccessResolver
    grants: GrantStore
    memberships: MembershipManager
    groups: GroupRegistry
    integrity: MembershipIntegrity

    @classmethod
    def create(
        cls,
        directory: DirectoryRepository,
        grant_repo: GrantRepository,
        tools: ToolCatalog,
        audit: AuditSink,
        clock: Callable[[], datetime] = utc_now,
    ) -> AccessEngine:
        locks = KeyedLocks()
        return cls(
            directory=directory,
            grant_repo=grant_repo,
            tools=tools,
            audit=audit,
            resolver=AccessResolver(directory, grant_repo, tools, clock=clock),
            grants=GrantStore(directory, grant_repo, tools, audit, clock=clock),
            memberships=MembershipManager(directory, audit, locks=locks, clock=clock),
            groups=GroupRegistry(directory, audit, clock=clock),
            integrity=MembershipIntegrity(directory, audit, locks=locks, clock=clock),
        )

    # Resolution

    async def resolve_access(self, user_id: str, tool_id: str) -> AccessDecision:
        return await self.resolver.resolve_access(user_id, tool_id)

    async def list_accessible_tools(self, user_id: str) -> list[str]:
        return await self.resolver.list_accessible_tools(user_id)

    async def tool_users(self, tool_id: str) -> list[UserGrant]:
        return await self.resolver.tool_users(tool_id)

    # Membership

    async def register_user(
        self,
        user_id: str,
        email: str,
        role: UserRole | str,
        tenants: list[str],
        actor_id: str,
    ) -> User:
        return await self.memberships.register_user(user_id, email, role, tenants, actor_id)

    async def delete_user(self, user_id: str, actor_id: str) -> None:
        await self.memberships.delete_user(user_id, actor_id)

    async def change_role(
        self,
        user_id: str,
        new_role: UserRole | str,
        actor_id: str,
        tenants: list[str] | None = None,
    ) -> User:
        return await self.memberships.change_role(user_id, new_role, actor_id, tenants=tenants)

    async def add_user_to_tenant(self, user_id: str, tenant_id: str, actor_id: str) -> User:
        return await self.memberships.add_user_to_tenant(user_id, tenant_id, actor_id)

    async def remove_user_from_tenant(self, user_id: str, tenant_id: str, actor_id: str) -> User:
        return await self.memberships.remove_user_from_tenant(user_id, tenant_id, actor_id)

    async def switch_active_tenant(self, user_id: str, new_tenant_id: str) -> User:
        return await self.memberships.switch_active_tenant(user_id, new_tenant_id)

    async def grouped_tenants(self, tenant_id: str) -> list[Tenant]:
        return await self.memberships.grouped_tenants(tenant_id)

    async def group_user_pool(self, tenant_id: str) -> list[User]:
        return await self.memberships.group_user_pool(tenant_id)

    async def membership_matrix(self, tenant_id: str) -> MembershipMatrix:
        return await self.memberships.membership_matrix(tenant_id)

    async def toggle_membership(
        self, user_id: str, tenant_id: str, checked: bool, actor_id: str
    ) -> User:
        return await self.memberships.toggle_membership(user_id, tenant_id, checked, actor_id)

    async def can_manage_group_users(self, actor_id: str, tenant_id: str) -> bool:
        return await self.memberships.can_manage_group_users(actor_id, tenant_id)

    # Groups and integrity

    async def create_group(
        self, group_id: str, name: str, actor_id: str, description: str = ""
    ) -> Group:
        return await self.groups.create_group(group_id, name, actor_id, description=description)

    async def update_group(
        self,
        group_id: str,
        actor_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Group:
        return await self.groups.update_group(
            group_id, actor_id, name=name, description=description
        )

    async def delete_group(self, group_id: str, actor_id: str) -> None:
        await self.groups.delete_group(group_id, actor_id)

    async def assign_tenant_group(
        self, tenant_id: str, group_id: str | None, actor_id: str
    ) -> Tenant:
        return await self.groups.assign_tenant_group(tenant_id, group_id, actor_id)

    async def check_membership_integrity(self) -> list[MembershipIssue]:
        return await self.integrity.check()

    async def repair_memberships(self, actor_id: str) -> list[MembershipIssue]:
        return await self.integrity.repair(actor_id)

    # Grants

    async def grant_company_access(
        self, tenant_id: str, tool_id: str, access_level: AccessLevel | str, actor_id: str
    ) -> CompanyGrant:
        return await self.grants.grant_company_access(tenant_id, tool_id, access_level, actor_id)

    async def revoke_company_access(self, tenant_id: str, tool_id: str, actor_id: str) -> bool:
        return await self.grants.revoke_company_access(tenant_id, tool_id, actor_id)

    async def grant_user_access(
        self,
        user_id: str,
        tool_id: str,
        access_level: AccessLevel | str,
        actor_id: str,
        expires_at: datetime | None = None,
    ) -> UserGrant:
        return await self.grants.grant_user_access(
            user_id, tool_id, access_level, actor_id, expires_at=expires_at
        )

    async def revoke_user_access(self, user_id: str, tool_id: str, actor_id: str) -> UserGrant:
        return await self.grants.revoke_user_access(user_id, tool_id, actor_id)

    async def bootstrap_super_admin(self, user_id: str, email: str) -> User:
        """Create the first super admin, who has no actor to authorize them."""
        existing = await self.directory.get_user(user_id)
        if existing is not None:
            return existing
        user = await self.directory.create_user(
            User(id=user_id, email=email, role=UserRole.SUPER_ADMIN)
        )
        logger.info("super_admin_bootstrapped", user_id=user_id)
        return user


def build_engine(
    settings: Settings | None = None,
    db_engine: AsyncEngine | None = None,
    configure_logging: bool = True,
) -> AccessEngine:
    """Create an engine with the backends selected by settings.

    Hosts that already configure structlog pass ``configure_logging=False``.
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings.log_level, json_output=settings.json_logs, echo_sql=settings.debug)

    if settings.use_database or db_engine is not None:
        from tenantaccess.audit.logger import DatabaseAuditSink
        from tenantaccess.storage.database import get_engine
        from tenantaccess.storage.repositories.db_directory import DatabaseDirectoryRepository
        from tenantaccess.storage.repositories.grants import DatabaseGrantRepository
        from tenantaccess.storage.repositories.tools import DatabaseToolCatalog

        engine = db_engine or get_engine()
        audit: AuditSink = (
            DatabaseAuditSink(engine, max_metadata_bytes=settings.audit_max_details_bytes)
            if settings.audit_enabled
            else NullAuditSink()
        )
        logger.info("access_engine_built", backend="database")
        return AccessEngine.create(
            DatabaseDirectoryRepository(engine),
            DatabaseGrantRepository(engine),
            DatabaseToolCatalog(engine),
            audit,
        )

    logger.info("access_engine_built", backend="memory")
    return AccessEngine.create(
        InMemoryDirectoryRepository(),
        InMemoryGrantRepository(),
        InMemoryToolCatalog(),
        InMemoryAuditSink() if settings.audit_enabled else NullAuditSink(),
    )
