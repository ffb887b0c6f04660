"""Grant store: upsert and soft-revoke of company and user tool grants."""

from __future__ import annotations

from datetime import UTC
from typing import TYPE_CHECKING

import structlog

from tenantaccess.auth.rbac import load_actor, require_tenant_admin
from tenantaccess.exceptions import InvalidState, NotFound
from tenantaccess.models.domain import AuditEvent, CompanyGrant, UserGrant
from tenantaccess.types import AccessLevel, AuditAction
from tenantaccess.utils.clock import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from tenantaccess.audit.logger import AuditSink
    from tenantaccess.models.domain import Tenant, Tool, User
    from tenantaccess.storage.repositories.directory import DirectoryRepository
    from tenantaccess.storage.repositories.grants import GrantRepository
    from tenantaccess.storage.repositories.tools import ToolCatalog

logger = structlog.get_logger(__name__)


class GrantStore:
    """Mutates grant records on behalf of an authorized actor.

    Company grants: one record per (tenant, tool); re-granting updates it in
    place and revoking clears ``is_active``. User grants: one record per
    (user, tool) that is never deleted; revoking writes an inactive record,
    which the resolver treats as an explicit revocation.
    """

    def __init__(
        self,
        directory: DirectoryRepository,
        grants: GrantRepository,
        tools: ToolCatalog,
        audit: AuditSink,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._directory = directory
        self._grants = grants
        self._tools = tools
        self._audit = audit
        self._clock = clock

    async def _require_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self._directory.get_tenant(tenant_id)
        if tenant is None:
            raise NotFound("tenant", tenant_id)
        return tenant

    async def _require_user(self, user_id: str) -> User:
        user = await self._directory.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        return user

    async def _require_grantable_tool(self, tool_id: str) -> Tool:
        tool = await self._tools.get_tool(tool_id)
        if tool is None:
            raise NotFound("tool", tool_id)
        if not tool.is_active:
            raise InvalidState(f"Tool {tool_id} is {tool.status}; only active tools can be granted")
        return tool

    async def grant_company_access(
        self,
        tenant_id: str,
        tool_id: str,
        access_level: AccessLevel | str,
        actor_id: str,
    ) -> CompanyGrant:
        """Grant (or re-grant at a new level) a tool to every member of a tenant."""
        actor = await load_actor(self._directory, actor_id)
        await self._require_tenant(tenant_id)
        await self._require_grantable_tool(tool_id)
        require_tenant_admin(actor, {tenant_id})

        previous = await self._grants.get_company_grant(tenant_id, tool_id)
        grant = await self._grants.upsert_company_grant(
            CompanyGrant(
                tenant_id=tenant_id,
                tool_id=tool_id,
                access_level=AccessLevel(access_level),
                is_active=True,
                granted_by=actor_id,
                granted_at=self._clock(),
            )
        )
        logger.info(
            "company_access_granted",
            tenant_id=tenant_id,
            tool_id=tool_id,
            level=str(grant.access_level),
            actor_id=actor_id,
        )
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=AuditAction.COMPANY_ACCESS_GRANTED,
                entity_type="company_grant",
                entity_id=f"{tenant_id}:{tool_id}",
                tenant_id=tenant_id,
                metadata={
                    "tool_id": tool_id,
                    "access_level": str(grant.access_level),
                    "previous_level": str(previous.access_level) if previous else None,
                    "reactivated": previous is not None and not previous.is_active,
                },
                timestamp=grant.granted_at,
            )
        )
        return grant

    async def revoke_company_access(self, tenant_id: str, tool_id: str, actor_id: str) -> bool:
        """Deactivate a company grant. Returns False if there was no active grant."""
        actor = await load_actor(self._directory, actor_id)
        await self._require_tenant(tenant_id)
        require_tenant_admin(actor, {tenant_id})

        revoked = await self._grants.deactivate_company_grant(tenant_id, tool_id)
        if not revoked:
            logger.debug("company_access_not_active", tenant_id=tenant_id, tool_id=tool_id)
            return False

        logger.info(
            "company_access_revoked", tenant_id=tenant_id, tool_id=tool_id, actor_id=actor_id
        )
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=AuditAction.COMPANY_ACCESS_REVOKED,
                entity_type="company_grant",
                entity_id=f"{tenant_id}:{tool_id}",
                tenant_id=tenant_id,
                metadata={"tool_id": tool_id},
                timestamp=self._clock(),
            )
        )
        return True

    async def grant_user_access(
        self,
        user_id: str,
        tool_id: str,
        access_level: AccessLevel | str,
        actor_id: str,
        expires_at: datetime | None = None,
    ) -> UserGrant:
        """Grant a personal override; also lifts an earlier revocation."""
        actor = await load_actor(self._directory, actor_id)
        target = await self._require_user(user_id)
        await self._require_grantable_tool(tool_id)
        require_tenant_admin(actor, target.tenants)

        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)

        previous = await self._grants.get_user_grant(user_id, tool_id)
        grant = await self._grants.upsert_user_grant(
            UserGrant(
                user_id=user_id,
                tool_id=tool_id,
                access_level=AccessLevel(access_level),
                is_active=True,
                expires_at=expires_at,
                granted_by=actor_id,
                granted_at=self._clock(),
            )
        )
        logger.info(
            "user_access_granted",
            user_id=user_id,
            tool_id=tool_id,
            level=str(grant.access_level),
            expires_at=expires_at,
            actor_id=actor_id,
        )
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=AuditAction.USER_ACCESS_GRANTED,
                entity_type="user_grant",
                entity_id=f"{user_id}:{tool_id}",
                tenant_id=target.active_tenant or "",
                metadata={
                    "tool_id": tool_id,
                    "access_level": str(grant.access_level),
                    "expires_at": expires_at.isoformat() if expires_at else None,
                    "lifted_revocation": previous is not None and not previous.is_active,
                },
                timestamp=grant.granted_at,
            )
        )
        return grant

    async def revoke_user_access(self, user_id: str, tool_id: str, actor_id: str) -> UserGrant:
        """Record an explicit revocation that overrides any company grant.

        The record is kept (inactive) rather than removed. A user without a
        personal grant still gets a revocation record, so the tool is hidden
        even when their tenant holds a company grant for it.
        """
        actor = await load_actor(self._directory, actor_id)
        target = await self._require_user(user_id)
        if await self._tools.get_tool(tool_id) is None:
            raise NotFound("tool", tool_id)
        require_tenant_admin(actor, target.tenants)

        previous = await self._grants.get_user_grant(user_id, tool_id)
        if previous is not None:
            revocation = previous.model_copy(update={"is_active": False})
        else:
            revocation = UserGrant(
                user_id=user_id,
                tool_id=tool_id,
                access_level=AccessLevel.READ,
                is_active=False,
                granted_by=actor_id,
                granted_at=self._clock(),
            )
        revocation = await self._grants.upsert_user_grant(revocation)

        logger.info("user_access_revoked", user_id=user_id, tool_id=tool_id, actor_id=actor_id)
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=AuditAction.USER_ACCESS_REVOKED,
                entity_type="user_grant",
                entity_id=f"{user_id}:{tool_id}",
                tenant_id=target.active_tenant or "",
                metadata={"tool_id": tool_id, "had_personal_grant": previous is not None},
                timestamp=self._clock(),
            )
        )
        return revocation
