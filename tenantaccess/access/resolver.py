"""Access resolution: merges grants, overrides and the super-admin bypass.

The resolver is read-only. For one (user, tool) pair the first matching
rule wins:

1. ``super_admin`` role -> granted at ``admin`` level, nothing else consulted.
2. A UserGrant record exists -> inactive means revoked (denied even over a
   company grant); active but expired means denied; otherwise its level.
3. An active CompanyGrant for the user's active tenant -> its level.
4. Denied.

Absence of access is a normal ``granted=False`` decision, never an error.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from tenantaccess.exceptions import NotFound
from tenantaccess.models.domain import AccessDecision
from tenantaccess.types import AccessLevel, AccessSource
from tenantaccess.utils.clock import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from tenantaccess.models.domain import User, UserGrant
    from tenantaccess.storage.repositories.directory import DirectoryRepository
    from tenantaccess.storage.repositories.grants import GrantRepository
    from tenantaccess.storage.repositories.tools import ToolCatalog

logger = structlog.get_logger(__name__)


class AccessResolver:
    """Answers "can user U use tool T, at what level, and why?"."""

    def __init__(
        self,
        directory: DirectoryRepository,
        grants: GrantRepository,
        tools: ToolCatalog,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._directory = directory
        self._grants = grants
        self._tools = tools
        self._clock = clock

    async def _require_user(self, user_id: str) -> User:
        user = await self._directory.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        return user

    async def resolve_access(self, user_id: str, tool_id: str) -> AccessDecision:
        """Return the access decision for one (user, tool) pair."""
        user = await self._require_user(user_id)
        if await self._tools.get_tool(tool_id) is None:
            raise NotFound("tool", tool_id)

        decision = await self._decide(user, tool_id)
        logger.debug(
            "access_resolved",
            user_id=user_id,
            tool_id=tool_id,
            granted=decision.granted,
            level=decision.level,
            source=decision.source,
        )
        return decision

    async def _decide(self, user: User, tool_id: str) -> AccessDecision:
        if user.is_super_admin:
            return AccessDecision(
                granted=True, level=AccessLevel.ADMIN, source=AccessSource.SUPER_ADMIN
            )

        override = await self._grants.get_user_grant(user.id, tool_id)
        if override is not None:
            return self._decide_override(override)

        if user.active_tenant:
            company = await self._grants.get_company_grant(user.active_tenant, tool_id)
            if company is not None and company.is_active:
                return AccessDecision(
                    granted=True, level=company.access_level, source=AccessSource.COMPANY
                )

        return AccessDecision.deny()

    def _decide_override(self, override: UserGrant) -> AccessDecision:
        if not override.is_active:
            return AccessDecision.deny()
        if override.is_expired(self._clock()):
            return AccessDecision.deny()
        return AccessDecision(
            granted=True, level=override.access_level, source=AccessSource.USER
        )

    async def list_accessible_tools(self, user_id: str) -> list[str]:
        """Return ids of every tool the user can see, in catalog display order.

        Super admins see the whole catalog regardless of tool status. Everyone
        else sees the active tenant's grants plus personal grants, minus
        revoked or expired personal grants, limited to ``active`` tools.
        """
        user = await self._require_user(user_id)
        catalog = await self._tools.list_tools()
        if user.is_super_admin:
            return [t.id for t in catalog]

        visible: set[str] = set()
        if user.active_tenant:
            visible.update(
                g.tool_id for g in await self._grants.list_company_grants(user.active_tenant)
            )

        now = self._clock()
        hidden: set[str] = set()
        for override in await self._grants.list_user_grants(user.id):
            if override.is_active and not override.is_expired(now):
                visible.add(override.tool_id)
            else:
                hidden.add(override.tool_id)
        visible -= hidden

        known = {t.id for t in catalog}
        dangling = visible - known
        if dangling:
            logger.warning(
                "grant_references_unknown_tool", user_id=user_id, tool_ids=sorted(dangling)
            )

        return [t.id for t in catalog if t.id in visible and t.is_active]

    async def tool_users(self, tool_id: str) -> list[UserGrant]:
        """Return the unexpired, active user-level grants for a tool.

        Grants left behind by deleted users are skipped.
        """
        if await self._tools.get_tool(tool_id) is None:
            raise NotFound("tool", tool_id)
        now = self._clock()
        live = [
            g
            for g in await self._grants.list_tool_user_grants(tool_id)
            if not g.is_expired(now)
        ]
        if not live:
            return []
        users = {u.id for u in await self._directory.list_users()}
        orphaned = sorted({g.user_id for g in live} - users)
        if orphaned:
            logger.debug("grant_references_unknown_user", tool_id=tool_id, user_ids=orphaned)
        return [g for g in live if g.user_id in users]
