"""Group registry: named pools of tenants sharing one user base."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog

from tenantaccess.auth.rbac import load_actor, require_super_admin
from tenantaccess.exceptions import InvalidState, NotFound
from tenantaccess.models.domain import AuditEvent, Group
from tenantaccess.types import AuditAction
from tenantaccess.utils.clock import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from tenantaccess.audit.logger import AuditSink
    from tenantaccess.models.domain import Tenant
    from tenantaccess.storage.repositories.directory import DirectoryRepository

logger = structlog.get_logger(__name__)

_GROUP_ID_PATTERN = re.compile(r"^[a-z0-9-]+$")
_GROUP_ID_MIN_LENGTH = 3


def validate_group_id(group_id: str) -> str | None:
    """Return an error message for a malformed group id, or None if it is valid."""
    if not _GROUP_ID_PATTERN.match(group_id):
        return "Group ID must contain only lowercase letters, numbers, and hyphens"
    if len(group_id) < _GROUP_ID_MIN_LENGTH:
        return f"Group ID must be at least {_GROUP_ID_MIN_LENGTH} characters long"
    return None


class GroupRegistry:
    """Super-admin-only management of groups and tenant group assignment."""

    def __init__(
        self,
        directory: DirectoryRepository,
        audit: AuditSink,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._directory = directory
        self._audit = audit
        self._clock = clock

    async def create_group(
        self, group_id: str, name: str, actor_id: str, description: str = ""
    ) -> Group:
        require_super_admin(await load_actor(self._directory, actor_id))

        group_id = group_id.strip().lower()
        error = validate_group_id(group_id)
        if error:
            raise InvalidState(error)
        if await self._directory.get_group(group_id) is not None:
            raise InvalidState(f"Group ID already in use: {group_id}")

        group = await self._directory.create_group(
            Group(
                group_id=group_id,
                name=name.strip(),
                description=description.strip(),
                created_by=actor_id,
                created_at=self._clock(),
            )
        )
        logger.info("group_created", group_id=group_id, actor_id=actor_id)
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=AuditAction.GROUP_CREATED,
                entity_type="group",
                entity_id=group_id,
                metadata={"name": group.name},
                timestamp=group.created_at,
            )
        )
        return group

    async def _require_group(self, group_id: str) -> Group:
        group = await self._directory.get_group(group_id)
        if group is None or group.is_deleted:
            raise NotFound("group", group_id)
        return group

    async def update_group(
        self,
        group_id: str,
        actor_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Group:
        """Rename or re-describe a group. The id never changes."""
        require_super_admin(await load_actor(self._directory, actor_id))
        group = await self._require_group(group_id)

        changes: dict[str, str] = {}
        if name is not None:
            if not name.strip():
                raise InvalidState("Group name cannot be empty")
            changes["name"] = name.strip()
        if description is not None:
            changes["description"] = description.strip()

        now = self._clock()
        updated = await self._directory.save_group(
            group.model_copy(update={**changes, "updated_by": actor_id, "updated_at": now})
        )
        logger.info("group_updated", group_id=group_id, actor_id=actor_id, fields=sorted(changes))
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=AuditAction.GROUP_UPDATED,
                entity_type="group",
                entity_id=group_id,
                metadata=changes,
                timestamp=now,
            )
        )
        return updated

    async def delete_group(self, group_id: str, actor_id: str) -> None:
        """Soft-delete a group that no tenant references any more.

        The record is kept with ``deleted_at`` set, so its id stays reserved.
        """
        require_super_admin(await load_actor(self._directory, actor_id))
        group = await self._require_group(group_id)

        in_use = await self._directory.list_tenants_in_group(group_id)
        if in_use:
            raise InvalidState(
                f"Cannot delete group {group_id}: {len(in_use)} tenant(s) still assigned"
            )

        now = self._clock()
        await self._directory.save_group(
            group.model_copy(update={"deleted_by": actor_id, "deleted_at": now})
        )
        logger.info("group_deleted", group_id=group_id, actor_id=actor_id)
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=AuditAction.GROUP_DELETED,
                entity_type="group",
                entity_id=group_id,
                timestamp=now,
            )
        )

    async def assign_tenant_group(
        self, tenant_id: str, group_id: str | None, actor_id: str
    ) -> Tenant:
        """Move a tenant into ``group_id``, or out of any group with None."""
        require_super_admin(await load_actor(self._directory, actor_id))
        tenant = await self._directory.get_tenant(tenant_id)
        if tenant is None:
            raise NotFound("tenant", tenant_id)
        if group_id:
            await self._require_group(group_id)

        updated = await self._directory.set_tenant_group(tenant_id, group_id)
        logger.info(
            "tenant_group_assigned",
            tenant_id=tenant_id,
            group_id=group_id,
            previous_group_id=tenant.group_id,
        )
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=AuditAction.TENANT_GROUP_ASSIGNED,
                entity_type="tenant",
                entity_id=tenant_id,
                tenant_id=tenant_id,
                metadata={"group_id": group_id, "previous_group_id": tenant.group_id},
                timestamp=self._clock(),
            )
        )
        return updated
