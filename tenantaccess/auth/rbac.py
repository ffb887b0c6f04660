"""Role checks for the actor performing a mutation.

Every check takes the actor explicitly; there is no ambient "current user".
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from tenantaccess.exceptions import AccessDenied, NotFound
from tenantaccess.types import UserRole

if TYPE_CHECKING:
    from collections.abc import Collection

    from tenantaccess.models.domain import User
    from tenantaccess.storage.repositories.directory import DirectoryRepository

logger = structlog.get_logger(__name__)


async def load_actor(directory: DirectoryRepository, actor_id: str) -> User:
    """Fetch the acting user or raise NotFound."""
    actor = await directory.get_user(actor_id)
    if actor is None:
        raise NotFound("user", actor_id)
    return actor


def is_tenant_admin(actor: User, tenant_ids: Collection[str]) -> bool:
    """True for super admins and for admins belonging to any of ``tenant_ids``."""
    if actor.is_super_admin:
        return True
    if actor.role != UserRole.ADMIN:
        return False
    return any(t in tenant_ids for t in actor.tenants)


def require_super_admin(actor: User) -> None:
    if not actor.is_super_admin:
        logger.warning("access_denied", actor_id=actor.id, required="super_admin")
        raise AccessDenied(f"User {actor.id} is not a super admin")


def require_tenant_admin(actor: User, tenant_ids: Collection[str]) -> None:
    """Require super admin, or admin of one of ``tenant_ids``."""
    if not is_tenant_admin(actor, tenant_ids):
        logger.warning(
            "access_denied",
            actor_id=actor.id,
            role=str(actor.role),
            required="tenant_admin",
            tenant_ids=sorted(tenant_ids),
        )
        raise AccessDenied(f"User {actor.id} cannot administer tenants {sorted(tenant_ids)}")
