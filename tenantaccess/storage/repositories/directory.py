"""Directory repository: users, tenants, groups and membership edges.

The in-memory store is the reference backend for dev and tests; the
PostgreSQL-backed store lives in ``db_directory``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog

from tenantaccess.exceptions import ConcurrentModificationError, NotFound, StorageError

if TYPE_CHECKING:
    from collections.abc import Collection

    from tenantaccess.models.domain import Group, Tenant, User
    from tenantaccess.types import UserRole

logger = structlog.get_logger(__name__)


class DirectoryRepository(ABC):
    """Read/write access to the user <-> tenant <-> group graph."""

    # Users

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Insert a user together with its initial memberships."""

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        """Return the user with its ordered memberships, or None."""

    @abstractmethod
    async def list_users(self) -> list[User]:
        """Return every user."""

    @abstractmethod
    async def list_users_in_tenants(self, tenant_ids: Collection[str]) -> list[User]:
        """Return users holding at least one of ``tenant_ids``, each once."""

    @abstractmethod
    async def save_memberships(
        self,
        user_id: str,
        tenants: list[str],
        active_tenant: str | None,
        expected_version: int,
        role: UserRole | None = None,
    ) -> User:
        """Compare-and-swap the membership set and active tenant of one user.

        ``role`` is written in the same swap when given. Raises
        ConcurrentModificationError when the stored version is no longer
        ``expected_version``.
        """

    @abstractmethod
    async def delete_user(self, user_id: str) -> bool:
        """Delete a user and all of its membership edges."""

    # Tenants

    @abstractmethod
    async def create_tenant(self, tenant: Tenant) -> Tenant:
        """Insert a tenant."""

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        """Return the tenant or None."""

    @abstractmethod
    async def list_tenants(self) -> list[Tenant]:
        """Return every tenant."""

    @abstractmethod
    async def list_tenants_in_group(self, group_id: str) -> list[Tenant]:
        """Return tenants whose ``group_id`` equals ``group_id``."""

    @abstractmethod
    async def set_tenant_group(self, tenant_id: str, group_id: str | None) -> Tenant:
        """Attach a tenant to a group, or detach it with None."""

    # Groups

    @abstractmethod
    async def create_group(self, group: Group) -> Group:
        """Insert a group."""

    @abstractmethod
    async def get_group(self, group_id: str) -> Group | None:
        """Return the group or None."""

    @abstractmethod
    async def save_group(self, group: Group) -> Group:
        """Overwrite an existing group record (rename, soft delete)."""


class InMemoryDirectoryRepository(DirectoryRepository):
    """In-memory directory. Each method runs without awaiting, so it is atomic per event loop."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._tenants: dict[str, Tenant] = {}
        self._groups: dict[str, Group] = {}

    async def create_user(self, user: User) -> User:
        if user.id in self._users:
            raise StorageError(f"User already exists: {user.id}")
        stored = user.model_copy(deep=True)
        self._users[user.id] = stored
        logger.info("user_created", user_id=user.id, role=str(user.role))
        return stored.model_copy(deep=True)

    async def get_user(self, user_id: str) -> User | None:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def list_users(self) -> list[User]:
        return [u.model_copy(deep=True) for u in self._users.values()]

    async def list_users_in_tenants(self, tenant_ids: Collection[str]) -> list[User]:
        wanted = set(tenant_ids)
        return [
            u.model_copy(deep=True)
            for u in self._users.values()
            if wanted.intersection(u.tenants)
        ]

    async def save_memberships(
        self,
        user_id: str,
        tenants: list[str],
        active_tenant: str | None,
        expected_version: int,
        role: UserRole | None = None,
    ) -> User:
        current = self._users.get(user_id)
        if current is None:
            raise NotFound("user", user_id)
        if current.version != expected_version:
            raise ConcurrentModificationError(
                f"User {user_id} changed concurrently "
                f"(expected version {expected_version}, found {current.version})"
            )
        updated = current.model_copy(
            update={
                "tenants": list(dict.fromkeys(tenants)),
                "active_tenant": active_tenant,
                "role": role or current.role,
                "version": current.version + 1,
            }
        )
        self._users[user_id] = updated
        return updated.model_copy(deep=True)

    async def delete_user(self, user_id: str) -> bool:
        return self._users.pop(user_id, None) is not None

    async def create_tenant(self, tenant: Tenant) -> Tenant:
        if tenant.id in self._tenants:
            raise StorageError(f"Tenant already exists: {tenant.id}")
        self._tenants[tenant.id] = tenant.model_copy()
        logger.info("tenant_created", tenant_id=tenant.id, group_id=tenant.group_id)
        return tenant.model_copy()

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        tenant = self._tenants.get(tenant_id)
        return tenant.model_copy() if tenant else None

    async def list_tenants(self) -> list[Tenant]:
        return [t.model_copy() for t in self._tenants.values()]

    async def list_tenants_in_group(self, group_id: str) -> list[Tenant]:
        return [t.model_copy() for t in self._tenants.values() if t.group_id == group_id]

    async def set_tenant_group(self, tenant_id: str, group_id: str | None) -> Tenant:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise NotFound("tenant", tenant_id)
        updated = tenant.model_copy(update={"group_id": group_id or None})
        self._tenants[tenant_id] = updated
        return updated.model_copy()

    async def create_group(self, group: Group) -> Group:
        if group.group_id in self._groups:
            raise StorageError(f"Group already exists: {group.group_id}")
        self._groups[group.group_id] = group.model_copy()
        return group.model_copy()

    async def get_group(self, group_id: str) -> Group | None:
        group = self._groups.get(group_id)
        return group.model_copy() if group else None

    async def save_group(self, group: Group) -> Group:
        if group.group_id not in self._groups:
            raise NotFound("group", group.group_id)
        self._groups[group.group_id] = group.model_copy()
        return group.model_copy()
