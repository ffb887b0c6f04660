"""Membership manager: user <-> tenant edges, the active tenant, and group pools.

Invariants enforced on every mutation:

* a ``super_admin`` holds no tenant membership;
* a ``user``/``admin`` holds at least one tenant once created;
* a non-super-admin's active tenant is always one of their memberships.

Mutations for one user run under that user's lock, and the write itself is
a compare-and-swap on the user's version, so the last-tenant check and the
active-tenant reassignment always see a consistent snapshot.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from tenantaccess.auth.rbac import (
    is_tenant_admin,
    load_actor,
    require_super_admin,
    require_tenant_admin,
)
from tenantaccess.exceptions import AccessDenied, InvalidState, LastTenantViolation, NotFound
from tenantaccess.models.domain import AuditEvent, MembershipMatrix, User
from tenantaccess.types import AuditAction, UserRole
from tenantaccess.utils.clock import utc_now
from tenantaccess.utils.locks import KeyedLocks

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from tenantaccess.audit.logger import AuditSink
    from tenantaccess.models.domain import Tenant
    from tenantaccess.storage.repositories.directory import DirectoryRepository

logger = structlog.get_logger(__name__)


class MembershipManager:
    """Owns every write to a user's membership set and active tenant."""

    def __init__(
        self,
        directory: DirectoryRepository,
        audit: AuditSink,
        locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._directory = directory
        self._audit = audit
        self._locks = locks if locks is not None else KeyedLocks()
        self._clock = clock

    async def _require_user(self, user_id: str) -> User:
        user = await self._directory.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        return user

    async def _require_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self._directory.get_tenant(tenant_id)
        if tenant is None:
            raise NotFound("tenant", tenant_id)
        return tenant

    async def _emit(
        self,
        action: AuditAction,
        actor_id: str,
        user_id: str,
        tenant_id: str = "",
        **metadata: object,
    ) -> None:
        await self._audit.record(
            AuditEvent(
                actor_id=actor_id,
                action=action,
                entity_type="user",
                entity_id=user_id,
                tenant_id=tenant_id,
                metadata=metadata,
                timestamp=self._clock(),
            )
        )

    # ------------------------------------------------------------------
    # Groups (read side)
    # ------------------------------------------------------------------

    async def grouped_tenants(self, tenant_id: str) -> list[Tenant]:
        """Return the tenant plus every tenant sharing its ``group_id``."""
        tenant = await self._require_tenant(tenant_id)
        if not tenant.group_id:
            return [tenant]
        members = await self._directory.list_tenants_in_group(tenant.group_id)
        if all(t.id != tenant.id for t in members):
            members.append(tenant)
        return sorted(members, key=lambda t: (t.name, t.id))

    async def group_user_pool(self, tenant_id: str) -> list[User]:
        """Return every user belonging to any tenant of the group, each once.

        The result is the same whichever tenant of the group is queried.
        """
        tenant_ids = [t.id for t in await self.grouped_tenants(tenant_id)]
        pool: dict[str, User] = {}
        for user in await self._directory.list_users_in_tenants(tenant_ids):
            pool.setdefault(user.id, user)
        return sorted(pool.values(), key=lambda u: (u.email, u.id))

    async def membership_matrix(self, tenant_id: str) -> MembershipMatrix:
        """Users of the group pool against the group's tenants."""
        tenants = await self.grouped_tenants(tenant_id)
        users = await self.group_user_pool(tenant_id)
        return MembershipMatrix(tenants=tenants, users=users)

    async def can_manage_group_users(self, actor_id: str, tenant_id: str) -> bool:
        """Super admins, or admins belonging to any tenant of the group."""
        actor = await load_actor(self._directory, actor_id)
        tenant_ids = {t.id for t in await self.grouped_tenants(tenant_id)}
        return is_tenant_admin(actor, tenant_ids)

    async def _authorize(self, actor_id: str, tenant_id: str) -> None:
        actor = await load_actor(self._directory, actor_id)
        tenant_ids = {t.id for t in await self.grouped_tenants(tenant_id)}
        require_tenant_admin(actor, tenant_ids)

    async def _authorize_over_user(self, actor_id: str, user: User) -> User:
        """Super admins, or admins of any tenant grouped with one of the user's."""
        actor = await load_actor(self._directory, actor_id)
        if user.is_super_admin or not user.tenants:
            if not actor.is_super_admin:
                raise AccessDenied(f"User {actor_id} cannot manage {user.id}")
            return actor
        tenant_ids: set[str] = set()
        for tenant_id in user.tenants:
            tenant_ids.update(t.id for t in await self.grouped_tenants(tenant_id))
        require_tenant_admin(actor, tenant_ids)
        return actor

    # ------------------------------------------------------------------
    # User lifecycle
    # ------------------------------------------------------------------

    async def register_user(
        self,
        user_id: str,
        email: str,
        role: UserRole | str,
        tenants: list[str],
        actor_id: str,
    ) -> User:
        """Create a user with a valid initial membership set.

        The first tenant becomes the active tenant.
        """
        role = UserRole(role)
        tenants = list(dict.fromkeys(tenants))
        if role == UserRole.SUPER_ADMIN and tenants:
            raise InvalidState("A super admin cannot hold tenant membership")
        if role != UserRole.SUPER_ADMIN and not tenants:
            raise InvalidState(f"A {role} must belong to at least one tenant")

        if tenants:
            for tenant_id in tenants:
                await self._authorize(actor_id, tenant_id)
        else:
            actor = await load_actor(self._directory, actor_id)
            if not actor.is_super_admin:
                raise AccessDenied("Only a super admin can create another super admin")

        user = await self._directory.create_user(
            User(
                id=user_id,
                email=email,
                role=role,
                tenants=tenants,
                active_tenant=tenants[0] if tenants else None,
            )
        )
        await self._emit(
            AuditAction.USER_CREATED,
            actor_id,
            user_id,
            tenant_id=user.active_tenant or "",
            role=str(role),
            tenants=user.tenants,
        )
        return user

    async def delete_user(self, user_id: str, actor_id: str) -> None:
        """Delete the account and all of its memberships.

        This is the alternative offered when removing a last membership.
        """
        async with self._locks.get(user_id):
            user = await self._require_user(user_id)
            await self._authorize_over_user(actor_id, user)
            await self._directory.delete_user(user_id)

        logger.info("user_deleted", user_id=user_id, actor_id=actor_id)
        await self._emit(AuditAction.USER_DELETED, actor_id, user_id, tenants=user.tenants)

    async def change_role(
        self,
        user_id: str,
        new_role: UserRole | str,
        actor_id: str,
        tenants: list[str] | None = None,
    ) -> User:
        """Change a user's role without breaking the membership invariants.

        Promotion to ``super_admin`` drops every membership. Demoting a super
        admin requires ``tenants``, the memberships the account will hold; the
        first one becomes the active tenant. Moves between ``user`` and
        ``admin`` keep the memberships as they are. Only a super admin may
        grant or remove ``super_admin``.
        """
        new_role = UserRole(new_role)
        async with self._locks.get(user_id):
            user = await self._require_user(user_id)
            if user.role == new_role:
                return user

            actor = await self._authorize_over_user(actor_id, user)
            if new_role == UserRole.SUPER_ADMIN or user.is_super_admin:
                require_super_admin(actor)

            if new_role == UserRole.SUPER_ADMIN:
                if tenants:
                    raise InvalidState("A super admin cannot hold tenant membership")
                new_tenants: list[str] = []
                active = user.active_tenant
            elif user.is_super_admin:
                new_tenants = list(dict.fromkeys(tenants or []))
                if not new_tenants:
                    raise InvalidState(f"A {new_role} must belong to at least one tenant")
                for tenant_id in new_tenants:
                    await self._require_tenant(tenant_id)
                active = new_tenants[0]
            else:
                if tenants is not None:
                    raise InvalidState(
                        f"Memberships of {user_id} do not change with role {new_role}"
                    )
                new_tenants = user.tenants
                active = user.active_tenant

            updated = await self._directory.save_memberships(
                user_id, new_tenants, active, user.version, role=new_role
            )

        logger.info(
            "role_changed",
            user_id=user_id,
            actor_id=actor_id,
            previous_role=str(user.role),
            role=str(new_role),
        )
        await self._emit(
            AuditAction.ROLE_CHANGED,
            actor_id,
            user_id,
            tenant_id=active or "",
            previous_role=str(user.role),
            role=str(new_role),
            tenants=updated.tenants,
            previous_tenants=user.tenants,
        )
        return updated

    # ------------------------------------------------------------------
    # Membership edges
    # ------------------------------------------------------------------

    async def add_user_to_tenant(self, user_id: str, tenant_id: str, actor_id: str) -> User:
        """Add a membership. Adding an existing membership is a no-op.

        The active tenant is left alone unless the user had none.
        """
        await self._authorize(actor_id, tenant_id)

        async with self._locks.get(user_id):
            user = await self._require_user(user_id)
            if user.is_super_admin:
                raise InvalidState(f"Super admin {user_id} cannot hold tenant membership")
            if user.is_member(tenant_id):
                logger.debug("membership_exists", user_id=user_id, tenant_id=tenant_id)
                return user

            active = user.active_tenant or tenant_id
            updated = await self._directory.save_memberships(
                user_id, [*user.tenants, tenant_id], active, user.version
            )

        logger.info(
            "membership_added", user_id=user_id, tenant_id=tenant_id, actor_id=actor_id
        )
        await self._emit(
            AuditAction.MEMBERSHIP_ADDED,
            actor_id,
            user_id,
            tenant_id=tenant_id,
            tenants=updated.tenants,
        )
        return updated

    async def remove_user_from_tenant(self, user_id: str, tenant_id: str, actor_id: str) -> User:
        """Remove a membership, reassigning the active tenant if it was removed.

        Raises LastTenantViolation, leaving the user untouched, when
        ``tenant_id`` is the user's only membership.
        """
        await self._authorize(actor_id, tenant_id)

        async with self._locks.get(user_id):
            user = await self._require_user(user_id)
            if not user.is_member(tenant_id):
                raise NotFound("membership", f"{user_id}:{tenant_id}")
            if len(user.tenants) == 1:
                logger.warning(
                    "last_tenant_removal_rejected",
                    user_id=user_id,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                )
                raise LastTenantViolation(user_id, tenant_id)

            remaining = [t for t in user.tenants if t != tenant_id]
            active = user.active_tenant
            if active not in remaining:
                active = remaining[0]
            updated = await self._directory.save_memberships(
                user_id, remaining, active, user.version
            )

        reassigned = active != user.active_tenant
        logger.info(
            "membership_removed",
            user_id=user_id,
            tenant_id=tenant_id,
            actor_id=actor_id,
            active_tenant=active,
            reassigned=reassigned,
        )
        await self._emit(
            AuditAction.MEMBERSHIP_REMOVED,
            actor_id,
            user_id,
            tenant_id=tenant_id,
            tenants=updated.tenants,
            active_tenant=active,
            previous_active_tenant=user.active_tenant if reassigned else None,
        )
        return updated

    async def toggle_membership(
        self, user_id: str, tenant_id: str, checked: bool, actor_id: str
    ) -> User:
        """Apply one checkbox change from the group membership matrix."""
        if checked:
            return await self.add_user_to_tenant(user_id, tenant_id, actor_id)
        return await self.remove_user_from_tenant(user_id, tenant_id, actor_id)

    async def switch_active_tenant(self, user_id: str, new_tenant_id: str) -> User:
        """Change the tenant context a user operates under.

        Super admins may switch to any tenant; everyone else only to one of
        their memberships.
        """
        async with self._locks.get(user_id):
            user = await self._require_user(user_id)
            await self._require_tenant(new_tenant_id)
            if not user.is_super_admin and not user.is_member(new_tenant_id):
                logger.warning(
                    "tenant_switch_denied", user_id=user_id, tenant_id=new_tenant_id
                )
                raise AccessDenied(f"User {user_id} is not a member of tenant {new_tenant_id}")
            if user.active_tenant == new_tenant_id:
                return user

            updated = await self._directory.save_memberships(
                user_id, user.tenants, new_tenant_id, user.version
            )

        logger.info(
            "active_tenant_switched",
            user_id=user_id,
            from_tenant=user.active_tenant,
            to_tenant=new_tenant_id,
        )
        await self._emit(
            AuditAction.ACTIVE_TENANT_SWITCHED,
            user_id,
            user_id,
            tenant_id=new_tenant_id,
            previous_active_tenant=user.active_tenant,
        )
        return updated
