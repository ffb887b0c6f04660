"""Unit tests for MembershipManager invariants, group pools and the matrix."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from tenantaccess.audit.logger import InMemoryAuditSink
from tenantaccess.exceptions import (
    AccessDenied,
    ConcurrentModificationError,
    InvalidState,
    LastTenantViolation,
    NotFound,
)
from tenantaccess.membership.manager import MembershipManager
from tenantaccess.models.domain import Tenant, User
from tenantaccess.storage.repositories.directory import InMemoryDirectoryRepository
from tenantaccess.types import AuditAction, UserRole

if TYPE_CHECKING:
    from tenantaccess.engine import AccessEngine

ROOT = "root"
ALICE = "alice"
BOB = "bob"
CAROL = "carol"
DAVE = "dave"


@pytest.mark.unit
class TestAddUserToTenant:
    async def test_appends_without_touching_active_tenant(self, access: AccessEngine) -> None:
        user = await access.add_user_to_tenant(CAROL, "A", ROOT)
        assert user.tenants == ["C", "A"]
        assert user.active_tenant == "C"

    async def test_existing_membership_is_noop(self, access: AccessEngine) -> None:
        before = await access.directory.get_user(BOB)
        user = await access.add_user_to_tenant(BOB, "B", ALICE)
        assert user.tenants == ["A", "B"]
        assert before is not None
        assert user.version == before.version
        assert access.audit.events == []

    async def test_emits_audit_event(self, access: AccessEngine) -> None:
        await access.add_user_to_tenant(CAROL, "A", ROOT)
        event = access.audit.events[-1]
        assert event.action == AuditAction.MEMBERSHIP_ADDED
        assert event.actor_id == ROOT
        assert event.entity_type == "user"
        assert event.entity_id == CAROL
        assert event.tenant_id == "A"

    async def test_group_admin_may_add_to_sibling_tenant(self, access: AccessEngine) -> None:
        # alice administers A, which shares the "acme" group with B
        await access.remove_user_from_tenant(BOB, "B", ALICE)
        user = await access.add_user_to_tenant(BOB, "B", ALICE)
        assert user.tenants == ["A", "B"]

    async def test_admin_outside_group_denied(self, access: AccessEngine) -> None:
        with pytest.raises(AccessDenied):
            await access.add_user_to_tenant(CAROL, "A", DAVE)

    async def test_plain_user_denied(self, access: AccessEngine) -> None:
        with pytest.raises(AccessDenied):
            await access.add_user_to_tenant(CAROL, "B", BOB)

    async def test_super_admin_cannot_become_member(self, access: AccessEngine) -> None:
        with pytest.raises(InvalidState):
            await access.add_user_to_tenant(ROOT, "A", ROOT)

    async def test_unknown_tenant_raises(self, access: AccessEngine) -> None:
        with pytest.raises(NotFound):
            await access.add_user_to_tenant(BOB, "Z", ROOT)

    async def test_unknown_user_raises(self, access: AccessEngine) -> None:
        with pytest.raises(NotFound):
            await access.add_user_to_tenant("ghost", "A", ROOT)


@pytest.mark.unit
class TestRemoveUserFromTenant:
    async def test_removing_active_tenant_reassigns(self, access: AccessEngine) -> None:
        user = await access.remove_user_from_tenant(BOB, "A", ALICE)
        assert user.tenants == ["B"]
        assert user.active_tenant == "B"

    async def test_removing_other_tenant_keeps_active(self, access: AccessEngine) -> None:
        user = await access.remove_user_from_tenant(BOB, "B", ALICE)
        assert user.tenants == ["A"]
        assert user.active_tenant == "A"

    async def test_reassigns_to_first_remaining_in_insertion_order(
        self, access: AccessEngine
    ) -> None:
        await access.add_user_to_tenant(BOB, "C", ROOT)
        await access.switch_active_tenant(BOB, "B")
        user = await access.remove_user_from_tenant(BOB, "B", ROOT)
        assert user.tenants == ["A", "C"]
        assert user.active_tenant == "A"

    async def test_last_tenant_rejected_and_unchanged(self, access: AccessEngine) -> None:
        with pytest.raises(LastTenantViolation) as exc_info:
            await access.remove_user_from_tenant(CAROL, "C", ROOT)
        assert exc_info.value.user_id == CAROL
        assert exc_info.value.tenant_id == "C"

        user = await access.directory.get_user(CAROL)
        assert user is not None
        assert user.tenants == ["C"]
        assert user.active_tenant == "C"
        assert access.audit.events == []

    async def test_non_member_raises_not_found(self, access: AccessEngine) -> None:
        with pytest.raises(NotFound) as exc_info:
            await access.remove_user_from_tenant(CAROL, "A", ROOT)
        assert exc_info.value.entity_type == "membership"

    async def test_audit_records_reassignment(self, access: AccessEngine) -> None:
        await access.remove_user_from_tenant(BOB, "A", ALICE)
        event = access.audit.events[-1]
        assert event.action == AuditAction.MEMBERSHIP_REMOVED
        assert event.metadata["active_tenant"] == "B"
        assert event.metadata["previous_active_tenant"] == "A"

    async def test_admin_outside_group_denied(self, access: AccessEngine) -> None:
        with pytest.raises(AccessDenied):
            await access.remove_user_from_tenant(BOB, "A", DAVE)


@pytest.mark.unit
class TestSwitchActiveTenant:
    async def test_member_can_switch(self, access: AccessEngine) -> None:
        user = await access.switch_active_tenant(BOB, "B")
        assert user.active_tenant == "B"
        assert user.tenants == ["A", "B"]

        event = access.audit.events[-1]
        assert event.action == AuditAction.ACTIVE_TENANT_SWITCHED
        assert event.actor_id == BOB
        assert event.metadata["previous_active_tenant"] == "A"

    async def test_non_member_denied(self, access: AccessEngine) -> None:
        with pytest.raises(AccessDenied):
            await access.switch_active_tenant(BOB, "C")

    async def test_super_admin_can_switch_anywhere(self, access: AccessEngine) -> None:
        user = await access.switch_active_tenant(ROOT, "C")
        assert user.active_tenant == "C"
        assert user.tenants == []

    async def test_switch_to_current_is_noop(self, access: AccessEngine) -> None:
        user = await access.switch_active_tenant(BOB, "A")
        assert user.active_tenant == "A"
        assert access.audit.events == []

    async def test_unknown_tenant_raises(self, access: AccessEngine) -> None:
        with pytest.raises(NotFound):
            await access.switch_active_tenant(ROOT, "Z")


@pytest.mark.unit
class TestGroupedTenants:
    async def test_includes_siblings_sorted_by_name(self, access: AccessEngine) -> None:
        tenants = await access.grouped_tenants("B")
        assert [t.id for t in tenants] == ["A", "B"]

    async def test_ungrouped_tenant_returns_itself(self, access: AccessEngine) -> None:
        tenants = await access.grouped_tenants("C")
        assert [t.id for t in tenants] == ["C"]

    async def test_unknown_tenant_raises(self, access: AccessEngine) -> None:
        with pytest.raises(NotFound):
            await access.grouped_tenants("Z")


@pytest.mark.unit
class TestGroupUserPool:
    async def test_union_deduplicated(self, access: AccessEngine) -> None:
        pool = await access.group_user_pool("A")
        assert [u.id for u in pool] == [ALICE, BOB]

    async def test_same_result_from_any_tenant_in_group(self, access: AccessEngine) -> None:
        from_a = await access.group_user_pool("A")
        from_b = await access.group_user_pool("B")
        assert [u.id for u in from_a] == [u.id for u in from_b]

    async def test_idempotent(self, access: AccessEngine) -> None:
        first = await access.group_user_pool("B")
        second = await access.group_user_pool("B")
        assert [u.id for u in first] == [u.id for u in second]

    async def test_excludes_super_admin(self, access: AccessEngine) -> None:
        pool = await access.group_user_pool("C")
        assert {u.id for u in pool} == {CAROL, DAVE}


@pytest.mark.unit
class TestMembershipMatrix:
    async def test_checkbox_state_mirrors_membership(self, access: AccessEngine) -> None:
        matrix = await access.memberships.membership_matrix("A")
        assert [t.id for t in matrix.tenants] == ["A", "B"]
        assert matrix.is_checked(BOB, "A") is True
        assert matrix.is_checked(BOB, "B") is True
        assert matrix.is_checked(ALICE, "B") is False
        assert matrix.is_checked(CAROL, "A") is False

        rows = {user.id: checks for user, checks in matrix.rows()}
        assert rows == {ALICE: [True, False], BOB: [True, True]}

    async def test_toggle_on_adds_membership(self, access: AccessEngine) -> None:
        user = await access.memberships.toggle_membership(ALICE, "B", True, ALICE)
        assert user.tenants == ["A", "B"]

    async def test_toggle_off_removes_membership(self, access: AccessEngine) -> None:
        user = await access.memberships.toggle_membership(BOB, "A", False, ALICE)
        assert user.tenants == ["B"]
        assert user.active_tenant == "B"

    async def test_toggle_off_last_tenant_rejected(self, access: AccessEngine) -> None:
        with pytest.raises(LastTenantViolation):
            await access.memberships.toggle_membership(ALICE, "A", False, ALICE)

    async def test_can_manage_group_users(self, access: AccessEngine) -> None:
        assert await access.memberships.can_manage_group_users(ALICE, "B") is True
        assert await access.memberships.can_manage_group_users(ROOT, "C") is True
        assert await access.memberships.can_manage_group_users(DAVE, "A") is False
        assert await access.memberships.can_manage_group_users(BOB, "A") is False


@pytest.mark.unit
class TestRegisterAndDeleteUser:
    async def test_first_tenant_becomes_active(self, access: AccessEngine) -> None:
        user = await access.memberships.register_user(
            "erin", "erin@example.com", UserRole.USER, ["B", "A"], ALICE
        )
        assert user.tenants == ["B", "A"]
        assert user.active_tenant == "B"
        assert access.audit.actions() == [AuditAction.USER_CREATED]

    async def test_user_without_tenant_rejected(self, access: AccessEngine) -> None:
        with pytest.raises(InvalidState):
            await access.memberships.register_user(
                "erin", "erin@example.com", UserRole.USER, [], ROOT
            )
        assert await access.directory.get_user("erin") is None

    async def test_super_admin_with_tenant_rejected(self, access: AccessEngine) -> None:
        with pytest.raises(InvalidState):
            await access.memberships.register_user(
                "sam", "sam@example.com", UserRole.SUPER_ADMIN, ["A"], ROOT
            )

    async def test_only_super_admin_creates_super_admin(self, access: AccessEngine) -> None:
        with pytest.raises(AccessDenied):
            await access.memberships.register_user(
                "sam", "sam@example.com", UserRole.SUPER_ADMIN, [], ALICE
            )
        user = await access.memberships.register_user(
            "sam", "sam@example.com", UserRole.SUPER_ADMIN, [], ROOT
        )
        assert user.is_super_admin
        assert user.active_tenant is None

    async def test_admin_cannot_register_into_foreign_tenant(self, access: AccessEngine) -> None:
        with pytest.raises(AccessDenied):
            await access.memberships.register_user(
                "erin", "erin@example.com", UserRole.USER, ["A", "C"], ALICE
            )

    async def test_delete_user_removes_memberships(self, access: AccessEngine) -> None:
        await access.memberships.delete_user(CAROL, DAVE)
        assert await access.directory.get_user(CAROL) is None
        assert [u.id for u in await access.group_user_pool("C")] == [DAVE]
        assert access.audit.actions() == [AuditAction.USER_DELETED]

    async def test_delete_user_requires_admin(self, access: AccessEngine) -> None:
        with pytest.raises(AccessDenied):
            await access.memberships.delete_user(CAROL, ALICE)
        assert await access.directory.get_user(CAROL) is not None

    async def test_delete_super_admin_requires_super_admin(self, access: AccessEngine) -> None:
        await access.memberships.register_user(
            "sam", "sam@example.com", UserRole.SUPER_ADMIN, [], ROOT
        )
        with pytest.raises(AccessDenied):
            await access.memberships.delete_user("sam", ALICE)
        await access.memberships.delete_user("sam", ROOT)
        assert await access.directory.get_user("sam") is None


@pytest.mark.unit
class TestChangeRole:
    async def test_promotion_to_super_admin_drops_memberships(
        self, access: AccessEngine
    ) -> None:
        user = await access.memberships.change_role(BOB, UserRole.SUPER_ADMIN, ROOT)
        assert user.role == UserRole.SUPER_ADMIN
        assert user.tenants == []

        stored = await access.directory.get_user(BOB)
        assert stored is not None
        assert stored.is_super_admin
        assert stored.tenants == []
        assert [u.id for u in await access.group_user_pool("A")] == [ALICE]
        assert (await access.resolve_access(BOB, "reports")).granted is True

        assert access.audit.actions() == [AuditAction.ROLE_CHANGED]
        event = access.audit.events[0]
        assert event.actor_id == ROOT
        assert event.metadata["previous_role"] == "user"
        assert event.metadata["role"] == "super_admin"
        assert event.metadata["previous_tenants"] == ["A", "B"]
        assert event.metadata["tenants"] == []

    async def test_promotion_to_super_admin_requires_super_admin(
        self, access: AccessEngine
    ) -> None:
        with pytest.raises(AccessDenied):
            await access.memberships.change_role(BOB, UserRole.SUPER_ADMIN, ALICE)
        stored = await access.directory.get_user(BOB)
        assert stored is not None
        assert stored.role == UserRole.USER
        assert stored.tenants == ["A", "B"]
        assert access.audit.events == []

    async def test_promotion_with_tenants_rejected(self, access: AccessEngine) -> None:
        with pytest.raises(InvalidState):
            await access.memberships.change_role(BOB, UserRole.SUPER_ADMIN, ROOT, tenants=["A"])

    async def test_demotion_needs_at_least_one_tenant(self, access: AccessEngine) -> None:
        await access.register_user("sam", "sam@example.com", UserRole.SUPER_ADMIN, [], ROOT)
        with pytest.raises(InvalidState):
            await access.memberships.change_role("sam", UserRole.USER, ROOT)
        with pytest.raises(InvalidState):
            await access.memberships.change_role("sam", UserRole.USER, ROOT, tenants=[])

        stored = await access.directory.get_user("sam")
        assert stored is not None
        assert stored.is_super_admin

    async def test_demotion_assigns_tenants_and_active_tenant(self, access: AccessEngine) -> None:
        await access.register_user("sam", "sam@example.com", UserRole.SUPER_ADMIN, [], ROOT)
        user = await access.memberships.change_role(
            "sam", UserRole.ADMIN, ROOT, tenants=["C", "A", "C"]
        )
        assert user.role == UserRole.ADMIN
        assert user.tenants == ["C", "A"]
        assert user.active_tenant == "C"

        stored = await access.directory.get_user("sam")
        assert stored is not None
        assert stored.role == UserRole.ADMIN
        assert stored.tenants == ["C", "A"]
        assert await access.can_manage_group_users("sam", "B") is True
        assert await access.check_membership_integrity() == []

    async def test_demotion_to_unknown_tenant_raises(self, access: AccessEngine) -> None:
        await access.register_user("sam", "sam@example.com", UserRole.SUPER_ADMIN, [], ROOT)
        with pytest.raises(NotFound):
            await access.memberships.change_role("sam", UserRole.USER, ROOT, tenants=["nope"])
        stored = await access.directory.get_user("sam")
        assert stored is not None
        assert stored.is_super_admin

    async def test_demotion_requires_super_admin(self, access: AccessEngine) -> None:
        await access.register_user("sam", "sam@example.com", UserRole.SUPER_ADMIN, [], ROOT)
        with pytest.raises(AccessDenied):
            await access.memberships.change_role("sam", UserRole.USER, ALICE, tenants=["A"])

    async def test_user_to_admin_keeps_memberships(self, access: AccessEngine) -> None:
        user = await access.memberships.change_role(BOB, UserRole.ADMIN, ALICE)
        assert user.role == UserRole.ADMIN
        assert user.tenants == ["A", "B"]
        assert user.active_tenant == "A"
        assert await access.can_manage_group_users(BOB, "A") is True

        user = await access.memberships.change_role(BOB, "user", ALICE)
        assert user.role == UserRole.USER
        assert user.tenants == ["A", "B"]
        assert access.audit.actions() == [AuditAction.ROLE_CHANGED, AuditAction.ROLE_CHANGED]

    async def test_admin_outside_group_denied(self, access: AccessEngine) -> None:
        with pytest.raises(AccessDenied):
            await access.memberships.change_role(BOB, UserRole.ADMIN, DAVE)

    async def test_tenants_rejected_between_user_and_admin(self, access: AccessEngine) -> None:
        with pytest.raises(InvalidState):
            await access.memberships.change_role(BOB, UserRole.ADMIN, ALICE, tenants=["A"])

    async def test_same_role_is_noop(self, access: AccessEngine) -> None:
        before = await access.directory.get_user(BOB)
        assert before is not None
        user = await access.memberships.change_role(BOB, UserRole.USER, ALICE)
        assert user.version == before.version
        assert access.audit.events == []

    async def test_unknown_user_raises(self, access: AccessEngine) -> None:
        with pytest.raises(NotFound):
            await access.memberships.change_role("ghost", UserRole.ADMIN, ROOT)


async def _manager_with_user(
    tenants: list[str],
) -> tuple[MembershipManager, InMemoryDirectoryRepository]:
    directory = InMemoryDirectoryRepository()
    await directory.create_user(User(id=ROOT, role=UserRole.SUPER_ADMIN))
    for tenant_id in ("A", "B", "C"):
        await directory.create_tenant(Tenant(id=tenant_id, name=tenant_id))
    await directory.create_user(User(id=BOB, tenants=tenants, active_tenant=tenants[0]))
    return MembershipManager(directory, InMemoryAuditSink()), directory


@pytest.mark.unit
class TestConcurrentMutations:
    async def test_parallel_removals_never_strand_user(self) -> None:
        manager, directory = await _manager_with_user(["A", "B"])
        results = await asyncio.gather(
            manager.remove_user_from_tenant(BOB, "A", ROOT),
            manager.remove_user_from_tenant(BOB, "B", ROOT),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], LastTenantViolation)

        user = await directory.get_user(BOB)
        assert user is not None
        assert len(user.tenants) == 1
        assert user.active_tenant in user.tenants

    async def test_parallel_remove_and_switch_stay_consistent(self) -> None:
        manager, directory = await _manager_with_user(["A", "B", "C"])
        await asyncio.gather(
            manager.remove_user_from_tenant(BOB, "B", ROOT),
            manager.switch_active_tenant(BOB, "C"),
            manager.remove_user_from_tenant(BOB, "C", ROOT),
        )
        user = await directory.get_user(BOB)
        assert user is not None
        assert user.tenants == ["A"]
        assert user.active_tenant == "A"

    async def test_stale_version_rejected_by_repository(self) -> None:
        manager, directory = await _manager_with_user(["A", "B"])
        stale = await directory.get_user(BOB)
        assert stale is not None
        await manager.switch_active_tenant(BOB, "B")
        with pytest.raises(ConcurrentModificationError):
            await directory.save_memberships(BOB, ["A"], "A", stale.version)

    async def test_promotion_and_add_never_leave_super_admin_with_tenant(self) -> None:
        manager, directory = await _manager_with_user(["A"])
        results = await asyncio.gather(
            manager.change_role(BOB, UserRole.SUPER_ADMIN, ROOT),
            manager.add_user_to_tenant(BOB, "B", ROOT),
            return_exceptions=True,
        )
        assert isinstance(results[1], InvalidState)

        user = await directory.get_user(BOB)
        assert user is not None
        assert user.is_super_admin
        assert user.tenants == []
