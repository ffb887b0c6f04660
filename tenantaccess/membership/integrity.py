"""One-off scan and repair of membership data written before invariants were enforced."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from tenantaccess.auth.rbac import load_actor, require_super_admin
from tenantaccess.exceptions import ConcurrentModificationError
from tenantaccess.models.domain import AuditEvent, MembershipIssue
from tenantaccess.types import AuditAction, IssueKind
from tenantaccess.utils.clock import utc_now
from tenantaccess.utils.locks import KeyedLocks

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from tenantaccess.audit.logger import AuditSink
    from tenantaccess.models.domain import User
    from tenantaccess.storage.repositories.directory import DirectoryRepository

logger = structlog.get_logger(__name__)


def find_issues(user: User, known_tenants: set[str]) -> list[MembershipIssue]:
    """Return every invariant the stored user record breaks."""
    if user.is_super_admin:
        if user.tenants:
            return [
                MembershipIssue(
                    user_id=user.id,
                    kind=IssueKind.SUPER_ADMIN_WITH_TENANTS,
                    detail=", ".join(user.tenants),
                )
            ]
        return []

    issues = [
        MembershipIssue(user_id=user.id, kind=IssueKind.UNKNOWN_TENANT, detail=t)
        for t in user.tenants
        if t not in known_tenants
    ]
    if not user.tenants:
        issues.append(MembershipIssue(user_id=user.id, kind=IssueKind.NO_TENANTS))
    elif user.active_tenant not in user.tenants:
        issues.append(
            MembershipIssue(
                user_id=user.id,
                kind=IssueKind.DANGLING_ACTIVE_TENANT,
                detail=user.active_tenant or "",
            )
        )
    return issues


class MembershipIntegrity:
    """Reports broken membership records and fixes the mechanical cases.

    A user left with no valid tenant cannot be fixed automatically and is
    only reported; someone has to reassign or delete them.
    """

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

    async def check(self) -> list[MembershipIssue]:
        known = {t.id for t in await self._directory.list_tenants()}
        issues: list[MembershipIssue] = []
        for user in await self._directory.list_users():
            issues.extend(find_issues(user, known))
        logger.info("membership_integrity_checked", issues=len(issues))
        return issues

    async def repair(self, actor_id: str) -> list[MembershipIssue]:
        """Fix what can be fixed; returns every issue with ``fixed`` set accordingly.

        Each user is re-read and written under the same per-user lock the
        membership manager takes. A user whose write loses a version race is
        reported unfixed and the scan moves on.
        """
        require_super_admin(await load_actor(self._directory, actor_id))
        known = {t.id for t in await self._directory.list_tenants()}
        report: list[MembershipIssue] = []

        for listed in await self._directory.list_users():
            async with self._locks.get(listed.id):
                user = await self._directory.get_user(listed.id)
                if user is None:
                    continue
                issues = find_issues(user, known)
                if not issues:
                    continue

                repaired = self._repaired_memberships(user, known)
                fixable = repaired is not None
                if repaired is not None and repaired != (user.tenants, user.active_tenant):
                    tenants, active = repaired
                    try:
                        await self._directory.save_memberships(
                            user.id, tenants, active, user.version
                        )
                    except ConcurrentModificationError:
                        logger.warning("membership_repair_conflict", user_id=user.id)
                        report.extend(i.model_copy(update={"fixed": False}) for i in issues)
                        continue
                    await self._audit.record(
                        AuditEvent(
                            actor_id=actor_id,
                            action=AuditAction.MEMBERSHIP_REPAIRED,
                            entity_type="user",
                            entity_id=user.id,
                            metadata={
                                "issues": [str(i.kind) for i in issues],
                                "tenants": tenants,
                                "active_tenant": active,
                            },
                            timestamp=self._clock(),
                        )
                    )
                report.extend(i.model_copy(update={"fixed": fixable}) for i in issues)

        logger.info(
            "membership_repair_done",
            issues=len(report),
            fixed=sum(1 for i in report if i.fixed),
        )
        return report

    @staticmethod
    def _repaired_memberships(
        user: User, known: set[str]
    ) -> tuple[list[str], str | None] | None:
        if user.is_super_admin:
            return [], user.active_tenant if user.active_tenant in known else None
        tenants = [t for t in user.tenants if t in known]
        if not tenants:
            return None
        active = user.active_tenant if user.active_tenant in tenants else tenants[0]
        return tenants, active
