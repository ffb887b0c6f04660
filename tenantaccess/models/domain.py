"""Inter-module data contracts (not persisted directly)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from tenantaccess.types import AccessLevel, AccessSource, IssueKind, ToolStatus, UserRole
from tenantaccess.utils.clock import from_naive_utc, utc_now


class User(BaseModel):
    id: str
    email: str = ""
    role: UserRole = UserRole.USER
    tenants: list[str] = []  # insertion order is significant
    active_tenant: str | None = None
    version: int = 0  # bumped on every membership write

    @property
    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    def is_member(self, tenant_id: str) -> bool:
        return tenant_id in self.tenants


class Tenant(BaseModel):
    id: str
    name: str = ""
    group_id: str | None = None


class Group(BaseModel):
    """A named pool of tenants. Deleted groups are kept with ``deleted_at`` set."""

    group_id: str
    name: str
    description: str = ""
    created_by: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_by: str = ""
    updated_at: datetime | None = None
    deleted_by: str = ""
    deleted_at: datetime | None = None

    _as_utc = field_validator("created_at", "updated_at", "deleted_at")(from_naive_utc)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class Tool(BaseModel):
    id: str
    name: str = ""
    status: ToolStatus = ToolStatus.ACTIVE
    display_order: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == ToolStatus.ACTIVE


class CompanyGrant(BaseModel):
    tenant_id: str
    tool_id: str
    access_level: AccessLevel
    is_active: bool = True
    granted_by: str = ""
    granted_at: datetime = Field(default_factory=utc_now)

    _as_utc = field_validator("granted_at")(from_naive_utc)


class UserGrant(BaseModel):
    """Per-user override. An inactive record is an explicit revocation."""

    user_id: str
    tool_id: str
    access_level: AccessLevel
    is_active: bool = True
    expires_at: datetime | None = None
    granted_by: str = ""
    granted_at: datetime = Field(default_factory=utc_now)

    # naive datetimes are taken as UTC
    _as_utc = field_validator("expires_at", "granted_at")(from_naive_utc)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class AccessDecision(BaseModel):
    granted: bool
    level: AccessLevel | None = None
    source: AccessSource | None = None

    @classmethod
    def deny(cls) -> AccessDecision:
        return cls(granted=False)


class AuditEvent(BaseModel):
    actor_id: str
    action: str
    entity_type: str
    entity_id: str
    tenant_id: str = ""
    metadata: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utc_now)


class MembershipMatrix(BaseModel):
    """Cross-tenant administration grid for one group."""

    tenants: list[Tenant]
    users: list[User]

    def is_checked(self, user_id: str, tenant_id: str) -> bool:
        for user in self.users:
            if user.id == user_id:
                return user.is_member(tenant_id)
        return False

    def rows(self) -> list[tuple[User, list[bool]]]:
        return [(u, [u.is_member(t.id) for t in self.tenants]) for u in self.users]


class MembershipIssue(BaseModel):
    user_id: str
    kind: IssueKind
    detail: str = ""
    fixed: bool = False
