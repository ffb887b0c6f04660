"""SQLModel database table models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Return current UTC time as naive datetime for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Directory: tenants, groups, users, memberships
# ---------------------------------------------------------------------------


class TenantGroupRow(SQLModel, table=True):
    __tablename__ = "tenant_groups"

    group_id: str = Field(primary_key=True)
    name: str
    description: str = ""
    created_by: str = ""
    created_at: datetime = Field(default_factory=_utc_now)
    updated_by: str = ""
    updated_at: datetime | None = None
    deleted_by: str = ""
    deleted_at: datetime | None = None  # soft delete


class TenantRow(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    name: str = ""
    group_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class UserRow(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    email: str = Field(default="", index=True)
    role: str = Field(default="user")  # user | admin | super_admin
    active_tenant: str | None = None
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class TenantMembershipRow(SQLModel, table=True):
    """One edge of the user -> tenant membership set; ``id`` preserves insertion order."""

    __tablename__ = "tenant_memberships"
    __table_args__ = (UniqueConstraint("user_id", "tenant_id", name="uq_membership_user_tenant"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    tenant_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Tool catalog and grants
# ---------------------------------------------------------------------------


class ToolRow(SQLModel, table=True):
    __tablename__ = "tools"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    name: str = ""
    status: str = Field(default="active")  # active | inactive | maintenance
    display_order: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utc_now)


class CompanyGrantRow(SQLModel, table=True):
    __tablename__ = "company_grants"
    __table_args__ = (UniqueConstraint("tenant_id", "tool_id", name="uq_company_grant_pair"),)

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    tenant_id: str = Field(index=True)
    tool_id: str = Field(index=True)
    access_level: str = Field(default="read")  # read | write | admin
    is_active: bool = Field(default=True)
    granted_by: str = ""
    granted_at: datetime = Field(default_factory=_utc_now)


class UserGrantRow(SQLModel, table=True):
    __tablename__ = "user_grants"
    __table_args__ = (UniqueConstraint("user_id", "tool_id", name="uq_user_grant_pair"),)

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    user_id: str = Field(index=True)
    tool_id: str = Field(index=True)
    access_level: str = Field(default="read")
    is_active: bool = Field(default=True)
    expires_at: datetime | None = None
    granted_by: str = ""
    granted_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class AuditLogRow(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    tenant_id: str = Field(default="", index=True)
    actor_id: str = ""
    action: str = Field(index=True)
    entity_type: str = ""
    entity_id: str = ""
    metadata_json: str = "{}"
    created_at: datetime = Field(default_factory=_utc_now)
