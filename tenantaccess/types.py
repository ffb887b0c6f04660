"""Enums and type aliases for tenantaccess."""

from enum import StrEnum


class UserRole(StrEnum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class AccessLevel(StrEnum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


class ToolStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class AccessSource(StrEnum):
    SUPER_ADMIN = "super_admin"
    USER = "user"
    COMPANY = "company"


class AuditAction(StrEnum):
    MEMBERSHIP_ADDED = "membership_added"
    MEMBERSHIP_REMOVED = "membership_removed"
    ACTIVE_TENANT_SWITCHED = "active_tenant_switched"
    TENANT_GROUP_ASSIGNED = "tenant_group_assigned"
    GROUP_CREATED = "group_created"
    GROUP_UPDATED = "group_updated"
    GROUP_DELETED = "group_deleted"
    COMPANY_ACCESS_GRANTED = "company_access_granted"
    COMPANY_ACCESS_REVOKED = "company_access_revoked"
    USER_ACCESS_GRANTED = "user_access_granted"
    USER_ACCESS_REVOKED = "user_access_revoked"
    MEMBERSHIP_REPAIRED = "membership_repaired"
    USER_CREATED = "user_created"
    USER_DELETED = "user_deleted"
    ROLE_CHANGED = "role_changed"


class IssueKind(StrEnum):
    SUPER_ADMIN_WITH_TENANTS = "super_admin_with_tenants"
    NO_TENANTS = "no_tenants"
    DANGLING_ACTIVE_TENANT = "dangling_active_tenant"
    UNKNOWN_TENANT = "unknown_tenant"
