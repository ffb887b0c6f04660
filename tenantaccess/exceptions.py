"""Exception hierarchy for tenantaccess."""


class TenantAccessError(Exception):
    """Base exception for all tenantaccess errors."""


class NotFound(TenantAccessError):
    """Raised when a user, tenant, tool or group does not exist."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class LastTenantViolation(TenantAccessError):
    """Raised when removing a user's only tenant membership."""

    def __init__(self, user_id: str, tenant_id: str) -> None:
        super().__init__(
            f"User {user_id} only belongs to tenant {tenant_id}; "
            "delete the user instead of removing the last membership"
        )
        self.user_id = user_id
        self.tenant_id = tenant_id


class AccessDenied(TenantAccessError):
    """Raised when an actor is not allowed to perform an operation."""


class InvalidState(TenantAccessError):
    """Raised when stored data or a requested change breaks an invariant."""


class StorageError(TenantAccessError):
    """Raised when storage operations fail."""


class ConcurrentModificationError(StorageError):
    """Raised when a membership compare-and-swap loses against another writer."""


class ConfigError(TenantAccessError):
    """Raised when configuration is invalid."""
