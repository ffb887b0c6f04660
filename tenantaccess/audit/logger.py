"""Insert-only audit trail for every membership and grant mutation.

Sinks are fire-and-forget: ``record`` never raises, so a broken audit
backend cannot fail the operation being audited. Metadata is sanitized
(sensitive fields stripped, size capped) before it is stored.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantaccess.models.database import AuditLogRow
from tenantaccess.utils.clock import to_naive_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from tenantaccess.models.domain import AuditEvent

logger = structlog.get_logger(__name__)

# Fields to strip from metadata before it is persisted
_SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "api_secret",
        "access_key",
        "secret_key",
        "authorization",
        "cookie",
        "session",
    }
)

_DEFAULT_MAX_METADATA_BYTES = 10_240  # 10KB


def sanitize_metadata(
    metadata: dict[str, Any], max_bytes: int = _DEFAULT_MAX_METADATA_BYTES
) -> str:
    """Strip sensitive fields and enforce the size limit; returns JSON text."""
    sanitized = {k: v for k, v in metadata.items() if k.lower() not in _SENSITIVE_FIELDS}
    encoded = json.dumps(sanitized, default=str, sort_keys=True)
    if len(encoded) > max_bytes:
        encoded = encoded[:max_bytes]
    return encoded


class AuditSink(ABC):
    """Receives one event per mutating operation."""

    async def record(self, event: AuditEvent) -> None:
        """Write the event; failures are logged and discarded."""
        try:
            await self.write(event)
        except Exception:
            # record() never raises
            logger.exception(
                "audit_write_failed",
                action=event.action,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
            )

    @abstractmethod
    async def write(self, event: AuditEvent) -> None:
        """Persist the event. May raise; ``record`` contains the failure."""


class InMemoryAuditSink(AuditSink):
    """Keeps events in a list; used in dev mode and by tests."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


class NullAuditSink(AuditSink):
    """Discards events (audit disabled by configuration)."""

    async def write(self, event: AuditEvent) -> None:
        return None


class DatabaseAuditSink(AuditSink):
    """Insert-only audit logger with its own DB session.

    The separate session ensures audit entries persist even if the
    calling transaction rolls back.
    """

    def __init__(
        self, engine: AsyncEngine, max_metadata_bytes: int = _DEFAULT_MAX_METADATA_BYTES
    ) -> None:
        self._engine = engine
        self._max_metadata_bytes = max_metadata_bytes

    async def write(self, event: AuditEvent) -> None:
        async with AsyncSession(self._engine) as session:
            session.add(
                AuditLogRow(
                    tenant_id=event.tenant_id,
                    actor_id=event.actor_id,
                    action=event.action,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    metadata_json=sanitize_metadata(event.metadata, self._max_metadata_bytes),
                    created_at=to_naive_utc(event.timestamp),
                )
            )
            await session.commit()
