"""In-memory and DB-backed tool catalog lookups by tool id."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantaccess.exceptions import NotFound, StorageError
from tenantaccess.models.database import ToolRow
from tenantaccess.models.domain import Tool
from tenantaccess.types import ToolStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


def _display_key(tool: Tool) -> tuple[int, str]:
    return tool.display_order, tool.name


class ToolCatalog(ABC):
    """Source of tool lifecycle status and display ordering."""

    @abstractmethod
    async def add_tool(self, tool: Tool) -> Tool:
        """Register a tool."""

    @abstractmethod
    async def get_tool(self, tool_id: str) -> Tool | None:
        """Return the tool or None."""

    @abstractmethod
    async def list_tools(self) -> list[Tool]:
        """Return every tool ordered by display order, then name."""

    @abstractmethod
    async def set_status(self, tool_id: str, status: ToolStatus) -> Tool:
        """Change a tool's lifecycle status."""


class InMemoryToolCatalog(ToolCatalog):
    """In-memory catalog for dev/testing without a database."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {t.id: t for t in tools or []}

    async def add_tool(self, tool: Tool) -> Tool:
        if tool.id in self._tools:
            raise StorageError(f"Tool already exists: {tool.id}")
        self._tools[tool.id] = tool
        return tool

    async def get_tool(self, tool_id: str) -> Tool | None:
        return self._tools.get(tool_id)

    async def list_tools(self) -> list[Tool]:
        return sorted(self._tools.values(), key=_display_key)

    async def set_status(self, tool_id: str, status: ToolStatus) -> Tool:
        tool = self._tools.get(tool_id)
        if tool is None:
            raise NotFound("tool", tool_id)
        updated = tool.model_copy(update={"status": status})
        self._tools[tool_id] = updated
        logger.info("tool_status_changed", tool_id=tool_id, status=str(status))
        return updated


class DatabaseToolCatalog(ToolCatalog):
    """Tool catalog stored in the ``tools`` table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @staticmethod
    def _to_tool(row: ToolRow) -> Tool:
        return Tool(
            id=row.id,
            name=row.name,
            status=ToolStatus(row.status),
            display_order=row.display_order,
        )

    async def add_tool(self, tool: Tool) -> Tool:
        async with AsyncSession(self._engine) as session:
            session.add(
                ToolRow(
                    id=tool.id,
                    name=tool.name,
                    status=str(tool.status),
                    display_order=tool.display_order,
                )
            )
            try:
                await session.commit()
            except IntegrityError as exc:
                raise StorageError(f"Tool already exists: {tool.id}") from exc
        return tool

    async def get_tool(self, tool_id: str) -> Tool | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(ToolRow, tool_id)
            return self._to_tool(row) if row else None

    async def list_tools(self) -> list[Tool]:
        async with AsyncSession(self._engine) as session:
            stmt = select(ToolRow).order_by(col(ToolRow.display_order), col(ToolRow.name))
            result = await session.execute(stmt)
            return [self._to_tool(r) for r in result.scalars().all()]

    async def set_status(self, tool_id: str, status: ToolStatus) -> Tool:
        async with AsyncSession(self._engine) as session:
            row = await session.get(ToolRow, tool_id)
            if row is None:
                raise NotFound("tool", tool_id)
            row.status = str(status)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            logger.info("tool_status_changed", tool_id=tool_id, status=str(status))
            return self._to_tool(row)
