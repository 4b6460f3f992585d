"""Repository for persisted container log entries."""

from datetime import datetime
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from crateflow.models.logs import ContainerLog

from .base import BaseRepository


class ContainerLogRepository(BaseRepository[ContainerLog]):
    """Repository for container log rows."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize log repository.

        Args:
            session: Database session
        """
        super().__init__(session, ContainerLog)

    async def add(
        self, container_id: str, content: str, category: str, timestamp: datetime
    ) -> ContainerLog:
        """
        Persist one log entry.

        Args:
            container_id: Container ID
            content: Entry text
            category: Log category
            timestamp: Entry timestamp

        Returns:
            The stored row
        """
        entry = ContainerLog(
            container_id=container_id,
            content=content,
            category=category,
            timestamp=timestamp,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_container(
        self,
        container_id: str,
        category: str | None = None,
        limit: int | None = None,
    ) -> List[ContainerLog]:
        """
        List the newest log rows of a container, oldest first.

        Args:
            container_id: Container ID
            category: Restrict to one category
            limit: Maximum number of rows

        Returns:
            Log rows in chronological order
        """
        stmt = select(ContainerLog).where(ContainerLog.container_id == container_id)
        if category:
            stmt = stmt.where(ContainerLog.category == category)
        stmt = stmt.order_by(ContainerLog.timestamp.desc(), ContainerLog.id.desc())
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(reversed(result.scalars().all()))

    async def delete_for_container(self, container_id: str, category: str | None = None) -> int:
        """
        Delete log rows of a container.

        Args:
            container_id: Container ID
            category: Restrict to one category

        Returns:
            Number of rows deleted
        """
        stmt = delete(ContainerLog).where(ContainerLog.container_id == container_id)
        if category:
            stmt = stmt.where(ContainerLog.category == category)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def delete_older_than(self, cutoff: datetime) -> int:
        """
        Delete log rows older than a cutoff.

        Args:
            cutoff: Rows with an earlier timestamp are deleted

        Returns:
            Number of rows deleted
        """
        stmt = delete(ContainerLog).where(ContainerLog.timestamp < cutoff)
        result = await self.session.execute(stmt)
        return result.rowcount or 0
