"""Repositories for container records and their settings."""

from typing import Any, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crateflow.models.base import utcnow
from crateflow.models.containers import ContainerRecord, ContainerSettings, ContainerStatus

from .base import BaseRepository


class ContainerRepository(BaseRepository[ContainerRecord]):
    """Repository for container record CRUD operations."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize container repository.

        Args:
            session: Database session
        """
        super().__init__(session, ContainerRecord)

    async def get_by_engine_ref(self, engine_ref: str) -> ContainerRecord | None:
        """
        Get container by engine reference.

        Args:
            engine_ref: Engine object id

        Returns:
            ContainerRecord or None if not found
        """
        stmt = select(ContainerRecord).where(ContainerRecord.engine_ref == engine_ref)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> ContainerRecord | None:
        """
        Get container by name.

        Args:
            name: Container name

        Returns:
            ContainerRecord or None if not found
        """
        stmt = select(ContainerRecord).where(ContainerRecord.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> List[ContainerRecord]:
        """List every container ordered by creation time."""
        stmt = select(ContainerRecord).order_by(ContainerRecord.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_status(self, status: ContainerStatus | str) -> List[ContainerRecord]:
        """
        List containers with the given status.

        Args:
            status: Status to filter by

        Returns:
            List of containers
        """
        value = status.value if isinstance(status, ContainerStatus) else status
        stmt = select(ContainerRecord).where(ContainerRecord.status == value)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_with_engine_ref(self) -> List[ContainerRecord]:
        """List containers bound to an engine object."""
        stmt = select(ContainerRecord).where(ContainerRecord.engine_ref.is_not(None))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_owner(self, owner_id: str) -> List[ContainerRecord]:
        """
        List containers owned by a user.

        Args:
            owner_id: Owner identity

        Returns:
            List of containers
        """
        stmt = select(ContainerRecord).where(ContainerRecord.owner_id == owner_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_status(
        self, container_id: str, status: ContainerStatus | str
    ) -> ContainerRecord | None:
        """
        Update container status.

        Args:
            container_id: Container ID
            status: New status

        Returns:
            Updated container or None if not found
        """
        container = await self.get(container_id)
        if container:
            container.status = status.value if isinstance(status, ContainerStatus) else status
            container.updated_at = utcnow()
            await self.session.flush()
            await self.session.refresh(container)
        return container

    async def set_engine_ref(self, container_id: str, engine_ref: str) -> ContainerRecord | None:
        """
        Bind a container to its engine object.

        Args:
            container_id: Container ID
            engine_ref: Engine object id

        Returns:
            Updated container or None if not found
        """
        container = await self.get(container_id)
        if container:
            container.engine_ref = engine_ref
            container.updated_at = utcnow()
            await self.session.flush()
            await self.session.refresh(container)
        return container


class ContainerSettingsRepository(BaseRepository[ContainerSettings]):
    """Repository for per-container settings."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize settings repository.

        Args:
            session: Database session
        """
        super().__init__(session, ContainerSettings)

    async def get_for_container(self, container_id: str) -> ContainerSettings | None:
        """
        Get settings of a container.

        Args:
            container_id: Container ID

        Returns:
            ContainerSettings or None if the container has none
        """
        stmt = select(ContainerSettings).where(ContainerSettings.container_id == container_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, container_id: str, **values: Any) -> ContainerSettings:
        """
        Create or update the settings row of a container.

        Args:
            container_id: Container ID
            **values: Column values to set

        Returns:
            The stored settings
        """
        settings = await self.get_for_container(container_id)
        if settings is None:
            settings = ContainerSettings(container_id=container_id, **values)
            return await self.create(settings)

        for key, value in values.items():
            setattr(settings, key, value)
        settings.updated_at = utcnow()
        return await self.update(settings)

    async def delete_for_container(self, container_id: str) -> None:
        """Delete the settings row of a container if present."""
        settings = await self.get_for_container(container_id)
        if settings is not None:
            await self.delete(settings)
