"""Registry models for managed containers and their settings."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class ContainerStatus(str, Enum):
    """Registry-side status of a managed container."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    # The engine object vanished without a lifecycle operation
    REMOVED = "removed"
    UNKNOWN = "unknown"


class ContainerRecord(Base):
    """Persisted registry record of a managed container."""

    __tablename__ = "containers"

    # Opaque 12-character hex id
    id: Mapped[str] = mapped_column(String(12), primary_key=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Engine object id, absent until the engine object exists
    engine_ref: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)

    image: Mapped[str] = mapped_column(String(500), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ContainerStatus.CREATED.value
    )

    folder_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    startup_script: Mapped[str | None] = mapped_column(Text, nullable=True)

    port_mappings: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    environment_vars: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)

    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        """String representation of ContainerRecord."""
        return (
            f"<ContainerRecord(id={self.id}, name={self.name}, "
            f"engine_ref={self.engine_ref}, status={self.status})>"
        )


class ContainerSettings(Base):
    """Per-container settings, mutated independently of status."""

    __tablename__ = "container_settings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    container_id: Mapped[str] = mapped_column(
        String(12), ForeignKey("containers.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    auto_restart: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Engine resource caps in engine notation, e.g. "512m" and "1.5"
    max_memory: Mapped[str | None] = mapped_column(String(20), nullable=True)
    max_cpu: Mapped[str | None] = mapped_column(String(20), nullable=True)

    tunnel_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tunnel_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    tunnel_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    settings_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        """String representation of ContainerSettings."""
        return (
            f"<ContainerSettings(container_id={self.container_id}, "
            f"auto_restart={self.auto_restart})>"
        )
