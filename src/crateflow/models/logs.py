"""Persisted container log entries."""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class ContainerLog(Base):
    """One log entry mirrored from the per-container log files."""

    __tablename__ = "container_logs"
    __table_args__ = (Index("ix_container_logs_container_ts", "container_id", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    container_id: Mapped[str] = mapped_column(String(12), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)

    # application, startup, error or info
    category: Mapped[str] = mapped_column(String(20), nullable=False)

    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of ContainerLog."""
        return (
            f"<ContainerLog(container_id={self.container_id}, "
            f"category={self.category}, timestamp={self.timestamp})>"
        )
