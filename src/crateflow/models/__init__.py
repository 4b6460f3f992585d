"""SQLAlchemy models for CrateFlow."""

from .base import Base
from .containers import ContainerRecord, ContainerSettings, ContainerStatus
from .logs import ContainerLog

__all__ = ["Base", "ContainerLog", "ContainerRecord", "ContainerSettings", "ContainerStatus"]
