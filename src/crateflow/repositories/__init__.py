"""Repository pattern implementations for data access."""

from .base import BaseRepository
from .containers import ContainerRepository, ContainerSettingsRepository
from .logs import ContainerLogRepository

__all__ = [
    "BaseRepository",
    "ContainerLogRepository",
    "ContainerRepository",
    "ContainerSettingsRepository",
]
