"""Manager modules for business logic."""

from .channel_service import (
    ChannelService,
    ChannelTransport,
    ClientConnection,
    ConnectionState,
    SubscriptionRegistry,
)
from .container_manager import ContainerManager
from .engine_client import (
    ContainerSpec,
    EngineClient,
    EngineContainer,
    EngineStats,
    ExecChunk,
    ExecOptions,
    ExecStream,
)
from .log_manager import LogCategory, LogEntry, LogManager
from .reconciliation_manager import HealthCheckResult, ReconciliationManager
from .scheduler import JobScheduler, PeriodicJob
from .shutdown_coordinator import ShutdownCoordinator

__all__ = [
    "ChannelService",
    "ChannelTransport",
    "ClientConnection",
    "ConnectionState",
    "ContainerManager",
    "ContainerSpec",
    "EngineClient",
    "EngineContainer",
    "EngineStats",
    "ExecChunk",
    "ExecOptions",
    "ExecStream",
    "HealthCheckResult",
    "JobScheduler",
    "LogCategory",
    "LogEntry",
    "LogManager",
    "PeriodicJob",
    "ReconciliationManager",
    "ShutdownCoordinator",
    "SubscriptionRegistry",
]
