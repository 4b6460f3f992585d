"""Input and output models of the MCP control surface."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ContainerRef(BaseModel):
    """Input model for tools addressing one container."""

    container_id: str = Field(..., description="Registry container ID")


class StopInput(ContainerRef):
    """Input model for stop tool."""

    timeout_s: Optional[int] = Field(None, description="Seconds to wait before killing")


class RemoveInput(ContainerRef):
    """Input model for remove tool."""

    force: bool = Field(default=True, description="Remove even if running")


class LifecycleOutput(BaseModel):
    """Output model for start, stop and restart tools."""

    container_id: str = Field(..., description="Registry container ID")
    status: str = Field(..., description="Registry status after the operation")


class RemoveOutput(BaseModel):
    """Output model for remove tool."""

    container_id: str = Field(..., description="Registry container ID")
    removed: bool = Field(default=True, description="Whether the container is gone")


class EngineStatus(BaseModel):
    """Live engine view of a container."""

    status: str = Field(..., description="Engine state, or not_found")
    running: bool = Field(..., description="Whether the engine reports it running")


class StatusOutput(BaseModel):
    """Output model for get_status tool."""

    container_id: str
    name: str
    database_status: str = Field(..., description="Status held by the registry")
    engine_status: EngineStatus


class TailLogsInput(ContainerRef):
    """Input model for tail_logs tool."""

    category: str = Field(default="application", description="Log category")
    limit: Optional[int] = Field(default=100, description="Maximum entries, all when null")


class LogEntryOutput(BaseModel):
    """One log entry."""

    container_id: str
    category: str
    timestamp: str
    content: str


class TailLogsOutput(BaseModel):
    """Output model for tail_logs tool."""

    entries: List[LogEntryOutput] = Field(default_factory=list)


class ClearLogsInput(ContainerRef):
    """Input model for clear_logs tool."""

    category: str = Field(..., description="Log category to clear")


class ClearLogsOutput(BaseModel):
    """Output model for clear_logs tool."""

    container_id: str
    category: str
    cleared: bool = True


class SyncOutput(BaseModel):
    """Output model for reconcile_now tool."""

    synced: int = Field(..., description="Records matched to an engine object")
    updated: int = Field(..., description="Records whose status or engine_ref changed")
    created: int = Field(..., description="Engine objects imported into the registry")
    errors: int = Field(..., description="Records that failed to sync")
    total_engine: int
    total_registry: int


class HealthCheckOutput(BaseModel):
    """Output model for run_health_check tool."""

    checked: int
    unhealthy: int
    results: List[Dict[str, Any]] = Field(default_factory=list)


class OrphanCleanupOutput(BaseModel):
    """Output model for cleanup_orphans tool."""

    checked: int
    removed: int
    errors: int


class ConnectedClientsOutput(BaseModel):
    """Output model for connected_clients tool."""

    clients: List[Dict[str, Any]] = Field(default_factory=list)
    connections: int = Field(..., description="Open connections, authenticated or not")


class MetricsOutput(BaseModel):
    """Output model for metrics tool."""

    metrics: str = Field(..., description="Prometheus-formatted metrics")


class HealthOutput(BaseModel):
    """Output model for health tool."""

    status: str
    engine_connected: bool
    database_initialized: bool = True
    jobs: Dict[str, Optional[str]] = Field(
        default_factory=dict, description="Last error per scheduled job, null when healthy"
    )
    version: str = "0.1.0"


class CreateInput(BaseModel):
    """Input model for create tool."""

    name: str = Field(..., description="Unique container name")
    image: str = Field(..., description="Engine image reference, e.g. node:20-alpine")
    owner_id: Optional[str] = Field(None, description="Owning identity, default owner when null")
    folder_path: Optional[str] = Field(None, description="Host folder bound to the working dir")
    startup_script: Optional[str] = Field(None, description="Script run after start and restart")
    port_mappings: Dict[str, Any] = Field(
        default_factory=dict, description="Container port to host port"
    )
    environment_vars: Dict[str, str] = Field(
        default_factory=dict, description="Environment variables"
    )
    command: Optional[str] = Field(None, description="Main command, idles when null")
    max_memory: Optional[str] = Field(None, description="Memory cap such as 512m")
    max_cpu: Optional[str] = Field(None, description="CPU count such as 1.5")
    auto_restart: bool = Field(default=True, description="Restart when found stopped")
    auto_start: bool = Field(default=False, description="Start right after creation")


class ContainerOutput(BaseModel):
    """One registry record."""

    container_id: str
    name: str
    image: str
    status: str
    owner_id: str
    engine_ref: Optional[str] = None
    folder_path: Optional[str] = None


class ListContainersInput(BaseModel):
    """Input model for list_containers tool."""

    owner_id: Optional[str] = Field(None, description="Only this owner's containers when set")


class ListContainersOutput(BaseModel):
    """Output model for list_containers tool."""

    containers: List[ContainerOutput] = Field(default_factory=list)


class ContainerStatsOutput(BaseModel):
    """Output model for container_stats tool."""

    container_id: str
    name: str
    engine_ref: str
    status: str = Field(..., description="Engine state")
    running: bool
    stats: Dict[str, Any] = Field(..., description="CPU, memory and network usage sample")
    uptime_s: float = Field(..., description="Seconds since creation, 0 when not running")
    timestamp: str


class EngineLogsInput(ContainerRef):
    """Input model for engine_logs tool."""

    tail: Optional[int] = Field(default=100, description="Trailing lines, all when null")


class EngineLogsOutput(BaseModel):
    """Output model for engine_logs tool."""

    container_id: str
    logs: str = Field(..., description="Engine stdout and stderr with timestamps")


class LogStatsOutput(BaseModel):
    """Output model for log_stats tool."""

    container_id: str
    categories: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Size and modification time per category"
    )
    total_size: int


class ExportLogsInput(ContainerRef):
    """Input model for export_logs tool."""

    format: Literal["json", "text"] = Field(default="json", description="Export format")


class ExportLogsOutput(BaseModel):
    """Output model for export_logs tool."""

    container_id: str
    format: str
    content: str = Field(..., description="Every category merged by timestamp")
