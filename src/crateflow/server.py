"""CrateFlow server: MCP control surface and the real-time channel route."""

import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.routing import Mount, WebSocketRoute

from crateflow import __version__
from crateflow.auth import create_token_verifier
from crateflow.config import get_settings
from crateflow.mcp_tools import (
    ClearLogsInput,
    ClearLogsOutput,
    ConnectedClientsOutput,
    ContainerOutput,
    ContainerRef,
    ContainerStatsOutput,
    CreateInput,
    EngineLogsInput,
    EngineLogsOutput,
    EngineStatus,
    ExportLogsInput,
    ExportLogsOutput,
    HealthCheckOutput,
    HealthOutput,
    LifecycleOutput,
    ListContainersInput,
    ListContainersOutput,
    LogEntryOutput,
    LogStatsOutput,
    MetricsOutput,
    OrphanCleanupOutput,
    RemoveInput,
    RemoveOutput,
    StatusOutput,
    StopInput,
    SyncOutput,
    TailLogsInput,
    TailLogsOutput,
)
from crateflow.models.containers import ContainerRecord
from crateflow.runtime import Runtime, get_runtime, set_runtime
from crateflow.utils import get_logger, setup_logging
from crateflow.utils.audit_logger import AuditEventType, get_audit_logger
from crateflow.utils.exceptions import ContainerNotFoundError, EngineError
from crateflow.utils.metrics_collector import get_metrics_collector
from crateflow.websocket import channel_endpoint

# Auth provider is set in create_app() after settings are loaded
mcp = FastMCP("CrateFlow")
logger = get_logger(__name__)


@mcp.tool()
async def health() -> HealthOutput:
    """
    Health check endpoint to verify engine connectivity and scheduled jobs.

    Returns:
        HealthOutput with status, engine connection and last job errors
    """
    runtime = get_runtime()
    try:
        engine_connected = await runtime.engine.ping()
    except EngineError as e:
        logger.warning("Engine health check failed", extra={"error": str(e)})
        engine_connected = False

    jobs = {job.name: job.last_error for job in runtime.scheduler.jobs}
    degraded = not engine_connected or any(jobs.values())

    return HealthOutput(
        status="degraded" if degraded else "healthy",
        engine_connected=engine_connected,
        database_initialized=runtime.started,
        jobs=jobs,
        version=__version__,
    )


@mcp.tool()
async def reconcile_now() -> SyncOutput:
    """
    Sync the registry with the engine immediately.

    Matches records to engine objects, updates their status, marks records
    missing from the engine as stopped and imports labelled engine objects.

    Returns:
        SyncOutput with sync statistics
    """
    logger.info("Manual sync requested")
    try:
        stats = await get_runtime().reconciler.reconcile_now()
    except EngineError as e:
        logger.error("Manual sync failed", extra={"error": str(e)})
        raise
    return SyncOutput(**stats)


def _container_output(record: ContainerRecord) -> ContainerOutput:
    return ContainerOutput(
        container_id=record.id,
        name=record.name,
        image=record.image,
        status=record.status,
        owner_id=record.owner_id,
        engine_ref=record.engine_ref,
        folder_path=record.folder_path,
    )


@mcp.tool()
async def create(input_data: CreateInput) -> ContainerOutput:
    """
    Create a managed container and its engine object.

    Args:
        input_data: Container parameters

    Returns:
        ContainerOutput with the new record
    """
    runtime = get_runtime()
    params = input_data.model_dump()
    params["owner_id"] = params["owner_id"] or runtime.settings.default_owner_id
    logger.info(
        "Creating container",
        extra={"container_name": input_data.name, "image": input_data.image},
    )
    record = await runtime.containers.create_container(**params)
    return _container_output(record)


@mcp.tool()
async def list_containers(input_data: ListContainersInput) -> ListContainersOutput:
    """
    List managed containers.

    Args:
        input_data: Optional owner filter

    Returns:
        ListContainersOutput with one entry per record
    """
    containers = get_runtime().containers
    if input_data.owner_id:
        records = await containers.list_for_owner(input_data.owner_id)
    else:
        records = await containers.list_records()
    return ListContainersOutput(containers=[_container_output(r) for r in records])


@mcp.tool()
async def start(input_data: ContainerRef) -> LifecycleOutput:
    """
    Start a container.

    Args:
        input_data: Container to start

    Returns:
        LifecycleOutput with the resulting status
    """
    record = await get_runtime().containers.start_container(input_data.container_id)
    return LifecycleOutput(container_id=record.id, status=record.status)


@mcp.tool()
async def stop(input_data: StopInput) -> LifecycleOutput:
    """
    Stop a container.

    Args:
        input_data: Container to stop and optional grace period

    Returns:
        LifecycleOutput with the resulting status
    """
    record = await get_runtime().containers.stop_container(
        input_data.container_id, input_data.timeout_s
    )
    return LifecycleOutput(container_id=record.id, status=record.status)


@mcp.tool()
async def restart(input_data: ContainerRef) -> LifecycleOutput:
    """
    Restart a container and rerun its startup script.

    Args:
        input_data: Container to restart

    Returns:
        LifecycleOutput with the resulting status
    """
    record = await get_runtime().reconciler.restart(input_data.container_id)
    return LifecycleOutput(container_id=record.id, status=record.status)


@mcp.tool()
async def remove(input_data: RemoveInput) -> RemoveOutput:
    """
    Remove a container, its engine object and its logs.

    Args:
        input_data: Container to remove and force flag

    Returns:
        RemoveOutput confirming removal
    """
    await get_runtime().containers.remove_container(input_data.container_id, input_data.force)
    return RemoveOutput(container_id=input_data.container_id)


@mcp.tool()
async def get_status(input_data: ContainerRef) -> StatusOutput:
    """
    Report registry status next to a live engine lookup.

    Args:
        input_data: Container to inspect

    Returns:
        StatusOutput with both views
    """
    try:
        status = await get_runtime().containers.get_status(input_data.container_id)
    except ContainerNotFoundError:
        logger.warning("Status requested for unknown container", extra=input_data.model_dump())
        raise

    return StatusOutput(
        container_id=status["container_id"],
        name=status["name"],
        database_status=status["database_status"],
        engine_status=EngineStatus(**status["engine_status"]),
    )


@mcp.tool()
async def container_stats(input_data: ContainerRef) -> ContainerStatsOutput:
    """
    Sample CPU, memory and network usage of a container.

    Args:
        input_data: Container to sample

    Returns:
        ContainerStatsOutput with the usage sample and uptime
    """
    try:
        sample = await get_runtime().containers.get_metrics(input_data.container_id)
    except EngineError as e:
        logger.error(
            "Failed to sample container stats",
            extra={"container_id": input_data.container_id, "error": str(e)},
        )
        raise
    return ContainerStatsOutput(**sample)


@mcp.tool()
async def engine_logs(input_data: EngineLogsInput) -> EngineLogsOutput:
    """
    Fetch what the container process wrote to stdout and stderr.

    Args:
        input_data: Container and number of trailing lines

    Returns:
        EngineLogsOutput with the raw engine log
    """
    logs = await get_runtime().containers.engine_logs(input_data.container_id, input_data.tail)
    return EngineLogsOutput(container_id=input_data.container_id, logs=logs)


@mcp.tool()
async def tail_logs(input_data: TailLogsInput) -> TailLogsOutput:
    """
    Read the last entries of a container log category.

    Args:
        input_data: Container, category and maximum number of entries

    Returns:
        TailLogsOutput with entries oldest first
    """
    entries = await get_runtime().log_manager.tail(
        input_data.container_id, input_data.category, input_data.limit
    )
    return TailLogsOutput(entries=[LogEntryOutput(**entry.to_dict()) for entry in entries])


@mcp.tool()
async def clear_logs(input_data: ClearLogsInput) -> ClearLogsOutput:
    """
    Empty one category log of a container.

    Args:
        input_data: Container and category

    Returns:
        ClearLogsOutput confirming the clear
    """
    await get_runtime().log_manager.clear(input_data.container_id, input_data.category)
    get_audit_logger().log_event(
        AuditEventType.LOG_CLEAR,
        container_id=input_data.container_id,
        details={"category": input_data.category},
    )
    return ClearLogsOutput(container_id=input_data.container_id, category=input_data.category)


@mcp.tool()
async def log_stats(input_data: ContainerRef) -> LogStatsOutput:
    """
    Report the size of each log category of a container.

    Args:
        input_data: Container to describe

    Returns:
        LogStatsOutput with per-category sizes and the total
    """
    return LogStatsOutput(**await get_runtime().log_manager.stats(input_data.container_id))


@mcp.tool()
async def export_logs(input_data: ExportLogsInput) -> ExportLogsOutput:
    """
    Export every log category of a container as one document.

    Args:
        input_data: Container and export format

    Returns:
        ExportLogsOutput with the serialized log
    """
    content = await get_runtime().log_manager.export(input_data.container_id, input_data.format)
    return ExportLogsOutput(
        container_id=input_data.container_id, format=input_data.format, content=content
    )


@mcp.tool()
async def run_health_check() -> HealthCheckOutput:
    """
    Run the health monitor once, outside its schedule.

    Returns:
        HealthCheckOutput with one result per checked container
    """
    results = await get_runtime().reconciler.monitor_health()
    return HealthCheckOutput(
        checked=len(results),
        unhealthy=sum(1 for result in results if not result.healthy),
        results=[result.to_dict() for result in results],
    )


@mcp.tool()
async def cleanup_orphans() -> OrphanCleanupOutput:
    """
    Mark registry records whose engine object is gone as removed.

    Returns:
        OrphanCleanupOutput with cleanup statistics
    """
    stats = await get_runtime().reconciler.cleanup_orphans()
    return OrphanCleanupOutput(**stats)


@mcp.tool()
async def connected_clients() -> ConnectedClientsOutput:
    """
    List authenticated channel clients and their subscriptions.

    Returns:
        ConnectedClientsOutput with one entry per client
    """
    channel = get_runtime().channel
    return ConnectedClientsOutput(
        clients=channel.connected_clients(), connections=channel.connection_count
    )


@mcp.tool()
async def metrics() -> MetricsOutput:
    """
    Get Prometheus metrics for monitoring.

    Returns:
        MetricsOutput with Prometheus-formatted metrics
    """
    logger.debug("Metrics endpoint accessed")
    return MetricsOutput(metrics=get_metrics_collector().get_metrics().decode("utf-8"))


def create_app(runtime: Runtime | None = None) -> Starlette:
    """
    Build the ASGI application.

    The channel WebSocket route sits next to the MCP HTTP app; both share
    the runtime stored on app.state.

    Args:
        runtime: Runtime to serve (a new one from settings when omitted)

    Returns:
        Starlette application
    """
    settings = get_settings()

    if runtime is None:
        token_verifier = create_token_verifier()
        mcp.auth = token_verifier
        runtime = Runtime(token_verifier=token_verifier)
    set_runtime(runtime)

    mcp_app = mcp.http_app(path=settings.path)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        app.state.runtime = runtime
        await runtime.start()
        try:
            async with mcp_app.lifespan(app):
                yield
        finally:
            await runtime.stop()

    return Starlette(
        routes=[
            WebSocketRoute(settings.ws_path, channel_endpoint),
            Mount("/", app=mcp_app),
        ],
        lifespan=lifespan,
    )


def main() -> None:
    """Main entry point for the CrateFlow server."""
    settings = get_settings()

    # Setup logging first so auth initialization can be properly logged
    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    logger.info(
        "Starting server",
        extra={
            "auth_mode": settings.auth_mode,
            "host": settings.host,
            "port": settings.port,
            "mcp_path": settings.path,
            "ws_path": settings.ws_path,
        },
    )

    try:
        app = create_app()
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
