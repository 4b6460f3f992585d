"""Unit tests for MCP tool endpoints."""

import json
from datetime import timedelta

import pytest
from pydantic import ValidationError

from crateflow import server
from crateflow.managers.log_manager import LogCategory
from crateflow.mcp_tools import (
    ClearLogsInput,
    ContainerRef,
    CreateInput,
    EngineLogsInput,
    ExportLogsInput,
    ListContainersInput,
    RemoveInput,
    StopInput,
    TailLogsInput,
)
from crateflow.models.base import utcnow
from crateflow.models.containers import ContainerStatus
from crateflow.utils.exceptions import (
    ContainerNotFoundError,
    EngineUnavailableError,
    NoEngineObjectError,
)


@pytest.mark.asyncio
async def test_health_tool(runtime, fake_engine):
    """Test health reports engine connectivity and job errors."""
    result = await server.health.fn()

    assert result.status == "healthy"
    assert result.engine_connected is True
    assert set(result.jobs) == {
        "sync",
        "health",
        "orphans",
        "channel_cleanup",
        "log_rotation",
        "log_retention",
    }

    fake_engine.failures["ping"] = EngineUnavailableError()
    degraded = await server.health.fn()

    assert degraded.status == "degraded"
    assert degraded.engine_connected is False


@pytest.mark.asyncio
async def test_reconcile_now_tool(runtime, fake_engine, add_record):
    """Test manual sync returns its statistics."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1")

    result = await server.reconcile_now.fn()

    assert result.synced == 1
    assert result.updated == 1
    assert result.total_engine == 1
    assert result.total_registry == 1


@pytest.mark.asyncio
async def test_lifecycle_tools(runtime, fake_engine, add_record):
    """Test start, stop, restart and remove tools."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1", status=ContainerStatus.STOPPED)

    started = await server.start.fn(ContainerRef(container_id="c1"))
    assert started.status == "running"

    stopped = await server.stop.fn(StopInput(container_id="c1", timeout_s=1))
    assert stopped.status == "stopped"

    restarted = await server.restart.fn(ContainerRef(container_id="c1"))
    assert restarted.status == "running"

    removed = await server.remove.fn(RemoveInput(container_id="c1"))
    assert removed.removed is True
    assert "e1" not in fake_engine.objects


@pytest.mark.asyncio
async def test_get_status_tool(runtime, fake_engine, add_record):
    """Test status tool output and unknown containers."""
    fake_engine.add("e1", "web", status="running")
    await add_record("c1", "web", "e1")

    result = await server.get_status.fn(ContainerRef(container_id="c1"))

    assert result.name == "web"
    assert result.database_status == "running"
    assert result.engine_status.running is True

    with pytest.raises(ContainerNotFoundError):
        await server.get_status.fn(ContainerRef(container_id="nope"))


@pytest.mark.asyncio
async def test_log_tools(runtime):
    """Test tailing and clearing container logs."""
    for line in ("boot ok", "listening"):
        await runtime.log_manager.append("c1", line, LogCategory.STARTUP)

    tail = await server.tail_logs.fn(
        TailLogsInput(container_id="c1", category="startup", limit=1)
    )
    assert [entry.content for entry in tail.entries] == ["listening"]

    cleared = await server.clear_logs.fn(ClearLogsInput(container_id="c1", category="startup"))
    assert cleared.cleared is True

    empty = await server.tail_logs.fn(TailLogsInput(container_id="c1", category="startup"))
    assert empty.entries == []


@pytest.mark.asyncio
async def test_health_check_and_orphan_tools(runtime, fake_engine, add_record):
    """Test on-demand health monitor and orphan cleanup."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1", auto_restart=False)
    await add_record("c2", "db", "gone", status=ContainerStatus.STOPPED)

    health = await server.run_health_check.fn()
    assert health.checked == 1
    assert health.unhealthy == 1
    assert health.results[0]["actual_status"] == "exited"

    orphans = await server.cleanup_orphans.fn()
    assert orphans.removed == 1


@pytest.mark.asyncio
async def test_connected_clients_tool(runtime, make_transport):
    """Test admin listing of channel clients."""
    conn = await runtime.channel.open_connection(make_transport())
    await runtime.channel.authenticate(conn, "admin-token")
    await runtime.channel.open_connection(make_transport())

    result = await server.connected_clients.fn()

    assert result.connections == 2
    assert [client["user_id"] for client in result.clients] == ["root"]


@pytest.mark.asyncio
async def test_metrics_tool(runtime):
    """Test Prometheus metrics exposure."""
    result = await server.metrics.fn()

    assert "crateflow_channel_connections" in result.metrics


@pytest.mark.asyncio
async def test_create_and_list_tools(runtime, fake_engine, add_record):
    """Test creating a container and listing records by owner."""
    await add_record("c1", "db", "e9", owner_id="alice")

    created = await server.create.fn(
        CreateInput(name="web", image="nginx:1.25", port_mappings={"80": "8080"}, auto_start=True)
    )

    assert created.owner_id == "system"
    assert created.status == "running"
    assert created.engine_ref in fake_engine.objects
    assert fake_engine.created_specs[0].ports == {"80": "8080"}

    everything = await server.list_containers.fn(ListContainersInput())
    assert sorted(c.name for c in everything.containers) == ["db", "web"]

    owned = await server.list_containers.fn(ListContainersInput(owner_id="alice"))
    assert [c.container_id for c in owned.containers] == ["c1"]


@pytest.mark.asyncio
async def test_container_stats_tool(runtime, fake_engine, add_record):
    """Test usage sampling with uptime counted only while running."""
    created = (utcnow() - timedelta(seconds=90)).strftime("%Y-%m-%dT%H:%M:%S.%f") + "123Z"
    fake_engine.add("e1", "web", status="running", created=created)
    fake_engine.add("e2", "db", status="exited", created=created)
    await add_record("c1", "web", "e1")
    await add_record("c2", "db", "e2", status=ContainerStatus.STOPPED)
    await add_record("c3", "cache", None, status=ContainerStatus.CREATED)

    running = await server.container_stats.fn(ContainerRef(container_id="c1"))
    assert running.running is True
    assert running.stats == fake_engine.stats_sample.to_dict()
    assert 89 <= running.uptime_s < 150

    stopped = await server.container_stats.fn(ContainerRef(container_id="c2"))
    assert stopped.status == "exited"
    assert stopped.uptime_s == 0

    with pytest.raises(NoEngineObjectError):
        await server.container_stats.fn(ContainerRef(container_id="c3"))

    fake_engine.failures["stats"] = EngineUnavailableError()
    with pytest.raises(EngineUnavailableError):
        await server.container_stats.fn(ContainerRef(container_id="c1"))


@pytest.mark.asyncio
async def test_engine_logs_tool(runtime, fake_engine, add_record):
    """Test fetching the engine-side process output."""
    fake_engine.add("e1", "web", status="running")
    fake_engine.engine_log = "2024-05-01T10:00:00Z listening on 80\n"
    await add_record("c1", "web", "e1")

    result = await server.engine_logs.fn(EngineLogsInput(container_id="c1", tail=5))

    assert result.logs == "2024-05-01T10:00:00Z listening on 80\n"
    assert fake_engine.operations("logs") == [("logs", "e1", 5)]


@pytest.mark.asyncio
async def test_log_stats_and_export_tools(runtime):
    """Test log file sizes and merged exports."""
    await runtime.log_manager.append("c1", "boot ok", LogCategory.STARTUP)
    await runtime.log_manager.append("c1", "disk low", LogCategory.ERROR)

    stats = await server.log_stats.fn(ContainerRef(container_id="c1"))
    assert stats.categories["startup"]["exists"] is True
    assert stats.categories["application"]["exists"] is False
    assert stats.total_size == sum(c["size"] for c in stats.categories.values())
    assert stats.total_size > 0

    exported = await server.export_logs.fn(ExportLogsInput(container_id="c1"))
    assert [e["content"] for e in json.loads(exported.content)] == ["boot ok", "disk low"]

    text = await server.export_logs.fn(ExportLogsInput(container_id="c1", format="text"))
    assert "[STARTUP] boot ok" in text.content
    assert "[ERROR] disk low" in text.content

    with pytest.raises(ValidationError):
        ExportLogsInput(container_id="c1", format="csv")
