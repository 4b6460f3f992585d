"""Tests for ContainerManager."""

import pytest

from crateflow.managers.engine_client import ExecChunk
from crateflow.managers.log_manager import LogCategory
from crateflow.models.containers import ContainerStatus
from crateflow.utils.exceptions import (
    ContainerAlreadyExistsError,
    ContainerNotFoundError,
    EngineFaultError,
    NoEngineObjectError,
)


async def log_lines(log_manager, container_id, category):
    return [entry.content for entry in await log_manager.tail(container_id, category, limit=None)]


@pytest.mark.asyncio
async def test_create_container(container_manager, fake_engine, log_manager):
    """Test creating a container binds the record to a new engine object."""
    record = await container_manager.create_container(
        name="web",
        image="nginx:1.25",
        owner_id="alice",
        folder_path="/srv/web",
        port_mappings={"80": "8080"},
        max_memory="256m",
    )

    assert len(record.id) == 12
    assert record.status == ContainerStatus.CREATED.value
    assert record.engine_ref == "engine-0001"

    spec = fake_engine.created_specs[0]
    assert spec.labels["nexus-crate-flow"] == "true"
    assert spec.labels["nexus-crate-flow.container-id"] == record.id
    assert spec.labels["nexus-crate-flow.created-by"] == "alice"
    assert spec.volumes == ["/srv/web:/app"]
    assert spec.memory == "256m"

    settings = await container_manager.get_settings(record.id)
    assert settings.auto_restart is True
    assert settings.max_memory == "256m"

    info = await log_lines(log_manager, record.id, LogCategory.INFO)
    assert info == ["Container created with image nginx:1.25"]


@pytest.mark.asyncio
async def test_create_duplicate_name(container_manager):
    """Test that a taken name is rejected before touching the engine."""
    await container_manager.create_container(name="web", image="nginx", owner_id="alice")

    with pytest.raises(ContainerAlreadyExistsError):
        await container_manager.create_container(name="web", image="nginx", owner_id="bob")


@pytest.mark.asyncio
async def test_create_engine_failure_rolls_back(container_manager, fake_engine):
    """Test that an engine failure leaves no record behind."""
    fake_engine.failures["create"] = EngineFaultError("image not found")

    with pytest.raises(EngineFaultError):
        await container_manager.create_container(name="web", image="nope", owner_id="alice")

    assert await container_manager.list_records() == []


@pytest.mark.asyncio
async def test_create_with_auto_start(container_manager, fake_engine):
    """Test that auto_start starts the new container."""
    record = await container_manager.create_container(
        name="web", image="nginx", owner_id="alice", auto_start=True
    )

    assert record.status == ContainerStatus.RUNNING.value
    assert fake_engine.objects[record.engine_ref].running


@pytest.mark.asyncio
async def test_start_container(container_manager, fake_engine, log_manager, add_record):
    """Test starting a stopped container."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1", status=ContainerStatus.STOPPED)

    record = await container_manager.start_container("c1")

    assert record.status == ContainerStatus.RUNNING.value
    assert fake_engine.objects["e1"].running
    assert await log_lines(log_manager, "c1", LogCategory.INFO) == ["Container started"]


@pytest.mark.asyncio
async def test_start_already_running(container_manager, fake_engine, log_manager, add_record):
    """Test that starting a running container is not an error."""
    fake_engine.add("e1", "web", status="running")
    await add_record("c1", "web", "e1", status=ContainerStatus.STOPPED)

    record = await container_manager.start_container("c1")

    assert record.status == ContainerStatus.RUNNING.value
    assert await log_lines(log_manager, "c1", LogCategory.INFO) == ["Container already running"]


@pytest.mark.asyncio
async def test_start_without_engine_object(container_manager, add_record):
    """Test that a record without an engine object cannot be started."""
    await add_record("c1", "web", None, status=ContainerStatus.CREATED)

    with pytest.raises(NoEngineObjectError):
        await container_manager.start_container("c1")


@pytest.mark.asyncio
async def test_stop_container(container_manager, fake_engine, add_record):
    """Test stopping a running container."""
    fake_engine.add("e1", "web", status="running")
    await add_record("c1", "web", "e1")

    record = await container_manager.stop_container("c1", timeout_s=1)

    assert record.status == ContainerStatus.STOPPED.value
    assert fake_engine.objects["e1"].status == "exited"


@pytest.mark.asyncio
async def test_restart_failure_logs_and_keeps_status(
    container_manager, fake_engine, log_manager, add_record
):
    """Test that a failed restart is logged and re-raised with status unchanged."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1", status=ContainerStatus.EXITED)
    fake_engine.failures["restart"] = EngineFaultError("boom")

    with pytest.raises(EngineFaultError):
        await container_manager.restart_container("c1")

    record = await container_manager.get_record("c1")
    assert record.status == ContainerStatus.EXITED.value
    errors = await log_lines(log_manager, "c1", LogCategory.ERROR)
    assert errors == ["Container restart failed: Engine fault: boom"]


@pytest.mark.asyncio
async def test_startup_script_runs_after_start(
    container_manager, fake_engine, log_manager, add_record
):
    """Test that the startup script output lands in the startup and error logs."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1", status=ContainerStatus.STOPPED, startup_script="./boot.sh")
    fake_engine.exec_chunks = [ExecChunk("stdout", "boot ok\n"), ExecChunk("stderr", "warn\n")]

    await container_manager.start_container("c1")
    assert await container_manager.drain(grace_s=5.0) == 0

    assert await log_lines(log_manager, "c1", LogCategory.STARTUP) == ["boot ok"]
    assert await log_lines(log_manager, "c1", LogCategory.ERROR) == ["warn"]
    info = await log_lines(log_manager, "c1", LogCategory.INFO)
    assert info == [
        "Container started",
        "Executing script: ./boot.sh",
        "Script completed with exit code 0",
    ]
    argv = fake_engine.operations("exec")[0][2]
    assert argv == ["sh", "-c", "./boot.sh"]


@pytest.mark.asyncio
async def test_startup_script_failure_is_logged(
    container_manager, fake_engine, log_manager, add_record
):
    """Test that a failing startup script is recorded without raising."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1", status=ContainerStatus.STOPPED, startup_script="boot")
    fake_engine.failures["exec"] = EngineFaultError("exec refused")

    await container_manager.start_container("c1")
    await container_manager.drain(grace_s=5.0)

    errors = await log_lines(log_manager, "c1", LogCategory.ERROR)
    assert errors == ["Startup script failed: Engine fault: exec refused"]


@pytest.mark.asyncio
async def test_remove_container(container_manager, fake_engine, log_manager, add_record):
    """Test that remove deletes the engine object, logs and record."""
    fake_engine.add("e1", "web")
    await add_record("c1", "web", "e1")
    await log_manager.append("c1", "hello")

    await container_manager.remove_container("c1")

    assert "e1" not in fake_engine.objects
    assert not log_manager.container_dir("c1").exists()
    assert await container_manager.get_settings("c1") is None
    with pytest.raises(ContainerNotFoundError):
        await container_manager.get_record("c1")


@pytest.mark.asyncio
async def test_remove_with_missing_engine_object(container_manager, add_record):
    """Test that an engine object already gone does not block removal."""
    await add_record("c1", "web", "gone")

    await container_manager.remove_container("c1")

    assert await container_manager.list_records() == []


@pytest.mark.asyncio
async def test_failed_removal_restores_status(
    container_manager, fake_engine, log_manager, add_record
):
    """Test that an engine failure during remove puts the old status back."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1", status=ContainerStatus.STOPPED)
    fake_engine.failures["remove"] = EngineFaultError("device busy")
    changes = []

    async def record_change(container_id, old, new):
        changes.append((old, new))

    container_manager.add_status_listener(record_change)

    with pytest.raises(EngineFaultError):
        await container_manager.remove_container("c1")

    record = await container_manager.get_record("c1")
    assert record.status == "stopped"
    assert changes == [("stopped", "removing"), ("removing", "stopped")]
    assert "e1" in fake_engine.objects
    assert await log_lines(log_manager, "c1", LogCategory.ERROR) == [
        "Container removal failed: Engine fault: device busy"
    ]


@pytest.mark.asyncio
async def test_get_status(container_manager, fake_engine, add_record):
    """Test status reporting with a live and a missing engine object."""
    fake_engine.add("e1", "web", status="exited")
    await add_record("c1", "web", "e1")
    await add_record("c2", "db", "gone")

    status = await container_manager.get_status("c1")
    assert status["database_status"] == "running"
    assert status["engine_status"] == {"status": "exited", "running": False}

    missing = await container_manager.get_status("c2")
    assert missing["engine_status"] == {"status": "not_found", "running": False}

    with pytest.raises(ContainerNotFoundError):
        await container_manager.get_status("nope")


@pytest.mark.asyncio
async def test_status_listener_only_on_change(container_manager, add_record):
    """Test that status listeners fire only when the value changes."""
    await add_record("c1", "web", "e1", status=ContainerStatus.RUNNING)
    changes = []

    async def listener(container_id, old, new):
        changes.append((container_id, old, new))

    container_manager.add_status_listener(listener)
    await container_manager.set_status("c1", ContainerStatus.RUNNING)
    await container_manager.set_status("c1", ContainerStatus.EXITED, "test")

    assert changes == [("c1", "running", "exited")]


@pytest.mark.asyncio
async def test_register_existing_picks_free_id(container_manager, add_record):
    """Test that importing reuses a free id and replaces a taken one."""
    await add_record("c1", "web")

    fresh = await container_manager.register_existing(
        "db", "postgres", "e2", ContainerStatus.RUNNING, "system", container_id="c2"
    )
    clash = await container_manager.register_existing(
        "cache", "redis", "e3", ContainerStatus.STOPPED, "system", container_id="c1"
    )

    assert fresh.id == "c2"
    assert clash.id != "c1"
    assert (await container_manager.get_settings(clash.id)).auto_restart is True
