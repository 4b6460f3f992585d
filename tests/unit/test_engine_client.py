"""Tests for EngineClient and its helpers."""

import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError

from crateflow.managers.engine_client import (
    ContainerSpec,
    EngineClient,
    ExecChunk,
    ExecOptions,
    build_engine_stats,
    build_port_bindings,
    compute_cpu_percent,
    parse_cpu_shares,
    parse_engine_time,
    parse_memory,
)
from crateflow.utils.exceptions import (
    AlreadyInStateError,
    EngineFaultError,
    EngineTimeoutError,
    EngineUnavailableError,
    ObjectNotFoundError,
)


def make_docker_container(ref="abc123def4567890", name="web", status="running"):
    container = MagicMock()
    container.id = ref
    container.name = name
    container.status = status
    container.labels = {"nexus-crate-flow": "true"}
    container.attrs = {"Config": {"Image": "nginx:1.25"}, "Created": "2024-05-01T10:00:00Z"}
    return container


@pytest.fixture
def docker_client():
    """Mock Docker SDK client."""
    return MagicMock()


@pytest.fixture
def engine(docker_client):
    """Engine client over the mock SDK client."""
    return EngineClient(client=docker_client, timeout_s=2.0)


@pytest.mark.asyncio
async def test_list_normalizes_containers(engine, docker_client):
    """Test that list maps SDK containers to EngineContainer."""
    docker_client.containers.list.return_value = [
        make_docker_container(),
        make_docker_container("fff000", "/db", "exited"),
    ]

    containers = await engine.list()

    assert [c.name for c in containers] == ["web", "db"]
    assert containers[0].image == "nginx:1.25"
    assert containers[0].running is True
    assert containers[0].short_id == "abc123def456"
    assert containers[1].running is False
    docker_client.containers.list.assert_called_once_with(all=True, ignore_removed=True)


@pytest.mark.asyncio
async def test_inspect_missing_object(engine, docker_client):
    """Test that NotFound becomes ObjectNotFoundError."""
    docker_client.containers.get.side_effect = NotFound("No such container")

    with pytest.raises(ObjectNotFoundError) as exc_info:
        await engine.inspect("missing")

    assert exc_info.value.ref == "missing"


@pytest.mark.asyncio
async def test_start_running_container_is_already_in_state(engine, docker_client):
    """Test that starting a running container raises AlreadyInStateError."""
    docker_client.containers.get.return_value = make_docker_container(status="running")

    with pytest.raises(AlreadyInStateError):
        await engine.start("abc")


@pytest.mark.asyncio
async def test_stop_stopped_container_is_already_in_state(engine, docker_client):
    """Test that stopping an exited container raises AlreadyInStateError."""
    docker_client.containers.get.return_value = make_docker_container(status="exited")

    with pytest.raises(AlreadyInStateError) as exc_info:
        await engine.stop("abc")

    assert exc_info.value.state == "exited"


@pytest.mark.asyncio
async def test_not_modified_maps_to_already_in_state(engine, docker_client):
    """Test that an HTTP 304 from the engine maps to AlreadyInStateError."""
    response = MagicMock(status_code=304)
    docker_client.api.restart.side_effect = APIError("not modified", response=response)

    with pytest.raises(AlreadyInStateError):
        await engine.restart("abc")


@pytest.mark.asyncio
async def test_api_error_maps_to_fault(engine, docker_client):
    """Test that other API errors map to EngineFaultError."""
    response = MagicMock(status_code=500)
    docker_client.api.remove_container.side_effect = APIError(
        "server error", response=response, explanation="driver failed"
    )

    with pytest.raises(EngineFaultError) as exc_info:
        await engine.remove("abc", force=True)

    assert "driver failed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_connection_error_maps_to_unavailable(engine, docker_client):
    """Test that a refused connection maps to EngineUnavailableError."""
    docker_client.ping.side_effect = RequestsConnectionError("refused")

    with pytest.raises(EngineUnavailableError):
        await engine.ping()


@pytest.mark.asyncio
async def test_slow_call_times_out(docker_client):
    """Test that calls exceeding the deadline raise EngineTimeoutError."""
    docker_client.ping.side_effect = lambda: time.sleep(0.5)
    engine = EngineClient(client=docker_client, timeout_s=0.05)

    with pytest.raises(EngineTimeoutError) as exc_info:
        await engine.ping()

    assert exc_info.value.operation == "ping"


@pytest.mark.asyncio
async def test_unconnected_client_is_unavailable():
    """Test that calls before connect() raise EngineUnavailableError."""
    engine = EngineClient(timeout_s=1.0)

    assert engine.connected is False
    with pytest.raises(EngineUnavailableError):
        await engine.list()


@pytest.mark.asyncio
async def test_create_builds_sdk_arguments(engine, docker_client):
    """Test that create translates the spec into SDK keyword arguments."""
    docker_client.containers.create.return_value = make_docker_container(status="created")

    spec = ContainerSpec(
        name="web",
        image="nginx:1.25",
        environment={"MODE": "prod"},
        command="nginx -g 'daemon off;'",
        ports={"80": "8080"},
        memory="512m",
        cpu="1.5",
        labels={"nexus-crate-flow": "true"},
    )
    container = await engine.create(spec)

    kwargs = docker_client.containers.create.call_args.kwargs
    assert kwargs["ports"] == {"80/tcp": 8080}
    assert kwargs["mem_limit"] == 512 * 1024**2
    assert kwargs["cpu_shares"] == 1536
    assert kwargs["command"] == ["nginx", "-g", "daemon off;"]
    assert kwargs["restart_policy"] == {"Name": "unless-stopped"}
    assert container.status == "created"


@pytest.mark.asyncio
async def test_exec_stream_demultiplexes_output(engine, docker_client):
    """Test that exec frames are split into stdout and stderr chunks."""
    docker_client.api.exec_create.return_value = {"Id": "exec-1"}
    docker_client.api.exec_start.return_value = iter(
        [(b"hello\n", None), (None, b"oops\n"), (b"a", b"b")]
    )
    docker_client.api.exec_inspect.return_value = {"ExitCode": 3}

    stream = await engine.exec_stream("abc", ["sh", "-c", "true"], ExecOptions(working_dir="/srv"))
    chunks = [chunk async for chunk in stream]

    assert chunks == [
        ExecChunk("stdout", "hello\n"),
        ExecChunk("stderr", "oops\n"),
        ExecChunk("stdout", "a"),
        ExecChunk("stderr", "b"),
    ]
    assert await stream.exit_code() == 3
    assert docker_client.api.exec_create.call_args.kwargs["workdir"] == "/srv"


@pytest.mark.asyncio
async def test_exec_stream_keeps_split_characters_intact(engine, docker_client):
    """Test that multi-byte characters split across frames decode once joined."""
    docker_client.api.exec_create.return_value = {"Id": "exec-3"}
    docker_client.api.exec_start.return_value = iter(
        [(b"h\xc3", b"\xe2\x82"), (b"\xa9llo", b"\xac"), (b"!\xf0\x9f", None)]
    )

    stream = await engine.exec_stream("abc", ["sh", "-c", "true"])
    chunks = [chunk async for chunk in stream]

    stdout = "".join(chunk.data for chunk in chunks if chunk.stream == "stdout")
    stderr = "".join(chunk.data for chunk in chunks if chunk.stream == "stderr")
    assert stdout == "héllo!\ufffd"
    assert stderr == "€"
    assert all(chunk.data for chunk in chunks)


@pytest.mark.asyncio
async def test_cancelled_exec_stream_stops(engine, docker_client):
    """Test that a cancelled stream yields nothing more."""
    docker_client.api.exec_create.return_value = {"Id": "exec-2"}
    docker_client.api.exec_start.return_value = iter([(b"x", None)])

    stream = await engine.exec_stream("abc", ["yes"])
    stream.cancel()
    stream.cancel()

    assert stream.cancelled is True
    assert [chunk async for chunk in stream] == []


@pytest.mark.asyncio
async def test_stats_sample(engine, docker_client):
    """Test that stats normalizes a raw sample."""
    docker_client.api.stats.return_value = {
        "cpu_stats": {
            "cpu_usage": {"total_usage": 300},
            "system_cpu_usage": 2000,
            "online_cpus": 2,
        },
        "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
        "memory_stats": {"usage": 256, "limit": 1024},
        "networks": {"eth0": {"rx_bytes": 10, "tx_bytes": 20}},
    }

    stats = await engine.stats("abc")

    assert stats.cpu_percent == pytest.approx(40.0)
    assert stats.memory_percent == pytest.approx(25.0)
    assert stats.network_rx_bytes == 10
    assert stats.network_tx_bytes == 20
    assert stats.to_dict()["memory_limit"] == 1024
    docker_client.api.stats.assert_called_once_with("abc", stream=False)


@pytest.mark.asyncio
async def test_logs_decodes_bytes(engine, docker_client):
    """Test that engine logs are returned as text."""
    docker_client.api.logs.return_value = b"line one\nline two\n"

    assert await engine.logs("abc", tail=2) == "line one\nline two\n"
    assert docker_client.api.logs.call_args.kwargs["tail"] == 2


def test_cpu_percent_guards_against_non_positive_deltas():
    """Test that CPU percent is zero when a delta is not positive."""
    assert compute_cpu_percent({}) == 0.0
    assert (
        compute_cpu_percent(
            {
                "cpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
                "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
            }
        )
        == 0.0
    )
    assert (
        compute_cpu_percent(
            {
                "cpu_stats": {"cpu_usage": {"total_usage": 50}, "system_cpu_usage": 2000},
                "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
            }
        )
        == 0.0
    )


def test_build_engine_stats_without_limit():
    """Test that a zero memory limit yields zero percent."""
    stats = build_engine_stats({"memory_stats": {"usage": 100, "limit": 0}})

    assert stats.memory_percent == 0.0
    assert stats.to_dict()["memory_usage"] == 100


def test_parse_memory():
    """Test memory string parsing."""
    assert parse_memory("512m") == 512 * 1024**2
    assert parse_memory("2g") == 2 * 1024**3
    assert parse_memory("64kb") == 64 * 1024
    assert parse_memory("100") == 100

    with pytest.raises(ValueError):
        parse_memory("lots")


def test_parse_cpu_shares():
    """Test CPU count conversion to shares."""
    assert parse_cpu_shares("1") == 1024
    assert parse_cpu_shares("0.5") == 512

    with pytest.raises(ValueError):
        parse_cpu_shares("0")


def test_build_port_bindings():
    """Test that ports without a protocol default to TCP."""
    assert build_port_bindings({"80": "8080", "53/udp": 5353, 443: "8443"}) == {
        "80/tcp": 8080,
        "53/udp": 5353,
        "443/tcp": 8443,
    }


def test_parse_engine_time():
    """Test engine timestamps with nanoseconds, offsets and garbage."""
    assert parse_engine_time("2024-05-01T10:00:00.123456789Z") == datetime(
        2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc
    )
    assert parse_engine_time("2024-05-01T12:00:00.5+02:00") == datetime(
        2024, 5, 1, 10, 0, 0, 500000, tzinfo=timezone.utc
    )
    assert parse_engine_time("2024-05-01T10:00:00Z") == datetime(
        2024, 5, 1, 10, 0, tzinfo=timezone.utc
    )
    assert parse_engine_time(None) is None
    assert parse_engine_time("yesterday") is None
