"""Typed asynchronous interface over the Docker engine control plane."""

import asyncio
import codecs
import re
import shlex
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Literal, Optional, TypeVar

from docker import DockerClient
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import Container as DockerContainer
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException
from requests.exceptions import Timeout as RequestsTimeout

from crateflow.config import get_settings
from crateflow.utils import get_logger
from crateflow.utils.docker_client import close_docker_client, get_docker_client
from crateflow.utils.exceptions import (
    AlreadyInStateError,
    EngineError,
    EngineFaultError,
    EngineTimeoutError,
    EngineUnavailableError,
    ObjectNotFoundError,
)
from crateflow.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

T = TypeVar("T")

_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([bkmg]?)b?\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}
_TIMESTAMP_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})?$"
)

# Engine answers 304 Not Modified for start/stop on an object already in that state
HTTP_NOT_MODIFIED = 304

_END_OF_STREAM = object()


@dataclass
class EngineContainer:
    """Normalized view of one engine container object."""

    engine_ref: str
    name: str
    image: str
    status: str
    labels: Dict[str, str] = field(default_factory=dict)
    created: str | None = None

    @property
    def running(self) -> bool:
        """Whether the engine reports the object as running."""
        return self.status == "running"

    @property
    def short_id(self) -> str:
        """First 12 characters of the engine id."""
        return self.engine_ref[:12]


@dataclass
class ContainerSpec:
    """Parameters for creating an engine container."""

    name: str
    image: str
    environment: Dict[str, str] = field(default_factory=dict)
    working_dir: str | None = None
    command: List[str] | str | None = None
    # Container port to host port, e.g. {"3000": "8080"}
    ports: Dict[str, Any] = field(default_factory=dict)
    # Bind mounts in "host:container[:mode]" form
    volumes: List[str] = field(default_factory=list)
    memory: str | None = None
    cpu: str | None = None
    labels: Dict[str, str] = field(default_factory=dict)
    restart_policy: str = "unless-stopped"


@dataclass
class ExecOptions:
    """Options for a command executed inside a container."""

    working_dir: str | None = None
    environment: Dict[str, str] = field(default_factory=dict)
    user: str = ""


@dataclass
class ExecChunk:
    """One chunk of output from an exec stream."""

    stream: Literal["stdout", "stderr"]
    data: str


@dataclass
class EngineStats:
    """Resource usage snapshot of one container."""

    cpu_percent: float
    memory_usage: int
    memory_limit: int
    memory_percent: float
    network_rx_bytes: int
    network_tx_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary."""
        return {
            "cpu_percent": self.cpu_percent,
            "memory_usage": self.memory_usage,
            "memory_limit": self.memory_limit,
            "memory_percent": self.memory_percent,
            "network_rx_bytes": self.network_rx_bytes,
            "network_tx_bytes": self.network_tx_bytes,
        }


def parse_memory(value: str) -> int:
    """
    Parse an engine memory string such as "512m" or "2g" into bytes.

    Args:
        value: Memory amount with an optional b/k/m/g suffix

    Returns:
        Number of bytes

    Raises:
        ValueError: If the string is not a memory amount
    """
    match = _MEMORY_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid memory value: {value!r}")
    amount, unit = match.groups()
    return int(float(amount) * _MEMORY_UNITS[unit.lower()])


def parse_cpu_shares(value: str) -> int:
    """
    Convert a CPU count such as "1.5" into engine CPU shares.

    Args:
        value: Number of CPUs as a decimal string

    Returns:
        Relative CPU weight (1024 per CPU)
    """
    cpus = float(value)
    if cpus <= 0:
        raise ValueError(f"Invalid cpu value: {value!r}")
    return int(cpus * 1024)


def build_port_bindings(ports: Dict[str, Any]) -> Dict[str, int]:
    """
    Convert {container_port: host_port} into engine port bindings.

    Ports without a protocol are bound as TCP.
    """
    bindings = {}
    for container_port, host_port in ports.items():
        key = str(container_port)
        if "/" not in key:
            key = f"{key}/tcp"
        bindings[key] = int(host_port)
    return bindings


def compute_cpu_percent(stats: Dict[str, Any]) -> float:
    """
    Compute CPU usage percent from a raw engine stats sample.

    The result is (cpu_delta / system_delta) * online_cpus * 100 and is 0
    whenever either delta is not positive, so it is never negative or NaN.

    Args:
        stats: Raw stats payload with cpu_stats and precpu_stats

    Returns:
        CPU usage in percent
    """
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}
    cpu_usage = cpu_stats.get("cpu_usage") or {}
    precpu_usage = precpu_stats.get("cpu_usage") or {}

    cpu_delta = cpu_usage.get("total_usage", 0) - precpu_usage.get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get(
        "system_cpu_usage", 0
    )

    if system_delta <= 0 or cpu_delta <= 0:
        return 0.0

    online_cpus = cpu_stats.get("online_cpus") or len(cpu_usage.get("percpu_usage") or []) or 1
    return (cpu_delta / system_delta) * online_cpus * 100.0


def build_engine_stats(stats: Dict[str, Any]) -> EngineStats:
    """
    Normalize a raw engine stats sample.

    Args:
        stats: Raw stats payload

    Returns:
        EngineStats snapshot
    """
    memory_stats = stats.get("memory_stats") or {}
    memory_usage = int(memory_stats.get("usage", 0))
    memory_limit = int(memory_stats.get("limit", 0))
    memory_percent = (memory_usage / memory_limit) * 100.0 if memory_limit > 0 else 0.0

    rx_bytes = 0
    tx_bytes = 0
    for network in (stats.get("networks") or {}).values():
        rx_bytes += int(network.get("rx_bytes", 0))
        tx_bytes += int(network.get("tx_bytes", 0))

    return EngineStats(
        cpu_percent=compute_cpu_percent(stats),
        memory_usage=memory_usage,
        memory_limit=memory_limit,
        memory_percent=memory_percent,
        network_rx_bytes=rx_bytes,
        network_tx_bytes=tx_bytes,
    )


def parse_engine_time(value: str | None) -> datetime | None:
    """
    Parse an engine RFC 3339 timestamp such as "2024-05-01T10:00:00.123456789Z".

    Fractions beyond microseconds are truncated. Unparseable values give None.
    """
    if not value:
        return None
    match = _TIMESTAMP_PATTERN.match(value.strip())
    if match is None:
        return None
    base, fraction, zone = match.groups()
    fraction = fraction[:7].ljust(7, "0") if fraction else ""
    if zone in (None, "Z"):
        zone = "+00:00"
    parsed = datetime.fromisoformat(f"{base}{fraction}{zone}")
    return parsed.astimezone(timezone.utc)


def _to_engine_container(container: DockerContainer) -> EngineContainer:
    attrs = container.attrs or {}
    config = attrs.get("Config") or {}
    return EngineContainer(
        engine_ref=container.id,
        name=(container.name or "").lstrip("/"),
        image=config.get("Image") or "",
        status=container.status,
        labels=dict(container.labels or {}),
        created=attrs.get("Created"),
    )


class ExecStream:
    """
    Async iterator over the output of one exec.

    Each step pulls the next demultiplexed frame from the engine in a worker
    thread. Callers must either drain the stream or call cancel().
    """

    def __init__(self, engine: "EngineClient", ref: str, exec_id: str, output: Any) -> None:
        """
        Initialize exec stream.

        Args:
            engine: Engine client that opened the exec
            ref: Engine reference of the container
            exec_id: Engine exec id
            output: Blocking iterator of (stdout, stderr) frames
        """
        self.engine = engine
        self.ref = ref
        self.exec_id = exec_id
        self._output = output
        self._pending: Deque[ExecChunk] = deque()
        # Frames can split multi-byte characters, so decoding keeps state per stream
        self._decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        self._finished = False
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """Whether cancel() was called."""
        return self._cancelled

    def __aiter__(self) -> "ExecStream":
        return self

    async def __anext__(self) -> ExecChunk:
        while not self._pending:
            if self._finished or self._cancelled:
                raise StopAsyncIteration
            frame = await asyncio.to_thread(next, self._output, _END_OF_STREAM)
            if frame is _END_OF_STREAM:
                self._finished = True
                self._decode("stdout", b"", final=True)
                self._decode("stderr", b"", final=True)
                continue
            stdout, stderr = frame
            if stdout:
                self._decode("stdout", stdout)
            if stderr:
                self._decode("stderr", stderr)
        return self._pending.popleft()

    def _decode(
        self, stream: Literal["stdout", "stderr"], data: bytes, final: bool = False
    ) -> None:
        text = self._decoders[stream].decode(data, final)
        if text:
            self._pending.append(ExecChunk(stream, text))

    async def exit_code(self) -> Optional[int]:
        """
        Get the exit code of the finished command.

        Returns:
            Exit code, or None while the command is still running
        """
        info = await self.engine._call(
            "exec_inspect", self.ref, lambda: self.engine.client.api.exec_inspect(self.exec_id)
        )
        return info.get("ExitCode")

    def cancel(self) -> None:
        """Abandon the stream; the engine-side process is left to finish on its own."""
        if self._cancelled:
            return
        self._cancelled = True
        self._pending.clear()
        close = getattr(self._output, "close", None)
        if close is None:
            return
        try:
            close()
        except ValueError:
            # Generator is being advanced by a worker thread right now
            logger.debug("Exec output still being read at cancel", extra={"exec_id": self.exec_id})


class EngineClient:
    """Container-engine client with deadlines and typed errors on every call."""

    def __init__(self, client: DockerClient | None = None, timeout_s: float | None = None) -> None:
        """
        Initialize engine client.

        Args:
            client: Connected Docker client; connect() creates one when omitted
            timeout_s: Per-call deadline overriding the configured one
        """
        self.settings = get_settings()
        self.timeout_s = timeout_s if timeout_s is not None else self.settings.engine_timeout_s
        self.metrics = get_metrics_collector()
        self._client = client
        self._owns_client = False

    @property
    def connected(self) -> bool:
        """Whether a Docker client is available."""
        return self._client is not None

    @property
    def client(self) -> DockerClient:
        """
        Underlying Docker client.

        Raises:
            EngineUnavailableError: If connect() has not succeeded
        """
        if self._client is None:
            raise EngineUnavailableError("Container engine client is not connected")
        return self._client

    async def connect(self) -> None:
        """
        Establish the engine connection.

        Raises:
            EngineUnavailableError: If neither the socket nor the fallback answers
        """
        if self._client is not None:
            return
        self._client = await asyncio.to_thread(get_docker_client)
        self._owns_client = True

    def close(self) -> None:
        """Release the engine connection."""
        if self._owns_client:
            close_docker_client()
        self._client = None
        self._owns_client = False

    def _translate(self, operation: str, ref: str | None, error: Exception) -> EngineError:
        if isinstance(error, NotFound):
            return ObjectNotFoundError(ref or "", error)
        if isinstance(error, APIError):
            if error.status_code == HTTP_NOT_MODIFIED:
                return AlreadyInStateError(ref or "", "in the requested state", error)
            return EngineFaultError(str(error.explanation or error), error)
        if isinstance(error, RequestsConnectionError):
            return EngineUnavailableError(f"Container engine is unavailable: {error}", error)
        if isinstance(error, (asyncio.TimeoutError, RequestsTimeout)):
            return EngineTimeoutError(operation, ref, self.timeout_s, error)
        return EngineFaultError(str(error), error)

    async def _call(
        self,
        operation: str,
        ref: str | None,
        func: Callable[[], T],
        timeout_s: float | None = None,
    ) -> T:
        """
        Run a blocking SDK call in a worker thread under a deadline.

        Args:
            operation: Operation name for errors and metrics
            ref: Engine reference the call targets
            func: Blocking callable
            timeout_s: Deadline overriding the client default

        Returns:
            Whatever func returns

        Raises:
            EngineError: Typed translation of any SDK failure
        """
        deadline = timeout_s if timeout_s is not None else self.timeout_s
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=deadline)
        except EngineError as e:
            self.metrics.record_engine_error(operation, type(e).__name__)
            raise
        except (asyncio.TimeoutError, DockerException, RequestException) as e:
            error = self._translate(operation, ref, e)
            self.metrics.record_engine_error(operation, type(error).__name__)
            logger.debug(
                "Engine call failed",
                extra={"operation": operation, "ref": ref, "error": str(error)},
            )
            raise error from e

    async def ping(self) -> bool:
        """Check that the engine answers."""
        client = self.client
        return bool(await self._call("ping", None, client.ping))

    async def list(self, all: bool = True) -> List[EngineContainer]:
        """
        List engine containers.

        Args:
            all: Include containers that are not running

        Returns:
            Normalized engine containers
        """
        client = self.client

        def _list() -> List[EngineContainer]:
            containers = client.containers.list(all=all, ignore_removed=True)
            return [_to_engine_container(c) for c in containers]

        return await self._call("list", None, _list)

    async def inspect(self, ref: str) -> EngineContainer:
        """
        Inspect one engine container.

        Args:
            ref: Engine reference (id or name)

        Returns:
            Normalized engine container
        """
        client = self.client
        return await self._call(
            "inspect", ref, lambda: _to_engine_container(client.containers.get(ref))
        )

    async def create(self, spec: ContainerSpec) -> EngineContainer:
        """
        Create an engine container without starting it.

        Args:
            spec: Creation parameters

        Returns:
            The created engine container
        """
        client = self.client
        kwargs: Dict[str, Any] = {
            "image": spec.image,
            "name": spec.name,
            "environment": spec.environment,
            "labels": spec.labels,
            "ports": build_port_bindings(spec.ports),
            "volumes": spec.volumes,
            "detach": True,
            "tty": True,
            "stdin_open": True,
            "restart_policy": {"Name": spec.restart_policy},
        }
        if spec.working_dir:
            kwargs["working_dir"] = spec.working_dir
        if spec.command:
            kwargs["command"] = (
                shlex.split(spec.command) if isinstance(spec.command, str) else spec.command
            )
        if spec.memory:
            kwargs["mem_limit"] = parse_memory(spec.memory)
        if spec.cpu:
            kwargs["cpu_shares"] = parse_cpu_shares(spec.cpu)

        container = await self._call(
            "create", spec.name, lambda: _to_engine_container(client.containers.create(**kwargs))
        )
        logger.info(
            "Engine container created",
            extra={
                "engine_ref": container.engine_ref,
                "container_name": spec.name,
                "image": spec.image,
            },
        )
        return container

    async def start(self, ref: str) -> None:
        """
        Start an engine container.

        Raises:
            AlreadyInStateError: If it is already running
        """
        client = self.client

        def _start() -> None:
            container = client.containers.get(ref)
            if container.status == "running":
                raise AlreadyInStateError(ref, "running")
            container.start()

        await self._call("start", ref, _start)

    async def stop(self, ref: str, timeout_s: int | None = None) -> None:
        """
        Stop an engine container.

        Args:
            ref: Engine reference
            timeout_s: Grace period before the engine kills the process

        Raises:
            AlreadyInStateError: If it is not running
        """
        client = self.client
        grace = timeout_s if timeout_s is not None else self.settings.stop_timeout_s

        def _stop() -> None:
            container = client.containers.get(ref)
            if container.status != "running":
                raise AlreadyInStateError(ref, container.status)
            container.stop(timeout=grace)

        await self._call("stop", ref, _stop, timeout_s=self.timeout_s + grace)

    async def restart(self, ref: str, timeout_s: int | None = None) -> None:
        """
        Restart an engine container.

        Args:
            ref: Engine reference
            timeout_s: Grace period for the stop half of the restart
        """
        client = self.client
        grace = timeout_s if timeout_s is not None else self.settings.stop_timeout_s
        await self._call(
            "restart",
            ref,
            lambda: client.api.restart(ref, timeout=grace),
            timeout_s=self.timeout_s + grace,
        )

    async def remove(self, ref: str, force: bool = False) -> None:
        """
        Remove an engine container.

        Args:
            ref: Engine reference
            force: Kill the container first if it is running
        """
        client = self.client
        await self._call("remove", ref, lambda: client.api.remove_container(ref, force=force))

    async def exec_stream(
        self, ref: str, argv: List[str], opts: ExecOptions | None = None
    ) -> ExecStream:
        """
        Start a command in a container and stream its output.

        Args:
            ref: Engine reference
            argv: Command and arguments
            opts: Working directory, environment and user

        Returns:
            ExecStream to drain or cancel
        """
        client = self.client
        opts = opts or ExecOptions()

        def _open() -> tuple[str, Any]:
            created = client.api.exec_create(
                ref,
                cmd=argv,
                stdout=True,
                stderr=True,
                tty=False,
                workdir=opts.working_dir,
                environment=opts.environment or None,
                user=opts.user,
            )
            exec_id = created["Id"]
            output = client.api.exec_start(exec_id, stream=True, demux=True)
            return exec_id, output

        exec_id, output = await self._call("exec", ref, _open)
        return ExecStream(self, ref, exec_id, output)

    async def stats(self, ref: str) -> EngineStats:
        """
        Take one resource usage sample.

        Args:
            ref: Engine reference

        Returns:
            EngineStats snapshot
        """
        client = self.client
        raw = await self._call("stats", ref, lambda: client.api.stats(ref, stream=False))
        return build_engine_stats(raw)

    async def logs(
        self,
        ref: str,
        tail: int | None = None,
        since: int | None = None,
        timestamps: bool = True,
    ) -> str:
        """
        Fetch the engine-side stdout/stderr log of a container.

        Args:
            ref: Engine reference
            tail: Number of trailing lines (all when omitted)
            since: Unix timestamp lower bound
            timestamps: Prefix each line with the engine timestamp

        Returns:
            Decoded log text
        """
        client = self.client
        raw = await self._call(
            "logs",
            ref,
            lambda: client.api.logs(
                ref,
                stdout=True,
                stderr=True,
                tail=tail if tail is not None else "all",
                since=since,
                timestamps=timestamps,
            ),
        )
        return raw.decode("utf-8", "replace") if isinstance(raw, bytes) else str(raw)
