"""Test configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from crateflow.auth import Identity
from crateflow.config import get_settings
from crateflow.managers.channel_service import ChannelService
from crateflow.managers.container_manager import ContainerManager
from crateflow.managers.engine_client import (
    ContainerSpec,
    EngineContainer,
    EngineStats,
    ExecChunk,
)
from crateflow.managers.log_manager import LogManager
from crateflow.managers.reconciliation_manager import ReconciliationManager
from crateflow.models.containers import ContainerRecord, ContainerStatus
from crateflow.models.database import DatabaseManager
from crateflow.repositories.containers import ContainerRepository, ContainerSettingsRepository
from crateflow.runtime import Runtime, set_runtime
from crateflow.utils.exceptions import AlreadyInStateError, AuthFailedError, ObjectNotFoundError


class FakeExecStream:
    """In-memory exec stream yielding preset chunks."""

    def __init__(
        self, chunks: List[ExecChunk], exit_code: int, gate: Optional[asyncio.Event] = None
    ) -> None:
        self._chunks = list(chunks)
        self._exit_code = exit_code
        self._gate = gate
        self.cancelled = False

    def __aiter__(self) -> "FakeExecStream":
        return self

    async def __anext__(self) -> ExecChunk:
        if self._gate is not None:
            await self._gate.wait()
        if self.cancelled or not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def exit_code(self) -> int:
        return self._exit_code

    def cancel(self) -> None:
        self.cancelled = True


class FakeEngine:
    """In-memory container engine with the EngineClient interface."""

    def __init__(self) -> None:
        self.objects: Dict[str, EngineContainer] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.exec_chunks: List[ExecChunk] = []
        self.exec_exit_code = 0
        self.exec_gate: Optional[asyncio.Event] = None
        self.streams: List[FakeExecStream] = []
        self.created_specs: List[ContainerSpec] = []
        self.connected = True
        self.closed = False
        self.stats_sample = EngineStats(12.5, 256, 1024, 25.0, 10, 20)
        self.engine_log = ""

    def add(
        self,
        engine_ref: str,
        name: str,
        status: str = "running",
        labels: Optional[Dict[str, str]] = None,
        image: str = "alpine:3.19",
        created: Optional[str] = None,
    ) -> EngineContainer:
        container = EngineContainer(
            engine_ref, name, image, status, dict(labels or {}), created
        )
        self.objects[engine_ref] = container
        return container

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, *args))
        if operation in self.failures:
            raise self.failures[operation]

    def _get(self, ref: str) -> EngineContainer:
        if ref not in self.objects:
            raise ObjectNotFoundError(ref)
        return self.objects[ref]

    def operations(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    async def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.closed = True
        self.connected = False

    async def ping(self) -> bool:
        self._record("ping")
        return True

    async def list(self, all: bool = True) -> List[EngineContainer]:
        self._record("list")
        return list(self.objects.values())

    async def inspect(self, ref: str) -> EngineContainer:
        self._record("inspect", ref)
        return self._get(ref)

    async def create(self, spec: ContainerSpec) -> EngineContainer:
        self._record("create", spec.name)
        self.created_specs.append(spec)
        return self.add(f"engine-{len(self.objects) + 1:04d}", spec.name, "created", spec.labels)

    async def start(self, ref: str) -> None:
        self._record("start", ref)
        container = self._get(ref)
        if container.running:
            raise AlreadyInStateError(ref, "running")
        container.status = "running"

    async def stop(self, ref: str, timeout_s: Optional[int] = None) -> None:
        self._record("stop", ref)
        container = self._get(ref)
        if not container.running:
            raise AlreadyInStateError(ref, container.status)
        container.status = "exited"

    async def restart(self, ref: str, timeout_s: Optional[int] = None) -> None:
        self._record("restart", ref)
        self._get(ref).status = "running"

    async def remove(self, ref: str, force: bool = False) -> None:
        self._record("remove", ref)
        self._get(ref)
        del self.objects[ref]

    async def stats(self, ref: str) -> EngineStats:
        self._record("stats", ref)
        self._get(ref)
        return self.stats_sample

    async def logs(self, ref: str, tail: Optional[int] = None, **kwargs: Any) -> str:
        self._record("logs", ref, tail)
        self._get(ref)
        return self.engine_log

    async def exec_stream(self, ref: str, argv: List[str], opts: Any = None) -> FakeExecStream:
        self._record("exec", ref, argv, opts)
        self._get(ref)
        stream = FakeExecStream(self.exec_chunks, self.exec_exit_code, self.exec_gate)
        self.streams.append(stream)
        return stream


class FakeTransport:
    """Channel transport recording every event sent to it."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.open = True
        self.fail_sends = False

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, data: Dict[str, Any]) -> None:
        if not self.open or self.fail_sends:
            raise RuntimeError("transport closed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.open = False

    def types(self) -> List[str]:
        return [event["type"] for event in self.sent]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [event for event in self.sent if event["type"] == event_type]


class FakeVerifier:
    """Identity verifier backed by a fixed token table."""

    def __init__(self, identities: Dict[str, Identity]) -> None:
        self.identities = identities

    async def verify(self, token: str) -> Identity:
        if token not in self.identities:
            raise AuthFailedError()
        return self.identities[token]


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch):
    """Point every component at temporary storage."""
    monkeypatch.setenv("CRATEFLOW_STATE_DB", str(tmp_path / "state.db"))
    monkeypatch.setenv("CRATEFLOW_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("CRATEFLOW_STARTUP_SCRIPT_DELAY_S", "0")
    monkeypatch.setenv("CRATEFLOW_LOG_WATCH_INTERVAL_S", "0.05")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def db_manager(settings):
    """Create test database with all tables."""
    manager = DatabaseManager(settings.state_db)
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def fake_engine():
    """Create in-memory engine."""
    return FakeEngine()


@pytest.fixture
def log_manager(tmp_path, db_manager):
    """Create log manager writing under a temporary directory."""
    return LogManager(log_dir=tmp_path / "logs", db_manager=db_manager)


@pytest.fixture
def container_manager(fake_engine, log_manager, db_manager):
    """Create container manager over the fake engine."""
    return ContainerManager(fake_engine, log_manager, db_manager)


@pytest.fixture
def reconciler(fake_engine, container_manager, log_manager):
    """Create reconciliation manager over the fake engine."""
    return ReconciliationManager(fake_engine, container_manager, log_manager)


@pytest.fixture
def identities():
    """Tokens known to the fake verifier."""
    return {
        "alice-token": Identity("alice", "alice", "user"),
        "bob-token": Identity("bob", "bob", "user"),
        "admin-token": Identity("root", "root", "admin"),
    }


@pytest.fixture
async def channel(container_manager, log_manager, fake_engine, identities):
    """Create channel service wired to log and status notifications."""
    service = ChannelService(container_manager, log_manager, fake_engine, FakeVerifier(identities))
    log_manager.add_listener(service.publish_log)
    container_manager.add_status_listener(service.publish_status)
    yield service
    await service.shutdown(grace_s=0)


@pytest.fixture
def make_transport():
    """Factory for fake transports."""
    return FakeTransport


@pytest.fixture
def make_verifier():
    """Factory for fake verifiers."""
    return FakeVerifier


@pytest.fixture
def add_record(db_manager):
    """Factory inserting registry records directly."""

    async def _add(
        container_id: str,
        name: Optional[str] = None,
        engine_ref: Optional[str] = None,
        status: ContainerStatus = ContainerStatus.RUNNING,
        owner_id: str = "alice",
        auto_restart: Optional[bool] = True,
        startup_script: Optional[str] = None,
    ) -> ContainerRecord:
        async with db_manager.get_session() as session:
            record = await ContainerRepository(session).create(
                ContainerRecord(
                    id=container_id,
                    name=name or container_id,
                    engine_ref=engine_ref,
                    image="alpine:3.19",
                    status=status.value,
                    startup_script=startup_script,
                    port_mappings={},
                    environment_vars={},
                    owner_id=owner_id,
                )
            )
            if auto_restart is not None:
                await ContainerSettingsRepository(session).upsert(
                    container_id, auto_restart=auto_restart
                )
        return record

    return _add


@pytest.fixture
async def runtime(fake_engine, identities, db_manager):
    """Runtime over the fake engine, installed as the process runtime."""
    instance = Runtime(engine=fake_engine, verifier=FakeVerifier(identities), db_manager=db_manager)
    set_runtime(instance)
    yield instance
    await instance.channel.shutdown(grace_s=0)
    set_runtime(None)
