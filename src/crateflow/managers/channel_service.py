"""Real-time channel: authenticated log subscriptions and command execution."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set
from uuid import uuid4

from crateflow.auth import Identity, IdentityVerifier
from crateflow.channel_protocol import (
    AuthenticateMessage,
    ClientMessage,
    EventType,
    ExecuteCommandMessage,
    GetContainerStatusMessage,
    PingMessage,
    SubscribeLogsMessage,
    UnsubscribeLogsMessage,
    build_event,
    error_event,
    parse_message,
)
from crateflow.config import get_settings
from crateflow.managers.container_manager import ContainerManager
from crateflow.managers.engine_client import EngineClient, ExecOptions, ExecStream
from crateflow.managers.log_manager import LogCategory, LogEntry, LogManager
from crateflow.models.base import utcnow
from crateflow.models.containers import ContainerRecord
from crateflow.utils import get_logger
from crateflow.utils.audit_logger import AuditEventType, get_audit_logger
from crateflow.utils.exceptions import (
    AuthFailedError,
    AuthRequiredError,
    ChannelError,
    ContainerError,
    ContainerNotFoundError,
    CrateFlowError,
    NoEngineObjectError,
    UnauthorizedError,
)
from crateflow.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

# Upper bound for flushing and closing a transport
CLOSE_TIMEOUT_S = 1.0


class ChannelTransport(Protocol):
    """Bidirectional message transport of one connection."""

    @property
    def is_open(self) -> bool:
        """Whether messages can still be sent."""
        ...

    async def send_json(self, data: Dict[str, Any]) -> None:
        """Send one event."""
        ...

    async def close(self, code: int = 1000) -> None:
        """Close the transport."""
        ...


class ConnectionState(str, Enum):
    """Lifecycle state of a channel connection."""

    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass
class ClientConnection:
    """Server-side state of one channel connection."""

    connection_id: str
    transport: ChannelTransport
    connected_at: datetime = field(default_factory=utcnow)
    state: ConnectionState = ConnectionState.CONNECTED
    client_id: Optional[str] = None
    identity: Optional[Identity] = None
    authenticated_at: Optional[datetime] = None
    subscriptions: Set[str] = field(default_factory=set)
    exec_tasks: Set[asyncio.Task] = field(default_factory=set)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    writer: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        """Whether the connection is live on both ends."""
        return self.state is not ConnectionState.CLOSED and self.transport.is_open

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the admin view of a client."""
        identity = self.identity
        return {
            "client_id": self.client_id,
            "connection_id": self.connection_id,
            "user_id": identity.user_id if identity else None,
            "username": identity.username if identity else None,
            "role": identity.role if identity else None,
            "state": self.state.value,
            "connected_at": self.connected_at.isoformat(),
            "authenticated_at": (
                self.authenticated_at.isoformat() if self.authenticated_at else None
            ),
            "subscriptions": sorted(self.subscriptions),
            "running_commands": len(self.exec_tasks),
        }


class SubscriptionRegistry:
    """Container ID to subscribed connection IDs, owned by one channel service."""

    def __init__(self) -> None:
        """Initialize subscription registry."""
        self._subscribers: Dict[str, Set[str]] = {}

    def add(self, container_id: str, connection_id: str) -> bool:
        """
        Subscribe a connection to a container.

        Returns:
            False if the connection was already subscribed
        """
        subscribers = self._subscribers.setdefault(container_id, set())
        if connection_id in subscribers:
            return False
        subscribers.add(connection_id)
        return True

    def remove(self, container_id: str, connection_id: str) -> bool:
        """
        Unsubscribe a connection from a container.

        Returns:
            False if the connection was not subscribed
        """
        subscribers = self._subscribers.get(container_id)
        if not subscribers or connection_id not in subscribers:
            return False
        subscribers.discard(connection_id)
        if not subscribers:
            del self._subscribers[container_id]
        return True

    def remove_connection(self, connection_id: str) -> List[str]:
        """
        Drop a connection from every subscriber set.

        Returns:
            Container IDs the connection was subscribed to
        """
        removed = [cid for cid, subs in self._subscribers.items() if connection_id in subs]
        for container_id in removed:
            self.remove(container_id, connection_id)
        return removed

    def subscribers(self, container_id: str) -> List[str]:
        """Connection IDs subscribed to a container."""
        return list(self._subscribers.get(container_id, ()))

    def containers(self) -> List[str]:
        """Container IDs with at least one subscriber."""
        return list(self._subscribers)

    def count(self) -> int:
        """Total number of subscriptions."""
        return sum(len(subs) for subs in self._subscribers.values())


def log_entry_event(entry: LogEntry) -> Dict[str, Any]:
    """Build the event carrying one log entry."""
    return build_event(EventType.LOG_ENTRY, entry.container_id, log=entry.to_dict())


class ChannelService:
    """Service multiplexing log subscriptions and commands over client connections."""

    def __init__(
        self,
        containers: ContainerManager,
        log_manager: LogManager,
        engine: EngineClient,
        verifier: IdentityVerifier,
    ) -> None:
        """
        Initialize channel service.

        Args:
            containers: Lifecycle manager, source of registry records and status
            log_manager: Per-container log manager
            engine: Container engine client used for command execution
            verifier: Identity collaborator resolving tokens
        """
        self.settings = get_settings()
        self.containers = containers
        self.log_manager = log_manager
        self.engine = engine
        self.verifier = verifier
        self.audit = get_audit_logger()
        self.metrics = get_metrics_collector()
        self.subscriptions = SubscriptionRegistry()
        self._connections: Dict[str, ClientConnection] = {}
        self._exec_tasks: Set[asyncio.Task] = set()

    # Connections

    async def open_connection(self, transport: ChannelTransport) -> ClientConnection:
        """
        Register a new connection and greet it.

        Args:
            transport: Transport of the connection

        Returns:
            The new connection in the connected state
        """
        conn = ClientConnection(
            connection_id=uuid4().hex,
            transport=transport,
            outbox=asyncio.Queue(maxsize=self.settings.channel_queue_size),
        )
        conn.writer = asyncio.create_task(
            self._write_loop(conn), name=f"channel-writer:{conn.connection_id}"
        )
        self._connections[conn.connection_id] = conn
        self._update_gauges()

        self.audit.log_event(
            AuditEventType.CHANNEL_CONNECT, details={"connection_id": conn.connection_id}
        )
        logger.info("Channel connection opened", extra={"connection_id": conn.connection_id})

        self.enqueue(
            conn,
            build_event(
                EventType.WELCOME,
                connection_id=conn.connection_id,
                message="Connected. Authenticate to continue.",
            ),
        )
        return conn

    async def close_connection(self, conn: ClientConnection, reason: str = "closed") -> None:
        """
        Close a connection, cancelling its commands and dropping its subscriptions.

        Events already queued are flushed first, for at most
        CLOSE_TIMEOUT_S, while the transport is still open. Safe to call
        more than once.

        Args:
            conn: Connection to close
            reason: Why the connection is being closed
        """
        if conn.state is ConnectionState.CLOSED:
            return
        if conn.transport.is_open:
            await self.flush(conn, timeout=CLOSE_TIMEOUT_S)

        writer = self._drop(conn, reason)
        if writer is None:
            return
        if writer is not asyncio.current_task():
            await asyncio.wait({writer}, timeout=CLOSE_TIMEOUT_S)

    def _drop(self, conn: ClientConnection, reason: str) -> asyncio.Task | None:
        """
        Close a connection without waiting on its transport.

        Used from log listeners and the writer itself, where a blocked peer
        must not hold up the caller. The writer task closes the transport
        once it is cancelled.

        Returns:
            The connection's writer task, None if it was already closed
        """
        if conn.state is ConnectionState.CLOSED:
            return None
        conn.state = ConnectionState.CLOSED

        for task in list(conn.exec_tasks):
            task.cancel()
        self.subscriptions.remove_connection(conn.connection_id)
        conn.subscriptions.clear()
        self._connections.pop(conn.connection_id, None)
        self._update_gauges()

        writer = conn.writer
        if writer is None:
            writer = asyncio.create_task(self._close_transport(conn))
        elif writer is not asyncio.current_task():
            writer.cancel()

        self.audit.log_event(
            AuditEventType.CHANNEL_DISCONNECT,
            user_id=conn.identity.user_id if conn.identity else None,
            client_id=conn.client_id,
            details={"reason": reason},
        )
        logger.info(
            "Channel connection closed",
            extra={
                "connection_id": conn.connection_id,
                "client_id": conn.client_id,
                "reason": reason,
            },
        )
        return writer

    def get_connection(self, connection_id: str) -> ClientConnection | None:
        """Look up a live connection."""
        return self._connections.get(connection_id)

    # Messages

    async def handle_message(self, conn: ClientConnection, data: Any) -> None:
        """
        Validate and dispatch one decoded client message.

        Failures are reported to the client as error events; they never
        close the connection.

        Args:
            conn: Connection the message arrived on
            data: Decoded JSON value
        """
        if conn.state is ConnectionState.CLOSED:
            return

        container_id = data.get("container_id") if isinstance(data, dict) else None
        try:
            message = parse_message(data)
            await self._dispatch(conn, message)
        except ChannelError as e:
            self.enqueue(conn, error_event(str(e), e.code, container_id))
        except ContainerNotFoundError as e:
            self.enqueue(conn, error_event(str(e), "not_found", container_id))
        except ContainerError as e:
            self.enqueue(conn, error_event(str(e), "container_error", container_id))
        except CrateFlowError as e:
            logger.error(
                "Channel request failed",
                extra={"connection_id": conn.connection_id, "error": str(e)},
            )
            self.enqueue(conn, error_event(str(e), "server_error", container_id))

    async def _dispatch(self, conn: ClientConnection, message: ClientMessage) -> None:
        if isinstance(message, PingMessage):
            self.enqueue(conn, build_event(EventType.PONG))
        elif isinstance(message, AuthenticateMessage):
            await self.authenticate(conn, message.token)
        elif isinstance(message, SubscribeLogsMessage):
            await self.subscribe(conn, message.container_id)
        elif isinstance(message, UnsubscribeLogsMessage):
            await self.unsubscribe(conn, message.container_id)
        elif isinstance(message, ExecuteCommandMessage):
            await self.execute_command(
                conn, message.container_id, message.command, message.working_dir
            )
        elif isinstance(message, GetContainerStatusMessage):
            await self.query_status(conn, message.container_id)

    # Authentication

    async def authenticate(self, conn: ClientConnection, token: str) -> Identity:
        """
        Verify a token and move the connection to the authenticated state.

        A failed attempt leaves the connection in its previous state. A
        successful re-authentication as a different user drops existing
        subscriptions.

        Args:
            conn: Connection to authenticate
            token: Bearer token

        Returns:
            Identity of the caller

        Raises:
            AuthFailedError: If the token is invalid or expired
        """
        try:
            identity = await self.verifier.verify(token)
        except AuthFailedError as e:
            self.audit.log_event(
                AuditEventType.CHANNEL_AUTH_FAILED,
                details={"connection_id": conn.connection_id, "reason": e.reason},
            )
            logger.warning(
                "Channel authentication failed",
                extra={"connection_id": conn.connection_id, "reason": e.reason},
            )
            raise

        if conn.identity is not None and conn.identity.user_id != identity.user_id:
            self.subscriptions.remove_connection(conn.connection_id)
            conn.subscriptions.clear()
            self._update_gauges()

        conn.identity = identity
        conn.client_id = conn.client_id or f"client_{uuid4().hex[:12]}"
        conn.authenticated_at = utcnow()
        conn.state = ConnectionState.AUTHENTICATED

        self.audit.log_event(
            AuditEventType.CHANNEL_AUTHENTICATE,
            user_id=identity.user_id,
            client_id=conn.client_id,
        )
        logger.info(
            "Channel client authenticated",
            extra={"client_id": conn.client_id, "username": identity.username},
        )

        self.enqueue(
            conn,
            build_event(
                EventType.AUTHENTICATED, client_id=conn.client_id, user=identity.to_dict()
            ),
        )
        return identity

    def _require_identity(self, conn: ClientConnection) -> Identity:
        if conn.state is not ConnectionState.AUTHENTICATED or conn.identity is None:
            raise AuthRequiredError()
        return conn.identity

    async def _authorize(self, conn: ClientConnection, container_id: str) -> ContainerRecord:
        identity = self._require_identity(conn)
        record = await self.containers.get_record(container_id)
        if identity.role != self.settings.admin_role and record.owner_id != identity.user_id:
            self.audit.log_event(
                AuditEventType.CHANNEL_UNAUTHORIZED,
                container_id=container_id,
                user_id=identity.user_id,
                client_id=conn.client_id,
            )
            raise UnauthorizedError(container_id)
        return record

    # Subscriptions

    async def subscribe(self, conn: ClientConnection, container_id: str) -> None:
        """
        Subscribe a connection to a container's log entries.

        Registration, acknowledgement and replay of recent entries happen
        while the container's log is held exclusively, so every later entry
        reaches the subscriber exactly once and after the replay. Subscribing
        twice acknowledges again without a second replay.

        Raises:
            AuthRequiredError: If the connection is not authenticated
            ContainerNotFoundError: If no record has this id
            UnauthorizedError: If the caller may not access the container
        """
        record = await self._authorize(conn, container_id)

        async with self.log_manager.exclusive(container_id):
            added = self.subscriptions.add(container_id, conn.connection_id)
            conn.subscriptions.add(container_id)
            replay = await self.log_manager.recent(container_id) if added else []

            acked = self.enqueue(
                conn,
                build_event(
                    EventType.LOG_SUBSCRIPTION_SUCCESS,
                    container_id,
                    container_name=record.name,
                    replayed=len(replay),
                ),
            )
            for entry in replay:
                if not acked:
                    break
                acked = self.enqueue(conn, log_entry_event(entry))

        self._update_gauges()
        logger.info(
            "Client subscribed to container logs",
            extra={"client_id": conn.client_id, "container_id": container_id},
        )

    async def unsubscribe(self, conn: ClientConnection, container_id: str) -> None:
        """
        Unsubscribe a connection from a container. Unsubscribing twice is harmless.

        Raises:
            AuthRequiredError: If the connection is not authenticated
        """
        self._require_identity(conn)
        self.subscriptions.remove(container_id, conn.connection_id)
        conn.subscriptions.discard(container_id)
        self._update_gauges()
        self.enqueue(conn, build_event(EventType.LOG_UNSUBSCRIPTION_SUCCESS, container_id))

    # Commands

    async def execute_command(
        self,
        conn: ClientConnection,
        container_id: str,
        command: str,
        working_dir: str | None = None,
    ) -> asyncio.Task:
        """
        Start a shell command in a container and stream its output to the caller.

        The command runs in a background task so the connection keeps
        reading messages; closing the connection cancels it.

        Args:
            conn: Requesting connection
            container_id: Container ID
            command: Shell command line
            working_dir: Working directory inside the container

        Returns:
            The task running the command

        Raises:
            AuthRequiredError: If the connection is not authenticated
            ContainerNotFoundError: If no record has this id
            UnauthorizedError: If the caller may not access the container
        """
        record = await self._authorize(conn, container_id)
        command_id = uuid4().hex[:12]

        task = asyncio.create_task(
            self._run_command(
                conn,
                record,
                command_id,
                command,
                working_dir or self.settings.default_working_dir,
            ),
            name=f"command:{command_id}",
        )
        conn.exec_tasks.add(task)
        self._exec_tasks.add(task)
        task.add_done_callback(conn.exec_tasks.discard)
        task.add_done_callback(self._exec_tasks.discard)
        return task

    async def _run_command(
        self,
        conn: ClientConnection,
        record: ContainerRecord,
        command_id: str,
        command: str,
        working_dir: str,
    ) -> None:
        container_id = record.id
        stream: ExecStream | None = None

        self.audit.log_event(
            AuditEventType.CHANNEL_COMMAND,
            container_id=container_id,
            user_id=conn.identity.user_id if conn.identity else None,
            client_id=conn.client_id,
            details={"command": command, "working_dir": working_dir},
        )

        try:
            await self.log_manager.append(
                container_id, f"Command executed: {command}", LogCategory.INFO
            )
            if not record.engine_ref:
                raise NoEngineObjectError(container_id)

            stream = await self.engine.exec_stream(
                record.engine_ref,
                ["sh", "-c", command],
                ExecOptions(working_dir=working_dir),
            )
            self.enqueue(
                conn,
                build_event(
                    EventType.COMMAND_STARTED,
                    container_id,
                    command_id=command_id,
                    command=command,
                ),
            )

            async for chunk in stream:
                sent = await self._send(
                    conn,
                    build_event(
                        EventType.COMMAND_OUTPUT,
                        container_id,
                        command_id=command_id,
                        stream=chunk.stream,
                        output=chunk.data,
                    ),
                )
                if not sent:
                    stream.cancel()
                    self.metrics.record_channel_command("abandoned")
                    return

            exit_code = await stream.exit_code()
        except asyncio.CancelledError:
            if stream is not None:
                stream.cancel()
            self.metrics.record_channel_command("cancelled")
            raise
        except (CrateFlowError, OSError) as e:
            self.metrics.record_channel_command("failure")
            logger.error(
                "Channel command failed",
                extra={"container_id": container_id, "command_id": command_id, "error": str(e)},
            )
            try:
                await self.log_manager.append(
                    container_id, f"Command failed: {command}: {e}", LogCategory.ERROR
                )
            except OSError as log_error:
                logger.error(
                    "Failed to log command failure",
                    extra={"container_id": container_id, "error": str(log_error)},
                )
            self.enqueue(
                conn,
                build_event(
                    EventType.COMMAND_ERROR,
                    container_id,
                    command_id=command_id,
                    command=command,
                    error=str(e),
                ),
            )
            return

        self.metrics.record_channel_command("success")
        self.enqueue(
            conn,
            build_event(
                EventType.COMMAND_COMPLETED,
                container_id,
                command_id=command_id,
                command=command,
                exit_code=exit_code,
            ),
        )

    # Status

    async def query_status(self, conn: ClientConnection, container_id: str) -> Dict[str, Any]:
        """
        Send registry status next to a live engine lookup.

        Raises:
            AuthRequiredError: If the connection is not authenticated
            ContainerNotFoundError: If no record has this id
            UnauthorizedError: If the caller may not access the container
        """
        await self._authorize(conn, container_id)
        status = await self.containers.get_status(container_id)
        self.enqueue(
            conn,
            build_event(
                EventType.CONTAINER_STATUS,
                container_id,
                container_name=status["name"],
                database_status=status["database_status"],
                engine_status=status["engine_status"],
            ),
        )
        return status

    # Broadcast

    async def publish_log(self, entry: LogEntry) -> None:
        """
        Deliver a log entry to the container's subscribers.

        Registered as a log manager listener, so it runs while the
        container's log is held. It only queues events and must not append.
        """
        connection_ids = self.subscriptions.subscribers(entry.container_id)
        if not connection_ids:
            return

        event = log_entry_event(entry)
        for connection_id in connection_ids:
            conn = self._connections.get(connection_id)
            if conn is None:
                self.subscriptions.remove(entry.container_id, connection_id)
                continue
            self.enqueue(conn, event)

    async def publish_status(self, container_id: str, old_status: str, new_status: str) -> None:
        """Deliver a status change to the container's subscribers."""
        event = build_event(
            EventType.CONTAINER_STATUS_CHANGE,
            container_id,
            status=new_status,
            old_status=old_status,
        )
        for connection_id in self.subscriptions.subscribers(container_id):
            conn = self._connections.get(connection_id)
            if conn is not None:
                self.enqueue(conn, event)

    # Delivery

    def enqueue(self, conn: ClientConnection, event: Dict[str, Any]) -> bool:
        """
        Queue an event for a connection without waiting on its transport.

        A connection whose transport is gone, or whose queue is full because
        the peer stopped reading, is dropped.

        Args:
            conn: Target connection
            event: Event to deliver

        Returns:
            False if the connection was dropped instead
        """
        if not conn.is_open:
            self._drop(conn, "transport closed")
            return False
        try:
            conn.outbox.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Channel send queue full, dropping connection",
                extra={"connection_id": conn.connection_id, "queued": conn.outbox.qsize()},
            )
            self._drop(conn, "send queue full")
            return False
        return True

    async def _send(self, conn: ClientConnection, event: Dict[str, Any]) -> bool:
        # Command output is paced by the peer and leaves half the queue to broadcasts
        outbox = conn.outbox
        if outbox.maxsize and outbox.qsize() >= outbox.maxsize // 2:
            await self.flush(conn)
        return self.enqueue(conn, event)

    async def _write_loop(self, conn: ClientConnection) -> None:
        try:
            while True:
                event = await conn.outbox.get()
                try:
                    await conn.transport.send_json(event)
                except Exception as e:
                    logger.warning(
                        "Failed to send channel event, dropping connection",
                        extra={"connection_id": conn.connection_id, "error": str(e)},
                    )
                    self._drop(conn, "send failed")
                    return
                finally:
                    conn.outbox.task_done()
        finally:
            await self._close_transport(conn)

    async def _close_transport(self, conn: ClientConnection) -> None:
        if not conn.transport.is_open:
            return
        try:
            await asyncio.wait_for(conn.transport.close(), CLOSE_TIMEOUT_S)
        except Exception as e:
            logger.debug(
                "Transport close failed",
                extra={"connection_id": conn.connection_id, "error": str(e)},
            )

    async def flush(self, conn: ClientConnection, timeout: float | None = None) -> bool:
        """
        Wait until every event queued for a connection has been sent.

        Args:
            conn: Connection to flush
            timeout: Seconds to wait, unbounded when None

        Returns:
            True if the queue drained, False on timeout or if the connection closed
        """
        writer = conn.writer
        if writer is None or writer.done():
            return conn.outbox.empty()

        drained = asyncio.ensure_future(conn.outbox.join())
        try:
            await asyncio.wait(
                {drained, writer}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not drained.done():
                drained.cancel()
        return drained.done() and not drained.cancelled()

    # Maintenance

    async def cleanup(self) -> Dict[str, int]:
        """
        Remove closed connections from the client table and all subscriber sets.

        Returns:
            Dictionary with cleanup statistics
        """
        stats = {"checked": len(self._connections), "removed": 0, "subscriptions_removed": 0}

        for conn in list(self._connections.values()):
            if not conn.is_open:
                stats["subscriptions_removed"] += len(conn.subscriptions)
                await self.close_connection(conn, "stale")
                stats["removed"] += 1

        for container_id in self.subscriptions.containers():
            for connection_id in self.subscriptions.subscribers(container_id):
                if connection_id not in self._connections:
                    self.subscriptions.remove(container_id, connection_id)
                    stats["subscriptions_removed"] += 1

        self._update_gauges()
        logger.info("Channel cleanup completed", extra=stats)
        return stats

    def connected_clients(self) -> List[Dict[str, Any]]:
        """Admin view of authenticated clients and their subscriptions."""
        return [
            conn.to_dict()
            for conn in self._connections.values()
            if conn.state is ConnectionState.AUTHENTICATED
        ]

    @property
    def connection_count(self) -> int:
        """Number of open connections, authenticated or not."""
        return len(self._connections)

    async def shutdown(self, grace_s: float = 5.0) -> None:
        """
        Close every connection and wait for cancelled commands to unwind.

        Args:
            grace_s: Seconds to wait for command tasks after cancelling them
        """
        await asyncio.gather(
            *(
                self.close_connection(conn, "server shutdown")
                for conn in list(self._connections.values())
            )
        )

        tasks = list(self._exec_tasks)
        if tasks:
            await asyncio.wait(tasks, timeout=grace_s)
        logger.info("Channel service shut down", extra={"cancelled_commands": len(tasks)})

    def _update_gauges(self) -> None:
        self.metrics.set_channel_connections(len(self._connections))
        self.metrics.set_channel_subscriptions(self.subscriptions.count())
