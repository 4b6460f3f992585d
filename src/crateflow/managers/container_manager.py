"""Container lifecycle manager: the single writer of registry status."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Set
from uuid import uuid4

from crateflow.config import get_settings
from crateflow.managers.engine_client import (
    ContainerSpec,
    EngineClient,
    ExecOptions,
    parse_engine_time,
)
from crateflow.managers.log_manager import LogCategory, LogManager
from crateflow.models.base import utcnow
from crateflow.models.containers import ContainerRecord, ContainerSettings, ContainerStatus
from crateflow.models.database import DatabaseManager, get_db_manager
from crateflow.repositories.containers import ContainerRepository, ContainerSettingsRepository
from crateflow.repositories.logs import ContainerLogRepository
from crateflow.utils import get_logger
from crateflow.utils.audit_logger import AuditEventType, get_audit_logger
from crateflow.utils.exceptions import (
    AlreadyInStateError,
    ContainerAlreadyExistsError,
    ContainerNotFoundError,
    EngineError,
    NoEngineObjectError,
    ObjectNotFoundError,
)
from crateflow.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

# Keeps a container alive until a startup script or exec gives it work
IDLE_COMMAND = ["sh", "-c", "tail -f /dev/null"]

StatusListener = Callable[[str, str, str], Awaitable[None]]


def ownership_labels(label: str, container_id: str, owner_id: str) -> Dict[str, str]:
    """
    Labels marking an engine object as managed by this node.

    Args:
        label: Ownership label key
        container_id: Registry container ID
        owner_id: Owner identity

    Returns:
        Label mapping for the engine object
    """
    return {
        label: "true",
        f"{label}.container-id": container_id,
        f"{label}.created-by": owner_id,
    }


class ContainerManager:
    """Manager for explicit container lifecycle operations."""

    def __init__(
        self,
        engine: EngineClient,
        log_manager: LogManager,
        db_manager: DatabaseManager | None = None,
    ) -> None:
        """
        Initialize container manager.

        Args:
            engine: Container engine client
            log_manager: Per-container log manager
            db_manager: Database manager (global one when omitted)
        """
        self.settings = get_settings()
        self.engine = engine
        self.log_manager = log_manager
        self.db_manager = db_manager or get_db_manager()
        self.audit = get_audit_logger()
        self.metrics = get_metrics_collector()
        self._status_listeners: List[StatusListener] = []
        self._tasks: Set[asyncio.Task] = set()

    # Registry access

    def add_status_listener(self, listener: StatusListener) -> None:
        """Register an async callable invoked as listener(container_id, old, new)."""
        self._status_listeners.append(listener)

    async def get_record(self, container_id: str) -> ContainerRecord:
        """
        Load a registry record.

        Raises:
            ContainerNotFoundError: If no record has this id
        """
        async with self.db_manager.get_session() as session:
            record = await ContainerRepository(session).get(container_id)
        if record is None:
            raise ContainerNotFoundError(container_id)
        return record

    async def get_settings(self, container_id: str) -> ContainerSettings | None:
        """Load the settings row of a container."""
        async with self.db_manager.get_session() as session:
            return await ContainerSettingsRepository(session).get_for_container(container_id)

    async def list_records(self) -> List[ContainerRecord]:
        """List every registry record."""
        async with self.db_manager.get_session() as session:
            return await ContainerRepository(session).list_all()

    async def list_by_status(self, status: ContainerStatus) -> List[ContainerRecord]:
        """List registry records with the given status."""
        async with self.db_manager.get_session() as session:
            return await ContainerRepository(session).list_by_status(status)

    async def list_for_owner(self, owner_id: str) -> List[ContainerRecord]:
        """List registry records owned by a user."""
        async with self.db_manager.get_session() as session:
            return await ContainerRepository(session).list_by_owner(owner_id)

    async def register_existing(
        self,
        name: str,
        image: str,
        engine_ref: str,
        status: ContainerStatus,
        owner_id: str,
        folder_path: str | None = None,
        container_id: str | None = None,
    ) -> ContainerRecord:
        """
        Create a registry record for an engine object that already exists.

        Args:
            name: Engine object name
            image: Engine image reference
            engine_ref: Engine object id
            status: Initial registry status
            owner_id: Owner identity
            folder_path: Folder recorded for the container
            container_id: Preferred registry ID, used when free

        Returns:
            The created record

        Raises:
            ContainerAlreadyExistsError: If the name is taken
        """
        async with self.db_manager.get_session() as session:
            repo = ContainerRepository(session)
            if await repo.get_by_name(name):
                raise ContainerAlreadyExistsError(name)
            if not container_id or await repo.get(container_id):
                container_id = uuid4().hex[:12]
            record = await repo.create(
                ContainerRecord(
                    id=container_id,
                    name=name,
                    engine_ref=engine_ref,
                    image=image,
                    status=status.value,
                    folder_path=folder_path,
                    port_mappings={},
                    environment_vars={},
                    owner_id=owner_id,
                )
            )
            await ContainerSettingsRepository(session).upsert(container_id)

        self.metrics.record_status_update(status.value)
        return record

    async def _require_engine_ref(self, container_id: str) -> ContainerRecord:
        record = await self.get_record(container_id)
        if not record.engine_ref:
            raise NoEngineObjectError(container_id)
        return record

    async def set_status(
        self, container_id: str, status: ContainerStatus, reason: str | None = None
    ) -> ContainerRecord:
        """
        Change the registry status of a container.

        Every status change in the process goes through here. Listeners are
        notified only when the value actually changes.

        Args:
            container_id: Container ID
            status: New status
            reason: Short description of what caused the change

        Returns:
            The updated record

        Raises:
            ContainerNotFoundError: If no record has this id
        """
        async with self.db_manager.get_session() as session:
            repo = ContainerRepository(session)
            record = await repo.get(container_id)
            if record is None:
                raise ContainerNotFoundError(container_id)
            old_status = record.status
            if old_status == status.value:
                return record
            record = await repo.update_status(container_id, status)

        self.metrics.record_status_update(status.value)
        self.audit.log_event(
            AuditEventType.CONTAINER_STATE_CHANGE,
            container_id=container_id,
            details={"old_status": old_status, "new_status": status.value, "reason": reason},
        )
        logger.info(
            "Container status changed",
            extra={
                "container_id": container_id,
                "old_status": old_status,
                "new_status": status.value,
                "reason": reason,
            },
        )

        for listener in list(self._status_listeners):
            try:
                await listener(container_id, old_status, status.value)
            except Exception as e:
                logger.error(
                    "Status listener failed",
                    extra={"container_id": container_id, "error": str(e)},
                )
        return record

    async def set_engine_ref(self, container_id: str, engine_ref: str) -> ContainerRecord:
        """
        Bind a record to its engine object.

        Raises:
            ContainerNotFoundError: If no record has this id
        """
        async with self.db_manager.get_session() as session:
            record = await ContainerRepository(session).set_engine_ref(container_id, engine_ref)
        if record is None:
            raise ContainerNotFoundError(container_id)
        return record

    # Lifecycle

    async def create_container(
        self,
        name: str,
        image: str,
        owner_id: str,
        folder_path: str | None = None,
        startup_script: str | None = None,
        port_mappings: Dict[str, Any] | None = None,
        environment_vars: Dict[str, str] | None = None,
        command: str | None = None,
        max_memory: str | None = None,
        max_cpu: str | None = None,
        auto_restart: bool = True,
        auto_start: bool = False,
    ) -> ContainerRecord:
        """
        Provision a container record and its engine object.

        Args:
            name: Unique container name
            image: Engine image reference
            owner_id: Identity that owns the container
            folder_path: Host folder bound to the working directory
            startup_script: Shell script run after start and restart
            port_mappings: Container port to host port
            environment_vars: Environment of the container
            command: Main command; the container idles when omitted
            max_memory: Memory cap such as "512m"
            max_cpu: CPU count such as "1.5"
            auto_restart: Let the health monitor restart the container
            auto_start: Start the container right after creation

        Returns:
            The created record

        Raises:
            ContainerAlreadyExistsError: If the name is taken
            EngineError: If the engine refuses to create the object
        """
        container_id = uuid4().hex[:12]

        async with self.db_manager.get_session() as session:
            repo = ContainerRepository(session)
            if await repo.get_by_name(name):
                raise ContainerAlreadyExistsError(name)
            await repo.create(
                ContainerRecord(
                    id=container_id,
                    name=name,
                    image=image,
                    status=ContainerStatus.CREATED.value,
                    folder_path=folder_path,
                    startup_script=startup_script,
                    port_mappings=port_mappings or {},
                    environment_vars=environment_vars or {},
                    owner_id=owner_id,
                )
            )
            await ContainerSettingsRepository(session).upsert(
                container_id,
                auto_restart=auto_restart,
                max_memory=max_memory,
                max_cpu=max_cpu,
            )

        working_dir = self.settings.default_working_dir
        spec = ContainerSpec(
            name=name,
            image=image,
            environment=environment_vars or {},
            working_dir=working_dir,
            command=command or IDLE_COMMAND,
            ports=port_mappings or {},
            volumes=[f"{folder_path}:{working_dir}"] if folder_path else [],
            memory=max_memory,
            cpu=max_cpu,
            labels=ownership_labels(self.settings.ownership_label, container_id, owner_id),
        )

        try:
            engine_container = await self.engine.create(spec)
        except (EngineError, ValueError) as e:
            logger.error(
                "Failed to create engine container",
                extra={"container_id": container_id, "image": image, "error": str(e)},
            )
            await self._delete_record(container_id)
            raise

        record = await self.set_engine_ref(container_id, engine_container.engine_ref)
        await self.log_manager.append(
            container_id, f"Container created with image {image}", LogCategory.INFO
        )
        self.audit.log_event(
            AuditEventType.CONTAINER_CREATE,
            container_id=container_id,
            user_id=owner_id,
            details={"name": name, "image": image, "engine_ref": engine_container.engine_ref},
        )

        if auto_start:
            record = await self.start_container(container_id)
        return record

    async def start_container(self, container_id: str) -> ContainerRecord:
        """
        Start a container.

        A container the engine already reports as running is not an error;
        the registry is brought in line and an info line is logged.

        Raises:
            ContainerNotFoundError: If no record has this id
            NoEngineObjectError: If the record has no engine object
            EngineError: If the engine fails
        """
        record = await self._require_engine_ref(container_id)
        try:
            await self.engine.start(record.engine_ref)
        except AlreadyInStateError:
            await self.log_manager.append(
                container_id, "Container already running", LogCategory.INFO
            )
        except EngineError as e:
            await self.log_manager.append(
                container_id, f"Container start failed: {e}", LogCategory.ERROR
            )
            raise
        else:
            await self.log_manager.append(container_id, "Container started", LogCategory.INFO)

        record = await self.set_status(container_id, ContainerStatus.RUNNING, "start")
        self.audit.log_event(AuditEventType.CONTAINER_START, container_id=container_id)

        if record.startup_script:
            self._schedule_script(
                container_id, record.startup_script, delay_s=self.settings.startup_script_delay_s
            )
        return record

    async def stop_container(
        self, container_id: str, timeout_s: int | None = None
    ) -> ContainerRecord:
        """
        Stop a container.

        Args:
            container_id: Container ID
            timeout_s: Grace period before the engine kills the process

        Raises:
            ContainerNotFoundError: If no record has this id
            NoEngineObjectError: If the record has no engine object
            EngineError: If the engine fails
        """
        record = await self._require_engine_ref(container_id)
        try:
            await self.engine.stop(record.engine_ref, timeout_s)
        except AlreadyInStateError:
            await self.log_manager.append(
                container_id, "Container already stopped", LogCategory.INFO
            )
        except EngineError as e:
            await self.log_manager.append(
                container_id, f"Container stop failed: {e}", LogCategory.ERROR
            )
            raise
        else:
            await self.log_manager.append(container_id, "Container stopped", LogCategory.INFO)

        record = await self.set_status(container_id, ContainerStatus.STOPPED, "stop")
        self.audit.log_event(AuditEventType.CONTAINER_STOP, container_id=container_id)
        return record

    async def restart_container(
        self, container_id: str, timeout_s: int | None = None
    ) -> ContainerRecord:
        """
        Restart a container and schedule its startup script.

        On success the status becomes running and "Container restarted" is
        logged; the startup script runs after a short delay without blocking
        the caller. On failure an error line is logged, the status is left
        alone and the error is re-raised.

        Args:
            container_id: Container ID
            timeout_s: Grace period for the stop half of the restart

        Raises:
            ContainerNotFoundError: If no record has this id
            NoEngineObjectError: If the record has no engine object
            EngineError: If the engine fails
        """
        record = await self.get_record(container_id)
        try:
            if not record.engine_ref:
                raise NoEngineObjectError(container_id)
            await self.engine.restart(record.engine_ref, timeout_s)
        except (EngineError, NoEngineObjectError) as e:
            await self.log_manager.append(
                container_id, f"Container restart failed: {e}", LogCategory.ERROR
            )
            logger.error(
                "Container restart failed",
                extra={"container_id": container_id, "error": str(e)},
            )
            raise

        record = await self.set_status(container_id, ContainerStatus.RUNNING, "restart")
        await self.log_manager.append(container_id, "Container restarted", LogCategory.INFO)
        self.audit.log_event(AuditEventType.CONTAINER_RESTART, container_id=container_id)

        if record.startup_script:
            self._schedule_script(
                container_id, record.startup_script, delay_s=self.settings.startup_script_delay_s
            )
        return record

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        """
        Delete a container: engine object first, then logs, settings and record.

        An engine object that is already gone does not block the deletion.

        Raises:
            ContainerNotFoundError: If no record has this id
            EngineError: If the engine fails to remove an existing object
        """
        record = await self.get_record(container_id)
        await self.set_status(container_id, ContainerStatus.REMOVING, "remove")

        if record.engine_ref:
            try:
                await self.engine.remove(record.engine_ref, force=force)
            except ObjectNotFoundError:
                logger.info(
                    "Engine object already gone",
                    extra={"container_id": container_id, "engine_ref": record.engine_ref},
                )
            except EngineError as e:
                await self.log_manager.append(
                    container_id, f"Container removal failed: {e}", LogCategory.ERROR
                )
                await self.set_status(
                    container_id, ContainerStatus(record.status), "remove failed"
                )
                raise

        await self.log_manager.purge(container_id)
        await self._delete_record(container_id)
        self.audit.log_event(
            AuditEventType.CONTAINER_REMOVE,
            container_id=container_id,
            details={"name": record.name, "engine_ref": record.engine_ref},
        )
        logger.info("Container removed", extra={"container_id": container_id})

    async def _delete_record(self, container_id: str) -> None:
        async with self.db_manager.get_session() as session:
            await ContainerSettingsRepository(session).delete_for_container(container_id)
            await ContainerLogRepository(session).delete_for_container(container_id)
            repo = ContainerRepository(session)
            record = await repo.get(container_id)
            if record is not None:
                await repo.delete(record)

    async def get_status(self, container_id: str) -> Dict[str, Any]:
        """
        Report registry status next to a live engine lookup.

        A lookup that fails for any reason is reported as not_found.

        Raises:
            ContainerNotFoundError: If no record has this id
        """
        record = await self.get_record(container_id)
        engine_status: Dict[str, Any] = {"status": "not_found", "running": False}
        if record.engine_ref:
            try:
                engine_container = await self.engine.inspect(record.engine_ref)
                engine_status = {
                    "status": engine_container.status,
                    "running": engine_container.running,
                }
            except EngineError as e:
                logger.debug(
                    "Engine lookup failed",
                    extra={"container_id": container_id, "error": str(e)},
                )

        return {
            "container_id": container_id,
            "name": record.name,
            "database_status": record.status,
            "engine_status": engine_status,
        }

    async def get_metrics(self, container_id: str) -> Dict[str, Any]:
        """
        Sample resource usage of a container.

        Uptime counts from the engine creation time and is 0 unless the
        engine reports the container running.

        Returns:
            Identity, engine state, usage sample and uptime in seconds

        Raises:
            ContainerNotFoundError: If no record has this id
            NoEngineObjectError: If the record has no engine object
            EngineError: If the engine fails
        """
        record = await self._require_engine_ref(container_id)
        engine_container = await self.engine.inspect(record.engine_ref)
        stats = await self.engine.stats(record.engine_ref)

        uptime_s = 0.0
        created = parse_engine_time(engine_container.created)
        if engine_container.running and created is not None:
            uptime_s = max(0.0, (utcnow() - created).total_seconds())

        return {
            "container_id": container_id,
            "name": record.name,
            "engine_ref": record.engine_ref,
            "status": engine_container.status,
            "running": engine_container.running,
            "stats": stats.to_dict(),
            "uptime_s": uptime_s,
            "timestamp": utcnow().isoformat(),
        }

    async def engine_logs(self, container_id: str, tail: int | None = 100) -> str:
        """
        Fetch the engine-side stdout/stderr of a container.

        Raises:
            ContainerNotFoundError: If no record has this id
            NoEngineObjectError: If the record has no engine object
            EngineError: If the engine fails
        """
        record = await self._require_engine_ref(container_id)
        return await self.engine.logs(record.engine_ref, tail=tail)

    # Scripts

    async def run_script(self, container_id: str, script: str) -> int | None:
        """
        Run a shell script inside a container and log its output.

        stdout goes to the startup log, stderr to the error log.

        Returns:
            Exit code of the script

        Raises:
            ContainerNotFoundError: If no record has this id
            NoEngineObjectError: If the record has no engine object
            EngineError: If the engine fails
        """
        record = await self._require_engine_ref(container_id)
        await self.log_manager.append(container_id, f"Executing script: {script}", LogCategory.INFO)

        stream = await self.engine.exec_stream(
            record.engine_ref,
            ["sh", "-c", script],
            ExecOptions(working_dir=self.settings.default_working_dir),
        )
        async for chunk in stream:
            text = chunk.data.rstrip("\n")
            if not text:
                continue
            category = LogCategory.STARTUP if chunk.stream == "stdout" else LogCategory.ERROR
            await self.log_manager.append(container_id, text, category)

        exit_code = await stream.exit_code()
        await self.log_manager.append(
            container_id,
            f"Script completed with exit code {exit_code}",
            LogCategory.INFO if exit_code == 0 else LogCategory.ERROR,
        )
        return exit_code

    def _schedule_script(self, container_id: str, script: str, delay_s: float) -> None:
        task = asyncio.create_task(self._run_script_later(container_id, script, delay_s))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_script_later(self, container_id: str, script: str, delay_s: float) -> None:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        try:
            await self.run_script(container_id, script)
        except Exception as e:
            logger.error(
                "Startup script failed",
                extra={"container_id": container_id, "error": str(e)},
            )
            try:
                await self.log_manager.append(
                    container_id, f"Startup script failed: {e}", LogCategory.ERROR
                )
            except Exception as log_error:
                logger.error(
                    "Failed to record startup script failure",
                    extra={"container_id": container_id, "error": str(log_error)},
                )

    @property
    def pending_tasks(self) -> int:
        """Number of scheduled startup scripts not finished yet."""
        return len(self._tasks)

    async def drain(self, grace_s: float) -> int:
        """
        Wait for scheduled startup scripts, cancelling what is left after the grace period.

        Args:
            grace_s: Seconds to wait before cancelling

        Returns:
            Number of tasks cancelled
        """
        if not self._tasks:
            return 0
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=grace_s)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Cancelled startup scripts after drain timeout",
                extra={"count": len(pending), "grace_period_s": grace_s},
            )
        return len(pending)
