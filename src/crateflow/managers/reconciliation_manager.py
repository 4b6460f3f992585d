"""Reconciliation of the container registry against the engine."""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from crateflow.config import get_settings
from crateflow.managers.container_manager import ContainerManager
from crateflow.managers.engine_client import EngineClient, EngineContainer
from crateflow.managers.log_manager import LogCategory, LogManager
from crateflow.models.containers import ContainerRecord, ContainerStatus
from crateflow.utils import get_logger
from crateflow.utils.audit_logger import AuditEventType, get_audit_logger
from crateflow.utils.exceptions import (
    ContainerAlreadyExistsError,
    ContainerError,
    EngineError,
    ObjectNotFoundError,
)
from crateflow.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

ENGINE_STATUS_MAP = {
    "running": ContainerStatus.RUNNING,
    "created": ContainerStatus.CREATED,
    "restarting": ContainerStatus.RESTARTING,
    "removing": ContainerStatus.REMOVING,
    "exited": ContainerStatus.EXITED,
    "dead": ContainerStatus.EXITED,
    "paused": ContainerStatus.UNKNOWN,
}


def map_engine_status(engine_status: str) -> ContainerStatus:
    """
    Map an engine-reported state onto a registry status.

    Args:
        engine_status: State string reported by the engine

    Returns:
        Matching registry status, unknown for anything unrecognized
    """
    return ENGINE_STATUS_MAP.get(engine_status, ContainerStatus.UNKNOWN)


@dataclass
class HealthCheckResult:
    """Outcome of checking one running container during a health tick."""

    container_id: str
    name: str
    expected_status: str
    actual_status: str
    healthy: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary."""
        return asdict(self)


class ReconciliationManager:
    """Manager for registry sync, health monitoring and orphan detection."""

    def __init__(
        self,
        engine: EngineClient,
        containers: ContainerManager,
        log_manager: LogManager,
    ) -> None:
        """
        Initialize reconciliation manager.

        Args:
            engine: Container engine client
            containers: Lifecycle manager, the only writer of registry status
            log_manager: Per-container log manager
        """
        self.settings = get_settings()
        self.engine = engine
        self.containers = containers
        self.log_manager = log_manager
        self.audit = get_audit_logger()
        self.metrics = get_metrics_collector()
        # One lock per task so a tick never overlaps the next tick of the same task
        self._sync_lock = asyncio.Lock()
        self._health_lock = asyncio.Lock()
        self._orphan_lock = asyncio.Lock()

    # Sync

    async def sync(self) -> Dict[str, int]:
        """
        Reconcile registry records with the objects the engine reports.

        Records are matched by engine_ref first, then by name when the ref is
        missing or stale. A name match never takes an engine object already
        claimed by ref. Matched records take the engine status and the
        matched engine_ref. Unmatched records are marked stopped, never deleted.
        Engine objects carrying the ownership label and unknown to the
        registry are imported.

        Returns:
            Dictionary with sync statistics

        Raises:
            EngineError: If the engine cannot be listed
        """
        async with self._sync_lock:
            return await self._sync()

    async def _sync(self) -> Dict[str, int]:
        logger.info("Starting registry sync")

        engine_containers = await self.engine.list(all=True)
        records = await self.containers.list_records()

        stats = {
            "synced": 0,
            "updated": 0,
            "created": 0,
            "errors": 0,
            "total_engine": len(engine_containers),
            "total_registry": len(records),
        }

        matches = self._match(records, engine_containers)
        claimed = {match.engine_ref for match in matches.values()}

        for record in records:
            match = matches.get(record.id)
            try:
                if match is not None:
                    stats["synced"] += 1
                    if await self._apply_match(record, match):
                        stats["updated"] += 1
                elif await self._mark_missing(record):
                    stats["updated"] += 1
            except (ContainerError, EngineError, OSError) as e:
                logger.error(
                    "Failed to sync container",
                    extra={"container_id": record.id, "error": str(e)},
                )
                stats["errors"] += 1

        known_names = {record.name for record in records}
        for engine_container in engine_containers:
            if engine_container.engine_ref in claimed:
                continue
            if engine_container.labels.get(self.settings.ownership_label) != "true":
                continue
            if engine_container.name in known_names:
                logger.warning(
                    "Labelled engine object shares a name with an existing record, skipping import",
                    extra={
                        "engine_ref": engine_container.engine_ref,
                        "container_name": engine_container.name,
                    },
                )
                continue
            try:
                await self._import(engine_container)
                known_names.add(engine_container.name)
                stats["created"] += 1
            except (ContainerError, OSError) as e:
                logger.error(
                    "Failed to auto-import container",
                    extra={"engine_ref": engine_container.engine_ref, "error": str(e)},
                )
                stats["errors"] += 1

        logger.info("Registry sync completed", extra={"stats": stats})
        return stats

    @staticmethod
    def _match(
        records: List[ContainerRecord], engine_containers: List[EngineContainer]
    ) -> Dict[str, EngineContainer]:
        by_ref = {c.engine_ref: c for c in engine_containers}
        by_name = {c.name: c for c in engine_containers}
        matches: Dict[str, EngineContainer] = {}

        for record in records:
            if record.engine_ref and record.engine_ref in by_ref:
                matches[record.id] = by_ref[record.engine_ref]

        claimed = {match.engine_ref for match in matches.values()}
        for record in records:
            if record.id in matches:
                continue
            candidate = by_name.get(record.name)
            if candidate is not None and candidate.engine_ref not in claimed:
                matches[record.id] = candidate
                claimed.add(candidate.engine_ref)

        return matches

    async def _apply_match(self, record: ContainerRecord, match: EngineContainer) -> bool:
        changed = False
        if record.engine_ref != match.engine_ref:
            if record.engine_ref:
                logger.info(
                    "Engine object recreated, refreshing engine_ref",
                    extra={
                        "container_id": record.id,
                        "old_ref": record.engine_ref,
                        "engine_ref": match.engine_ref,
                    },
                )
            await self.containers.set_engine_ref(record.id, match.engine_ref)
            changed = True

        engine_status = map_engine_status(match.status)
        if record.status != engine_status.value:
            await self.containers.set_status(record.id, engine_status, "sync")
            changed = True
        return changed

    async def _mark_missing(self, record: ContainerRecord) -> bool:
        if record.status in (ContainerStatus.STOPPED.value, ContainerStatus.REMOVED.value):
            return False

        await self.containers.set_status(record.id, ContainerStatus.STOPPED, "missing from engine")
        await self.log_manager.append(
            record.id, "Container not found in engine, marked as stopped", LogCategory.ERROR
        )
        logger.warning(
            "Container not found in engine, marked as stopped",
            extra={"container_id": record.id, "engine_ref": record.engine_ref},
        )
        return True

    async def _import(self, engine_container: EngineContainer) -> ContainerRecord:
        label = self.settings.ownership_label
        labels = engine_container.labels
        record = await self.containers.register_existing(
            name=engine_container.name,
            image=engine_container.image,
            engine_ref=engine_container.engine_ref,
            status=map_engine_status(engine_container.status),
            owner_id=labels.get(f"{label}.created-by") or self.settings.default_owner_id,
            folder_path=f"{self.settings.containers_root}/{engine_container.name}",
            container_id=labels.get(f"{label}.container-id"),
        )
        await self.log_manager.append(
            record.id, "Container auto-imported from engine", LogCategory.INFO
        )
        self.audit.log_event(
            AuditEventType.RECONCILE_IMPORT,
            container_id=record.id,
            details={"engine_ref": engine_container.engine_ref, "name": engine_container.name},
        )
        logger.info(
            "Auto-imported container",
            extra={"container_id": record.id, "engine_ref": engine_container.engine_ref},
        )
        return record

    async def reconcile_now(self) -> Dict[str, int]:
        """Run a sync on demand."""
        self.audit.log_event(AuditEventType.RECONCILE_SYNC, details={"trigger": "manual"})
        return await self.sync()

    # Health

    async def monitor_health(self) -> List[HealthCheckResult]:
        """
        Check that containers the registry believes are running really are.

        A running record whose engine object is not running is marked
        stopped and logged. It is restarted only when its settings enable
        auto-restart; a failed restart is logged and not retried this tick.

        Returns:
            One result per checked container
        """
        async with self._health_lock:
            results: List[HealthCheckResult] = []
            for record in await self.containers.list_by_status(ContainerStatus.RUNNING):
                if not record.engine_ref:
                    continue
                try:
                    results.append(await self._check_health(record))
                except (ContainerError, EngineError, OSError) as e:
                    logger.error(
                        "Health check failed",
                        extra={"container_id": record.id, "error": str(e)},
                    )
                    results.append(
                        HealthCheckResult(
                            record.id, record.name, record.status, "unknown", False, str(e)
                        )
                    )

            unhealthy = sum(1 for result in results if not result.healthy)
            logger.info(
                "Health monitor completed",
                extra={"checked": len(results), "unhealthy": unhealthy},
            )
            return results

    async def _check_health(self, record: ContainerRecord) -> HealthCheckResult:
        try:
            engine_container = await self.engine.inspect(record.engine_ref)
        except EngineError as e:
            return HealthCheckResult(
                record.id, record.name, record.status, "unknown", False, str(e)
            )

        result = HealthCheckResult(
            record.id,
            record.name,
            record.status,
            engine_container.status,
            engine_container.running,
        )
        if engine_container.running:
            return result

        await self.containers.set_status(record.id, ContainerStatus.STOPPED, "health check")
        await self.log_manager.append(
            record.id,
            "Health check: container stopped unexpectedly "
            f"(engine status: {engine_container.status})",
            LogCategory.ERROR,
        )
        logger.warning(
            "Container stopped unexpectedly",
            extra={"container_id": record.id, "engine_status": engine_container.status},
        )

        settings = await self.containers.get_settings(record.id)
        if settings is None or not settings.auto_restart:
            return result

        try:
            await self.containers.restart_container(record.id)
        except (ContainerError, EngineError) as e:
            self.metrics.record_auto_restart("failure")
            logger.error(
                "Auto-restart failed",
                extra={"container_id": record.id, "error": str(e)},
            )
            result.error = str(e)
            return result

        self.metrics.record_auto_restart("success")
        self.audit.log_event(AuditEventType.RECONCILE_AUTO_RESTART, container_id=record.id)
        return result

    async def restart(self, container_id: str) -> ContainerRecord:
        """Restart a container through the lifecycle manager."""
        return await self.containers.restart_container(container_id)

    # Orphans

    async def cleanup_orphans(self) -> Dict[str, int]:
        """
        Mark records whose engine object no longer exists as removed.

        Only a definite not-found answer counts; other engine faults leave
        the record untouched.

        Returns:
            Dictionary with cleanup statistics
        """
        async with self._orphan_lock:
            stats = {"checked": 0, "removed": 0, "errors": 0}
            for record in await self.containers.list_records():
                if not record.engine_ref or record.status == ContainerStatus.REMOVED.value:
                    continue
                stats["checked"] += 1
                try:
                    await self.engine.inspect(record.engine_ref)
                except ObjectNotFoundError:
                    await self._mark_removed(record)
                    stats["removed"] += 1
                except EngineError as e:
                    logger.warning(
                        "Engine lookup failed during orphan cleanup",
                        extra={"container_id": record.id, "error": str(e)},
                    )
                    stats["errors"] += 1

            logger.info("Orphan cleanup completed", extra=stats)
            return stats

    async def _mark_removed(self, record: ContainerRecord) -> None:
        await self.containers.set_status(record.id, ContainerStatus.REMOVED, "orphan cleanup")
        await self.log_manager.append(
            record.id, "Container removed from engine, status updated", LogCategory.ERROR
        )
        logger.warning(
            "Engine object vanished, marked container as removed",
            extra={"container_id": record.id, "engine_ref": record.engine_ref},
        )
        self.metrics.record_orphan()
        self.audit.log_event(
            AuditEventType.RECONCILE_ORPHAN,
            container_id=record.id,
            details={"engine_ref": record.engine_ref},
        )
