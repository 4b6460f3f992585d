"""Process-wide wiring of the control core components."""

from typing import Any, Optional

from crateflow.auth import IdentityVerifier, create_identity_verifier
from crateflow.config import get_settings
from crateflow.managers.channel_service import ChannelService
from crateflow.managers.container_manager import ContainerManager
from crateflow.managers.engine_client import EngineClient
from crateflow.managers.log_manager import LogManager
from crateflow.managers.reconciliation_manager import ReconciliationManager
from crateflow.managers.scheduler import JobScheduler
from crateflow.managers.shutdown_coordinator import ShutdownCoordinator
from crateflow.models.database import DatabaseManager
from crateflow.utils import get_logger
from crateflow.utils.audit_logger import AuditEventType, get_audit_logger
from crateflow.utils.exceptions import EngineError

logger = get_logger(__name__)


class Runtime:
    """Owner of every long-lived component of the process."""

    def __init__(
        self,
        engine: EngineClient | None = None,
        verifier: IdentityVerifier | None = None,
        db_manager: DatabaseManager | None = None,
        token_verifier: Any | None = None,
    ) -> None:
        """
        Wire the components together.

        Args:
            engine: Engine client (a new one connecting to the configured daemon when omitted)
            verifier: Channel identity verifier (built from the auth settings when omitted)
            db_manager: Database manager (one for the configured state DB when omitted)
            token_verifier: fastmcp verifier shared with the control surface
        """
        self.settings = get_settings()
        self.db_manager = db_manager or DatabaseManager()
        self.engine = engine or EngineClient()
        self.verifier = verifier or create_identity_verifier(token_verifier)
        self.log_manager = LogManager(db_manager=self.db_manager)
        self.containers = ContainerManager(self.engine, self.log_manager, self.db_manager)
        self.reconciler = ReconciliationManager(self.engine, self.containers, self.log_manager)
        self.channel = ChannelService(
            self.containers, self.log_manager, self.engine, self.verifier
        )
        self.scheduler = JobScheduler()
        self.audit = get_audit_logger()
        self.started = False

        self.log_manager.add_listener(self.channel.publish_log)
        self.containers.add_status_listener(self.channel.publish_status)
        self._register_jobs()

    def _register_jobs(self) -> None:
        settings = self.settings
        self.scheduler.add_job("sync", settings.sync_interval_s, self.reconciler.sync)
        self.scheduler.add_job(
            "health", settings.health_interval_s, self.reconciler.monitor_health
        )
        self.scheduler.add_job(
            "orphans", settings.orphan_interval_s, self.reconciler.cleanup_orphans
        )
        self.scheduler.add_job(
            "channel_cleanup", settings.channel_cleanup_interval_s, self.channel.cleanup
        )
        self.scheduler.add_job(
            "log_rotation", settings.log_rotation_interval_s, self.log_manager.rotate_all
        )
        self.scheduler.add_job(
            "log_retention",
            settings.log_cleanup_interval_s,
            self.log_manager.cleanup_older_than,
        )

    async def start(self) -> None:
        """
        Bring the process up.

        The engine must be reachable; an unreachable engine aborts startup.
        A failing first sync is logged and left to the next scheduled tick.

        Raises:
            EngineUnavailableError: If no engine endpoint answers
        """
        if self.started:
            return

        logger.info("Starting CrateFlow runtime")
        await self.db_manager.create_tables()
        logger.info("Database initialized", extra={"state_db": self.settings.state_db})

        if not self.engine.connected:
            await self.engine.connect()
        logger.info("Container engine connected")

        await self.log_manager.prime()
        await self.log_manager.start_watching()

        try:
            stats = await self.reconciler.sync()
            logger.info("Initial sync completed", extra={"stats": stats})
        except EngineError as e:
            logger.warning("Initial sync failed", extra={"error": str(e)})

        await self.scheduler.start()
        self.started = True
        self.audit.log_event(AuditEventType.SYSTEM_STARTUP)
        logger.info("CrateFlow runtime started")

    async def stop(self) -> None:
        """Tear the process down through the shutdown coordinator."""
        if not self.started:
            return

        await ShutdownCoordinator(self).initiate_shutdown()
        self.started = False


# Global runtime instance
_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Get or create the process runtime."""
    global _runtime
    if _runtime is None:
        _runtime = Runtime()
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    """Replace the process runtime."""
    global _runtime
    _runtime = runtime
