"""Shutdown coordinator for graceful server shutdown."""

import asyncio
from typing import TYPE_CHECKING

from crateflow.config import get_settings
from crateflow.utils import get_logger
from crateflow.utils.audit_logger import AuditEventType, get_audit_logger

if TYPE_CHECKING:
    from crateflow.runtime import Runtime

logger = get_logger(__name__)


class ShutdownCoordinator:
    """Coordinator for graceful server shutdown."""

    def __init__(self, runtime: "Runtime") -> None:
        """
        Initialize shutdown coordinator.

        Args:
            runtime: Runtime whose components are torn down
        """
        self.settings = get_settings()
        self.runtime = runtime
        self._shutdown_initiated = False
        self._shutdown_event = asyncio.Event()

    def is_shutting_down(self) -> bool:
        """
        Check if shutdown has been initiated.

        Returns:
            True if shutdown is in progress
        """
        return self._shutdown_initiated

    async def initiate_shutdown(self) -> None:
        """
        Initiate graceful shutdown sequence.

        This method:
        1. Stops the scheduler, letting in-flight ticks finish
        2. Closes channel connections and cancels their commands
        3. Drains startup-script tasks up to CRATEFLOW_DRAIN_GRACE_S
        4. Stops the log watcher
        5. Closes the database and the engine client
        """
        if self._shutdown_initiated:
            logger.warning("Shutdown already initiated")
            return

        self._shutdown_initiated = True
        logger.info("Initiating graceful shutdown")
        runtime = self.runtime

        try:
            await runtime.scheduler.stop()
            await runtime.channel.shutdown()
            await self._drain_operations()
            await runtime.log_manager.stop_watching()
        except Exception as e:
            logger.error("Error during shutdown", extra={"error": str(e)})
        finally:
            await runtime.db_manager.close()
            runtime.engine.close()
            get_audit_logger().log_event(AuditEventType.SYSTEM_SHUTDOWN)
            self._shutdown_event.set()
            logger.info("Graceful shutdown completed")

    async def _drain_operations(self) -> None:
        """
        Drain scheduled startup scripts with timeout.

        Waits up to CRATEFLOW_DRAIN_GRACE_S, then cancels what is left.
        """
        grace_period = self.settings.drain_grace_s
        pending = self.runtime.containers.pending_tasks
        if not pending:
            return

        logger.info(
            "Draining active operations",
            extra={"grace_period_s": grace_period, "pending": pending},
        )
        cancelled = await self.runtime.containers.drain(grace_period)
        if not cancelled:
            logger.info("Active operations drained")

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown to complete."""
        await self._shutdown_event.wait()
