"""Periodic background jobs with independent, cancellable timers."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from crateflow.utils import get_logger
from crateflow.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class PeriodicJob:
    """One job ticking on its own timer."""

    def __init__(
        self,
        name: str,
        interval_s: float,
        func: JobFunc,
        run_on_start: bool = False,
    ) -> None:
        """
        Initialize periodic job.

        Args:
            name: Job name used in logs and metrics
            interval_s: Seconds between the end of one tick and the next
            func: Async callable run on every tick
            run_on_start: Tick immediately instead of waiting one interval
        """
        self.name = name
        self.interval_s = interval_s
        self.func = func
        self.run_on_start = run_on_start
        self.metrics = get_metrics_collector()
        self.last_result: Any = None
        self.last_error: Optional[str] = None
        self.runs = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        """Whether the job loop is active."""
        return self._running

    async def tick(self) -> Any:
        """
        Run the job once.

        Ticks of one job never overlap; a manual tick waits for a scheduled
        one and the other way round. Failures are logged and recorded; they
        never propagate, so the job keeps its schedule.

        Returns:
            The job result, or None if it failed
        """
        async with self._tick_lock:
            started = time.monotonic()
            self.runs += 1
            try:
                result = await self.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                self.metrics.record_job_run(self.name, "failure", time.monotonic() - started)
                logger.error("Scheduled job failed", extra={"job": self.name, "error": str(e)})
                return None

            self.last_result = result
            self.last_error = None
            self.metrics.record_job_run(self.name, "success", time.monotonic() - started)
            logger.debug("Scheduled job completed", extra={"job": self.name})
            return result

    async def start(self) -> None:
        """Start the job loop."""
        if self._running:
            logger.warning("Scheduled job already running", extra={"job": self.name})
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"job:{self.name}")
        logger.info(
            "Scheduled job started",
            extra={"job": self.name, "interval_s": self.interval_s},
        )

    async def stop(self) -> None:
        """Stop the job loop. A tick already in progress runs to completion first."""
        if not self._running:
            return

        self._running = False
        async with self._tick_lock:
            if self._task:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                self._task = None
        logger.info("Scheduled job stopped", extra={"job": self.name})

    async def _run_loop(self) -> None:
        if not self.run_on_start:
            await asyncio.sleep(self.interval_s)
        while self._running:
            await self.tick()
            await asyncio.sleep(self.interval_s)


class JobScheduler:
    """Owner of the periodic jobs of the process."""

    def __init__(self) -> None:
        """Initialize job scheduler."""
        self._jobs: Dict[str, PeriodicJob] = {}

    def add_job(
        self,
        name: str,
        interval_s: float,
        func: JobFunc,
        run_on_start: bool = False,
    ) -> PeriodicJob:
        """
        Register a job.

        Raises:
            ValueError: If a job with this name exists
        """
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = PeriodicJob(name, interval_s, func, run_on_start)
        self._jobs[name] = job
        return job

    def get_job(self, name: str) -> PeriodicJob:
        """
        Look up a job by name.

        Raises:
            KeyError: If no job has this name
        """
        return self._jobs[name]

    @property
    def jobs(self) -> List[PeriodicJob]:
        """Registered jobs in registration order."""
        return list(self._jobs.values())

    async def tick(self, name: str) -> Any:
        """Run one job once, outside its timer."""
        return await self.get_job(name).tick()

    async def start(self) -> None:
        """Start every registered job."""
        for job in self._jobs.values():
            await job.start()
        logger.info("Scheduler started", extra={"jobs": list(self._jobs)})

    async def stop(self) -> None:
        """Stop every job once its in-flight tick, if any, has finished."""
        for job in self._jobs.values():
            await job.stop()
        logger.info("Scheduler stopped")
