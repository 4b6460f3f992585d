"""Prometheus metrics collection for CrateFlow."""

from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Collects and exposes Prometheus metrics for reconciler, log and channel activity."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize metrics collector with all metrics.

        Args:
            registry: Registry to register metrics in (defaults to the global one)
        """
        self.registry = registry if registry is not None else REGISTRY

        # Scheduler
        self.job_runs_total = Counter(
            "crateflow_job_runs_total",
            "Total number of periodic job ticks",
            ["job", "outcome"],
            registry=self.registry,
        )

        self.job_duration_seconds = Histogram(
            "crateflow_job_duration_seconds",
            "Periodic job tick duration in seconds",
            ["job"],
            buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
            registry=self.registry,
        )

        # Registry and reconciler
        self.status_updates_total = Counter(
            "crateflow_status_updates_total",
            "Total number of registry status changes",
            ["status"],
            registry=self.registry,
        )

        self.auto_restarts_total = Counter(
            "crateflow_auto_restarts_total",
            "Total number of health-driven restarts",
            ["outcome"],
            registry=self.registry,
        )

        self.orphans_total = Counter(
            "crateflow_orphans_total",
            "Total number of records marked removed by orphan cleanup",
            registry=self.registry,
        )

        self.engine_errors_total = Counter(
            "crateflow_engine_errors_total",
            "Total number of failed engine calls",
            ["operation", "kind"],
            registry=self.registry,
        )

        # Logs
        self.log_entries_total = Counter(
            "crateflow_log_entries_total",
            "Total number of log entries appended",
            ["category"],
            registry=self.registry,
        )

        self.log_files_rotated_total = Counter(
            "crateflow_log_files_rotated_total",
            "Total number of rotated log files",
            registry=self.registry,
        )

        self.log_files_expired_total = Counter(
            "crateflow_log_files_expired_total",
            "Total number of rotated log files deleted by retention",
            registry=self.registry,
        )

        # Channel
        self.channel_connections = Gauge(
            "crateflow_channel_connections",
            "Number of open channel connections",
            registry=self.registry,
        )

        self.channel_subscriptions = Gauge(
            "crateflow_channel_subscriptions",
            "Number of active log subscriptions",
            registry=self.registry,
        )

        self.channel_commands_total = Counter(
            "crateflow_channel_commands_total",
            "Total number of commands executed over the channel",
            ["outcome"],
            registry=self.registry,
        )

    def record_job_run(self, job: str, outcome: str, duration_seconds: float) -> None:
        """
        Record a periodic job tick.

        Args:
            job: Job name
            outcome: success or failure
            duration_seconds: Tick duration in seconds
        """
        self.job_runs_total.labels(job=job, outcome=outcome).inc()
        self.job_duration_seconds.labels(job=job).observe(duration_seconds)

    def record_status_update(self, status: str) -> None:
        """
        Record a registry status change.

        Args:
            status: New status value
        """
        self.status_updates_total.labels(status=status).inc()

    def record_auto_restart(self, outcome: str) -> None:
        """
        Record a health-driven restart attempt.

        Args:
            outcome: success or failure
        """
        self.auto_restarts_total.labels(outcome=outcome).inc()

    def record_orphan(self) -> None:
        """Record a record marked removed by orphan cleanup."""
        self.orphans_total.inc()

    def record_engine_error(self, operation: str, kind: str) -> None:
        """
        Record a failed engine call.

        Args:
            operation: Engine operation name
            kind: Error class name
        """
        self.engine_errors_total.labels(operation=operation, kind=kind).inc()

    def record_log_entry(self, category: str) -> None:
        """
        Record an appended log entry.

        Args:
            category: Log category
        """
        self.log_entries_total.labels(category=category).inc()

    def record_log_rotation(self, count: int = 1) -> None:
        """Record rotated log files."""
        self.log_files_rotated_total.inc(count)

    def record_log_expiry(self, count: int) -> None:
        """Record rotated log files deleted by retention."""
        self.log_files_expired_total.inc(count)

    def set_channel_connections(self, count: int) -> None:
        """
        Set the number of open channel connections.

        Args:
            count: Number of connections
        """
        self.channel_connections.set(count)

    def set_channel_subscriptions(self, count: int) -> None:
        """
        Set the number of active subscriptions.

        Args:
            count: Number of (connection, container) pairs
        """
        self.channel_subscriptions.set(count)

    def record_channel_command(self, outcome: str) -> None:
        """
        Record a channel command execution.

        Args:
            outcome: success, failure, cancelled or abandoned
        """
        self.channel_commands_total.labels(outcome=outcome).inc()

    def get_metrics(self) -> bytes:
        """
        Get current metrics in Prometheus format.

        Returns:
            Metrics data in bytes
        """
        return generate_latest(self.registry)


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """
    Get the global metrics collector instance.

    Returns:
        MetricsCollector instance
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
