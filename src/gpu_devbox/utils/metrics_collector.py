"""Prometheus metrics collection for GPU DevBox."""

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Collects and exposes Prometheus metrics for GPU DevBox operations."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collector with all metrics.

        Args:
            registry: Registry to register metrics in (a private one by default)
        """
        self.registry = registry or CollectorRegistry()

        # Counter metrics
        self.engine_invocations_total = Counter(
            "devbox_engine_invocations_total",
            "Total number of container engine invocations",
            ["command", "outcome"],
            registry=self.registry,
        )

        self.lifecycle_operations_total = Counter(
            "devbox_lifecycle_operations_total",
            "Total number of container lifecycle operations",
            ["operation", "status"],
            registry=self.registry,
        )

        self.port_allocations_total = Counter(
            "devbox_port_allocations_total",
            "Total number of host port allocations",
            ["outcome"],
            registry=self.registry,
        )

        # Histogram metrics
        self.engine_duration_seconds = Histogram(
            "devbox_engine_duration_seconds",
            "Engine invocation duration in seconds",
            ["command"],
            buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0],
            registry=self.registry,
        )

        # Gauge metrics
        self.managed_containers = Gauge(
            "devbox_managed_containers",
            "Number of persisted containers",
            registry=self.registry,
        )

    def record_engine_invocation(self, command: str, outcome: str, duration_seconds: float) -> None:
        """
        Record one engine process invocation.

        Args:
            command: Engine sub-command (run, rm, stats, ...)
            outcome: success, failure or timeout
            duration_seconds: Wall time of the process
        """
        self.engine_invocations_total.labels(command=command, outcome=outcome).inc()
        self.engine_duration_seconds.labels(command=command).observe(duration_seconds)

    def record_lifecycle_operation(self, operation: str, status: str) -> None:
        """
        Record a lifecycle operation.

        Args:
            operation: create, reset, start, stop, restart, delete, change_password
            status: success or the error class name
        """
        self.lifecycle_operations_total.labels(operation=operation, status=status).inc()

    def record_port_allocation(self, outcome: str) -> None:
        """
        Record a port allocation attempt.

        Args:
            outcome: claimed, contended or exhausted
        """
        self.port_allocations_total.labels(outcome=outcome).inc()

    def set_managed_containers(self, count: int) -> None:
        """
        Set the number of persisted containers.

        Args:
            count: Number of containers
        """
        self.managed_containers.set(count)

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
