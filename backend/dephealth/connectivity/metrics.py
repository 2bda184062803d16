"""Metrics sinks for dependency connectivity.

The registry calls a MetricsSink on every meaningful transition. Sinks must
not raise; the registry still guards every call.

Prometheus metrics exported:
- dependency_state: Gauge, 1 if CONNECTED else 0
- dependency_health_state: Gauge of the state severity (0 connected .. 4 failed)
- dependency_latency_ms: Gauge of the latest probe latency
- dependency_retry_total: Counter of failure reports (retry attempts)
- dependency_failure_total: Counter of transitions into FAILED
- dependency_recovery_seconds: Histogram of failure-episode durations
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from dephealth.connectivity.models import STATE_SEVERITY, DependencyId, HealthState


@runtime_checkable
class MetricsSink(Protocol):
    """Protocol for connectivity metrics consumers."""

    def state_changed(
        self, dependency: DependencyId, old_state: HealthState, new_state: HealthState
    ) -> None: ...

    def failure_occurred(self, dependency: DependencyId) -> None: ...

    def recovered(self, dependency: DependencyId, duration_seconds: float) -> None: ...

    def observe_latency(self, dependency: DependencyId, latency_ms: float) -> None: ...

    def retry_attempted(self, dependency: DependencyId) -> None: ...


class NullMetricsSink:
    """Sink that discards everything."""

    def state_changed(
        self, dependency: DependencyId, old_state: HealthState, new_state: HealthState
    ) -> None:
        pass

    def failure_occurred(self, dependency: DependencyId) -> None:
        pass

    def recovered(self, dependency: DependencyId, duration_seconds: float) -> None:
        pass

    def observe_latency(self, dependency: DependencyId, latency_ms: float) -> None:
        pass

    def retry_attempted(self, dependency: DependencyId) -> None:
        pass


class PrometheusMetricsSink:
    """MetricsSink backed by prometheus_client.

    Each sink owns its CollectorRegistry so several sinks (tests, multiple
    apps in one process) never collide on metric names.
    """

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        dependencies: list[DependencyId] | None = None,
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.state = Gauge(
            "dependency_state",
            "Dependency health state (1=UP, 0=DOWN)",
            ["dependency"],
            registry=self.registry,
        )
        self.health_state = Gauge(
            "dependency_health_state",
            "Dependency state severity (0=connected, 4=failed)",
            ["dependency"],
            registry=self.registry,
        )
        self.latency_ms = Gauge(
            "dependency_latency_ms",
            "Latest probe latency in milliseconds",
            ["dependency"],
            registry=self.registry,
        )
        self.retries = Counter(
            "dependency_retry_total",
            "Total number of connection retry attempts",
            ["dependency"],
            registry=self.registry,
        )
        self.failures = Counter(
            "dependency_failure_total",
            "Total number of transitions to FAILED state",
            ["dependency"],
            registry=self.registry,
        )
        self.recovery_seconds = Histogram(
            "dependency_recovery_seconds",
            "Time taken to recover from a failure episode to CONNECTED",
            ["dependency"],
            buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
            registry=self.registry,
        )

        # Report every dependency as DOWN until its first health check
        for dependency in dependencies or list(DependencyId):
            label = dependency.value
            self.state.labels(dependency=label).set(0)
            self.health_state.labels(dependency=label).set(
                STATE_SEVERITY[HealthState.DISCONNECTED]
            )
            self.retries.labels(dependency=label)
            self.failures.labels(dependency=label)

    def state_changed(
        self, dependency: DependencyId, old_state: HealthState, new_state: HealthState
    ) -> None:
        label = dependency.value
        self.state.labels(dependency=label).set(1 if new_state == HealthState.CONNECTED else 0)
        self.health_state.labels(dependency=label).set(STATE_SEVERITY[new_state])

    def failure_occurred(self, dependency: DependencyId) -> None:
        self.failures.labels(dependency=dependency.value).inc()

    def recovered(self, dependency: DependencyId, duration_seconds: float) -> None:
        self.recovery_seconds.labels(dependency=dependency.value).observe(duration_seconds)

    def observe_latency(self, dependency: DependencyId, latency_ms: float) -> None:
        self.latency_ms.labels(dependency=dependency.value).set(latency_ms)

    def retry_attempted(self, dependency: DependencyId) -> None:
        self.retries.labels(dependency=dependency.value).inc()
