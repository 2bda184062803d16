from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest
from dephealth.connectivity.config import ConnectivityConfig, DependencyThresholds, WindowConfig
from dephealth.connectivity.models import DependencyId, HealthState
from dephealth.connectivity.registry import ConnectivityRegistry


@dataclass
class RecordingSink:
    """MetricsSink that records every call for assertions."""

    calls: list[tuple[str, tuple[Any, ...]]] = field(default_factory=list)

    def state_changed(
        self, dependency: DependencyId, old_state: HealthState, new_state: HealthState
    ) -> None:
        self.calls.append(("state_changed", (dependency, old_state, new_state)))

    def failure_occurred(self, dependency: DependencyId) -> None:
        self.calls.append(("failure_occurred", (dependency,)))

    def recovered(self, dependency: DependencyId, duration_seconds: float) -> None:
        self.calls.append(("recovered", (dependency, duration_seconds)))

    def observe_latency(self, dependency: DependencyId, latency_ms: float) -> None:
        self.calls.append(("observe_latency", (dependency, latency_ms)))

    def retry_attempted(self, dependency: DependencyId) -> None:
        self.calls.append(("retry_attempted", (dependency,)))

    def named(self, name: str) -> list[tuple[Any, ...]]:
        return [args for call, args in self.calls if call == name]


@pytest.fixture
def config() -> ConnectivityConfig:
    """Connectivity config with degraded_at=2, failed_at=5 for every dependency."""
    thresholds = DependencyThresholds(degraded_at=2, failed_at=5)
    return ConnectivityConfig(
        thresholds={dependency: thresholds for dependency in DependencyId},
        pool_timeouts=WindowConfig(threshold=3, window_seconds=60.0, reset_interval_seconds=60.0),
        rebalances=WindowConfig(threshold=5, window_seconds=300.0, reset_interval_seconds=300.0),
    )


@pytest.fixture
def sink() -> RecordingSink:
    """Recording metrics sink."""
    return RecordingSink()


@pytest.fixture
def registry(config: ConnectivityConfig, sink: RecordingSink) -> ConnectivityRegistry:
    """Registry tracking every dependency, wired to the recording sink."""
    return ConnectivityRegistry(config=config, metrics_sink=sink)
