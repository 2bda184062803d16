"""ConnectivityRegistry - Single Source of Truth for dependency health.

Only the registry mutates DependencyRecords. Probes and passive reporters
submit signals; readers receive immutable snapshots.

Key responsibilities:
- Holds one DependencyRecord per dependency, created DISCONNECTED, never removed
- Classifies signals through HealthStateModel
- Emits metrics only on actual state changes
- Measures recovery duration per failure episode
- Serves deep-copied snapshots

Locking is per dependency: updates to different dependencies never contend,
updates to the same dependency are serialized, and snapshots are built under
the same lock so a reader never sees a half-applied update.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any

from dephealth.connectivity.config import ConnectivityConfig, DependencyThresholds, get_config
from dephealth.connectivity.metrics import MetricsSink, NullMetricsSink
from dephealth.connectivity.models import (
    ConnectionSnapshot,
    DependencyId,
    DependencyRecord,
    HealthState,
    ProbeOutcome,
    utc_now,
)
from dephealth.connectivity.state_model import (
    HealthStateModel,
    Transition,
    opens_failure_episode,
)

logger = logging.getLogger(__name__)


class ConnectivityRegistry:
    """Central store for dependency connection state.

    Construct once at startup and pass it explicitly to every probe and
    passive reporter.

    Attributes:
        dependencies: Tracked dependency ids (read-only property)
    """

    def __init__(
        self,
        config: ConnectivityConfig | None = None,
        metrics_sink: MetricsSink | None = None,
        dependencies: Iterable[DependencyId] | None = None,
    ) -> None:
        """Initialize every record in DISCONNECTED state.

        Args:
            config: Thresholds per dependency. Defaults to get_config()
            metrics_sink: Receiver of transition metrics. Defaults to a no-op sink
            dependencies: Dependencies to track. Defaults to every DependencyId
        """
        self._config = config if config is not None else get_config()
        self._metrics = metrics_sink if metrics_sink is not None else NullMetricsSink()
        tracked = list(dependencies) if dependencies is not None else list(DependencyId)
        self._records: dict[DependencyId, DependencyRecord] = {
            dependency: DependencyRecord(dependency=dependency) for dependency in tracked
        }

        logger.info(f"ConnectivityRegistry initialized with {len(self._records)} dependencies")

    @property
    def dependencies(self) -> list[DependencyId]:
        """Tracked dependency ids."""
        return list(self._records)

    @property
    def metrics_sink(self) -> MetricsSink:
        return self._metrics

    def thresholds_for(self, dependency: DependencyId) -> DependencyThresholds:
        return self._config.thresholds_for(dependency)

    def update_state(
        self,
        dependency: DependencyId,
        outcome: ProbeOutcome,
        message: str | None = None,
        *,
        instability: str | None = None,
    ) -> ConnectionSnapshot | None:
        """Classify a success/failure report and apply it.

        Args:
            dependency: Dependency the report is about
            outcome: SUCCESS or FAILURE
            message: Failure message (ignored on success)
            instability: Active storm description; reconciled by "most severe wins"

        Returns:
            Snapshot after the update, or None for an unknown dependency
        """
        record = self._get_record(dependency, "update state")
        if record is None:
            return None

        with record.lock:
            now = utc_now()
            if outcome == ProbeOutcome.SUCCESS:
                transition = HealthStateModel.apply_success(record, now, instability)
            else:
                transition = HealthStateModel.apply_failure(
                    record, self.thresholds_for(dependency), message, now, instability
                )
                logger.warning(
                    f"Dependency {dependency.value} failure #{record.consecutive_failures}: "
                    f"{message}"
                )
                self._emit(self._metrics.retry_attempted, dependency)

            self._finish_transition(record, transition)
            return record.snapshot()

    def report_instability(
        self, dependency: DependencyId, message: str
    ) -> ConnectionSnapshot | None:
        """Apply an instability-window storm signal.

        Moves the dependency to DEGRADED unless it is already in a more
        severe state. Failure counters are not touched.
        """
        record = self._get_record(dependency, "report instability")
        if record is None:
            return None

        with record.lock:
            transition = HealthStateModel.apply_instability(record, message, utc_now())
            self._finish_transition(record, transition)
            return record.snapshot()

    def mark_connecting(self, dependency: DependencyId) -> ConnectionSnapshot | None:
        """Record that a connection attempt has begun.

        No-op unless the dependency is DISCONNECTED.
        """
        record = self._get_record(dependency, "mark connecting")
        if record is None:
            return None

        with record.lock:
            transition = HealthStateModel.apply_connecting(record)
            self._finish_transition(record, transition)
            return record.snapshot()

    def reset(self, dependency: DependencyId) -> ConnectionSnapshot | None:
        """Explicitly return a dependency to DISCONNECTED."""
        record = self._get_record(dependency, "reset")
        if record is None:
            return None

        with record.lock:
            transition = HealthStateModel.apply_reset(record)
            self._finish_transition(record, transition)
            return record.snapshot()

    def update_metadata(self, dependency: DependencyId, metadata: Mapping[str, Any]) -> None:
        """Merge metadata into the record without changing state.

        Keys absent from ``metadata`` are preserved.
        """
        record = self._get_record(dependency, "update metadata")
        if record is None:
            return

        with record.lock:
            record.metadata.update(metadata)

    def record_latency(self, dependency: DependencyId, latency_ms: float) -> None:
        """Forward a probe latency observation to the metrics sink."""
        if dependency not in self._records:
            logger.warning(f"Attempted to record latency for unknown dependency: {dependency}")
            return
        self._emit(self._metrics.observe_latency, dependency, latency_ms)

    def get_snapshot(self, dependency: DependencyId) -> ConnectionSnapshot | None:
        """Get an immutable snapshot of a dependency's current state.

        Returns:
            ConnectionSnapshot, or None for an unknown dependency
        """
        record = self._get_record(dependency, "get snapshot")
        if record is None:
            return None

        with record.lock:
            return record.snapshot()

    def get_all_snapshots(self) -> dict[DependencyId, ConnectionSnapshot]:
        """Snapshots for every tracked dependency.

        Each snapshot is consistent on its own; there is no cross-dependency
        consistency.
        """
        snapshots: dict[DependencyId, ConnectionSnapshot] = {}
        for dependency, record in self._records.items():
            with record.lock:
                snapshots[dependency] = record.snapshot()
        return snapshots

    def _get_record(self, dependency: DependencyId, action: str) -> DependencyRecord | None:
        record = self._records.get(dependency)
        if record is None:
            logger.warning(f"Attempted to {action} for unknown dependency: {dependency}")
        return record

    def _finish_transition(self, record: DependencyRecord, transition: Transition) -> None:
        """Update episode bookkeeping and emit metrics for a state change.

        Called with the record lock held.
        """
        if not transition.changed:
            return

        dependency = record.dependency
        logger.info(
            f"Dependency {dependency.value} state transition: "
            f"{transition.old_state.value} -> {transition.new_state.value}"
        )
        self._emit(self._metrics.state_changed, dependency, transition.old_state, transition.new_state)

        if transition.entered_failed:
            self._emit(self._metrics.failure_occurred, dependency)

        if opens_failure_episode(transition.new_state):
            if record.failure_episode_start is None:
                record.failure_episode_start = time.monotonic()
        elif transition.new_state == HealthState.CONNECTED:
            if record.failure_episode_start is not None:
                duration = time.monotonic() - record.failure_episode_start
                record.failure_episode_start = None
                logger.info(f"Dependency {dependency.value} recovered in {duration:.3f}s")
                self._emit(self._metrics.recovered, dependency, duration)

    def _emit(self, method, *args) -> None:
        """Call a metrics sink method; a failing sink never breaks an update."""
        try:
            method(*args)
        except Exception:
            logger.exception(f"Metrics sink call {getattr(method, '__name__', method)} failed")
