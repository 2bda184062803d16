"""Health state model for dependency connectivity.

Converts success/failure/instability signals into a HealthState using the
consecutive-failure hysteresis thresholds.

Transition table:
- Explicit reset: DISCONNECTED
- Connection attempt begun: CONNECTING, from DISCONNECTED only
- Success: CONNECTED, unconditionally (counters zeroed, failure fields cleared)
- Failure, consecutive_failures < degraded_at: RETRYING
- Failure, degraded_at <= consecutive_failures < failed_at: DEGRADED
- Failure, consecutive_failures >= failed_at: FAILED
- Instability storm: DEGRADED, unless the current state is already more severe

Every failure increments consecutive_failures and retry_count before it is
classified. When several signals apply at once the most severe state wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from dephealth.connectivity.config import DependencyThresholds
from dephealth.connectivity.models import (
    FAILURE_STATES,
    STATE_SEVERITY,
    DependencyRecord,
    HealthState,
)


@dataclass(frozen=True)
class Transition:
    """Classification decision for one signal.

    Attributes:
        old_state: State before the signal was applied
        new_state: State after the signal was applied
        message: Failure or instability message recorded with the decision
    """

    old_state: HealthState
    new_state: HealthState
    message: str | None = None

    @property
    def changed(self) -> bool:
        return self.old_state != self.new_state

    @property
    def entered_failed(self) -> bool:
        return self.changed and self.new_state == HealthState.FAILED

    @property
    def entered_connected(self) -> bool:
        return self.changed and self.new_state == HealthState.CONNECTED


def classify_failures(consecutive_failures: int, thresholds: DependencyThresholds) -> HealthState:
    """Classify a failure count against the dependency thresholds."""
    if consecutive_failures >= thresholds.failed_at:
        return HealthState.FAILED
    if consecutive_failures >= thresholds.degraded_at:
        return HealthState.DEGRADED
    return HealthState.RETRYING


def most_severe(first: HealthState, second: HealthState) -> HealthState:
    """Return the more severe of two states (first wins ties)."""
    if STATE_SEVERITY[second] > STATE_SEVERITY[first]:
        return second
    return first


class HealthStateModel:
    """Applies classified signals to a DependencyRecord.

    Pure logic: no I/O, no locking, no metrics. The caller holds the
    record's lock and decides what to emit from the returned Transition.
    """

    @staticmethod
    def apply_success(
        record: DependencyRecord,
        now: datetime,
        instability: str | None = None,
    ) -> Transition:
        """Apply a success report.

        Args:
            record: Record to mutate
            now: Wall-clock timestamp for the record fields
            instability: Active storm description, if any

        Returns:
            The resulting Transition
        """
        old_state = record.state
        record.consecutive_failures = 0
        record.retry_count = 0

        if instability is not None:
            # Reachable but unstable: counters reset, storm keeps it DEGRADED
            record.state = HealthState.DEGRADED
            HealthStateModel._record_message(record, instability, now, old_state)
            return Transition(old_state, record.state, instability)

        record.state = HealthState.CONNECTED
        record.last_failure_message = None
        if old_state != HealthState.CONNECTED or record.connected_since is None:
            record.connected_since = now
        return Transition(old_state, record.state)

    @staticmethod
    def apply_failure(
        record: DependencyRecord,
        thresholds: DependencyThresholds,
        message: str | None,
        now: datetime,
        instability: str | None = None,
    ) -> Transition:
        """Apply a failure report.

        Counters are incremented before classification.
        """
        old_state = record.state
        record.consecutive_failures += 1
        record.retry_count += 1

        new_state = classify_failures(record.consecutive_failures, thresholds)
        if instability is not None:
            new_state = most_severe(new_state, HealthState.DEGRADED)

        record.state = new_state
        HealthStateModel._record_message(record, message, now, old_state, force=True)
        return Transition(old_state, new_state, message)

    @staticmethod
    def apply_instability(record: DependencyRecord, message: str, now: datetime) -> Transition:
        """Apply a storm signal without touching the failure counters."""
        old_state = record.state
        new_state = most_severe(old_state, HealthState.DEGRADED)
        record.state = new_state
        if new_state == HealthState.DEGRADED:
            HealthStateModel._record_message(record, message, now, old_state)
        return Transition(old_state, new_state, message)

    @staticmethod
    def apply_connecting(record: DependencyRecord) -> Transition:
        """Mark a connection attempt as begun.

        Only a DISCONNECTED record moves; any other state already reflects
        a newer signal and is left alone.
        """
        old_state = record.state
        if old_state == HealthState.DISCONNECTED:
            record.state = HealthState.CONNECTING
        return Transition(old_state, record.state)

    @staticmethod
    def apply_reset(record: DependencyRecord) -> Transition:
        """Return the record to DISCONNECTED and clear the counters."""
        old_state = record.state
        record.state = HealthState.DISCONNECTED
        record.consecutive_failures = 0
        record.retry_count = 0
        record.failure_episode_start = None
        return Transition(old_state, record.state)

    @staticmethod
    def _record_message(
        record: DependencyRecord,
        message: str | None,
        now: datetime,
        old_state: HealthState,
        force: bool = False,
    ) -> None:
        """Refresh failure message and time.

        On a state change the fields are always written. With an unchanged
        state they are only refreshed when the message differs, unless
        ``force`` is set (every failure report stamps the failure time).
        """
        if record.state != old_state or force or message != record.last_failure_message:
            record.last_failure_time = now
            record.last_failure_message = message


def opens_failure_episode(state: HealthState) -> bool:
    """Whether entering ``state`` starts a failure episode."""
    return state in FAILURE_STATES
