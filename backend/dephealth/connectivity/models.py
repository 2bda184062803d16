"""Core models for dependency connectivity tracking.

This module defines the data structures shared by the registry, the probes
and the passive reporters.

Key design constraints:
- HealthState has 6 states; STATE_SEVERITY orders them for "most severe wins"
- DependencyRecord is mutable and owned by the registry only
- ConnectionSnapshot is frozen and carries a deep copy of the metadata
- Wall-clock timestamps are for display; monotonic time is for durations
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from dephealth.connectivity.errors import UnknownDependencyId


class DependencyId(str, Enum):
    """External dependencies whose connectivity is tracked."""

    DATASTORE = "datastore"  # Relational database (SQLAlchemy pool)
    CACHE = "cache"  # Redis cache / pub-sub
    BROKER = "broker"  # Kafka message broker

    @classmethod
    def parse(cls, name: str) -> DependencyId:
        """Resolve a dependency from its value or member name.

        Args:
            name: Identifier such as "cache" or "CACHE"

        Returns:
            The matching DependencyId

        Raises:
            UnknownDependencyId: If nothing matches
        """
        normalized = name.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise UnknownDependencyId(name)


class HealthState(str, Enum):
    """Connection state of a single dependency."""

    DISCONNECTED = "disconnected"  # Initial state, or explicit reset
    CONNECTING = "connecting"  # Connection attempt begun
    CONNECTED = "connected"  # Healthy
    DEGRADED = "degraded"  # Reachable but unstable
    RETRYING = "retrying"  # Failing, below the degraded threshold
    FAILED = "failed"  # Persistent failure


# Higher number = more severe. Used to reconcile concurrent signals.
STATE_SEVERITY: dict[HealthState, int] = {
    HealthState.CONNECTED: 0,
    HealthState.CONNECTING: 1,
    HealthState.DISCONNECTED: 1,
    HealthState.RETRYING: 2,
    HealthState.DEGRADED: 3,
    HealthState.FAILED: 4,
}

# States that open (or continue) a failure episode
FAILURE_STATES: frozenset[HealthState] = frozenset(
    {
        HealthState.RETRYING,
        HealthState.DEGRADED,
        HealthState.FAILED,
    }
)


class ProbeOutcome(str, Enum):
    """Outcome of a probe or passive event report."""

    SUCCESS = "success"
    FAILURE = "failure"


class FailureKind(str, Enum):
    """Cause of a failure-classified signal."""

    PROBE_TIMEOUT = "probe_timeout"
    CONNECTION_REFUSED = "connection_refused"
    PROTOCOL_ERROR = "protocol_error"


def utc_now() -> datetime:
    """Timezone-aware wall clock time."""
    return datetime.now(tz=timezone.utc)


@dataclass
class DependencyRecord:
    """Mutable per-dependency state.

    Owned exclusively by ConnectivityRegistry and only mutated while
    holding ``lock``.
    """

    dependency: DependencyId
    state: HealthState = HealthState.DISCONNECTED
    consecutive_failures: int = 0
    retry_count: int = 0
    connected_since: datetime | None = None
    last_failure_time: datetime | None = None
    last_failure_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    failure_episode_start: float | None = None  # monotonic
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def snapshot(self) -> ConnectionSnapshot:
        """Copy the record into an immutable snapshot.

        Callers must hold ``lock``.
        """
        return ConnectionSnapshot(
            dependency=self.dependency,
            state=self.state,
            retry_count=self.retry_count,
            consecutive_failures=self.consecutive_failures,
            connected_since=self.connected_since,
            last_failure_time=self.last_failure_time,
            last_failure_message=self.last_failure_message,
            metadata=copy.deepcopy(self.metadata),
            snapshot_time=utc_now(),
        )


@dataclass(frozen=True)
class ConnectionSnapshot:
    """Immutable point-in-time view of a dependency.

    The metadata mapping is a deep copy; mutating it never touches the
    registry's record.
    """

    dependency: DependencyId
    state: HealthState
    retry_count: int
    consecutive_failures: int
    connected_since: datetime | None
    last_failure_time: datetime | None
    last_failure_message: str | None
    metadata: dict[str, Any]
    snapshot_time: datetime

    @property
    def is_healthy(self) -> bool:
        return self.state == HealthState.CONNECTED

    @property
    def is_degraded(self) -> bool:
        return self.state == HealthState.DEGRADED

    @property
    def is_unavailable(self) -> bool:
        return self.state in (
            HealthState.FAILED,
            HealthState.RETRYING,
            HealthState.DISCONNECTED,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the read-surface shape.

        Converts enum values to strings and datetimes to ISO format.
        """
        return {
            "state": self.state.name,
            "retryCount": self.retry_count,
            "connectedSince": _isoformat(self.connected_since),
            "lastFailureTime": _isoformat(self.last_failure_time),
            "lastFailureMessage": self.last_failure_message,
            "metadata": copy.deepcopy(self.metadata),
        }


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class ProbeResult:
    """Result of one probe invocation.

    Attributes:
        outcome: SUCCESS or FAILURE
        latency_ms: Time taken by the probe in milliseconds
        metadata: Dependency-specific details to merge into the record
        message: Human-readable failure message, None on success
        failure_kind: Cause tag for failures
    """

    outcome: ProbeOutcome
    latency_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    failure_kind: FailureKind | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == ProbeOutcome.SUCCESS

    @classmethod
    def success(cls, latency_ms: float | None = None, **metadata: Any) -> ProbeResult:
        return cls(outcome=ProbeOutcome.SUCCESS, latency_ms=latency_ms, metadata=metadata)

    @classmethod
    def failure(
        cls,
        message: str,
        failure_kind: FailureKind,
        latency_ms: float | None = None,
    ) -> ProbeResult:
        return cls(
            outcome=ProbeOutcome.FAILURE,
            latency_ms=latency_ms,
            message=message,
            failure_kind=failure_kind,
        )
