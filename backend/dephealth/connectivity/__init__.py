"""Connectivity tracking for external dependencies.

This module tracks the health of the datastore, the cache and the message
broker: the state model, the registry, probes, passive reporters and the
probe scheduler.
"""

from dephealth.connectivity.config import (
    ConnectivityConfig,
    DependencyThresholds,
    WindowConfig,
    get_config,
    set_config,
)
from dephealth.connectivity.errors import (
    CallbackReportedFailure,
    ConnectivityError,
    ProbeConnectionRefused,
    ProbeError,
    ProbeProtocolError,
    ProbeTimeout,
    UnknownDependencyId,
)
from dephealth.connectivity.instability import InstabilityWindow
from dephealth.connectivity.metrics import (
    MetricsSink,
    NullMetricsSink,
    PrometheusMetricsSink,
)
from dephealth.connectivity.models import (
    STATE_SEVERITY,
    ConnectionSnapshot,
    DependencyId,
    DependencyRecord,
    FailureKind,
    HealthState,
    ProbeOutcome,
    ProbeResult,
)
from dephealth.connectivity.probes import (
    BaseProbe,
    BrokerProbe,
    CacheProbe,
    DatastoreProbe,
    DependencyProbe,
)
from dephealth.connectivity.registry import ConnectivityRegistry
from dephealth.connectivity.reporters import (
    BrokerEventReporter,
    CacheEventReporter,
    DatastoreEventReporter,
    PassiveReporter,
)
from dephealth.connectivity.scheduler import ProbeSchedule, ProbeScheduler
from dephealth.connectivity.state_model import HealthStateModel, Transition

# Note: setup is intentionally not exported here; it imports the client
# libraries. Import directly from dephealth.connectivity.setup when needed.

__all__ = [
    # Enums
    "DependencyId",
    "HealthState",
    "ProbeOutcome",
    "FailureKind",
    # Constants
    "STATE_SEVERITY",
    # Dataclasses
    "ConnectionSnapshot",
    "DependencyRecord",
    "ProbeResult",
    "Transition",
    # Config
    "ConnectivityConfig",
    "DependencyThresholds",
    "WindowConfig",
    "get_config",
    "set_config",
    # Errors
    "ConnectivityError",
    "ProbeError",
    "ProbeTimeout",
    "ProbeConnectionRefused",
    "ProbeProtocolError",
    "CallbackReportedFailure",
    "UnknownDependencyId",
    # Core
    "HealthStateModel",
    "InstabilityWindow",
    "ConnectivityRegistry",
    # Metrics
    "MetricsSink",
    "NullMetricsSink",
    "PrometheusMetricsSink",
    # Probes
    "DependencyProbe",
    "BaseProbe",
    "DatastoreProbe",
    "CacheProbe",
    "BrokerProbe",
    # Passive reporters
    "PassiveReporter",
    "DatastoreEventReporter",
    "CacheEventReporter",
    "BrokerEventReporter",
    # Scheduling
    "ProbeSchedule",
    "ProbeScheduler",
]
