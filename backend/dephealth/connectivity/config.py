"""Connectivity configuration.

Failure thresholds and instability window parameters for every tracked
dependency come from this config.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from dephealth.connectivity.models import DependencyId

if TYPE_CHECKING:
    from dephealth.config import Settings


@dataclass(frozen=True)
class DependencyThresholds:
    """Consecutive-failure boundaries for one dependency.

    Attributes:
        degraded_at: Failures at which RETRYING becomes DEGRADED
        failed_at: Failures at which DEGRADED becomes FAILED
    """

    degraded_at: int
    failed_at: int

    def __post_init__(self) -> None:
        if self.degraded_at < 1:
            raise ValueError("degraded_at must be at least 1")
        if self.degraded_at >= self.failed_at:
            raise ValueError(
                f"degraded_at ({self.degraded_at}) must be lower than "
                f"failed_at ({self.failed_at})"
            )


@dataclass(frozen=True)
class WindowConfig:
    """Parameters for an instability window detector."""

    threshold: int
    window_seconds: float
    reset_interval_seconds: float

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("threshold must be at least 1")
        if self.window_seconds <= 0 or self.reset_interval_seconds <= 0:
            raise ValueError("window and reset interval must be positive")


def _default_thresholds() -> dict[DependencyId, DependencyThresholds]:
    return {
        DependencyId.DATASTORE: DependencyThresholds(degraded_at=2, failed_at=5),
        DependencyId.CACHE: DependencyThresholds(degraded_at=2, failed_at=5),
        DependencyId.BROKER: DependencyThresholds(degraded_at=3, failed_at=7),
    }


@dataclass(frozen=True)
class ConnectivityConfig:
    """Configuration for connectivity classification.

    Attributes:
        thresholds: Failure thresholds per dependency
        pool_timeouts: Datastore pool acquisition storm detector
        rebalances: Broker rebalance storm detector
        slow_acquire_ms: Pool acquisitions slower than this count as qualifying events
    """

    thresholds: dict[DependencyId, DependencyThresholds] = field(
        default_factory=_default_thresholds
    )
    pool_timeouts: WindowConfig = WindowConfig(
        threshold=3, window_seconds=60.0, reset_interval_seconds=60.0
    )
    rebalances: WindowConfig = WindowConfig(
        threshold=5, window_seconds=300.0, reset_interval_seconds=300.0
    )
    slow_acquire_ms: float = 1000.0

    def thresholds_for(self, dependency: DependencyId) -> DependencyThresholds:
        """Thresholds for a dependency, falling back to the datastore defaults."""
        return self.thresholds.get(dependency, DependencyThresholds(degraded_at=2, failed_at=5))

    @classmethod
    def from_settings(cls, settings: Settings) -> ConnectivityConfig:
        """Build the config from process settings."""
        return cls(
            thresholds={
                DependencyId.DATASTORE: DependencyThresholds(
                    degraded_at=settings.datastore_degraded_at,
                    failed_at=settings.datastore_failed_at,
                ),
                DependencyId.CACHE: DependencyThresholds(
                    degraded_at=settings.cache_degraded_at,
                    failed_at=settings.cache_failed_at,
                ),
                DependencyId.BROKER: DependencyThresholds(
                    degraded_at=settings.broker_degraded_at,
                    failed_at=settings.broker_failed_at,
                ),
            },
            pool_timeouts=WindowConfig(
                threshold=settings.pool_timeout_threshold,
                window_seconds=settings.pool_timeout_window_seconds,
                reset_interval_seconds=settings.pool_timeout_reset_seconds,
            ),
            rebalances=WindowConfig(
                threshold=settings.rebalance_storm_threshold,
                window_seconds=settings.rebalance_window_seconds,
                reset_interval_seconds=settings.rebalance_reset_seconds,
            ),
            slow_acquire_ms=settings.slow_acquire_ms,
        )


# Global config instance
_config: ConnectivityConfig | None = None


def get_config() -> ConnectivityConfig:
    """Get the default connectivity config instance."""
    global _config
    if _config is None:
        _config = ConnectivityConfig()
    return _config


def set_config(config: ConnectivityConfig) -> None:
    """Set the default connectivity config (for testing)."""
    global _config
    _config = config
