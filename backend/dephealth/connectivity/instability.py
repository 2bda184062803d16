"""Instability window detector.

Flags a "storm" when N qualifying events happened and the latest one falls
within the trailing window:

    storm = count >= threshold and now - last_event < window

The count is zeroed by reset() on a fixed periodic cadence (a scheduler job),
not by aging events out of a sliding window. Events straddling a reset
boundary are undercounted.

Used for:
- Datastore pool acquisition timeouts / slow acquisitions
- Broker consumer rebalances
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from dephealth.connectivity.config import WindowConfig

logger = logging.getLogger(__name__)


class InstabilityWindow:
    """Counts qualifying events and reports storms.

    Thread-safe: events arrive from client-library callback threads while
    probes and the reset job read from the event loop.

    Attributes:
        name: Human-readable event name used in storm descriptions
        threshold: Events needed for a storm
        window_seconds: Maximum age of the latest event for a storm
        reset_interval_seconds: Cadence of the periodic reset job
    """

    def __init__(
        self,
        name: str,
        threshold: int,
        window_seconds: float,
        reset_interval_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.reset_interval_seconds = reset_interval_seconds or window_seconds
        self._clock = clock
        self._count = 0
        self._last_event_mono: float | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, name: str, config: WindowConfig, **kwargs) -> InstabilityWindow:
        return cls(
            name=name,
            threshold=config.threshold,
            window_seconds=config.window_seconds,
            reset_interval_seconds=config.reset_interval_seconds,
            **kwargs,
        )

    @property
    def count(self) -> int:
        """Qualifying events since the last reset."""
        return self._count

    @property
    def last_event_mono(self) -> float | None:
        """Monotonic timestamp of the most recent qualifying event."""
        return self._last_event_mono

    def record(self, now: float | None = None) -> bool:
        """Record a qualifying event.

        Returns:
            True if a storm is active after recording the event
        """
        with self._lock:
            now = self._clock() if now is None else now
            self._count += 1
            self._last_event_mono = now
            return self._storm_locked(now)

    def is_storm(self, now: float | None = None) -> bool:
        """Whether a storm is currently active."""
        with self._lock:
            return self._storm_locked(self._clock() if now is None else now)

    def describe(self) -> str:
        """Storm message recorded as the dependency's failure message."""
        return f"{self.name} storm detected ({self._count} within {self.window_seconds:g}s)"

    def storm_message(self, now: float | None = None) -> str | None:
        """Storm description if a storm is active, otherwise None."""
        with self._lock:
            if not self._storm_locked(self._clock() if now is None else now):
                return None
        return self.describe()

    def reset(self) -> int:
        """Zero the event count.

        The last event timestamp is kept; with a zero count no storm can be
        declared until the threshold is reached again.

        Returns:
            The count before the reset
        """
        with self._lock:
            old_count = self._count
            self._count = 0
        if old_count > 0:
            logger.debug(f"Reset {self.name} counter (was {old_count})")
        return old_count

    def _storm_locked(self, now: float) -> bool:
        if self._count < self.threshold or self._last_event_mono is None:
            return False
        return now - self._last_event_mono < self.window_seconds
