"""Probe scheduling.

One independent interval job per dependency probe plus one reset job per
instability window, all on a single AsyncIOScheduler. Probe coroutines share
a bounded pool of execution slots so that a slow probe for one dependency
never starves the others beyond that bound.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from dephealth.connectivity.errors import UnknownDependencyId
from dephealth.connectivity.instability import InstabilityWindow
from dephealth.connectivity.models import ConnectionSnapshot, DependencyId, ProbeResult
from dephealth.connectivity.probes import DependencyProbe
from dephealth.connectivity.registry import ConnectivityRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeSchedule:
    """Timer settings for one probe.

    Attributes:
        interval_seconds: Delay between probe runs
        initial_delay_seconds: Delay before the first run
    """

    interval_seconds: float
    initial_delay_seconds: float = 0.0


class ProbeScheduler:
    """Runs dependency probes and window resets on fixed timers.

    Usage:
        scheduler = ProbeScheduler(registry, probes, schedules, detectors=[rebalances])
        scheduler.start()
        ...
        scheduler.shutdown()
    """

    def __init__(
        self,
        registry: ConnectivityRegistry,
        probes: Iterable[DependencyProbe],
        schedules: dict[DependencyId, ProbeSchedule],
        detectors: Iterable[InstabilityWindow] = (),
        jitter_seconds: float = 1.0,
        max_concurrent_probes: int = 3,
    ) -> None:
        self._registry = registry
        self._probes: dict[DependencyId, DependencyProbe] = {p.dependency: p for p in probes}
        self._schedules = schedules
        self._detectors = list(detectors)
        self._jitter = jitter_seconds
        self._max_concurrent = max_concurrent_probes
        self._semaphore: asyncio.Semaphore | None = None
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def probes(self) -> dict[DependencyId, DependencyProbe]:
        return dict(self._probes)

    def job_ids(self) -> list[str]:
        """Ids of the registered jobs (empty when not started)."""
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    def start(self) -> None:
        """Register all jobs and start the scheduler.

        Must be called from within a running event loop.
        """
        if self.running:
            logger.warning("Probe scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        now = datetime.now(timezone.utc)

        for dependency, probe in self._probes.items():
            schedule = self._schedules.get(dependency)
            if schedule is None:
                logger.warning(f"No schedule configured for {dependency.value}, probe disabled")
                continue
            self._scheduler.add_job(
                self._run_scheduled_probe,
                IntervalTrigger(
                    seconds=schedule.interval_seconds,
                    start_date=now + timedelta(seconds=schedule.initial_delay_seconds),
                    jitter=self._jitter or None,
                ),
                args=[probe],
                id=f"probe_{dependency.value}",
                name=f"Probe {dependency.value} health",
                max_instances=1,
                coalesce=True,
            )

        for detector in self._detectors:
            self._scheduler.add_job(
                self._reset_detector,
                IntervalTrigger(seconds=detector.reset_interval_seconds),
                args=[detector],
                id=f"reset_{_job_suffix(detector.name)}",
                name=f"Reset {detector.name} counter",
                max_instances=1,
                coalesce=True,
            )

        self._scheduler.start()
        logger.info(f"Probe scheduler started with {len(self.job_ids())} jobs")

    def shutdown(self) -> None:
        """Stop issuing probes. In-flight probes are not awaited."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Probe scheduler stopped")

    async def trigger(self, dependency: DependencyId) -> ConnectionSnapshot | None:
        """Run a health check now, through the scheduled code path.

        Safe to call concurrently with the timer for the same dependency.

        Raises:
            UnknownDependencyId: If no probe is registered for ``dependency``
        """
        probe = self._probes.get(dependency)
        if probe is None:
            raise UnknownDependencyId(dependency)

        logger.info(f"Manual health check triggered for {dependency.value}")
        await self._run_probe(probe)
        return self._registry.get_snapshot(dependency)

    async def _run_probe(self, probe: DependencyProbe) -> ProbeResult:
        async with self._get_semaphore():
            return await probe.run_once()

    async def _run_scheduled_probe(self, probe: DependencyProbe) -> None:
        """Scheduled job: run one probe."""
        try:
            await self._run_probe(probe)
        except Exception as e:
            logger.exception(f"Probe job for {probe.dependency.value} failed: {e}")

    def _reset_detector(self, detector: InstabilityWindow) -> None:
        """Scheduled job: zero an instability window counter."""
        try:
            detector.reset()
        except Exception as e:
            logger.exception(f"Resetting {detector.name} counter failed: {e}")

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrent)
        return self._semaphore


def _job_suffix(name: str) -> str:
    return "_".join(name.lower().split())
