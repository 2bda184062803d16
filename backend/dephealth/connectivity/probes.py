"""Dependency probe adapters.

Each dependency kind provides a probe that performs a bounded-time health
check and reports the outcome to the ConnectivityRegistry.

Key concepts:
- ProbeResult: Outcome of one check (success/failure, latency, metadata)
- DependencyProbe: Protocol the scheduler and API operate against
- BaseProbe: Shared scaffolding (timeout, latency, exception conversion)
- Concrete probes: DatastoreProbe, CacheProbe, BrokerProbe

A probe never raises out of run_once(): every exception is converted into
a failure result with a human-readable message.

Usage:
    probe = CacheProbe(registry, redis_client)
    result = await probe.run_once()
    if not result.succeeded:
        print(result.message)
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from aiokafka.errors import KafkaConnectionError, KafkaTimeoutError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from dephealth.connectivity.errors import (
    ProbeConnectionRefused,
    ProbeError,
    ProbeProtocolError,
    ProbeTimeout,
)
from dephealth.connectivity.instability import InstabilityWindow
from dephealth.connectivity.models import (
    ConnectionSnapshot,
    DependencyId,
    FailureKind,
    ProbeOutcome,
    ProbeResult,
    utc_now,
)
from dephealth.connectivity.registry import ConnectivityRegistry

logger = logging.getLogger(__name__)


_PROBE_ERROR_KINDS: dict[type[ProbeError], FailureKind] = {
    ProbeTimeout: FailureKind.PROBE_TIMEOUT,
    ProbeConnectionRefused: FailureKind.CONNECTION_REFUSED,
    ProbeProtocolError: FailureKind.PROTOCOL_ERROR,
}


@runtime_checkable
class DependencyProbe(Protocol):
    """Protocol for dependency probes.

    The scheduler, the setup module and the API only use this interface,
    never the concrete probe classes.
    """

    dependency: DependencyId

    async def probe(self) -> ProbeResult:
        """Perform one bounded-time health check without reporting it."""
        ...

    async def run_once(self) -> ProbeResult:
        """Probe and report the result to the registry. Never raises."""
        ...

    def report_success(self, metadata: dict[str, Any] | None = None) -> ConnectionSnapshot | None:
        ...

    def report_failure(self, message: str) -> ConnectionSnapshot | None:
        ...


class BaseProbe:
    """Shared scaffolding for dependency probes.

    Subclasses implement check(), which raises on failure and returns
    dependency metadata on success, and may override collect_metadata()
    for details gathered regardless of the outcome.

    Args:
        registry: Registry receiving the results
        timeout_seconds: Upper bound for one check
        instability: Optional storm detector reconciled with every report
    """

    dependency: DependencyId
    # Client exceptions that mean the dependency refused or dropped the connection
    connection_errors: tuple[type[BaseException], ...] = (ConnectionError,)
    timeout_errors: tuple[type[BaseException], ...] = (TimeoutError,)

    def __init__(
        self,
        registry: ConnectivityRegistry,
        timeout_seconds: float = 5.0,
        instability: InstabilityWindow | None = None,
    ) -> None:
        self._registry = registry
        self._timeout = timeout_seconds
        self._instability = instability

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def check(self) -> dict[str, Any]:
        """Dependency-specific health check.

        Returns:
            Metadata to merge into the registry record

        Raises:
            Exception: Any failure; converted into a failure result
        """
        raise NotImplementedError

    def collect_metadata(self) -> dict[str, Any]:
        """Metadata gathered after every probe, whatever the outcome."""
        return {}

    async def probe(self) -> ProbeResult:
        """Run check() under the timeout and convert errors to results."""
        start = time.perf_counter()
        try:
            metadata = await asyncio.wait_for(self.check(), timeout=self._timeout)
        except TimeoutError:
            return ProbeResult.failure(
                str(ProbeTimeout(self._timeout)),
                FailureKind.PROBE_TIMEOUT,
                latency_ms=_elapsed_ms(start),
            )
        except Exception as e:
            return ProbeResult.failure(
                _describe(e),
                self._classify(e),
                latency_ms=_elapsed_ms(start),
            )

        return ProbeResult.success(latency_ms=_elapsed_ms(start), **(metadata or {}))

    async def run_once(self) -> ProbeResult:
        """Probe the dependency and report the outcome.

        Never raises: registry or metadata errors are logged and the
        result is still returned.
        """
        try:
            self._registry.mark_connecting(self.dependency)
        except Exception:
            logger.exception(f"Failed to mark {self.dependency.value} as connecting")

        result = await self.probe()

        try:
            if result.latency_ms is not None:
                self._registry.record_latency(self.dependency, result.latency_ms)
            if result.succeeded:
                self.report_success(result.metadata)
            else:
                logger.warning(
                    f"{self.dependency.value} health check failed "
                    f"({result.failure_kind.value}): {result.message}"
                )
                self.report_failure(result.message)
            self._registry.update_metadata(self.dependency, self.collect_metadata())
        except Exception:
            logger.exception(f"Failed to report {self.dependency.value} probe result")

        return result

    async def trigger_health_check(self) -> ConnectionSnapshot | None:
        """On-demand health check using the scheduled code path.

        Returns:
            Snapshot after the check
        """
        await self.run_once()
        return self._registry.get_snapshot(self.dependency)

    def report_success(self, metadata: dict[str, Any] | None = None) -> ConnectionSnapshot | None:
        storm = self._instability.storm_message() if self._instability is not None else None
        snapshot = self._registry.update_state(
            self.dependency, ProbeOutcome.SUCCESS, instability=storm
        )
        if metadata:
            self._registry.update_metadata(self.dependency, metadata)
        return snapshot

    def report_failure(self, message: str) -> ConnectionSnapshot | None:
        storm = self._instability.storm_message() if self._instability is not None else None
        return self._registry.update_state(
            self.dependency, ProbeOutcome.FAILURE, message, instability=storm
        )

    def _classify(self, error: Exception) -> FailureKind:
        for error_type, kind in _PROBE_ERROR_KINDS.items():
            if isinstance(error, error_type):
                return kind
        if isinstance(error, self.timeout_errors):
            return FailureKind.PROBE_TIMEOUT
        if isinstance(error, self.connection_errors):
            return FailureKind.CONNECTION_REFUSED
        return FailureKind.PROTOCOL_ERROR


class DatastoreProbe(BaseProbe):
    """Probe for the relational datastore.

    Executes ``SELECT 1`` on a pooled connection of a SQLAlchemy AsyncEngine
    and reports pool occupancy as metadata.
    """

    dependency = DependencyId.DATASTORE
    connection_errors = (ConnectionError, DBAPIError)
    timeout_errors = (TimeoutError, PoolTimeoutError)

    def __init__(
        self,
        registry: ConnectivityRegistry,
        engine: Any,
        timeout_seconds: float = 5.0,
        instability: InstabilityWindow | None = None,
    ) -> None:
        """Initialize with a SQLAlchemy engine.

        Args:
            registry: Registry receiving the results
            engine: AsyncEngine (or anything with an async connect() context)
            timeout_seconds: Upper bound for one check
            instability: Pool acquisition storm detector
        """
        super().__init__(registry, timeout_seconds, instability)
        self._engine = engine

    async def check(self) -> dict[str, Any]:
        async with self._engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            value = result.scalar()
        if value != 1:
            raise ProbeProtocolError(f"Unexpected SELECT 1 result: {value!r}")
        return {}

    def collect_metadata(self) -> dict[str, Any]:
        pool = getattr(self._engine, "pool", None)
        if pool is None:
            return {}

        metadata: dict[str, Any] = {}
        for key, attr in (
            ("poolSize", "size"),
            ("checkedOut", "checkedout"),
            ("checkedIn", "checkedin"),
            ("overflow", "overflow"),
        ):
            method = getattr(pool, attr, None)
            if callable(method):
                try:
                    metadata[key] = method()
                except Exception as e:
                    logger.debug(f"Failed to read datastore pool {attr}: {e}")
        return metadata


class CacheProbe(BaseProbe):
    """Probe for the Redis cache via PING."""

    dependency = DependencyId.CACHE
    connection_errors = (ConnectionError, RedisConnectionError)
    timeout_errors = (TimeoutError, RedisTimeoutError)

    def __init__(
        self,
        registry: ConnectivityRegistry,
        redis_client: Any,
        mode: str = "standalone",
        timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize with a Redis client.

        Args:
            registry: Registry receiving the results
            redis_client: Redis client with async ping() method
            mode: Deployment mode reported in metadata (standalone, cluster)
            timeout_seconds: Upper bound for one check
        """
        super().__init__(registry, timeout_seconds)
        self._redis = redis_client
        self._mode = mode
        self._last_successful_ping: datetime | None = None

    async def check(self) -> dict[str, Any]:
        pong = await self._redis.ping()
        if not pong:
            raise ProbeProtocolError(f"Unexpected PING response: {pong!r}")
        self._last_successful_ping = utc_now()
        return {}

    def collect_metadata(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"mode": self._mode}
        if self._last_successful_ping is not None:
            metadata["lastPingTime"] = self._last_successful_ping.isoformat()
            metadata["secondsSinceLastPing"] = int(
                (utc_now() - self._last_successful_ping).total_seconds()
            )
        return metadata


class BrokerProbe(BaseProbe):
    """Probe for the Kafka broker via cluster metadata.

    Uses an admin client's describe_cluster() so no message is produced or
    consumed. A successful check during a rebalance storm still reports
    DEGRADED.
    """

    dependency = DependencyId.BROKER
    connection_errors = (ConnectionError, KafkaConnectionError)
    timeout_errors = (TimeoutError, KafkaTimeoutError)

    def __init__(
        self,
        registry: ConnectivityRegistry,
        admin_client: Any,
        timeout_seconds: float = 5.0,
        rebalances: InstabilityWindow | None = None,
    ) -> None:
        """Initialize with a Kafka admin client.

        Args:
            registry: Registry receiving the results
            admin_client: Admin client with async start() and describe_cluster()
            timeout_seconds: Upper bound for one check
            rebalances: Rebalance storm detector shared with the event reporter
        """
        super().__init__(registry, timeout_seconds, rebalances)
        self._admin = admin_client
        self._started = False

    async def check(self) -> dict[str, Any]:
        if not self._started:
            await self._admin.start()
            self._started = True

        cluster = await self._admin.describe_cluster()
        if not isinstance(cluster, dict):
            raise ProbeProtocolError(f"Unexpected cluster description: {type(cluster).__name__}")

        brokers = cluster.get("brokers") or []
        if not brokers:
            raise ProbeProtocolError("Cluster description lists no brokers")

        logger.debug(f"Kafka cluster accessible: {cluster.get('cluster_id')} ({len(brokers)} nodes)")
        return {"brokerCount": len(brokers), "clusterId": cluster.get("cluster_id")}

    def collect_metadata(self) -> dict[str, Any]:
        if self._instability is None:
            return {}
        return {"rebalances": self._instability.count}


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _describe(error: Exception) -> str:
    message = str(error)
    return message if message else type(error).__name__
