"""Passive event reporters.

Client libraries push connection lifecycle events through these reporters,
which feed the same registry as the scheduled probes. Every callback
finishes quickly: no network I/O, only a registry update under the
per-dependency lock.

Reports are not deduplicated. A duplicate or out-of-order event is
classified independently against the current counters.

If a client library offers no lifecycle hooks the reporter is simply never
called and the scheduled probes alone drive the state.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from aiokafka import ConsumerRebalanceListener
from sqlalchemy import event
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from dephealth.connectivity.errors import CallbackReportedFailure
from dephealth.connectivity.instability import InstabilityWindow
from dephealth.connectivity.models import (
    ConnectionSnapshot,
    DependencyId,
    ProbeOutcome,
    utc_now,
)
from dephealth.connectivity.registry import ConnectivityRegistry

logger = logging.getLogger(__name__)


class PassiveReporter:
    """Base reporter: success/failure straight into the registry.

    Args:
        registry: Registry receiving the reports
        window: Optional storm detector; while a storm is active no report
            leaves the dependency below DEGRADED
    """

    dependency: DependencyId

    def __init__(
        self,
        registry: ConnectivityRegistry,
        window: InstabilityWindow | None = None,
    ) -> None:
        self._registry = registry
        self._window = window

    @property
    def window(self) -> InstabilityWindow | None:
        return self._window

    def report_success(self) -> ConnectionSnapshot | None:
        storm = self._window.storm_message() if self._window is not None else None
        return self._registry.update_state(
            self.dependency, ProbeOutcome.SUCCESS, instability=storm
        )

    def report_failure(self, message: str) -> ConnectionSnapshot | None:
        storm = self._window.storm_message() if self._window is not None else None
        return self._registry.update_state(
            self.dependency, ProbeOutcome.FAILURE, message, instability=storm
        )

    def _record_instability_event(self) -> ConnectionSnapshot | None:
        """Count a qualifying event and report a storm if one is active."""
        if self._window is None:
            return None
        if self._window.record():
            return self._registry.report_instability(self.dependency, self._window.describe())
        return None


class DatastoreEventReporter(PassiveReporter):
    """Reports connection pool events for the datastore.

    Slow acquisitions and acquisition timeouts feed the pool instability
    window. New connections count as successes; disconnect errors raised
    by the driver count as failures.
    """

    dependency = DependencyId.DATASTORE

    def __init__(
        self,
        registry: ConnectivityRegistry,
        window: InstabilityWindow | None = None,
        slow_acquire_ms: float = 1000.0,
    ) -> None:
        super().__init__(registry, window)
        self._slow_acquire_ms = slow_acquire_ms

    def on_connection_acquired(self, elapsed_ms: float) -> None:
        """A connection was checked out of the pool after ``elapsed_ms``."""
        if elapsed_ms > self._slow_acquire_ms:
            logger.warning(f"Slow datastore connection acquisition: {elapsed_ms:.0f}ms")
            self._record_instability_event()

    def on_acquire_timeout(self) -> None:
        """Checking out a connection timed out."""
        logger.error("Datastore connection acquisition timeout")
        self._record_instability_event()

    def on_connect(self) -> None:
        """The pool opened a new connection to the datastore."""
        logger.debug("Datastore connection established")
        self.report_success()

    def on_disconnect_error(self, message: str) -> None:
        """The driver reported an error that invalidated the connection."""
        self.report_failure(str(CallbackReportedFailure("Connection lost", message)))

    @asynccontextmanager
    async def acquire(self, engine: Any) -> AsyncIterator[Any]:
        """Check out a connection while timing the acquisition.

        Usage:
            async with reporter.acquire(engine) as conn:
                await conn.execute(...)
        """
        start = time.perf_counter()
        try:
            conn = await engine.connect()
        except PoolTimeoutError:
            self.on_acquire_timeout()
            raise
        self.on_connection_acquired((time.perf_counter() - start) * 1000)
        try:
            yield conn
        finally:
            await conn.close()

    def attach(self, engine: Any) -> None:
        """Register SQLAlchemy pool and engine events.

        Args:
            engine: AsyncEngine or Engine
        """
        sync_engine = getattr(engine, "sync_engine", engine)
        event.listen(sync_engine.pool, "connect", self._handle_pool_connect)
        event.listen(sync_engine, "handle_error", self._handle_engine_error)
        logger.info("Datastore event reporter attached to engine")

    def _handle_pool_connect(self, dbapi_connection: Any, connection_record: Any) -> None:
        self.on_connect()

    def _handle_engine_error(self, context: Any) -> None:
        if context.is_disconnect:
            self.on_disconnect_error(str(context.original_exception))


class CacheEventReporter(PassiveReporter):
    """Reports Redis connection lifecycle events.

    redis-py has no lifecycle event bus, so these are plain callbacks the
    application invokes from its own connection handling.
    """

    dependency = DependencyId.CACHE

    def on_connected(self) -> None:
        logger.info("Redis connected event received")
        self.report_success()

    def on_disconnected(self, reason: str | None = None) -> None:
        logger.warning("Redis disconnected event received")
        self.report_failure(str(CallbackReportedFailure("Connection disconnected", reason)))

    def on_reconnect_failed(self, error: BaseException) -> None:
        logger.error(f"Redis reconnect failed: {error}")
        self.report_failure(str(CallbackReportedFailure("Reconnect failed", error)))

    def on_deactivated(self) -> None:
        logger.warning("Redis connection deactivated")
        self.report_failure("Connection deactivated")


class BrokerEventReporter(PassiveReporter):
    """Reports Kafka producer acknowledgements and consumer rebalances.

    Rebalances feed the rebalance instability window. Producer send results
    are reported as successes and failures.
    """

    dependency = DependencyId.BROKER

    def on_rebalance(self) -> None:
        """A consumer group rebalance started."""
        self._registry.update_metadata(
            self.dependency, {"lastRebalanceTime": utc_now().isoformat()}
        )
        if self._window is None:
            return

        storm = self._window.record()
        logger.info(f"Kafka consumer rebalance #{self._window.count}")
        self._registry.update_metadata(self.dependency, {"rebalances": self._window.count})
        if storm:
            self._registry.report_instability(self.dependency, self._window.describe())

    def on_partitions_lost(self, count: int) -> None:
        """Partitions were lost without an orderly revoke."""
        logger.error(f"Kafka partitions lost: {count} partitions")
        self.on_rebalance()

    def on_send_success(self) -> None:
        self._registry.update_metadata(
            self.dependency, {"lastSuccessfulSendTime": utc_now().isoformat()}
        )
        self.report_success()

    def on_send_failure(self, error: BaseException) -> None:
        logger.warning(f"Kafka producer send failure: {error}")
        self.report_failure(str(CallbackReportedFailure("Send failed", error)))

    def send_callback(self, future: Any) -> None:
        """Done-callback for producer send futures.

        Usage:
            future = await producer.send(topic, value)
            future.add_done_callback(reporter.send_callback)
        """
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.on_send_failure(error)
        else:
            self.on_send_success()

    def rebalance_listener(self) -> ConsumerRebalanceListener:
        """Listener to pass to ``AIOKafkaConsumer.subscribe(listener=...)``."""
        return _RebalanceListener(self)


class _RebalanceListener(ConsumerRebalanceListener):
    def __init__(self, reporter: BrokerEventReporter) -> None:
        self._reporter = reporter

    def on_partitions_revoked(self, revoked) -> None:
        logger.info(f"Kafka partitions revoked: {len(revoked)} partitions")
        self._reporter.on_rebalance()

    def on_partitions_assigned(self, assigned) -> None:
        logger.info(f"Kafka partitions assigned: {len(assigned)} partitions")
