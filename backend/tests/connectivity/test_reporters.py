"""Tests for passive event reporters.

Test cases:
- Reported successes and failures share the registry classification
- Duplicate reports are classified independently (no deduplication)
- Failures reported during a storm never drop below DEGRADED
- Slow acquisitions and acquisition timeouts feed the pool storm detector
- Rebalances feed the rebalance storm detector and metadata
- Producer send futures are reported by the done-callback
- attach() registers SQLAlchemy pool and engine events
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka import ConsumerRebalanceListener
from dephealth.connectivity.config import ConnectivityConfig, DependencyThresholds
from dephealth.connectivity.instability import InstabilityWindow
from dephealth.connectivity.models import DependencyId, HealthState
from dephealth.connectivity.registry import ConnectivityRegistry
from dephealth.connectivity.reporters import (
    BrokerEventReporter,
    CacheEventReporter,
    DatastoreEventReporter,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


@pytest.fixture
def pool_window() -> InstabilityWindow:
    return InstabilityWindow("Connection pool timeout", threshold=3, window_seconds=60.0)


@pytest.fixture
def rebalance_window() -> InstabilityWindow:
    return InstabilityWindow("Rebalance", threshold=5, window_seconds=300.0)


class TestCacheEventReporter:
    """Tests for Redis lifecycle callbacks."""

    def test_connected(self, registry: ConnectivityRegistry) -> None:
        CacheEventReporter(registry).on_connected()

        assert registry.get_snapshot(DependencyId.CACHE).state == HealthState.CONNECTED

    def test_disconnected_counts_as_failure(self, registry: ConnectivityRegistry) -> None:
        reporter = CacheEventReporter(registry)
        reporter.on_connected()

        reporter.on_disconnected("Connection reset by peer")

        snapshot = registry.get_snapshot(DependencyId.CACHE)
        assert snapshot.state == HealthState.RETRYING
        assert snapshot.last_failure_message == "Connection disconnected: Connection reset by peer"

    def test_reconnect_failed(self, registry: ConnectivityRegistry) -> None:
        CacheEventReporter(registry).on_reconnect_failed(ConnectionRefusedError("refused"))

        snapshot = registry.get_snapshot(DependencyId.CACHE)
        assert snapshot.last_failure_message == "Reconnect failed: refused"

    def test_deactivated(self, registry: ConnectivityRegistry) -> None:
        CacheEventReporter(registry).on_deactivated()

        snapshot = registry.get_snapshot(DependencyId.CACHE)
        assert snapshot.state == HealthState.RETRYING
        assert snapshot.last_failure_message == "Connection deactivated"

    def test_duplicate_reports_are_not_deduplicated(self, registry: ConnectivityRegistry) -> None:
        reporter = CacheEventReporter(registry)

        reporter.on_disconnected()
        reporter.on_disconnected()

        snapshot = registry.get_snapshot(DependencyId.CACHE)
        assert snapshot.retry_count == 2
        assert snapshot.state == HealthState.DEGRADED


class TestDatastoreEventReporter:
    """Tests for pool and driver events."""

    def test_fast_acquisition_is_ignored(
        self, registry: ConnectivityRegistry, pool_window: InstabilityWindow
    ) -> None:
        reporter = DatastoreEventReporter(registry, pool_window, slow_acquire_ms=1000.0)

        reporter.on_connection_acquired(5.0)

        assert pool_window.count == 0
        assert registry.get_snapshot(DependencyId.DATASTORE).state == HealthState.DISCONNECTED

    def test_timeouts_trigger_storm(
        self, registry: ConnectivityRegistry, pool_window: InstabilityWindow
    ) -> None:
        reporter = DatastoreEventReporter(registry, pool_window)
        reporter.on_connect()

        reporter.on_acquire_timeout()
        reporter.on_connection_acquired(2500.0)
        assert registry.get_snapshot(DependencyId.DATASTORE).state == HealthState.CONNECTED

        reporter.on_acquire_timeout()

        snapshot = registry.get_snapshot(DependencyId.DATASTORE)
        assert snapshot.state == HealthState.DEGRADED
        assert snapshot.last_failure_message == "Connection pool timeout storm detected (3 within 60s)"
        assert snapshot.retry_count == 0

    def test_connect_during_storm_stays_degraded(
        self, registry: ConnectivityRegistry, pool_window: InstabilityWindow
    ) -> None:
        reporter = DatastoreEventReporter(registry, pool_window)
        for _ in range(3):
            reporter.on_acquire_timeout()

        reporter.on_connect()

        assert registry.get_snapshot(DependencyId.DATASTORE).state == HealthState.DEGRADED

    def test_disconnect_during_pool_storm_stays_degraded(
        self, registry: ConnectivityRegistry, pool_window: InstabilityWindow
    ) -> None:
        reporter = DatastoreEventReporter(registry, pool_window)
        for _ in range(3):
            reporter.on_acquire_timeout()

        reporter.on_disconnect_error("server closed the connection")

        snapshot = registry.get_snapshot(DependencyId.DATASTORE)
        assert snapshot.state == HealthState.DEGRADED
        assert snapshot.retry_count == 1

    def test_disconnect_error(self, registry: ConnectivityRegistry) -> None:
        DatastoreEventReporter(registry).on_disconnect_error("server closed the connection")

        snapshot = registry.get_snapshot(DependencyId.DATASTORE)
        assert snapshot.state == HealthState.RETRYING
        assert snapshot.last_failure_message == "Connection lost: server closed the connection"

    def test_attach_registers_events(self, registry: ConnectivityRegistry) -> None:
        reporter = DatastoreEventReporter(registry)
        engine = MagicMock()

        with patch("dephealth.connectivity.reporters.event.listen") as mock_listen:
            reporter.attach(engine)

        identifiers = [c.args[1] for c in mock_listen.call_args_list]
        assert identifiers == ["connect", "handle_error"]
        assert mock_listen.call_args_list[0].args[0] is engine.sync_engine.pool
        assert mock_listen.call_args_list[1].args[0] is engine.sync_engine

    def test_handle_error_reports_disconnects_only(self, registry: ConnectivityRegistry) -> None:
        reporter = DatastoreEventReporter(registry)

        reporter._handle_engine_error(
            MagicMock(is_disconnect=False, original_exception=ValueError("syntax error"))
        )
        assert registry.get_snapshot(DependencyId.DATASTORE).retry_count == 0

        reporter._handle_engine_error(
            MagicMock(is_disconnect=True, original_exception=OSError("connection reset"))
        )
        assert registry.get_snapshot(DependencyId.DATASTORE).retry_count == 1

    @pytest.mark.asyncio
    async def test_acquire_times_checkout(
        self, registry: ConnectivityRegistry, pool_window: InstabilityWindow
    ) -> None:
        reporter = DatastoreEventReporter(registry, pool_window, slow_acquire_ms=0.0)
        conn = AsyncMock()
        engine = MagicMock()
        engine.connect = AsyncMock(return_value=conn)

        async with reporter.acquire(engine) as acquired:
            assert acquired is conn

        conn.close.assert_awaited_once()
        assert pool_window.count == 1

    @pytest.mark.asyncio
    async def test_acquire_timeout_is_reported(
        self, registry: ConnectivityRegistry, pool_window: InstabilityWindow
    ) -> None:
        reporter = DatastoreEventReporter(registry, pool_window)
        engine = MagicMock()
        engine.connect = AsyncMock(side_effect=PoolTimeoutError("QueuePool limit reached"))

        with pytest.raises(PoolTimeoutError):
            async with reporter.acquire(engine):
                pass

        assert pool_window.count == 1


class TestBrokerEventReporter:
    """Tests for producer and consumer callbacks."""

    def test_rebalance_storm(
        self, registry: ConnectivityRegistry, rebalance_window: InstabilityWindow
    ) -> None:
        reporter = BrokerEventReporter(registry, rebalance_window)
        reporter.on_send_success()

        for _ in range(4):
            reporter.on_rebalance()
        assert registry.get_snapshot(DependencyId.BROKER).state == HealthState.CONNECTED

        reporter.on_rebalance()

        snapshot = registry.get_snapshot(DependencyId.BROKER)
        assert snapshot.state == HealthState.DEGRADED
        assert snapshot.last_failure_message == "Rebalance storm detected (5 within 300s)"
        assert snapshot.retry_count == 0
        assert snapshot.metadata["rebalances"] == 5
        assert "lastRebalanceTime" in snapshot.metadata

    def test_send_failure_during_storm_stays_degraded(
        self, rebalance_window: InstabilityWindow
    ) -> None:
        registry = ConnectivityRegistry(
            config=ConnectivityConfig(
                thresholds={DependencyId.BROKER: DependencyThresholds(degraded_at=3, failed_at=7)}
            )
        )
        reporter = BrokerEventReporter(registry, rebalance_window)
        for _ in range(5):
            reporter.on_rebalance()
        assert rebalance_window.is_storm() is True

        reporter.report_failure("send failed")

        snapshot = registry.get_snapshot(DependencyId.BROKER)
        assert snapshot.state == HealthState.DEGRADED
        assert snapshot.consecutive_failures == 1
        assert snapshot.last_failure_message == "send failed"

    def test_partitions_lost_counts_as_rebalance(
        self, registry: ConnectivityRegistry, rebalance_window: InstabilityWindow
    ) -> None:
        BrokerEventReporter(registry, rebalance_window).on_partitions_lost(3)

        assert rebalance_window.count == 1

    def test_send_success_records_time(self, registry: ConnectivityRegistry) -> None:
        BrokerEventReporter(registry).on_send_success()

        snapshot = registry.get_snapshot(DependencyId.BROKER)
        assert snapshot.state == HealthState.CONNECTED
        assert "lastSuccessfulSendTime" in snapshot.metadata

    def test_send_failure(self, registry: ConnectivityRegistry) -> None:
        BrokerEventReporter(registry).on_send_failure(RuntimeError("NotLeaderForPartition"))

        snapshot = registry.get_snapshot(DependencyId.BROKER)
        assert snapshot.state == HealthState.RETRYING
        assert snapshot.last_failure_message == "Send failed: NotLeaderForPartition"

    @pytest.mark.asyncio
    async def test_send_callback(self, registry: ConnectivityRegistry) -> None:
        reporter = BrokerEventReporter(registry)
        loop = asyncio.get_running_loop()

        failed = loop.create_future()
        failed.set_exception(RuntimeError("timeout"))
        reporter.send_callback(failed)
        assert registry.get_snapshot(DependencyId.BROKER).retry_count == 1

        succeeded = loop.create_future()
        succeeded.set_result(MagicMock())
        reporter.send_callback(succeeded)
        assert registry.get_snapshot(DependencyId.BROKER).state == HealthState.CONNECTED

        cancelled = loop.create_future()
        cancelled.cancel()
        reporter.send_callback(cancelled)
        assert registry.get_snapshot(DependencyId.BROKER).state == HealthState.CONNECTED

    def test_rebalance_listener(
        self, registry: ConnectivityRegistry, rebalance_window: InstabilityWindow
    ) -> None:
        listener = BrokerEventReporter(registry, rebalance_window).rebalance_listener()

        assert isinstance(listener, ConsumerRebalanceListener)
        listener.on_partitions_revoked({"t-0", "t-1"})
        listener.on_partitions_assigned({"t-0"})

        assert rebalance_window.count == 1
