"""Connectivity tracking setup and lifecycle.

Builds the registry, probes, passive reporters, instability windows and the
probe scheduler from process settings, and wires them together explicitly.
There is no global registry: the returned ConnectivityServices is the only
handle, and the application keeps it (FastAPI stores it on app.state).

Usage:
    from dephealth.connectivity.setup import (
        build_services,
        create_clients,
        start_services,
        stop_services,
    )

    # During startup:
    engine, redis_client, admin_client = create_clients(settings)
    services = build_services(
        settings, engine=engine, redis_client=redis_client, admin_client=admin_client
    )
    await start_services(services)

    # Later:
    snapshot = services.registry.get_snapshot(DependencyId.CACHE)

    # During shutdown:
    await stop_services(services)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis
from aiokafka.admin import AIOKafkaAdminClient
from sqlalchemy.ext.asyncio import create_async_engine

from dephealth.connectivity.config import ConnectivityConfig
from dephealth.connectivity.instability import InstabilityWindow
from dephealth.connectivity.metrics import MetricsSink, PrometheusMetricsSink
from dephealth.connectivity.models import DependencyId
from dephealth.connectivity.probes import (
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
)
from dephealth.connectivity.scheduler import ProbeSchedule, ProbeScheduler

if TYPE_CHECKING:
    from dephealth.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class ConnectivityServices:
    """Container for all connectivity components.

    Attributes:
        config: Classification thresholds and window parameters
        registry: The ConnectivityRegistry (single source of truth)
        metrics_sink: Sink receiving transition metrics
        probes: Probe per dependency
        scheduler: Timer driving the probes and window resets
        pool_timeouts: Datastore pool acquisition storm detector
        rebalances: Broker rebalance storm detector
        datastore_events: Passive reporter for pool/driver events
        cache_events: Passive reporter for Redis connection events
        broker_events: Passive reporter for producer/consumer events
        clients: Client objects whose lifecycle the services own
    """

    config: ConnectivityConfig
    registry: ConnectivityRegistry
    metrics_sink: MetricsSink
    probes: dict[DependencyId, DependencyProbe]
    scheduler: ProbeScheduler
    pool_timeouts: InstabilityWindow
    rebalances: InstabilityWindow
    datastore_events: DatastoreEventReporter
    cache_events: CacheEventReporter
    broker_events: BrokerEventReporter
    clients: dict[str, Any] = field(default_factory=dict)

    @property
    def detectors(self) -> list[InstabilityWindow]:
        return [self.pool_timeouts, self.rebalances]


def create_clients(settings: Settings) -> tuple[Any, Any, Any]:
    """Create the dependency clients without connecting.

    SQLAlchemy engines, redis clients and the aiokafka admin client only
    connect on first use, so this never fails when a dependency is down.

    Returns:
        (engine, redis_client, admin_client)
    """
    engine = create_async_engine(
        settings.database_url,
        echo=False,
        pool_pre_ping=True,
        pool_timeout=settings.probe_timeout,
    )
    redis_client = redis.from_url(
        settings.redis_url,
        socket_connect_timeout=settings.probe_timeout,
        socket_timeout=settings.probe_timeout,
    )
    admin_client = AIOKafkaAdminClient(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        request_timeout_ms=int(settings.probe_timeout * 1000),
    )
    logger.info("Dependency clients created")
    return engine, redis_client, admin_client


def build_schedules(settings: Settings) -> dict[DependencyId, ProbeSchedule]:
    """Probe timer settings per dependency."""
    return {
        DependencyId.DATASTORE: ProbeSchedule(
            interval_seconds=settings.datastore_probe_interval,
            initial_delay_seconds=settings.datastore_initial_delay,
        ),
        DependencyId.CACHE: ProbeSchedule(
            interval_seconds=settings.cache_probe_interval,
            initial_delay_seconds=settings.cache_initial_delay,
        ),
        DependencyId.BROKER: ProbeSchedule(
            interval_seconds=settings.broker_probe_interval,
            initial_delay_seconds=settings.broker_initial_delay,
        ),
    }


def build_services(
    settings: Settings,
    *,
    engine: Any = None,
    redis_client: Any = None,
    admin_client: Any = None,
    metrics_sink: MetricsSink | None = None,
    config: ConnectivityConfig | None = None,
) -> ConnectivityServices:
    """Construct and wire every connectivity component.

    A probe is only created for a dependency whose client is provided; the
    dependency is still tracked and stays DISCONNECTED.

    Args:
        settings: Process settings
        engine: SQLAlchemy AsyncEngine for the datastore
        redis_client: redis.asyncio client for the cache
        admin_client: aiokafka admin client for the broker
        metrics_sink: Defaults to a PrometheusMetricsSink with its own registry
        config: Defaults to ConnectivityConfig.from_settings(settings)

    Returns:
        ConnectivityServices, not yet started
    """
    if config is None:
        config = ConnectivityConfig.from_settings(settings)
    if metrics_sink is None:
        metrics_sink = PrometheusMetricsSink()

    registry = ConnectivityRegistry(config=config, metrics_sink=metrics_sink)

    pool_timeouts = InstabilityWindow.from_config("Connection pool timeout", config.pool_timeouts)
    rebalances = InstabilityWindow.from_config("Rebalance", config.rebalances)

    probes: dict[DependencyId, DependencyProbe] = {}
    if engine is not None:
        probes[DependencyId.DATASTORE] = DatastoreProbe(
            registry, engine, timeout_seconds=settings.probe_timeout, instability=pool_timeouts
        )
    if redis_client is not None:
        probes[DependencyId.CACHE] = CacheProbe(
            registry, redis_client, mode=settings.redis_mode, timeout_seconds=settings.probe_timeout
        )
    if admin_client is not None:
        probes[DependencyId.BROKER] = BrokerProbe(
            registry, admin_client, timeout_seconds=settings.probe_timeout, rebalances=rebalances
        )

    datastore_events = DatastoreEventReporter(
        registry, pool_timeouts, slow_acquire_ms=config.slow_acquire_ms
    )
    if engine is not None:
        datastore_events.attach(engine)

    scheduler = ProbeScheduler(
        registry,
        probes.values(),
        build_schedules(settings),
        detectors=[pool_timeouts, rebalances],
        jitter_seconds=settings.probe_jitter,
        max_concurrent_probes=settings.max_concurrent_probes,
    )

    clients = {
        name: client
        for name, client in (
            ("engine", engine),
            ("redis", redis_client),
            ("kafka_admin", admin_client),
        )
        if client is not None
    }

    services = ConnectivityServices(
        config=config,
        registry=registry,
        metrics_sink=metrics_sink,
        probes=probes,
        scheduler=scheduler,
        pool_timeouts=pool_timeouts,
        rebalances=rebalances,
        datastore_events=datastore_events,
        cache_events=CacheEventReporter(registry),
        broker_events=BrokerEventReporter(registry, rebalances),
        clients=clients,
    )

    logger.info(
        f"Connectivity services built: probes={[d.value for d in probes]}, "
        f"tracked={[d.value for d in registry.dependencies]}"
    )
    return services


async def start_services(services: ConnectivityServices) -> None:
    """Start the probe scheduler. Never touches the network itself."""
    services.scheduler.start()
    logger.info("Connectivity services started")


async def stop_services(services: ConnectivityServices) -> None:
    """Stop the scheduler and close owned clients.

    Close errors are logged and do not abort the shutdown.
    """
    services.scheduler.shutdown()

    engine = services.clients.get("engine")
    if engine is not None:
        try:
            await engine.dispose()
        except Exception as e:
            logger.warning(f"Error disposing datastore engine: {e}")

    redis_client = services.clients.get("redis")
    if redis_client is not None:
        try:
            await redis_client.aclose()
        except Exception as e:
            logger.warning(f"Error closing Redis client: {e}")

    admin_client = services.clients.get("kafka_admin")
    if admin_client is not None:
        try:
            await admin_client.close()
        except Exception as e:
            logger.warning(f"Error closing Kafka admin client: {e}")

    logger.info("Connectivity services shutdown complete")
