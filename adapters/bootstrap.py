"""Builds a HeartRateMonitoringService from AppConfig, choosing concrete adapters."""

import structlog

from adapters.contacts import StaticContactDirectory
from adapters.network import TcpConnectivityProbe
from adapters.storage import InMemoryNotificationStore, JsonFileNotificationStore
from adapters.transport import LoggingTransport, WebhookTransport
from pulseguard.config import AppConfig, get_config
from pulseguard.domain.errors import ConfigurationError
from pulseguard.services.delivery import NotificationStore, NotificationTransport
from pulseguard.services.monitoring import HeartRateMonitoringService
from pulseguard.services.network import NetworkMonitor
from pulseguard.services.scheduling import Clock

logger = structlog.get_logger(__name__)


def build_store(config: AppConfig) -> NotificationStore:
    if config.storage.backend == "memory":
        return InMemoryNotificationStore()
    return JsonFileNotificationStore(config.storage.queue_path)


def build_transport(config: AppConfig) -> NotificationTransport:
    if config.transport.backend == "webhook":
        if config.transport.webhook_url is None:
            raise ConfigurationError("TRANSPORT_WEBHOOK_URL must be set for the webhook transport")
        return WebhookTransport(
            config.transport.webhook_url,
            api_key=config.transport.api_key,
            timeout_seconds=config.delivery.send_timeout_seconds,
        )
    return LoggingTransport()


def build_service(
    config: AppConfig | None = None, clock: Clock | None = None
) -> HeartRateMonitoringService:
    config = config or get_config()
    network = NetworkMonitor()
    probe = (
        TcpConnectivityProbe(network, config.network, clock=clock)
        if config.network.probe_enabled
        else None
    )

    logger.info(
        "building_monitoring_service",
        store=config.storage.backend,
        transport=config.transport.backend,
        probe_enabled=probe is not None,
    )
    return HeartRateMonitoringService(
        transport=build_transport(config),
        store=build_store(config),
        contacts=StaticContactDirectory(config.contacts),
        config=config,
        clock=clock,
        network=network,
        probe=probe,
    )
