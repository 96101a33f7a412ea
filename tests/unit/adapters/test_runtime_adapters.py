"""Tests for contacts, location, the TCP probe and service bootstrapping."""

import asyncio
from pathlib import Path

import pytest

from adapters.bootstrap import build_service, build_store, build_transport
from adapters.contacts import FixedLocationProvider, StaticContactDirectory
from adapters.network import TcpConnectivityProbe
from adapters.storage import InMemoryNotificationStore, JsonFileNotificationStore
from adapters.transport import LoggingTransport, WebhookTransport
from pulseguard.config import AppConfig, NetworkConfig, StorageConfig, TransportConfig
from pulseguard.domain.errors import ConfigurationError
from pulseguard.domain.models import EmergencyContact, GeoLocation
from pulseguard.services.network import NetworkMonitor


class TestStaticContactDirectory:
    def test_lookup_by_id(self) -> None:
        mom = EmergencyContact(id="mom", name="Mom", address="+15550100")
        directory = StaticContactDirectory([mom])

        assert directory.get("mom") == mom
        assert directory.get("nobody") is None
        assert directory.list_contacts() == [mom]

    def test_only_one_primary_contact(self) -> None:
        directory = StaticContactDirectory(
            [EmergencyContact(id="a", name="A", address="1", is_primary=True)]
        )

        directory.add(EmergencyContact(id="b", name="B", address="2", is_primary=True))

        primaries = [c.id for c in directory.list_contacts() if c.is_primary]
        assert primaries == ["b"]

    def test_remove(self) -> None:
        directory = StaticContactDirectory(
            [EmergencyContact(id="a", name="A", address="1")]
        )

        directory.remove("a")
        directory.remove("a")

        assert len(directory) == 0


async def test_fixed_location_provider() -> None:
    here = GeoLocation(latitude=48.8566, longitude=2.3522)

    assert await FixedLocationProvider(here).current_location() == here
    assert await FixedLocationProvider().current_location() is None


class TestTcpConnectivityProbe:
    async def test_reachable_host_reports_online(self) -> None:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        monitor = NetworkMonitor(initially_online=False)
        probe = TcpConnectivityProbe(
            monitor, NetworkConfig(probe_host="127.0.0.1", probe_port=port)
        )

        try:
            assert await probe.probe_once() is True
        finally:
            server.close()
            await server.wait_closed()

        assert monitor.is_online is True

    async def test_refused_connection_reports_offline(self) -> None:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        monitor = NetworkMonitor(initially_online=True)
        probe = TcpConnectivityProbe(
            monitor,
            NetworkConfig(probe_host="127.0.0.1", probe_port=port, probe_timeout_seconds=1.0),
        )

        assert await probe.probe_once() is False
        assert monitor.is_online is False


class TestBootstrap:
    def test_memory_store_and_logging_transport(self) -> None:
        config = AppConfig(storage=StorageConfig(backend="memory"))

        assert isinstance(build_store(config), InMemoryNotificationStore)
        assert isinstance(build_transport(config), LoggingTransport)

    def test_json_store_and_webhook_transport(self, tmp_path: Path) -> None:
        config = AppConfig(
            storage=StorageConfig(queue_path=str(tmp_path / "queue.json")),
            transport=TransportConfig(backend="webhook", webhook_url="https://relay.example"),
        )

        assert isinstance(build_store(config), JsonFileNotificationStore)
        assert isinstance(build_transport(config), WebhookTransport)

    def test_webhook_without_url_is_a_configuration_error(self) -> None:
        # Bypasses AppConfig validation the way a hand-built config could
        config = AppConfig.model_construct(
            transport=TransportConfig.model_construct(backend="webhook", webhook_url=None)
        )

        with pytest.raises(ConfigurationError):
            build_transport(config)

    @pytest.mark.parametrize("probe_enabled", [True, False])
    def test_service_uses_configured_contacts(self, probe_enabled: bool) -> None:
        config = AppConfig(
            storage=StorageConfig(backend="memory"),
            network=NetworkConfig(probe_enabled=probe_enabled),
            contacts=[EmergencyContact(id="mom", name="Mom", address="+15550100")],
        )

        service = build_service(config)

        assert [c.id for c in service.contacts.list_contacts()] == ["mom"]
        assert (service.probe is not None) is probe_enabled
