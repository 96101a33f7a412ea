"""
TCP reachability probe.

Periodically opens a TCP connection to a well-known host and reports the
outcome to the NetworkMonitor. The monitor ignores repeated identical
reports, so the probe can report every round.
"""

import asyncio

import structlog

from pulseguard.config import NetworkConfig
from pulseguard.services.network import NetworkMonitor
from pulseguard.services.scheduling import Clock, PeriodicTask, SystemClock

logger = structlog.get_logger(__name__)


class TcpConnectivityProbe:
    def __init__(
        self,
        monitor: NetworkMonitor,
        config: NetworkConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.monitor = monitor
        self.config = config or NetworkConfig()
        self.logger = logger.bind(component="tcp_connectivity_probe")
        self._task = PeriodicTask(
            "connectivity-probe",
            self.probe_once,
            self.config.probe_interval_seconds,
            clock or SystemClock(),
        )

    async def is_reachable(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.config.probe_host, self.config.probe_port),
                timeout=self.config.probe_timeout_seconds,
            )
        except (OSError, TimeoutError) as e:
            self.logger.debug("probe_failed", host=self.config.probe_host, error=str(e))
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def probe_once(self) -> bool:
        online = await self.is_reachable()
        self.monitor.on_connectivity_change(online)
        return online

    async def start(self) -> None:
        """Probe immediately, then keep probing on the configured interval."""
        await self.probe_once()
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
