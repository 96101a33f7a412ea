"""
Network state glue.

The monitor owns the current online/offline flag and forwards real
transitions to its observers (the delivery queue reprocesses immediately
when the network comes back). OS reachability callbacks usually arrive on
foreign threads, so report_threadsafe() marshals them onto the loop.
"""

import asyncio
from typing import Protocol

import structlog

from pulseguard.services.observers import ObserverRegistry

logger = structlog.get_logger(__name__)


class ConnectivityObserver(Protocol):
    def on_connectivity_change(self, is_online: bool) -> None:
        ...


class NetworkMonitor:
    """Deduplicates connectivity reports and fans out transitions."""

    def __init__(self, initially_online: bool = True) -> None:
        self._is_online = initially_online
        self.transition_count = 0
        self.observers: ObserverRegistry[ConnectivityObserver] = ObserverRegistry(
            "network_monitor"
        )
        self.logger = logger.bind(component="network_monitor")
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def is_online(self) -> bool:
        return self._is_online

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that report_threadsafe() should target."""
        self._loop = loop

    def on_connectivity_change(self, is_online: bool) -> None:
        """Record a connectivity report; observers only hear about real transitions."""
        if is_online == self._is_online:
            return
        self._is_online = is_online
        self.transition_count += 1
        self.logger.info("connectivity_changed", is_online=is_online)
        self.observers.notify("on_connectivity_change", is_online)

    def report_threadsafe(self, is_online: bool) -> None:
        """Entry point for callbacks running outside the event loop thread."""
        if self._loop is None:
            raise RuntimeError("NetworkMonitor.bind_loop() must be called first")
        self._loop.call_soon_threadsafe(self.on_connectivity_change, is_online)
