"""
Composition root for the heart-rate alerting pipeline.

    wearable -> SampleIngest -> DeviationDetector -> ConfirmationGate
             -> DeliveryQueue -> NotificationTransport

The NetworkMonitor feeds connectivity transitions into the queue. Every
collaborator is constructed here or injected; nothing is a module-level
singleton, so tests can build as many independent pipelines as they like.
"""

import asyncio
import random
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Protocol

import structlog

from pulseguard.config import AppConfig, DetectionRules, RuleConfiguration, get_config
from pulseguard.domain.models import (
    DetectionEvent,
    EmergencyEvent,
    QueuedNotification,
    QueueStatus,
)
from pulseguard.services.confirmation import (
    ConfirmationGate,
    ContactDirectory,
    LocationProvider,
    PendingConfirmation,
)
from pulseguard.services.delivery import DeliveryQueue, NotificationStore, NotificationTransport
from pulseguard.services.detection import DeviationDetector
from pulseguard.services.ingest import SampleIngest
from pulseguard.services.network import NetworkMonitor
from pulseguard.services.result import Result
from pulseguard.services.scheduling import Clock, SystemClock

logger = structlog.get_logger(__name__)

HISTORY_LIMIT = 50


class BackgroundProbe(Protocol):
    """Anything that feeds the NetworkMonitor while the service runs."""

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


class HeartRateMonitoringService:
    """
    Main service that orchestrates the complete alerting pipeline.

    Samples are processed synchronously on the event loop: ingest, detect,
    then offer the detection to the confirmation gate. Everything that can
    block (countdowns, delivery cycles, transport sends) runs as tasks owned
    by the gate and the queue.
    """

    def __init__(
        self,
        transport: NotificationTransport,
        store: NotificationStore,
        contacts: ContactDirectory,
        config: AppConfig | None = None,
        clock: Clock | None = None,
        network: NetworkMonitor | None = None,
        location: LocationProvider | None = None,
        probe: BackgroundProbe | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.transport = transport
        self.contacts = contacts
        self.probe = probe
        self.logger = logger.bind(component="heart_rate_monitoring")

        self.rule_config = RuleConfiguration(self.config.detection)
        self.ingest = SampleIngest(self.config.ingest)
        self.detector = DeviationDetector(self.rule_config)

        self.queue = DeliveryQueue(
            transport,
            store,
            contacts,
            config=self.config.delivery,
            clock=self.clock,
            rng=rng,
        )
        self.gate = ConfirmationGate(
            self.queue,
            contacts,
            config=self.config.confirmation,
            clock=self.clock,
            location=location,
        )

        self.network = network or NetworkMonitor()
        self.queue.is_online = self.network.is_online
        self._unsubscribe_network = self.network.observers.subscribe(self.queue)

        self._history: deque[EmergencyEvent] = deque(maxlen=HISTORY_LIMIT)
        self._unsubscribe_gate = self.gate.observers.subscribe(self)

        self._is_running = False
        self.logger.info(
            "monitoring_service_initialized",
            contacts=len(contacts.list_contacts()),
            is_online=self.network.is_online,
        )

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def rules(self) -> DetectionRules:
        return self.rule_config.rules

    @property
    def pending_confirmation(self) -> PendingConfirmation | None:
        return self.gate.pending

    def update_rules(self, **changes: Any) -> DetectionRules:
        """Validate and apply new detection settings; the next sample sees them."""
        return self.rule_config.update(**changes)

    def ingest_sample(
        self,
        heart_rate: int | float,
        timestamp: datetime | None = None,
        source_context: str | None = None,
    ) -> list[DetectionEvent]:
        """
        Feed one wearable reading through the pipeline.

        Returns the detections the reading produced (zero or one). Must be
        called from the running event loop because a detection starts the
        confirmation countdown task.
        """
        sample = self.ingest.normalize(
            heart_rate, timestamp or self.clock.now(), source_context=source_context
        )
        if sample is None:
            return []

        events = self.detector.ingest(sample)
        for event in events:
            self.gate.submit(event)
        return events

    async def confirm(self) -> EmergencyEvent | None:
        return await self.gate.confirm()

    def cancel(self) -> bool:
        return self.gate.cancel()

    def on_connectivity_change(self, is_online: bool) -> None:
        self.network.on_connectivity_change(is_online)

    def queue_status(self) -> QueueStatus:
        return self.queue.status()

    def on_confirmed(
        self, emergency: EmergencyEvent, report: Result[list[QueuedNotification]]
    ) -> None:
        self._history.appendleft(emergency)

    def emergency_history(self) -> list[EmergencyEvent]:
        """Confirmed emergencies, newest first."""
        return list(self._history)

    async def resolve(self, emergency_id: str | None = None) -> EmergencyEvent | None:
        """
        Mark an emergency as handled and acknowledge its finished notifications.

        Without an id, the most recent unresolved emergency is resolved.
        Notifications still waiting for delivery keep going. Returns None when
        there is nothing to resolve.
        """
        for emergency in self._history:
            if emergency_id is None:
                if emergency.resolved_at is None:
                    break
            elif emergency.id == emergency_id:
                break
        else:
            self.logger.warning("no_emergency_to_resolve", emergency_id=emergency_id)
            return None

        if emergency.resolved_at is not None:
            return emergency

        acknowledged = await self.queue.acknowledge_event(emergency.id)
        resolved = emergency.model_copy(update={"resolved_at": self.clock.now()})
        # Look the entry up again: confirmations during the await shift the deque
        for index, current in enumerate(self._history):
            if current.id == emergency.id:
                self._history[index] = resolved
                break
        self.logger.info(
            "emergency_resolved",
            emergency_id=emergency.id,
            acknowledged_notifications=acknowledged,
            still_delivering=sum(
                1 for n in self.queue.for_event(emergency.id) if not n.status.is_terminal
            ),
        )
        return resolved

    async def start(self) -> None:
        if self._is_running:
            return
        self.network.bind_loop(asyncio.get_running_loop())
        restored = await self.queue.restore()
        self.queue.start()
        if self.probe is not None:
            await self.probe.start()
        self._is_running = True
        self.logger.info("monitoring_service_started", restored_notifications=restored)

    async def stop(self) -> None:
        """Gracefully stop the service. Pending countdowns are dropped, not confirmed."""
        if not self._is_running:
            return
        self._is_running = False
        self.logger.info("stopping_monitoring_service")

        if self.probe is not None:
            await self.probe.stop()
        await self.gate.aclose()
        await self.queue.stop()

        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()
        self.logger.info("monitoring_service_stopped", queued=self.queue.pending_count)

    @asynccontextmanager
    async def running(self) -> AsyncIterator["HeartRateMonitoringService"]:
        """Restore the queue, start background work and tear it all down on exit."""
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    def close(self) -> None:
        """Detach from the network monitor (for monitors shared between services)."""
        self._unsubscribe_network()
        self._unsubscribe_gate()
