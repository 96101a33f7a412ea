"""
Emergency confirmation gate.

A detection never reaches contacts directly. It starts a short countdown
during which the user can cancel; explicit confirmation or silence until
the countdown runs out raises the emergency. Silence counts as confirmation
because a missed emergency is worse than a false alarm.

State machine:

    idle --detection--> awaiting_confirmation
    awaiting_confirmation --cancel--> cancelled --> idle
    awaiting_confirmation --confirm | countdown expired--> confirmed --> idle
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

import structlog

from pulseguard.config import ConfirmationConfig
from pulseguard.domain.models import (
    DetectionEvent,
    DetectionKind,
    EmergencyContact,
    EmergencyEvent,
    EmergencySeverity,
    GeoLocation,
    QueuedNotification,
)
from pulseguard.services.observers import ObserverRegistry
from pulseguard.services.result import Result
from pulseguard.services.scheduling import Clock, SystemClock

logger = structlog.get_logger(__name__)

HOUR_SECONDS = 3600.0


class GateState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


@dataclass
class PendingConfirmation:
    """What the confirmation UI shows while the countdown runs."""

    event: DetectionEvent
    started_at: datetime
    seconds_remaining: int

    @property
    def heart_rate(self) -> int:
        return self.event.heart_rate

    @property
    def kind(self) -> DetectionKind:
        return self.event.kind

    @property
    def source_context(self) -> str | None:
        return self.event.source_context


class ContactDirectory(Protocol):
    """Read side of the contact book."""

    def list_contacts(self) -> list[EmergencyContact]:
        ...

    def get(self, contact_id: str) -> EmergencyContact | None:
        ...


class LocationProvider(Protocol):
    async def current_location(self) -> GeoLocation | None:
        ...


class EmergencySink(Protocol):
    """Whatever takes ownership of confirmed emergencies (the delivery queue)."""

    async def enqueue(self, event: EmergencyEvent) -> Result[list[QueuedNotification]]:
        ...


class ConfirmationObserver(Protocol):
    """Hooks for the confirmation UI. Implement any subset."""

    def on_pending(self, pending: PendingConfirmation) -> None: ...
    def on_countdown_tick(self, pending: PendingConfirmation) -> None: ...
    def on_cancelled(self, pending: PendingConfirmation) -> None: ...
    def on_confirmed(
        self, emergency: EmergencyEvent, report: Result[list[QueuedNotification]]
    ) -> None: ...
    def on_rate_limited(self, event: DetectionEvent) -> None: ...


class AlertRateLimiter:
    """Caps confirmed emergencies per trailing hour."""

    def __init__(self, max_per_hour: int, clock: Clock) -> None:
        self.max_per_hour = max_per_hour
        self.clock = clock
        self._confirmed_at: deque[float] = deque()

    def _prune(self) -> None:
        cutoff = self.clock.monotonic() - HOUR_SECONDS
        while self._confirmed_at and self._confirmed_at[0] <= cutoff:
            self._confirmed_at.popleft()

    def allow(self) -> bool:
        self._prune()
        return len(self._confirmed_at) < self.max_per_hour

    def record(self) -> None:
        self._confirmed_at.append(self.clock.monotonic())

    @property
    def remaining(self) -> int:
        self._prune()
        return max(0, self.max_per_hour - len(self._confirmed_at))


class ConfirmationGate:
    """
    Time-boxed human-in-the-loop gate between detection and delivery.

    Design principles:
    - State flips to confirmed before any await, so a racing cancel is a no-op
    - Cancellation is only meaningful before the emergency is handed off
    - Equal-or-lower urgency detections never restart a running countdown
    """

    def __init__(
        self,
        sink: EmergencySink,
        contacts: ContactDirectory,
        config: ConfirmationConfig | None = None,
        clock: Clock | None = None,
        location: LocationProvider | None = None,
    ) -> None:
        self.sink = sink
        self.contacts = contacts
        self.config = config or ConfirmationConfig()
        self.clock = clock or SystemClock()
        self.location = location
        self.rate_limiter = AlertRateLimiter(self.config.max_alerts_per_hour, self.clock)
        self.observers: ObserverRegistry[ConfirmationObserver] = ObserverRegistry(
            "confirmation_gate"
        )
        self.logger = logger.bind(component="confirmation_gate")

        self._state = GateState.IDLE
        self._pending: PendingConfirmation | None = None
        self._countdown: asyncio.Task[None] | None = None

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def pending(self) -> PendingConfirmation | None:
        return self._pending

    def submit(self, event: DetectionEvent) -> bool:
        """
        Offer a detection to the gate.

        Returns True when the detection started (or restarted) a countdown.
        Must be called from the running event loop.
        """
        if self._state is GateState.AWAITING_CONFIRMATION and self._pending is not None:
            if event.kind.urgency <= self._pending.kind.urgency:
                self.logger.debug(
                    "detection_ignored_while_pending",
                    kind=event.kind.value,
                    pending_kind=self._pending.kind.value,
                )
                return False
            self.logger.info(
                "pending_detection_escalated",
                kind=event.kind.value,
                previous_kind=self._pending.kind.value,
            )
            self._stop_countdown()
            self._begin(event)
            return True

        if self._state is not GateState.IDLE:
            self.logger.info("detection_ignored_during_handoff", kind=event.kind.value)
            return False

        if not self.rate_limiter.allow():
            self.logger.warning(
                "alert_rate_limited",
                kind=event.kind.value,
                heart_rate=event.heart_rate,
                max_alerts_per_hour=self.config.max_alerts_per_hour,
            )
            self.observers.notify("on_rate_limited", event)
            return False

        self._begin(event)
        return True

    def cancel(self) -> bool:
        """User dismissed the alert. Returns False when nothing was pending."""
        if self._state is not GateState.AWAITING_CONFIRMATION or self._pending is None:
            return False

        pending = self._pending
        self._state = GateState.CANCELLED
        self._pending = None
        self._stop_countdown()

        self.logger.info(
            "confirmation_cancelled",
            kind=pending.kind.value,
            heart_rate=pending.heart_rate,
            seconds_remaining=pending.seconds_remaining,
        )
        self.observers.notify("on_cancelled", pending)
        self._state = GateState.IDLE
        return True

    async def confirm(self) -> EmergencyEvent | None:
        """User confirmed the alert. Returns the emergency, or None when nothing was pending."""
        if self._state is not GateState.AWAITING_CONFIRMATION or self._pending is None:
            return None
        return await self._confirm(self._pending, auto_confirmed=False)

    async def aclose(self) -> None:
        """
        Drop any pending countdown without raising an emergency.

        An auto-confirmed emergency already being handed off finishes first.
        """
        task = self._countdown
        self._countdown = None
        if task is None or task.done():
            self._pending = None
            return

        if self._state is GateState.CONFIRMED:
            await task
            return

        self._pending = None
        self._state = GateState.IDLE
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _begin(self, event: DetectionEvent) -> None:
        pending = PendingConfirmation(
            event=event,
            started_at=self.clock.now(),
            seconds_remaining=self.config.countdown_seconds,
        )
        self._pending = pending
        self._state = GateState.AWAITING_CONFIRMATION
        self._countdown = asyncio.get_running_loop().create_task(
            self._run_countdown(pending), name="confirmation-countdown"
        )

        self.logger.info(
            "confirmation_started",
            kind=event.kind.value,
            heart_rate=event.heart_rate,
            countdown_seconds=pending.seconds_remaining,
        )
        self.observers.notify("on_pending", pending)

    def _stop_countdown(self) -> None:
        task = self._countdown
        if task is None:
            return
        if task is asyncio.current_task():
            # Auto-confirm runs the handoff on this task; aclose() waits for it
            return
        self._countdown = None
        if not task.done():
            task.cancel()

    async def _run_countdown(self, pending: PendingConfirmation) -> None:
        while pending.seconds_remaining > 0:
            await self.clock.sleep(self.config.tick_seconds)
            if self._pending is not pending:
                return
            pending.seconds_remaining -= 1
            self.observers.notify("on_countdown_tick", pending)

        await self._confirm(pending, auto_confirmed=True)

    async def _confirm(
        self, pending: PendingConfirmation, auto_confirmed: bool
    ) -> EmergencyEvent | None:
        if self._pending is not pending or self._state is not GateState.AWAITING_CONFIRMATION:
            return None

        # Point of no return: cancel() is a no-op from here on
        self._state = GateState.CONFIRMED
        self._pending = None
        self._stop_countdown()
        self.rate_limiter.record()

        try:
            emergency = EmergencyEvent(
                heart_rate=pending.heart_rate,
                kind=pending.kind,
                severity=EmergencySeverity.for_heart_rate(pending.heart_rate),
                detected_at=pending.event.detected_at,
                confirmed_at=self.clock.now(),
                location=await self._current_location(),
                recipient_ids=frozenset(c.id for c in self.contacts.list_contacts()),
                auto_confirmed=auto_confirmed,
            )
            self.logger.info(
                "emergency_confirmed",
                emergency_id=emergency.id,
                kind=emergency.kind.value,
                heart_rate=emergency.heart_rate,
                severity=emergency.severity.value,
                recipients=len(emergency.recipient_ids),
                auto_confirmed=auto_confirmed,
            )

            try:
                report = await self.sink.enqueue(emergency)
            except Exception as e:
                self.logger.exception(
                    "emergency_handoff_failed", emergency_id=emergency.id, error=str(e)
                )
                report = Result.err(e)
        finally:
            if self._countdown is asyncio.current_task():
                self._countdown = None
            self._state = GateState.IDLE

        self.observers.notify("on_confirmed", emergency, report)
        return emergency

    async def _current_location(self) -> GeoLocation | None:
        if self.location is None:
            return None
        try:
            return await self.location.current_location()
        except Exception as e:
            self.logger.warning("location_unavailable", error=str(e))
            return None
