"""
Durable emergency notification delivery queue.

Key patterns:
- One notification per (emergency, contact), persisted on every transition
- Priority/age ordering with a bounded batch per cycle
- Exponential backoff with jitter, capped attempts, then a surfaced expiry
- One asyncio.Lock serializes the periodic timer, network-triggered cycles
  and enqueue, since all of them mutate the same in-memory state
- Transport calls fan out in a TaskGroup, each bounded by wait_for
"""

import asyncio
import random
from collections import Counter
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from pulseguard.config import DeliveryConfig
from pulseguard.domain.errors import DeliveryError, NoRecipientsError
from pulseguard.domain.models import (
    ContactChannel,
    EmergencyContact,
    EmergencyEvent,
    NotificationPriority,
    NotificationStatus,
    QueuedNotification,
    QueueStatus,
)
from pulseguard.services.confirmation import ContactDirectory
from pulseguard.services.observers import ObserverRegistry
from pulseguard.services.result import Result
from pulseguard.services.scheduling import Clock, PeriodicTask, SystemClock

logger = structlog.get_logger(__name__)


class NotificationTransport(Protocol):
    """
    Outbound push/SMS/email relay.

    Returns Result.ok(provider_message_id) on success. Any error result,
    raised exception or timeout is treated the same way: retry later.
    """

    async def send(self, address: str, channel: ContactChannel, message: str) -> Result[str]:
        ...


class NotificationStore(Protocol):
    """Durable key-value store for queued notifications."""

    async def save(self, notification: QueuedNotification) -> None:
        ...

    async def load_all(self) -> list[QueuedNotification]:
        ...

    async def delete(self, notification_id: str) -> None:
        ...


class DeliveryObserver(Protocol):
    """Hooks for status screens. Implement any subset."""

    def on_enqueued(self, notifications: list[QueuedNotification]) -> None: ...
    def on_sent(self, notification: QueuedNotification) -> None: ...
    def on_failed(self, notification: QueuedNotification) -> None: ...
    def on_expired(self, notification: QueuedNotification) -> None: ...


def retry_delay_seconds(
    attempt_count: int, config: DeliveryConfig, rng: random.Random
) -> float:
    """min(max_interval, base * 2^attempt) plus uniform jitter in [0, jitter]."""
    backoff = min(
        config.max_retry_interval_seconds,
        config.retry_base_seconds * (2**attempt_count),
    )
    return backoff + rng.uniform(0.0, config.retry_jitter_seconds)


def emergency_message(event: EmergencyEvent) -> str:
    """Alert text sent to every contact of an emergency."""
    lines = [
        f"🚨 {event.severity.value.upper()} EMERGENCY ALERT 🚨",
        "",
        "PulseGuard heart-rate alert:",
        f"Heart Rate: {event.heart_rate} BPM",
        f"Reason: {event.kind.value.replace('_', ' ')}",
        f"Time: {event.detected_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
    ]
    if event.location is not None:
        lines.append(
            f"Location: {event.location.latitude:.5f}, {event.location.longitude:.5f}"
        )
    lines += [
        "",
        "Please check on your contact immediately.",
        "",
        f"Emergency ID: {event.id[:8]}",
    ]
    return "\n".join(lines)


class DeliveryQueue:
    """
    Fans confirmed emergencies out to contacts and delivers them reliably.

    Design principles:
    - Nothing is acknowledged to the caller before it is in the store
    - A single failing notification never escapes process_cycle
    - Expired notifications stay visible until the caller acknowledges them
    """

    def __init__(
        self,
        transport: NotificationTransport,
        store: NotificationStore,
        contacts: ContactDirectory,
        config: DeliveryConfig | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.contacts = contacts
        self.config = config or DeliveryConfig()
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.observers: ObserverRegistry[DeliveryObserver] = ObserverRegistry("delivery_queue")
        self.logger = logger.bind(component="delivery_queue")

        self.is_online = True
        self.last_processed_at: datetime | None = None

        self._entries: dict[str, QueuedNotification] = {}
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()
        self._periodic = PeriodicTask(
            "delivery-queue-cycle",
            self.process_cycle,
            self.config.process_interval_seconds,
            self.clock,
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def notifications(self) -> list[QueuedNotification]:
        """All tracked notifications in processing order."""
        return sorted(self._entries.values(), key=QueuedNotification.sort_key)

    @property
    def pending_count(self) -> int:
        return sum(1 for n in self._entries.values() if not n.status.is_terminal)

    def get(self, notification_id: str) -> QueuedNotification | None:
        return self._entries.get(notification_id)

    def for_event(self, emergency_event_id: str) -> list[QueuedNotification]:
        return [n for n in self.notifications if n.emergency_event_id == emergency_event_id]

    def status(self) -> QueueStatus:
        counts = Counter(n.status for n in self._entries.values())
        return QueueStatus(
            total=len(self._entries),
            is_online=self.is_online,
            last_processed_at=self.last_processed_at,
            by_status=dict(counts),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def restore(self) -> int:
        """
        Reload persisted notifications after a restart.

        In-flight entries go back to pending without the lost attempt counting
        toward max_attempts, sent entries are dropped and duplicate
        (emergency, contact) pairs are removed.
        """
        async with self._lock:
            loaded = await self.store.load_all()
            now = self.clock.now()
            seen = {n.dedup_key for n in self._entries.values()}
            restored = dropped = 0

            for notification in sorted(loaded, key=lambda n: n.enqueued_at):
                if notification.id in self._entries:
                    continue
                if notification.dedup_key in seen or notification.status is NotificationStatus.SENT:
                    await self.store.delete(notification.id)
                    dropped += 1
                    continue
                if notification.status is NotificationStatus.SENDING:
                    self._return_to_pending(notification, now)
                    await self.store.save(notification)

                self._entries[notification.id] = notification
                seen.add(notification.dedup_key)
                restored += 1

            self.logger.info("queue_restored", restored=restored, dropped=dropped)
            return restored

    def start(self) -> None:
        """Begin periodic processing on the running loop."""
        self._periodic.start()

    async def stop(self) -> None:
        await self._periodic.stop()
        await self.drain()

    async def drain(self) -> None:
        """Wait for cycles triggered by enqueue or connectivity changes."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def enqueue(self, event: EmergencyEvent) -> Result[list[QueuedNotification]]:
        """
        Create and persist one notification per recipient of the emergency.

        Returns Result.err(NoRecipientsError) when no recipient resolves to a
        contact; store errors propagate because the alert is not durable.
        """
        async with self._lock:
            recipients = self._resolve_recipients(event)
            if not recipients:
                self.logger.error(
                    "emergency_without_recipients",
                    emergency_id=event.id,
                    recipient_ids=sorted(event.recipient_ids),
                )
                return Result.err(NoRecipientsError(event.id))

            existing = {n.dedup_key for n in self._entries.values()}
            now = self.clock.now()
            message = emergency_message(event)
            created: list[QueuedNotification] = []

            for contact in recipients:
                if (event.id, contact.id) in existing:
                    self.logger.info(
                        "duplicate_notification_skipped",
                        emergency_id=event.id,
                        recipient_id=contact.id,
                    )
                    continue

                notification = QueuedNotification(
                    emergency_event_id=event.id,
                    recipient_id=contact.id,
                    recipient_name=contact.name,
                    channel=contact.channel,
                    channel_address=contact.address,
                    message=message,
                    priority=self._priority_for(event, contact),
                    enqueued_at=now,
                    status_changed_at=now,
                )
                await self.store.save(notification)
                self._entries[notification.id] = notification
                created.append(notification)

            self.logger.info(
                "emergency_enqueued",
                emergency_id=event.id,
                notifications=len(created),
                priorities=[n.priority.value for n in created],
            )

        if created:
            self.observers.notify("on_enqueued", created)
            if self.is_online:
                self._schedule_cycle("enqueue")
        return Result.ok(created)

    def _resolve_recipients(self, event: EmergencyEvent) -> list[EmergencyContact]:
        recipients = []
        for recipient_id in sorted(event.recipient_ids):
            contact = self.contacts.get(recipient_id)
            if contact is None:
                self.logger.warning(
                    "recipient_unknown", emergency_id=event.id, recipient_id=recipient_id
                )
                continue
            recipients.append(contact)
        return recipients

    def _priority_for(
        self, event: EmergencyEvent, contact: EmergencyContact
    ) -> NotificationPriority:
        priority = self.config.priority_by_kind[event.kind]
        if contact.is_primary and priority.rank < NotificationPriority.HIGH.rank:
            return NotificationPriority.HIGH
        return priority

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def on_connectivity_change(self, is_online: bool) -> None:
        """ConnectivityObserver hook: reprocess immediately when the network returns."""
        was_online, self.is_online = self.is_online, is_online
        if is_online and not was_online:
            self.logger.info("network_connected_processing_queue", queued=self.pending_count)
            self._schedule_cycle("network_online")
        elif not is_online and was_online:
            self.logger.info("network_disconnected_queueing", queued=self.pending_count)

    def _schedule_cycle(self, reason: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._triggered_cycle(reason), name=f"delivery-cycle-{reason}"
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _triggered_cycle(self, reason: str) -> None:
        try:
            await self.process_cycle()
        except Exception as e:
            self.logger.exception("triggered_cycle_failed", reason=reason, error=str(e))

    async def process_cycle(self) -> None:
        """Attempt the next batch of eligible notifications, then clean up."""
        async with self._lock:
            if self.is_online:
                await self._promote_due_retries(self.clock.now())
                batch = self._next_batch()
                if batch:
                    await self._deliver(batch)
            else:
                self.logger.debug("cycle_skipped_offline", queued=self.pending_count)

            await self._cleanup(self.clock.now())
            self.last_processed_at = self.clock.now()

    async def _promote_due_retries(self, now: datetime) -> None:
        for notification in self._entries.values():
            if notification.status is not NotificationStatus.FAILED:
                continue
            if notification.next_retry_at is not None and now < notification.next_retry_at:
                continue
            notification.transition_to(NotificationStatus.PENDING, now)
            await self._persist(notification)

    def _next_batch(self) -> list[QueuedNotification]:
        eligible = [n for n in self.notifications if n.status is NotificationStatus.PENDING]
        return eligible[: self.config.batch_size]

    async def _deliver(self, batch: list[QueuedNotification]) -> None:
        started = self.clock.now()
        for notification in batch:
            notification.attempt_count += 1
            notification.last_attempt_at = started
            notification.transition_to(NotificationStatus.SENDING, started)
            await self._persist(notification)
            self.logger.info(
                "notification_sending",
                notification_id=notification.id,
                recipient=notification.recipient_name,
                priority=notification.priority.value,
                attempt=notification.attempt_count,
            )

        try:
            async with asyncio.TaskGroup() as task_group:
                attempts = [
                    (notification, task_group.create_task(self._attempt(notification)))
                    for notification in batch
                ]
        except asyncio.CancelledError:
            await self._release_interrupted(batch)
            raise

        for notification, task in attempts:
            await self._record_outcome(notification, task.result())

    @staticmethod
    def _return_to_pending(notification: QueuedNotification, now: datetime) -> None:
        # The attempt never produced an outcome, so it does not count
        notification.attempt_count = max(0, notification.attempt_count - 1)
        notification.transition_to(NotificationStatus.PENDING, now)

    async def _release_interrupted(self, batch: list[QueuedNotification]) -> None:
        """Put a batch cut off mid-send (queue stopping) back in line."""
        now = self.clock.now()
        for notification in batch:
            if notification.status is not NotificationStatus.SENDING:
                continue
            self._return_to_pending(notification, now)
            await self._persist(notification)
            self.logger.warning(
                "notification_send_interrupted",
                notification_id=notification.id,
                recipient=notification.recipient_name,
                attempts=notification.attempt_count,
            )

    async def _attempt(self, notification: QueuedNotification) -> Result[str]:
        try:
            return await asyncio.wait_for(
                self.transport.send(
                    notification.channel_address, notification.channel, notification.message
                ),
                timeout=self.config.send_timeout_seconds,
            )
        except TimeoutError:
            return Result.err(
                DeliveryError(f"send timed out after {self.config.send_timeout_seconds}s")
            )
        except Exception as e:
            return Result.err(e)

    async def _record_outcome(
        self, notification: QueuedNotification, result: Result[str]
    ) -> None:
        now = self.clock.now()

        if result.is_ok():
            notification.next_retry_at = None
            notification.transition_to(NotificationStatus.SENT, now)
            await self._persist(notification)
            self.logger.info(
                "notification_sent",
                notification_id=notification.id,
                recipient=notification.recipient_name,
                attempts=notification.attempt_count,
                provider_id=result.unwrap(),
            )
            self.observers.notify("on_sent", notification)
            return

        error = result.unwrap_err()
        if notification.attempt_count >= self.config.max_attempts:
            notification.next_retry_at = None
            notification.transition_to(NotificationStatus.EXPIRED, now)
            await self._persist(notification)
            self.logger.error(
                "notification_expired",
                notification_id=notification.id,
                recipient=notification.recipient_name,
                attempts=notification.attempt_count,
                error=str(error),
            )
            self.observers.notify("on_expired", notification)
            return

        delay = retry_delay_seconds(notification.attempt_count, self.config, self.rng)
        notification.next_retry_at = now + timedelta(seconds=delay)
        notification.transition_to(NotificationStatus.FAILED, now)
        await self._persist(notification)
        self.logger.warning(
            "notification_failed",
            notification_id=notification.id,
            recipient=notification.recipient_name,
            attempt=notification.attempt_count,
            retry_in_seconds=round(delay, 1),
            error=str(error),
        )
        self.observers.notify("on_failed", notification)

    async def _persist(self, notification: QueuedNotification) -> None:
        try:
            await self.store.save(notification)
        except Exception as e:
            self.logger.exception(
                "notification_persist_failed",
                notification_id=notification.id,
                status=notification.status.value,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def _cleanup(self, now: datetime) -> None:
        sent_cutoff = now - timedelta(seconds=self.config.sent_grace_seconds)
        failed_cutoff = now - timedelta(hours=self.config.failed_retention_hours)

        stale = [
            n
            for n in self._entries.values()
            if (n.status is NotificationStatus.SENT and n.status_changed_at <= sent_cutoff)
            or (n.status is NotificationStatus.FAILED and n.enqueued_at <= failed_cutoff)
        ]
        for notification in stale:
            await self._remove(notification)

        if stale:
            self.logger.info("queue_cleaned", removed=len(stale), remaining=len(self._entries))

    async def _remove(self, notification: QueuedNotification) -> None:
        try:
            await self.store.delete(notification.id)
        except Exception as e:
            self.logger.exception(
                "notification_delete_failed", notification_id=notification.id, error=str(e)
            )
            return
        self._entries.pop(notification.id, None)

    async def acknowledge(self, notification_id: str) -> bool:
        """Remove a terminal (sent or expired) notification the user has seen."""
        async with self._lock:
            notification = self._entries.get(notification_id)
            if notification is None or not notification.status.is_terminal:
                return False
            await self.store.delete(notification_id)
            del self._entries[notification_id]
            self.logger.info(
                "notification_acknowledged",
                notification_id=notification_id,
                status=notification.status.value,
            )
            return True

    async def acknowledge_event(self, emergency_event_id: str) -> int:
        """Acknowledge every terminal notification of one emergency."""
        ids = [
            n.id
            for n in self._entries.values()
            if n.emergency_event_id == emergency_event_id and n.status.is_terminal
        ]
        acknowledged = 0
        for notification_id in ids:
            if await self.acknowledge(notification_id):
                acknowledged += 1
        return acknowledged

    async def clear(self) -> None:
        """Drop every notification, including undelivered ones."""
        async with self._lock:
            for notification_id in list(self._entries):
                await self.store.delete(notification_id)
            self._entries.clear()
            self.logger.warning("queue_cleared")
