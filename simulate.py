"""
Scripted walk through the full alerting pipeline.

Scenarios:
1. Resting heart rate with an ordinary posture change (no alert)
2. Rapid increase that the user cancels during the countdown
3. Standing spike left unanswered, so contacts are notified
4. Low heart rate confirmed while offline, delivered on reconnect

Run with: uv run python simulate.py
"""

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.contacts import FixedLocationProvider, StaticContactDirectory
from adapters.storage import InMemoryNotificationStore
from adapters.transport import LoggingTransport
from pulseguard.config import AppConfig, ConfirmationConfig, DeliveryConfig, LoggingConfig
from pulseguard.domain.models import EmergencyContact, GeoLocation
from pulseguard.log_setup import configure_logging
from pulseguard.services.monitoring import HeartRateMonitoringService

console = Console()

CONTACTS = [
    EmergencyContact(id="mom", name="Mom", address="+15550100", is_primary=True),
    EmergencyContact(id="dr-lee", name="Dr. Lee", address="+15550199"),
]

DEMO_CONFIG = AppConfig(
    confirmation=ConfirmationConfig(countdown_seconds=3),
    delivery=DeliveryConfig(process_interval_seconds=1.0, retry_base_seconds=1.0),
    logging=LoggingConfig(level="WARNING", format="console"),
)


def build_service() -> HeartRateMonitoringService:
    return HeartRateMonitoringService(
        transport=LoggingTransport(),
        store=InMemoryNotificationStore(),
        contacts=StaticContactDirectory(CONTACTS),
        config=DEMO_CONFIG,
        location=FixedLocationProvider(GeoLocation(latitude=37.7749, longitude=-122.4194)),
    )


def feed(
    service: HeartRateMonitoringService, readings: Iterable[tuple[float, int, str]]
) -> int:
    """Replay (minutes ago, bpm, context) readings and print each one."""
    now = datetime.now(UTC)
    detections = 0

    table = Table(title="Readings")
    table.add_column("Time", style="cyan")
    table.add_column("BPM", style="green")
    table.add_column("Context", style="yellow")
    table.add_column("Detection", style="red")

    for minutes_ago, bpm, context in readings:
        timestamp = now - timedelta(minutes=minutes_ago)
        events = service.ingest_sample(bpm, timestamp, source_context=context)
        detections += len(events)
        table.add_row(
            timestamp.strftime("%H:%M:%S"),
            str(bpm),
            context,
            ", ".join(f"{e.kind.value}: {e.details}" for e in events) or "-",
        )

    console.print(table)
    return detections


def show_queue(service: HeartRateMonitoringService) -> None:
    status = service.queue_status()

    table = Table(title="Delivery Queue")
    table.add_column("Recipient", style="cyan")
    table.add_column("Priority", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Attempts", style="yellow")

    for notification in service.queue.notifications:
        table.add_row(
            notification.recipient_name,
            notification.priority.value,
            notification.status.value,
            str(notification.attempt_count),
        )

    console.print(table)
    console.print(
        f"Network: {'online' if status.is_online else 'offline'}, {status.total} queued",
        style="blue",
    )


async def scenario_resting() -> bool:
    """Normal resting readings and a mild posture change never alert."""

    console.print(Panel("💚 Resting Heart Rate", style="blue"))

    service = build_service()
    async with service.running():
        detections = feed(
            service,
            [
                (12, 66, "sitting"),
                (9, 68, "sitting"),
                (6, 71, "sitting"),
                (3, 90, "standing"),
                (0, 84, "standing"),
            ],
        )

    if detections:
        console.print(f"❌ Expected no alerts, got {detections}", style="red")
        return False
    console.print("✅ No alerts for an ordinary +22 BPM standing response", style="green")
    return True


async def scenario_cancelled() -> bool:
    """A rapid increase opens the countdown; the user dismisses it."""

    console.print(Panel("⏱️ Rapid Increase, Cancelled", style="blue"))

    service = build_service()
    async with service.running():
        feed(
            service,
            [
                (8, 70, "sitting"),
                (4, 72, "sitting"),
                (0, 102, "sitting"),
            ],
        )

        pending = service.pending_confirmation
        if pending is None:
            console.print("❌ Expected a pending confirmation", style="red")
            return False

        console.print(
            f"Countdown started: {pending.seconds_remaining}s to cancel "
            f"({pending.event.kind.value})",
            style="yellow",
        )
        await asyncio.sleep(1)
        service.cancel()
        console.print("🙅 User tapped \"I'm OK\"", style="yellow")

        await asyncio.sleep(DEMO_CONFIG.confirmation.countdown_seconds)
        queued = len(service.queue.notifications)

    if queued:
        console.print(f"❌ Cancelled alert still queued {queued} notifications", style="red")
        return False
    console.print("✅ Nothing was sent to contacts", style="green")
    return True


async def scenario_unanswered_spike() -> bool:
    """A standing spike with no response escalates to every contact."""

    console.print(Panel("🚨 Extreme Spike, No Response", style="blue"))

    service = build_service()
    async with service.running():
        feed(
            service,
            [
                (4, 68, "sitting"),
                (2, 70, "sitting"),
                (0, 128, "standing"),
            ],
        )

        console.print("Waiting out the countdown...", style="yellow")
        await asyncio.sleep(DEMO_CONFIG.confirmation.countdown_seconds + 1)
        await service.queue.drain()
        show_queue(service)
        sent = service.transport.sent_count  # type: ignore[attr-defined]

    if sent != len(CONTACTS):
        console.print(f"❌ Expected {len(CONTACTS)} sends, got {sent}", style="red")
        return False
    console.print("✅ Every contact was notified", style="green")
    return True


async def scenario_offline() -> bool:
    """A confirmed alert raised offline waits for connectivity."""

    console.print(Panel("📡 Offline Delivery", style="blue"))

    service = build_service()
    async with service.running():
        service.on_connectivity_change(False)
        feed(service, [(0, 36, "sleeping")])

        emergency = await service.confirm()
        if emergency is None:
            console.print("❌ Confirmation produced no emergency", style="red")
            return False
        console.print(f"User confirmed: {emergency.kind.value}", style="yellow")

        await asyncio.sleep(1)
        show_queue(service)

        console.print("🔌 Network restored", style="yellow")
        service.on_connectivity_change(True)
        await service.queue.drain()
        show_queue(service)
        sent = service.transport.sent_count  # type: ignore[attr-defined]

    if sent != len(CONTACTS):
        console.print(
            f"❌ Expected {len(CONTACTS)} sends after reconnect, got {sent}", style="red"
        )
        return False
    console.print("✅ Held notifications went out on reconnect", style="green")
    return True


async def main() -> None:
    configure_logging(DEMO_CONFIG.logging)

    console.print(Panel("🫀 Heart Rate Alerting Simulation", style="bold magenta"))

    scenarios = [
        ("Resting", scenario_resting),
        ("Cancelled", scenario_cancelled),
        ("Unanswered spike", scenario_unanswered_spike),
        ("Offline delivery", scenario_offline),
    ]

    results: list[tuple[str, bool]] = []
    for name, scenario in scenarios:
        try:
            passed = await scenario()
        except Exception as e:
            console.print(f"❌ {name} failed: {e}", style="red")
            passed = False
        results.append((name, passed))
        console.print()

    summary = Table(title="Simulation Summary")
    summary.add_column("Scenario", style="cyan")
    summary.add_column("Result", style="white")
    for name, passed in results:
        summary.add_row(name, "✅ PASS" if passed else "❌ FAIL")
    console.print(summary)


if __name__ == "__main__":
    asyncio.run(main())
