"""
Tests for the confirmation gate.

The gate is driven by FakeClock so the 15 second countdown runs instantly
and deterministically.
"""

import asyncio

import pytest

from pulseguard.config import ConfirmationConfig
from pulseguard.domain.models import (
    DetectionEvent,
    DetectionKind,
    EmergencyEvent,
    EmergencySeverity,
    GeoLocation,
    QueuedNotification,
)
from pulseguard.services.confirmation import AlertRateLimiter, ConfirmationGate, GateState
from pulseguard.services.result import Result
from tests.doubles import FakeClock, RecordingObserver, StaticDirectory, make_contacts, settle


class RecordingSink:
    """EmergencySink that remembers what it was handed."""

    def __init__(self, fail: bool = False) -> None:
        self.events: list[EmergencyEvent] = []
        self.fail = fail

    async def enqueue(self, event: EmergencyEvent) -> Result[list[QueuedNotification]]:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("queue unavailable")
        return Result.ok([])


class FixedLocation:
    def __init__(self, location: GeoLocation | None = None, fail: bool = False) -> None:
        self.location = location
        self.fail = fail

    async def current_location(self) -> GeoLocation | None:
        if self.fail:
            raise OSError("location services disabled")
        return self.location


def detection(
    kind: DetectionKind = DetectionKind.HIGH_THRESHOLD, heart_rate: int = 165
) -> DetectionEvent:
    return DetectionEvent(
        kind=kind,
        heart_rate=heart_rate,
        detected_at=FakeClock().now(),
        details=f"{kind.value} at {heart_rate}",
        source_context="sitting",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def gate(sink: RecordingSink, clock: FakeClock, observer: RecordingObserver) -> ConfirmationGate:
    gate = ConfirmationGate(
        sink,
        StaticDirectory(make_contacts(3)),
        config=ConfirmationConfig(countdown_seconds=15, max_alerts_per_hour=3),
        clock=clock,
    )
    gate.observers.subscribe(observer)
    return gate


class TestCountdown:
    async def test_detection_starts_the_countdown(
        self, gate: ConfirmationGate, observer: RecordingObserver
    ) -> None:
        assert gate.submit(detection())

        assert gate.state is GateState.AWAITING_CONFIRMATION
        assert gate.pending is not None
        assert gate.pending.seconds_remaining == 15
        assert gate.pending.heart_rate == 165
        assert gate.pending.source_context == "sitting"
        assert len(observer.hooks("on_pending")) == 1
        await gate.aclose()

    async def test_countdown_ticks_once_per_second(
        self, gate: ConfirmationGate, clock: FakeClock, sink: RecordingSink
    ) -> None:
        gate.submit(detection())

        await clock.advance(14)

        assert gate.state is GateState.AWAITING_CONFIRMATION
        assert gate.pending is not None
        assert gate.pending.seconds_remaining == 1
        assert sink.events == []
        await gate.aclose()

    async def test_expired_countdown_raises_one_emergency_for_every_contact(
        self,
        gate: ConfirmationGate,
        clock: FakeClock,
        sink: RecordingSink,
        observer: RecordingObserver,
    ) -> None:
        gate.submit(detection(heart_rate=165))

        await clock.advance(15)

        assert len(sink.events) == 1
        emergency = sink.events[0]
        assert emergency.auto_confirmed is True
        assert emergency.recipient_ids == frozenset({"c1", "c2", "c3"})
        assert emergency.severity is EmergencySeverity.CRITICAL
        assert emergency.kind is DetectionKind.HIGH_THRESHOLD
        assert gate.state is GateState.IDLE
        assert len(observer.hooks("on_countdown_tick")) == 15
        assert len(observer.hooks("on_confirmed")) == 1

        # Nothing else fires later
        await clock.advance(60)
        assert len(sink.events) == 1

    async def test_cancel_before_expiry_never_raises_an_emergency(
        self,
        gate: ConfirmationGate,
        clock: FakeClock,
        sink: RecordingSink,
        observer: RecordingObserver,
    ) -> None:
        gate.submit(detection())
        await clock.advance(5)

        assert gate.cancel() is True

        await clock.advance(30)
        assert sink.events == []
        assert gate.state is GateState.IDLE
        assert gate.pending is None
        assert len(observer.hooks("on_cancelled")) == 1

    async def test_explicit_confirm_hands_off_immediately(
        self, gate: ConfirmationGate, clock: FakeClock, sink: RecordingSink
    ) -> None:
        gate.submit(detection())
        await clock.advance(3)

        emergency = await gate.confirm()

        assert emergency is not None
        assert emergency.auto_confirmed is False
        assert sink.events == [emergency]

        await clock.advance(30)
        assert len(sink.events) == 1

    async def test_cancel_and_confirm_without_pending_are_noops(
        self, gate: ConfirmationGate
    ) -> None:
        assert gate.cancel() is False
        assert await gate.confirm() is None

    async def test_aclose_drops_the_countdown(
        self, gate: ConfirmationGate, clock: FakeClock, sink: RecordingSink
    ) -> None:
        gate.submit(detection())

        await gate.aclose()
        await clock.advance(30)

        assert sink.events == []
        assert gate.state is GateState.IDLE


class TestEscalation:
    async def test_more_urgent_detection_restarts_the_countdown(
        self, gate: ConfirmationGate, clock: FakeClock, sink: RecordingSink
    ) -> None:
        gate.submit(detection(DetectionKind.HIGH_THRESHOLD, 155))
        await clock.advance(10)

        assert gate.submit(detection(DetectionKind.EXTREME_SPIKE, 200))

        assert gate.pending is not None
        assert gate.pending.kind is DetectionKind.EXTREME_SPIKE
        assert gate.pending.seconds_remaining == 15

        await clock.advance(10)
        assert sink.events == []

        await clock.advance(5)
        assert [e.kind for e in sink.events] == [DetectionKind.EXTREME_SPIKE]

    @pytest.mark.parametrize(
        "follow_up", [DetectionKind.EXTREME_SPIKE, DetectionKind.RAPID_INCREASE]
    )
    async def test_equal_or_lower_urgency_is_ignored(
        self, gate: ConfirmationGate, clock: FakeClock, follow_up: DetectionKind
    ) -> None:
        gate.submit(detection(DetectionKind.EXTREME_SPIKE, 200))
        await clock.advance(4)

        assert gate.submit(detection(follow_up, 190)) is False

        assert gate.pending is not None
        assert gate.pending.kind is DetectionKind.EXTREME_SPIKE
        assert gate.pending.seconds_remaining == 11
        await gate.aclose()


class TestHandoff:
    async def test_aclose_waits_for_an_auto_confirmed_handoff(self, clock: FakeClock) -> None:
        release = asyncio.Event()

        class SlowSink(RecordingSink):
            async def enqueue(self, event: EmergencyEvent) -> Result[list[QueuedNotification]]:
                await release.wait()
                return await super().enqueue(event)

        sink = SlowSink()
        gate = ConfirmationGate(sink, StaticDirectory(make_contacts(1)), clock=clock)
        gate.submit(detection())

        await clock.advance(15)
        assert gate.state is GateState.CONFIRMED

        closing = asyncio.create_task(gate.aclose())
        await settle()
        assert not closing.done()

        release.set()
        await closing

        assert len(sink.events) == 1
        assert gate.state is GateState.IDLE

    async def test_cancel_during_handoff_is_a_noop(self, clock: FakeClock) -> None:
        cancel_results: list[bool] = []

        class CancellingSink(RecordingSink):
            async def enqueue(self, event: EmergencyEvent) -> Result[list[QueuedNotification]]:
                cancel_results.append(gate.cancel())
                return await super().enqueue(event)

        sink = CancellingSink()
        gate = ConfirmationGate(sink, StaticDirectory(make_contacts(1)), clock=clock)
        gate.submit(detection())

        await gate.confirm()

        assert cancel_results == [False]
        assert len(sink.events) == 1

    async def test_failing_sink_is_reported_to_observers(
        self, clock: FakeClock, observer: RecordingObserver
    ) -> None:
        gate = ConfirmationGate(
            RecordingSink(fail=True), StaticDirectory(make_contacts(1)), clock=clock
        )
        gate.observers.subscribe(observer)
        gate.submit(detection())

        emergency = await gate.confirm()

        assert emergency is not None
        assert gate.state is GateState.IDLE
        [(confirmed, report)] = observer.hooks("on_confirmed")
        assert confirmed == emergency
        assert isinstance(report, Result)
        assert report.is_err()

    async def test_location_is_attached_when_available(self, clock: FakeClock) -> None:
        sink = RecordingSink()
        here = GeoLocation(latitude=37.7749, longitude=-122.4194)
        gate = ConfirmationGate(
            sink, StaticDirectory(make_contacts(1)), clock=clock, location=FixedLocation(here)
        )
        gate.submit(detection())

        emergency = await gate.confirm()

        assert emergency is not None
        assert emergency.location == here

    async def test_location_failure_does_not_block_the_emergency(self, clock: FakeClock) -> None:
        sink = RecordingSink()
        gate = ConfirmationGate(
            sink, StaticDirectory(make_contacts(1)), clock=clock, location=FixedLocation(fail=True)
        )
        gate.submit(detection())

        emergency = await gate.confirm()

        assert emergency is not None
        assert emergency.location is None
        assert len(sink.events) == 1


class TestRateLimit:
    async def test_confirmations_beyond_the_hourly_cap_are_suppressed(
        self, clock: FakeClock, sink: RecordingSink, observer: RecordingObserver
    ) -> None:
        gate = ConfirmationGate(
            sink,
            StaticDirectory(make_contacts(1)),
            config=ConfirmationConfig(max_alerts_per_hour=2),
            clock=clock,
        )
        gate.observers.subscribe(observer)

        for _ in range(2):
            assert gate.submit(detection())
            await gate.confirm()

        assert gate.submit(detection()) is False
        assert gate.state is GateState.IDLE
        assert len(observer.hooks("on_rate_limited")) == 1

        await clock.advance(3600)
        assert gate.submit(detection()) is True
        await gate.aclose()

    def test_limiter_counts_a_trailing_hour(self, clock: FakeClock) -> None:
        limiter = AlertRateLimiter(max_per_hour=1, clock=clock)

        assert limiter.allow()
        limiter.record()

        assert not limiter.allow()
        assert limiter.remaining == 0
