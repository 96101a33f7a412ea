"""
Streaming heart-rate deviation detection.

Each sample is appended to a time-bounded rolling window, then the enabled
rules are evaluated in urgency order:

    extreme spike > rapid increase > high threshold > low threshold

Only the most urgent firing rule produces an event, so one reading never
raises duplicate alerts. Pattern rules compare the current reading against
earlier readings inside their window; the reported baseline is the earliest
reading that satisfies the delta, which gives the "from X to Y over T
minutes" wording clinicians expect.
"""

from collections import deque
from collections.abc import Iterator
from datetime import timedelta

import structlog

from pulseguard.config import DetectionRules, RuleConfiguration
from pulseguard.domain.models import DetectionEvent, DetectionKind, HeartRateSample

logger = structlog.get_logger(__name__)

MIN_WINDOW_SECONDS = 600.0


class RollingWindow:
    """Time-ordered recent samples, evicted from the left as time advances."""

    def __init__(self) -> None:
        self._samples: deque[HeartRateSample] = deque()

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[HeartRateSample]:
        return iter(self._samples)

    @property
    def latest(self) -> HeartRateSample | None:
        return self._samples[-1] if self._samples else None

    def append(self, sample: HeartRateSample, horizon_seconds: float) -> int:
        """Add a sample and drop everything older than the horizon. Returns evicted count."""
        self._samples.append(sample)
        cutoff = sample.timestamp - timedelta(seconds=horizon_seconds)
        evicted = 0
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()
            evicted += 1
        return evicted

    def earlier_within(
        self, current: HeartRateSample, window_seconds: float
    ) -> Iterator[HeartRateSample]:
        """Samples before `current` whose age relative to it is within the window, oldest first."""
        cutoff = current.timestamp - timedelta(seconds=window_seconds)
        for sample in self._samples:
            if sample is current:
                break
            if sample.timestamp >= cutoff:
                yield sample

    def clear(self) -> None:
        self._samples.clear()


def window_horizon(rules: DetectionRules) -> float:
    """Retention needed for the longest configured pattern window."""
    return max(
        MIN_WINDOW_SECONDS,
        rules.rapid_increase_window_seconds,
        rules.extreme_spike_window_seconds,
    )


class DeviationDetector:
    """
    Evaluates threshold and pattern rules against a rolling window.

    Rules are read from the shared RuleConfiguration on every sample, so a
    settings change takes effect on the next evaluation.
    """

    def __init__(self, rule_config: RuleConfiguration | None = None) -> None:
        self.rule_config = rule_config or RuleConfiguration()
        self.window = RollingWindow()
        self.logger = logger.bind(component="deviation_detector")

    def ingest(self, sample: HeartRateSample) -> list[DetectionEvent]:
        """Append the sample and return the single highest-priority event, if any."""
        rules = self.rule_config.rules
        self.window.append(sample, window_horizon(rules))

        event = (
            self._extreme_spike(sample, rules)
            or self._rapid_increase(sample, rules)
            or self._high_threshold(sample, rules)
            or self._low_threshold(sample, rules)
        )
        if event is None:
            return []

        self.logger.info(
            "detection_fired",
            kind=event.kind.value,
            heart_rate=event.heart_rate,
            baseline_heart_rate=event.baseline_heart_rate,
            window_size=len(self.window),
        )
        return [event]

    def reset(self) -> None:
        self.window.clear()

    def _extreme_spike(
        self, sample: HeartRateSample, rules: DetectionRules
    ) -> DetectionEvent | None:
        if not rules.extreme_spike_enabled:
            return None
        return self._pattern(
            DetectionKind.EXTREME_SPIKE,
            sample,
            delta_bpm=rules.extreme_spike_delta_bpm,
            window_seconds=rules.extreme_spike_window_seconds,
        )

    def _rapid_increase(
        self, sample: HeartRateSample, rules: DetectionRules
    ) -> DetectionEvent | None:
        if not rules.rapid_increase_enabled:
            return None
        return self._pattern(
            DetectionKind.RAPID_INCREASE,
            sample,
            delta_bpm=rules.rapid_increase_delta_bpm,
            window_seconds=rules.rapid_increase_window_seconds,
        )

    def _pattern(
        self,
        kind: DetectionKind,
        sample: HeartRateSample,
        delta_bpm: int,
        window_seconds: float,
    ) -> DetectionEvent | None:
        if len(self.window) < 2:
            return None

        for earlier in self.window.earlier_within(sample, window_seconds):
            rise = sample.value - earlier.value
            if rise >= delta_bpm:
                minutes = (sample.timestamp - earlier.timestamp).total_seconds() / 60
                label = "Extreme spike" if kind is DetectionKind.EXTREME_SPIKE else "Rapid increase"
                return DetectionEvent(
                    kind=kind,
                    heart_rate=sample.value,
                    baseline_heart_rate=earlier.value,
                    detected_at=sample.timestamp,
                    details=(
                        f"{label}: heart rate rose from {earlier.value} to {sample.value} BPM "
                        f"(+{rise}) over {minutes:.1f} min"
                    ),
                    source_context=sample.source_context,
                )
        return None

    def _high_threshold(
        self, sample: HeartRateSample, rules: DetectionRules
    ) -> DetectionEvent | None:
        if not rules.high_enabled or sample.value < rules.high_bpm:
            return None
        return DetectionEvent(
            kind=DetectionKind.HIGH_THRESHOLD,
            heart_rate=sample.value,
            detected_at=sample.timestamp,
            details=f"Heart rate {sample.value} BPM at or above {rules.high_bpm} BPM",
            source_context=sample.source_context,
        )

    def _low_threshold(
        self, sample: HeartRateSample, rules: DetectionRules
    ) -> DetectionEvent | None:
        if not rules.low_enabled or sample.value > rules.low_bpm:
            return None
        return DetectionEvent(
            kind=DetectionKind.LOW_THRESHOLD,
            heart_rate=sample.value,
            detected_at=sample.timestamp,
            details=f"Heart rate {sample.value} BPM at or below {rules.low_bpm} BPM",
            source_context=sample.source_context,
        )
