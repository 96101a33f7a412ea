"""
Sample ingest: the boundary between the wearable link and the detector.

Readings are normalized into HeartRateSample objects. Implausible values and
readings that arrive behind the time cursor are dropped and counted rather
than raised back into the transport callback.
"""

import math
from datetime import UTC, datetime

import structlog

from pulseguard.config import IngestConfig
from pulseguard.domain.models import HeartRateSample

logger = structlog.get_logger(__name__)


class SampleIngest:
    """Validates raw wearable readings and enforces non-decreasing timestamps."""

    def __init__(self, config: IngestConfig | None = None) -> None:
        self.config = config or IngestConfig()
        self.logger = logger.bind(component="sample_ingest")
        self._cursor: datetime | None = None
        self.accepted_count = 0
        self.rejected_count = 0

    @property
    def cursor(self) -> datetime | None:
        """Timestamp of the last accepted sample."""
        return self._cursor

    def normalize(
        self,
        heart_rate: int | float,
        timestamp: datetime,
        source_context: str | None = None,
    ) -> HeartRateSample | None:
        """Return a sample ready for detection, or None when the reading is dropped."""
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)

        if not math.isfinite(heart_rate):
            self._reject("implausible_heart_rate", heart_rate=str(heart_rate))
            return None

        value = int(round(heart_rate))
        if not self.config.min_plausible_bpm <= value <= self.config.max_plausible_bpm:
            self._reject("implausible_heart_rate", heart_rate=heart_rate)
            return None

        if self._cursor is not None and timestamp < self._cursor:
            self._reject(
                "out_of_order_sample",
                heart_rate=value,
                timestamp=timestamp.isoformat(),
                cursor=self._cursor.isoformat(),
            )
            return None

        context = source_context.strip().lower() if source_context else None
        sample = HeartRateSample(value=value, timestamp=timestamp, source_context=context or None)

        self._cursor = timestamp
        self.accepted_count += 1
        return sample

    def _reject(self, reason: str, **fields: object) -> None:
        self.rejected_count += 1
        self.logger.warning("sample_rejected", reason=reason, **fields)
