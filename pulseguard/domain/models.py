"""
Domain models for heart-rate monitoring and emergency alerting.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation and for the JSON form written to the
durable notification store.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pulseguard.domain.errors import InvalidTransitionError


def utc_now() -> datetime:
    return datetime.now(UTC)


class HeartRateSample(BaseModel):
    """Single heart-rate reading delivered by the wearable."""

    model_config = ConfigDict(frozen=True)

    value: int = Field(gt=0, description="Heart rate in BPM")
    timestamp: datetime = Field(default_factory=utc_now)
    source_context: str | None = Field(
        default=None, description="Optional context such as posture ('standing', 'sitting')"
    )

    @field_validator("timestamp")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class DetectionKind(str, Enum):
    """Deviation rules, declared from most to least clinically urgent."""

    EXTREME_SPIKE = "extreme_spike"
    RAPID_INCREASE = "rapid_increase"
    HIGH_THRESHOLD = "high_threshold"
    LOW_THRESHOLD = "low_threshold"

    @property
    def urgency(self) -> int:
        """Higher is more urgent."""
        return _URGENCY[self]

    @property
    def is_pattern(self) -> bool:
        return self in (DetectionKind.EXTREME_SPIKE, DetectionKind.RAPID_INCREASE)


_URGENCY = {
    DetectionKind.EXTREME_SPIKE: 4,
    DetectionKind.RAPID_INCREASE: 3,
    DetectionKind.HIGH_THRESHOLD: 2,
    DetectionKind.LOW_THRESHOLD: 1,
}


class DetectionEvent(BaseModel):
    """A rule firing for one sample. Consumed once by the confirmation gate."""

    model_config = ConfigDict(frozen=True)

    kind: DetectionKind
    heart_rate: int
    baseline_heart_rate: int | None = Field(
        default=None, description="Earliest matching sample in the window (pattern rules only)"
    )
    detected_at: datetime
    details: str
    source_context: str | None = None


class EmergencySeverity(str, Enum):
    """Severity of the reading that caused an emergency."""

    CRITICAL = "critical"  # HR < 40 or > 150
    HIGH = "high"  # HR 40-50 or 130-150
    MODERATE = "moderate"

    @classmethod
    def for_heart_rate(cls, heart_rate: int) -> "EmergencySeverity":
        if heart_rate < 40 or heart_rate > 150:
            return cls.CRITICAL
        if heart_rate <= 50 or heart_rate >= 130:
            return cls.HIGH
        return cls.MODERATE


class GeoLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


class EmergencyEvent(BaseModel):
    """Confirmed emergency. Immutable once the gate creates it."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    heart_rate: int
    kind: DetectionKind
    severity: EmergencySeverity
    detected_at: datetime
    confirmed_at: datetime
    location: GeoLocation | None = None
    recipient_ids: frozenset[str] = Field(default_factory=frozenset)
    auto_confirmed: bool = Field(
        default=False, description="True when the countdown expired without user input"
    )
    resolved_at: datetime | None = Field(
        default=None, description="When the user marked the emergency as handled"
    )


class ContactChannel(str, Enum):
    PUSH = "push"
    SMS = "sms"
    EMAIL = "email"


class EmergencyContact(BaseModel):
    """A registered contact as exposed by the contact book."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    channel: ContactChannel = ContactChannel.SMS
    address: str = Field(min_length=1, description="Phone number, email or push token")
    is_primary: bool = False


class NotificationPriority(str, Enum):
    """Delivery urgency tier."""

    CRITICAL = "critical"  # Life-threatening emergency
    HIGH = "high"  # Urgent medical alert
    NORMAL = "normal"  # Standard notification

    @property
    def rank(self) -> int:
        return {"critical": 3, "high": 2, "normal": 1}[self.value]


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (NotificationStatus.SENT, NotificationStatus.EXPIRED)


# sending -> pending only happens when a crashed in-flight attempt is reloaded.
_ALLOWED_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    NotificationStatus.PENDING: frozenset({NotificationStatus.SENDING}),
    NotificationStatus.SENDING: frozenset(
        {
            NotificationStatus.SENT,
            NotificationStatus.FAILED,
            NotificationStatus.EXPIRED,
            NotificationStatus.PENDING,
        }
    ),
    NotificationStatus.FAILED: frozenset({NotificationStatus.PENDING}),
    NotificationStatus.SENT: frozenset(),
    NotificationStatus.EXPIRED: frozenset(),
}


class QueuedNotification(BaseModel):
    """One delivery of one emergency to one contact."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    emergency_event_id: str
    recipient_id: str
    recipient_name: str
    channel: ContactChannel
    channel_address: str
    message: str
    priority: NotificationPriority
    status: NotificationStatus = NotificationStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    enqueued_at: datetime = Field(default_factory=utc_now)
    status_changed_at: datetime = Field(default_factory=utc_now)

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.emergency_event_id, self.recipient_id)

    def sort_key(self) -> tuple[int, datetime]:
        """Priority descending, then oldest first."""
        return (-self.priority.rank, self.enqueued_at)

    def can_transition_to(self, status: NotificationStatus) -> bool:
        return status in _ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, status: NotificationStatus, at: datetime) -> None:
        if not self.can_transition_to(status):
            raise InvalidTransitionError(
                f"Notification {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.status_changed_at = at


class QueueStatus(BaseModel):
    """Snapshot of the delivery queue for status screens."""

    total: int
    is_online: bool
    last_processed_at: datetime | None
    by_status: dict[NotificationStatus, int] = Field(default_factory=dict)
