"""
Configuration management with environment variable support and validation.

Design principles:
- Validation at the boundary (malformed thresholds never reach the detector)
- Type safety with Pydantic
- Secure defaults (no transport credentials in code)
- Detection rules are user-editable at runtime, last write wins
"""

import json
import os
from functools import lru_cache
from typing import Any, Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from pulseguard.domain.errors import ConfigurationError
from pulseguard.domain.models import DetectionKind, EmergencyContact, NotificationPriority

# Load environment variables from .env file
load_dotenv()

logger = structlog.get_logger(__name__)


class DetectionRules(BaseModel):
    """Thresholds and enable flags for each deviation rule."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    high_enabled: bool = Field(default=True, description="Enable the high threshold alert")
    high_bpm: int = Field(default=150, ge=90, le=250, description="High alert threshold")
    low_enabled: bool = Field(default=True, description="Enable the low threshold alert")
    low_bpm: int = Field(default=40, ge=25, le=90, description="Low alert threshold")

    rapid_increase_enabled: bool = Field(default=True)
    rapid_increase_delta_bpm: int = Field(default=30, ge=10, le=100)
    rapid_increase_window_seconds: float = Field(default=600.0, gt=0.0, le=3600.0)

    extreme_spike_enabled: bool = Field(default=True)
    extreme_spike_delta_bpm: int = Field(default=40, ge=10, le=100)
    extreme_spike_window_seconds: float = Field(default=300.0, gt=0.0, le=3600.0)

    @model_validator(mode="after")
    def low_below_high(self) -> "DetectionRules":
        if self.low_bpm >= self.high_bpm:
            raise ValueError(
                f"low_bpm ({self.low_bpm}) must be below high_bpm ({self.high_bpm})"
            )
        return self


class RuleConfiguration:
    """
    Live detection rules shared between the settings surface and the detector.

    Every write validates a complete new snapshot and swaps it in, so the
    detector always reads a consistent set of thresholds on its next sample.
    """

    def __init__(self, rules: DetectionRules | None = None) -> None:
        self._rules = rules or DetectionRules()
        self.logger = logger.bind(component="rule_configuration")

    @property
    def rules(self) -> DetectionRules:
        return self._rules

    def update(self, **changes: Any) -> DetectionRules:
        """Apply changes atomically. Raises ValidationError and keeps the old rules on bad input."""
        updated = DetectionRules.model_validate({**self._rules.model_dump(), **changes})
        self._rules = updated
        self.logger.info("detection_rules_updated", changes=changes)
        return updated


class ConfirmationConfig(BaseModel):
    """Countdown gate between detection and contact-facing action."""

    countdown_seconds: int = Field(
        default=15, ge=1, le=120, description="Seconds the user has to cancel"
    )
    tick_seconds: float = Field(default=1.0, gt=0.0, description="Countdown tick period")
    max_alerts_per_hour: int = Field(
        default=3, ge=1, description="Confirmed emergencies allowed in a trailing hour"
    )


def _default_priorities() -> dict[DetectionKind, NotificationPriority]:
    return {
        DetectionKind.EXTREME_SPIKE: NotificationPriority.CRITICAL,
        DetectionKind.HIGH_THRESHOLD: NotificationPriority.CRITICAL,
        DetectionKind.LOW_THRESHOLD: NotificationPriority.CRITICAL,
        DetectionKind.RAPID_INCREASE: NotificationPriority.HIGH,
    }


class DeliveryConfig(BaseModel):
    """Delivery queue scheduling and retry policy."""

    process_interval_seconds: float = Field(
        default=30.0, gt=0.0, description="Interval between queue processing cycles"
    )
    batch_size: int = Field(default=3, gt=0, description="Notifications attempted per cycle")
    max_attempts: int = Field(default=5, gt=0, description="Attempts before a notification expires")

    retry_base_seconds: float = Field(default=30.0, gt=0.0)
    max_retry_interval_seconds: float = Field(default=300.0, gt=0.0)
    retry_jitter_seconds: float = Field(default=30.0, ge=0.0)
    send_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Upper bound for one transport send"
    )

    sent_grace_seconds: float = Field(
        default=60.0, ge=0.0, description="How long a sent notification stays visible"
    )
    failed_retention_hours: float = Field(
        default=24.0, gt=0.0, description="Age after which unretried failures are abandoned"
    )

    priority_by_kind: dict[DetectionKind, NotificationPriority] = Field(
        default_factory=_default_priorities
    )

    @model_validator(mode="after")
    def every_kind_has_priority(self) -> "DeliveryConfig":
        missing = [kind.value for kind in DetectionKind if kind not in self.priority_by_kind]
        if missing:
            raise ValueError(f"priority_by_kind is missing: {', '.join(missing)}")
        return self


class IngestConfig(BaseModel):
    """Plausibility bounds for readings coming off the wearable."""

    min_plausible_bpm: int = Field(default=20, gt=0)
    max_plausible_bpm: int = Field(default=300, gt=0)

    @model_validator(mode="after")
    def bounds_ordered(self) -> "IngestConfig":
        if self.min_plausible_bpm >= self.max_plausible_bpm:
            raise ValueError("min_plausible_bpm must be below max_plausible_bpm")
        return self


class StorageConfig(BaseModel):
    """Durable notification store."""

    backend: Literal["json", "memory"] = Field(default="json")
    queue_path: str = Field(
        default="./data/notification_queue.json", description="JSON file backing the queue"
    )


class TransportConfig(BaseModel):
    """Outbound notification relay."""

    backend: Literal["webhook", "logging"] = Field(default="logging")
    webhook_url: str | None = Field(default=None, description="Relay endpoint for push/SMS/email")
    api_key: str | None = Field(default=None, description="Bearer token for the relay")


class NetworkConfig(BaseModel):
    """Reachability probe that drives online/offline transitions."""

    probe_enabled: bool = Field(default=True)
    probe_host: str = Field(default="1.1.1.1")
    probe_port: int = Field(default=53, gt=0, lt=65536)
    probe_interval_seconds: float = Field(default=15.0, gt=0.0)
    probe_timeout_seconds: float = Field(default=3.0, gt=0.0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    detection: DetectionRules = Field(default_factory=DetectionRules)
    confirmation: ConfirmationConfig = Field(default_factory=ConfirmationConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    contacts: list[EmergencyContact] = Field(default_factory=list)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self

    @model_validator(mode="after")
    def webhook_needs_url(self) -> "AppConfig":
        if self.transport.backend == "webhook" and not self.transport.webhook_url:
            raise ValueError("TRANSPORT_WEBHOOK_URL must be set for the webhook transport")
        return self


def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
    v = val.strip().lower()
    if v in {"dev", "development"}:
        return "development"
    if v in {"stage", "staging"}:
        return "staging"
    return "production"


def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    v = val.strip().upper()
    return cast(
        Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
    )


def _env_overrides(prefix: str, fields: dict[str, Any]) -> dict[str, str]:
    """Collect PREFIX_FIELD environment variables for the given model fields."""
    overrides = {}
    for name in fields:
        value = os.getenv(f"{prefix}_{name.upper()}")
        if value is not None:
            overrides[name] = value
    return overrides


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    try:
        # Pydantic coerces the raw strings ("150", "true") in lax mode
        detection = DetectionRules.model_validate(
            _env_overrides("DETECTION", DetectionRules.model_fields)
        )
        confirmation = ConfirmationConfig.model_validate(
            _env_overrides("CONFIRMATION", ConfirmationConfig.model_fields)
        )
        delivery_fields = {
            k: v for k, v in DeliveryConfig.model_fields.items() if k != "priority_by_kind"
        }
        delivery = DeliveryConfig.model_validate(_env_overrides("DELIVERY", delivery_fields))
        ingest = IngestConfig.model_validate(_env_overrides("INGEST", IngestConfig.model_fields))

        storage = StorageConfig(
            backend=cast(Literal["json", "memory"], os.getenv("STORAGE_BACKEND", "json")),
            queue_path=os.getenv("STORAGE_QUEUE_PATH", "./data/notification_queue.json"),
        )
        transport = TransportConfig(
            backend=cast(Literal["webhook", "logging"], os.getenv("TRANSPORT_BACKEND", "logging")),
            webhook_url=os.getenv("TRANSPORT_WEBHOOK_URL") or None,
            api_key=os.getenv("TRANSPORT_API_KEY") or None,
        )
        network = NetworkConfig.model_validate(
            _env_overrides("NETWORK", NetworkConfig.model_fields)
        )
        logging_config = LoggingConfig(
            level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
            format="console" if debug else "json",
        )
        contacts = [
            EmergencyContact.model_validate(item)
            for item in json.loads(os.getenv("EMERGENCY_CONTACTS", "[]"))
        ]

        return AppConfig(
            environment=environment,
            debug=debug,
            detection=detection,
            confirmation=confirmation,
            delivery=delivery,
            ingest=ingest,
            storage=storage,
            transport=transport,
            network=network,
            logging=logging_config,
            contacts=contacts,
        )
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"✅ Configuration loaded for {config.environment} environment")

        if not config.contacts:
            print("⚠️  No emergency contacts configured - alerts cannot be delivered")

        if config.transport.backend == "logging":
            print("⚠️  Logging transport active - notifications are not really sent")

    except Exception as e:
        print(f"❌ Configuration validation failed: {e}")
        raise


# Development helpers
def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()
    rules = config.detection

    print("\n🔧 CONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\n💓 DETECTION RULES")
    print(f"High: {rules.high_bpm} BPM (enabled={rules.high_enabled})")
    print(f"Low: {rules.low_bpm} BPM (enabled={rules.low_enabled})")
    print(
        f"Rapid Increase: +{rules.rapid_increase_delta_bpm} BPM / "
        f"{rules.rapid_increase_window_seconds / 60:.0f} min "
        f"(enabled={rules.rapid_increase_enabled})"
    )
    print(
        f"Extreme Spike: +{rules.extreme_spike_delta_bpm} BPM / "
        f"{rules.extreme_spike_window_seconds / 60:.0f} min (enabled={rules.extreme_spike_enabled})"
    )

    print("\n📨 DELIVERY")
    print(f"Cycle Interval: {config.delivery.process_interval_seconds}s")
    print(f"Batch Size: {config.delivery.batch_size}")
    print(f"Max Attempts: {config.delivery.max_attempts}")
    print(f"Transport: {config.transport.backend}")
    print(f"Contacts: {len(config.contacts)}")


if __name__ == "__main__":
    # Test configuration loading
    validate_config()
    print_config_summary()
