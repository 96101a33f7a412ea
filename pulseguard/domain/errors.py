"""Exception taxonomy for the alerting pipeline."""


class PulseGuardError(Exception):
    """Base class for all errors raised by the pipeline."""


class ConfigurationError(PulseGuardError, ValueError):
    """Configuration could not be loaded or failed validation."""


class NoRecipientsError(PulseGuardError):
    """An emergency resolved to zero reachable contacts."""

    def __init__(self, emergency_event_id: str) -> None:
        super().__init__(f"Emergency {emergency_event_id} has no reachable recipients")
        self.emergency_event_id = emergency_event_id


class DeliveryError(PulseGuardError):
    """A transport failed to hand a message to its provider."""


class InvalidTransitionError(PulseGuardError):
    """A notification status change violated the allowed lifecycle."""


class StoreError(PulseGuardError):
    """The durable notification store could not complete an operation."""
