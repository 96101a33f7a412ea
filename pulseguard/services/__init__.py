"""
Core services for heart-rate alerting.

This package contains the pipeline stages (ingest, detection, confirmation,
delivery), the network glue and the composition root that wires them.
"""

from .confirmation import AlertRateLimiter, ConfirmationGate, GateState, PendingConfirmation
from .delivery import DeliveryQueue, emergency_message, retry_delay_seconds
from .detection import DeviationDetector, RollingWindow
from .ingest import SampleIngest
from .monitoring import HeartRateMonitoringService
from .network import NetworkMonitor
from .result import Result
from .scheduling import PeriodicTask, SystemClock

__all__ = [
    "AlertRateLimiter",
    "ConfirmationGate",
    "DeliveryQueue",
    "DeviationDetector",
    "GateState",
    "HeartRateMonitoringService",
    "NetworkMonitor",
    "PendingConfirmation",
    "PeriodicTask",
    "Result",
    "RollingWindow",
    "SampleIngest",
    "SystemClock",
    "emergency_message",
    "retry_delay_seconds",
]
