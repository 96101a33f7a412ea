from .logging_transport import LoggingTransport
from .webhook import WebhookTransport

__all__ = ["LoggingTransport", "WebhookTransport"]
