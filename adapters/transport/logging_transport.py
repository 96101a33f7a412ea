"""
Development transport.

Writes the notification to the structured log instead of a provider.
Never use it in production: every send "succeeds".
"""

from uuid import uuid4

import structlog

from pulseguard.domain.models import ContactChannel
from pulseguard.services.result import Result

logger = structlog.get_logger(__name__)


class LoggingTransport:
    def __init__(self) -> None:
        self.logger = logger.bind(component="logging_transport")
        self.sent_count = 0

    async def send(self, address: str, channel: ContactChannel, message: str) -> Result[str]:
        self.sent_count += 1
        message_id = str(uuid4())
        self.logger.info(
            "notification_logged",
            channel=channel.value,
            address=address,
            message_length=len(message),
            message_id=message_id,
        )
        return Result.ok(message_id)
