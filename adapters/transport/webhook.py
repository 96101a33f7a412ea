"""
HTTP relay transport.

Posts each notification to a relay service (Cloud Function, Twilio proxy,
push gateway...) that fans it out to push, SMS or email. The relay is
expected to answer 2xx with an optional JSON body containing an "id".
"""

import httpx
import structlog

from pulseguard.domain.errors import DeliveryError
from pulseguard.domain.models import ContactChannel
from pulseguard.services.result import Result

logger = structlog.get_logger(__name__)


class WebhookTransport:
    """NotificationTransport backed by an httpx.AsyncClient."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None
        self.logger = logger.bind(component="webhook_transport")

    async def send(self, address: str, channel: ContactChannel, message: str) -> Result[str]:
        try:
            response = await self._client.post(
                self.url,
                json={"channel": channel.value, "address": address, "message": message},
                headers=self._headers,
            )
            response.raise_for_status()
        except httpx.TimeoutException:
            self.logger.warning("relay_timeout", url=self.url, channel=channel.value)
            return Result.err(DeliveryError("relay timed out"))
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "relay_http_error",
                url=self.url,
                status=exc.response.status_code,
                channel=channel.value,
            )
            return Result.err(DeliveryError(f"relay answered {exc.response.status_code}"))
        except httpx.HTTPError as exc:
            self.logger.error("relay_unreachable", url=self.url, error=str(exc))
            return Result.err(DeliveryError(f"relay unreachable: {exc}"))

        return Result.ok(self._provider_id(response))

    @staticmethod
    def _provider_id(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return str(response.status_code)
        if isinstance(body, dict) and body.get("id"):
            return str(body["id"])
        return str(response.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
