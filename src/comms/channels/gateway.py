"""HTTP gateway provider for push, email, SMS and WhatsApp transports."""

from __future__ import annotations

import logging
from datetime import datetime

import httpx

from comms.channels.base import BaseChannelProvider
from comms.channels.models import DeliveryFailureReason, DeliveryRequest, DeliveryResult
from comms.core.types import Channel

logger = logging.getLogger(__name__)

_INVALID_RECIPIENT_STATUSES = {400, 404, 410, 422}


def classify_status(status_code: int) -> DeliveryFailureReason:
    """Normalize a gateway HTTP status into a delivery failure reason."""
    if status_code in _INVALID_RECIPIENT_STATUSES:
        return DeliveryFailureReason.INVALID_RECIPIENT
    if status_code == 429:
        return DeliveryFailureReason.RATE_LIMITED
    if status_code >= 500:
        return DeliveryFailureReason.PROVIDER_ERROR
    return DeliveryFailureReason.REJECTED


class HttpGatewayProvider(BaseChannelProvider):
    """Posts rendered messages to a delivery gateway's ``/v1/messages`` endpoint.

    The message id doubles as the idempotency key so a retried request never
    delivers twice on the gateway side.
    """

    def __init__(
        self,
        channel: Channel,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(channel, name=f"{channel}-gateway")
        headers: dict[str, str] = {}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            transport=transport,
        )

    async def _do_deliver(self, request: DeliveryRequest) -> DeliveryResult:
        try:
            resp = await self._http.post(
                "/v1/messages",
                json=request.model_dump(mode="json"),
                headers={"Idempotency-Key": request.message_id},
            )
        except httpx.TimeoutException as exc:
            logger.warning("Gateway %s timed out for %s", self.name, request.message_id)
            return DeliveryResult.failure(self.channel, DeliveryFailureReason.TIMEOUT, str(exc))
        except httpx.TransportError as exc:
            logger.warning("Gateway %s unreachable: %s", self.name, exc)
            return DeliveryResult.failure(
                self.channel, DeliveryFailureReason.PROVIDER_UNAVAILABLE, str(exc)
            )

        if resp.is_success:
            data = resp.json() if resp.content else {}
            estimated = data.get("estimated_delivery")
            return DeliveryResult(
                success=True,
                channel=self.channel,
                provider_message_id=data.get("id"),
                estimated_delivery=datetime.fromisoformat(estimated) if estimated else None,
            )

        reason = classify_status(resp.status_code)
        logger.warning(
            "Gateway %s rejected %s with %d (%s)",
            self.name, request.message_id, resp.status_code, reason.value,
        )
        return DeliveryResult.failure(self.channel, reason, f"HTTP {resp.status_code}: {resp.text[:200]}")

    async def close(self) -> None:
        await self._http.aclose()
