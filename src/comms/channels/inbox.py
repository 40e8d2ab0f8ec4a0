"""Inbox channel provider."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from comms.channels.base import BaseChannelProvider
from comms.channels.models import DeliveryRequest, DeliveryResult
from comms.core.types import Channel


class InboxChannelProvider(BaseChannelProvider):
    """The in-app inbox is the internal system of record, so delivery always succeeds.

    The inbox copy itself is written by the orchestrator on every send; this
    provider only acknowledges inbox as a primary channel.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(Channel.INBOX, name="inbox")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _do_deliver(self, request: DeliveryRequest) -> DeliveryResult:
        return DeliveryResult(
            success=True,
            channel=Channel.INBOX,
            provider_message_id=request.message_id,
            estimated_delivery=self._clock(),
        )
