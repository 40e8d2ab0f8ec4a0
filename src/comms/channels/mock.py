"""Deterministic scripted provider for development and tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from comms.channels.base import BaseChannelProvider
from comms.channels.models import DeliveryFailureReason, DeliveryRequest, DeliveryResult
from comms.core.types import Channel


class ScriptedChannelProvider(BaseChannelProvider):
    """Plays back a fixed list of outcomes, then succeeds.

    Each scripted outcome is either ``True`` (success) or a
    :class:`DeliveryFailureReason`. Every request is recorded in
    :attr:`deliveries`.
    """

    def __init__(
        self,
        channel: Channel,
        outcomes: list[bool | DeliveryFailureReason] | None = None,
        delay_seconds: float = 0.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(channel, name=f"{channel}-scripted")
        self._outcomes = list(outcomes or [])
        self._delay = delay_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.deliveries: list[DeliveryRequest] = []

    def script(self, *outcomes: bool | DeliveryFailureReason) -> None:
        self._outcomes.extend(outcomes)

    async def _do_deliver(self, request: DeliveryRequest) -> DeliveryResult:
        if self._delay:
            await asyncio.sleep(self._delay)
        self.deliveries.append(request)
        outcome = self._outcomes.pop(0) if self._outcomes else True
        if outcome is True:
            return DeliveryResult(
                success=True,
                channel=self.channel,
                provider_message_id=f"{self.channel}-{len(self.deliveries)}",
                estimated_delivery=self._clock() + timedelta(seconds=5),
            )
        reason = outcome if isinstance(outcome, DeliveryFailureReason) else DeliveryFailureReason.REJECTED
        return DeliveryResult.failure(self.channel, reason, f"scripted {reason.value}")
