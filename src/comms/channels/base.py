"""Channel provider Protocol and base implementation."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Protocol, runtime_checkable

from comms.channels.models import (
    ConnectionStatus,
    DeliveryFailureReason,
    DeliveryRequest,
    DeliveryResult,
)
from comms.core.types import Channel

logger = logging.getLogger(__name__)


@runtime_checkable
class ChannelProvider(Protocol):
    """Delivery adapter for a single channel."""

    @property
    def name(self) -> str: ...

    @property
    def channel(self) -> Channel: ...

    async def deliver(self, request: DeliveryRequest) -> DeliveryResult: ...

    def health_check(self) -> ConnectionStatus: ...


class BaseChannelProvider(ABC):
    """Abstract base class for channel providers.

    Subclasses implement :meth:`_do_deliver`. Unexpected exceptions degrade
    into a ``provider_error`` failure result and mark the provider degraded;
    retry and fallback are the orchestrator's job.
    """

    def __init__(self, channel: Channel, name: str | None = None) -> None:
        self._channel = channel
        self._name = name or f"{channel}-provider"
        self._status = ConnectionStatus.CONNECTED

    @property
    def name(self) -> str:
        return self._name

    @property
    def channel(self) -> Channel:
        return self._channel

    @abstractmethod
    async def _do_deliver(self, request: DeliveryRequest) -> DeliveryResult:
        """Perform the actual delivery. Subclasses implement this."""

    async def deliver(self, request: DeliveryRequest) -> DeliveryResult:
        try:
            result = await self._do_deliver(request)
        except Exception as exc:
            logger.warning("Provider %s failed for message %s: %s", self.name, request.message_id, exc)
            self._status = ConnectionStatus.DEGRADED
            return DeliveryResult.failure(
                self._channel,
                DeliveryFailureReason.PROVIDER_ERROR,
                str(exc) or exc.__class__.__name__,
                provider_name=self.name,
            )

        result.provider_name = self.name
        if result.success:
            self._status = ConnectionStatus.CONNECTED
        return result

    def health_check(self) -> ConnectionStatus:
        return self._status
