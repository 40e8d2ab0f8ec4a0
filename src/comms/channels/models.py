"""Channel delivery data models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from comms.core.types import Channel, MessagePriority


class ConnectionStatus(StrEnum):
    """Provider connection health status."""

    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"


class DeliveryFailureReason(StrEnum):
    """Provider-specific transport errors normalized to one vocabulary."""

    INVALID_RECIPIENT = "invalid_recipient"
    REJECTED = "rejected"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    TIMEOUT = "timeout"
    NO_PROVIDER = "no_provider"


class DeliveryRequest(BaseModel):
    """A rendered message handed to a channel provider."""

    message_id: str
    user_id: str
    channel: Channel
    priority: MessagePriority = MessagePriority.MEDIUM
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    success: bool
    channel: Channel
    provider_name: str = ""
    provider_message_id: str | None = None
    estimated_delivery: datetime | None = None
    failure_reason: DeliveryFailureReason | None = None
    error: str | None = None

    @classmethod
    def failure(
        cls,
        channel: Channel,
        reason: DeliveryFailureReason,
        error: str,
        provider_name: str = "",
    ) -> DeliveryResult:
        return cls(
            success=False,
            channel=channel,
            provider_name=provider_name,
            failure_reason=reason,
            error=error,
        )
