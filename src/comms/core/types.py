"""Core type definitions shared across all comms modules."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Channel(StrEnum):
    """Delivery media a message can reach a user through."""

    PUSH = "push"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    SMS = "sms"
    INBOX = "inbox"


# Tie-break order for channel selection: earlier wins on equal score.
CHANNEL_ORDER: tuple[Channel, ...] = (
    Channel.PUSH,
    Channel.EMAIL,
    Channel.WHATSAPP,
    Channel.SMS,
    Channel.INBOX,
)

# Interruptive channels are suppressed during quiet hours.
INTERRUPTIVE_CHANNELS: frozenset[Channel] = frozenset(
    {Channel.PUSH, Channel.WHATSAPP, Channel.SMS}
)


class MessagePriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TemplateCategory(StrEnum):
    """Template category; determines which consent flag a send requires."""

    TRANSACTIONAL = "transactional"
    MARKETING = "marketing"
    CARING = "caring"
    REMINDER = "reminder"
    JOURNEY = "journey"


class AnalyticsEvent(BaseModel):
    """A fire-and-forget record of a send attempt or outcome."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: str
    user_id: str
    message_id: str | None = None
    template_id: str | None = None
    channel: Channel | None = None
    journey_id: str | None = None
    enrollment_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

