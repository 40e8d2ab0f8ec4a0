"""Message and inbox data models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from comms.channels.models import DeliveryFailureReason
from comms.core.types import Channel, MessagePriority


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:16]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    QUEUED = "queued"


class Message(BaseModel):
    """One send attempt on one channel.

    A fallback attempt is a new message linked through ``parent_message_id``;
    ``origin_message_id`` always points at the first attempt of the send.
    """

    id: str = Field(default_factory=new_message_id)
    user_id: str
    related_entity_id: str | None = None
    template_id: str
    channel: Channel
    priority: MessagePriority = MessagePriority.MEDIUM
    variant_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    status: MessageStatus = MessageStatus.PENDING
    retry_count: int = 0
    max_retries: int = 2
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    failed_at: datetime | None = None
    estimated_delivery: datetime | None = None
    failure_reason: DeliveryFailureReason | None = None
    error: str | None = None
    parent_message_id: str | None = None
    origin_message_id: str | None = None
    journey_id: str | None = None
    enrollment_id: str | None = None
    step_id: str | None = None
    respect_quiet_hours: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class SendMessageRequest(BaseModel):
    user_id: str = ""
    template_id: str = ""
    channel: Channel | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    priority: MessagePriority | None = None
    schedule_at: datetime | None = None
    related_entity_id: str | None = None
    journey_id: str | None = None
    enrollment_id: str | None = None
    step_id: str | None = None
    respect_quiet_hours: bool = True


class SendMessageResult(BaseModel):
    """Final outcome of a send after any fallback attempts."""

    message_id: str
    status: MessageStatus
    channel: Channel
    estimated_delivery: datetime | None = None
    variant_id: str | None = None
    attempts: list[str] = Field(default_factory=list)
    inbox_message_id: str | None = None


class InboxMessage(BaseModel):
    """The user-visible backup copy written for every send."""

    id: str = Field(default_factory=lambda: f"inbox_{uuid.uuid4().hex[:16]}")
    user_id: str
    origin_message_id: str
    template_id: str
    related_entity_id: str | None = None
    title: str | None = None
    body: str = ""
    cta: list[dict[str, Any]] = Field(default_factory=list)
    channel_config: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
