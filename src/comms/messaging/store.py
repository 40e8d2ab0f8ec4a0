"""In-memory message and inbox stores."""

from __future__ import annotations

import threading
from datetime import datetime

from comms.core.types import Channel
from comms.messaging.models import InboxMessage, Message, MessageStatus


class MessageStore:
    """In-memory store for messages."""

    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self._lock = threading.Lock()

    def save(self, message: Message) -> Message:
        self._messages[message.id] = message
        return message

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def list_for_user(self, user_id: str) -> list[Message]:
        return sorted(
            (m for m in self._messages.values() if m.user_id == user_id),
            key=lambda m: m.created_at,
        )

    def count_sent_since(
        self,
        user_id: str,
        since: datetime,
        channel: Channel | None = None,
        journey_id: str | None = None,
    ) -> int:
        return sum(
            1 for m in self._messages.values()
            if m.user_id == user_id
            and m.status == MessageStatus.SENT
            and m.sent_at is not None
            and m.sent_at >= since
            and (channel is None or m.channel == channel)
            and (journey_id is None or m.journey_id == journey_id)
        )

    def claim_due_queued(self, now: datetime, limit: int = 100) -> list[Message]:
        """Move due queued messages to pending and return them."""
        with self._lock:
            due = sorted(
                (m for m in self._messages.values()
                 if m.status == MessageStatus.QUEUED
                 and m.scheduled_at is not None
                 and m.scheduled_at <= now),
                key=lambda m: m.scheduled_at,
            )[:limit]
            for message in due:
                message.status = MessageStatus.PENDING
                message.updated_at = now
            return [m.model_copy(deep=True) for m in due]

    @property
    def count(self) -> int:
        return len(self._messages)


class InboxStore:
    """In-memory inbox keyed by the originating message id."""

    def __init__(self) -> None:
        self._by_origin: dict[str, InboxMessage] = {}

    def upsert(self, item: InboxMessage) -> InboxMessage:
        existing = self._by_origin.get(item.origin_message_id)
        if existing is not None:
            item = item.model_copy(update={"id": existing.id, "created_at": existing.created_at})
        self._by_origin[item.origin_message_id] = item
        return item

    def get_by_origin(self, origin_message_id: str) -> InboxMessage | None:
        return self._by_origin.get(origin_message_id)

    def list_for_user(self, user_id: str) -> list[InboxMessage]:
        return sorted(
            (i for i in self._by_origin.values() if i.user_id == user_id),
            key=lambda i: i.created_at,
        )
