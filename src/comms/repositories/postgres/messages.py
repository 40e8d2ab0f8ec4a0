"""PostgreSQL message and inbox repositories."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update

from comms.channels.models import DeliveryFailureReason
from comms.core.types import Channel, MessagePriority
from comms.db.engine import DatabaseManager
from comms.db.models import InboxMessageRow, MessageRow
from comms.messaging.models import InboxMessage, Message, MessageStatus
from comms.repositories.postgres import aware, to_utc

_MESSAGE_COLUMNS = (
    "user_id", "related_entity_id", "template_id", "variant_id", "payload", "variables",
    "retry_count", "max_retries", "error", "parent_message_id", "origin_message_id",
    "journey_id", "enrollment_id", "step_id", "respect_quiet_hours",
)
_MESSAGE_TIMESTAMPS = (
    "scheduled_at", "sent_at", "failed_at", "estimated_delivery", "created_at", "updated_at",
)


class PostgresMessageRepository:
    """Postgres-backed message storage."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def save(self, message: Message) -> Message:
        values = {name: getattr(message, name) for name in _MESSAGE_COLUMNS}
        values.update({name: to_utc(getattr(message, name)) for name in _MESSAGE_TIMESTAMPS})
        values["channel"] = message.channel.value
        values["priority"] = message.priority.value
        values["status"] = message.status.value
        values["failure_reason"] = message.failure_reason.value if message.failure_reason else None
        values["payload"] = message.model_dump(mode="json", include={"payload"})["payload"]
        values["variables"] = message.model_dump(mode="json", include={"variables"})["variables"]

        async with self._db.session() as db:
            existing = await db.get(MessageRow, message.id)
            if existing:
                for name, value in values.items():
                    setattr(existing, name, value)
            else:
                db.add(MessageRow(id=message.id, **values))
            await db.commit()
        return message

    async def get(self, message_id: str) -> Message | None:
        async with self._db.session() as db:
            row = await db.get(MessageRow, message_id)
            if row is None:
                return None
            return self._row_to_message(row)

    async def list_for_user(self, user_id: str) -> list[Message]:
        async with self._db.session() as db:
            result = await db.execute(
                select(MessageRow)
                .where(MessageRow.user_id == user_id)
                .order_by(MessageRow.created_at)
            )
            return [self._row_to_message(r) for r in result.scalars().all()]

    async def count_sent_since(
        self,
        user_id: str,
        since: datetime,
        channel: Channel | None = None,
        journey_id: str | None = None,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(MessageRow)
            .where(
                MessageRow.user_id == user_id,
                MessageRow.status == MessageStatus.SENT.value,
                MessageRow.sent_at >= to_utc(since),
            )
        )
        if channel is not None:
            stmt = stmt.where(MessageRow.channel == channel.value)
        if journey_id is not None:
            stmt = stmt.where(MessageRow.journey_id == journey_id)
        async with self._db.session() as db:
            result = await db.execute(stmt)
            return result.scalar_one()

    async def claim_due_queued(self, now: datetime, limit: int = 100) -> list[Message]:
        """Move due queued messages to pending; each row is claimed by one conditional update."""
        now = to_utc(now)
        claimed: list[Message] = []
        async with self._db.session() as db:
            result = await db.execute(
                select(MessageRow.id)
                .where(
                    MessageRow.status == MessageStatus.QUEUED.value,
                    MessageRow.scheduled_at <= now,
                )
                .order_by(MessageRow.scheduled_at)
                .limit(limit)
            )
            for message_id in result.scalars().all():
                outcome = await db.execute(
                    update(MessageRow)
                    .where(MessageRow.id == message_id, MessageRow.status == MessageStatus.QUEUED.value)
                    .values(status=MessageStatus.PENDING.value, updated_at=now)
                )
                await db.commit()
                if outcome.rowcount == 1:
                    row = await db.get(MessageRow, message_id, populate_existing=True)
                    claimed.append(self._row_to_message(row))
        return claimed

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id,
            user_id=row.user_id,
            related_entity_id=row.related_entity_id,
            template_id=row.template_id,
            channel=Channel(row.channel),
            priority=MessagePriority(row.priority),
            variant_id=row.variant_id,
            payload=row.payload or {},
            variables=row.variables or {},
            status=MessageStatus(row.status),
            retry_count=row.retry_count,
            max_retries=row.max_retries,
            scheduled_at=aware(row.scheduled_at),
            sent_at=aware(row.sent_at),
            failed_at=aware(row.failed_at),
            estimated_delivery=aware(row.estimated_delivery),
            failure_reason=DeliveryFailureReason(row.failure_reason) if row.failure_reason else None,
            error=row.error,
            parent_message_id=row.parent_message_id,
            origin_message_id=row.origin_message_id,
            journey_id=row.journey_id,
            enrollment_id=row.enrollment_id,
            step_id=row.step_id,
            respect_quiet_hours=row.respect_quiet_hours,
            created_at=aware(row.created_at),
            updated_at=aware(row.updated_at),
        )


class PostgresInboxRepository:
    """Postgres-backed inbox, one row per originating message."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def upsert(self, item: InboxMessage) -> InboxMessage:
        async with self._db.session() as db:
            result = await db.execute(
                select(InboxMessageRow).where(
                    InboxMessageRow.origin_message_id == item.origin_message_id
                )
            )
            existing = result.scalar_one_or_none()
            if existing:
                existing.title = item.title
                existing.body = item.body
                existing.cta = item.cta
                existing.channel_config = item.channel_config
                existing.read = item.read
                item = item.model_copy(update={"id": existing.id, "created_at": aware(existing.created_at)})
            else:
                db.add(InboxMessageRow(
                    id=item.id,
                    user_id=item.user_id,
                    origin_message_id=item.origin_message_id,
                    template_id=item.template_id,
                    related_entity_id=item.related_entity_id,
                    title=item.title,
                    body=item.body,
                    cta=item.cta,
                    channel_config=item.channel_config,
                    read=item.read,
                    created_at=to_utc(item.created_at),
                ))
            await db.commit()
        return item

    async def get_by_origin(self, origin_message_id: str) -> InboxMessage | None:
        async with self._db.session() as db:
            result = await db.execute(
                select(InboxMessageRow).where(InboxMessageRow.origin_message_id == origin_message_id)
            )
            row = result.scalar_one_or_none()
            return self._row_to_item(row) if row else None

    async def list_for_user(self, user_id: str) -> list[InboxMessage]:
        async with self._db.session() as db:
            result = await db.execute(
                select(InboxMessageRow)
                .where(InboxMessageRow.user_id == user_id)
                .order_by(InboxMessageRow.created_at)
            )
            return [self._row_to_item(r) for r in result.scalars().all()]

    @staticmethod
    def _row_to_item(row: InboxMessageRow) -> InboxMessage:
        return InboxMessage(
            id=row.id,
            user_id=row.user_id,
            origin_message_id=row.origin_message_id,
            template_id=row.template_id,
            related_entity_id=row.related_entity_id,
            title=row.title,
            body=row.body,
            cta=row.cta or [],
            channel_config=row.channel_config or {},
            read=row.read,
            created_at=aware(row.created_at),
        )
