"""Protocol definitions for the repository interfaces.

Each protocol mirrors the public methods of the corresponding in-memory
store, so both the sync in-memory stores and the async SQLAlchemy
repositories satisfy it. Callers wrap every call in
:func:`comms.repositories.resolve`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from comms.core.types import Channel
from comms.journeys.models import JourneyEnrollment
from comms.messaging.models import InboxMessage, Message
from comms.templates.models import Template


@runtime_checkable
class TemplateRepository(Protocol):
    def save(self, template: Template) -> Template: ...

    def get(self, template_id: str) -> Template | None: ...

    def delete(self, template_id: str) -> bool: ...

    def list_all(self) -> list[Template]: ...


@runtime_checkable
class MessageRepository(Protocol):
    def save(self, message: Message) -> Message: ...

    def get(self, message_id: str) -> Message | None: ...

    def list_for_user(self, user_id: str) -> list[Message]: ...

    def count_sent_since(
        self,
        user_id: str,
        since: datetime,
        channel: Channel | None = None,
        journey_id: str | None = None,
    ) -> int: ...

    def claim_due_queued(self, now: datetime, limit: int = 100) -> list[Message]: ...


@runtime_checkable
class InboxRepository(Protocol):
    def upsert(self, item: InboxMessage) -> InboxMessage: ...

    def get_by_origin(self, origin_message_id: str) -> InboxMessage | None: ...

    def list_for_user(self, user_id: str) -> list[InboxMessage]: ...


@runtime_checkable
class EnrollmentRepository(Protocol):
    def save(self, enrollment: JourneyEnrollment) -> JourneyEnrollment: ...

    def save_claimed(self, enrollment: JourneyEnrollment, worker_id: str) -> bool: ...

    def get(self, enrollment_id: str) -> JourneyEnrollment | None: ...

    def list_for_user(self, user_id: str) -> list[JourneyEnrollment]: ...

    def list_for_user_journey(self, user_id: str, journey_id: str) -> list[JourneyEnrollment]: ...

    def list_due(self, now: datetime, limit: int = 100) -> list[JourneyEnrollment]: ...

    def claim(
        self,
        enrollment_id: str,
        worker_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> JourneyEnrollment | None: ...

    def release(self, enrollment_id: str, worker_id: str) -> None: ...
