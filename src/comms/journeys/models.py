"""Journey definitions, enrollments and inbound user events."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from comms.core.types import Channel, MessagePriority
from comms.preferences.models import TimezoneName

# Domain events that count as a conversion for exit_on_conversion.
CONVERSION_EVENTS: frozenset[str] = frozenset(
    {"order.completed", "subscription.created", "appointment.booked"}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType(StrEnum):
    EVENT = "event"
    BEHAVIOR = "behavior"
    DATE = "date"


class JourneyTrigger(BaseModel):
    """What enrolls a user.

    ``event``: a domain event named ``event_name`` whose data contains every
    key/value of ``event_properties``.
    ``behavior``: no activity for at least ``inactivity_days``.
    ``date``: an event carrying ``date_field``; the first step is anchored at
    that date shifted by ``offset_days``.
    """

    type: TriggerType
    event_name: str | None = None
    event_properties: dict[str, Any] = Field(default_factory=dict)
    inactivity_days: int | None = None
    date_field: str | None = None
    offset_days: int = 0


class StepDelay(BaseModel):
    days: int = 0
    hours: int = 0
    minutes: int = 0

    def as_timedelta(self) -> timedelta:
        return timedelta(days=self.days, hours=self.hours, minutes=self.minutes)


class ActionType(StrEnum):
    SEND_MESSAGE = "send_message"
    WAIT = "wait"
    UPDATE_PROPERTY = "update_property"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    WEBHOOK = "webhook"


class SendMessageAction(BaseModel):
    type: Literal["send_message"] = "send_message"
    template_id: str
    channel: Channel | None = None
    priority: MessagePriority | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    respect_quiet_hours: bool | None = None


class WaitAction(BaseModel):
    type: Literal["wait"] = "wait"


class UpdatePropertyAction(BaseModel):
    type: Literal["update_property"] = "update_property"
    property_name: str
    property_value: Any = None


class AddTagAction(BaseModel):
    type: Literal["add_tag"] = "add_tag"
    tags: list[str]


class RemoveTagAction(BaseModel):
    type: Literal["remove_tag"] = "remove_tag"
    tags: list[str]


class WebhookAction(BaseModel):
    type: Literal["webhook"] = "webhook"
    url: str
    method: str = "POST"
    data: dict[str, Any] = Field(default_factory=dict)


JourneyAction = Annotated[
    Union[
        SendMessageAction,
        WaitAction,
        UpdatePropertyAction,
        AddTagAction,
        RemoveTagAction,
        WebhookAction,
    ],
    Field(discriminator="type"),
]


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EXISTS = "exists"


class StepCondition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None


class JourneyStep(BaseModel):
    id: str
    order: int
    name: str = ""
    delay: StepDelay = Field(default_factory=StepDelay)
    action: JourneyAction
    conditions: list[StepCondition] = Field(default_factory=list)


class JourneySettings(BaseModel):
    timezone: TimezoneName = "UTC"
    max_messages_per_day: int | None = None
    respect_quiet_hours: bool = True
    exit_on_conversion: bool = True
    exit_events: list[str] = Field(default_factory=list)
    allow_re_entry: bool = False
    re_entry_cooldown_days: int = 0


class Journey(BaseModel):
    """Immutable journey definition. Steps run in ascending ``order``."""

    id: str
    name: str
    description: str = ""
    trigger: JourneyTrigger
    steps: list[JourneyStep]
    settings: JourneySettings = Field(default_factory=JourneySettings)
    active: bool = True

    def ordered_steps(self) -> list[JourneyStep]:
        return sorted(self.steps, key=lambda s: s.order)

    def first_step(self) -> JourneyStep | None:
        steps = self.ordered_steps()
        return steps[0] if steps else None

    def get_step(self, step_id: str | None) -> JourneyStep | None:
        return next((s for s in self.steps if s.id == step_id), None)

    def next_step(self, step_id: str) -> JourneyStep | None:
        steps = self.ordered_steps()
        for index, step in enumerate(steps):
            if step.id == step_id:
                return steps[index + 1] if index + 1 < len(steps) else None
        return None


class EnrollmentStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXITED = "exited"


class JourneyEnrollment(BaseModel):
    """One user's progress through one journey.

    ``claimed_by`` and ``lease_expires_at`` are set while a scheduler worker
    executes the current step; saving the enrollment after the step clears them.
    """

    id: str = Field(default_factory=lambda: f"enr_{uuid.uuid4().hex[:16]}")
    journey_id: str
    user_id: str
    related_entity_id: str | None = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step_id: str | None = None
    next_execution_at: datetime | None = None
    completed_steps: list[str] = Field(default_factory=list)
    messages_sent: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    enrolled_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    exited_at: datetime | None = None
    exit_reason: str | None = None
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.ACTIVE


class UserEvent(BaseModel):
    """Inbound domain event from the event stream."""

    user_id: str
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    related_entity_id: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


class TickReport(BaseModel):
    """Summary of one journey scheduler pass."""

    due: int = 0
    executed: int = 0
    skipped: int = 0
    deferred: int = 0
    completed: int = 0
    exited: int = 0
    failed: int = 0
    not_claimed: int = 0
    superseded: int = 0
