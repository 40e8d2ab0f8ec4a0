"""Trigger matching and the user-activity collaborator for inactivity triggers."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Protocol, runtime_checkable

from comms.journeys.conditions import resolve_path
from comms.journeys.models import JourneyTrigger, TriggerType, UserEvent


@runtime_checkable
class ActivitySource(Protocol):
    """Answers which users have had no activity since a cutoff."""

    def list_inactive_users(self, since: datetime) -> list[str] | Awaitable[list[str]]: ...


class InMemoryActivitySource:
    """Last-activity timestamps per user, fed by :meth:`record_activity`."""

    def __init__(self) -> None:
        self._last_seen: dict[str, datetime] = {}

    def record_activity(self, user_id: str, at: datetime) -> None:
        previous = self._last_seen.get(user_id)
        if previous is None or at > previous:
            self._last_seen[user_id] = at

    def list_inactive_users(self, since: datetime) -> list[str]:
        return sorted(u for u, seen in self._last_seen.items() if seen < since)


def event_matches(trigger: JourneyTrigger, event: UserEvent) -> bool:
    """Whether an event enrolls users into a journey with this trigger."""
    if trigger.type == TriggerType.EVENT:
        if trigger.event_name != event.event_type:
            return False
        return all(
            resolve_path(event.event_data, key) == value
            for key, value in trigger.event_properties.items()
        )
    if trigger.type == TriggerType.DATE:
        if trigger.event_name and trigger.event_name != event.event_type:
            return False
        return date_anchor(trigger, event) is not None
    return False


def date_anchor(trigger: JourneyTrigger, event: UserEvent) -> datetime | None:
    """The trigger's date field from the event, shifted by the offset, as UTC."""
    if not trigger.date_field:
        return None
    raw = resolve_path(event.event_data, trigger.date_field)
    if isinstance(raw, datetime):
        moment = raw
    elif isinstance(raw, date):
        moment = datetime.combine(raw, time())
    elif isinstance(raw, str):
        try:
            moment = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment + timedelta(days=trigger.offset_days)
