"""Delivery constraints enforced before a non-critical send."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

from comms.core.errors import CommsError, ErrorCode
from comms.core.types import INTERRUPTIVE_CHANNELS, Channel, MessagePriority
from comms.preferences.models import UserChannelPreferences
from comms.templates.models import Template


def day_start(preferences: UserChannelPreferences, now: datetime) -> datetime:
    """Midnight of the user's local day containing ``now``, in UTC."""
    local = preferences.local_time(now)
    midnight = datetime.combine(local.date(), time(), tzinfo=local.tzinfo)
    return midnight.astimezone(timezone.utc)


def week_start(preferences: UserChannelPreferences, now: datetime) -> datetime:
    """Midnight of the Monday starting the user's local week, in UTC."""
    local = preferences.local_time(now)
    monday = local.date() - timedelta(days=local.weekday())
    return datetime.combine(monday, time(), tzinfo=local.tzinfo).astimezone(timezone.utc)


def enforce_constraints(
    channel: Channel,
    template: Template,
    preferences: UserChannelPreferences,
    priority: MessagePriority,
    now: datetime,
    sent_today: dict[Channel, int],
    sent_this_week: dict[Channel, int],
    respect_quiet_hours: bool = True,
) -> None:
    """Raise a retryable :class:`CommsError` if the send violates a constraint.

    Checked in order: quiet hours, frequency caps, channel enablement,
    category consent. Critical priority and the inbox skip every check.
    """
    if priority == MessagePriority.CRITICAL or channel == Channel.INBOX:
        return

    quiet = preferences.quiet_hours
    if (
        respect_quiet_hours
        and quiet is not None
        and not quiet.allow_critical
        and channel in INTERRUPTIVE_CHANNELS
        and quiet.is_active(now)
    ):
        raise CommsError(
            ErrorCode.QUIET_HOURS,
            f"User {preferences.user_id} is in quiet hours",
            {"channel": str(channel), "start": quiet.start.isoformat(), "end": quiet.end.isoformat()},
        )

    limits = preferences.frequency
    cap: int | None = None
    count = 0
    window = "day"
    if channel == Channel.PUSH:
        cap, count = limits.max_push_per_day, sent_today.get(channel, 0)
    elif channel == Channel.EMAIL:
        cap, count = limits.max_email_per_day, sent_today.get(channel, 0)
    elif channel == Channel.WHATSAPP:
        cap, count, window = limits.max_whatsapp_per_week, sent_this_week.get(channel, 0), "week"
    elif channel == Channel.SMS:
        cap, count, window = limits.max_sms_per_week, sent_this_week.get(channel, 0), "week"
    if cap is not None and count >= cap:
        raise CommsError(
            ErrorCode.FREQUENCY_LIMIT,
            f"{channel} limit of {cap} per {window} reached",
            {"channel": str(channel), "limit": cap, "window": window},
        )

    consent = preferences.consent_for(channel)
    if not consent.enabled:
        raise CommsError(
            ErrorCode.CHANNEL_DISABLED,
            f"User {preferences.user_id} disabled {channel}",
            {"channel": str(channel)},
        )
    if not consent.allows(template.category):
        raise CommsError(
            ErrorCode.CONSENT_REQUIRED,
            f"No {template.category} consent for {channel}",
            {"channel": str(channel), "category": str(template.category)},
        )
