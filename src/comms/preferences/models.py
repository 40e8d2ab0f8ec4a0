"""User channel preference snapshot.

Every field defaults to the most restrictive value, so a missing or partial
record coming from the preference service disables channels rather than
enabling them.
"""

from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Annotated
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AfterValidator, BaseModel, Field

from comms.core.types import Channel, TemplateCategory


def zone_for(name: str) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return ZoneInfo("UTC")


def check_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise ValueError(f"Unknown timezone {name!r}") from exc
    return name


TimezoneName = Annotated[str, AfterValidator(check_timezone)]


class ChannelConsent(BaseModel):
    enabled: bool = False
    transactional: bool = False
    marketing: bool = False
    caring: bool = False
    reminders: bool = False

    def allows(self, category: TemplateCategory | None) -> bool:
        """Whether the consent flag matching a template category is set."""
        if category == TemplateCategory.TRANSACTIONAL:
            return self.transactional
        if category == TemplateCategory.MARKETING:
            return self.marketing
        if category == TemplateCategory.CARING:
            return self.caring
        if category == TemplateCategory.REMINDER:
            return self.reminders
        # Journey messages ride on the journey's own opt-in.
        return True


class QuietHours(BaseModel):
    """Daily window, in its own timezone, during which interruptive channels are muted.

    ``start`` is inclusive and ``end`` exclusive. A window whose start is after
    its end wraps past midnight.
    """

    start: time = time(22, 0)
    end: time = time(8, 0)
    timezone: TimezoneName = "UTC"
    allow_critical: bool = True

    def is_active(self, moment: datetime) -> bool:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        local = moment.astimezone(zone_for(self.timezone)).time().replace(tzinfo=None)
        if self.start == self.end:
            return False
        if self.start < self.end:
            return self.start <= local < self.end
        return local >= self.start or local < self.end


class FrequencyLimits(BaseModel):
    max_push_per_day: int = 5
    max_email_per_day: int = 3
    max_whatsapp_per_week: int = 2
    max_sms_per_week: int = 1
    max_journey_messages_per_day: int = 2


class ChannelPerformance(BaseModel):
    """Rolling delivery statistics for one channel, each in [0, 1]."""

    delivery_rate: float = 0.0
    open_rate: float = 0.0
    click_rate: float = 0.0
    engagement_score: float = 0.0


class UserChannelPreferences(BaseModel):
    user_id: str
    timezone: TimezoneName = "UTC"
    channels: dict[Channel, ChannelConsent] = Field(default_factory=dict)
    preferred_channels: list[Channel] = Field(default_factory=list)
    quiet_hours: QuietHours | None = None
    frequency: FrequencyLimits = Field(default_factory=FrequencyLimits)
    performance: dict[Channel, ChannelPerformance] = Field(default_factory=dict)
    updated_at: datetime | None = None

    def consent_for(self, channel: Channel) -> ChannelConsent:
        return self.channels.get(channel) or ChannelConsent()

    def performance_for(self, channel: Channel) -> ChannelPerformance:
        return self.performance.get(channel) or ChannelPerformance()

    def in_quiet_hours(self, moment: datetime) -> bool:
        return self.quiet_hours is not None and self.quiet_hours.is_active(moment)

    def local_time(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(zone_for(self.timezone))
