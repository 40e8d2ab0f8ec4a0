"""Channel selection: availability rules and the weighted scoring pass."""

from __future__ import annotations

from datetime import datetime

from comms.core.types import CHANNEL_ORDER, Channel, MessagePriority
from comms.preferences.models import UserChannelPreferences
from comms.templates.models import Template

_CRITICAL_ORDER: tuple[Channel, ...] = (Channel.PUSH, Channel.SMS, Channel.INBOX)

_PRIORITY_BONUS: dict[MessagePriority, dict[Channel, float]] = {
    MessagePriority.CRITICAL: {Channel.PUSH: 30, Channel.INBOX: 25},
    MessagePriority.HIGH: {Channel.PUSH: 20, Channel.EMAIL: 15},
    MessagePriority.MEDIUM: {Channel.EMAIL: 10, Channel.INBOX: 5},
    MessagePriority.LOW: {Channel.INBOX: 15},
}

_QUIET_HOURS_ADJUSTMENT: dict[Channel, float] = {
    Channel.PUSH: -40,
    Channel.WHATSAPP: -35,
    Channel.SMS: -30,
    Channel.EMAIL: 10,
    Channel.INBOX: 15,
}

_WEEKEND_ADJUSTMENT: dict[Channel, float] = {Channel.EMAIL: -10, Channel.PUSH: 5}

ANTI_SPAM_PENALTY = 20


def is_channel_available(
    channel: Channel,
    template: Template,
    preferences: UserChannelPreferences,
    critical: bool = False,
) -> bool:
    """Template-supported and consented. Inbox needs no consent."""
    if channel == Channel.INBOX:
        return True
    if not template.supports(channel):
        return False
    consent = preferences.consent_for(channel)
    if not consent.enabled:
        return False
    if critical:
        return consent.transactional
    return consent.allows(template.category)


def score_channels(
    template: Template,
    preferences: UserChannelPreferences,
    priority: MessagePriority,
    now: datetime,
    sent_today: dict[Channel, int] | None = None,
    anti_spam_threshold: int = 2,
) -> dict[Channel, float]:
    """Accumulate the weighted selection score for every channel."""
    sent_today = sent_today or {}
    ranked = preferences.preferred_channels
    quiet = preferences.in_quiet_hours(now)
    weekend = preferences.local_time(now).weekday() >= 5
    bonus = _PRIORITY_BONUS.get(priority, {})

    scores: dict[Channel, float] = {}
    for channel in CHANNEL_ORDER:
        score = 0.0
        if channel in ranked:
            score += (len(ranked) - ranked.index(channel)) * 10

        perf = preferences.performance_for(channel)
        score += (
            perf.engagement_score * 50
            + perf.delivery_rate * 20
            + perf.open_rate * 15
            + perf.click_rate * 15
        )

        if channel in template.content:
            score += 20
        score += bonus.get(channel, 0)

        if quiet:
            score = max(0.0, score + _QUIET_HOURS_ADJUSTMENT[channel])
        if weekend and channel in _WEEKEND_ADJUSTMENT:
            score = max(0.0, score + _WEEKEND_ADJUSTMENT[channel])
        if sent_today.get(channel, 0) > anti_spam_threshold:
            score = max(0.0, score - ANTI_SPAM_PENALTY)

        scores[channel] = score
    return scores


def select_channel(
    template: Template,
    preferences: UserChannelPreferences,
    priority: MessagePriority,
    now: datetime,
    requested: Channel | None = None,
    sent_today: dict[Channel, int] | None = None,
    anti_spam_threshold: int = 2,
) -> Channel:
    """Resolve the channel for one send.

    An explicit request wins when that channel is available. Critical sends
    take the first available of push, sms, inbox. Otherwise the highest
    scoring available channel wins, ties going to the earlier channel in
    :data:`CHANNEL_ORDER`. Inbox is the unconditional fallback.
    """
    critical = priority == MessagePriority.CRITICAL
    if requested is not None and is_channel_available(requested, template, preferences, critical):
        return requested

    if critical:
        for channel in _CRITICAL_ORDER:
            if is_channel_available(channel, template, preferences, critical=True):
                return channel
        return Channel.INBOX

    scores = score_channels(template, preferences, priority, now, sent_today, anti_spam_threshold)
    available = [c for c in CHANNEL_ORDER if is_channel_available(c, template, preferences)]
    if not available:
        return Channel.INBOX
    # max() keeps the first maximal element, so CHANNEL_ORDER breaks ties.
    return max(available, key=lambda c: scores[c])
