"""Shared test fixtures and helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from comms.analytics import InMemoryAnalyticsSink
from comms.channels.inbox import InboxChannelProvider
from comms.channels.mock import ScriptedChannelProvider
from comms.channels.registry import ChannelProviderRegistry
from comms.core.config import AnalyticsConfig, Settings
from comms.core.types import Channel
from comms.preferences.models import ChannelConsent, UserChannelPreferences
from comms.services import create_services

# A Wednesday, outside any default quiet window.
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)

TRANSPORT_CHANNELS = (Channel.PUSH, Channel.EMAIL, Channel.SMS, Channel.WHATSAPP)


class FixedClock:
    """Deterministic clock; tests move time forward explicitly."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def open_preferences(user_id: str, **overrides) -> UserChannelPreferences:
    """Every transport channel enabled with every consent flag set."""
    consent = ChannelConsent(
        enabled=True, transactional=True, marketing=True, caring=True, reminders=True
    )
    data = {"user_id": user_id, "channels": {c: consent for c in TRANSPORT_CHANNELS}}
    data.update(overrides)
    return UserChannelPreferences(**data)


def scripted_registry(clock: FixedClock) -> ChannelProviderRegistry:
    registry = ChannelProviderRegistry()
    registry.register(InboxChannelProvider(clock=clock))
    for channel in TRANSPORT_CHANNELS:
        registry.register(ScriptedChannelProvider(channel, clock=clock))
    return registry


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(analytics=AnalyticsConfig(log_dir=str(tmp_path / "analytics")))


@pytest.fixture
async def services(settings, clock):
    """In-memory core with scripted providers and seeded templates."""
    services = create_services(
        settings,
        analytics=InMemoryAnalyticsSink(),
        registry=scripted_registry(clock),
        clock=clock,
    )
    await services.startup()
    yield services
    await services.shutdown()
