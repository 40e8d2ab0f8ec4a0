"""Tests for preference providers."""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest
from pydantic import ValidationError

from comms.core.config import PreferenceConfig
from comms.core.types import Channel, TemplateCategory
from comms.preferences.models import ChannelConsent, QuietHours, UserChannelPreferences, zone_for
from comms.preferences.service import (
    HttpPreferenceClient,
    InMemoryPreferenceProvider,
    PreferenceProvider,
)

PAYLOAD = {
    "timezone": "Europe/Rome",
    "channels": {
        "push": {"enabled": True, "marketing": True},
        "email": {"enabled": True, "transactional": True},
    },
    "preferred_channels": ["push", "email"],
    "quiet_hours": {"start": "22:00", "end": "07:00", "timezone": "Europe/Rome"},
}


def _client(handler) -> HttpPreferenceClient:
    return HttpPreferenceClient(
        PreferenceConfig(base_url="https://prefs.test"),
        transport=httpx.MockTransport(handler),
    )


def _is_restrictive(prefs: UserChannelPreferences) -> bool:
    return all(not prefs.consent_for(c).enabled for c in Channel)


class TestConsent:
    def test_category_flags(self) -> None:
        consent = ChannelConsent(enabled=True, marketing=True)
        assert consent.allows(TemplateCategory.MARKETING)
        assert not consent.allows(TemplateCategory.TRANSACTIONAL)
        assert consent.allows(TemplateCategory.JOURNEY)


class TestTimezones:
    def test_unknown_zone_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            UserChannelPreferences(user_id="u1", timezone="Mars/Olympus")
        with pytest.raises(ValidationError):
            QuietHours(timezone="Mars/Olympus")

    def test_zone_lookup_falls_back_to_utc(self) -> None:
        assert zone_for("Mars/Olympus").key == "UTC"
        assert zone_for("Europe/Rome").key == "Europe/Rome"

    def test_unvalidated_zone_still_evaluates_quiet_hours(self) -> None:
        quiet = QuietHours()
        quiet.timezone = "Mars/Olympus"
        assert quiet.is_active(datetime(2026, 3, 4, 23, 30, tzinfo=timezone.utc))
        assert not quiet.is_active(datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc))


class TestInMemoryProvider:
    def test_unknown_user_gets_restrictive_defaults(self) -> None:
        prefs = InMemoryPreferenceProvider().get_user_preferences("nobody")
        assert prefs.user_id == "nobody"
        assert _is_restrictive(prefs)
        assert prefs.quiet_hours is None

    def test_returns_a_copy(self) -> None:
        provider = InMemoryPreferenceProvider()
        provider.set_preferences(
            UserChannelPreferences(user_id="u1", channels={Channel.PUSH: ChannelConsent(enabled=True)})
        )
        first = provider.get_user_preferences("u1")
        first.channels[Channel.PUSH].enabled = False
        assert provider.get_user_preferences("u1").consent_for(Channel.PUSH).enabled

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryPreferenceProvider(), PreferenceProvider)


class TestHttpPreferenceClient:
    async def test_parses_response(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/users/u1/preferences"
            return httpx.Response(200, json=PAYLOAD)

        client = _client(handler)
        prefs = await client.get_user_preferences("u1")
        await client.close()

        assert prefs.user_id == "u1"
        assert prefs.timezone == "Europe/Rome"
        assert prefs.consent_for(Channel.PUSH).marketing
        assert not prefs.consent_for(Channel.SMS).enabled
        assert prefs.preferred_channels == [Channel.PUSH, Channel.EMAIL]
        assert prefs.quiet_hours.end.hour == 7

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="boom"),
            httpx.Response(404, json={"detail": "no such user"}),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"channels": "everything"}),
            httpx.Response(200, json={**PAYLOAD, "timezone": "Mars/Olympus"}),
        ],
    )
    async def test_bad_responses_degrade_to_defaults(self, response) -> None:
        prefs = await _client(lambda r: response).get_user_preferences("u1")
        assert prefs.user_id == "u1"
        assert _is_restrictive(prefs)

    async def test_unreachable_service_degrades_to_defaults(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        prefs = await _client(handler).get_user_preferences("u1")
        assert _is_restrictive(prefs)

    def test_requires_base_url(self) -> None:
        with pytest.raises(ValueError):
            HttpPreferenceClient(PreferenceConfig())
