"""Preference lookup Protocol with in-memory and HTTP implementations."""

from __future__ import annotations

import logging
from typing import Awaitable, Protocol, runtime_checkable

import httpx
from pydantic import ValidationError

from comms.core.config import PreferenceConfig
from comms.preferences.models import UserChannelPreferences

logger = logging.getLogger(__name__)


@runtime_checkable
class PreferenceProvider(Protocol):
    """Read-only source of per-user channel preferences."""

    def get_user_preferences(
        self, user_id: str
    ) -> UserChannelPreferences | Awaitable[UserChannelPreferences]: ...


class InMemoryPreferenceProvider:
    """Preference snapshots held in process memory.

    Unknown users get the most restrictive defaults (every channel disabled).
    """

    def __init__(self) -> None:
        self._preferences: dict[str, UserChannelPreferences] = {}

    def set_preferences(self, preferences: UserChannelPreferences) -> None:
        self._preferences[preferences.user_id] = preferences

    def get_user_preferences(self, user_id: str) -> UserChannelPreferences:
        stored = self._preferences.get(user_id)
        if stored is None:
            return UserChannelPreferences(user_id=user_id)
        return stored.model_copy(deep=True)


class HttpPreferenceClient:
    """Fetches preferences from the external preference service.

    Any transport failure, non-2xx response or malformed body degrades to the
    most restrictive defaults so a flaky preference service never crashes a send.
    """

    def __init__(
        self,
        config: PreferenceConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.base_url:
            raise ValueError("HttpPreferenceClient requires a base_url")
        self._http = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def get_user_preferences(self, user_id: str) -> UserChannelPreferences:
        try:
            resp = await self._http.get(f"/users/{user_id}/preferences")
        except httpx.HTTPError as exc:
            logger.warning("Preference service unavailable for %s: %s", user_id, exc)
            return UserChannelPreferences(user_id=user_id)

        if resp.status_code != 200:
            logger.warning(
                "Preference service returned %d for %s, using defaults",
                resp.status_code, user_id,
            )
            return UserChannelPreferences(user_id=user_id)

        try:
            data = resp.json()
            data["user_id"] = user_id
            return UserChannelPreferences.model_validate(data)
        except (ValueError, TypeError, ValidationError) as exc:
            logger.warning("Malformed preferences for %s: %s", user_id, exc)
            return UserChannelPreferences(user_id=user_id)

    async def close(self) -> None:
        await self._http.aclose()
