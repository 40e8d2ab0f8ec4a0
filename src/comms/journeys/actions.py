"""External collaborators invoked by side-effecting journey steps."""

from __future__ import annotations

import copy
import logging
from typing import Any, Awaitable, Protocol, runtime_checkable

import httpx

from comms.core.config import WebhookConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class ProfileGateway(Protocol):
    """User profile/CRM attributes and tags.

    Every mutation must be idempotent: a retried tick may repeat it.
    """

    def get_profile(self, user_id: str) -> dict[str, Any] | Awaitable[dict[str, Any]]: ...

    def update_property(self, user_id: str, name: str, value: Any) -> None | Awaitable[None]: ...

    def add_tags(self, user_id: str, tags: list[str]) -> None | Awaitable[None]: ...

    def remove_tags(self, user_id: str, tags: list[str]) -> None | Awaitable[None]: ...


class InMemoryProfileGateway:
    """Profiles as nested dicts. Property names are dot paths."""

    def __init__(self) -> None:
        self._profiles: dict[str, dict[str, Any]] = {}

    def set_profile(self, user_id: str, attributes: dict[str, Any]) -> None:
        self._profiles[user_id] = copy.deepcopy(attributes)

    def get_profile(self, user_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._profiles.get(user_id, {}))

    def update_property(self, user_id: str, name: str, value: Any) -> None:
        node = self._profiles.setdefault(user_id, {})
        *parents, leaf = name.split(".")
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[leaf] = value

    def add_tags(self, user_id: str, tags: list[str]) -> None:
        profile = self._profiles.setdefault(user_id, {})
        current = profile.setdefault("tags", [])
        for tag in tags:
            if tag not in current:
                current.append(tag)

    def remove_tags(self, user_id: str, tags: list[str]) -> None:
        profile = self._profiles.setdefault(user_id, {})
        profile["tags"] = [t for t in profile.get("tags", []) if t not in tags]

    def tags(self, user_id: str) -> list[str]:
        return list(self._profiles.get(user_id, {}).get("tags", []))


class WebhookCaller:
    """Calls journey webhooks with an idempotency key.

    Non-2xx responses and transport errors raise, so the step is retried on
    the next tick.
    """

    def __init__(
        self,
        config: WebhookConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        config = config or WebhookConfig()
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def call(
        self,
        url: str,
        method: str,
        data: dict[str, Any],
        idempotency_key: str,
    ) -> int:
        resp = await self._http.request(
            method.upper(),
            url,
            json=data,
            headers={"Idempotency-Key": idempotency_key},
        )
        resp.raise_for_status()
        logger.info("Webhook %s %s returned %d", method.upper(), url, resp.status_code)
        return resp.status_code

    async def close(self) -> None:
        await self._http.aclose()
