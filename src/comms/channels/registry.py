"""Channel provider registry."""

from __future__ import annotations

from comms.channels.base import ChannelProvider
from comms.channels.models import ConnectionStatus
from comms.core.types import Channel


class ChannelProviderRegistry:
    """One delivery provider per channel. Registering again replaces the previous one."""

    def __init__(self) -> None:
        self._providers: dict[Channel, ChannelProvider] = {}

    def register(self, provider: ChannelProvider) -> None:
        self._providers[provider.channel] = provider

    def get(self, channel: Channel) -> ChannelProvider | None:
        return self._providers.get(channel)

    def health_check_all(self) -> dict[str, ConnectionStatus]:
        return {str(channel): p.health_check() for channel, p in self._providers.items()}

    @property
    def channels(self) -> list[Channel]:
        return list(self._providers.keys())
