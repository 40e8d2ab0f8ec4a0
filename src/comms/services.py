"""Explicit construction of the communication core's collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from comms.analytics import AnalyticsSink, JsonlAnalyticsSink
from comms.channels.gateway import HttpGatewayProvider
from comms.channels.inbox import InboxChannelProvider
from comms.channels.mock import ScriptedChannelProvider
from comms.channels.registry import ChannelProviderRegistry
from comms.core.config import Settings
from comms.core.types import Channel
from comms.db.engine import DatabaseManager
from comms.journeys.actions import InMemoryProfileGateway, WebhookCaller
from comms.journeys.engine import JourneyEngine
from comms.journeys.store import EnrollmentStore
from comms.journeys.triggers import InMemoryActivitySource
from comms.messaging.orchestrator import MessageOrchestrator
from comms.messaging.store import InboxStore, MessageStore
from comms.preferences.service import HttpPreferenceClient, InMemoryPreferenceProvider
from comms.scheduler import Scheduler
from comms.templates.renderer import TemplateRenderer
from comms.templates.service import TemplateService
from comms.templates.store import TemplateStore

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _project_path(value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else _PROJECT_ROOT / path


@dataclass
class Services:
    settings: Settings
    templates: TemplateService
    preferences: Any
    registry: ChannelProviderRegistry
    orchestrator: MessageOrchestrator
    engine: JourneyEngine
    scheduler: Scheduler
    analytics: AnalyticsSink
    profiles: Any
    activity: Any
    webhooks: WebhookCaller
    db: DatabaseManager | None = None
    closeables: list[Any] = field(default_factory=list)

    async def startup(self) -> None:
        """Write seed templates into the template repository."""
        await self.templates.seed_templates()

    async def shutdown(self) -> None:
        for client in self.closeables:
            await client.close()
        if self.db is not None:
            await self.db.close()


def build_registry(settings: Settings, clock: Callable[[], datetime]) -> tuple[ChannelProviderRegistry, list[Any]]:
    """Inbox plus one provider per transport channel.

    Channels with a configured gateway URL use :class:`HttpGatewayProvider`;
    the rest use an always-succeeding scripted provider.
    """
    registry = ChannelProviderRegistry()
    registry.register(InboxChannelProvider(clock=clock))
    closeables: list[Any] = []
    provider = settings.provider
    urls = {
        Channel.PUSH: provider.push_url,
        Channel.EMAIL: provider.email_url,
        Channel.SMS: provider.sms_url,
        Channel.WHATSAPP: provider.whatsapp_url,
    }
    for channel, url in urls.items():
        if url:
            gateway = HttpGatewayProvider(
                channel,
                url,
                api_key=provider.api_key,
                timeout_seconds=settings.orchestrator.channel_timeout_seconds,
            )
            registry.register(gateway)
            closeables.append(gateway)
        else:
            registry.register(ScriptedChannelProvider(channel, clock=clock))
    return registry, closeables


def create_services(
    settings: Settings | None = None,
    db: DatabaseManager | None = None,
    analytics: AnalyticsSink | None = None,
    registry: ChannelProviderRegistry | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> Services:
    """Wire stores, collaborators, the orchestrator and the journey engine.

    With ``settings.db.database_url`` (or an explicit ``db``) the SQLAlchemy
    repositories are used; otherwise everything lives in memory.
    """
    if settings is None:
        settings = Settings()

    if db is None and settings.db.database_url:
        db = DatabaseManager.from_config(settings.db)

    if db is not None:
        from comms.repositories.postgres.enrollments import PostgresEnrollmentRepository
        from comms.repositories.postgres.messages import (
            PostgresInboxRepository,
            PostgresMessageRepository,
        )
        from comms.repositories.postgres.templates import PostgresTemplateRepository

        template_store: Any = PostgresTemplateRepository(db)
        message_store: Any = PostgresMessageRepository(db)
        inbox_store: Any = PostgresInboxRepository(db)
        enrollment_store: Any = PostgresEnrollmentRepository(db)
    else:
        template_store = TemplateStore()
        message_store = MessageStore()
        inbox_store = InboxStore()
        enrollment_store = EnrollmentStore()

    closeables: list[Any] = []

    templates = TemplateService(
        store=template_store,
        renderer=TemplateRenderer(settings.template.locale, settings.template.currency),
        templates_dir=_project_path(settings.template.templates_dir),
        clock=clock,
    )

    if settings.preferences.base_url:
        preferences: Any = HttpPreferenceClient(settings.preferences)
        closeables.append(preferences)
    else:
        preferences = InMemoryPreferenceProvider()

    if registry is None:
        registry, provider_clients = build_registry(settings, clock)
        closeables.extend(provider_clients)

    if analytics is None:
        analytics = JsonlAnalyticsSink(settings.analytics)

    orchestrator = MessageOrchestrator(
        templates=templates,
        preferences=preferences,
        registry=registry,
        message_store=message_store,
        inbox_store=inbox_store,
        analytics=analytics,
        config=settings.orchestrator,
        clock=clock,
    )

    profiles = InMemoryProfileGateway()
    activity = InMemoryActivitySource()
    webhooks = WebhookCaller(settings.webhook)
    closeables.append(webhooks)

    engine = JourneyEngine(
        orchestrator=orchestrator,
        store=enrollment_store,
        profiles=profiles,
        webhooks=webhooks,
        activity=activity,
        analytics=analytics,
        config=settings.journey,
        journeys_dir=_project_path(settings.journey.journeys_dir),
        clock=clock,
    )
    scheduler = Scheduler(engine, orchestrator, settings.journey.tick_interval_seconds, clock=clock)

    logger.info(
        "Communication core wired (%s stores, %d journeys)",
        "database" if db is not None else "in-memory", len(engine.list_journeys()),
    )
    return Services(
        settings=settings,
        templates=templates,
        preferences=preferences,
        registry=registry,
        orchestrator=orchestrator,
        engine=engine,
        scheduler=scheduler,
        analytics=analytics,
        profiles=profiles,
        activity=activity,
        webhooks=webhooks,
        db=db,
        closeables=closeables,
    )
