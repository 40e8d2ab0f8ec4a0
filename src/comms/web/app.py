"""FastAPI application for the communication core.

Exposes the template store, the message orchestrator and the journey engine
over REST, plus a health endpoint reporting channel provider status.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from pydantic import BaseModel, Field

from comms.channels.models import ConnectionStatus
from comms.core.config import Settings
from comms.services import Services, create_services
from comms.web.journey_router import router as journey_router
from comms.web.message_router import router as message_router
from comms.web.template_router import router as template_router


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str = "0.1.0"
    channels: dict[str, str] = Field(default_factory=dict)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings. Loaded from the environment if omitted.
        services: Pre-wired services. Built from ``settings`` if omitted.
    """
    if services is None:
        services = create_services(settings)
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await services.startup()
        try:
            yield
        finally:
            await services.shutdown()

    app = FastAPI(
        title="Communication Orchestrator",
        description="Templates, channel orchestration and lifecycle journeys",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    # Store on app state for access in route handlers
    app.state.services = services
    app.state.template_service = services.templates
    app.state.orchestrator = services.orchestrator
    app.state.journey_engine = services.engine
    app.state.scheduler = services.scheduler
    app.state.channel_registry = services.registry
    app.state.analytics = services.analytics

    app.include_router(message_router)
    app.include_router(template_router)
    app.include_router(journey_router)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        statuses = services.registry.health_check_all()
        degraded = any(s != ConnectionStatus.CONNECTED for s in statuses.values())
        return HealthResponse(
            status="degraded" if degraded else "ok",
            service="comms-orchestrator",
            channels={channel: status.value for channel, status in statuses.items()},
        )

    return app
