"""Application configuration loaded from environment and config files."""

from __future__ import annotations

import os
import socket

from pydantic import Field
from pydantic_settings import BaseSettings


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class TemplateConfig(BaseSettings):
    """Template store configuration."""

    model_config = {"env_prefix": "COMMS_TEMPLATE_"}

    templates_dir: str = "config/templates"
    locale: str = "en_US"
    currency: str = "EUR"


class OrchestratorConfig(BaseSettings):
    """Message orchestrator configuration."""

    model_config = {"env_prefix": "COMMS_ORCHESTRATOR_"}

    default_max_retries: int = 2
    channel_timeout_seconds: float = 10.0
    anti_spam_daily_threshold: int = 2


class JourneyConfig(BaseSettings):
    """Journey engine and scheduler configuration."""

    model_config = {"env_prefix": "COMMS_JOURNEY_"}

    journeys_dir: str = "config/journeys"
    tick_interval_seconds: int = 60
    lease_seconds: int = 300
    worker_id: str = Field(default_factory=_default_worker_id)


class ProviderConfig(BaseSettings):
    """Channel gateway configuration. Channels without a URL use the scripted provider."""

    model_config = {"env_prefix": "COMMS_PROVIDER_"}

    push_url: str | None = None
    email_url: str | None = None
    sms_url: str | None = None
    whatsapp_url: str | None = None
    api_key: str | None = None


class PreferenceConfig(BaseSettings):
    """External preference service configuration."""

    model_config = {"env_prefix": "COMMS_PREFERENCES_"}

    base_url: str | None = None
    timeout_seconds: float = 5.0


class WebhookConfig(BaseSettings):
    """Journey webhook action configuration."""

    model_config = {"env_prefix": "COMMS_WEBHOOK_"}

    timeout_seconds: float = 10.0


class AnalyticsConfig(BaseSettings):
    """Analytics sink configuration."""

    model_config = {"env_prefix": "COMMS_ANALYTICS_"}

    log_dir: str = "data/analytics"
    log_file: str = "events.jsonl"


class DatabaseConfig(BaseSettings):
    """Durable store configuration. No URL means in-memory stores."""

    model_config = {"env_prefix": "COMMS_DB_"}

    database_url: str | None = None
    echo: bool = False
    pool_size: int = 5


class Settings(BaseSettings):
    """Root application settings."""

    model_config = {"env_prefix": "COMMS_"}

    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    template: TemplateConfig = Field(default_factory=TemplateConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    journey: JourneyConfig = Field(default_factory=JourneyConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    preferences: PreferenceConfig = Field(default_factory=PreferenceConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
