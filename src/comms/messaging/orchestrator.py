"""Message orchestrator: channel resolution, constraints, delivery and fallback."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from comms.analytics import AnalyticsSink
from comms.channels.models import DeliveryFailureReason, DeliveryRequest, DeliveryResult
from comms.channels.registry import ChannelProviderRegistry
from comms.core.config import OrchestratorConfig
from comms.core.errors import CommsError, ErrorCode
from comms.core.types import CHANNEL_ORDER, AnalyticsEvent, Channel, MessagePriority
from comms.messaging.constraints import day_start, enforce_constraints, week_start
from comms.messaging.models import (
    InboxMessage,
    Message,
    MessageStatus,
    SendMessageRequest,
    SendMessageResult,
    new_message_id,
)
from comms.messaging.selection import is_channel_available, select_channel
from comms.preferences.models import UserChannelPreferences
from comms.preferences.service import PreferenceProvider
from comms.repositories import resolve
from comms.repositories.protocols import InboxRepository, MessageRepository
from comms.templates.models import RenderedContent, Template
from comms.templates.service import TemplateService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageOrchestrator:
    """Resolves, constrains, renders and delivers single messages.

    Every send leaves exactly one inbox copy, keyed by the first attempt's
    message id, whatever happens on the primary channel.
    """

    def __init__(
        self,
        templates: TemplateService,
        preferences: PreferenceProvider,
        registry: ChannelProviderRegistry,
        message_store: MessageRepository,
        inbox_store: InboxRepository,
        analytics: AnalyticsSink | None = None,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._templates = templates
        self._preferences = preferences
        self._registry = registry
        self._messages = message_store
        self._inbox = inbox_store
        self._analytics = analytics
        self._config = config or OrchestratorConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_message(self, request: SendMessageRequest) -> SendMessageResult:
        """Send one message, or queue it when ``schedule_at`` is set.

        Raises:
            CommsError: INVALID_REQUEST, NOT_FOUND, INACTIVE, a constraint
                violation (QUIET_HOURS, FREQUENCY_LIMIT, CHANNEL_DISABLED,
                CONSENT_REQUIRED) or a variable contract violation.
                Delivery failures are absorbed and reported as ``failed``.
        """
        if not request.user_id or not request.template_id:
            raise CommsError(ErrorCode.INVALID_REQUEST, "user_id and template_id are required")

        template = await self._templates.get_template(request.template_id)
        if template is None:
            raise CommsError(ErrorCode.NOT_FOUND, f"Template {request.template_id} not found",
                             {"template_id": request.template_id})
        if not template.active:
            raise CommsError(ErrorCode.INACTIVE, f"Template {request.template_id} is not active")

        preferences = await self._get_preferences(request.user_id)
        priority = request.priority or template.priority
        now = self._clock()

        sent_today = await self._sent_counts(request.user_id, day_start(preferences, now))
        channel = select_channel(
            template,
            preferences,
            priority,
            now,
            requested=request.channel,
            sent_today=sent_today,
            anti_spam_threshold=self._config.anti_spam_daily_threshold,
        )
        sent_this_week = await self._sent_counts(request.user_id, week_start(preferences, now))
        enforce_constraints(
            channel,
            template,
            preferences,
            priority,
            now,
            sent_today,
            sent_this_week,
            respect_quiet_hours=request.respect_quiet_hours,
        )

        variant_id = self._templates.pick_variant(template, request.user_id)
        rendered = self._render(template, channel, request.variables, variant_id)

        message = Message(
            user_id=request.user_id,
            related_entity_id=request.related_entity_id,
            template_id=template.id,
            channel=channel,
            priority=priority,
            variant_id=rendered.variant_id,
            payload=rendered.model_dump(mode="json"),
            variables=request.variables,
            max_retries=template.max_retries if template.max_retries is not None
            else self._config.default_max_retries,
            journey_id=request.journey_id,
            enrollment_id=request.enrollment_id,
            step_id=request.step_id,
            respect_quiet_hours=request.respect_quiet_hours,
            created_at=now,
            updated_at=now,
        )
        message.origin_message_id = message.id

        if request.schedule_at is not None:
            message.status = MessageStatus.QUEUED
            message.scheduled_at = request.schedule_at
            await resolve(self._messages.save(message))
            logger.info("Queued message %s for %s at %s", message.id, message.user_id,
                        request.schedule_at.isoformat())
            self._emit("message.queued", message, {"scheduled_at": request.schedule_at.isoformat()})
            return SendMessageResult(
                message_id=message.id,
                status=message.status,
                channel=message.channel,
                variant_id=message.variant_id,
                attempts=[message.id],
            )

        return await self._dispatch(message, template, preferences)

    async def process_scheduled_messages(
        self, now: datetime | None = None, limit: int = 100
    ) -> list[SendMessageResult]:
        """Claim and deliver every queued message whose schedule time has passed."""
        now = now or self._clock()
        claimed: list[Message] = await resolve(self._messages.claim_due_queued(now, limit))
        results: list[SendMessageResult] = []
        for message in claimed:
            try:
                template = await self._templates.get_template(message.template_id)
                if template is None or not template.active:
                    self._mark_failed(message, "template missing or inactive")
                    await resolve(self._messages.save(message))
                    self._emit("message.failed", message, {"error": message.error})
                    continue
                preferences = await self._get_preferences(message.user_id)
                results.append(await self._dispatch(message, template, preferences))
            except Exception:
                logger.exception("Scheduled message %s failed, requeueing", message.id)
                message.status = MessageStatus.QUEUED
                await resolve(self._messages.save(message))
        return results

    async def get_message(self, message_id: str) -> Message | None:
        return await resolve(self._messages.get(message_id))

    async def list_messages(self, user_id: str) -> list[Message]:
        return await resolve(self._messages.list_for_user(user_id))

    async def list_inbox(self, user_id: str) -> list[InboxMessage]:
        return await resolve(self._inbox.list_for_user(user_id))

    async def count_sent(
        self,
        user_id: str,
        since: datetime,
        channel: Channel | None = None,
        journey_id: str | None = None,
    ) -> int:
        return await resolve(
            self._messages.count_sent_since(user_id, since, channel=channel, journey_id=journey_id)
        )

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        message: Message,
        template: Template,
        preferences: UserChannelPreferences,
    ) -> SendMessageResult:
        """Write the inbox copy, then deliver with the fallback chain."""
        origin_id = message.origin_message_id or message.id
        inbox_item = await self._write_inbox(message, template, origin_id)

        attempts: list[str] = []
        current = message
        while True:
            attempts.append(current.id)
            current.status = MessageStatus.PENDING
            result = await self._deliver(current)
            now = self._clock()
            current.updated_at = now

            if result.success:
                current.status = MessageStatus.SENT
                current.sent_at = now
                current.estimated_delivery = result.estimated_delivery
                await resolve(self._messages.save(current))
                self._emit("message.sent", current, {"provider": result.provider_name,
                                                     "attempt": len(attempts)})
                break

            current.retry_count += 1
            current.failure_reason = result.failure_reason
            current.error = result.error
            logger.warning(
                "Delivery of %s on %s failed (%s), attempt %d of %d",
                current.id, current.channel, result.failure_reason,
                current.retry_count, current.max_retries + 1,
            )

            fallback = self._next_attempt(current, template, preferences)
            if fallback is None:
                self._mark_failed(current, result.error)
                await resolve(self._messages.save(current))
                self._emit("message.failed", current, {"reason": str(result.failure_reason),
                                                       "attempts": len(attempts)})
                break

            current.status = MessageStatus.FAILED
            current.failed_at = now
            await resolve(self._messages.save(current))
            self._emit("message.fallback", current, {"fallback_channel": str(fallback.channel),
                                                     "reason": str(result.failure_reason)})
            current = fallback

        return SendMessageResult(
            message_id=current.id,
            status=current.status,
            channel=current.channel,
            estimated_delivery=current.estimated_delivery,
            variant_id=current.variant_id,
            attempts=attempts,
            inbox_message_id=inbox_item.id,
        )

    def _next_attempt(
        self,
        failed: Message,
        template: Template,
        preferences: UserChannelPreferences,
    ) -> Message | None:
        """Build the fallback attempt, or ``None`` when the chain is exhausted."""
        fallback = template.fallback_channel
        if fallback is None or failed.retry_count > failed.max_retries:
            return None
        critical = failed.priority == MessagePriority.CRITICAL
        if not is_channel_available(fallback, template, preferences, critical):
            logger.info("Fallback channel %s unavailable for %s", fallback, failed.user_id)
            return None
        try:
            rendered = self._render(template, fallback, failed.variables, failed.variant_id)
        except CommsError as exc:
            logger.warning("Cannot render fallback %s for %s: %s", fallback, failed.id, exc)
            return None

        now = self._clock()
        return failed.model_copy(
            update={
                "id": new_message_id(),
                "channel": fallback,
                "payload": rendered.model_dump(mode="json"),
                "status": MessageStatus.PENDING,
                "parent_message_id": failed.id,
                "failure_reason": None,
                "error": None,
                "failed_at": None,
                "created_at": now,
                "updated_at": now,
            },
            deep=True,
        )

    async def _deliver(self, message: Message) -> DeliveryResult:
        provider = self._registry.get(message.channel)
        if provider is None:
            return DeliveryResult.failure(
                message.channel, DeliveryFailureReason.NO_PROVIDER,
                f"No provider registered for {message.channel}",
            )

        request = DeliveryRequest(
            message_id=message.id,
            user_id=message.user_id,
            channel=message.channel,
            priority=message.priority,
            payload=message.payload,
            metadata={
                "template_id": message.template_id,
                "related_entity_id": message.related_entity_id,
                "journey_id": message.journey_id,
                "enrollment_id": message.enrollment_id,
            },
        )
        try:
            return await asyncio.wait_for(
                provider.deliver(request), timeout=self._config.channel_timeout_seconds
            )
        except asyncio.TimeoutError:
            return DeliveryResult.failure(
                message.channel, DeliveryFailureReason.TIMEOUT,
                f"No response within {self._config.channel_timeout_seconds}s",
                provider_name=provider.name,
            )
        except Exception as exc:
            return DeliveryResult.failure(
                message.channel, DeliveryFailureReason.PROVIDER_ERROR, str(exc),
                provider_name=provider.name,
            )

    async def _write_inbox(self, message: Message, template: Template, origin_id: str) -> InboxMessage:
        payload = message.payload
        if message.channel != Channel.INBOX and template.supports(Channel.INBOX):
            payload = self._render(template, Channel.INBOX, message.variables,
                                   message.variant_id).model_dump(mode="json")

        item = InboxMessage(
            user_id=message.user_id,
            origin_message_id=origin_id,
            template_id=message.template_id,
            related_entity_id=message.related_entity_id,
            title=payload.get("title") or payload.get("subject"),
            body=payload.get("body") or "",
            cta=list(payload.get("cta") or []),
            channel_config=dict(payload.get("channel_config") or {}),
            created_at=self._clock(),
        )
        return await resolve(self._inbox.upsert(item))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _render(
        self,
        template: Template,
        channel: Channel,
        variables: dict[str, Any],
        variant_id: str | None,
    ) -> RenderedContent:
        """Render for a channel; inbox without its own block borrows the first channel's."""
        if channel == Channel.INBOX and template.content_for(Channel.INBOX, variant_id) is None:
            source = next((c for c in template.channels if c in template.content), None)
            if source is None:
                raise CommsError(ErrorCode.UNSUPPORTED_CHANNEL, f"Template {template.id} has no content")
            rendered = self._templates.render(template, source, variables, variant_id)
            return rendered.model_copy(update={"channel": Channel.INBOX})
        return self._templates.render(template, channel, variables, variant_id)

    async def _get_preferences(self, user_id: str) -> UserChannelPreferences:
        return await resolve(self._preferences.get_user_preferences(user_id))

    async def _sent_counts(self, user_id: str, since: datetime) -> dict[Channel, int]:
        counts: dict[Channel, int] = {}
        for channel in CHANNEL_ORDER:
            counts[channel] = await self.count_sent(user_id, since, channel=channel)
        return counts

    def _mark_failed(self, message: Message, error: str | None) -> None:
        now = self._clock()
        message.status = MessageStatus.FAILED
        message.failed_at = now
        message.updated_at = now
        message.error = error

    def _emit(self, event_type: str, message: Message, details: dict[str, Any] | None = None) -> None:
        if self._analytics is None:
            return
        event = AnalyticsEvent(
            timestamp=self._clock(),
            event_type=event_type,
            user_id=message.user_id,
            message_id=message.id,
            template_id=message.template_id,
            channel=message.channel,
            journey_id=message.journey_id,
            enrollment_id=message.enrollment_id,
            details={"status": str(message.status), **(details or {})},
        )
        try:
            self._analytics.record(event)
        except Exception as exc:
            logger.warning("Analytics sink failed for %s: %s", event_type, exc)
