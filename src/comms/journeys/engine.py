"""Journey engine: enrollment, scheduled step execution and event-driven exits."""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import yaml

from comms.analytics import AnalyticsSink
from comms.core.config import JourneyConfig
from comms.core.errors import CommsError, ErrorCode
from comms.core.types import AnalyticsEvent
from comms.journeys.actions import ProfileGateway, WebhookCaller
from comms.journeys.conditions import conditions_met, deep_merge
from comms.journeys.models import (
    CONVERSION_EVENTS,
    AddTagAction,
    EnrollmentStatus,
    Journey,
    JourneyEnrollment,
    JourneyStep,
    RemoveTagAction,
    SendMessageAction,
    TickReport,
    TriggerType,
    UpdatePropertyAction,
    UserEvent,
    WaitAction,
    WebhookAction,
)
from comms.journeys.triggers import ActivitySource, date_anchor, event_matches
from comms.messaging.models import SendMessageRequest
from comms.messaging.orchestrator import MessageOrchestrator
from comms.preferences.models import zone_for
from comms.repositories import resolve
from comms.repositories.protocols import EnrollmentRepository

logger = logging.getLogger(__name__)

_DEFAULT_JOURNEYS_DIR = Path(__file__).resolve().parents[3] / "config" / "journeys"

_ELIGIBILITY_CODES = {ErrorCode.ALREADY_ENROLLED, ErrorCode.COOLDOWN_ACTIVE}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _load_journey(path: Path) -> Journey:
    with open(path) as fh:
        data = yaml.safe_load(fh)
    return Journey.model_validate(data)


class JourneyEngine:
    """Drives enrollments through journey steps.

    Loads journey definitions from YAML files in the journeys directory.
    Each call to :meth:`process_scheduled_journeys` claims due enrollments
    under a lease and executes one step per enrollment.
    """

    def __init__(
        self,
        orchestrator: MessageOrchestrator,
        store: EnrollmentRepository,
        profiles: ProfileGateway | None = None,
        webhooks: WebhookCaller | None = None,
        activity: ActivitySource | None = None,
        analytics: AnalyticsSink | None = None,
        config: JourneyConfig | None = None,
        journeys_dir: str | Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._profiles = profiles
        self._webhooks = webhooks
        self._activity = activity
        self._analytics = analytics
        self._config = config or JourneyConfig()
        self._clock = clock
        self._journeys: dict[str, Journey] = {}
        self._load_journeys(Path(journeys_dir) if journeys_dir else _DEFAULT_JOURNEYS_DIR)

    def _load_journeys(self, journeys_dir: Path) -> None:
        if not journeys_dir.exists():
            return
        for path in sorted(journeys_dir.glob("*.yml")):
            self.register_journey(_load_journey(path))

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def register_journey(self, journey: Journey) -> Journey:
        """Add or replace a journey definition.

        Raises:
            CommsError: VALIDATION_ERROR if the journey has no steps or
                duplicate step ids.
        """
        if not journey.steps:
            raise CommsError(ErrorCode.VALIDATION_ERROR, f"Journey {journey.id} has no steps")
        step_ids = [s.id for s in journey.steps]
        if len(step_ids) != len(set(step_ids)):
            raise CommsError(ErrorCode.VALIDATION_ERROR, f"Journey {journey.id} has duplicate step ids")
        self._journeys[journey.id] = journey
        return journey

    def get_journey(self, journey_id: str) -> Journey | None:
        return self._journeys.get(journey_id)

    def list_journeys(self, active_only: bool = False) -> list[Journey]:
        journeys = sorted(self._journeys.values(), key=lambda j: j.id)
        return [j for j in journeys if j.active] if active_only else journeys

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def enroll_user(
        self,
        user_id: str,
        journey_id: str,
        context: dict[str, Any] | None = None,
        related_entity_id: str | None = None,
        anchor: datetime | None = None,
    ) -> str:
        """Enroll a user at the first step and return the enrollment id.

        The first step is scheduled at ``anchor`` (enrollment time by default)
        plus its delay.

        Raises:
            CommsError: NOT_FOUND, INACTIVE, ALREADY_ENROLLED or COOLDOWN_ACTIVE.
        """
        journey = self._journeys.get(journey_id)
        if journey is None:
            raise CommsError(ErrorCode.NOT_FOUND, f"Journey {journey_id} not found",
                             {"journey_id": journey_id})
        if not journey.active:
            raise CommsError(ErrorCode.INACTIVE, f"Journey {journey_id} is not active")

        now = self._clock()
        prior: list[JourneyEnrollment] = await resolve(
            self._store.list_for_user_journey(user_id, journey_id)
        )
        settings = journey.settings
        if any(e.is_active for e in prior) and not settings.allow_re_entry:
            raise CommsError(ErrorCode.ALREADY_ENROLLED,
                             f"User {user_id} is already enrolled in {journey_id}")
        if settings.allow_re_entry and prior:
            latest = max(prior, key=lambda e: e.created_at)
            available_at = latest.created_at + timedelta(days=settings.re_entry_cooldown_days)
            if now < available_at:
                raise CommsError(
                    ErrorCode.COOLDOWN_ACTIVE,
                    f"User {user_id} cannot re-enter {journey_id} before {available_at.isoformat()}",
                    {"available_at": available_at.isoformat()},
                )

        first = journey.first_step()
        enrollment = JourneyEnrollment(
            journey_id=journey_id,
            user_id=user_id,
            related_entity_id=related_entity_id,
            current_step_id=first.id,
            next_execution_at=(anchor or now) + first.delay.as_timedelta(),
            context=dict(context or {}),
            enrolled_at=now,
            created_at=now,
            updated_at=now,
        )
        await resolve(self._store.save(enrollment))
        logger.info("Enrolled %s in %s (%s), first step %s at %s", user_id, journey_id,
                    enrollment.id, first.id, enrollment.next_execution_at.isoformat())
        self._emit("journey.enrolled", enrollment)
        return enrollment.id

    async def exit_enrollment(self, enrollment_id: str, reason: str) -> JourneyEnrollment:
        """Move an enrollment to ``exited``. Terminal enrollments are returned unchanged."""
        enrollment = await resolve(self._store.get(enrollment_id))
        if enrollment is None:
            raise CommsError(ErrorCode.NOT_FOUND, f"Enrollment {enrollment_id} not found")
        if not enrollment.is_active:
            return enrollment
        await self._exit(enrollment, reason)
        return enrollment

    async def get_enrollment(self, enrollment_id: str) -> JourneyEnrollment | None:
        return await resolve(self._store.get(enrollment_id))

    async def list_enrollments(self, user_id: str) -> list[JourneyEnrollment]:
        return await resolve(self._store.list_for_user(user_id))

    # ------------------------------------------------------------------
    # Events and triggers
    # ------------------------------------------------------------------

    async def handle_user_event(self, event: UserEvent) -> dict[str, list[str]]:
        """Apply exit rules to the user's active enrollments, then run event triggers.

        Returns the ids of exited and newly created enrollments.
        """
        exited: list[str] = []
        enrollments: list[JourneyEnrollment] = await resolve(self._store.list_for_user(event.user_id))
        for enrollment in enrollments:
            if not enrollment.is_active:
                continue
            journey = self._journeys.get(enrollment.journey_id)
            if journey is None:
                continue
            reason = None
            if event.event_type in journey.settings.exit_events:
                reason = "event_triggered"
            elif journey.settings.exit_on_conversion and event.event_type in CONVERSION_EVENTS:
                reason = "converted"
            if reason:
                await self._exit(enrollment, reason)
                exited.append(enrollment.id)

        enrolled: list[str] = []
        for journey in self.list_journeys(active_only=True):
            if not event_matches(journey.trigger, event):
                continue
            anchor = date_anchor(journey.trigger, event) if journey.trigger.type == TriggerType.DATE else None
            enrollment_id = await self._try_enroll(
                event.user_id, journey.id, event.event_data, event.related_entity_id, anchor
            )
            if enrollment_id:
                enrolled.append(enrollment_id)

        return {"exited": exited, "enrolled": enrolled}

    async def process_inactivity_triggers(self, now: datetime | None = None) -> list[str]:
        """Enroll users inactive long enough for each behavioral journey."""
        if self._activity is None:
            return []
        now = now or self._clock()
        enrolled: list[str] = []
        for journey in self.list_journeys(active_only=True):
            trigger = journey.trigger
            if trigger.type != TriggerType.BEHAVIOR or trigger.inactivity_days is None:
                continue
            cutoff = now - timedelta(days=trigger.inactivity_days)
            users = await resolve(self._activity.list_inactive_users(cutoff))
            for user_id in users:
                context = await self._live_attributes(user_id)
                context["inactivity_days"] = trigger.inactivity_days
                enrollment_id = await self._try_enroll(user_id, journey.id, context, None, None)
                if enrollment_id:
                    enrolled.append(enrollment_id)
        return enrolled

    async def _try_enroll(
        self,
        user_id: str,
        journey_id: str,
        context: dict[str, Any],
        related_entity_id: str | None,
        anchor: datetime | None,
    ) -> str | None:
        try:
            return await self.enroll_user(user_id, journey_id, context, related_entity_id, anchor)
        except CommsError as exc:
            if exc.code not in _ELIGIBILITY_CODES:
                raise
            logger.info("Skipped enrolling %s in %s: %s", user_id, journey_id, exc.code)
            return None

    # ------------------------------------------------------------------
    # Scheduled execution
    # ------------------------------------------------------------------

    async def process_scheduled_journeys(self, now: datetime | None = None, limit: int = 100) -> TickReport:
        """Execute the current step of every due, unleased active enrollment.

        Failures are isolated per enrollment. A non-retryable
        :class:`CommsError` exits the enrollment with ``error:<code>``; any
        other failure releases the lease and leaves it active for the next tick.
        """
        now = now or self._clock()
        report = TickReport()
        due: list[JourneyEnrollment] = await resolve(self._store.list_due(now, limit))
        report.due = len(due)
        lease_until = now + timedelta(seconds=self._config.lease_seconds)
        worker_id = self._config.worker_id

        for candidate in due:
            enrollment = await resolve(self._store.claim(candidate.id, worker_id, now, lease_until))
            if enrollment is None:
                report.not_claimed += 1
                continue
            try:
                outcome = await self._execute_step(enrollment, worker_id)
            except CommsError as exc:
                if exc.retryable:
                    logger.warning("Step %s of %s deferred: %s", enrollment.current_step_id,
                                   enrollment.id, exc)
                    await resolve(self._store.release(enrollment.id, worker_id))
                    report.failed += 1
                else:
                    logger.error("Step %s of %s failed permanently: %s", enrollment.current_step_id,
                                 enrollment.id, exc)
                    if await self._exit(enrollment, f"error:{exc.code}", worker_id):
                        report.exited += 1
                    else:
                        report.superseded += 1
                continue
            except Exception:
                logger.exception("Step %s of %s failed", enrollment.current_step_id, enrollment.id)
                await resolve(self._store.release(enrollment.id, worker_id))
                report.failed += 1
                continue

            if outcome == "superseded":
                report.superseded += 1
            elif outcome == "deferred":
                report.deferred += 1
            elif outcome == "exited":
                report.exited += 1
            else:
                if outcome == "skipped":
                    report.skipped += 1
                else:
                    report.executed += 1
                if enrollment.status == EnrollmentStatus.COMPLETED:
                    report.completed += 1
        return report

    async def _execute_step(self, enrollment: JourneyEnrollment, worker_id: str) -> str:
        journey = self._journeys.get(enrollment.journey_id)
        if journey is None:
            if not await self._exit(enrollment, "journey_not_found", worker_id):
                return "superseded"
            return "exited"

        step = journey.get_step(enrollment.current_step_id)
        if step is None:
            if not await self._complete(enrollment, worker_id):
                return "superseded"
            return "completed"

        data = enrollment.context
        if step.conditions:
            live = await self._live_attributes(enrollment.user_id)
            data = deep_merge(enrollment.context, live)

        ran = conditions_met(step.conditions, data)
        if ran:
            if isinstance(step.action, SendMessageAction) and await self._over_daily_limit(journey, enrollment):
                if not await self._defer_to_next_day(journey, enrollment, worker_id):
                    return "superseded"
                return "deferred"
            await self._run_action(journey, step, enrollment)
        else:
            logger.info("Conditions not met for step %s of %s, skipping", step.id, enrollment.id)

        self._advance(journey, step, enrollment)
        if not await self._persist(enrollment, worker_id):
            return "superseded"
        if enrollment.status == EnrollmentStatus.COMPLETED:
            logger.info("Enrollment %s completed %s", enrollment.id, journey.id)
            self._emit("journey.completed", enrollment)
        return "executed" if ran else "skipped"

    def _advance(self, journey: Journey, step: JourneyStep, enrollment: JourneyEnrollment) -> None:
        finished_at = self._clock()
        if step.id not in enrollment.completed_steps:
            enrollment.completed_steps.append(step.id)
        next_step = journey.next_step(step.id)
        if next_step is None:
            enrollment.status = EnrollmentStatus.COMPLETED
            enrollment.completed_at = finished_at
            enrollment.next_execution_at = None
        else:
            enrollment.current_step_id = next_step.id
            enrollment.next_execution_at = finished_at + next_step.delay.as_timedelta()
        enrollment.updated_at = finished_at
        enrollment.claimed_by = None
        enrollment.lease_expires_at = None

    async def _run_action(self, journey: Journey, step: JourneyStep, enrollment: JourneyEnrollment) -> None:
        action = step.action
        if isinstance(action, SendMessageAction):
            respect = action.respect_quiet_hours
            if respect is None:
                respect = journey.settings.respect_quiet_hours
            result = await self._orchestrator.send_message(
                SendMessageRequest(
                    user_id=enrollment.user_id,
                    template_id=action.template_id,
                    channel=action.channel,
                    variables={
                        **enrollment.context,
                        "journey_name": journey.name,
                        "journey_id": journey.id,
                        "enrollment_id": enrollment.id,
                        **action.variables,
                    },
                    priority=action.priority,
                    related_entity_id=enrollment.related_entity_id,
                    journey_id=journey.id,
                    enrollment_id=enrollment.id,
                    step_id=step.id,
                    respect_quiet_hours=respect,
                )
            )
            enrollment.messages_sent.append(result.message_id)
            logger.info("Step %s of %s sent %s (%s)", step.id, enrollment.id, result.message_id,
                        result.status)
        elif isinstance(action, WaitAction):
            pass
        elif isinstance(action, UpdatePropertyAction):
            await resolve(self._require_profiles().update_property(
                enrollment.user_id, action.property_name, action.property_value
            ))
        elif isinstance(action, AddTagAction):
            await resolve(self._require_profiles().add_tags(enrollment.user_id, action.tags))
        elif isinstance(action, RemoveTagAction):
            await resolve(self._require_profiles().remove_tags(enrollment.user_id, action.tags))
        elif isinstance(action, WebhookAction):
            if self._webhooks is None:
                raise RuntimeError("No webhook caller configured")
            await self._webhooks.call(
                action.url,
                action.method,
                {
                    "user_id": enrollment.user_id,
                    "journey_id": journey.id,
                    "enrollment_id": enrollment.id,
                    "step_id": step.id,
                    "data": action.data,
                },
                idempotency_key=f"{enrollment.id}:{step.id}",
            )
        else:
            raise TypeError(f"Unhandled journey action: {action!r}")

    async def _over_daily_limit(self, journey: Journey, enrollment: JourneyEnrollment) -> bool:
        limit = journey.settings.max_messages_per_day
        if limit is None:
            return False
        sent = await self._orchestrator.count_sent(
            enrollment.user_id, self._day_start(journey, self._clock()), journey_id=journey.id
        )
        return sent >= limit

    async def _defer_to_next_day(self, journey: Journey, enrollment: JourneyEnrollment, worker_id: str) -> bool:
        next_day = self._day_start(journey, self._clock()) + timedelta(days=1)
        enrollment.next_execution_at = next_day
        enrollment.updated_at = self._clock()
        enrollment.claimed_by = None
        enrollment.lease_expires_at = None
        if not await self._persist(enrollment, worker_id):
            return False
        logger.info("Daily message limit reached for %s, deferred to %s", enrollment.id,
                    next_day.isoformat())
        return True

    @staticmethod
    def _day_start(journey: Journey, now: datetime) -> datetime:
        local = now.astimezone(zone_for(journey.settings.timezone))
        return datetime.combine(local.date(), time(), tzinfo=local.tzinfo).astimezone(timezone.utc)

    async def _live_attributes(self, user_id: str) -> dict[str, Any]:
        if self._profiles is None:
            return {}
        return await resolve(self._profiles.get_profile(user_id))

    def _require_profiles(self) -> ProfileGateway:
        if self._profiles is None:
            raise RuntimeError("No profile gateway configured")
        return self._profiles

    async def _complete(self, enrollment: JourneyEnrollment, worker_id: str) -> bool:
        now = self._clock()
        enrollment.status = EnrollmentStatus.COMPLETED
        enrollment.completed_at = now
        enrollment.updated_at = now
        enrollment.next_execution_at = None
        enrollment.claimed_by = None
        enrollment.lease_expires_at = None
        if not await self._persist(enrollment, worker_id):
            return False
        self._emit("journey.completed", enrollment)
        return True

    async def _exit(self, enrollment: JourneyEnrollment, reason: str, worker_id: str | None = None) -> bool:
        now = self._clock()
        enrollment.status = EnrollmentStatus.EXITED
        enrollment.exit_reason = reason
        enrollment.exited_at = now
        enrollment.updated_at = now
        enrollment.next_execution_at = None
        enrollment.claimed_by = None
        enrollment.lease_expires_at = None
        if not await self._persist(enrollment, worker_id):
            return False
        logger.info("Enrollment %s exited %s: %s", enrollment.id, enrollment.journey_id, reason)
        self._emit("journey.exited", enrollment, {"reason": reason})
        return True

    async def _persist(self, enrollment: JourneyEnrollment, worker_id: str | None) -> bool:
        """Save; a worker's save only lands while it still holds the active lease."""
        if worker_id is None:
            await resolve(self._store.save(enrollment))
            return True
        saved = await resolve(self._store.save_claimed(enrollment, worker_id))
        if not saved:
            logger.info("Enrollment %s changed during step %s, dropping the tick's result",
                        enrollment.id, enrollment.current_step_id)
        return saved

    def _emit(self, event_type: str, enrollment: JourneyEnrollment, details: dict[str, Any] | None = None) -> None:
        if self._analytics is None:
            return
        event = AnalyticsEvent(
            timestamp=self._clock(),
            event_type=event_type,
            user_id=enrollment.user_id,
            journey_id=enrollment.journey_id,
            enrollment_id=enrollment.id,
            details={"step_id": enrollment.current_step_id, **(details or {})},
        )
        try:
            self._analytics.record(event)
        except Exception as exc:
            logger.warning("Analytics sink failed for %s: %s", event_type, exc)
