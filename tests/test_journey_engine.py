"""Tests for journey enrollment, step execution and event handling."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from comms.channels.base import BaseChannelProvider
from comms.channels.models import DeliveryRequest, DeliveryResult
from comms.core.errors import CommsError, ErrorCode
from comms.core.types import Channel
from comms.journeys.actions import InMemoryProfileGateway, WebhookCaller
from comms.journeys.engine import JourneyEngine
from comms.journeys.models import EnrollmentStatus, Journey, UserEvent
from comms.journeys.store import EnrollmentStore
from comms.preferences.models import QuietHours

from tests.conftest import NOW, open_preferences

ORDER_DATA = {"first_name": "Ana", "order_id": "A-1001", "total": 48.9, "item_count": 2}


class ConvertingPushProvider(BaseChannelProvider):
    """Push provider whose delivery races an order.completed event for the recipient."""

    def __init__(self, engine: JourneyEngine) -> None:
        super().__init__(Channel.PUSH, name="push-converting")
        self._engine = engine

    async def _do_deliver(self, request: DeliveryRequest) -> DeliveryResult:
        await self._engine.handle_user_event(
            UserEvent(user_id=request.user_id, event_type="order.completed", event_data=ORDER_DATA)
        )
        return DeliveryResult(success=True, channel=Channel.PUSH)


def make_journey(journey_id: str, steps: list[dict], **settings) -> Journey:
    return Journey.model_validate({
        "id": journey_id,
        "name": journey_id.title(),
        "trigger": {"type": "event", "event_name": f"{journey_id}.start"},
        "steps": steps,
        "settings": settings,
    })


def send_step(step_id: str, order: int, template_id: str = "template_welcome", **action) -> dict:
    return {"id": step_id, "order": order,
            "action": {"type": "send_message", "template_id": template_id, **action}}


async def registered(services, user_id: str = "u1") -> str:
    outcome = await services.engine.handle_user_event(
        UserEvent(user_id=user_id, event_type="user.registered",
                  event_data={"first_name": "Ana"}, timestamp=NOW)
    )
    return outcome["enrolled"][0]


class TestDefinitions:
    def test_loads_yaml_journeys(self, services) -> None:
        ids = [j.id for j in services.engine.list_journeys()]
        assert ids == [
            "extracaring_30d", "health_reminder", "onboarding",
            "order_followup", "winback_60d", "winback_90d",
        ]
        onboarding = services.engine.get_journey("onboarding")
        assert [s.id for s in onboarding.ordered_steps()][:2] == ["welcome", "complete_profile"]

    def test_rejects_empty_journey(self, services) -> None:
        with pytest.raises(CommsError) as exc_info:
            services.engine.register_journey(make_journey("empty", []))
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    def test_rejects_duplicate_step_ids(self, services) -> None:
        journey = make_journey("dupes", [send_step("a", 1), send_step("a", 2)])
        with pytest.raises(CommsError):
            services.engine.register_journey(journey)


class TestEnrollment:
    async def test_first_step_scheduled_after_delay(self, services) -> None:
        enrollment_id = await registered(services)
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.current_step_id == "welcome"
        assert enrollment.next_execution_at == NOW + timedelta(minutes=5)
        assert enrollment.context == {"first_name": "Ana"}
        assert services.analytics.of_type("journey.enrolled")

    async def test_unknown_journey(self, services) -> None:
        with pytest.raises(CommsError) as exc_info:
            await services.engine.enroll_user("u1", "nope")
        assert exc_info.value.code == ErrorCode.NOT_FOUND

    async def test_already_enrolled(self, services) -> None:
        await services.engine.enroll_user("u1", "onboarding", {"first_name": "Ana"})
        with pytest.raises(CommsError) as exc_info:
            await services.engine.enroll_user("u1", "onboarding", {"first_name": "Ana"})
        assert exc_info.value.code == ErrorCode.ALREADY_ENROLLED

    async def test_repeated_trigger_event_is_skipped(self, services) -> None:
        await registered(services)
        outcome = await services.engine.handle_user_event(
            UserEvent(user_id="u1", event_type="user.registered", event_data={"first_name": "Ana"})
        )
        assert outcome == {"exited": [], "enrolled": []}

    async def test_finished_enrollment_allows_a_new_one(self, services) -> None:
        enrollment_id = await services.engine.enroll_user("u1", "onboarding", {"first_name": "Ana"})
        await services.engine.exit_enrollment(enrollment_id, "manual")
        assert await services.engine.enroll_user("u1", "onboarding", {"first_name": "Ana"})

    async def test_re_entry_cooldown(self, services, clock) -> None:
        await services.engine.enroll_user("u1", "winback_60d", {"first_name": "Ana"})
        with pytest.raises(CommsError) as exc_info:
            await services.engine.enroll_user("u1", "winback_60d", {"first_name": "Ana"})
        assert exc_info.value.code == ErrorCode.COOLDOWN_ACTIVE
        assert "available_at" in exc_info.value.details

        clock.advance(days=31)
        assert await services.engine.enroll_user("u1", "winback_60d", {"first_name": "Ana"})

    async def test_inactive_journey(self, services) -> None:
        journey = make_journey("paused", [send_step("a", 1)])
        journey.active = False
        services.engine.register_journey(journey)
        with pytest.raises(CommsError) as exc_info:
            await services.engine.enroll_user("u1", "paused")
        assert exc_info.value.code == ErrorCode.INACTIVE

    async def test_date_trigger_anchors_first_step(self, services) -> None:
        outcome = await services.engine.handle_user_event(
            UserEvent(
                user_id="u1",
                event_type="dog.health_updated",
                event_data={"dog_name": "Luna", "next_vaccination_date": "2026-03-25"},
                related_entity_id="dog-7",
            )
        )
        enrollment = await services.engine.get_enrollment(outcome["enrolled"][0])
        assert enrollment.journey_id == "health_reminder"
        assert enrollment.related_entity_id == "dog-7"
        assert enrollment.next_execution_at == datetime(2026, 3, 18, 9, 0, tzinfo=timezone.utc)

    async def test_date_event_without_date_is_ignored(self, services) -> None:
        outcome = await services.engine.handle_user_event(
            UserEvent(user_id="u1", event_type="dog.health_updated", event_data={"dog_name": "Luna"})
        )
        assert outcome["enrolled"] == []

    async def test_inactivity_triggers(self, services) -> None:
        services.activity.record_activity("idle", NOW - timedelta(days=61))
        services.activity.record_activity("active", NOW - timedelta(days=10))
        services.profiles.set_profile("idle", {"first_name": "Marco"})

        enrolled = await services.engine.process_inactivity_triggers()

        assert len(enrolled) == 1
        enrollment = await services.engine.get_enrollment(enrolled[0])
        assert enrollment.user_id == "idle"
        assert enrollment.journey_id == "winback_60d"
        assert enrollment.context == {"first_name": "Marco", "inactivity_days": 60}
        # Cooldown keeps a second scan from enrolling again.
        assert await services.engine.process_inactivity_triggers() == []

    async def test_long_inactivity_enters_both_winback_journeys(self, services) -> None:
        services.activity.record_activity("gone", NOW - timedelta(days=120))

        enrolled = await services.engine.process_inactivity_triggers()

        journeys = sorted([(await services.engine.get_enrollment(e)).journey_id for e in enrolled])
        assert journeys == ["winback_60d", "winback_90d"]


class TestExecution:
    async def test_onboarding_progression(self, services, clock) -> None:
        services.preferences.set_preferences(open_preferences("u1"))
        services.profiles.set_profile("u1", {"profile": {"completed": True}})
        enrollment_id = await registered(services)

        assert (await services.engine.process_scheduled_journeys()).due == 0

        clock.advance(minutes=5)
        report = await services.engine.process_scheduled_journeys()
        assert report.executed == 1
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.completed_steps == ["welcome"]
        assert enrollment.current_step_id == "complete_profile"
        assert enrollment.next_execution_at == clock.now + timedelta(days=3)
        assert enrollment.claimed_by is None
        assert len(enrollment.messages_sent) == 1
        message = await services.orchestrator.get_message(enrollment.messages_sent[0])
        assert message.journey_id == "onboarding"
        assert message.step_id == "welcome"
        assert message.variables == {
            "first_name": "Ana",
            "journey_name": "Onboarding",
            "journey_id": "onboarding",
            "enrollment_id": enrollment_id,
        }

        clock.advance(days=3)
        report = await services.engine.process_scheduled_journeys()
        assert report.skipped == 1
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.current_step_id == "tag_onboarded"
        assert len(enrollment.messages_sent) == 1

        report = await services.engine.process_scheduled_journeys()
        assert report.executed == 1
        assert services.profiles.tags("u1") == ["onboarded"]
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.current_step_id == "first_mission"
        assert enrollment.next_execution_at == clock.now + timedelta(days=7)

    async def test_condition_uses_live_profile(self, services, clock) -> None:
        services.preferences.set_preferences(open_preferences("u1"))
        services.profiles.set_profile("u1", {"profile": {"completed": False}})
        enrollment_id = await registered(services)
        clock.advance(minutes=5)
        await services.engine.process_scheduled_journeys()
        clock.advance(days=3)

        report = await services.engine.process_scheduled_journeys()

        assert report.executed == 1
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert len(enrollment.messages_sent) == 2

    async def test_order_followup_completes(self, services) -> None:
        services.profiles.set_profile("u1", {"tags": ["prospect", "vip"]})
        outcome = await services.engine.handle_user_event(
            UserEvent(user_id="u1", event_type="order.completed", event_data=ORDER_DATA,
                      related_entity_id="A-1001")
        )
        enrollment_id = outcome["enrolled"][0]

        for _ in range(3):
            await services.engine.process_scheduled_journeys()

        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert enrollment.completed_steps == ["confirmation", "mark_customer", "remove_prospect_tag"]
        profile = services.profiles.get_profile("u1")
        assert profile["lifecycle"]["stage"] == "customer"
        assert profile["tags"] == ["vip"]
        assert (await services.engine.process_scheduled_journeys()).due == 0
        assert services.analytics.of_type("journey.completed")

    async def test_extracaring_first_step_goes_to_inbox(self, services, clock) -> None:
        services.preferences.set_preferences(open_preferences("u1"))
        outcome = await services.engine.handle_user_event(
            UserEvent(user_id="u1", event_type="dog.added", event_data={"dog_name": "Luna"})
        )
        enrollment_id = outcome["enrolled"][0]
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.journey_id == "extracaring_30d"
        assert enrollment.next_execution_at == clock.now + timedelta(hours=2)

        clock.advance(hours=2)
        assert (await services.engine.process_scheduled_journeys()).executed == 1

        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.current_step_id == "setup_routine"
        assert enrollment.next_execution_at == clock.now + timedelta(days=3)
        message = await services.orchestrator.get_message(enrollment.messages_sent[0])
        assert message.channel == Channel.INBOX
        assert message.payload["title"] == "Luna's first day at home"

    async def test_daily_limit_defers_to_next_local_day(self, services) -> None:
        services.engine.register_journey(
            make_journey("burst", [send_step("one", 1), send_step("two", 2)], max_messages_per_day=1)
        )
        enrollment_id = await services.engine.enroll_user("u1", "burst", {"first_name": "Ana"})

        assert (await services.engine.process_scheduled_journeys()).executed == 1
        report = await services.engine.process_scheduled_journeys()

        assert report.deferred == 1
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.current_step_id == "two"
        assert enrollment.next_execution_at == datetime(2026, 3, 5, tzinfo=timezone.utc)

    async def test_missing_template_exits_enrollment(self, services) -> None:
        services.engine.register_journey(
            make_journey("broken", [send_step("one", 1, template_id="template_gone")])
        )
        enrollment_id = await services.engine.enroll_user("u1", "broken")

        report = await services.engine.process_scheduled_journeys()

        assert report.exited == 1
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.status == EnrollmentStatus.EXITED
        assert enrollment.exit_reason == "error:NOT_FOUND"

    async def test_retryable_failure_releases_lease(self, services, clock) -> None:
        clock.now = datetime(2026, 3, 4, 23, 30, tzinfo=timezone.utc)
        services.preferences.set_preferences(
            open_preferences("u1", quiet_hours=QuietHours(allow_critical=False))
        )
        services.engine.register_journey(
            make_journey("nightly", [send_step("one", 1, channel="push")])
        )
        enrollment_id = await services.engine.enroll_user("u1", "nightly", {"first_name": "Ana"})

        report = await services.engine.process_scheduled_journeys()

        assert report.failed == 1
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.is_active
        assert enrollment.current_step_id == "one"
        assert enrollment.claimed_by is None
        assert (await services.engine.process_scheduled_journeys()).due == 1

    async def test_journey_can_opt_out_of_quiet_hours(self, services, clock) -> None:
        clock.now = datetime(2026, 3, 4, 23, 30, tzinfo=timezone.utc)
        services.preferences.set_preferences(
            open_preferences("u1", quiet_hours=QuietHours(allow_critical=False))
        )
        services.engine.register_journey(
            make_journey("urgent", [send_step("one", 1, channel="push")], respect_quiet_hours=False)
        )
        await services.engine.enroll_user("u1", "urgent", {"first_name": "Ana"})

        assert (await services.engine.process_scheduled_journeys()).executed == 1


class TestEvents:
    async def test_exit_event(self, services) -> None:
        enrollment_id = await registered(services)
        outcome = await services.engine.handle_user_event(
            UserEvent(user_id="u1", event_type="order.completed", event_data=ORDER_DATA)
        )
        assert outcome["exited"] == [enrollment_id]
        assert len(outcome["enrolled"]) == 1
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.status == EnrollmentStatus.EXITED
        assert enrollment.exit_reason == "event_triggered"
        assert enrollment.next_execution_at is None

    async def test_conversion_exit(self, services) -> None:
        enrollment_id = await registered(services)
        await services.engine.handle_user_event(
            UserEvent(user_id="u1", event_type="appointment.booked")
        )
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.exit_reason == "converted"

    async def test_conversion_ignored_when_disabled(self, services) -> None:
        outcome = await services.engine.handle_user_event(
            UserEvent(user_id="u1", event_type="order.completed", event_data=ORDER_DATA)
        )
        followup = outcome["enrolled"][0]
        await services.engine.handle_user_event(
            UserEvent(user_id="u1", event_type="subscription.created")
        )
        assert (await services.engine.get_enrollment(followup)).is_active

    async def test_exit_is_terminal(self, services) -> None:
        enrollment_id = await registered(services)
        await services.engine.exit_enrollment(enrollment_id, "manual")
        again = await services.engine.exit_enrollment(enrollment_id, "other")
        assert again.exit_reason == "manual"
        assert len(services.analytics.of_type("journey.exited")) == 1

    async def test_exit_during_step_is_not_overwritten(self, services) -> None:
        services.preferences.set_preferences(open_preferences("u1"))
        services.registry.register(ConvertingPushProvider(services.engine))
        services.engine.register_journey(make_journey(
            "racing", [send_step("one", 1, channel="push"), send_step("two", 2, channel="push")]
        ))
        enrollment_id = await services.engine.enroll_user("u1", "racing", {"first_name": "Ana"})

        report = await services.engine.process_scheduled_journeys()

        assert report.superseded == 1
        assert report.executed == 0
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.status == EnrollmentStatus.EXITED
        assert enrollment.exit_reason == "converted"
        assert enrollment.current_step_id == "one"
        assert enrollment.next_execution_at is None

        await services.engine.process_scheduled_journeys()
        enrollment = await services.engine.get_enrollment(enrollment_id)
        assert enrollment.status == EnrollmentStatus.EXITED
        assert enrollment.completed_steps == []

    async def test_exit_unknown_enrollment(self, services) -> None:
        with pytest.raises(CommsError) as exc_info:
            await services.engine.exit_enrollment("enr_missing", "manual")
        assert exc_info.value.code == ErrorCode.NOT_FOUND


class TestWebhookStep:
    def _engine(self, services, handler, clock, tmp_path) -> JourneyEngine:
        engine = JourneyEngine(
            orchestrator=services.orchestrator,
            store=EnrollmentStore(),
            profiles=InMemoryProfileGateway(),
            webhooks=WebhookCaller(transport=httpx.MockTransport(handler)),
            journeys_dir=tmp_path,
            clock=clock,
        )
        engine.register_journey(make_journey("hooked", [{
            "id": "notify_crm", "order": 1,
            "action": {"type": "webhook", "url": "https://crm.test/hooks", "data": {"source": "app"}},
        }]))
        return engine

    async def test_sends_idempotency_key(self, services, clock, tmp_path) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        engine = self._engine(services, handler, clock, tmp_path)
        enrollment_id = await engine.enroll_user("u1", "hooked")

        report = await engine.process_scheduled_journeys()

        assert report.executed == 1
        assert report.completed == 1
        assert seen[0].headers["Idempotency-Key"] == f"{enrollment_id}:notify_crm"
        assert seen[0].method == "POST"

    async def test_webhook_error_is_retried(self, services, clock, tmp_path) -> None:
        engine = self._engine(services, lambda r: httpx.Response(503), clock, tmp_path)
        enrollment_id = await engine.enroll_user("u1", "hooked")

        report = await engine.process_scheduled_journeys()

        assert report.failed == 1
        assert (await engine.get_enrollment(enrollment_id)).is_active
