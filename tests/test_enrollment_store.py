"""Tests for the in-memory enrollment store's lease protocol."""

from __future__ import annotations

from datetime import timedelta

from comms.journeys.models import EnrollmentStatus, JourneyEnrollment
from comms.journeys.store import EnrollmentStore

from tests.conftest import NOW

LEASE = NOW + timedelta(minutes=5)


def _due(store: EnrollmentStore, **overrides) -> JourneyEnrollment:
    data = {"journey_id": "onboarding", "user_id": "u1", "current_step_id": "welcome",
            "next_execution_at": NOW, "created_at": NOW}
    data.update(overrides)
    return store.save(JourneyEnrollment(**data))


class TestEnrollmentStore:
    def setup_method(self) -> None:
        self.store = EnrollmentStore()

    def test_claim_takes_the_lease(self) -> None:
        enrollment = _due(self.store)

        claimed = self.store.claim(enrollment.id, "w1", NOW, LEASE)

        assert claimed.claimed_by == "w1"
        assert claimed.lease_expires_at == LEASE
        assert claimed.version == 1

    def test_second_claim_fails_while_leased(self) -> None:
        enrollment = _due(self.store)
        assert self.store.claim(enrollment.id, "w1", NOW, LEASE) is not None
        assert self.store.claim(enrollment.id, "w2", NOW, LEASE) is None
        assert self.store.list_due(NOW) == []

    def test_expired_lease_can_be_reclaimed(self) -> None:
        enrollment = _due(self.store)
        self.store.claim(enrollment.id, "w1", NOW, LEASE)

        later = LEASE + timedelta(seconds=1)
        assert [e.id for e in self.store.list_due(later)] == [enrollment.id]
        assert self.store.claim(enrollment.id, "w2", later, later + timedelta(minutes=5)).claimed_by == "w2"

    def test_release_only_by_holder(self) -> None:
        enrollment = _due(self.store)
        self.store.claim(enrollment.id, "w1", NOW, LEASE)

        self.store.release(enrollment.id, "w2")
        assert self.store.get(enrollment.id).claimed_by == "w1"

        self.store.release(enrollment.id, "w1")
        assert self.store.get(enrollment.id).claimed_by is None

    def test_save_claimed_lands_for_the_lease_holder(self) -> None:
        enrollment = _due(self.store)
        claimed = self.store.claim(enrollment.id, "w1", NOW, LEASE)
        claimed.current_step_id = "complete_profile"
        claimed.claimed_by = None

        assert self.store.save_claimed(claimed, "w2") is False
        assert self.store.get(enrollment.id).current_step_id == "welcome"
        assert self.store.save_claimed(claimed, "w1") is True
        assert self.store.get(enrollment.id).current_step_id == "complete_profile"

    def test_save_claimed_never_revives_an_exited_enrollment(self) -> None:
        enrollment = _due(self.store)
        claimed = self.store.claim(enrollment.id, "w1", NOW, LEASE)

        exited = self.store.get(enrollment.id)
        exited.status = EnrollmentStatus.EXITED
        exited.exit_reason = "converted"
        exited.claimed_by = None
        self.store.save(exited)

        claimed.current_step_id = "complete_profile"
        assert self.store.save_claimed(claimed, "w1") is False
        stored = self.store.get(enrollment.id)
        assert stored.status == EnrollmentStatus.EXITED
        assert stored.current_step_id == "welcome"

        self.store.release(enrollment.id, "w1")
        assert self.store.get(enrollment.id).exit_reason == "converted"

    def test_not_due_or_inactive_cannot_be_claimed(self) -> None:
        future = _due(self.store, next_execution_at=NOW + timedelta(hours=1))
        done = _due(self.store, status=EnrollmentStatus.COMPLETED)
        assert self.store.claim(future.id, "w1", NOW, LEASE) is None
        assert self.store.claim(done.id, "w1", NOW, LEASE) is None
        assert self.store.claim("enr_missing", "w1", NOW, LEASE) is None

    def test_list_due_orders_by_execution_time(self) -> None:
        late = _due(self.store, next_execution_at=NOW - timedelta(minutes=1))
        early = _due(self.store, next_execution_at=NOW - timedelta(hours=1))
        _due(self.store, next_execution_at=None)
        assert [e.id for e in self.store.list_due(NOW)] == [early.id, late.id]
        assert len(self.store.list_due(NOW, limit=1)) == 1

    def test_returns_copies(self) -> None:
        enrollment = _due(self.store)
        copy = self.store.get(enrollment.id)
        copy.status = EnrollmentStatus.EXITED
        assert self.store.get(enrollment.id).is_active

    def test_lists_by_user_and_journey(self) -> None:
        _due(self.store)
        _due(self.store, journey_id="winback")
        _due(self.store, user_id="u2")
        assert len(self.store.list_for_user("u1")) == 2
        assert len(self.store.list_for_user_journey("u1", "winback")) == 1
        assert self.store.count == 3
