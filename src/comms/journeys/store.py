"""In-memory enrollment store with lease-based claims."""

from __future__ import annotations

import threading
from datetime import datetime

from comms.journeys.models import EnrollmentStatus, JourneyEnrollment


class EnrollmentStore:
    """In-memory store for journey enrollments.

    Returned enrollments are copies, so a worker only changes stored state
    through :meth:`save` or :meth:`claim`.
    """

    def __init__(self) -> None:
        self._enrollments: dict[str, JourneyEnrollment] = {}
        self._lock = threading.Lock()

    def save(self, enrollment: JourneyEnrollment) -> JourneyEnrollment:
        with self._lock:
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return enrollment

    def save_claimed(self, enrollment: JourneyEnrollment, worker_id: str) -> bool:
        """Write a worker's result only while the stored row is still active and leased to it.

        Returns ``False`` and drops the write when the enrollment was exited,
        completed or re-leased by another worker in the meantime.
        """
        with self._lock:
            stored = self._enrollments.get(enrollment.id)
            if (
                stored is None
                or stored.status != EnrollmentStatus.ACTIVE
                or stored.claimed_by != worker_id
            ):
                return False
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return True

    def get(self, enrollment_id: str) -> JourneyEnrollment | None:
        stored = self._enrollments.get(enrollment_id)
        return stored.model_copy(deep=True) if stored else None

    def list_for_user(self, user_id: str) -> list[JourneyEnrollment]:
        return sorted(
            (e.model_copy(deep=True) for e in self._enrollments.values() if e.user_id == user_id),
            key=lambda e: e.created_at,
        )

    def list_for_user_journey(self, user_id: str, journey_id: str) -> list[JourneyEnrollment]:
        return [e for e in self.list_for_user(user_id) if e.journey_id == journey_id]

    def list_due(self, now: datetime, limit: int = 100) -> list[JourneyEnrollment]:
        """Active enrollments due at ``now`` whose lease is free or expired."""
        due = [
            e for e in self._enrollments.values()
            if e.status == EnrollmentStatus.ACTIVE
            and e.next_execution_at is not None
            and e.next_execution_at <= now
            and (e.lease_expires_at is None or e.lease_expires_at <= now)
        ]
        due.sort(key=lambda e: e.next_execution_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    def claim(
        self,
        enrollment_id: str,
        worker_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> JourneyEnrollment | None:
        """Atomically take the lease on a due enrollment; ``None`` if someone else holds it."""
        with self._lock:
            stored = self._enrollments.get(enrollment_id)
            if (
                stored is None
                or stored.status != EnrollmentStatus.ACTIVE
                or stored.next_execution_at is None
                or stored.next_execution_at > now
                or (stored.lease_expires_at is not None and stored.lease_expires_at > now)
            ):
                return None
            stored.claimed_by = worker_id
            stored.lease_expires_at = lease_until
            stored.version += 1
            return stored.model_copy(deep=True)

    def release(self, enrollment_id: str, worker_id: str) -> None:
        with self._lock:
            stored = self._enrollments.get(enrollment_id)
            if (
                stored is not None
                and stored.status == EnrollmentStatus.ACTIVE
                and stored.claimed_by == worker_id
            ):
                stored.claimed_by = None
                stored.lease_expires_at = None

    @property
    def count(self) -> int:
        return len(self._enrollments)
