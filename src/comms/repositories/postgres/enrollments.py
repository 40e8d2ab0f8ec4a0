"""PostgreSQL journey enrollment repository with lease claims."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select, update

from comms.db.engine import DatabaseManager
from comms.db.models import EnrollmentRow
from comms.journeys.models import EnrollmentStatus, JourneyEnrollment
from comms.repositories.postgres import aware, to_utc

_TIMESTAMPS = (
    "next_execution_at", "enrolled_at", "created_at", "updated_at",
    "completed_at", "exited_at", "lease_expires_at",
)
_PLAIN = (
    "journey_id", "user_id", "related_entity_id", "current_step_id",
    "completed_steps", "messages_sent", "context", "exit_reason", "claimed_by", "version",
)


class PostgresEnrollmentRepository:
    """Postgres-backed enrollment storage.

    :meth:`claim` is a single conditional UPDATE, so two workers racing on
    the same due enrollment cannot both win it.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def save(self, enrollment: JourneyEnrollment) -> JourneyEnrollment:
        values = self._row_values(enrollment)
        async with self._db.session() as db:
            existing = await db.get(EnrollmentRow, enrollment.id)
            if existing:
                for name, value in values.items():
                    setattr(existing, name, value)
            else:
                db.add(EnrollmentRow(id=enrollment.id, **values))
            await db.commit()
        return enrollment

    async def save_claimed(self, enrollment: JourneyEnrollment, worker_id: str) -> bool:
        """Conditional UPDATE on (active, leased to ``worker_id``); ``False`` if the row moved on."""
        async with self._db.session() as db:
            outcome = await db.execute(
                update(EnrollmentRow)
                .where(
                    EnrollmentRow.id == enrollment.id,
                    EnrollmentRow.status == EnrollmentStatus.ACTIVE.value,
                    EnrollmentRow.claimed_by == worker_id,
                )
                .values(**self._row_values(enrollment))
            )
            await db.commit()
            return outcome.rowcount == 1

    async def get(self, enrollment_id: str) -> JourneyEnrollment | None:
        async with self._db.session() as db:
            row = await db.get(EnrollmentRow, enrollment_id)
            return self._row_to_enrollment(row) if row else None

    async def list_for_user(self, user_id: str) -> list[JourneyEnrollment]:
        async with self._db.session() as db:
            result = await db.execute(
                select(EnrollmentRow)
                .where(EnrollmentRow.user_id == user_id)
                .order_by(EnrollmentRow.created_at)
            )
            return [self._row_to_enrollment(r) for r in result.scalars().all()]

    async def list_for_user_journey(self, user_id: str, journey_id: str) -> list[JourneyEnrollment]:
        async with self._db.session() as db:
            result = await db.execute(
                select(EnrollmentRow)
                .where(EnrollmentRow.user_id == user_id, EnrollmentRow.journey_id == journey_id)
                .order_by(EnrollmentRow.created_at)
            )
            return [self._row_to_enrollment(r) for r in result.scalars().all()]

    async def list_due(self, now: datetime, limit: int = 100) -> list[JourneyEnrollment]:
        now = to_utc(now)
        async with self._db.session() as db:
            result = await db.execute(
                select(EnrollmentRow)
                .where(
                    EnrollmentRow.status == EnrollmentStatus.ACTIVE.value,
                    EnrollmentRow.next_execution_at <= now,
                    or_(EnrollmentRow.lease_expires_at.is_(None), EnrollmentRow.lease_expires_at <= now),
                )
                .order_by(EnrollmentRow.next_execution_at)
                .limit(limit)
            )
            return [self._row_to_enrollment(r) for r in result.scalars().all()]

    async def claim(
        self,
        enrollment_id: str,
        worker_id: str,
        now: datetime,
        lease_until: datetime,
    ) -> JourneyEnrollment | None:
        now = to_utc(now)
        async with self._db.session() as db:
            outcome = await db.execute(
                update(EnrollmentRow)
                .where(
                    EnrollmentRow.id == enrollment_id,
                    EnrollmentRow.status == EnrollmentStatus.ACTIVE.value,
                    EnrollmentRow.next_execution_at <= now,
                    or_(EnrollmentRow.lease_expires_at.is_(None), EnrollmentRow.lease_expires_at <= now),
                )
                .values(
                    claimed_by=worker_id,
                    lease_expires_at=to_utc(lease_until),
                    version=EnrollmentRow.version + 1,
                )
            )
            await db.commit()
            if outcome.rowcount != 1:
                return None
            row = await db.get(EnrollmentRow, enrollment_id, populate_existing=True)
            return self._row_to_enrollment(row)

    async def release(self, enrollment_id: str, worker_id: str) -> None:
        async with self._db.session() as db:
            await db.execute(
                update(EnrollmentRow)
                .where(
                    EnrollmentRow.id == enrollment_id,
                    EnrollmentRow.status == EnrollmentStatus.ACTIVE.value,
                    EnrollmentRow.claimed_by == worker_id,
                )
                .values(claimed_by=None, lease_expires_at=None)
            )
            await db.commit()

    @staticmethod
    def _row_values(enrollment: JourneyEnrollment) -> dict:
        values = {name: getattr(enrollment, name) for name in _PLAIN}
        values.update({name: to_utc(getattr(enrollment, name)) for name in _TIMESTAMPS})
        values["status"] = enrollment.status.value
        values["context"] = enrollment.model_dump(mode="json", include={"context"})["context"]
        values["completed_steps"] = list(enrollment.completed_steps)
        values["messages_sent"] = list(enrollment.messages_sent)
        return values

    @staticmethod
    def _row_to_enrollment(row: EnrollmentRow) -> JourneyEnrollment:
        return JourneyEnrollment(
            id=row.id,
            journey_id=row.journey_id,
            user_id=row.user_id,
            related_entity_id=row.related_entity_id,
            status=EnrollmentStatus(row.status),
            current_step_id=row.current_step_id,
            next_execution_at=aware(row.next_execution_at),
            completed_steps=list(row.completed_steps or []),
            messages_sent=list(row.messages_sent or []),
            context=row.context or {},
            enrolled_at=aware(row.enrolled_at),
            created_at=aware(row.created_at),
            updated_at=aware(row.updated_at),
            completed_at=aware(row.completed_at),
            exited_at=aware(row.exited_at),
            exit_reason=row.exit_reason,
            claimed_by=row.claimed_by,
            lease_expires_at=aware(row.lease_expires_at),
            version=row.version,
        )
