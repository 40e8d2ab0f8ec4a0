"""Recurring tick that drives journey steps and queued messages."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from pydantic import BaseModel, Field

from comms.journeys.engine import JourneyEngine
from comms.journeys.models import TickReport
from comms.messaging.orchestrator import MessageOrchestrator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerReport(BaseModel):
    ran_at: datetime
    journeys: TickReport = Field(default_factory=TickReport)
    messages_delivered: int = 0
    inactivity_enrollments: int = 0


class Scheduler:
    """Runs due journey steps and due queued messages on one execution path.

    Safe to run in several processes at once: enrollments and queued messages
    are claimed before they are executed.
    """

    def __init__(
        self,
        engine: JourneyEngine,
        orchestrator: MessageOrchestrator,
        interval_seconds: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._engine = engine
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._clock = clock

    async def tick(self, include_inactivity: bool = False) -> SchedulerReport:
        now = self._clock()
        report = SchedulerReport(ran_at=now)
        if include_inactivity:
            report.inactivity_enrollments = len(await self._engine.process_inactivity_triggers(now))
        report.journeys = await self._engine.process_scheduled_journeys(now)
        report.messages_delivered = len(await self._orchestrator.process_scheduled_messages(now))
        logger.info(
            "Tick at %s: %d due, %d executed, %d failed, %d queued messages delivered",
            now.isoformat(), report.journeys.due, report.journeys.executed,
            report.journeys.failed, report.messages_delivered,
        )
        return report

    async def run_forever(self, stop: asyncio.Event | None = None, inactivity_every: int = 60) -> None:
        """Tick every interval until ``stop`` is set.

        Inactivity triggers are scanned every ``inactivity_every`` ticks.
        """
        stop = stop or asyncio.Event()
        ticks = 0
        while not stop.is_set():
            try:
                await self.tick(include_inactivity=ticks % inactivity_every == 0)
            except Exception:
                logger.exception("Scheduler tick failed")
            ticks += 1
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
