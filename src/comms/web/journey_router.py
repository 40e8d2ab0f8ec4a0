"""FastAPI router for journeys, enrollments, domain events and the scheduler tick."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from comms.core.errors import CommsError
from comms.journeys.models import UserEvent
from comms.web.errors import http_error

router = APIRouter()


class EnrollBody(BaseModel):
    user_id: str
    context: dict[str, Any] = Field(default_factory=dict)
    related_entity_id: str | None = None


class EventBody(BaseModel):
    user_id: str
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    related_entity_id: str | None = None
    timestamp: datetime | None = None


@router.get("/api/journeys")
async def list_journeys(request: Request) -> list[dict[str, Any]]:
    engine = request.app.state.journey_engine
    return [
        {
            "id": j.id,
            "name": j.name,
            "description": j.description,
            "trigger": j.trigger.model_dump(mode="json"),
            "steps": len(j.steps),
            "active": j.active,
        }
        for j in engine.list_journeys()
    ]


@router.post("/api/journeys/{journey_id}/enroll", status_code=201)
async def enroll(journey_id: str, body: EnrollBody, request: Request) -> dict[str, Any]:
    engine = request.app.state.journey_engine
    try:
        enrollment_id = await engine.enroll_user(
            body.user_id, journey_id, body.context, body.related_entity_id
        )
    except CommsError as e:
        raise http_error(e)
    enrollment = await engine.get_enrollment(enrollment_id)
    return enrollment.model_dump(mode="json")


@router.post("/api/events")
async def ingest_event(body: EventBody, request: Request) -> dict[str, Any]:
    engine = request.app.state.journey_engine
    data = body.model_dump(exclude_none=True)
    try:
        outcome = await engine.handle_user_event(UserEvent(**data))
    except CommsError as e:
        raise http_error(e)
    return outcome


@router.get("/api/enrollments/{enrollment_id}")
async def get_enrollment(enrollment_id: str, request: Request) -> dict[str, Any]:
    enrollment = await request.app.state.journey_engine.get_enrollment(enrollment_id)
    if enrollment is None:
        raise HTTPException(status_code=404, detail=f"Enrollment {enrollment_id!r} not found")
    return enrollment.model_dump(mode="json")


@router.post("/api/scheduler/tick")
async def scheduler_tick(request: Request, include_inactivity: bool = False) -> dict[str, Any]:
    report = await request.app.state.scheduler.tick(include_inactivity=include_inactivity)
    return report.model_dump(mode="json")
