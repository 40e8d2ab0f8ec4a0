"""FastAPI router for message sending and inbox endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from comms.core.errors import CommsError
from comms.core.types import Channel, MessagePriority
from comms.messaging.models import SendMessageRequest
from comms.web.errors import http_error

router = APIRouter()


class SendMessageBody(BaseModel):
    user_id: str = ""
    template_id: str = ""
    channel: Channel | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    priority: MessagePriority | None = None
    schedule_at: datetime | None = None
    related_entity_id: str | None = None


@router.post("/api/messages/send")
async def send_message(body: SendMessageBody, request: Request) -> dict[str, Any]:
    orchestrator = request.app.state.orchestrator
    try:
        result = await orchestrator.send_message(SendMessageRequest(**body.model_dump()))
    except CommsError as e:
        raise http_error(e)
    return result.model_dump(mode="json")


@router.get("/api/messages/{message_id}")
async def get_message(message_id: str, request: Request) -> dict[str, Any]:
    message = await request.app.state.orchestrator.get_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail=f"Message {message_id!r} not found")
    return message.model_dump(mode="json")


@router.get("/api/users/{user_id}/messages")
async def list_user_messages(user_id: str, request: Request) -> list[dict[str, Any]]:
    messages = await request.app.state.orchestrator.list_messages(user_id)
    return [m.model_dump(mode="json") for m in messages]


@router.get("/api/users/{user_id}/inbox")
async def list_user_inbox(user_id: str, request: Request) -> list[dict[str, Any]]:
    items = await request.app.state.orchestrator.list_inbox(user_id)
    return [i.model_dump(mode="json") for i in items]
