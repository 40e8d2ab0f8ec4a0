"""FastAPI router for template authoring, preview and variant endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from comms.core.errors import CommsError
from comms.core.types import Channel
from comms.web.errors import http_error

router = APIRouter()


class RenderBody(BaseModel):
    channel: Channel
    variables: dict[str, Any] = Field(default_factory=dict)
    variant_id: str | None = None


@router.post("/api/templates", status_code=201)
async def create_template(body: dict[str, Any], request: Request) -> dict[str, Any]:
    service = request.app.state.template_service
    created_by = body.pop("created_by", "api")
    try:
        template = await service.create_template(body, created_by=created_by)
    except CommsError as e:
        raise http_error(e)
    return template.model_dump(mode="json")


@router.get("/api/templates")
async def list_templates(request: Request, active_only: bool = False) -> list[dict[str, Any]]:
    templates = await request.app.state.template_service.list_templates(active_only=active_only)
    return [
        {
            "id": t.id,
            "name": t.name,
            "category": t.category,
            "channels": t.channels,
            "version": t.version,
            "active": t.active,
            "variants": [v.variant_id for v in t.variants],
        }
        for t in templates
    ]


@router.get("/api/templates/{template_id}")
async def get_template(template_id: str, request: Request) -> dict[str, Any]:
    service = request.app.state.template_service
    template = await service.get_template(template_id)
    if template is None:
        raise HTTPException(status_code=404, detail=f"Template {template_id!r} not found")
    compiled = await service.get_compiled(template_id)
    return {
        **template.model_dump(mode="json"),
        "compiled": compiled.model_dump(mode="json"),
    }


@router.post("/api/templates/{template_id}/render")
async def render_template(template_id: str, body: RenderBody, request: Request) -> dict[str, Any]:
    service = request.app.state.template_service
    try:
        rendered = await service.render_template(
            template_id, body.channel, body.variables, body.variant_id
        )
    except CommsError as e:
        raise http_error(e)
    return rendered.model_dump(mode="json")


@router.get("/api/templates/{template_id}/variant")
async def select_variant(template_id: str, user_id: str, request: Request) -> dict[str, Any]:
    service = request.app.state.template_service
    if await service.get_template(template_id) is None:
        raise HTTPException(status_code=404, detail=f"Template {template_id!r} not found")
    return {
        "template_id": template_id,
        "user_id": user_id,
        "variant_id": await service.select_variant(template_id, user_id),
    }
