"""Message template data models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from comms.core.types import Channel, MessagePriority, TemplateCategory


class VariableType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


class VariableRules(BaseModel):
    """Optional validation rules applied to a supplied variable value."""

    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    enum: list[str] | None = None


class TemplateVariable(BaseModel):
    name: str = ""
    type: VariableType | None = None
    required: bool = False
    description: str = ""
    validation: VariableRules | None = None


class CallToAction(BaseModel):
    id: str = ""
    text: str = ""
    url: str | None = None
    deeplink: str | None = None
    style: str | None = None


class ChannelContent(BaseModel):
    """Content block for one channel. Every string field is rendered."""

    subject: str | None = None
    title: str | None = None
    body: str = ""
    html: str | None = None
    preview: str | None = None
    image_url: str | None = None
    icon_url: str | None = None
    cta: list[CallToAction] = Field(default_factory=list)
    channel_config: dict[str, Any] = Field(default_factory=dict)


class TemplateVariant(BaseModel):
    """A weighted A/B variant overriding content for some channels."""

    variant_id: str
    name: str = ""
    weight: int
    content: dict[Channel, ChannelContent] = Field(default_factory=dict)


class TemplateDefinition(BaseModel):
    """Author-supplied template fields, before identity and versioning."""

    name: str = ""
    description: str = ""
    category: TemplateCategory | None = None
    channels: list[Channel] = Field(default_factory=list)
    content: dict[Channel, ChannelContent] = Field(default_factory=dict)
    variables: list[TemplateVariable] = Field(default_factory=list)
    fallback_channel: Channel | None = None
    variants: list[TemplateVariant] = Field(default_factory=list)
    priority: MessagePriority = MessagePriority.MEDIUM
    max_retries: int | None = None
    active: bool = True


class Template(TemplateDefinition):
    """A stored, versioned template."""

    id: str = Field(default_factory=lambda: f"template_{uuid.uuid4().hex[:12]}")
    version: int = 1
    created_by: str = "system"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def content_for(self, channel: Channel, variant_id: str | None = None) -> ChannelContent | None:
        """Content block for a channel, preferring a matching variant override."""
        if variant_id:
            for variant in self.variants:
                if variant.variant_id == variant_id and channel in variant.content:
                    return variant.content[channel]
        return self.content.get(channel)

    def supports(self, channel: Channel) -> bool:
        return channel in self.channels and channel in self.content


class CompiledChannel(BaseModel):
    """Derived metadata about one channel's content block."""

    variables: list[str] = Field(default_factory=list)
    conditional_variables: list[str] = Field(default_factory=list)
    has_conditionals: bool = False
    estimated_length: int = 0


class CompiledTemplate(BaseModel):
    template_id: str
    version: int
    compiled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    channels: dict[Channel, CompiledChannel] = Field(default_factory=dict)


class RenderedContent(BaseModel):
    """Output of rendering one template channel against a variable bag."""

    template_id: str
    channel: Channel
    variant_id: str | None = None
    version: int
    subject: str | None = None
    title: str | None = None
    body: str
    html: str | None = None
    preview: str | None = None
    image_url: str | None = None
    icon_url: str | None = None
    cta: list[CallToAction] = Field(default_factory=list)
    channel_config: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
