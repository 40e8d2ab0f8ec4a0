"""In-memory template store."""

from __future__ import annotations

from comms.templates.models import Template


class TemplateStore:
    """In-memory store for message templates."""

    def __init__(self) -> None:
        self._templates: dict[str, Template] = {}

    def save(self, template: Template) -> Template:
        self._templates[template.id] = template
        return template

    def get(self, template_id: str) -> Template | None:
        return self._templates.get(template_id)

    def delete(self, template_id: str) -> bool:
        return self._templates.pop(template_id, None) is not None

    def list_all(self) -> list[Template]:
        return sorted(self._templates.values(), key=lambda t: t.id)

    @property
    def count(self) -> int:
        return len(self._templates)
