"""Template service: validated, versioned templates with rendering and A/B variants."""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import ValidationError

from comms.core.errors import CommsError, ErrorCode
from comms.core.types import Channel
from comms.repositories import resolve
from comms.repositories.protocols import TemplateRepository
from comms.templates.models import (
    CompiledTemplate,
    RenderedContent,
    Template,
    TemplateDefinition,
    TemplateVariable,
    TemplateVariant,
    VariableType,
)
from comms.templates.renderer import TemplateRenderer, compile_content

logger = logging.getLogger(__name__)

_DEFAULT_TEMPLATES_DIR = Path(__file__).resolve().parents[3] / "config" / "templates"

_IMMUTABLE_FIELDS = {"id", "version", "created_at", "created_by"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_definition(definition: TemplateDefinition) -> list[str]:
    """Return a list of authoring errors; empty when the definition is valid."""
    errors: list[str] = []
    if not definition.name or definition.category is None:
        errors.append("Template name and category are required")
    if not definition.channels or not definition.content:
        errors.append("Template must have at least one channel with content")
    for channel in definition.channels:
        content = definition.content.get(channel)
        if content is None or not content.body:
            errors.append(f"Channel {channel} is missing content or body")
    for variable in definition.variables:
        if not variable.name or variable.type is None:
            errors.append("Variable name and type are required")
    for channel, content in definition.content.items():
        for cta in content.cta:
            if not cta.text:
                errors.append(f"CTA in {channel} channel is missing text")
    if definition.fallback_channel and definition.fallback_channel not in definition.channels:
        errors.append(f"Fallback channel {definition.fallback_channel} is not a template channel")
    if definition.variants:
        errors.extend(_validate_variants(definition.variants))
    return errors


def _validate_variants(variants: list[TemplateVariant]) -> list[str]:
    errors: list[str] = []
    if sum(v.weight for v in variants) != 100:
        errors.append("Variant weights must sum to 100")
    ids = [v.variant_id for v in variants]
    if len(ids) != len(set(ids)):
        errors.append("Variant ids must be unique")
    return errors


def _check_type(variable: TemplateVariable, value: Any) -> bool:
    if variable.type == VariableType.STRING:
        return isinstance(value, str)
    if variable.type == VariableType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if variable.type == VariableType.BOOLEAN:
        return isinstance(value, bool)
    if variable.type == VariableType.DATE:
        if isinstance(value, (date, datetime)):
            return True
        if isinstance(value, str):
            try:
                datetime.fromisoformat(value)
            except ValueError:
                return False
            return True
        return False
    return True


def validate_variables(template: Template, variables: dict[str, Any]) -> None:
    """Check supplied variables against the template's declarations.

    Raises:
        CommsError: MISSING_VARIABLE, TYPE_MISMATCH or VALIDATION_FAILED.
    """
    for variable in template.variables:
        if variable.name not in variables or variables[variable.name] is None:
            if variable.required:
                raise CommsError(
                    ErrorCode.MISSING_VARIABLE,
                    f"Required variable {variable.name!r} is missing",
                    {"variable": variable.name},
                )
            continue

        value = variables[variable.name]
        if not _check_type(variable, value):
            raise CommsError(
                ErrorCode.TYPE_MISMATCH,
                f"Variable {variable.name!r} must be a {variable.type}",
                {"variable": variable.name, "expected": str(variable.type)},
            )

        rules = variable.validation
        if rules is None:
            continue
        text = str(value)
        problem = None
        if rules.min_length is not None and len(text) < rules.min_length:
            problem = f"must be at least {rules.min_length} characters"
        elif rules.max_length is not None and len(text) > rules.max_length:
            problem = f"must be at most {rules.max_length} characters"
        elif rules.pattern and re.search(rules.pattern, text) is None:
            problem = "has an invalid format"
        elif rules.enum is not None and text not in rules.enum:
            problem = f"must be one of: {', '.join(rules.enum)}"
        if problem:
            raise CommsError(
                ErrorCode.VALIDATION_FAILED,
                f"Variable {variable.name!r} {problem}",
                {"variable": variable.name},
            )


def _load_template_file(path: Path) -> Template:
    with open(path) as fh:
        data = yaml.safe_load(fh)
    return Template.model_validate(data)


class TemplateService:
    """Versioned template catalog backed by a template repository.

    Seed templates are read from YAML files in the templates directory at
    construction and written to the repository by :meth:`seed_templates`.
    """

    def __init__(
        self,
        store: TemplateRepository,
        renderer: TemplateRenderer | None = None,
        templates_dir: str | Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._renderer = renderer or TemplateRenderer()
        self._clock = clock
        self._compiled: dict[tuple[str, int], CompiledTemplate] = {}
        self._seeds: list[Template] = []
        self._load_seeds(Path(templates_dir) if templates_dir else _DEFAULT_TEMPLATES_DIR)

    def _load_seeds(self, templates_dir: Path) -> None:
        if not templates_dir.exists():
            return
        for path in sorted(templates_dir.glob("*.yml")):
            template = _load_template_file(path)
            errors = validate_definition(template)
            if errors:
                raise ValueError(f"Invalid seed template {path.name}: {'; '.join(errors)}")
            self._seeds.append(template)

    @property
    def renderer(self) -> TemplateRenderer:
        return self._renderer

    @property
    def seed_ids(self) -> list[str]:
        return [t.id for t in self._seeds]

    async def seed_templates(self) -> int:
        """Persist seed templates missing from the repository. Returns how many were written."""
        written = 0
        for template in self._seeds:
            if await resolve(self._store.get(template.id)) is None:
                await resolve(self._store.save(template.model_copy(deep=True)))
                written += 1
        if written:
            logger.info("Seeded %d templates", written)
        return written

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    async def create_template(
        self,
        definition: TemplateDefinition | dict[str, Any],
        created_by: str = "system",
        template_id: str | None = None,
    ) -> Template:
        """Validate, compile and store a new template at version 1.

        Raises:
            CommsError: VALIDATION_ERROR if any authoring rule is violated.
        """
        if isinstance(definition, dict):
            try:
                definition = TemplateDefinition.model_validate(definition)
            except ValidationError as exc:
                raise CommsError(ErrorCode.VALIDATION_ERROR, "Malformed template definition",
                                 {"errors": [e["msg"] for e in exc.errors()]}) from exc

        self._raise_if_invalid(definition)
        now = self._clock()
        fields = definition.model_dump()
        extra: dict[str, Any] = {"id": template_id} if template_id else {}
        template = Template(**fields, **extra, version=1, created_by=created_by,
                            created_at=now, updated_at=now)
        if template_id and await resolve(self._store.get(template_id)) is not None:
            raise CommsError(ErrorCode.VALIDATION_ERROR, f"Template {template_id} already exists")

        self._compile(template)
        await resolve(self._store.save(template))
        logger.info("Created template %s (%s)", template.id, template.name)
        return template

    async def update_template(self, template_id: str, changes: dict[str, Any]) -> Template:
        """Apply field changes, bump the version and recompile."""
        template = await self._require(template_id)
        data = template.model_dump()
        data.update({k: v for k, v in changes.items() if k not in _IMMUTABLE_FIELDS})
        data["version"] = template.version + 1
        data["updated_at"] = self._clock()
        try:
            updated = Template.model_validate(data)
        except ValidationError as exc:
            raise CommsError(ErrorCode.VALIDATION_ERROR, "Malformed template update",
                             {"errors": [e["msg"] for e in exc.errors()]}) from exc

        self._raise_if_invalid(updated)
        self._compile(updated)
        await resolve(self._store.save(updated))
        logger.info("Updated template %s to version %d", template_id, updated.version)
        return updated

    async def delete_template(self, template_id: str) -> bool:
        deleted = await resolve(self._store.delete(template_id))
        if deleted:
            self._compiled = {k: v for k, v in self._compiled.items() if k[0] != template_id}
        return deleted

    async def duplicate_template(self, template_id: str, new_name: str) -> Template:
        """Copy a template under a new id at version 1, without its variants."""
        source = await self._require(template_id)
        definition = TemplateDefinition.model_validate(source.model_dump())
        definition.name = new_name
        definition.variants = []
        return await self.create_template(definition, created_by=source.created_by)

    async def create_ab_test(
        self, template_id: str, variants: list[TemplateVariant | dict[str, Any]]
    ) -> Template:
        parsed = [v if isinstance(v, TemplateVariant) else TemplateVariant.model_validate(v)
                  for v in variants]
        errors = _validate_variants(parsed)
        if errors:
            raise CommsError(ErrorCode.VALIDATION_ERROR, "; ".join(errors), {"errors": errors})
        return await self.update_template(
            template_id, {"variants": [v.model_dump() for v in parsed]}
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_template(self, template_id: str) -> Template | None:
        return await resolve(self._store.get(template_id))

    async def list_templates(self, active_only: bool = False) -> list[Template]:
        templates = await resolve(self._store.list_all())
        if active_only:
            templates = [t for t in templates if t.active]
        return templates

    async def get_compiled(self, template_id: str) -> CompiledTemplate:
        template = await self._require(template_id)
        return self._compiled.get((template.id, template.version)) or self._compile(template)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    async def render_template(
        self,
        template_id: str,
        channel: Channel,
        variables: dict[str, Any] | None = None,
        variant_id: str | None = None,
    ) -> RenderedContent:
        """Render one channel of a template against a variable bag.

        Raises:
            CommsError: NOT_FOUND, INACTIVE, UNSUPPORTED_CHANNEL,
                MISSING_VARIABLE, TYPE_MISMATCH or VALIDATION_FAILED.
        """
        template = await self._require(template_id)
        return self.render(template, channel, variables or {}, variant_id)

    def render(
        self,
        template: Template,
        channel: Channel,
        variables: dict[str, Any],
        variant_id: str | None = None,
    ) -> RenderedContent:
        """Render an already-loaded template."""
        if not template.active:
            raise CommsError(ErrorCode.INACTIVE, f"Template {template.id} is not active")

        content = template.content_for(channel, variant_id)
        if content is None:
            raise CommsError(
                ErrorCode.UNSUPPORTED_CHANNEL,
                f"Template {template.id} has no content for channel {channel}",
                {"channel": str(channel)},
            )

        validate_variables(template, variables)
        applied_variant = variant_id if any(v.variant_id == variant_id for v in template.variants) else None
        fields = self._renderer.render_content(content, variables)
        return RenderedContent(
            template_id=template.id,
            channel=channel,
            variant_id=applied_variant,
            version=template.version,
            metadata={
                "template_name": template.name,
                "category": str(template.category) if template.category else None,
                "version": template.version,
            },
            **fields,
        )

    async def select_variant(self, template_id: str, user_id: str) -> str | None:
        template = await resolve(self._store.get(template_id))
        if template is None:
            return None
        return self.pick_variant(template, user_id)

    @staticmethod
    def pick_variant(template: Template, user_id: str) -> str | None:
        """Map a stable hash of (template, user) onto the cumulative variant weights."""
        if not template.variants:
            return None
        digest = hashlib.sha256(f"{template.id}:{user_id}".encode()).hexdigest()
        bucket = int(digest, 16) % 100
        cumulative = 0
        for variant in template.variants:
            cumulative += variant.weight
            if bucket < cumulative:
                return variant.variant_id
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _require(self, template_id: str) -> Template:
        template = await resolve(self._store.get(template_id))
        if template is None:
            raise CommsError(ErrorCode.NOT_FOUND, f"Template {template_id} not found",
                             {"template_id": template_id})
        return template

    @staticmethod
    def _raise_if_invalid(definition: TemplateDefinition) -> None:
        errors = validate_definition(definition)
        if errors:
            raise CommsError(ErrorCode.VALIDATION_ERROR, "; ".join(errors), {"errors": errors})

    def _compile(self, template: Template) -> CompiledTemplate:
        compiled = CompiledTemplate(
            template_id=template.id,
            version=template.version,
            compiled_at=self._clock(),
            channels={channel: compile_content(content) for channel, content in template.content.items()},
        )
        self._compiled[(template.id, template.version)] = compiled
        return compiled
