"""PostgreSQL template repository."""

from __future__ import annotations

from sqlalchemy import func, select

from comms.db.engine import DatabaseManager
from comms.db.models import TemplateRow
from comms.repositories.postgres import to_utc
from comms.templates.models import Template


class PostgresTemplateRepository:
    """Templates stored as JSON documents, one row per template id."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def save(self, template: Template) -> Template:
        document = template.model_dump(mode="json")
        async with self._db.session() as db:
            existing = await db.get(TemplateRow, template.id)
            if existing:
                existing.name = template.name
                existing.category = template.category.value if template.category else None
                existing.active = template.active
                existing.version = template.version
                existing.document = document
                existing.updated_at = to_utc(template.updated_at)
            else:
                db.add(TemplateRow(
                    id=template.id,
                    name=template.name,
                    category=template.category.value if template.category else None,
                    active=template.active,
                    version=template.version,
                    document=document,
                    created_at=to_utc(template.created_at),
                    updated_at=to_utc(template.updated_at),
                ))
            await db.commit()
        return template

    async def get(self, template_id: str) -> Template | None:
        async with self._db.session() as db:
            row = await db.get(TemplateRow, template_id)
            if row is None:
                return None
            return Template.model_validate(row.document)

    async def delete(self, template_id: str) -> bool:
        async with self._db.session() as db:
            row = await db.get(TemplateRow, template_id)
            if row is None:
                return False
            await db.delete(row)
            await db.commit()
            return True

    async def list_all(self) -> list[Template]:
        async with self._db.session() as db:
            result = await db.execute(select(TemplateRow).order_by(TemplateRow.id))
            return [Template.model_validate(r.document) for r in result.scalars().all()]

    @property
    def count(self) -> int:
        raise NotImplementedError("Use async_count() instead for Postgres")

    async def async_count(self) -> int:
        async with self._db.session() as db:
            result = await db.execute(select(func.count()).select_from(TemplateRow))
            return result.scalar_one()
