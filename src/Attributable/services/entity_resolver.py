"""Map (entity type, natural key) to the opaque entity id values are stored under."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from Attributable import repos
from Attributable.errors import InvalidEntityType, ValidationError
from Attributable.metrics import inc_counter

if TYPE_CHECKING:
    from Attributable.services.value_store import AttributeValueStore

log = structlog.get_logger()


class EntityResolver(Protocol):
    async def find(self, s: AsyncSession, entity_type: str, key: str) -> str | None: ...

    async def find_or_create(
        self, s: AsyncSession, entity_type: str, key: str
    ) -> tuple[str, bool]: ...

    async def delete(
        self, s: AsyncSession, entity_type: str, entity_id: str, *, actor: str | None = None
    ) -> bool: ...


class DbEntityResolver:
    """Default resolver backed by the ``entities`` table."""

    def __init__(self, values: AttributeValueStore):
        self.values = values

    def _check(self, entity_type: str, key: str) -> str:
        if entity_type not in self.values.definitions.entity_types():
            raise InvalidEntityType([entity_type])
        key = (key or "").strip()
        if not key:
            raise ValidationError.for_field("key", "is required")
        return key

    async def find(self, s: AsyncSession, entity_type: str, key: str) -> str | None:
        key = self._check(entity_type, key)
        obj = await repos.get_entity_by_key(s, entity_type=entity_type, key=key)
        return str(obj.id) if obj else None

    async def find_or_create(
        self, s: AsyncSession, entity_type: str, key: str
    ) -> tuple[str, bool]:
        key = self._check(entity_type, key)
        obj, created = await repos.get_or_create_entity(s, entity_type=entity_type, key=key)
        if created:
            inc_counter("entities.created")
            log.info("entities.created", entity_type=entity_type, entity_id=obj.id, key=key)
        return str(obj.id), created

    async def delete(
        self, s: AsyncSession, entity_type: str, entity_id: str, *, actor: str | None = None
    ) -> bool:
        # Values go first; they reference the entity only by id
        await self.values.delete_for_entity(s, entity_type, entity_id, actor=actor)
        deleted = await repos.delete_entity(s, entity_type=entity_type, entity_id=int(entity_id))
        if deleted:
            inc_counter("entities.deleted")
        return deleted
