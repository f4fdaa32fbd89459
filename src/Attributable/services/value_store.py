from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from Attributable import models, repos
from Attributable.attribute_types import AttributeTypeRegistry, TypedValue, TypeHandler
from Attributable.errors import CoercionError, InvalidEntityType, NotFound, ValidationError
from Attributable.metrics import inc_counter
from Attributable.services.audit import Auditor
from Attributable.services.definition_store import AttributeDefinitionStore

log = structlog.get_logger()

# A scalar read returns one TypedValue; a collection read returns a list of them
StoredValue = TypedValue | list[TypedValue]


class AttributeValueStore:
    """Typed attribute values per (entity type, entity id, attribute).

    Writes replace the stored rows for one (entity, attribute) pair inside the
    caller's transaction; the caller's ``session_scope`` decides whether the
    whole change commits.
    """

    def __init__(
        self,
        definitions: AttributeDefinitionStore,
        registry: AttributeTypeRegistry,
        *,
        auditor: Auditor | None = None,
        collection_separator: str = "|",
    ):
        self.definitions = definitions
        self.registry = registry
        self.auditor = auditor or definitions.auditor
        self.collection_separator = collection_separator

    async def _definition(
        self, s: AsyncSession, entity_type: str, attribute: int | str | models.Attribute
    ) -> models.Attribute:
        if entity_type not in self.definitions.entity_types():
            raise InvalidEntityType([entity_type])
        if isinstance(attribute, models.Attribute):
            defn = attribute
        elif isinstance(attribute, int) and not isinstance(attribute, bool):
            defn = await self.definitions.get(s, attribute)
        else:
            return await self.definitions.find_by_slug(s, str(attribute), entity_type)
        if entity_type not in (defn.entities or []):
            raise NotFound("attribute", f"{defn.slug} ({entity_type})")
        return defn

    def _items(self, defn: models.Attribute, raw: Any) -> list[Any]:
        if raw is None:
            return []
        if isinstance(raw, str):
            if not raw.strip():
                return []
            if defn.is_collection:
                return [p for p in raw.split(self.collection_separator) if p.strip()]
            return [raw]
        if isinstance(raw, (list, tuple)):
            return list(raw)
        return [raw]

    def _coerce_all(
        self, handler: TypeHandler, defn: models.Attribute, items: Sequence[Any]
    ) -> list[TypedValue]:
        typed: list[TypedValue] = []
        for item in items:
            try:
                value = handler.coerce(item)
            except CoercionError as exc:
                raise CoercionError(f"{defn.slug}: {exc}", {defn.slug: [str(exc)]}) from exc
            if not value.is_empty:
                typed.append(value)
        if not defn.is_collection and len(typed) > 1:
            raise ValidationError.for_field(defn.slug, "does not accept multiple values")
        if not typed:
            handler.validate(TypedValue(handler.name, None), defn)
        for value in typed:
            handler.validate(value, defn)
        return typed

    def _shape(
        self, defn: models.Attribute, handler: TypeHandler, typed: list[TypedValue]
    ) -> StoredValue:
        if defn.is_collection:
            return typed
        return typed[0] if typed else TypedValue(handler.name, None)

    def _default(self, defn: models.Attribute, handler: TypeHandler) -> StoredValue:
        if defn.default is None:
            return [] if defn.is_collection else TypedValue(handler.name, None)
        if defn.is_collection:
            raw = defn.default if isinstance(defn.default, list) else [defn.default]
            return [handler.coerce(item) for item in raw]
        return handler.coerce(defn.default)

    @staticmethod
    def _audit_form(defn: models.Attribute, serialized: list[Any]) -> Any:
        if defn.is_collection:
            return serialized
        return serialized[0] if serialized else None

    # ---- reads --------------------------------------------------------

    async def get(
        self,
        s: AsyncSession,
        entity_type: str,
        entity_id: str | int,
        attribute: int | str | models.Attribute,
    ) -> StoredValue:
        defn = await self._definition(s, entity_type, attribute)
        handler = self.registry.resolve(defn.type)
        rows = await repos.list_values(
            s, attribute_id=defn.id, entity_type=entity_type, entity_id=str(entity_id)
        )
        if not rows:
            return self._default(defn, handler)
        return self._shape(defn, handler, [handler.coerce(r.value) for r in rows])

    async def get_all(
        self, s: AsyncSession, entity_type: str, entity_id: str | int
    ) -> dict[str, StoredValue]:
        defs = await self.definitions.find_by_entity_type(s, entity_type)
        rows = await repos.list_entity_values(s, entity_type=entity_type, entity_id=str(entity_id))
        by_attr: dict[int, list[models.AttributeValue]] = {}
        for row in rows:
            by_attr.setdefault(row.attribute_id, []).append(row)
        out: dict[str, StoredValue] = {}
        for defn in defs:
            handler = self.registry.resolve(defn.type)
            stored = by_attr.get(defn.id)
            if stored:
                out[defn.slug] = self._shape(defn, handler, [handler.coerce(r.value) for r in stored])
            else:
                out[defn.slug] = self._default(defn, handler)
        return out

    async def missing_required(
        self, s: AsyncSession, entity_type: str, entity_id: str | int
    ) -> list[str]:
        defs = await self.definitions.find_by_entity_type(s, entity_type)
        rows = await repos.list_entity_values(s, entity_type=entity_type, entity_id=str(entity_id))
        present = {r.attribute_id for r in rows}
        return [
            d.slug
            for d in defs
            if d.is_required and d.id not in present and d.default in (None, [])
        ]

    async def count_for_definition(self, s: AsyncSession, attribute_id: int) -> int:
        return await repos.count_values_for_attribute(s, attribute_id)

    # ---- writes -------------------------------------------------------

    async def set(
        self,
        s: AsyncSession,
        entity_type: str,
        entity_id: str | int,
        attribute: int | str | models.Attribute,
        raw: Any,
        *,
        actor: str | None = None,
    ) -> StoredValue:
        defn = await self._definition(s, entity_type, attribute)
        handler = self.registry.resolve(defn.type)
        typed = self._coerce_all(handler, defn, self._items(defn, raw))
        entity_id = str(entity_id)

        existing = await repos.list_values(
            s, attribute_id=defn.id, entity_type=entity_type, entity_id=entity_id
        )
        before = [r.value for r in existing]
        after = [handler.serialize(t) for t in typed]
        await repos.replace_values(
            s,
            attribute_id=defn.id,
            entity_type=entity_type,
            entity_id=entity_id,
            value_type=handler.name,
            values=after,
        )
        changed = await self.auditor.mutation(
            s,
            actor=actor,
            entity_kind=entity_type,
            entity_id=entity_id,
            event_type="updated" if before else "created",
            before={defn.slug: self._audit_form(defn, before)} if before else {},
            after={defn.slug: self._audit_form(defn, after)} if after else {},
        )
        if changed:
            inc_counter("attributes.value.set")
            log.debug(
                "attributes.value.set",
                entity_type=entity_type,
                entity_id=entity_id,
                slug=defn.slug,
                items=len(after),
            )
        return self._shape(defn, handler, typed)

    async def append(
        self,
        s: AsyncSession,
        entity_type: str,
        entity_id: str | int,
        attribute: int | str | models.Attribute,
        raw: Any,
        *,
        actor: str | None = None,
    ) -> list[TypedValue]:
        defn = await self._definition(s, entity_type, attribute)
        if not defn.is_collection:
            raise ValidationError.for_field(defn.slug, "is not a collection")
        handler = self.registry.resolve(defn.type)
        entity_id = str(entity_id)
        existing = await repos.list_values(
            s, attribute_id=defn.id, entity_type=entity_type, entity_id=entity_id
        )
        before = [r.value for r in existing]
        items = self._items(defn, raw)
        if not items:
            return [handler.coerce(v) for v in before]
        typed = self._coerce_all(handler, defn, items)
        added = [handler.serialize(t) for t in typed]
        await repos.append_values(
            s,
            attribute_id=defn.id,
            entity_type=entity_type,
            entity_id=entity_id,
            value_type=handler.name,
            values=added,
        )
        await self.auditor.mutation(
            s,
            actor=actor,
            entity_kind=entity_type,
            entity_id=entity_id,
            event_type="updated" if before else "created",
            before={defn.slug: before} if before else {},
            after={defn.slug: before + added},
        )
        inc_counter("attributes.value.appended")
        return [handler.coerce(v) for v in before + added]

    async def delete_for_entity(
        self,
        s: AsyncSession,
        entity_type: str,
        entity_id: str | int,
        *,
        actor: str | None = None,
    ) -> int:
        entity_id = str(entity_id)
        rows = await repos.list_entity_values(s, entity_type=entity_type, entity_id=entity_id)
        if not rows:
            return 0
        slugs: dict[int, str] = {}
        before: dict[str, list[Any]] = {}
        for row in rows:
            if row.attribute_id not in slugs:
                defn = await repos.get_attribute(s, row.attribute_id)
                slugs[row.attribute_id] = defn.slug if defn else str(row.attribute_id)
            before.setdefault(slugs[row.attribute_id], []).append(row.value)
        count = await repos.delete_values_for_entity(s, entity_type=entity_type, entity_id=entity_id)
        await self.auditor.mutation(
            s,
            actor=actor,
            entity_kind=entity_type,
            entity_id=entity_id,
            event_type="deleted",
            before=before,
            after={},
        )
        inc_counter("attributes.value.deleted", count)
        log.info(
            "attributes.values.entity_deleted",
            entity_type=entity_type,
            entity_id=entity_id,
            count=count,
        )
        return count

    async def delete_for_definition(
        self, s: AsyncSession, attribute_id: int, *, actor: str | None = None
    ) -> int:
        defn = await repos.get_attribute(s, attribute_id)
        slug = defn.slug if defn else str(attribute_id)
        per_entity: dict[tuple[str, str], list[Any]] = {}
        for row in await repos.list_attribute_values(s, attribute_id):
            per_entity.setdefault((row.entity_type, row.entity_id), []).append(row.value)
        count = await repos.delete_values_for_attribute(s, attribute_id)
        for (entity_type, entity_id), values in per_entity.items():
            await self.auditor.mutation(
                s,
                actor=actor,
                entity_kind=entity_type,
                entity_id=entity_id,
                event_type="deleted",
                before={slug: values},
                after={},
            )
        inc_counter("attributes.value.deleted", count)
        log.info(
            "attributes.values.definition_deleted",
            attribute_id=attribute_id,
            count=count,
            entities=len(per_entity),
            actor=actor,
        )
        return count
