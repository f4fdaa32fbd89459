"""CRUD over attribute definitions.

Every write is checked against the type registry and the configured entity
types before anything is flushed, so a rejected definition never leaves a
partial row behind. Watched fields are diffed after each mutation and handed
to the Auditor (dirty fields only).
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping, Sequence
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from Attributable import models, repos
from Attributable.attribute_types import AttributeTypeRegistry, TypeHandler
from Attributable.errors import (
    DuplicateSlug,
    InvalidEntityType,
    NotFound,
    PersistenceConflict,
    ValidationError,
    from_pydantic,
)
from Attributable.metrics import inc_counter
from Attributable.schemas import AttributeSpec, AttributeUpdate
from Attributable.services.audit import WATCHED_ATTRIBUTE_FIELDS, Auditor, snapshot

if TYPE_CHECKING:
    from Attributable.services.value_store import AttributeValueStore

log = structlog.get_logger()

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")

# Columns that may be left out of an update but never set to null
_NOT_NULL_FIELDS = ("slug", "name", "type", "entities", "sort_order", "is_required", "is_collection")


def slugify(text: str) -> str:
    """Lowercase ASCII slug: accents stripped, other runs collapsed to '-'."""
    folded = unicodedata.normalize("NFKD", text or "").encode("ascii", "ignore").decode("ascii")
    return _NON_SLUG_RE.sub("-", folded.lower()).strip("-")


def _parse(model: type[BaseModel], data: Any, message: str) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise from_pydantic(exc, message) from exc


class AttributeDefinitionStore:
    def __init__(
        self,
        registry: AttributeTypeRegistry,
        entity_types: Sequence[str],
        *,
        auditor: Auditor | None = None,
        delete_cascade: bool = False,
        collection_separator: str = "|",
    ):
        self.registry = registry
        self._entity_types = tuple(dict.fromkeys(entity_types))
        self.auditor = auditor or Auditor()
        self.delete_cascade = delete_cascade
        self.collection_separator = collection_separator
        self._values: AttributeValueStore | None = None

    def bind_value_store(self, values: AttributeValueStore) -> None:
        self._values = values

    def entity_types(self) -> tuple[str, ...]:
        return self._entity_types

    # ---- checks -------------------------------------------------------

    def _check_entities(self, entities: Sequence[str]) -> list[str]:
        unique = list(dict.fromkeys(e.strip() for e in entities if e and e.strip()))
        if not unique:
            raise ValidationError.for_field("entities", "at least one entity type is required")
        unknown = [e for e in unique if e not in self._entity_types]
        if unknown:
            raise InvalidEntityType(unknown)
        return unique

    def _check_options(
        self, handler: TypeHandler, options: Sequence[str] | None
    ) -> list[str] | None:
        if options is None:
            cleaned = None
        else:
            cleaned = list(dict.fromkeys(o.strip() for o in options if o and o.strip()))
        if handler.requires_options and not cleaned:
            raise ValidationError.for_field(
                "options", f"type {handler.name!r} requires at least one option"
            )
        return cleaned or None

    def _serialize_default(
        self,
        handler: TypeHandler,
        *,
        slug: str,
        default: Any,
        is_collection: bool,
        options: list[str] | None,
    ) -> Any:
        """Coerce a raw default and return the form stored on the definition."""
        if default is None:
            return None
        view = SimpleNamespace(slug=slug, is_required=False, options=options)
        if is_collection:
            if isinstance(default, str):
                items: list[Any] = [
                    part for part in default.split(self.collection_separator) if part.strip()
                ]
            elif isinstance(default, (list, tuple)):
                items = list(default)
            else:
                items = [default]
            out = []
            for item in items:
                typed = handler.coerce(item)
                if typed.is_empty:
                    continue
                handler.validate(typed, view)
                out.append(handler.serialize(typed))
            return out or None
        if isinstance(default, (list, tuple)):
            raise ValidationError.for_field("default", "a single value is required")
        typed = handler.coerce(default)
        if typed.is_empty:
            return None
        handler.validate(typed, view)
        return handler.serialize(typed)

    async def _check_slug_free(
        self,
        s: AsyncSession,
        slug: str,
        entities: Sequence[str],
        *,
        exclude_id: int | None = None,
    ) -> None:
        taken: set[str] = set()
        for other in await repos.list_attributes_by_slug(s, slug):
            if other.id == exclude_id:
                continue
            taken.update(set(other.entities or []) & set(entities))
        if taken:
            raise DuplicateSlug(slug, sorted(taken))

    # ---- reads --------------------------------------------------------

    async def get(self, s: AsyncSession, attribute_id: int) -> models.Attribute:
        obj = await repos.get_attribute(s, attribute_id)
        if obj is None:
            raise NotFound("attribute", attribute_id)
        return obj

    async def find_by_slug(
        self, s: AsyncSession, slug: str, entity_type: str | None = None
    ) -> models.Attribute:
        for obj in await repos.list_attributes_by_slug(s, slug):
            if entity_type is None or entity_type in (obj.entities or []):
                return obj
        raise NotFound("attribute", slug if entity_type is None else f"{slug} ({entity_type})")

    async def list_by_slug(self, s: AsyncSession, slug: str) -> list[models.Attribute]:
        return await repos.list_attributes_by_slug(s, slug)

    async def list_all(self, s: AsyncSession) -> list[models.Attribute]:
        return await repos.list_attributes(s)

    async def find_by_entity_type(
        self, s: AsyncSession, entity_type: str
    ) -> list[models.Attribute]:
        if entity_type not in self._entity_types:
            raise InvalidEntityType([entity_type])
        return [a for a in await repos.list_attributes(s) if entity_type in (a.entities or [])]

    async def list_groups(self, s: AsyncSession) -> list[str]:
        return sorted(set(await repos.list_attribute_groups(s)))

    async def logs(
        self, s: AsyncSession, attribute_id: int, *, limit: int = 100
    ) -> list[models.ActivityLog]:
        return await repos.list_activity_logs(
            s, subject_type="attribute", subject_id=str(attribute_id), limit=limit
        )

    # ---- writes -------------------------------------------------------

    async def create(
        self,
        s: AsyncSession,
        spec: AttributeSpec | Mapping[str, Any],
        *,
        actor: str | None = None,
    ) -> models.Attribute:
        spec = _parse(AttributeSpec, spec, "Invalid attribute definition")
        handler = self.registry.resolve(spec.type)
        entities = self._check_entities(spec.entities)
        slug = spec.slug or slugify(spec.name)
        if not slug:
            raise ValidationError.for_field("slug", "cannot be derived from the name")
        options = self._check_options(handler, spec.options)
        default = self._serialize_default(
            handler,
            slug=slug,
            default=spec.default,
            is_collection=spec.is_collection,
            options=options,
        )
        await self._check_slug_free(s, slug, entities)

        obj = await repos.insert_attribute(
            s,
            slug=slug,
            name=spec.name,
            description=spec.description,
            sort_order=spec.sort_order,
            group=spec.group,
            type=handler.name,
            is_required=spec.is_required,
            is_collection=spec.is_collection,
            default=default,
            options=options,
            entities=entities,
        )
        await self.auditor.mutation(
            s,
            actor=actor,
            entity_kind="attribute",
            entity_id=obj.id,
            event_type="created",
            before={},
            after=snapshot(obj, WATCHED_ATTRIBUTE_FIELDS),
        )
        inc_counter("attributes.definition.created")
        log.info("attributes.definition.created", attribute_id=obj.id, slug=slug, type=obj.type)
        return obj

    async def update(
        self,
        s: AsyncSession,
        attribute_id: int,
        changes: AttributeUpdate | Mapping[str, Any],
        *,
        actor: str | None = None,
    ) -> models.Attribute:
        obj = await self.get(s, attribute_id)
        fields = _parse(AttributeUpdate, changes, "Invalid attribute update").changes()
        for name in _NOT_NULL_FIELDS:
            if name in fields and fields[name] is None:
                raise ValidationError.for_field(name, "may not be null")
        if not fields:
            return obj

        before = snapshot(obj, WATCHED_ATTRIBUTE_FIELDS)
        type_name = fields.get("type", obj.type)
        handler = self.registry.resolve(type_name)
        slug = fields.get("slug", obj.slug)
        entities = (
            self._check_entities(fields["entities"]) if "entities" in fields else list(obj.entities)
        )
        is_collection = fields.get("is_collection", obj.is_collection)

        stored = await repos.count_values_for_attribute(s, obj.id)
        if stored:
            if type_name != obj.type:
                raise ValidationError.for_field("type", "cannot change while values are stored")
            if slug != obj.slug:
                raise ValidationError.for_field("slug", "cannot change while values are stored")
            dropped = [e for e in obj.entities or [] if e not in entities]
            if dropped and await repos.count_values_for_attribute(
                s, obj.id, entity_types=dropped
            ):
                raise ValidationError.for_field(
                    "entities", f"values are stored for {', '.join(dropped)}"
                )
            if obj.is_collection and not is_collection:
                if await repos.max_values_per_entity(s, obj.id) > 1:
                    raise ValidationError.for_field(
                        "is_collection", "an entity holds more than one value"
                    )

        options = self._check_options(handler, fields.get("options", obj.options))
        default = fields.get("default", obj.default)
        if "default" not in fields and default is not None:
            # Carry the stored default across a change of shape
            if is_collection and not isinstance(default, list):
                default = [default]
            elif not is_collection and isinstance(default, list):
                if len(default) > 1:
                    raise ValidationError.for_field(
                        "default", "holds several values; send a single default with is_collection"
                    )
                default = default[0] if default else None
        default = self._serialize_default(
            handler,
            slug=slug,
            default=default,
            is_collection=is_collection,
            options=options,
        )
        if slug != obj.slug or entities != list(obj.entities or []):
            await self._check_slug_free(s, slug, entities, exclude_id=obj.id)

        fields.update(
            slug=slug,
            type=handler.name,
            entities=entities,
            options=options,
            default=default,
        )
        for name, value in fields.items():
            setattr(obj, name, value)
        await repos.save(s)

        changed = await self.auditor.mutation(
            s,
            actor=actor,
            entity_kind="attribute",
            entity_id=obj.id,
            event_type="updated",
            before=before,
            after=snapshot(obj, WATCHED_ATTRIBUTE_FIELDS),
        )
        if changed:
            inc_counter("attributes.definition.updated")
            log.info("attributes.definition.updated", attribute_id=obj.id, slug=obj.slug)
        return obj

    async def delete(
        self,
        s: AsyncSession,
        attribute_id: int,
        *,
        cascade: bool | None = None,
        actor: str | None = None,
    ) -> None:
        obj = await self.get(s, attribute_id)
        cascade = self.delete_cascade if cascade is None else cascade
        stored = await repos.count_values_for_attribute(s, obj.id)
        if stored and not cascade:
            inc_counter("attributes.definition.delete_rejected")
            raise PersistenceConflict(
                f"Attribute {obj.slug!r} still has {stored} stored value(s); delete with cascade"
            )
        if stored:
            if self._values is None:
                raise RuntimeError("value store is not bound to the definition store")
            await self._values.delete_for_definition(s, obj.id, actor=actor)

        before = snapshot(obj, WATCHED_ATTRIBUTE_FIELDS)
        await repos.delete_attribute(s, obj)
        await self.auditor.mutation(
            s,
            actor=actor,
            entity_kind="attribute",
            entity_id=attribute_id,
            event_type="deleted",
            before=before,
            after={},
        )
        inc_counter("attributes.definition.deleted")
        log.info(
            "attributes.definition.deleted",
            attribute_id=attribute_id,
            slug=before["slug"],
            cascaded_values=stored,
        )
