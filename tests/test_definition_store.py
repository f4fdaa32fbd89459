import pytest

from Attributable import repos
from Attributable.errors import (
    CoercionError,
    DuplicateSlug,
    InvalidEntityType,
    NotFound,
    PersistenceConflict,
    UnknownType,
    ValidationError,
)
from Attributable.metrics import get_counter
from Attributable.services.audit import NullAuditLog
from Attributable.services.definition_store import slugify
from Attributable.services.wiring import build_services


def test_slugify_strips_accents_and_collapses_separators():
    assert slugify("Couleur d'été") == "couleur-d-ete"
    assert slugify("  Shoe Size (EU) ") == "shoe-size-eu"
    assert slugify("***") == ""


async def test_create_derives_slug_and_records_audit(db, services, audit_log):
    obj = await services.definitions.create(
        db,
        {"name": "Shoe Size", "type": "integer", "entities": ["product"], "default": "42"},
        actor="alice",
    )
    assert obj.id is not None
    assert obj.slug == "shoe-size"
    assert obj.default == 42
    assert obj.entities == ["product"]

    # The collaborator hears about a write only once it commits
    assert audit_log.records == []
    await db.commit()
    assert len(audit_log.records) == 1
    rec = audit_log.records[0]
    assert rec["actor"] == "alice"
    assert rec["entity_kind"] == "attribute"
    assert rec["before"] == {}
    assert rec["after"]["slug"] == "shoe-size"

    logs = await services.definitions.logs(db, obj.id)
    assert [entry.event_type for entry in logs] == ["created"]


async def test_unknown_type_creates_nothing(db, services, audit_log):
    with pytest.raises(UnknownType):
        await services.definitions.create(
            db, {"name": "Colour", "type": "colour", "entities": ["product"]}
        )
    assert await services.definitions.list_all(db) == []
    assert audit_log.records == []


async def test_entities_must_be_configured(db, services):
    with pytest.raises(InvalidEntityType) as ei:
        await services.definitions.create(
            db, {"name": "Colour", "type": "text", "entities": ["product", "warehouse"]}
        )
    assert ei.value.entity_types == ["warehouse"]
    with pytest.raises(ValidationError) as ei2:
        await services.definitions.create(db, {"name": "Colour", "type": "text", "entities": []})
    assert "entities" in ei2.value.errors


async def test_invalid_input_reports_fields(db, services):
    with pytest.raises(ValidationError) as ei:
        await services.definitions.create(
            db, {"name": "Colour", "type": "text", "entities": ["product"], "slug": "Bad Slug"}
        )
    assert "slug" in ei.value.errors


async def test_slug_unique_within_overlapping_entity_types(db, services):
    await services.definitions.create(
        db, {"name": "Code", "type": "varchar", "entities": ["product"]}
    )
    with pytest.raises(DuplicateSlug) as ei:
        await services.definitions.create(
            db, {"name": "Code", "type": "varchar", "entities": ["customer", "product"]}
        )
    assert ei.value.entity_types == ["product"]

    # Disjoint entity sets may share a slug
    other = await services.definitions.create(
        db, {"name": "Code", "type": "varchar", "entities": ["customer"]}
    )
    found = await services.definitions.find_by_slug(db, "code", "customer")
    assert found.id == other.id


async def test_select_requires_options_and_checks_default(db, services):
    with pytest.raises(ValidationError) as ei:
        await services.definitions.create(
            db, {"name": "Colour", "type": "select", "entities": ["product"]}
        )
    assert "options" in ei.value.errors

    with pytest.raises(ValidationError):
        await services.definitions.create(
            db,
            {
                "name": "Colour",
                "type": "select",
                "entities": ["product"],
                "options": "red|blue",
                "default": "green",
            },
        )

    obj = await services.definitions.create(
        db,
        {
            "name": "Colour",
            "type": "select",
            "entities": ["product"],
            "options": "red|blue",
            "default": "blue",
        },
    )
    assert obj.options == ["red", "blue"]
    assert obj.default == "blue"


async def test_bad_default_is_a_coercion_error(db, services):
    with pytest.raises(CoercionError):
        await services.definitions.create(
            db, {"name": "Weight", "type": "number", "entities": ["product"], "default": "heavy"}
        )


async def test_collection_default_is_split(db, services):
    obj = await services.definitions.create(
        db,
        {
            "name": "Tags",
            "type": "varchar",
            "entities": ["product"],
            "is_collection": True,
            "default": "new| sale |",
        },
    )
    assert obj.default == ["new", "sale"]


async def test_update_audits_only_changed_fields(db, services, audit_log):
    obj = await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"], "group": "Looks"}
    )
    await db.commit()
    audit_log.records.clear()

    await services.definitions.update(db, obj.id, {"name": "Color", "group": "Looks"}, actor="bob")
    await db.commit()
    assert audit_log.records == [
        {
            "actor": "bob",
            "entity_kind": "attribute",
            "entity_id": str(obj.id),
            "before": {"name": "Colour"},
            "after": {"name": "Color"},
        }
    ]

    # Writing the same values again emits nothing
    await services.definitions.update(db, obj.id, {"name": "Color"})
    await db.commit()
    assert len(audit_log.records) == 1
    logs = await services.definitions.logs(db, obj.id)
    assert [entry.event_type for entry in logs] == ["updated", "created"]
    assert logs[0].payload == {"old": {"name": "Colour"}, "attributes": {"name": "Color"}}


async def test_update_missing_definition(db, services):
    with pytest.raises(NotFound):
        await services.definitions.update(db, 999, {"name": "x"})


async def test_update_rejects_null_for_required_columns(db, services):
    obj = await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"]}
    )
    with pytest.raises(ValidationError) as ei:
        await services.definitions.update(db, obj.id, {"name": None})
    assert "name" in ei.value.errors


async def test_type_and_slug_are_immutable_once_values_exist(db, services):
    obj = await services.definitions.create(
        db, {"name": "Size", "type": "text", "entities": ["product", "customer"]}
    )
    # Free to change while nothing is stored
    await services.definitions.update(db, obj.id, {"type": "varchar"})

    await services.values.set(db, "product", "1", obj.id, "M")
    with pytest.raises(ValidationError) as ei:
        await services.definitions.update(db, obj.id, {"type": "integer"})
    assert "type" in ei.value.errors
    with pytest.raises(ValidationError):
        await services.definitions.update(db, obj.id, {"slug": "sizing"})
    with pytest.raises(ValidationError) as ei2:
        await services.definitions.update(db, obj.id, {"entities": ["customer"]})
    assert "entities" in ei2.value.errors

    # Dropping an entity type without stored values is fine
    updated = await services.definitions.update(db, obj.id, {"entities": ["product"]})
    assert updated.entities == ["product"]


async def test_collection_cannot_become_scalar_with_multiple_values(db, services):
    obj = await services.definitions.create(
        db, {"name": "Tags", "type": "varchar", "entities": ["product"], "is_collection": True}
    )
    await services.values.set(db, "product", "1", obj.id, ["a", "b"])
    with pytest.raises(ValidationError) as ei:
        await services.definitions.update(db, obj.id, {"is_collection": False})
    assert "is_collection" in ei.value.errors

    await services.values.set(db, "product", "1", obj.id, ["a"])
    updated = await services.definitions.update(db, obj.id, {"is_collection": False})
    assert updated.is_collection is False


async def test_delete_is_rejected_while_values_exist(db, services):
    obj = await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"]}
    )
    await services.values.set(db, "product", "1", obj.id, "red")
    with pytest.raises(PersistenceConflict):
        await services.definitions.delete(db, obj.id)
    assert (await services.definitions.get(db, obj.id)).id == obj.id
    assert await services.values.count_for_definition(db, obj.id) == 1


async def test_delete_with_cascade_removes_values(db, services, audit_log):
    obj = await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"]}
    )
    await services.values.set(db, "product", "1", obj.id, "red")
    await services.values.set(db, "product", "2", obj.id, "blue")

    await services.definitions.delete(db, obj.id, cascade=True, actor="carol")
    with pytest.raises(NotFound):
        await services.definitions.get(db, obj.id)
    assert await repos.count_values_for_attribute(db, obj.id) == 0
    await db.commit()
    value_records = [r for r in audit_log.records if r["entity_kind"] == "product"]
    assert value_records[-2:] == [
        {
            "actor": "carol",
            "entity_kind": "product",
            "entity_id": "1",
            "before": {"colour": ["red"]},
            "after": {},
        },
        {
            "actor": "carol",
            "entity_kind": "product",
            "entity_id": "2",
            "before": {"colour": ["blue"]},
            "after": {},
        },
    ]
    assert audit_log.records[-1]["after"] == {}
    assert audit_log.records[-1]["before"]["slug"] == "colour"


async def test_delete_cascade_default_comes_from_settings(db, settings):
    services = build_services(settings.model_copy(update={"attribute_delete_cascade": True}))
    obj = await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"]}
    )
    await services.values.set(db, "product", "1", obj.id, "red")
    await services.definitions.delete(db, obj.id)
    assert await services.definitions.list_all(db) == []


async def test_delete_missing_definition(db, services):
    with pytest.raises(NotFound):
        await services.definitions.delete(db, 404)


async def test_listing_by_entity_type_and_groups(db, services):
    await services.definitions.create(
        db, {"name": "Zeta", "type": "text", "entities": ["product"], "sort_order": 1}
    )
    await services.definitions.create(
        db,
        {"name": "Alpha", "type": "text", "entities": ["product"], "sort_order": 1, "group": "A"},
    )
    await services.definitions.create(
        db, {"name": "First", "type": "text", "entities": ["product"], "group": "B"}
    )
    await services.definitions.create(
        db, {"name": "Email", "type": "text", "entities": ["customer"], "group": "A"}
    )

    product = await services.definitions.find_by_entity_type(db, "product")
    assert [a.slug for a in product] == ["first", "alpha", "zeta"]
    assert await services.definitions.list_groups(db) == ["A", "B"]
    assert services.definitions.entity_types() == ("product", "customer")
    with pytest.raises(InvalidEntityType):
        await services.definitions.find_by_entity_type(db, "warehouse")


async def test_null_audit_still_keeps_activity_trail(db, settings):
    services = build_services(settings, audit=NullAuditLog())
    obj = await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"]}
    )
    assert [entry.event_type for entry in await services.definitions.logs(db, obj.id)] == [
        "created"
    ]

    quiet = build_services(settings.model_copy(update={"features_activity_log": False}))
    other = await quiet.definitions.create(
        db, {"name": "Size", "type": "text", "entities": ["product"]}
    )
    assert await quiet.definitions.logs(db, other.id) == []


async def test_failing_audit_collaborator_does_not_break_writes(db, settings):
    class Exploding:
        def record(self, *args, **kwargs):
            raise RuntimeError("audit sink down")

    services = build_services(settings, audit=Exploding())
    obj = await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"]}
    )
    assert obj.id is not None
    await db.commit()
    assert get_counter("audit.record_failed") == 1


async def test_rolled_back_writes_never_reach_the_collaborator(db, services, audit_log):
    await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"]}
    )
    await db.rollback()
    assert audit_log.records == []
    assert get_counter("audit.discarded") == 1

    await services.definitions.create(
        db, {"name": "Colour", "type": "text", "entities": ["product"]}
    )
    await db.commit()
    assert [r["after"]["slug"] for r in audit_log.records] == ["colour"]


async def test_collection_default_follows_a_change_of_shape(db, services):
    obj = await services.definitions.create(
        db,
        {
            "name": "Tags",
            "type": "varchar",
            "entities": ["product"],
            "is_collection": True,
            "default": "new",
        },
    )
    assert obj.default == ["new"]

    updated = await services.definitions.update(db, obj.id, {"is_collection": False})
    assert updated.is_collection is False
    assert updated.default == "new"

    updated = await services.definitions.update(db, obj.id, {"is_collection": True})
    assert updated.default == ["new"]


async def test_several_defaults_need_a_replacement_when_becoming_scalar(db, services):
    obj = await services.definitions.create(
        db,
        {
            "name": "Tags",
            "type": "varchar",
            "entities": ["product"],
            "is_collection": True,
            "default": "new|sale",
        },
    )
    with pytest.raises(ValidationError) as ei:
        await services.definitions.update(db, obj.id, {"is_collection": False})
    assert "default" in ei.value.errors

    updated = await services.definitions.update(
        db, obj.id, {"is_collection": False, "default": "sale"}
    )
    assert (updated.is_collection, updated.default) == (False, "sale")
