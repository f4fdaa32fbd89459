"""Explicit construction of the store graph.

The type registry is built (and frozen) once here and passed by reference to
every store; nothing reaches for a module-level singleton.
"""

from __future__ import annotations

from dataclasses import dataclass

from Attributable.attribute_types import AttributeTypeRegistry, default_registry
from Attributable.config import Settings, load_settings
from Attributable.services.audit import Auditor, AuditLog
from Attributable.services.definition_store import AttributeDefinitionStore
from Attributable.services.entity_resolver import DbEntityResolver, EntityResolver
from Attributable.services.staging_store import ImportStagingStore
from Attributable.services.value_store import AttributeValueStore


@dataclass
class Services:
    settings: Settings
    registry: AttributeTypeRegistry
    auditor: Auditor
    definitions: AttributeDefinitionStore
    values: AttributeValueStore
    staging: ImportStagingStore
    resolver: EntityResolver


def build_services(
    settings: Settings | None = None,
    *,
    registry: AttributeTypeRegistry | None = None,
    audit: AuditLog | None = None,
    resolver: EntityResolver | None = None,
) -> Services:
    settings = settings or load_settings()
    registry = registry or default_registry()
    if not registry.frozen:
        registry.freeze()
    auditor = Auditor(audit, persist_activity=settings.features_activity_log)
    definitions = AttributeDefinitionStore(
        registry,
        settings.entity_types,
        auditor=auditor,
        delete_cascade=settings.attribute_delete_cascade,
        collection_separator=settings.import_collection_separator,
    )
    values = AttributeValueStore(
        definitions,
        registry,
        auditor=auditor,
        collection_separator=settings.import_collection_separator,
    )
    definitions.bind_value_store(values)
    return Services(
        settings=settings,
        registry=registry,
        auditor=auditor,
        definitions=definitions,
        values=values,
        staging=ImportStagingStore(archive_success=settings.import_archive_success),
        resolver=resolver or DbEntityResolver(values),
    )
