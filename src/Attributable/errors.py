"""Exception taxonomy shared by the attribute stores and the import pipeline."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any


class AttributableError(Exception):
    """Base exception for attribute and import errors."""


class UnknownType(AttributableError):
    """A type name that is not in the type registry."""

    def __init__(self, type_name: str):
        super().__init__(f"Unknown attribute type: {type_name!r}")
        self.type_name = type_name


class InvalidEntityType(AttributableError):
    """An entity type that is not configured to carry attributes."""

    def __init__(self, entity_types: Sequence[str]):
        names = ", ".join(repr(e) for e in entity_types)
        super().__init__(f"Invalid entity type(s): {names}")
        self.entity_types = list(entity_types)


class DuplicateSlug(AttributableError):
    def __init__(self, slug: str, entity_types: Sequence[str]):
        super().__init__(
            f"Attribute slug {slug!r} already used for entity type(s): {', '.join(entity_types)}"
        )
        self.slug = slug
        self.entity_types = list(entity_types)


class NotFound(AttributableError):
    def __init__(self, kind: str, ident: object):
        super().__init__(f"{kind} not found: {ident!r}")
        self.kind = kind
        self.ident = ident


class ValidationError(AttributableError):
    """Validation failure carrying per-field reasons.

    ``errors`` maps a field name (attribute slug or definition field) to a list
    of human-readable reasons.
    """

    def __init__(self, message: str, errors: Mapping[str, Sequence[str]] | None = None):
        super().__init__(message)
        self.errors: dict[str, list[str]] = {k: list(v) for k, v in (errors or {}).items()}

    @classmethod
    def for_field(cls, field: str, reason: str) -> ValidationError:
        return cls(f"{field}: {reason}", {field: [reason]})


class CoercionError(ValidationError):
    """A raw value that cannot be converted to the declared type."""


class SchemaMismatch(AttributableError):
    """A staged record targets a resource type with no known attribute schema."""

    def __init__(self, resource_type: str):
        super().__init__(f"No import schema for resource type {resource_type!r}")
        self.resource_type = resource_type


class ParseError(AttributableError):
    """A source file is structurally unusable; nothing is staged."""

    def __init__(self, message: str, *, line: int | None = None):
        if line is not None:
            message = f"{message} (line {line})"
        super().__init__(message)
        self.line = line


class PersistenceConflict(AttributableError):
    """A write conflicts with existing stored state."""


def describe_failure(exc: BaseException) -> str:
    """Human-readable failure text with structured field detail appended.

    The per-field reasons of a ValidationError are appended as JSON so the
    reviewer of a failed import row sees exactly which columns were rejected.
    """
    message = str(exc) or exc.__class__.__name__
    errors = getattr(exc, "errors", None)
    if isinstance(errors, Mapping) and errors:
        message += "\n" + json.dumps(errors, ensure_ascii=False, sort_keys=True, default=str)
    return message


def from_pydantic(exc: Any, message: str = "Invalid input") -> ValidationError:
    """Convert a pydantic ValidationError into one carrying per-field reasons."""
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
        errors.setdefault(field, []).append(str(err.get("msg", "invalid")))
    return ValidationError(f"{message}: {', '.join(sorted(errors))}", errors)
