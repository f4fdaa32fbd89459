"""Attribute value types: coercion and validation rules per registered type.

A registry is built once at process start (``default_registry()`` for the
standard set), frozen, and handed to the stores by reference. Tests build
their own registries with fake handler sets.

Every stored value goes through ``TypeHandler.coerce`` and comes out as a
``TypedValue`` tagged with the handler's type name. ``serialize`` produces the
JSON-safe form persisted by the value store; coercing that form again yields
an equal ``TypedValue``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from Attributable.errors import CoercionError, UnknownType, ValidationError


class DefinitionLike(Protocol):
    slug: str
    is_required: bool
    options: list[str] | None


@dataclass(frozen=True)
class TypedValue:
    type: str
    value: Any

    @property
    def is_empty(self) -> bool:
        return self.value is None


def _is_blank(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


class TypeHandler:
    """Coerces raw input into one value type.

    Subclasses override ``_convert`` (raw -> python value) and, where the
    python value is not JSON-safe, ``serialize``.
    """

    name: str = ""
    # Definitions of this type must declare their allowed options
    requires_options: bool = False

    def __init__(self, name: str | None = None):
        if name is not None:
            self.name = name

    def coerce(self, raw: Any) -> TypedValue:
        if isinstance(raw, TypedValue):
            if raw.type == self.name:
                return raw
            raw = raw.value
        if _is_blank(raw):
            return TypedValue(self.name, None)
        try:
            value = self._convert(raw)
        except (PydanticValidationError, ValueError, TypeError, ArithmeticError) as exc:
            reason = f"{raw!r} is not a valid {self.name}"
            raise CoercionError(reason, {"value": [reason]}) from exc
        return TypedValue(self.name, value)

    def _convert(self, raw: Any) -> Any:
        raise NotImplementedError

    def validate(self, typed: TypedValue, definition: DefinitionLike) -> None:
        if typed.is_empty and definition.is_required:
            raise ValidationError.for_field(definition.slug, "is required")

    def serialize(self, typed: TypedValue) -> Any:
        return typed.value


class TextHandler(TypeHandler):
    def __init__(self, name: str, *, max_length: int | None = None, strip: bool = False):
        super().__init__(name)
        self.max_length = max_length
        self.strip = strip

    def _convert(self, raw: Any) -> str:
        if isinstance(raw, bool) or not isinstance(raw, (str, int, float, Decimal)):
            raise TypeError(f"cannot store {type(raw).__name__} as text")
        text = str(raw)
        if self.strip:
            text = text.strip()
        if self.max_length is not None and len(text) > self.max_length:
            raise ValueError(f"longer than {self.max_length} characters")
        return text


class SelectHandler(TextHandler):
    requires_options = True

    def __init__(self, name: str = "select"):
        super().__init__(name, max_length=255, strip=True)

    def validate(self, typed: TypedValue, definition: DefinitionLike) -> None:
        super().validate(typed, definition)
        if typed.is_empty:
            return
        options = definition.options or []
        if typed.value not in options:
            raise ValidationError.for_field(
                definition.slug, f"{typed.value!r} is not one of {options}"
            )


class _AdapterHandler(TypeHandler):
    python_type: Any = None

    def __init__(self, name: str):
        super().__init__(name)
        self._adapter = TypeAdapter(self.python_type)

    def _convert(self, raw: Any) -> Any:
        if isinstance(raw, str):
            raw = raw.strip()
        return self._adapter.validate_python(raw)


class IntegerHandler(_AdapterHandler):
    python_type = int

    def _convert(self, raw: Any) -> int:
        if isinstance(raw, bool):
            raise TypeError("booleans are not integers")
        return super()._convert(raw)


class NumberHandler(_AdapterHandler):
    python_type = Decimal

    def _convert(self, raw: Any) -> Decimal:
        if isinstance(raw, bool):
            raise TypeError("booleans are not numbers")
        value = super()._convert(raw)
        if not value.is_finite():
            raise ValueError("number must be finite")
        return value

    def serialize(self, typed: TypedValue) -> Any:
        # Decimal is kept exact by storing its string form
        return None if typed.is_empty else str(typed.value)


class BooleanHandler(_AdapterHandler):
    python_type = bool

    def _convert(self, raw: Any) -> bool:
        if isinstance(raw, str):
            raw = raw.lower()
        return super()._convert(raw)


class DateHandler(_AdapterHandler):
    python_type = date

    def _convert(self, raw: Any) -> date:
        if isinstance(raw, datetime):
            return raw.date()
        return super()._convert(raw)

    def serialize(self, typed: TypedValue) -> Any:
        return None if typed.is_empty else typed.value.isoformat()


class DateTimeHandler(_AdapterHandler):
    python_type = datetime

    def _convert(self, raw: Any) -> datetime:
        value = super()._convert(raw)
        # Naive input is taken as UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def serialize(self, typed: TypedValue) -> Any:
        return None if typed.is_empty else typed.value.isoformat()


class AttributeTypeRegistry:
    """Name -> TypeHandler lookup, immutable once frozen."""

    def __init__(self, handlers: Iterable[TypeHandler] = ()):
        self._handlers: dict[str, TypeHandler] = {}
        self._frozen = False
        for handler in handlers:
            self.register(handler)

    def register(self, handler: TypeHandler) -> None:
        if self._frozen:
            raise RuntimeError("type registry is frozen")
        if not handler.name:
            raise ValueError("type handler must have a name")
        if handler.name in self._handlers:
            raise ValueError(f"type {handler.name!r} already registered")
        self._handlers[handler.name] = handler

    def freeze(self) -> AttributeTypeRegistry:
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, type_name: str) -> TypeHandler:
        try:
            return self._handlers[type_name]
        except KeyError:
            raise UnknownType(type_name) from None

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._handlers


def standard_handlers() -> Sequence[TypeHandler]:
    return (
        TextHandler("varchar", max_length=255, strip=True),
        TextHandler("text"),
        IntegerHandler("integer"),
        NumberHandler("number"),
        BooleanHandler("boolean"),
        DateHandler("date"),
        DateTimeHandler("datetime"),
        SelectHandler("select"),
    )


def default_registry() -> AttributeTypeRegistry:
    return AttributeTypeRegistry(standard_handlers()).freeze()
