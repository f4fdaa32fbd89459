from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from hypothesis import HealthCheck, given
from hypothesis import settings as hyp_settings
from hypothesis import strategies as st

from Attributable.attribute_types import (
    AttributeTypeRegistry,
    TextHandler,
    TypedValue,
    default_registry,
)
from Attributable.errors import CoercionError, UnknownType, ValidationError

REGISTRY = default_registry()


def _defn(slug="field", is_required=False, options=None):
    return SimpleNamespace(slug=slug, is_required=is_required, options=options)


def test_standard_types_are_registered_and_frozen():
    assert REGISTRY.frozen
    assert REGISTRY.names() == [
        "boolean",
        "date",
        "datetime",
        "integer",
        "number",
        "select",
        "text",
        "varchar",
    ]


def test_resolve_unknown_type():
    with pytest.raises(UnknownType) as ei:
        REGISTRY.resolve("colour")
    assert ei.value.type_name == "colour"


def test_register_after_freeze_is_rejected():
    with pytest.raises(RuntimeError):
        REGISTRY.register(TextHandler("slug"))


def test_register_duplicate_name_is_rejected():
    registry = AttributeTypeRegistry([TextHandler("text")])
    with pytest.raises(ValueError):
        registry.register(TextHandler("text"))
    assert "text" in registry
    assert "varchar" not in registry


@pytest.mark.parametrize("type_name", REGISTRY.names())
@pytest.mark.parametrize("raw", [None, "", "   "])
def test_blank_input_is_empty_for_every_type(type_name, raw):
    typed = REGISTRY.resolve(type_name).coerce(raw)
    assert typed == TypedValue(type_name, None)
    assert typed.is_empty


def test_integer_coercion():
    h = REGISTRY.resolve("integer")
    assert h.coerce(" 42 ") == TypedValue("integer", 42)
    assert h.coerce(7).value == 7
    with pytest.raises(CoercionError) as ei:
        h.coerce("abc")
    assert "value" in ei.value.errors
    with pytest.raises(CoercionError):
        h.coerce(True)


def test_number_is_exact_and_finite():
    h = REGISTRY.resolve("number")
    typed = h.coerce("1.50")
    assert typed.value == Decimal("1.50")
    assert h.serialize(typed) == "1.50"
    with pytest.raises(CoercionError):
        h.coerce("nan")
    with pytest.raises(CoercionError):
        h.coerce(False)


def test_boolean_coercion_is_case_insensitive():
    h = REGISTRY.resolve("boolean")
    assert h.coerce("TRUE").value is True
    assert h.coerce("0").value is False
    with pytest.raises(CoercionError):
        h.coerce("maybe")


def test_date_and_datetime():
    d = REGISTRY.resolve("date")
    assert d.coerce("2024-02-29").value == date(2024, 2, 29)
    assert d.coerce(datetime(2024, 1, 2, 3, 4)).value == date(2024, 1, 2)
    assert d.serialize(d.coerce("2024-02-29")) == "2024-02-29"
    with pytest.raises(CoercionError):
        d.coerce("2023-02-29")

    dt = REGISTRY.resolve("datetime")
    naive = dt.coerce("2024-01-01T10:00:00")
    assert naive.value.tzinfo is not None
    assert naive.value.utcoffset() == timedelta(0)


def test_varchar_strips_and_limits_length():
    h = REGISTRY.resolve("varchar")
    assert h.coerce("  red ").value == "red"
    with pytest.raises(CoercionError):
        h.coerce("x" * 256)


def test_required_empty_fails_validation():
    h = REGISTRY.resolve("text")
    with pytest.raises(ValidationError) as ei:
        h.validate(h.coerce(""), _defn(slug="bio", is_required=True))
    assert ei.value.errors == {"bio": ["is required"]}
    h.validate(h.coerce(""), _defn(slug="bio"))


def test_select_checks_options():
    h = REGISTRY.resolve("select")
    defn = _defn(slug="colour", options=["red", "blue"])
    h.validate(h.coerce("red"), defn)
    with pytest.raises(ValidationError) as ei:
        h.validate(h.coerce("green"), defn)
    assert "colour" in ei.value.errors


_round_trip_cases = st.one_of(
    st.tuples(st.just("integer"), st.integers(min_value=-(2**53), max_value=2**53)),
    st.tuples(
        st.just("number"),
        st.decimals(
            allow_nan=False,
            allow_infinity=False,
            places=4,
            min_value=Decimal("-1e9"),
            max_value=Decimal("1e9"),
        ),
    ),
    st.tuples(st.just("boolean"), st.booleans()),
    st.tuples(st.just("text"), st.text(max_size=200)),
    st.tuples(st.just("varchar"), st.text(max_size=255)),
    st.tuples(
        st.just("date"), st.dates(min_value=date(1900, 1, 1), max_value=date(2200, 12, 31))
    ),
    st.tuples(
        st.just("datetime"),
        st.datetimes(
            min_value=datetime(1900, 1, 1),
            max_value=datetime(2200, 12, 31),
            timezones=st.just(timezone.utc),
        ),
    ),
)


@hyp_settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(_round_trip_cases)
def test_serialize_then_coerce_is_stable(case):
    type_name, raw = case
    handler = REGISTRY.resolve(type_name)
    typed = handler.coerce(raw)
    assert handler.coerce(handler.serialize(typed)) == typed
