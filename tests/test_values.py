import math

import pytest

from mqtt2sql.errors import ConfigError
from mqtt2sql.values import (
    CONVERTERS,
    SQL_TYPES,
    TypedValue,
    ValueType,
    values_equal,
)


def test_every_type_has_converter_and_column_type():
    assert set(CONVERTERS) == set(ValueType)
    assert set(SQL_TYPES) == set(ValueType)


def test_table_suffixes():
    assert [vt.table_suffix for vt in ValueType] == ["string", "boolean", "integer", "double"]


@pytest.mark.parametrize(
    "name,expected",
    [
        ("double", ValueType.DOUBLE),
        ("QString", ValueType.TEXT),
        ("bool", ValueType.BOOLEAN),
        (" Int ", ValueType.INTEGER),
        (None, ValueType.TEXT),
    ],
)
def test_parse_type_names(name, expected):
    assert ValueType.parse(name) is expected


def test_parse_unknown_type():
    with pytest.raises(ConfigError):
        ValueType.parse("decimal")


class TestEquality:
    def test_doubles_within_tolerance(self):
        a = TypedValue(ValueType.DOUBLE, 21.5)
        assert values_equal(a, TypedValue(ValueType.DOUBLE, 21.50001))
        assert not values_equal(a, TypedValue(ValueType.DOUBLE, 22.0))

    def test_tolerance_is_configurable(self):
        a = TypedValue(ValueType.DOUBLE, 21.5)
        b = TypedValue(ValueType.DOUBLE, 21.50001)
        assert not values_equal(a, b, rel_tol=1e-9)

    def test_nan_never_equal(self):
        nan = TypedValue(ValueType.DOUBLE, math.nan)
        assert not values_equal(nan, nan)

    def test_other_types_are_exact(self):
        assert values_equal(TypedValue(ValueType.TEXT, "on"), TypedValue(ValueType.TEXT, "on"))
        assert not values_equal(
            TypedValue(ValueType.INTEGER, 1), TypedValue(ValueType.INTEGER, 2)
        )

    def test_different_types_never_equal(self):
        assert not values_equal(
            TypedValue(ValueType.INTEGER, 1), TypedValue(ValueType.DOUBLE, 1.0)
        )
