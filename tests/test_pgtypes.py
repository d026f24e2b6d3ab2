"""
Tests for converting captured text values to driver values.
"""
import datetime
import decimal
import uuid

import pytest
from dateutil import tz

from pgwr.errors import ValueConversionError
from pgwr.pgtypes import (
    BOOL,
    BYTEA,
    DATE,
    FLOAT8,
    INT4,
    INT8,
    NUMERIC,
    TEXT,
    TIME,
    TIMESTAMP,
    TIMESTAMPTZ,
    UNKNOWN,
    UUID,
    convert_value,
    type_name,
)


class TestConvertValue:
    """Text to Python conversion by type code."""

    @pytest.mark.parametrize("value, type_code, expected", [
        ("42", INT4, 42),
        ("-9000000000", INT8, -9000000000),
        ("1.5", FLOAT8, 1.5),
        ("100.50", NUMERIC, decimal.Decimal("100.50")),
        ("t", BOOL, True),
        ("false", BOOL, False),
        ("2016-05-12", DATE, datetime.date(2016, 5, 12)),
        ("10:30:00", TIME, datetime.time(10, 30)),
        ("2016-05-12 10:00:00", TIMESTAMP, datetime.datetime(2016, 5, 12, 10, 0)),
        ("\\x00ff", BYTEA, b"\x00\xff"),
        ("hello", TEXT, "hello"),
    ])
    def test_conversions(self, value, type_code, expected):
        assert convert_value(value, type_code) == expected

    def test_timestamp_with_offset(self):
        value = convert_value("2016-05-12 10:00:00.123-04", TIMESTAMPTZ)
        assert value == datetime.datetime(2016, 5, 12, 10, 0, 0, 123000, tzinfo=tz.tzoffset(None, -4 * 3600))

    def test_uuid(self):
        value = "a0eebc99-9c0b-4ef8-bb6d-6bb9bd380a11"
        assert convert_value(value, UUID) == uuid.UUID(value)

    def test_null_stays_null(self):
        assert convert_value(None, INT4) is None

    def test_unresolved_and_unknown_types_pass_text_through(self):
        assert convert_value("12", None) == "12"
        assert convert_value("12", UNKNOWN) == "12"
        assert convert_value("12", 999999) == "12"

    @pytest.mark.parametrize("value, type_code", [
        ("abc", INT4),
        ("1.5", INT8),
        ("maybe", BOOL),
        ("12.x", NUMERIC),
        ("2016-13-01", DATE),
        ("not-a-uuid", UUID),
    ])
    def test_conversion_errors(self, value, type_code):
        with pytest.raises(ValueConversionError) as info:
            convert_value(value, type_code)
        assert info.value.type_code == type_code
        assert info.value.value == value


class TestTypeName:
    """Display names of type codes."""

    def test_names(self):
        assert type_name(TEXT) == "text"
        assert type_name(None) == "unresolved"
        assert type_name(424242) == "424242"
