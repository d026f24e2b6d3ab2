"""
PostgreSQL type codes and conversion of captured text values.

Type codes are pg_type OIDs as reported by pg_attribute.atttypid.
"""
import datetime
import decimal
import uuid
from typing import Any, Callable, Dict, Optional

from dateutil import parser as date_parser

from pgwr.errors import ValueConversionError

BOOL = 16
BYTEA = 17
CHAR = 18
NAME = 19
INT8 = 20
INT2 = 21
INT4 = 23
TEXT = 25
OID = 26
JSON = 114
XML = 142
FLOAT4 = 700
FLOAT8 = 701
UNKNOWN = 705
MONEY = 790
BPCHAR = 1042
VARCHAR = 1043
DATE = 1082
TIME = 1083
TIMESTAMP = 1114
TIMESTAMPTZ = 1184
INTERVAL = 1186
TIMETZ = 1266
NUMERIC = 1700
UUID = 2950
JSONB = 3802

TYPE_NAMES = {
    BOOL: "bool", BYTEA: "bytea", CHAR: "char", NAME: "name", INT8: "int8",
    INT2: "int2", INT4: "int4", TEXT: "text", OID: "oid", JSON: "json",
    XML: "xml", FLOAT4: "float4", FLOAT8: "float8", UNKNOWN: "unknown",
    MONEY: "money", BPCHAR: "bpchar", VARCHAR: "varchar", DATE: "date",
    TIME: "time", TIMESTAMP: "timestamp", TIMESTAMPTZ: "timestamptz",
    INTERVAL: "interval", TIMETZ: "timetz", NUMERIC: "numeric", UUID: "uuid",
    JSONB: "jsonb",
}

TRUE_VALUES = frozenset(("t", "true", "y", "yes", "on", "1"))
FALSE_VALUES = frozenset(("f", "false", "n", "no", "off", "0"))


def type_name(type_code: Optional[int]) -> str:
    if type_code is None:
        return "unresolved"
    return TYPE_NAMES.get(type_code, str(type_code))


def _to_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError("not a boolean")


def _to_bytes(value: str) -> bytes:
    if value.startswith("\\x"):
        return bytes.fromhex(value[2:])
    return value.encode("utf-8")


def _to_decimal(value: str) -> decimal.Decimal:
    return decimal.Decimal(value.strip())


def _to_date(value: str) -> datetime.date:
    return datetime.date.fromisoformat(value.strip())


def _to_time(value: str) -> datetime.time:
    return datetime.time.fromisoformat(value.strip())


def _to_timestamp(value: str) -> datetime.datetime:
    return date_parser.isoparse(value.strip())


CONVERTERS: Dict[int, Callable[[str], Any]] = {
    BOOL: _to_bool,
    BYTEA: _to_bytes,
    INT8: int,
    INT2: int,
    INT4: int,
    OID: int,
    FLOAT4: float,
    FLOAT8: float,
    NUMERIC: _to_decimal,
    DATE: _to_date,
    TIME: _to_time,
    TIMESTAMP: _to_timestamp,
    TIMESTAMPTZ: _to_timestamp,
    UUID: uuid.UUID,
}


def convert_value(value: Optional[str], type_code: Optional[int]) -> Any:
    """Turn a captured value into a Python object for the driver.

    None stays None (SQL NULL). Unresolved and text-like types are passed
    through as str and left to the server to cast.
    """
    if value is None:
        return None
    converter = CONVERTERS.get(type_code) if type_code is not None else None
    if converter is None:
        return value
    try:
        return converter(value)
    except (ValueError, ArithmeticError, OverflowError) as e:
        raise ValueConversionError(value, type_code, str(e)) from e
