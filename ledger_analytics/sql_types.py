"""Warehouse column types for the analytics tables.

Custom columns declare their type with a small string grammar
(``bigint``, ``blob``, ``boolean``, ``clob``, ``timestamp``,
``varchar(N)``).  ``parse`` turns that string into an ``SQLType`` which
knows how to render itself in Postgres DDL, which DB-API type object the
driver binds it as, and how to coerce a JSON value into that driver type.

Example
-------
>>> from ledger_analytics.sql_types import parse
>>> t = parse("varchar(50)")
>>> t.to_ddl()
'VARCHAR(50)'
>>> parse(t.canonical()) == t
True
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Optional

import psycopg2

SQLKind = Literal["bigint", "blob", "boolean", "clob", "timestamp", "varchar"]

MAX_VARCHAR_WIDTH = 4000

TRUE = "1"
FALSE = "0"
_TRUTHY = {"1", "true", "yes", "y", "on"}

_DDL = {
    "bigint": "BIGINT",
    "blob": "BYTEA",
    "boolean": "CHAR(1)",
    "clob": "TEXT",
    "timestamp": "TIMESTAMP WITH TIME ZONE",
}

# DB-API type objects exported by psycopg2.
_TYPE_TAGS = {
    "bigint": psycopg2.NUMBER,
    "blob": psycopg2.BINARY,
    "boolean": psycopg2.STRING,
    "clob": psycopg2.STRING,
    "timestamp": psycopg2.DATETIME,
    "varchar": psycopg2.STRING,
}

_TYPE_RE = re.compile(r"^([a-z]+)(?:\((\d+)\))?$")
_FRACTION_RE = re.compile(r"([T ]\d{2}:\d{2}:\d{2})\.(\d+)")


@dataclass(frozen=True)
class SQLType:
    """A single column type.  ``width`` is only set for ``varchar``."""

    kind: SQLKind
    width: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind == "varchar":
            if self.width is None or not 0 < self.width <= MAX_VARCHAR_WIDTH:
                raise ValueError(f"varchar width must be in 1..{MAX_VARCHAR_WIDTH}, got {self.width}")
        elif self.width is not None:
            raise ValueError(f"{self.kind} does not take a width")

    def canonical(self) -> str:
        """String form stored in the control table; round-trips through ``parse``."""
        if self.kind == "varchar":
            return f"varchar({self.width})"
        return self.kind

    def to_ddl(self) -> str:
        if self.kind == "varchar":
            return f"VARCHAR({self.width})"
        return _DDL[self.kind]

    @property
    def type_tag(self) -> Any:
        """DB-API type object matching what ``adapt`` returns for this type.

        Descriptive only: psycopg2 picks the bind type from the Python value,
        so nothing passes this tag to the driver.
        """
        return _TYPE_TAGS[self.kind]

    def adapt(self, value: Any) -> Any:
        """Coerce a JSON/Python value into what the driver binds for this type.

        Values that cannot be represented are bound as NULL, the same way an
        absent path is.
        """
        if value is None:
            return None
        if self.kind == "bigint":
            return _as_int(value)
        if self.kind == "blob":
            return as_json_blob(value)
        if self.kind == "boolean":
            return as_flag(value)
        if self.kind == "timestamp":
            return _as_timestamp(value)
        text = _as_text(value)
        if self.kind == "varchar" and len(text) > self.width:
            # Postgres rejects the whole row rather than truncating.
            return None
        return text

    def __str__(self) -> str:
        return self.canonical()


BIGINT = SQLType("bigint")
BLOB = SQLType("blob")
BOOLEAN = SQLType("boolean")
CLOB = SQLType("clob")
TIMESTAMP = SQLType("timestamp")


def varchar(width: int) -> SQLType:
    return SQLType("varchar", width)


def parse(raw: Optional[str]) -> Optional[SQLType]:
    """Parse a type string, returning None when it is not a valid type."""
    if raw is None:
        return None
    text = "".join(raw.split()).lower()
    match = _TYPE_RE.match(text)
    if match is None:
        return None

    head, arg = match.group(1), match.group(2)
    if head == "varchar":
        if arg is None:
            return None
        width = int(arg)
        if not 0 < width <= MAX_VARCHAR_WIDTH:
            return None
        return varchar(width)

    if arg is not None or head not in _DDL:
        return None
    return SQLType(head)  # type: ignore[arg-type]


def as_flag(value: Any) -> str:
    """Render a ledger yes/no (or JSON boolean) as the CHAR(1) flag."""
    if isinstance(value, bool):
        return TRUE if value else FALSE
    if isinstance(value, (int, float)):
        return TRUE if value else FALSE
    return TRUE if str(value).strip().lower() in _TRUTHY else FALSE


def as_json_blob(value: Any) -> Optional[psycopg2.Binary]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return psycopg2.Binary(bytes(value))
    return psycopg2.Binary(json.dumps(value, ensure_ascii=False, default=str).encode("utf-8"))


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _as_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat takes 3 or 6 fractional digits before 3.11; ledger clocks emit up to 9.
    text = _FRACTION_RE.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
