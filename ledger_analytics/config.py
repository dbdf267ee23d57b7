"""Custom-column configuration for the analytics tables.

Operators extend the three fixed tables with their own columns, each
sourced from a field path into the transaction, input or output.  A
``Config`` is a value object: every load builds a new one, and the
difference between two configs is expressed as a ``Migration``.

Example document (JSON or YAML)
-------------------------------
::

    custom_columns:
      - table: transactions
        name: internal_ref
        type: varchar(50)
        path: reference_data.tx_id
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple, cast

import yaml

from ledger_analytics import sql_types
from ledger_analytics.errors import InvalidConfig
from ledger_analytics.json_path import FieldPath
from ledger_analytics.sql_types import SQLType

TableName = Literal["transactions", "transaction_inputs", "transaction_outputs"]

TRANSACTIONS: TableName = "transactions"
TRANSACTION_INPUTS: TableName = "transaction_inputs"
TRANSACTION_OUTPUTS: TableName = "transaction_outputs"
TABLES: Tuple[TableName, ...] = (TRANSACTIONS, TRANSACTION_INPUTS, TRANSACTION_OUTPUTS)

MAX_NAME_LENGTH = 64
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def table_name(raw: Optional[str]) -> TableName:
    """Resolve a table name case-insensitively."""
    name = str(raw or "").strip().lower()
    if name not in TABLES:
        raise InvalidConfig(f"Unknown table {raw}")
    return cast(TableName, name)


@dataclass(frozen=True)
class CustomColumn:
    table: TableName
    name: str
    type: SQLType
    path: FieldPath

    @property
    def key(self) -> Tuple[str, str]:
        return (self.table, self.name.lower())

    @classmethod
    def from_raw(cls, table: Optional[str], name: Optional[str], raw_type: Optional[str], raw_path: Optional[str]) -> "CustomColumn":
        tbl = table_name(table)
        if not isinstance(name, str) or not _NAME_RE.match(name) or len(name) > MAX_NAME_LENGTH:
            raise InvalidConfig(f"Invalid column name {name!r} for table {tbl}")
        typ = sql_types.parse(raw_type) if isinstance(raw_type, str) else None
        if typ is None:
            raise InvalidConfig(f"Unknown column type {raw_type}")
        return cls(table=tbl, name=name, type=typ, path=FieldPath.parse(None if raw_path is None else str(raw_path)))

    def as_dict(self) -> Dict[str, str]:
        return {
            "table": self.table,
            "name": self.name,
            "type": self.type.canonical(),
            "path": str(self.path),
        }


@dataclass(frozen=True)
class Config:
    transaction_columns: Tuple[CustomColumn, ...] = ()
    input_columns: Tuple[CustomColumn, ...] = ()
    output_columns: Tuple[CustomColumn, ...] = ()

    @classmethod
    def from_columns(cls, columns: Iterable[CustomColumn]) -> "Config":
        by_table: Dict[str, List[CustomColumn]] = {t: [] for t in TABLES}
        seen: set[Tuple[str, str]] = set()
        for col in columns:
            if col.key in seen:
                raise InvalidConfig(f"Duplicate custom column {col.name} on table {col.table}")
            seen.add(col.key)
            by_table[col.table].append(col)
        return cls(
            transaction_columns=tuple(by_table[TRANSACTIONS]),
            input_columns=tuple(by_table[TRANSACTION_INPUTS]),
            output_columns=tuple(by_table[TRANSACTION_OUTPUTS]),
        )

    @classmethod
    def from_document(cls, document: Any) -> "Config":
        """Build a config from a decoded JSON/YAML document."""
        if document is None:
            return cls()
        if isinstance(document, Mapping):
            entries = document.get("custom_columns") or []
        else:
            entries = document
        if not isinstance(entries, list):
            raise InvalidConfig("custom_columns must be a list")

        columns: List[CustomColumn] = []
        for idx, entry in enumerate(entries):
            if not isinstance(entry, Mapping):
                raise InvalidConfig(f"custom_columns[{idx}] must be a mapping")
            columns.append(
                CustomColumn.from_raw(entry.get("table"), entry.get("name"), entry.get("type"), entry.get("path"))
            )
        return cls.from_columns(columns)

    @classmethod
    def from_file(cls, path: Path) -> "Config":
        if not path.exists():
            raise InvalidConfig(f"Missing custom column file: {path}")
        with path.open("r", encoding="utf-8") as handle:
            try:
                payload = yaml.safe_load(handle)
            except yaml.YAMLError as exc:
                raise InvalidConfig(f"Unreadable custom column file {path}: {exc}") from exc
        return cls.from_document(payload)

    def columns_for(self, table: TableName) -> Tuple[CustomColumn, ...]:
        if table == TRANSACTIONS:
            return self.transaction_columns
        if table == TRANSACTION_INPUTS:
            return self.input_columns
        return self.output_columns

    def all_columns(self) -> List[CustomColumn]:
        return [*self.transaction_columns, *self.input_columns, *self.output_columns]

    def to_json(self) -> str:
        return json.dumps({"custom_columns": [c.as_dict() for c in self.all_columns()]}, indent=2)

    def diff(self, new: "Config") -> "Migration":
        return diff(self, new)


@dataclass(frozen=True)
class Migration:
    """Per-table column changes needed to move from one config to another.

    Only tables with at least one change appear in each mapping.
    ``changed`` holds (old, new) pairs whose type differs under the same
    name; ``repathed`` holds columns whose path alone changed.
    """

    added: Dict[TableName, List[CustomColumn]] = field(default_factory=dict)
    removed: Dict[TableName, List[CustomColumn]] = field(default_factory=dict)
    changed: Dict[TableName, List[Tuple[CustomColumn, CustomColumn]]] = field(default_factory=dict)
    repathed: Dict[TableName, List[CustomColumn]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed or self.repathed)


def diff(old: Config, new: Config) -> Migration:
    added: Dict[TableName, List[CustomColumn]] = {}
    removed: Dict[TableName, List[CustomColumn]] = {}
    changed: Dict[TableName, List[Tuple[CustomColumn, CustomColumn]]] = {}
    repathed: Dict[TableName, List[CustomColumn]] = {}

    for table in TABLES:
        old_cols = {c.name.lower(): c for c in old.columns_for(table)}
        new_cols = {c.name.lower(): c for c in new.columns_for(table)}

        table_added = [c for c in new.columns_for(table) if c.name.lower() not in old_cols]
        table_removed = [c for c in old.columns_for(table) if c.name.lower() not in new_cols]
        table_changed: List[Tuple[CustomColumn, CustomColumn]] = []
        table_repathed: List[CustomColumn] = []
        for col in new.columns_for(table):
            previous = old_cols.get(col.name.lower())
            if previous is None:
                continue
            if previous.type != col.type:
                table_changed.append((previous, col))
            elif previous.path != col.path:
                table_repathed.append(col)

        if table_added:
            added[table] = table_added
        if table_removed:
            removed[table] = table_removed
        if table_changed:
            changed[table] = table_changed
        if table_repathed:
            repathed[table] = table_repathed

    return Migration(added=added, removed=removed, changed=changed, repathed=repathed)
