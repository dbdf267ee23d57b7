"""Table schemas for the analytics warehouse.

The three fixed tables are declared here; custom columns from a
``Config`` are appended after the fixed columns.  A ``Schema`` is built
once per config and never mutated, so a config change always produces
new schemas.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from ledger_analytics.config import (
    TRANSACTION_INPUTS,
    TRANSACTION_OUTPUTS,
    TRANSACTIONS,
    Config,
    CustomColumn,
    TableName,
)
from ledger_analytics.errors import InvalidConfig
from ledger_analytics.sql_types import BIGINT, BLOB, BOOLEAN, CLOB, TIMESTAMP, SQLType, varchar

PLACEHOLDER = "%s"


def quote(name: str) -> str:
    return f'"{name.upper()}"'


@dataclass(frozen=True)
class Column:
    name: str
    type: SQLType


@dataclass(frozen=True)
class Schema:
    name: str
    columns: Tuple[Column, ...]
    primary_key: Tuple[str, ...] = ()
    unique_constraints: Tuple[Tuple[str, ...], ...] = ()

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key_name(self) -> str:
        return f"{self.name}_pk"

    def ddl_statement(self) -> str:
        """Render ``CREATE TABLE`` with unique and primary-key constraints."""
        parts = [f"\n  {quote(col.name)} {col.type.to_ddl()}" for col in self.columns]
        sql = f"CREATE TABLE {self.name.upper()} (" + ",".join(parts)

        for cols in self.unique_constraints:
            quoted = ", ".join(quote(c) for c in cols)
            sql += f",\n  CONSTRAINT {'_'.join(cols)}_u UNIQUE ({quoted})"

        if self.primary_key:
            quoted = ", ".join(quote(c) for c in self.primary_key)
            sql += f",\n  CONSTRAINT {self.primary_key_name} PRIMARY KEY ({quoted})"

        return sql + ")"

    def insert_statement(self) -> str:
        """Render a parameterized INSERT; bind values in ``column_names`` order."""
        cols = ", ".join(quote(c.name) for c in self.columns)
        values = ", ".join([PLACEHOLDER] * len(self.columns))
        return f"INSERT INTO {self.name.upper()}\n({cols})\nVALUES({values})"


class SchemaBuilder:
    def __init__(self, name: str) -> None:
        self._name = name
        self._columns: List[Column] = []
        self._primary_key: Tuple[str, ...] = ()
        self._unique: List[Tuple[str, ...]] = []

    def add_column(self, name: str, typ: SQLType) -> "SchemaBuilder":
        self._columns.append(Column(name, typ))
        return self

    def add_unique_constraint(self, columns: Sequence[str]) -> "SchemaBuilder":
        self._unique.append(tuple(columns))
        return self

    def set_primary_key(self, columns: Sequence[str]) -> "SchemaBuilder":
        self._primary_key = tuple(columns)
        return self

    def add_custom_columns(self, columns: Iterable[CustomColumn]) -> "SchemaBuilder":
        taken = {c.name.lower() for c in self._columns}
        for col in columns:
            if col.name.lower() in taken:
                raise InvalidConfig(f"Custom column {col.name} collides with an existing column of {self._name}")
            taken.add(col.name.lower())
            self.add_column(col.name, col.type)
        return self

    def build(self) -> Schema:
        return Schema(
            name=self._name,
            columns=tuple(self._columns),
            primary_key=self._primary_key,
            unique_constraints=tuple(self._unique),
        )


def transactions_builder() -> SchemaBuilder:
    return (
        SchemaBuilder(TRANSACTIONS)
        .set_primary_key(["id"])
        .add_column("id", varchar(64))
        .add_column("block_height", BIGINT)
        .add_column("timestamp", TIMESTAMP)
        .add_column("position", BIGINT)
        .add_column("local", BOOLEAN)
        .add_column("reference_data", BLOB)
        .add_column("data", BLOB)
    )


def inputs_builder() -> SchemaBuilder:
    return (
        SchemaBuilder(TRANSACTION_INPUTS)
        .set_primary_key(["transaction_id", "index"])
        .add_column("transaction_id", varchar(64))
        .add_column("index", BIGINT)
        .add_column("type", varchar(64))
        .add_column("asset_id", varchar(64))
        .add_column("asset_alias", varchar(2000))
        .add_column("asset_definition", BLOB)
        .add_column("asset_tags", BLOB)
        .add_column("local_asset", BOOLEAN)
        .add_column("amount", BIGINT)
        .add_column("account_id", varchar(64))
        .add_column("account_alias", varchar(2000))
        .add_column("account_tags", BLOB)
        .add_column("issuance_program", CLOB)
        .add_column("reference_data", BLOB)
        .add_column("local", BOOLEAN)
        .add_column("spent_output_id", varchar(64))
    )


def outputs_builder() -> SchemaBuilder:
    return (
        SchemaBuilder(TRANSACTION_OUTPUTS)
        .set_primary_key(["output_id"])
        .add_unique_constraint(["transaction_id", "index"])
        .add_column("transaction_id", varchar(64))
        .add_column("index", BIGINT)
        .add_column("output_id", varchar(64))
        .add_column("type", varchar(64))
        .add_column("purpose", varchar(64))
        .add_column("asset_id", varchar(64))
        .add_column("asset_alias", varchar(2000))
        .add_column("asset_definition", BLOB)
        .add_column("asset_tags", BLOB)
        .add_column("local_asset", BOOLEAN)
        .add_column("amount", BIGINT)
        .add_column("account_id", varchar(64))
        .add_column("account_alias", varchar(2000))
        .add_column("account_tags", BLOB)
        .add_column("control_program", CLOB)
        .add_column("reference_data", BLOB)
        .add_column("local", BOOLEAN)
        .add_column("spent", BOOLEAN)
    )


_BUILDERS = {
    TRANSACTIONS: transactions_builder,
    TRANSACTION_INPUTS: inputs_builder,
    TRANSACTION_OUTPUTS: outputs_builder,
}


def build_schema(table: TableName, config: Config) -> Schema:
    return _BUILDERS[table]().add_custom_columns(config.columns_for(table)).build()


def build_schemas(config: Config) -> Tuple[Schema, Schema, Schema]:
    """Return the (transactions, inputs, outputs) schemas for *config*."""
    return (
        build_schema(TRANSACTIONS, config),
        build_schema(TRANSACTION_INPUTS, config),
        build_schema(TRANSACTION_OUTPUTS, config),
    )


def alter_add_statement(table: TableName, columns: Sequence[CustomColumn]) -> str:
    clauses = ", ".join(f"ADD COLUMN {quote(c.name)} {c.type.to_ddl()}" for c in columns)
    return f"ALTER TABLE {table.upper()} {clauses}"


def alter_drop_statement(table: TableName, columns: Sequence[CustomColumn]) -> str:
    clauses = ", ".join(f"DROP COLUMN {quote(c.name)}" for c in columns)
    return f"ALTER TABLE {table.upper()} {clauses}"


def mark_spent_statement() -> str:
    return (
        f"UPDATE {TRANSACTION_OUTPUTS.upper()} SET {quote('spent')} = {PLACEHOLDER} "
        f"WHERE {quote('output_id')} = {PLACEHOLDER}"
    )
