from __future__ import annotations

import pytest

from ledger_analytics.config import Config, CustomColumn
from ledger_analytics.errors import InvalidConfig
from ledger_analytics.schema import (
    SchemaBuilder,
    alter_add_statement,
    alter_drop_statement,
    build_schemas,
    mark_spent_statement,
    quote,
)
from ledger_analytics.sql_types import BIGINT, varchar


def _col(table: str, name: str, typ: str, path: str) -> CustomColumn:
    return CustomColumn.from_raw(table, name, typ, path)


def test_quote_uppercases_identifiers():
    assert quote("block_height") == '"BLOCK_HEIGHT"'


def test_ddl_statement_exact_layout():
    schema = SchemaBuilder("transactions").set_primary_key(["id"]).add_column("id", varchar(32)).build()
    assert schema.ddl_statement() == (
        "CREATE TABLE TRANSACTIONS (\n"
        '  "ID" VARCHAR(32),\n'
        '  CONSTRAINT transactions_pk PRIMARY KEY ("ID"))'
    )


def test_ddl_statement_renders_unique_before_primary_key():
    schema = (
        SchemaBuilder("t")
        .set_primary_key(["a"])
        .add_unique_constraint(["b", "c"])
        .add_column("a", BIGINT)
        .add_column("b", BIGINT)
        .add_column("c", BIGINT)
        .build()
    )
    assert schema.ddl_statement() == (
        "CREATE TABLE T (\n"
        '  "A" BIGINT,\n'
        '  "B" BIGINT,\n'
        '  "C" BIGINT,\n'
        '  CONSTRAINT b_c_u UNIQUE ("B", "C"),\n'
        '  CONSTRAINT t_pk PRIMARY KEY ("A"))'
    )


def test_insert_statement_has_one_placeholder_per_column():
    schema = SchemaBuilder("t").add_column("a", BIGINT).add_column("b", varchar(5)).build()
    assert schema.insert_statement() == 'INSERT INTO T\n("A", "B")\nVALUES(%s, %s)'


def test_fixed_tables_and_keys():
    tx, inputs, outputs = build_schemas(Config())

    assert tx.column_names == ["id", "block_height", "timestamp", "position", "local", "reference_data", "data"]
    assert tx.primary_key == ("id",)
    assert inputs.primary_key == ("transaction_id", "index")
    assert outputs.primary_key == ("output_id",)
    assert outputs.unique_constraints == (("transaction_id", "index"),)
    assert outputs.column_names[-1] == "spent"
    assert "CONSTRAINT transaction_id_index_u UNIQUE" in outputs.ddl_statement()


def test_custom_columns_follow_fixed_columns_on_their_own_table():
    config = Config.from_columns(
        [
            _col("transactions", "internal_ref", "varchar(50)", "reference_data.tx_id"),
            _col("transaction_outputs", "note", "clob", "reference_data.note"),
        ]
    )
    tx, inputs, outputs = build_schemas(config)

    assert tx.column_names[-1] == "internal_ref"
    assert tx.insert_statement().count("%s") == len(tx.columns) == 8
    assert outputs.column_names[-1] == "note"
    assert "note" not in inputs.column_names


def test_custom_column_colliding_with_fixed_column_is_rejected():
    config = Config.from_columns([_col("transactions", "Position", "bigint", "reference_data.p")])
    with pytest.raises(InvalidConfig, match="collides"):
        build_schemas(config)


def test_alter_statements():
    cols = [_col("transaction_outputs", "note", "clob", "reference_data.note"), _col("transaction_outputs", "n", "bigint", "")]
    assert alter_add_statement("transaction_outputs", cols) == (
        'ALTER TABLE TRANSACTION_OUTPUTS ADD COLUMN "NOTE" TEXT, ADD COLUMN "N" BIGINT'
    )
    assert alter_drop_statement("transaction_outputs", cols) == (
        'ALTER TABLE TRANSACTION_OUTPUTS DROP COLUMN "NOTE", DROP COLUMN "N"'
    )


def test_mark_spent_statement():
    assert mark_spent_statement() == 'UPDATE TRANSACTION_OUTPUTS SET "SPENT" = %s WHERE "OUTPUT_ID" = %s'
