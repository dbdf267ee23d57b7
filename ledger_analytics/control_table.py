"""Persistence of the custom-column configuration.

The configuration lives in the warehouse itself, one row per custom
column, so the importer can never run against tables it does not
understand.  All writes take an open connection and leave commit to the
caller so they can share a transaction with the matching ALTER TABLE.
"""
from __future__ import annotations

from typing import Sequence

import psycopg2.errors

from ledger_analytics.config import Config, CustomColumn, TableName
from ledger_analytics.errors import ControlTableMissing

CONTROL_TABLE = "custom_columns"

CONTROL_TABLE_DDL = (
    "CREATE TABLE CUSTOM_COLUMNS (\n"
    '  "TABLE" VARCHAR(64),\n'
    '  "NAME" VARCHAR(64),\n'
    '  "TYPE" VARCHAR(64),\n'
    '  "PATH" VARCHAR(4000))'
)

SQL_SELECT_CUSTOM_COLUMNS = 'SELECT "TABLE", "NAME", "TYPE", "PATH" FROM CUSTOM_COLUMNS'
SQL_DELETE_CUSTOM_COLUMN = 'DELETE FROM CUSTOM_COLUMNS WHERE "TABLE" = %s AND "NAME" = %s'
SQL_INSERT_CUSTOM_COLUMN = 'INSERT INTO CUSTOM_COLUMNS ("TABLE", "NAME", "TYPE", "PATH") VALUES(%s, %s, %s, %s)'
SQL_UPDATE_CUSTOM_COLUMN_PATH = 'UPDATE CUSTOM_COLUMNS SET "PATH" = %s WHERE "TABLE" = %s AND "NAME" = %s'


def load_config(conn) -> Config:
    """Read the persisted configuration.

    Raises ControlTableMissing when the control table has not been created
    yet, and InvalidConfig for rows naming an unknown table or type.
    """
    try:
        with conn.cursor() as cur:
            cur.execute(SQL_SELECT_CUSTOM_COLUMNS)
            rows = cur.fetchall()
        conn.rollback()
    except psycopg2.errors.UndefinedTable as exc:
        conn.rollback()
        raise ControlTableMissing(f"{CONTROL_TABLE} does not exist") from exc

    return Config.from_columns(
        CustomColumn.from_raw(table, name, raw_type, raw_path) for table, name, raw_type, raw_path in rows
    )


def insert_custom_columns(conn, table: TableName, columns: Sequence[CustomColumn]) -> None:
    with conn.cursor() as cur:
        for col in columns:
            cur.execute(SQL_INSERT_CUSTOM_COLUMN, (table, col.name, col.type.canonical(), str(col.path)))


def delete_custom_columns(conn, table: TableName, columns: Sequence[CustomColumn]) -> None:
    with conn.cursor() as cur:
        for col in columns:
            cur.execute(SQL_DELETE_CUSTOM_COLUMN, (table, col.name))


def update_custom_column_paths(conn, table: TableName, columns: Sequence[CustomColumn]) -> None:
    with conn.cursor() as cur:
        for col in columns:
            cur.execute(SQL_UPDATE_CUSTOM_COLUMN_PATH, (str(col.path), table, col.name))
