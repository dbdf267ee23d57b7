"""Schema reconciliation for the analytics warehouse.

``Target`` owns the current configuration and the schemas built from it.
On open it loads the persisted configuration and creates any missing
tables; ``migrate`` moves the live tables and the control table to a new
configuration and then publishes a fresh immutable ``TargetState``.

Migrations are single-writer: run them while no feed loop is importing
into the same tables.  Each table's drops and each table's adds run in
their own database transaction, so a failure part way leaves earlier
tables migrated and needs manual reconciliation.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List

import psycopg2

from ledger_analytics import control_table
from ledger_analytics.config import Config, CustomColumn, Migration, TableName
from ledger_analytics.errors import ControlTableMissing, MigrationError
from ledger_analytics.logging_utils import log_event
from ledger_analytics.postgres import Warehouse, create_table_if_not_exists
from ledger_analytics.schema import Schema, alter_add_statement, alter_drop_statement, build_schemas

LOGGER = logging.getLogger("ledger_analytics.target")


@dataclass(frozen=True)
class TargetState:
    config: Config
    transactions: Schema
    inputs: Schema
    outputs: Schema

    @classmethod
    def from_config(cls, config: Config) -> "TargetState":
        transactions, inputs, outputs = build_schemas(config)
        return cls(config=config, transactions=transactions, inputs=inputs, outputs=outputs)

    @property
    def schemas(self) -> List[Schema]:
        return [self.transactions, self.inputs, self.outputs]


class Target:
    def __init__(self, warehouse: Warehouse, state: TargetState) -> None:
        self._warehouse = warehouse
        self._state = state
        self._lock = threading.Lock()

    @classmethod
    def open(cls, warehouse: Warehouse) -> "Target":
        """Load the persisted config and make sure every table exists."""
        with warehouse.connection() as conn:
            try:
                config = control_table.load_config(conn)
            except ControlTableMissing:
                log_event(LOGGER, logging.INFO, "config_first_run", control_table=control_table.CONTROL_TABLE)
                config = Config()

        target = cls(warehouse, TargetState.from_config(config))
        target.initialize_schema()
        log_event(
            LOGGER,
            logging.INFO,
            "target_opened",
            custom_columns=len(config.all_columns()),
        )
        return target

    @property
    def warehouse(self) -> Warehouse:
        return self._warehouse

    @property
    def state(self) -> TargetState:
        return self._state

    @property
    def config(self) -> Config:
        return self._state.config

    def initialize_schema(self) -> None:
        state = self._state
        with self._warehouse.connection() as conn:
            create_table_if_not_exists(conn, control_table.CONTROL_TABLE_DDL)
            for schema in state.schemas:
                create_table_if_not_exists(conn, schema.ddl_statement())

    def plan(self, new_config: Config) -> Migration:
        return self._state.config.diff(new_config)

    def migrate(self, new_config: Config, *, allow_type_changes: bool = False) -> Migration:
        """Alter the warehouse to match *new_config* and swap in its schemas."""
        with self._lock:
            migration = self.plan(new_config)
            if migration.changed and not allow_type_changes:
                names = sorted(f"{table}.{new.name}" for table, pairs in migration.changed.items() for _, new in pairs)
                raise MigrationError(
                    "Refusing to change the type of existing columns "
                    f"({', '.join(names)}); drop and re-add them, or allow type changes."
                )

            # Validates the new config against the fixed columns before any DDL runs.
            new_state = TargetState.from_config(new_config)

            drops: Dict[TableName, List[CustomColumn]] = {t: list(cols) for t, cols in migration.removed.items()}
            adds: Dict[TableName, List[CustomColumn]] = {t: list(cols) for t, cols in migration.added.items()}
            for table, pairs in migration.changed.items():
                drops.setdefault(table, []).extend(old for old, _ in pairs)
                adds.setdefault(table, []).extend(new for _, new in pairs)

            with self._warehouse.connection() as conn:
                for table, cols in drops.items():
                    self._apply(conn, table, alter_drop_statement(table, cols), control_table.delete_custom_columns, cols)
                for table, cols in migration.repathed.items():
                    self._apply(conn, table, None, control_table.update_custom_column_paths, cols)
                for table, cols in adds.items():
                    self._apply(conn, table, alter_add_statement(table, cols), control_table.insert_custom_columns, cols)

            self._state = new_state

        log_event(
            LOGGER,
            logging.INFO,
            "migration_done",
            added=sum(len(c) for c in migration.added.values()),
            removed=sum(len(c) for c in migration.removed.values()),
            changed=sum(len(c) for c in migration.changed.values()),
            repathed=sum(len(c) for c in migration.repathed.values()),
        )
        return migration

    def _apply(self, conn, table: TableName, ddl, bookkeeping, cols: List[CustomColumn]) -> None:
        if ddl is not None:
            log_event(LOGGER, logging.INFO, "migration_statement", table=table, sql=ddl)
        try:
            bookkeeping(conn, table, cols)
            if ddl is not None:
                with conn.cursor() as cur:
                    cur.execute(ddl)
            conn.commit()
        except psycopg2.Error as exc:
            conn.rollback()
            raise MigrationError(f"Migration of {table} failed: {exc}") from exc
