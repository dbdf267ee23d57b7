"""Postgres warehouse access: pooled connections and DDL helpers.

``Warehouse`` hands out pooled psycopg2 connections that are checked for
staleness on every checkout, because feed loops run for days and the
server may have dropped idle connections in the meantime.  The pool is
thread safe so several feed loops can share it, each holding its own
connection for the duration of a page.

Size ``WAREHOUSE_POOL_MAX`` to at least the number of feed loops sharing
one ``Warehouse``: an exhausted pool raises ``psycopg2.pool.PoolError``
instead of waiting, which the importer counts as a failed page and retries
after backoff.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.errors
import psycopg2.pool

from ledger_analytics.logging_utils import log_event
from ledger_analytics.settings import WarehouseSettings

LOGGER = logging.getLogger("ledger_analytics.postgres")

CHECKOUT_ATTEMPTS = 3


class Warehouse:
    def __init__(self, pool: psycopg2.pool.AbstractConnectionPool) -> None:
        self._pool = pool

    @classmethod
    def from_settings(cls, settings: WarehouseSettings) -> "Warehouse":
        pool = psycopg2.pool.ThreadedConnectionPool(
            max(1, settings.pool_min),
            max(settings.pool_min, settings.pool_max, 1),
            settings.dsn(),
        )
        return cls(pool)

    def _checkout(self):
        # A server restart leaves every idle pooled connection stale at once.
        for attempt in range(1, CHECKOUT_ATTEMPTS + 1):
            conn = self._pool.getconn()
            if _is_healthy(conn):
                return conn
            log_event(LOGGER, logging.WARNING, "warehouse_stale_connection_discarded", attempt=attempt)
            self._pool.putconn(conn, close=True)
        raise psycopg2.OperationalError(f"no healthy warehouse connection after {CHECKOUT_ATTEMPTS} attempts")

    @contextmanager
    def connection(self) -> Iterator["psycopg2.extensions.connection"]:
        """Yield a validated connection; the caller owns commit/rollback."""
        conn = self._checkout()
        broken = False
        try:
            yield conn
        except psycopg2.OperationalError:
            broken = True
            raise
        finally:
            if not broken and not conn.closed:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    broken = True
            self._pool.putconn(conn, close=broken or bool(conn.closed))

    def close(self) -> None:
        self._pool.closeall()


def _is_healthy(conn) -> bool:
    if conn.closed:
        return False
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        conn.rollback()
    except psycopg2.Error:
        return False
    return True


def create_table_if_not_exists(conn, ddl: str) -> bool:
    """Run a CREATE TABLE; an existing table counts as success.

    Returns True when the table was created by this call.
    """
    log_event(LOGGER, logging.INFO, "create_table", ddl=ddl)
    try:
        with conn.cursor() as cur:
            cur.execute(ddl)
        conn.commit()
    except psycopg2.errors.DuplicateTable:
        conn.rollback()
        return False
    except psycopg2.Error:
        conn.rollback()
        raise
    return True
