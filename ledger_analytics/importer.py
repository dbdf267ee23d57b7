"""Feed importer: mirrors a ledger transaction feed into the warehouse.

Each loop iteration fetches one page at the feed's committed cursor,
applies every transaction in its own database transaction, and only
then advances the cursor on the server.  A crash anywhere before the
cursor update means the page is fetched again; transactions that were
already committed hit the primary key on ``transactions`` and are
reported as ``already_applied`` instead of failing the page.  Any other
uniqueness violation is a genuine conflict and fails the page.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Tuple

import psycopg2
import psycopg2.errors

from ledger_analytics.config import TRANSACTION_INPUTS, TRANSACTION_OUTPUTS, TRANSACTIONS, Config, TableName
from ledger_analytics.errors import LedgerAPIError, LedgerTransportError
from ledger_analytics.json_path import Record, extract
from ledger_analytics.ledger_client import CODE_REQUEST_TIMED_OUT, LedgerClient, connect_feed
from ledger_analytics.logging_utils import EventLogger
from ledger_analytics.models import Feed, Transaction, TransactionInput, TransactionOutput
from ledger_analytics.schema import Schema, mark_spent_statement
from ledger_analytics.sql_types import BIGINT, TIMESTAMP, TRUE, as_flag, as_json_blob
from ledger_analytics.target import Target, TargetState

LOGGER = logging.getLogger("ledger_analytics.importer")

ApplyOutcome = Literal["applied", "already_applied"]
APPLIED: ApplyOutcome = "applied"
ALREADY_APPLIED: ApplyOutcome = "already_applied"

DEFAULT_TIMEOUT_S = 60.0


@dataclass
class ImportStats:
    feed_id: str
    pages: int = 0
    applied: int = 0
    already_applied: int = 0
    fetch_failures: int = 0
    page_failures: int = 0
    acks: int = 0
    ack_failures: int = 0


@dataclass
class BatchResult:
    applied: int = 0
    already_applied: int = 0


# ---------------------------------------------------------------------------
# Row construction
# ---------------------------------------------------------------------------

def _custom_values(config: Config, table: TableName, record: Record) -> Dict[str, Any]:
    return {col.name.lower(): col.type.adapt(extract(record, col.path)) for col in config.columns_for(table)}


def _ordered(schema: Schema, values: Dict[str, Any]) -> Tuple[Any, ...]:
    # Parameters are positional; follow the schema's column order exactly.
    return tuple(values[name.lower()] for name in schema.column_names)


def transaction_row(state: TargetState, tx: Transaction) -> Tuple[Any, ...]:
    values: Dict[str, Any] = {
        "id": tx.id,
        "block_height": tx.block_height,
        "timestamp": TIMESTAMP.adapt(tx.timestamp),
        "position": tx.position,
        "local": as_flag(tx.is_local or "no"),
        "reference_data": as_json_blob(tx.reference_data),
        "data": as_json_blob(tx.raw),
    }
    values.update(_custom_values(state.config, TRANSACTIONS, tx))
    return _ordered(state.transactions, values)


def input_row(state: TargetState, tx: Transaction, index: int, inp: TransactionInput) -> Tuple[Any, ...]:
    values: Dict[str, Any] = {
        "transaction_id": tx.id,
        "index": index,
        "type": inp.type,
        "asset_id": inp.asset_id,
        "asset_alias": inp.asset_alias,
        "asset_definition": as_json_blob(inp.asset_definition),
        "asset_tags": as_json_blob(inp.asset_tags),
        "local_asset": as_flag(inp.asset_is_local or "no"),
        "amount": BIGINT.adapt(inp.amount),
        "account_id": inp.account_id,
        "account_alias": inp.account_alias,
        "account_tags": as_json_blob(inp.account_tags),
        "issuance_program": inp.issuance_program,
        "reference_data": as_json_blob(inp.reference_data),
        "local": as_flag(inp.is_local or "no"),
        "spent_output_id": inp.spent_output_id,
    }
    values.update(_custom_values(state.config, TRANSACTION_INPUTS, inp))
    return _ordered(state.inputs, values)


def output_row(state: TargetState, tx: Transaction, index: int, out: TransactionOutput) -> Tuple[Any, ...]:
    values: Dict[str, Any] = {
        "transaction_id": tx.id,
        "index": index,
        "output_id": out.id,
        "type": out.type,
        "purpose": out.purpose,
        "asset_id": out.asset_id,
        "asset_alias": out.asset_alias,
        "asset_definition": as_json_blob(out.asset_definition),
        "asset_tags": as_json_blob(out.asset_tags),
        "local_asset": as_flag(out.asset_is_local or "no"),
        "amount": BIGINT.adapt(out.amount),
        "account_id": out.account_id,
        "account_alias": out.account_alias,
        "account_tags": as_json_blob(out.account_tags),
        "control_program": out.control_program,
        "reference_data": as_json_blob(out.reference_data),
        "local": as_flag(out.is_local or "no"),
        "spent": as_flag(False),
    }
    values.update(_custom_values(state.config, TRANSACTION_OUTPUTS, out))
    return _ordered(state.outputs, values)


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------

def violated_constraint(exc: psycopg2.Error) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None)


class FeedImporter:
    def __init__(
        self,
        *,
        client: LedgerClient,
        target: Target,
        feed: Feed,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        backoff_base_s: float = 0.5,
        backoff_max_s: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = client
        self._target = target
        self._feed = feed
        self._timeout_s = float(timeout_s)
        self._backoff_base_s = max(0.0, float(backoff_base_s))
        self._backoff_max_s = float(backoff_max_s)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._consecutive_failures = 0
        self._log = EventLogger(LOGGER, feed_id=feed.id)
        self.stats = ImportStats(feed_id=feed.id)

    @classmethod
    def connect(cls, *, client: LedgerClient, target: Target, alias: str, filter: str = "", **kwargs: Any) -> "FeedImporter":
        """Create or load the feed named *alias* and build an importer on it."""
        feed = connect_feed(client, alias, filter)
        importer = cls(client=client, target=target, feed=feed, **kwargs)
        importer._log.event(
            logging.INFO, "feed_connected", feed_alias=alias, feed_filter=feed.filter, feed_after=feed.after
        )
        return importer

    @property
    def feed(self) -> Feed:
        return self._feed

    def run(self, *, stop_event: Optional[threading.Event] = None, max_iterations: Optional[int] = None) -> ImportStats:
        """Pump the feed until *stop_event* is set or *max_iterations* ran."""
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            if stop_event is not None and stop_event.is_set():
                break
            iterations += 1

            if self.run_once():
                self._consecutive_failures = 0
                continue

            self._consecutive_failures += 1
            delay = self._backoff(self._consecutive_failures)
            if delay <= 0:
                continue
            if stop_event is not None:
                stop_event.wait(delay)
            else:
                self._sleep(delay)

        self._log.event(
            logging.INFO,
            "importer_stopped",
            feed_after=self._feed.after,
            iterations=iterations,
            pages=self.stats.pages,
            applied=self.stats.applied,
            already_applied=self.stats.already_applied,
            page_failures=self.stats.page_failures,
        )
        return self.stats

    def _backoff(self, attempt: int) -> float:
        if self._backoff_base_s <= 0:
            return 0.0
        base = self._backoff_base_s * (2 ** max(0, attempt - 1))
        jitter = self._rng.random() * 0.25
        return min(self._backoff_max_s, base + jitter)

    def run_once(self) -> bool:
        """Fetch, apply and acknowledge one page.

        Returns False when the iteration failed and the page will be
        retried; an empty long-poll counts as success.
        """
        feed = self._feed
        try:
            page = self._client.list_transactions(filter=feed.filter, after=feed.after, timeout_s=self._timeout_s)
        except LedgerAPIError as e:
            if e.code == CODE_REQUEST_TIMED_OUT:
                # Long poll ended without a matching transaction.
                return True
            self._fetch_failed(e)
            return False
        except LedgerTransportError as e:
            self._fetch_failed(e)
            return False

        try:
            result = self.process_batch(page.transactions)
        except psycopg2.Error as e:
            self.stats.page_failures += 1
            self._log.event(
                logging.ERROR,
                "page_apply_failed",
                feed_after=feed.after,
                transactions=len(page.transactions),
                constraint=violated_constraint(e),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        self.stats.pages += 1
        self.stats.applied += result.applied
        self.stats.already_applied += result.already_applied

        if page.next_after == feed.after:
            return True
        return self._ack(page.next_after)

    def _ack(self, after: str) -> bool:
        feed = self._feed
        try:
            self._feed = self._client.update_feed_cursor(feed.id, feed.after, after)
        except (LedgerAPIError, LedgerTransportError) as e:
            self.stats.ack_failures += 1
            self._log.event(
                logging.ERROR,
                "cursor_update_failed",
                feed_after=feed.after,
                next_after=after,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._resync()
            return False

        self.stats.acks += 1
        self._log.event(logging.DEBUG, "cursor_advanced", previous_after=feed.after, feed_after=after)
        return True

    def _resync(self) -> None:
        """Reload the server's cursor so the next fetch starts where it says."""
        try:
            self._feed = self._client.get_feed(id=self._feed.id)
        except (LedgerAPIError, LedgerTransportError) as e:
            self._log.event(logging.WARNING, "feed_resync_failed", error_type=type(e).__name__, error=str(e))
            return
        self._log.event(logging.INFO, "feed_resynced", feed_after=self._feed.after)

    def _fetch_failed(self, e: Exception) -> None:
        self.stats.fetch_failures += 1
        self._log.event(
            logging.ERROR,
            "page_fetch_failed",
            feed_after=self._feed.after,
            error_type=type(e).__name__,
            error=str(e),
        )

    def process_batch(self, transactions: Iterable[Transaction]) -> BatchResult:
        """Apply *transactions* in order, one database transaction each.

        Raises psycopg2.Error on the first failure other than a replayed
        transaction; transactions committed before it stay committed.
        """
        state = self._target.state
        result = BatchResult()
        with self._target.warehouse.connection() as conn:
            for tx in transactions:
                if self.apply_transaction(conn, state, tx) == APPLIED:
                    result.applied += 1
                else:
                    result.already_applied += 1
        return result

    def apply_transaction(self, conn, state: TargetState, tx: Transaction) -> ApplyOutcome:
        """Insert *tx* with its inputs and outputs and mark spent outputs.

        Only a violation of the transactions primary key means the
        transaction is already stored. Any other constraint violation (an
        output id or input index clash) is a real conflict and propagates
        so the page is not acknowledged.
        """
        log = self._log.bind(tx_id=tx.id)
        log.event(logging.DEBUG, "transaction_importing")
        input_rows: List[Tuple[Any, ...]] = [input_row(state, tx, i, inp) for i, inp in enumerate(tx.inputs)]
        output_rows: List[Tuple[Any, ...]] = [output_row(state, tx, i, out) for i, out in enumerate(tx.outputs)]
        spent = [(TRUE, inp.spent_output_id) for inp in tx.inputs if inp.spent_output_id]

        try:
            with conn.cursor() as cur:
                cur.execute(state.transactions.insert_statement(), transaction_row(state, tx))
                if input_rows:
                    cur.executemany(state.inputs.insert_statement(), input_rows)
                if output_rows:
                    cur.executemany(state.outputs.insert_statement(), output_rows)
                if spent:
                    cur.executemany(mark_spent_statement(), spent)
            conn.commit()
        except psycopg2.errors.UniqueViolation as e:
            conn.rollback()
            if violated_constraint(e) != state.transactions.primary_key_name:
                raise
            # Committed by an earlier attempt whose cursor update never landed.
            log.event(logging.INFO, "transaction_already_applied")
            return ALREADY_APPLIED
        except psycopg2.Error:
            conn.rollback()
            raise
        return APPLIED
