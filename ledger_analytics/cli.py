from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from ledger_analytics.config import Config, Migration
from ledger_analytics.errors import LedgerAnalyticsError
from ledger_analytics.importer import FeedImporter
from ledger_analytics.ledger_client import LedgerClient
from ledger_analytics.postgres import Warehouse
from ledger_analytics.schema import alter_add_statement, alter_drop_statement
from ledger_analytics.settings import ImporterSettings, get_settings
from ledger_analytics.target import Target, TargetState

LOGGER = logging.getLogger("ledger_analytics.cli")


def build_ledger_client(settings: ImporterSettings) -> LedgerClient:
    return LedgerClient(
        base_url=settings.ledger.require_url(),
        access_token=settings.ledger.access_token,
        max_retries=settings.ledger.max_retries,
        backoff_base_s=settings.retry.backoff_base_s,
        backoff_max_s=settings.retry.backoff_max_s,
    )


def build_warehouse(settings: ImporterSettings) -> Warehouse:
    return Warehouse.from_settings(settings.warehouse)


def _describe(migration: Migration) -> List[str]:
    lines: List[str] = []
    for table, cols in migration.removed.items():
        lines.append(alter_drop_statement(table, cols))
    for table, pairs in migration.changed.items():
        for old, new in pairs:
            lines.append(f"-- type change {table}.{new.name}: {old.type} -> {new.type}")
    for table, cols in migration.repathed.items():
        for col in cols:
            lines.append(f"-- path change {table}.{col.name}: {col.path}")
    for table, cols in migration.added.items():
        lines.append(alter_add_statement(table, cols))
    return lines


def _cmd_import(settings: ImporterSettings, args: argparse.Namespace) -> int:
    client = build_ledger_client(settings)
    warehouse = build_warehouse(settings)
    stop = threading.Event()

    def _stop(signum, _frame) -> None:
        LOGGER.info("Received signal %s, stopping after the current page.", signum)
        stop.set()

    previous = {sig: signal.signal(sig, _stop) for sig in (signal.SIGTERM, signal.SIGINT)}

    try:
        target = Target.open(warehouse)
        importer = FeedImporter.connect(
            client=client,
            target=target,
            alias=args.feed_alias or settings.ledger.feed_alias,
            filter=args.filter if args.filter is not None else settings.ledger.feed_filter,
            timeout_s=settings.ledger.feed_timeout_s,
            backoff_base_s=settings.retry.backoff_base_s,
            backoff_max_s=settings.retry.backoff_max_s,
        )
        stats = importer.run(stop_event=stop, max_iterations=args.max_iterations)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        client.close()
        warehouse.close()

    print(
        f"Import summary feed_id={stats.feed_id} pages={stats.pages} applied={stats.applied} "
        f"already_applied={stats.already_applied} page_failures={stats.page_failures}"
    )
    return 0


def _cmd_migrate(settings: ImporterSettings, args: argparse.Namespace) -> int:
    new_config = Config.from_file(Path(args.columns))
    warehouse = build_warehouse(settings)
    try:
        target = Target.open(warehouse)
        migration = target.plan(new_config)
        for line in _describe(migration):
            print(line)
        if migration.is_empty():
            print("Schema already matches the column file.")
            return 0
        if args.dry_run:
            return 0
        target.migrate(new_config, allow_type_changes=args.allow_type_changes)
    finally:
        warehouse.close()
    print("Migration applied.")
    return 0


def _cmd_show_config(settings: ImporterSettings, _args: argparse.Namespace) -> int:
    warehouse = build_warehouse(settings)
    try:
        target = Target.open(warehouse)
        print(target.config.to_json())
    finally:
        warehouse.close()
    return 0


def _cmd_print_ddl(settings: ImporterSettings, args: argparse.Namespace) -> int:
    if args.columns:
        state = TargetState.from_config(Config.from_file(Path(args.columns)))
    else:
        warehouse = build_warehouse(settings)
        try:
            state = Target.open(warehouse).state
        finally:
            warehouse.close()
    for schema in state.schemas:
        print(schema.ddl_statement() + ";\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-analytics", description="Mirror a ledger transaction feed into the Postgres warehouse."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import", help="Run the feed importer loop.")
    p_import.add_argument("--feed-alias", help="Feed alias (default: LEDGER_FEED_ALIAS).")
    p_import.add_argument("--filter", help="Feed filter used when the feed is created (default: LEDGER_FEED_FILTER).")
    p_import.add_argument("--max-iterations", type=int, help="Stop after this many fetch/apply iterations.")
    p_import.set_defaults(handler=_cmd_import)

    p_migrate = sub.add_parser("migrate", help="Reconcile the warehouse with a custom column file.")
    p_migrate.add_argument("--columns", required=True, help="JSON or YAML custom column file.")
    p_migrate.add_argument("--dry-run", action="store_true", help="Print the planned changes without applying them.")
    p_migrate.add_argument(
        "--allow-type-changes",
        action="store_true",
        help="Drop and re-add columns whose type changed (their data is lost).",
    )
    p_migrate.set_defaults(handler=_cmd_migrate)

    p_show = sub.add_parser("show-config", help="Print the persisted custom column configuration.")
    p_show.set_defaults(handler=_cmd_show_config)

    p_ddl = sub.add_parser("print-ddl", help="Print CREATE TABLE statements.")
    p_ddl.add_argument("--columns", help="Render for this column file instead of the persisted config.")
    p_ddl.set_defaults(handler=_cmd_print_ddl)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    try:
        return args.handler(settings, args)
    except LedgerAnalyticsError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
