"""Ledger analytics: mirror a ledger transaction feed into a Postgres warehouse.

This package provides:
- A custom-column configuration model and its diff-driven schema migrator
- Schema and SQL generation for the transactions / inputs / outputs tables
- A cursor-driven feed importer with idempotent replay
"""

from ledger_analytics.config import Config, CustomColumn, Migration
from ledger_analytics.importer import FeedImporter
from ledger_analytics.target import Target

__all__ = ["Config", "CustomColumn", "FeedImporter", "Migration", "Target"]
