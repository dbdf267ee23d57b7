"""Dotted field paths into ledger records.

A path such as ``reference_data.account.id`` names one of a record's
JSON-valued top-level fields followed by keys inside that JSON object.
Extraction never raises on a shape mismatch; anything that cannot be
reached is simply absent (``None``).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from ledger_analytics.models import JsonValue, Transaction, TransactionInput, TransactionOutput

Record = Union[Transaction, TransactionInput, TransactionOutput]

_TRANSACTION_FIELDS: Dict[str, Callable[[Transaction], Any]] = {
    "reference_data": lambda tx: tx.reference_data,
}

_INPUT_FIELDS: Dict[str, Callable[[TransactionInput], Any]] = {
    "reference_data": lambda i: i.reference_data,
    "account_tags": lambda i: i.account_tags,
    "asset_definition": lambda i: i.asset_definition,
    "asset_tags": lambda i: i.asset_tags,
}

_OUTPUT_FIELDS: Dict[str, Callable[[TransactionOutput], Any]] = {
    "reference_data": lambda o: o.reference_data,
    "account_tags": lambda o: o.account_tags,
    "asset_definition": lambda o: o.asset_definition,
    "asset_tags": lambda o: o.asset_tags,
}


@dataclass(frozen=True)
class FieldPath:
    segments: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, raw: Optional[str]) -> "FieldPath":
        if raw is None or not raw.strip():
            return cls(())
        return cls(tuple(part.strip() for part in raw.strip().split(".")))

    def is_empty(self) -> bool:
        return not self.segments

    def __str__(self) -> str:
        return ".".join(self.segments)


def top_level_fields(record: Record) -> Dict[str, Callable[[Any], Any]]:
    if isinstance(record, Transaction):
        return _TRANSACTION_FIELDS
    if isinstance(record, TransactionInput):
        return _INPUT_FIELDS
    if isinstance(record, TransactionOutput):
        return _OUTPUT_FIELDS
    raise TypeError(f"Unsupported record type: {type(record).__name__}")


def extract(record: Record, path: FieldPath) -> Optional[JsonValue]:
    """Return the value at *path* inside *record*, or None when absent.

    An empty path yields the whole record as its raw JSON mapping.
    """
    if path.is_empty():
        return record.raw

    getter = top_level_fields(record).get(path.segments[0])
    if getter is None:
        return None
    current: Any = getter(record)

    rest = path.segments[1:]
    for segment in rest[:-1]:
        if not isinstance(current, dict):
            return None
        current = current.get(segment)

    if not rest:
        return current
    if not isinstance(current, dict):
        return None
    return current.get(rest[-1])
