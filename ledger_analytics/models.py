from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

JsonValue = Union[None, bool, int, float, str, List["JsonValue"], Dict[str, "JsonValue"]]
JsonObject = Dict[str, JsonValue]


def _object(value: Any) -> Optional[JsonObject]:
    return value if isinstance(value, dict) else None


def _int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    return int(value)


@dataclass(frozen=True)
class TransactionInput:
    type: Optional[str]
    asset_id: Optional[str]
    asset_alias: Optional[str]
    asset_definition: Optional[JsonObject]
    asset_tags: Optional[JsonObject]
    asset_is_local: Optional[str]
    amount: int
    account_id: Optional[str]
    account_alias: Optional[str]
    account_tags: Optional[JsonObject]
    issuance_program: Optional[str]
    reference_data: Optional[JsonObject]
    is_local: Optional[str]
    spent_output_id: Optional[str]
    raw: JsonObject = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> "TransactionInput":
        return cls(
            type=obj.get("type"),
            asset_id=obj.get("asset_id"),
            asset_alias=obj.get("asset_alias"),
            asset_definition=_object(obj.get("asset_definition")),
            asset_tags=_object(obj.get("asset_tags")),
            asset_is_local=obj.get("asset_is_local"),
            amount=_int(obj.get("amount")),
            account_id=obj.get("account_id"),
            account_alias=obj.get("account_alias"),
            account_tags=_object(obj.get("account_tags")),
            issuance_program=obj.get("issuance_program"),
            reference_data=_object(obj.get("reference_data")),
            is_local=obj.get("is_local"),
            spent_output_id=obj.get("spent_output_id"),
            raw=dict(obj),
        )


@dataclass(frozen=True)
class TransactionOutput:
    id: str
    type: Optional[str]
    purpose: Optional[str]
    asset_id: Optional[str]
    asset_alias: Optional[str]
    asset_definition: Optional[JsonObject]
    asset_tags: Optional[JsonObject]
    asset_is_local: Optional[str]
    amount: int
    account_id: Optional[str]
    account_alias: Optional[str]
    account_tags: Optional[JsonObject]
    control_program: Optional[str]
    reference_data: Optional[JsonObject]
    is_local: Optional[str]
    raw: JsonObject = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> "TransactionOutput":
        return cls(
            id=str(obj.get("id")),
            type=obj.get("type"),
            purpose=obj.get("purpose"),
            asset_id=obj.get("asset_id"),
            asset_alias=obj.get("asset_alias"),
            asset_definition=_object(obj.get("asset_definition")),
            asset_tags=_object(obj.get("asset_tags")),
            asset_is_local=obj.get("asset_is_local"),
            amount=_int(obj.get("amount")),
            account_id=obj.get("account_id"),
            account_alias=obj.get("account_alias"),
            account_tags=_object(obj.get("account_tags")),
            control_program=obj.get("control_program"),
            reference_data=_object(obj.get("reference_data")),
            is_local=obj.get("is_local"),
            raw=dict(obj),
        )


@dataclass(frozen=True)
class Transaction:
    """A ledger transaction as delivered by /list-transactions."""

    id: str
    block_height: int
    timestamp: Optional[str]
    position: int
    is_local: Optional[str]
    reference_data: Optional[JsonObject]
    inputs: Tuple[TransactionInput, ...]
    outputs: Tuple[TransactionOutput, ...]
    raw: JsonObject = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> "Transaction":
        return cls(
            id=str(obj.get("id")),
            block_height=_int(obj.get("block_height")),
            timestamp=obj.get("timestamp"),
            position=_int(obj.get("position")),
            is_local=obj.get("is_local"),
            reference_data=_object(obj.get("reference_data")),
            inputs=tuple(TransactionInput.from_json(i) for i in obj.get("inputs") or []),
            outputs=tuple(TransactionOutput.from_json(o) for o in obj.get("outputs") or []),
            raw=dict(obj),
        )


@dataclass(frozen=True)
class Feed:
    """Server-side transaction feed: a filter plus the committed cursor."""

    id: str
    alias: Optional[str]
    filter: str
    after: str

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> "Feed":
        return cls(
            id=str(obj.get("id")),
            alias=obj.get("alias"),
            filter=obj.get("filter") or "",
            after=obj.get("after") or "",
        )


@dataclass(frozen=True)
class TransactionPage:
    transactions: List[Transaction]
    next_after: str
    last_page: bool = False
