"""
Round data model.

A round is a tagged union on `status`: each state carries exactly the fields it
needs, so a resolving round always has a claim token and a completed round
always has a result. Serialized with the camelCase keys the web client reads.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

Move = Literal["heads", "tails"]
Outcome = Literal["win", "lose"]
PaymentStatus = Literal["pending", "paid"]
PayoutStatus = Literal["pending", "processing", "paid", "failed", "skipped"]

MOVES = ("heads", "tails")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def opposite(move: str) -> str:
    return "tails" if move == "heads" else "heads"


def player_key(address: str) -> str:
    """Case-insensitive identity used for per-player uniqueness."""
    return (address or "").strip().lower()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MiniappTransaction(CamelModel):
    to: str
    data: str
    value: str  # decimal string


class MiniappHostTransaction(CamelModel):
    to: str
    data: str
    value: str  # 0x-prefixed hex string


class Payment(CamelModel):
    status: PaymentStatus = "pending"
    recipient_address: str
    payment_link: str
    expected_data: str
    amount_crc: str = Field(alias="amountCRC")
    transactions: Optional[List[MiniappTransaction]] = None
    host_transactions: Optional[List[MiniappHostTransaction]] = None
    transaction_hash: Optional[str] = None
    paid_at: Optional[datetime] = None


class RoundResult(CamelModel):
    coin: Move
    outcome: Outcome
    resolved_at: datetime


class Payout(CamelModel):
    status: PayoutStatus = "pending"
    from_address: str
    to_address: str
    amount_crc: str = Field(alias="amountCRC")
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    processed_at: Optional[datetime] = None
    retry_count: Optional[int] = None


class RoundBase(CamelModel):
    id: str
    created_at: datetime
    updated_at: datetime
    player_address: str
    move: Move
    payment: Payment
    payout: Payout

    @property
    def player_key(self) -> str:
        return player_key(self.player_address)

    @property
    def is_active(self) -> bool:
        return self.status != "completed"


class AwaitingPaymentRound(RoundBase):
    status: Literal["awaiting_payment"] = "awaiting_payment"


class ResolvingRound(RoundBase):
    status: Literal["resolving"] = "resolving"
    processing_token: str


class CompletedRound(RoundBase):
    status: Literal["completed"] = "completed"
    result: RoundResult


Round = Annotated[
    Union[AwaitingPaymentRound, ResolvingRound, CompletedRound],
    Field(discriminator="status"),
]

_round_adapter = TypeAdapter(Round)

# Fields that belong to a single state and are dropped on transition
_STATE_FIELDS = {"status", "processing_token", "result"}


def round_from_dict(data: Dict[str, Any]) -> Round:
    return _round_adapter.validate_python(data)


def round_to_dict(round_: RoundBase) -> Dict[str, Any]:
    """JSON-ready dict with camelCase keys; unset optionals are omitted."""
    return round_.model_dump(mode="json", by_alias=True, exclude_none=True)


def transition(round_: RoundBase, target: type, **changes) -> Round:
    """Rebuild `round_` as another state class, applying `changes`."""
    data = round_.model_dump(exclude=_STATE_FIELDS)
    data.update(changes)
    return target(**data)
