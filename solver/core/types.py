"""Shared enums and types used across the solver."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class OrderField(enum.IntEnum):
    """Field offsets of a fulfillment order in contract storage."""

    DEPOSIT_ID = 0
    USER = 1
    TOKEN = 2
    AMOUNT = 3


class RunState(str, enum.Enum):
    """States of one fulfillment run."""

    START = "START"
    DEPOSIT_READ = "DEPOSIT_READ"
    ORDER_CREATED = "ORDER_CREATED"
    QUERY_SUBMITTED = "QUERY_SUBMITTED"
    PROOF_READY = "PROOF_READY"
    CLAIMED = "CLAIMED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.CLAIMED, RunState.FAILED)


# ── Chain records ────────────────────────────────────────────────────────────


def order_id_for_deposit(deposit_id: int) -> int:
    """Order id this solver assigns to a deposit's fulfillment order."""
    return deposit_id + 1


class Deposit(BaseModel):
    """A deposit record read from the Chain A contract."""

    model_config = ConfigDict(frozen=True)

    deposit_id: int = Field(ge=0)
    user: str
    token: str
    token_wanted: str
    amount: int = Field(ge=0)
    timestamp: int = Field(ge=0)

    @property
    def order_id(self) -> int:
        return order_id_for_deposit(self.deposit_id)


class FulfillmentOrder(BaseModel):
    """The 4-field order record written to the Chain B contract."""

    model_config = ConfigDict(frozen=True)

    deposit_id: int = Field(ge=0)
    amount: int = Field(ge=0)
    token: str
    user: str

    @classmethod
    def from_deposit(cls, deposit: Deposit) -> "FulfillmentOrder":
        return cls(
            deposit_id=deposit.deposit_id,
            amount=deposit.amount,
            token=deposit.token_wanted,
            user=deposit.user,
        )

    @property
    def order_id(self) -> int:
        return order_id_for_deposit(self.deposit_id)


class StorageSlotMap(BaseModel):
    """Storage slots of one fulfillment order, as 0x-prefixed 32-byte hex."""

    model_config = ConfigDict(frozen=True)

    order_id: int
    mapping_slot: int
    base_slot: str
    deposit_id: str
    user: str
    token: str
    amount: str

    def slot_for(self, field: OrderField) -> str:
        return getattr(self, field.name.lower())

    def items(self) -> list[tuple[OrderField, str]]:
        return [(f, self.slot_for(f)) for f in OrderField]

    def as_list(self) -> list[str]:
        """Slots in field-offset order."""
        return [slot for _, slot in self.items()]


class TxReceipt(BaseModel):
    """The parts of a transaction receipt the solver relies on."""

    tx_hash: str
    block_number: int
    status: int
    gas_used: int | None = None


# ── Runs ─────────────────────────────────────────────────────────────────────


class RunFailure(BaseModel):
    """Serialized reason a run ended in FAILED."""

    code: str
    message: str
    step: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    resumable: bool = False


class RunCheckpoint(BaseModel):
    """Persisted progress of one run, updated after every transition.

    ``state`` is always the last *completed* state; a failure is recorded
    next to it so a later resume continues from there.
    A transaction hash and its signed payload are written before broadcast
    and the payload is dropped once the receipt is in.
    """

    run_id: str
    contract_b: str
    deposit: Deposit | None = None
    state: RunState = RunState.START
    order_tx_hash: str | None = None
    order_raw_tx: str | None = None
    block_number: int | None = None
    order_id: int | None = None
    query_id: str | None = None
    proof: Any = None
    claim_tx_hash: str | None = None
    claim_raw_tx: str | None = None
    failure: RunFailure | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def deposit_id(self) -> int | None:
        return self.deposit.deposit_id if self.deposit else None
