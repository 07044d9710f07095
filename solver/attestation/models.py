"""Pydantic models for the storage-proof attestation API."""

from __future__ import annotations

from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer


class QueryStatus(str, Enum):
    """Lifecycle of an attestation query."""

    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


class BlockId(BaseModel):
    """Block a query is scoped to: a number or a tag such as ``latest``."""

    number: int | None = None
    tag: str | None = None

    @model_serializer
    def _serialize(self) -> dict[str, Any]:
        if self.number is not None:
            return {"number": self.number}
        return {"tag": self.tag}

    @classmethod
    def of(cls, block_reference: Union[int, str]) -> "BlockId":
        if isinstance(block_reference, bool):
            raise ValueError("block reference must be a block number or tag")
        if isinstance(block_reference, int):
            return cls(number=block_reference)
        return cls(tag=block_reference)


class AccountSlots(BaseModel):
    address: str
    slots: list[str]


class QueryItem(BaseModel):
    block_id: BlockId
    accounts: list[AccountSlots]


class BatchQueryRequest(BaseModel):
    """Body of ``POST /submit-batch-query``."""

    query: list[QueryItem]


class AttestationQuery(BaseModel):
    """One storage-proof query: slots of one account at one block."""

    block_reference: Union[int, str]
    address: str
    slots: list[str] = Field(min_length=1)
    query_id: str | None = None
    status: QueryStatus = QueryStatus.PENDING

    @field_validator("slots")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for slot in value:
            seen.setdefault(slot.lower(), None)
        return list(seen)

    def to_request(self) -> BatchQueryRequest:
        return BatchQueryRequest(
            query=[
                QueryItem(
                    block_id=BlockId.of(self.block_reference),
                    accounts=[AccountSlots(address=self.address, slots=self.slots)],
                )
            ]
        )


class SubmitResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    query_id: str


class QueryStatusResponse(BaseModel):
    """Body of ``GET /get-query-status/{query_id}``.

    Statuses other than DONE and FAILED are treated as PENDING; the raw value
    is kept in ``raw_status``.
    """

    model_config = ConfigDict(extra="allow")

    status: QueryStatus
    raw_status: str = ""
    result: Any = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, value: Any) -> Any:
        text = str(value).upper() if value is not None else ""
        if text in (QueryStatus.DONE.value, QueryStatus.FAILED.value):
            return text
        return QueryStatus.PENDING.value

    @classmethod
    def from_payload(cls, payload: Any) -> "QueryStatusResponse":
        if not isinstance(payload, dict):
            raise TypeError(f"expected a JSON object, got {type(payload).__name__}")
        return cls.model_validate({**payload, "raw_status": str(payload.get("status", ""))})


class ProofResult(BaseModel):
    """Result of a query that reached DONE. Consumed once by the claim."""

    query_id: str
    result: Any = None
    polls: int = 0
    waited_seconds: float = 0.0
