"""Error taxonomy for the fulfillment solver.

Every failure that can end a run is a ``SolverError`` with a stable code:

    {
        "code": "TRANSACTION_ERROR",
        "message": "createFulfillmentOrder reverted",
        "step": "create_order",
        "context": {"deposit_id": 41, "tx_hash": "0x..."}
    }

Components raise these at their boundary. The orchestrator runs each step
through ``StepOutcome.capture`` and drives its state machine from the tag.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Generic, TypeVar

T = TypeVar("T")


# ── Error Codes ──────────────────────────────────────────────────────────────


class ErrorCode(str, enum.Enum):
    """Stable codes attached to every solver error."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    CHAIN_READ_ERROR = "CHAIN_READ_ERROR"
    NO_DEPOSIT_FOUND = "NO_DEPOSIT_FOUND"
    TRANSACTION_ERROR = "TRANSACTION_ERROR"
    ATTESTATION_SUBMISSION_ERROR = "ATTESTATION_SUBMISSION_ERROR"
    ATTESTATION_STATUS_ERROR = "ATTESTATION_STATUS_ERROR"
    ATTESTATION_QUERY_FAILED = "ATTESTATION_QUERY_FAILED"
    ATTESTATION_TIMEOUT = "ATTESTATION_TIMEOUT"
    SLOT_DERIVATION_ERROR = "SLOT_DERIVATION_ERROR"
    SLOT_MISMATCH = "SLOT_MISMATCH"
    CHECKPOINT_ERROR = "CHECKPOINT_ERROR"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ── Exceptions ───────────────────────────────────────────────────────────────


class SolverError(Exception):
    """Base class for all solver errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    resumable: bool = False

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.context: dict[str, Any] = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "step": self.step,
            "context": self.context,
            "resumable": self.resumable,
        }

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class ConfigurationError(SolverError):
    """A required setting is missing or invalid. No run starts."""

    code = ErrorCode.CONFIGURATION_ERROR


class ChainReadError(SolverError):
    """RPC or ABI-decode failure while reading chain state."""

    code = ErrorCode.CHAIN_READ_ERROR


class NoDepositFound(ChainReadError):
    """The deposit contract has no deposits yet (nonce is zero)."""

    code = ErrorCode.NO_DEPOSIT_FOUND


class TransactionError(SolverError):
    """Transaction was rejected, ran out of gas or reverted. Never retried.

    ``rejected`` is set when the node refused the broadcast outright, so the
    signed transaction never reached the mempool.
    """

    code = ErrorCode.TRANSACTION_ERROR

    def __init__(
        self,
        message: str,
        *,
        tx_hash: str | None = None,
        receipt: Any = None,
        rejected: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash
        self.receipt = receipt
        self.rejected = rejected
        if tx_hash:
            self.context.setdefault("tx_hash", tx_hash)


class AttestationError(SolverError):
    """Base class for attestation service failures."""


class AttestationSubmissionError(AttestationError):
    """The attestation service rejected a batch query (non-2xx)."""

    code = ErrorCode.ATTESTATION_SUBMISSION_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            self.context.setdefault("status_code", status_code)


class AttestationStatusError(AttestationSubmissionError):
    """The status endpoint answered with a non-2xx response."""

    code = ErrorCode.ATTESTATION_STATUS_ERROR
    resumable = True


class AttestationQueryFailed(AttestationError):
    """The attestation service reports the query as FAILED."""

    code = ErrorCode.ATTESTATION_QUERY_FAILED

    def __init__(self, message: str, *, query_id: str, payload: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.query_id = query_id
        self.payload = payload
        self.context.setdefault("query_id", query_id)


class AttestationTimeout(AttestationError):
    """Polling exceeded the local deadline. Re-poll the same query id to resume."""

    code = ErrorCode.ATTESTATION_TIMEOUT
    resumable = True

    def __init__(self, message: str, *, query_id: str, waited: float, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.query_id = query_id
        self.waited = waited
        self.context.setdefault("query_id", query_id)
        self.context.setdefault("waited_seconds", round(waited, 3))


class SlotDerivationError(SolverError, ValueError):
    """Invalid input to storage slot derivation."""

    code = ErrorCode.SLOT_DERIVATION_ERROR


class SlotMismatchError(SolverError):
    """Storage read at the derived slots disagrees with the order just created."""

    code = ErrorCode.SLOT_MISMATCH


class CheckpointError(SolverError):
    """A run checkpoint could not be read or written."""

    code = ErrorCode.CHECKPOINT_ERROR


class AlreadyClaimed(SolverError):
    """The deposit already has a completed claim recorded."""

    code = ErrorCode.ALREADY_CLAIMED


# ── Step outcome ─────────────────────────────────────────────────────────────


@dataclass
class StepOutcome(Generic[T]):
    """Tagged result of one orchestrator step: a value or a ``SolverError``."""

    step: str
    value: T | None = None
    error: SolverError | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def tag(self) -> ErrorCode | None:
        return self.error.code if self.error else None

    @classmethod
    async def capture(
        cls,
        step: str,
        awaitable: Awaitable[T],
        context: dict[str, Any] | None = None,
    ) -> "StepOutcome[T]":
        """Await a component call and fold its result or error into an outcome.

        Unexpected exceptions are wrapped as INTERNAL_ERROR so the run still
        ends in a reported FAILED state. Cancellation is never captured.
        """
        ctx = dict(context or {})
        try:
            value = await awaitable
        except SolverError as exc:
            if exc.step is None:
                exc.step = step
            for key, val in ctx.items():
                exc.context.setdefault(key, val)
            return cls(step=step, error=exc, context=ctx)
        except Exception as exc:
            wrapped = SolverError(f"{type(exc).__name__}: {exc}", step=step, context=ctx)
            wrapped.__cause__ = exc
            return cls(step=step, error=wrapped, context=ctx)
        return cls(step=step, value=value, context=ctx)
